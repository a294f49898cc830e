"""Tests for the contract accessor and chain error classification."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from eth_abi import encode
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound

from conftest import USER
from src.core.exceptions.base import (
    RpcError,
    TemplateNotFoundError,
    TransactionFailedError,
    TransactionRejectedError,
    classify_chain_error,
)
from src.core.exceptions.handler import ServiceErrorCode
from src.core.service.collectible import chain_reader as chain_reader_module
from src.core.service.collectible.abi import CLAIM_EVENT_TOPIC
from src.core.service.collectible.chain_reader import ChainReader, address_topic
from src.core.service.collectible.models import EligibilityType, RarityTier, RawEvent
from src.core.service.collectible.signer import LocalAccountSigner, Signer

CONTRACT = "0x4444444444444444444444444444444444444444"
ISSUER = "0x5555555555555555555555555555555555555555"
TX_HASH = "0x" + "ab" * 32


def _struct(issuer=ISSUER, **overrides):
    values = {
        "id": 3,
        "title": "Hackathon Winner",
        "category": "Events",
        "description": "First place",
        "value": 2,
        "issuer": issuer,
        "max_supply": 10,
        "current_supply": 4,
        "start_time": 1_700_000_000,
        "end_time": 1_800_000_000,
        "eligibility_type": 1,
        "eligibility_data": b"\x01\x02",
        "is_paused": False,
        "is_active": True,
        "metadata_uri": "ipfs://meta",
        "rarity_tier": 3,
    }
    values.update(overrides)
    return tuple(values.values())


def _claim_log(template_id=3, card_id=77, claimer=USER, timestamp=1_700_000_123, address=CONTRACT):
    return {
        "address": address,
        "topics": [
            bytes.fromhex(CLAIM_EVENT_TOPIC[2:]),
            template_id.to_bytes(32, "big"),
            card_id.to_bytes(32, "big"),
            bytes.fromhex(address_topic(claimer)[2:]),
        ],
        "data": encode(["uint256"], [timestamp]),
        "blockNumber": 42,
        "transactionHash": bytes.fromhex(TX_HASH[2:]),
        "logIndex": 1,
    }


@pytest.fixture
def reader():
    w3 = MagicMock()
    reader = ChainReader(contract_address=CONTRACT, chain_id=1287, w3=w3, request_timeout=1)
    reader.contract = MagicMock()
    return reader


@pytest.mark.asyncio
class TestTemplateReads:

    async def test_get_template(self, reader):
        reader.contract.functions.getCollectibleTemplate.return_value.call = AsyncMock(return_value=_struct())

        template = await reader.get_template(3)

        reader.contract.functions.getCollectibleTemplate.assert_called_once_with(3)
        assert template.template_id == 3
        assert template.title == "Hackathon Winner"
        assert template.issuer == ISSUER
        assert template.tier == 2
        assert template.remaining_supply == 6
        assert template.eligibility_type == EligibilityType.WHITELIST
        assert template.eligibility_data == "0x0102"
        assert template.rarity_tier == RarityTier.EPIC
        assert template.is_active is True

    async def test_get_inactive_template(self, reader):
        reader.contract.functions.getCollectibleTemplate.return_value.call = AsyncMock(
            return_value=_struct(is_active=False)
        )

        template = await reader.get_template(3)

        assert template.is_active is False

    async def test_zero_issuer_means_not_found(self, reader):
        reader.contract.functions.getCollectibleTemplate.return_value.call = AsyncMock(
            return_value=_struct(issuer="0x0000000000000000000000000000000000000000")
        )

        with pytest.raises(TemplateNotFoundError) as exc_info:
            await reader.get_template(3)

        assert exc_info.value.details["template_id"] == 3

    async def test_not_found_revert(self, reader):
        reader.contract.functions.getCollectibleTemplate.return_value.call = AsyncMock(
            side_effect=ContractLogicError("execution reverted: CollectibleNotFound()")
        )

        with pytest.raises(TemplateNotFoundError) as exc_info:
            await reader.get_template(8)

        assert exc_info.value.details["template_id"] == 8

    async def test_non_positive_id_not_found(self, reader):
        with pytest.raises(TemplateNotFoundError):
            await reader.get_template(0)

        reader.contract.functions.getCollectibleTemplate.assert_not_called()

    async def test_transport_failure(self, reader):
        reader.contract.functions.getCollectibleTemplate.return_value.call = AsyncMock(
            side_effect=ConnectionError("Connection refused")
        )

        with pytest.raises(RpcError) as exc_info:
            await reader.get_template(3)

        assert exc_info.value.code == ServiceErrorCode.RPC_ERROR
        assert "Connection refused" in exc_info.value.details["provider_error"]

    async def test_call_timeout(self, reader):
        async def hang():
            await asyncio.sleep(5)

        reader.request_timeout = 0.05
        reader.contract.functions.getTemplateCount.return_value.call = hang

        with pytest.raises(RpcError) as exc_info:
            await reader.get_template_count()

        assert exc_info.value.code == ServiceErrorCode.TIMEOUT

    async def test_enumeration_detected(self, reader):
        reader.contract.functions.getTemplateCount.return_value.call = AsyncMock(return_value=5)

        assert await reader.supports_enumeration() is True
        assert await reader.supports_enumeration() is True
        assert reader.contract.functions.getTemplateCount.return_value.call.await_count == 1

    async def test_enumeration_unsupported(self, reader):
        reader.contract.functions.getTemplateCount.return_value.call = AsyncMock(
            side_effect=ContractLogicError("execution reverted")
        )

        assert await reader.supports_enumeration() is False

    async def test_get_all_template_ids(self, reader):
        reader.contract.functions.getAllTemplateIds.return_value.call = AsyncMock(return_value=[1, 2, 5])

        assert await reader.get_all_template_ids() == [1, 2, 5]


@pytest.mark.asyncio
class TestClaimLogs:

    async def test_decode_claim_event(self, reader):
        raw = ChainReader._raw_event(_claim_log())

        event = ChainReader.decode_claim_event(raw)

        assert event.template_id == 3
        assert event.card_id == 77
        assert event.claimer == USER
        assert event.timestamp == 1_700_000_123
        assert event.tx_hash == TX_HASH
        assert event.block_number == 42

    async def test_decode_rejects_foreign_log(self):
        raw = RawEvent(
            address=CONTRACT,
            topics=["0x" + "00" * 32],
            data="0x",
            block_number=1,
            transaction_hash=TX_HASH,
        )

        with pytest.raises(ValueError):
            ChainReader.decode_claim_event(raw)

    async def test_get_logs_is_chunked(self, reader):
        reader.w3.eth.get_logs = AsyncMock(side_effect=[[_claim_log()], [], []])

        with patch.object(chain_reader_module.settings, "LOG_QUERY_CHUNK_SIZE", 10):
            events = await reader.get_claim_events(USER, 0, 25)

        ranges = [(c.args[0]["fromBlock"], c.args[0]["toBlock"]) for c in reader.w3.eth.get_logs.await_args_list]
        assert ranges == [(0, 9), (10, 19), (20, 25)]
        assert [e.card_id for e in events] == [77]

    async def test_get_logs_filters_on_claimer(self, reader):
        reader.w3.eth.get_logs = AsyncMock(return_value=[])

        await reader.get_claim_events(USER, 0, 10)

        query = reader.w3.eth.get_logs.await_args.args[0]
        assert query["address"] == CONTRACT
        assert query["topics"] == [CLAIM_EVENT_TOPIC, None, None, address_topic(USER)]

    async def test_empty_range(self, reader):
        reader.w3.eth.get_logs = AsyncMock()

        assert await reader.get_claim_events(USER, 10, 5) == []
        reader.w3.eth.get_logs.assert_not_awaited()


@pytest.mark.asyncio
class TestConfirmation:

    async def test_waits_until_mined(self, reader):
        receipt = {"blockNumber": 42, "status": 1, "gasUsed": 90_000, "logs": [_claim_log()]}
        reader.w3.eth.get_transaction_receipt = AsyncMock(
            side_effect=[TransactionNotFound("pending"), ConnectionError("blip"), receipt]
        )

        result = await reader.wait_for_confirmation(TX_HASH, poll_interval=0)

        assert result.block_number == 42
        assert result.card_id == 77
        assert result.gas_used == 90_000

    async def test_ignores_logs_from_other_contracts(self, reader):
        receipt = {"blockNumber": 42, "status": 1, "logs": [_claim_log(address=ISSUER)]}
        reader.w3.eth.get_transaction_receipt = AsyncMock(return_value=receipt)

        result = await reader.wait_for_confirmation(TX_HASH, poll_interval=0)

        assert result.event is None

    async def test_reverted_transaction_reports_reason(self, reader):
        reader.w3.eth.get_transaction_receipt = AsyncMock(return_value={"blockNumber": 42, "status": 0, "logs": []})
        reader.w3.eth.get_transaction = AsyncMock(return_value={"from": USER, "to": CONTRACT, "input": "0x"})
        reader.w3.eth.call = AsyncMock(side_effect=ContractLogicError("execution reverted: AlreadyClaimed()"))

        with pytest.raises(TransactionFailedError) as exc_info:
            await reader.wait_for_confirmation(TX_HASH, poll_interval=0)

        assert exc_info.value.message == "You have already claimed this collectible"
        assert exc_info.value.details["tx_hash"] == TX_HASH


class TestClassifyChainError:

    def test_service_error_passes_through(self):
        error = RpcError()

        assert classify_chain_error(error) is error

    def test_user_rejection(self):
        error = classify_chain_error(Exception("MetaMask Tx Signature: User denied transaction signature."))

        assert isinstance(error, TransactionRejectedError)
        assert error.code == ServiceErrorCode.USER_REJECTED

    def test_custom_revert_mapped_to_message(self):
        error = classify_chain_error(ContractLogicError("execution reverted: MaxSupplyReached()"))

        assert isinstance(error, TransactionFailedError)
        assert error.message == "Maximum supply has been reached"

    def test_unknown_revert(self):
        error = classify_chain_error(ValueError("execution reverted"))

        assert isinstance(error, TransactionFailedError)
        assert error.message == "Transaction reverted by the contract"

    def test_collectible_not_found_revert(self):
        assert isinstance(
            classify_chain_error(ContractLogicError("execution reverted: CollectibleNotFound()")),
            TemplateNotFoundError,
        )

    def test_insufficient_funds(self):
        error = classify_chain_error(ValueError("insufficient funds for gas * price + value"))

        assert error.code == ServiceErrorCode.INSUFFICIENT_FUNDS

    def test_nonce_conflict(self):
        assert classify_chain_error(ValueError("nonce too low")).code == ServiceErrorCode.NONCE_ERROR

    def test_timeout(self):
        error = classify_chain_error(asyncio.TimeoutError())

        assert isinstance(error, RpcError)
        assert error.code == ServiceErrorCode.TIMEOUT

    def test_rate_limited(self):
        error = classify_chain_error(Exception("429 Client Error: Too Many Requests"))

        assert error.code == ServiceErrorCode.RATE_LIMIT_EXCEEDED

    def test_fallback_keeps_provider_text(self):
        error = classify_chain_error(OSError("connection reset"), default_message="Failed to read block number")

        assert isinstance(error, RpcError)
        assert error.message == "Failed to read block number. Please try again."
        assert error.details["provider_error"] == "connection reset"
        assert error.status_code == 503


@pytest.mark.asyncio
class TestClaimSubmission:

    @pytest.fixture
    def signer(self):
        return LocalAccountSigner("0x" + "1" * 64)

    def _prepare(self, reader, signer):
        reader.w3.eth.get_transaction_count = AsyncMock(return_value=7)
        reader.contract.functions.claimCollectible.return_value.build_transaction = AsyncMock(return_value={
            "from": signer.address,
            "to": CONTRACT,
            "value": 0,
            "gas": 150_000,
            "gasPrice": 1_000_000_000,
            "nonce": 7,
            "chainId": 1287,
            "data": "0x5c8bc2f8",
        })
        reader.w3.eth.send_raw_transaction = AsyncMock(return_value=bytes.fromhex(TX_HASH[2:]))

    async def test_submit_claim_signs_and_broadcasts(self, reader, signer):
        self._prepare(reader, signer)

        tx_hash = await reader.submit_claim(3, signer)

        assert isinstance(signer, Signer)
        assert tx_hash == TX_HASH
        reader.w3.eth.get_transaction_count.assert_awaited_once_with(signer.address, "pending")
        build_args = reader.contract.functions.claimCollectible.return_value.build_transaction.await_args.args[0]
        assert build_args == {"from": signer.address, "chainId": 1287, "nonce": 7}
        raw = reader.w3.eth.send_raw_transaction.await_args.args[0]
        assert isinstance(raw, bytes) and len(raw) > 0

    async def test_user_rejection(self, reader, signer):
        self._prepare(reader, signer)
        signer.sign_transaction = AsyncMock(side_effect=Exception("User rejected the request."))

        with pytest.raises(TransactionRejectedError):
            await reader.submit_claim(3, signer)

        reader.w3.eth.send_raw_transaction.assert_not_awaited()

    async def test_gas_estimate(self, reader):
        reader.contract.functions.claimCollectible.return_value.estimate_gas = AsyncMock(return_value=100_000)
        reader.w3.eth.gas_price = _awaitable(2_000_000_000)

        estimate = await reader.estimate_claim_gas(3, USER)

        assert estimate.gas_limit == 100_000
        assert estimate.cost_wei == 200_000_000_000_000
        assert estimate.cost_eth == str(Web3.from_wei(200_000_000_000_000, "ether"))


def _awaitable(value):
    async def _value():
        return value
    return _value()
