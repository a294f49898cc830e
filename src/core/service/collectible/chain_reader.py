"""
Read/write accessor over the collectible contract.

Stateless apart from the provider connection. Every failure surfaces as one of the
classified ServiceError types; untyped log payloads are decoded here and never leak out.
"""

import asyncio
from typing import Any, Awaitable, List, Optional, Sequence

from eth_abi import decode as abi_decode
from web3 import AsyncWeb3, Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, TransactionNotFound

from src.core.exceptions.base import (
    REVERT_MESSAGES,
    TemplateNotFoundError,
    TransactionFailedError,
    classify_chain_error,
)
from src.core.exceptions.handler import ServiceError
from src.core.logger.logger import get_logger
from src.core.service.collectible.abi import CLAIM_EVENT_SIGNATURE, CLAIM_EVENT_TOPIC, COLLECTIBLE_ABI
from src.core.service.collectible.models import (
    ClaimEvent,
    ClaimReceipt,
    EligibilityType,
    GasEstimate,
    RarityTier,
    RawEvent,
    Template,
    ZERO_ADDRESS,
)
from src.core.service.collectible.signer import Signer
from src.infra.config.settings import get_settings

logger = get_logger(__name__)
settings = get_settings()


def address_topic(address: str) -> str:
    """Left-pad an address to a 32-byte indexed topic."""
    return "0x" + "0" * 24 + address.lower().replace("0x", "")


class ChainReader:
    """Async accessor for the collectible contract on one chain."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        contract_address: Optional[str] = None,
        chain_id: Optional[int] = None,
        w3: Optional[AsyncWeb3] = None,
        request_timeout: Optional[float] = None,
    ):
        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url or settings.RPC_URL))
        self.contract_address = Web3.to_checksum_address(contract_address or settings.COLLECTIBLE_CONTRACT_ADDRESS)
        self.chain_id = chain_id or settings.CHAIN_ID
        self.request_timeout = request_timeout or settings.RPC_TIMEOUT_SECONDS
        self.contract = self.w3.eth.contract(address=self.contract_address, abi=COLLECTIBLE_ABI)
        self._enumeration_supported: Optional[bool] = None

    async def _call(self, awaitable: Awaitable[Any], operation: str, timeout: Optional[float] = None) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout or self.request_timeout)
        except ServiceError:
            raise
        except Exception as e:
            error = classify_chain_error(e, default_message=f"Failed to {operation}")
            logger.warning(
                f"Chain call failed: {operation}",
                extra={"operation": operation, "error_code": error.code, "error": str(e)[:300]},
            )
            raise error from e

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    async def get_template(self, template_id: int) -> Template:
        """
        Fetch one template.

        Raises:
            TemplateNotFoundError: the id does not exist (zero issuer or CollectibleNotFound revert)
            RpcError: transport failure
        """
        if template_id <= 0:
            raise TemplateNotFoundError(template_id)
        try:
            raw = await self._call(
                self.contract.functions.getCollectibleTemplate(template_id).call(),
                "read collectible template",
            )
        except TemplateNotFoundError:
            raise TemplateNotFoundError(template_id)
        return self._template_from_struct(template_id, raw)

    @staticmethod
    def _template_from_struct(template_id: int, raw: Sequence[Any]) -> Template:
        (
            _struct_id, title, category, description, value, issuer, max_supply, current_supply,
            start_time, end_time, eligibility_type, eligibility_data, is_paused, is_active,
            metadata_uri, rarity_tier,
        ) = raw

        if not issuer or int(issuer, 16) == 0:
            raise TemplateNotFoundError(template_id)

        return Template(
            template_id=template_id,
            title=title,
            issuer=Web3.to_checksum_address(issuer),
            category=category,
            description=description,
            rarity_tier=RarityTier(int(rarity_tier)),
            max_supply=int(max_supply),
            current_supply=int(current_supply),
            tier=int(value),
            start_time=int(start_time),
            end_time=int(end_time),
            is_paused=bool(is_paused),
            is_active=bool(is_active),
            eligibility_type=EligibilityType(int(eligibility_type)),
            eligibility_data=Web3.to_hex(eligibility_data) if eligibility_data else "0x",
            metadata_uri=metadata_uri,
        )

    async def supports_enumeration(self) -> bool:
        """Whether the deployed contract exposes getTemplateCount/getAllTemplateIds."""
        if self._enumeration_supported is None:
            try:
                await asyncio.wait_for(
                    self.contract.functions.getTemplateCount().call(), timeout=self.request_timeout
                )
                self._enumeration_supported = True
            except (ContractLogicError, BadFunctionCallOutput):
                self._enumeration_supported = False
            except Exception as e:
                raise classify_chain_error(e, default_message="Failed to read template count") from e
            logger.info(
                "Template enumeration capability detected",
                extra={"supported": self._enumeration_supported, "contract": self.contract_address},
            )
        return self._enumeration_supported

    async def get_template_count(self) -> int:
        return int(await self._call(self.contract.functions.getTemplateCount().call(), "read template count"))

    async def get_all_template_ids(self) -> List[int]:
        ids = await self._call(self.contract.functions.getAllTemplateIds().call(), "read template ids")
        return [int(template_id) for template_id in ids]

    # ------------------------------------------------------------------
    # Per-user flags
    # ------------------------------------------------------------------

    async def has_claimed(self, template_id: int, user_address: str) -> bool:
        user = Web3.to_checksum_address(user_address)
        return bool(await self._call(
            self.contract.functions.hasClaimedCollectible(template_id, user).call(),
            "read claim status",
        ))

    async def is_eligible_to_claim(self, template_id: int, user_address: str) -> bool:
        user = Web3.to_checksum_address(user_address)
        return bool(await self._call(
            self.contract.functions.isEligibleToClaim(template_id, user).call(),
            "check eligibility",
        ))

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    async def get_block_number(self) -> int:
        return int(await self._call(self.w3.eth.block_number, "read block number"))

    async def get_logs(
        self,
        event_signature: str,
        from_block: int,
        to_block: int,
        topic_filter: Sequence[Optional[str]] = (),
        timeout: Optional[float] = None,
    ) -> List[RawEvent]:
        """
        Query contract logs for one event over [from_block, to_block].

        The range is split into LOG_QUERY_CHUNK_SIZE windows; the whole query is bounded
        by ``timeout`` (defaults to LOG_QUERY_TIMEOUT_SECONDS).
        """
        if from_block > to_block:
            return []

        topics: List[Optional[str]] = [Web3.to_hex(Web3.keccak(text=event_signature)), *topic_filter]
        while topics and topics[-1] is None:
            topics.pop()

        async def _scan() -> List[RawEvent]:
            events: List[RawEvent] = []
            chunk_start = from_block
            while chunk_start <= to_block:
                chunk_end = min(chunk_start + settings.LOG_QUERY_CHUNK_SIZE - 1, to_block)
                logs = await self.w3.eth.get_logs({
                    "address": self.contract_address,
                    "topics": topics,
                    "fromBlock": chunk_start,
                    "toBlock": chunk_end,
                })
                events.extend(self._raw_event(log) for log in logs)
                chunk_start = chunk_end + 1
            return events

        return await self._call(_scan(), "query claim logs", timeout=timeout or settings.LOG_QUERY_TIMEOUT_SECONDS)

    @staticmethod
    def _raw_event(log: Any) -> RawEvent:
        return RawEvent(
            address=log["address"],
            topics=[Web3.to_hex(topic) for topic in log["topics"]],
            data=Web3.to_hex(log["data"]) if log["data"] else "0x",
            block_number=int(log["blockNumber"]),
            transaction_hash=Web3.to_hex(log["transactionHash"]),
            log_index=int(log.get("logIndex", 0) or 0),
        )

    @staticmethod
    def decode_claim_event(raw: RawEvent) -> ClaimEvent:
        """Decode a CollectibleClaimed log. Raises ValueError on a foreign or malformed log."""
        if len(raw.topics) != 4 or raw.topics[0].lower() != CLAIM_EVENT_TOPIC.lower():
            raise ValueError(f"Log {raw.transaction_hash}:{raw.log_index} is not a CollectibleClaimed event")

        (timestamp,) = abi_decode(["uint256"], bytes.fromhex(raw.data[2:]))
        return ClaimEvent(
            template_id=int(raw.topics[1], 16),
            card_id=int(raw.topics[2], 16),
            claimer=Web3.to_checksum_address("0x" + raw.topics[3][-40:]),
            timestamp=int(timestamp),
            tx_hash=raw.transaction_hash.lower(),
            block_number=raw.block_number,
        )

    async def get_claim_events(
        self,
        user_address: str,
        from_block: int,
        to_block: int,
        timeout: Optional[float] = None,
    ) -> List[ClaimEvent]:
        """CollectibleClaimed events for one claimer, decoded."""
        raw_events = await self.get_logs(
            CLAIM_EVENT_SIGNATURE,
            from_block,
            to_block,
            topic_filter=(None, None, address_topic(user_address)),
            timeout=timeout,
        )
        events = []
        for raw in raw_events:
            try:
                events.append(self.decode_claim_event(raw))
            except ValueError as e:
                logger.warning("Skipping undecodable claim log", extra={"tx_hash": raw.transaction_hash, "error": str(e)})
        return events

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def estimate_claim_gas(self, template_id: int, user_address: str, timeout: Optional[float] = None) -> GasEstimate:
        user = Web3.to_checksum_address(user_address)

        async def _estimate() -> GasEstimate:
            gas_limit = await self.contract.functions.claimCollectible(template_id).estimate_gas({"from": user})
            gas_price = await self.w3.eth.gas_price
            cost_wei = int(gas_limit) * int(gas_price)
            return GasEstimate(
                gas_limit=int(gas_limit),
                gas_price_wei=int(gas_price),
                cost_wei=cost_wei,
                cost_eth=str(Web3.from_wei(cost_wei, "ether")),
            )

        return await self._call(_estimate(), "estimate gas", timeout=timeout or settings.GAS_ESTIMATE_TIMEOUT_SECONDS)

    async def submit_claim(self, template_id: int, signer: Signer) -> str:
        """Build, sign and broadcast claimCollectible. Returns the transaction hash."""
        sender = Web3.to_checksum_address(signer.address)
        try:
            nonce = await self.w3.eth.get_transaction_count(sender, "pending")
            transaction = await self.contract.functions.claimCollectible(template_id).build_transaction({
                "from": sender,
                "chainId": self.chain_id,
                "nonce": nonce,
            })
            raw_transaction = await signer.sign_transaction(transaction)
            tx_hash = await self.w3.eth.send_raw_transaction(raw_transaction)
        except ServiceError:
            raise
        except Exception as e:
            raise classify_chain_error(e, default_message="Failed to submit claim transaction") from e

        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.info(
            "Claim transaction submitted",
            extra={"template_id": template_id, "sender": sender, "tx_hash": tx_hash_hex},
        )
        return tx_hash_hex

    async def wait_for_confirmation(self, tx_hash: str, poll_interval: Optional[float] = None) -> ClaimReceipt:
        """
        Poll until the transaction is mined.

        No deadline: confirmation can take minutes. Cancel the awaiting task to stop
        watching; the submitted transaction itself is unaffected.

        Raises:
            TransactionFailedError: the transaction reverted
        """
        interval = poll_interval if poll_interval is not None else settings.CONFIRMATION_POLL_INTERVAL_SECONDS
        while True:
            try:
                receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                receipt = None
            except Exception as e:
                logger.warning("Receipt poll failed, retrying", extra={"tx_hash": tx_hash, "error": str(e)[:300]})
                receipt = None

            if receipt is not None:
                return await self._parse_receipt(tx_hash, receipt)
            await asyncio.sleep(interval)

    async def _parse_receipt(self, tx_hash: str, receipt: Any) -> ClaimReceipt:
        block_number = int(receipt["blockNumber"])
        if int(receipt["status"]) != 1:
            reason = await self._replay_revert_reason(tx_hash, block_number)
            name = next((n for n in REVERT_MESSAGES if reason and n in reason), None)
            raise TransactionFailedError(
                message=REVERT_MESSAGES[name] if name else "Transaction reverted on-chain",
                revert_reason=reason,
                tx_hash=tx_hash,
            )

        event = None
        for log in receipt["logs"]:
            raw = self._raw_event(log)
            if raw.address.lower() != self.contract_address.lower():
                continue
            try:
                event = self.decode_claim_event(raw)
                break
            except ValueError:
                continue

        return ClaimReceipt(
            tx_hash=tx_hash,
            block_number=block_number,
            status=1,
            gas_used=int(receipt.get("gasUsed", 0) or 0),
            event=event,
        )

    async def _replay_revert_reason(self, tx_hash: str, block_number: int) -> Optional[str]:
        """Re-run a reverted transaction with eth_call to recover its revert reason."""
        try:
            tx = await self.w3.eth.get_transaction(tx_hash)
            await self.w3.eth.call(
                {"from": tx["from"], "to": tx["to"], "data": tx["input"], "value": tx.get("value", 0)},
                block_identifier=block_number,
            )
        except ContractLogicError as e:
            return e.message or str(e)
        except Exception as e:
            logger.debug("Revert reason unavailable", extra={"tx_hash": tx_hash, "error": str(e)[:300]})
        return None
