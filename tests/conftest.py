"""
Shared fixtures for the collectible engine tests.

FakeChainReader stands in for the contract accessor: templates, claim flags and
claim events live in memory, and failures can be injected per call.
"""

import asyncio
from collections import Counter
from typing import Dict, List, Optional, Set, Tuple

import pytest
from fastapi.testclient import TestClient

from src.api.utils.metrics import ClaimMetrics
from src.app import create_app
from src.core.dependencies import CollectibleEngine
from src.core.exceptions.base import RpcError, TemplateNotFoundError
from src.core.service.collectible.cache.claim_log_store import InMemoryClaimLogStore
from src.core.service.collectible.claim_controller import ClaimController
from src.core.service.collectible.eligibility import EligibilityService, StaticMembershipProvider
from src.core.service.collectible.history_sync import ClaimHistorySynchronizer
from src.core.service.collectible.models import (
    ClaimEvent,
    ClaimReceipt,
    GasEstimate,
    Template,
)
from src.core.service.collectible.template_registry import TemplateRegistry

USER = "0x1111111111111111111111111111111111111111"
OTHER_USER = "0x2222222222222222222222222222222222222222"
ISSUER = "0x3333333333333333333333333333333333333333"
NOW = 1_700_000_000


def make_template(template_id: int = 1, **overrides) -> Template:
    data = {
        "template_id": template_id,
        "title": f"Template {template_id}",
        "issuer": ISSUER,
        "category": "Education",
        "description": "Completed a course",
        "max_supply": 100,
        "current_supply": 0,
    }
    data.update(overrides)
    return Template(**data)


def tx_hash_for(n: int) -> str:
    return "0x" + format(n, "064x")


class FakeClock:
    def __init__(self, now: float = float(NOW)):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSigner:
    def __init__(self, address: str = USER):
        self.address = address
        self.signed = []

    async def sign_transaction(self, transaction):
        self.signed.append(transaction)
        return b"\x01"


class FakeChainReader:
    """In-memory contract accessor with failure injection."""

    def __init__(self, chain_id: int = 1287):
        self.chain_id = chain_id
        self.templates: Dict[int, Template] = {}
        self.enumerable = True
        self.failing_ids: Set[int] = set()
        self.claimed: Set[Tuple[int, str]] = set()
        self.events: List[ClaimEvent] = []
        self.block_number = 100
        self.block_number_errors: List[Exception] = []
        self.template_calls: Counter = Counter()
        self.log_queries: List[Tuple[str, int, int]] = []
        self.log_query_error: Optional[Exception] = None

        self.estimate = GasEstimate(
            gas_limit=120_000,
            gas_price_wei=1_000_000_000,
            cost_wei=120_000_000_000_000,
            cost_eth="0.00012",
        )
        self.estimate_error: Optional[Exception] = None
        self.estimate_delay = 0.0

        self.submissions: List[Tuple[int, str]] = []
        self.submit_error: Optional[Exception] = None
        self.confirm_gate: Optional[asyncio.Event] = None
        self.confirm_error: Optional[Exception] = None
        self._pending: Dict[str, Tuple[int, str]] = {}
        self._next_card_id = 1000

    def add_template(self, template: Template) -> Template:
        self.templates[template.template_id] = template
        return template

    def add_event(
        self,
        template_id: int,
        claimer: str,
        tx_hash: str,
        block_number: int,
        timestamp: int = NOW,
        card_id: Optional[int] = None,
    ) -> ClaimEvent:
        self._next_card_id += 1
        event = ClaimEvent(
            template_id=template_id,
            card_id=card_id if card_id is not None else self._next_card_id,
            claimer=claimer,
            timestamp=timestamp,
            tx_hash=tx_hash,
            block_number=block_number,
        )
        self.events.append(event)
        return event

    async def get_template(self, template_id: int) -> Template:
        self.template_calls[template_id] += 1
        await asyncio.sleep(0)
        if template_id in self.failing_ids:
            raise RpcError(message="Blockchain connection error. Please try again.")
        template = self.templates.get(template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    async def supports_enumeration(self) -> bool:
        return self.enumerable

    async def get_all_template_ids(self) -> List[int]:
        if not self.enumerable:
            raise RpcError(message="Failed to read template ids")
        return sorted(self.templates)

    async def has_claimed(self, template_id: int, user_address: str) -> bool:
        return (template_id, user_address.lower()) in self.claimed

    async def is_eligible_to_claim(self, template_id: int, user_address: str) -> bool:
        return False

    async def get_block_number(self) -> int:
        if self.block_number_errors:
            raise self.block_number_errors.pop(0)
        return self.block_number

    async def get_claim_events(self, user_address, from_block, to_block, timeout=None) -> List[ClaimEvent]:
        self.log_queries.append((user_address.lower(), from_block, to_block))
        await asyncio.sleep(0)
        if self.log_query_error is not None:
            raise self.log_query_error
        return [
            event for event in self.events
            if event.claimer.lower() == user_address.lower() and from_block <= event.block_number <= to_block
        ]

    async def estimate_claim_gas(self, template_id, user_address, timeout=None) -> GasEstimate:
        if self.estimate_delay:
            await asyncio.sleep(self.estimate_delay)
        if self.estimate_error is not None:
            raise self.estimate_error
        return self.estimate

    async def submit_claim(self, template_id, signer) -> str:
        self.submissions.append((template_id, signer.address))
        await asyncio.sleep(0)
        if self.submit_error is not None:
            raise self.submit_error
        tx_hash = tx_hash_for(len(self.submissions))
        self._pending[tx_hash] = (template_id, signer.address)
        return tx_hash

    async def wait_for_confirmation(self, tx_hash, poll_interval=None) -> ClaimReceipt:
        if self.confirm_gate is not None:
            await self.confirm_gate.wait()
        if self.confirm_error is not None:
            raise self.confirm_error

        template_id, claimer = self._pending.pop(tx_hash)
        template = self.templates[template_id]
        self.templates[template_id] = template.model_copy(update={"current_supply": template.current_supply + 1})
        self.claimed.add((template_id, claimer.lower()))
        self.block_number += 1
        event = self.add_event(template_id, claimer, tx_hash, self.block_number)
        return ClaimReceipt(tx_hash=tx_hash, block_number=self.block_number, status=1, gas_used=98_000, event=event)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def chain_reader():
    return FakeChainReader()


@pytest.fixture
def metrics():
    return ClaimMetrics()


@pytest.fixture
def registry(chain_reader, clock, metrics):
    return TemplateRegistry(
        chain_reader,
        ttl_seconds=300,
        concurrency=3,
        strategy="enumerate",
        clock=clock,
        metrics=metrics,
    )


@pytest.fixture
def membership():
    return StaticMembershipProvider()


@pytest.fixture
def eligibility(registry, chain_reader, membership):
    return EligibilityService(registry, chain_reader, membership)


@pytest.fixture
def claim_store():
    return InMemoryClaimLogStore()


@pytest.fixture
def synchronizer(chain_reader, claim_store, registry, metrics):
    return ClaimHistorySynchronizer(
        chain_reader,
        claim_store,
        registry=registry,
        start_block=0,
        poll_interval=0.01,
        reconnect_delay=0.01,
        max_catchup_blocks=1000,
        metrics=metrics,
    )


@pytest.fixture
def claim_controller(chain_reader, eligibility, registry, synchronizer, metrics):
    return ClaimController(
        chain_reader,
        eligibility,
        registry,
        synchronizer=synchronizer,
        estimate_timeout=1.0,
        poll_interval=0,
        metrics=metrics,
    )


@pytest.fixture
def engine(chain_reader, membership, metrics):
    return CollectibleEngine(
        chain_reader=chain_reader,
        store=InMemoryClaimLogStore(),
        membership_provider=membership,
        metrics=metrics,
    )


@pytest.fixture
def client(engine):
    with TestClient(create_app(engine=engine)) as test_client:
        yield test_client
