"""
Claim history synchronizer.

Maintains an append-only, deduplicated log of CollectibleClaimed events per user.
Every ingest path (range sync, live listener, eager ingest after a confirmed claim)
goes through the same idempotent upsert keyed on (template id, user, tx hash).
"""

import asyncio
import inspect
import time
from collections import Counter
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from web3 import Web3

from src.core.exceptions.base import ListenerGapError
from src.core.exceptions.handler import ServiceError
from src.core.logger.logger import get_logger
from src.core.service.collectible.cache.claim_log_store import ClaimLogStore
from src.core.service.collectible.chain_reader import ChainReader
from src.core.service.collectible.models import (
    ClaimEvent,
    ClaimHistoryEntry,
    ClaimHistoryFilters,
    ClaimHistoryStats,
    ClaimLogQuery,
    RarityTier,
    SyncResult,
)
from src.core.service.collectible.template_registry import TemplateRegistry
from src.infra.config.settings import get_settings

logger = get_logger(__name__)
settings = get_settings()

ClaimListener = Callable[[ClaimHistoryEntry], Union[None, Awaitable[None]]]

SNAPSHOT_FIELDS = {
    "template_id", "title", "category", "description", "rarity_tier",
    "tier", "issuer", "max_supply", "metadata_uri",
}


def claim_idempotency_key(template_id: int, user_address: str, tx_hash: str) -> str:
    """keccak256 of "<templateId>-<user lowercase>-<txHash lowercase>", hex encoded."""
    return Web3.to_hex(Web3.keccak(text=f"{template_id}-{user_address.lower()}-{tx_hash.lower()}"))


class ClaimSubscription:
    """Handle for a running claim listener. The holder must call ``stop()``."""

    def __init__(self, user_address: str):
        self.user_address = user_address
        self.last_block: Optional[int] = None
        self.last_gap: Optional[ListenerGapError] = None
        self.gap_count = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        logger.info("Claim listener stopped", extra={"user_address": self.user_address, "last_block": self.last_block})


class ClaimHistorySynchronizer:
    """Ingests claim events into a ClaimLogStore and folds statistics from it"""

    def __init__(
        self,
        chain_reader: ChainReader,
        store: ClaimLogStore,
        registry: Optional[TemplateRegistry] = None,
        start_block: Optional[int] = None,
        poll_interval: Optional[float] = None,
        reconnect_delay: Optional[float] = None,
        max_catchup_blocks: Optional[int] = None,
        metrics=None,
    ):
        self.chain_reader = chain_reader
        self.store = store
        self.registry = registry
        self.start_block = start_block if start_block is not None else settings.HISTORY_START_BLOCK
        self.poll_interval = poll_interval if poll_interval is not None else settings.HISTORY_POLL_INTERVAL_SECONDS
        self.reconnect_delay = (
            reconnect_delay if reconnect_delay is not None else settings.HISTORY_RECONNECT_DELAY_SECONDS
        )
        self.max_catchup_blocks = max_catchup_blocks or settings.HISTORY_MAX_CATCHUP_BLOCKS
        self.metrics = metrics

        self._subscriptions: Dict[str, ClaimSubscription] = {}
        self._listeners: List[ClaimListener] = []

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: ClaimListener) -> Callable[[], None]:
        """Call ``listener`` with every newly ingested entry. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def _notify(self, entry: ClaimHistoryEntry) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(entry)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "Claim history listener failed",
                    extra={"entry_id": entry.id, "error": str(e)},
                    exc_info=True,
                )

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def _collectible_snapshot(self, template_id: int) -> Dict[str, Any]:
        if self.registry is None:
            return {"template_id": template_id}
        try:
            template = await self.registry.get_template(template_id)
        except ServiceError as e:
            logger.warning(
                "Template snapshot unavailable for claim entry",
                extra={"template_id": template_id, "error_code": e.code}
            )
            return {"template_id": template_id}
        return template.model_dump(mode="json", include=SNAPSHOT_FIELDS)

    async def ingest_event(self, event: ClaimEvent) -> Optional[ClaimHistoryEntry]:
        """Upsert one decoded event. Returns the entry when it was new, None for a duplicate."""
        key = claim_idempotency_key(event.template_id, event.claimer, event.tx_hash)
        entry = ClaimHistoryEntry(
            id=key,
            template_id=event.template_id,
            card_id=event.card_id,
            user_address=event.claimer.lower(),
            tx_hash=event.tx_hash.lower(),
            block_number=event.block_number,
            timestamp=event.timestamp,
            chain_id=self.chain_reader.chain_id,
            collectible_data=await self._collectible_snapshot(event.template_id),
        )

        if not await self.store.upsert(key, entry):
            logger.debug("Duplicate claim event skipped", extra={"entry_id": key, "tx_hash": entry.tx_hash})
            return None

        if self.metrics is not None:
            self.metrics.record_events_ingested(1)
        logger.info(
            "Claim event ingested",
            extra={
                "entry_id": key,
                "template_id": entry.template_id,
                "user_address": entry.user_address,
                "tx_hash": entry.tx_hash,
                "block_number": entry.block_number,
            }
        )
        await self._notify(entry)
        return entry

    async def _resume_block(self, user_address: str) -> int:
        checkpoint = await self.store.get_checkpoint(user_address)
        if checkpoint is not None:
            return checkpoint + 1
        return self.start_block

    async def _advance_checkpoint(self, user_address: str, from_block: int, to_block: int) -> None:
        # Only a range joining the scanned prefix extends it. Stored rows never move it
        checkpoint = await self.store.get_checkpoint(user_address)
        scanned_to = checkpoint if checkpoint is not None else self.start_block - 1
        if from_block <= scanned_to + 1 and to_block > scanned_to:
            await self.store.save_checkpoint(user_address, to_block)

    async def sync(
        self,
        user_address: str,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> SyncResult:
        """
        Ingest the user's claim events over [from_block, to_block].

        Defaults resume after the persisted scan checkpoint (or ``start_block``) and run to
        the chain head. Re-running over the same range inserts nothing new.

        Raises:
            RpcError: the log query failed or exceeded ``timeout``
        """
        user = Web3.to_checksum_address(user_address)
        if to_block is None:
            to_block = await self.chain_reader.get_block_number()
        if from_block is None:
            from_block = await self._resume_block(user)

        events = await self.chain_reader.get_claim_events(user, from_block, to_block, timeout=timeout)
        new_entries = 0
        for event in events:
            if await self.ingest_event(event) is not None:
                new_entries += 1

        await self._advance_checkpoint(user, from_block, to_block)

        logger.info(
            "Claim history synced",
            extra={
                "user_address": user,
                "from_block": from_block,
                "to_block": to_block,
                "events_found": len(events),
                "new_entries": new_entries,
            }
        )
        return SyncResult(
            user_address=user,
            from_block=from_block,
            to_block=to_block,
            events_found=len(events),
            new_entries=new_entries,
        )

    # ------------------------------------------------------------------
    # Live listener
    # ------------------------------------------------------------------

    def listen(self, user_address: str) -> ClaimSubscription:
        """
        Start following new claim events for the user.

        Returns the running subscription (an existing one is reused). After a transport
        failure the listener waits ``reconnect_delay`` and catches up over the gap,
        bounded by ``max_catchup_blocks``.
        """
        user = Web3.to_checksum_address(user_address)
        existing = self._subscriptions.get(user.lower())
        if existing is not None and existing.is_active:
            return existing

        subscription = ClaimSubscription(user)
        subscription._task = asyncio.create_task(self._listen_loop(subscription))
        self._subscriptions[user.lower()] = subscription
        logger.info("Claim listener started", extra={"user_address": user})
        return subscription

    async def _listen_loop(self, subscription: ClaimSubscription) -> None:
        user = subscription.user_address
        next_block: Optional[int] = None
        while True:
            try:
                head = await self.chain_reader.get_block_number()
                if next_block is None:
                    next_block = head + 1
                    subscription.last_block = head
                elif head >= next_block:
                    from_block = next_block
                    if head - from_block + 1 > self.max_catchup_blocks:
                        from_block = head - self.max_catchup_blocks + 1
                        logger.warning(
                            "Claim listener catch-up clamped",
                            extra={
                                "user_address": user,
                                "skipped_from": next_block,
                                "skipped_to": from_block - 1,
                            }
                        )
                    await self.sync(user, from_block=from_block, to_block=head)
                    next_block = head + 1
                    subscription.last_block = head
                await asyncio.sleep(self.poll_interval)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                gap = ListenerGapError(from_block=next_block or 0, cause=e)
                subscription.last_gap = gap
                subscription.gap_count += 1
                if self.metrics is not None:
                    self.metrics.record_listener_gap()
                logger.warning(
                    "Claim listener interrupted, catching up after reconnect",
                    extra={
                        "user_address": user,
                        "from_block": gap.from_block,
                        "error_type": type(e).__name__,
                        "error": str(e)[:300],
                    }
                )
                await asyncio.sleep(self.reconnect_delay)

    async def stop_listening(self, user_address: str) -> bool:
        subscription = self._subscriptions.pop(user_address.lower(), None)
        if subscription is None:
            return False
        await subscription.stop()
        return True

    async def stop_all(self) -> None:
        for user in list(self._subscriptions):
            await self.stop_listening(user)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def get_user_claims(
        self,
        user_address: str,
        filters: Optional[ClaimHistoryFilters] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        reverse: bool = False,
    ) -> List[ClaimHistoryEntry]:
        """Stored claims ordered by block time, oldest first unless ``reverse``."""
        return await self.store.query(ClaimLogQuery(
            user_address=user_address.lower(),
            filters=filters or ClaimHistoryFilters(),
            limit=limit,
            offset=offset,
            reverse=reverse,
        ))

    async def get_user_claim_stats(self, user_address: str) -> ClaimHistoryStats:
        entries = await self.get_user_claims(user_address)
        by_category: Counter = Counter()
        by_rarity: Counter = Counter()
        first = latest = None

        for entry in entries:
            by_category[entry.category or "Unknown"] += 1
            rarity = entry.rarity_tier
            by_rarity[RarityTier(rarity).name if rarity is not None else "UNKNOWN"] += 1
            if first is None or entry.timestamp < first.timestamp:
                first = entry
            if latest is None or entry.timestamp >= latest.timestamp:
                latest = entry

        return ClaimHistoryStats(
            user_address=user_address.lower(),
            total_claims=len(entries),
            claims_by_category=dict(by_category),
            claims_by_rarity=dict(by_rarity),
            first_claim=first,
            latest_claim=latest,
        )

    async def get_recent_claim_counts(
        self,
        window_hours: Optional[float] = None,
        now: Optional[int] = None,
    ) -> Dict[int, int]:
        """Per-template claim counts over the trailing window, across all stored users."""
        window = window_hours or settings.TRENDING_WINDOW_HOURS
        now = int(now if now is not None else time.time())
        entries = await self.store.query(ClaimLogQuery(since_timestamp=int(now - window * 3600)))
        return dict(Counter(entry.template_id for entry in entries))
