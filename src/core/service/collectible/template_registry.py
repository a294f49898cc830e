"""
Template registry cache.

Keeps an immutable snapshot of every known template and swaps it whole on refresh,
so concurrent readers never see a half-updated set. Staleness is bounded by a TTL;
single ids can be invalidated after a claim changes their supply.
"""

import asyncio
import time
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, NamedTuple, Optional, Set, Tuple, Union

from src.core.exceptions.base import RpcError, TemplateNotFoundError
from src.core.exceptions.handler import ServiceError
from src.core.logger.logger import get_logger
from src.core.service.collectible.cache.template_store import TemplateSnapshotStore
from src.core.service.collectible.chain_reader import ChainReader
from src.core.service.collectible.models import Template
from src.infra.config.settings import get_settings

logger = get_logger(__name__)
settings = get_settings()

DISCOVERY_STRATEGIES = ("enumerate", "probe", "auto")

FetchResult = Union[Template, BaseException]


class _Snapshot(NamedTuple):
    templates: Tuple[Template, ...]
    by_id: Mapping[int, Template]
    fetched_at: float


def _build_snapshot(templates: Iterable[Template], fetched_at: float) -> _Snapshot:
    ordered = tuple(sorted(templates, key=lambda t: t.template_id))
    return _Snapshot(ordered, MappingProxyType({t.template_id: t for t in ordered}), fetched_at)


class TemplateRegistry:
    """TTL cache over the on-chain template set"""

    def __init__(
        self,
        chain_reader: ChainReader,
        snapshot_store: Optional[TemplateSnapshotStore] = None,
        ttl_seconds: Optional[float] = None,
        concurrency: Optional[int] = None,
        strategy: Optional[str] = None,
        probe_max_id: Optional[int] = None,
        probe_max_consecutive_empty: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        metrics=None,
    ):
        self.chain_reader = chain_reader
        self.snapshot_store = snapshot_store
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.TEMPLATE_CACHE_TTL_SECONDS
        self.concurrency = max(1, concurrency or settings.TEMPLATE_FETCH_CONCURRENCY)
        self.strategy = strategy or settings.TEMPLATE_DISCOVERY_STRATEGY
        if self.strategy not in DISCOVERY_STRATEGIES:
            raise ValueError(f"Unknown template discovery strategy: {self.strategy}")
        self.probe_max_id = probe_max_id or settings.TEMPLATE_PROBE_MAX_ID
        self.probe_max_consecutive_empty = max(
            1, probe_max_consecutive_empty or settings.TEMPLATE_PROBE_MAX_CONSECUTIVE_EMPTY
        )
        self.clock = clock
        self.metrics = metrics

        self._snapshot: Optional[_Snapshot] = None
        self._stale_ids: Set[int] = set()
        self._expired = False
        self._generation = 0
        self._warmed = snapshot_store is None
        self._refresh_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    @property
    def last_refreshed_at(self) -> Optional[float]:
        return self._snapshot.fetched_at if self._snapshot else None

    def _age(self) -> Optional[float]:
        if self._snapshot is None:
            return None
        return self.clock() - self._snapshot.fetched_at

    def _is_fresh(self) -> bool:
        age = self._age()
        return age is not None and age < self.ttl_seconds and not self._expired

    async def get_all(self, force_refresh: bool = False) -> List[Template]:
        """
        All known templates, ordered by id.

        Served from the snapshot while it is younger than the TTL; otherwise (or when
        ``force_refresh``) the full set is re-read from chain.

        Raises:
            RpcError: the refresh failed and no previous snapshot exists
        """
        if not force_refresh:
            if not self._warmed:
                await self._warm_from_store()
            if self._is_fresh():
                if self._stale_ids:
                    await self._refresh_stale()
                self._record("record_cache_hit")
                return list(self._snapshot.templates)

        self._record("record_cache_miss")
        generation = self._generation
        async with self._refresh_lock:
            # Another caller refreshed while this one waited for the lock
            if self._generation != generation and self._snapshot is not None:
                return list(self._snapshot.templates)
            await self._refresh()
        return list(self._snapshot.templates)

    async def get_template(self, template_id: int, fresh: bool = False) -> Template:
        """
        One template by id.

        With ``fresh`` the chain is always consulted and the result swapped into the
        snapshot. Without it, a cached copy is returned when present and current; an RPC
        failure then falls back to the cached copy.
        """
        snapshot = self._snapshot
        cached = snapshot.by_id.get(template_id) if snapshot else None
        if not fresh and cached is not None and self._is_fresh() and template_id not in self._stale_ids:
            self._record("record_cache_hit")
            return cached

        try:
            template = await self.chain_reader.get_template(template_id)
        except TemplateNotFoundError:
            self._replace_in_snapshot(template_id, None)
            raise
        except RpcError:
            if cached is not None and not fresh:
                logger.warning(
                    "Serving cached template after RPC failure",
                    extra={"template_id": template_id, "age_seconds": self._age()}
                )
                self._record("record_stale_served")
                return cached
            raise

        self._replace_in_snapshot(template_id, template)
        return template

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    async def invalidate(self, template_id: int) -> None:
        """Force ``template_id`` to be re-read on the next access."""
        self._stale_ids.add(template_id)
        if self.snapshot_store is not None:
            await self.snapshot_store.delete_template(template_id)
        logger.debug("Template invalidated", extra={"template_id": template_id})

    async def invalidate_all(self) -> None:
        self._expired = True
        if self.snapshot_store is not None:
            await self.snapshot_store.clear()

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def _warm_from_store(self) -> None:
        self._warmed = True
        loaded = await self.snapshot_store.load_snapshot()
        if loaded is None:
            return
        templates, fetched_at = loaded
        if self.clock() - fetched_at >= self.ttl_seconds:
            return
        self._snapshot = _build_snapshot(templates, fetched_at)
        logger.info(
            "Template registry warmed from snapshot store",
            extra={"template_count": len(templates), "age_seconds": round(self.clock() - fetched_at, 1)}
        )

    async def _refresh(self) -> None:
        started = self.clock()
        try:
            templates, failures = await self._discover()
        except ServiceError as e:
            self._fallback_or_raise(e)
            return

        if failures and not templates:
            self._fallback_or_raise(RpcError(
                message="Failed to load collectible templates. Please try again.",
                details={"failed_ids": sorted(failures)}
            ))
            return

        if failures:
            logger.warning(
                "Partial template refresh",
                extra={
                    "loaded": len(templates),
                    "failed_ids": sorted(failures),
                    "errors": {i: str(e)[:200] for i, e in failures.items()},
                }
            )

        fetched_at = self.clock()
        self._snapshot = _build_snapshot(templates, fetched_at)
        self._stale_ids.clear()
        self._expired = False
        self._generation += 1
        self._record("record_cache_refresh", True, len(templates))

        logger.info(
            "Template registry refreshed",
            extra={
                "template_count": len(templates),
                "failed_count": len(failures),
                "duration_ms": round((fetched_at - started) * 1000, 2),
            }
        )

        if self.snapshot_store is not None:
            await self.snapshot_store.save_snapshot(list(self._snapshot.templates), fetched_at)

    def _fallback_or_raise(self, error: ServiceError) -> None:
        self._record("record_cache_refresh", False, 0)
        if self._snapshot is None:
            logger.error("Template refresh failed with no cached snapshot", extra={"error_code": error.code})
            raise error
        logger.warning(
            "Template refresh failed, serving previous snapshot",
            extra={"error_code": error.code, "age_seconds": self._age()}
        )
        self._record("record_stale_served")

    async def _refresh_stale(self) -> None:
        stale = sorted(self._stale_ids)
        results = await self._fetch_many(stale)
        for template_id, result in zip(stale, results):
            if isinstance(result, Template):
                self._replace_in_snapshot(template_id, result)
            elif isinstance(result, TemplateNotFoundError):
                self._replace_in_snapshot(template_id, None)
            else:
                logger.warning(
                    "Stale template re-fetch failed, keeping previous copy",
                    extra={"template_id": template_id, "error": str(result)[:200]}
                )

    def _replace_in_snapshot(self, template_id: int, template: Optional[Template]) -> None:
        self._stale_ids.discard(template_id)
        snapshot = self._snapshot
        if snapshot is None:
            return
        templates: Dict[int, Template] = dict(snapshot.by_id)
        if template is None:
            if template_id not in templates:
                return
            del templates[template_id]
        else:
            templates[template_id] = template
        self._snapshot = _build_snapshot(templates.values(), snapshot.fetched_at)

    async def _discover(self) -> Tuple[List[Template], Dict[int, BaseException]]:
        strategy = self.strategy
        if strategy == "auto":
            strategy = "enumerate" if await self.chain_reader.supports_enumeration() else "probe"

        if strategy == "enumerate":
            template_ids = await self.chain_reader.get_all_template_ids()
            return self._partition(template_ids, await self._fetch_many(template_ids))
        return await self._probe()

    async def _probe(self) -> Tuple[List[Template], Dict[int, BaseException]]:
        """Sequential discovery from id 1 until enough consecutive NotFound results or the hard cap."""
        templates: List[Template] = []
        failures: Dict[int, BaseException] = {}
        consecutive_empty = 0

        for batch_start in range(1, self.probe_max_id + 1, self.concurrency):
            batch = list(range(batch_start, min(batch_start + self.concurrency, self.probe_max_id + 1)))
            results = await self._fetch_many(batch)
            for template_id, result in zip(batch, results):
                if isinstance(result, Template):
                    templates.append(result)
                    consecutive_empty = 0
                elif isinstance(result, TemplateNotFoundError):
                    consecutive_empty += 1
                    if consecutive_empty >= self.probe_max_consecutive_empty:
                        return templates, failures
                else:
                    failures[template_id] = result

        logger.warning("Template probing reached the id cap", extra={"probe_max_id": self.probe_max_id})
        return templates, failures

    @staticmethod
    def _partition(
        template_ids: List[int], results: List[FetchResult]
    ) -> Tuple[List[Template], Dict[int, BaseException]]:
        templates = []
        failures = {}
        for template_id, result in zip(template_ids, results):
            if isinstance(result, Template):
                templates.append(result)
            elif not isinstance(result, TemplateNotFoundError):
                failures[template_id] = result
        return templates, failures

    async def _fetch_many(self, template_ids: List[int]) -> List[FetchResult]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _fetch(template_id: int) -> Template:
            async with semaphore:
                return await self.chain_reader.get_template(template_id)

        return await asyncio.gather(*(_fetch(i) for i in template_ids), return_exceptions=True)

    def _record(self, method: str, *args) -> None:
        if self.metrics is not None:
            getattr(self.metrics, method)(*args)
