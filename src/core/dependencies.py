"""
Engine wiring and FastAPI dependency injection functions.
Components are constructed once per process and shared through ``app.state.engine``.
"""

from typing import Optional

from fastapi import Depends, Request

from src.api.controller.collectible.collectible_controller import CollectibleController
from src.api.utils.metrics import ClaimMetrics, get_metrics
from src.core.logger.logger import get_logger
from src.core.service.collectible.cache.claim_log_store import ClaimLogStore, InMemoryClaimLogStore
from src.core.service.collectible.cache.template_store import TemplateSnapshotStore
from src.core.service.collectible.chain_reader import ChainReader
from src.core.service.collectible.claim_controller import ClaimController
from src.core.service.collectible.eligibility import ChainMembershipProvider, EligibilityService, MembershipProvider
from src.core.service.collectible.history_sync import ClaimHistorySynchronizer
from src.core.service.collectible.price_feed import EthUsdPriceFeed
from src.core.service.collectible.template_registry import TemplateRegistry
from src.core.service.collectible.trending import TrendingService
from src.infra.config.redis import close_redis, get_redis
from src.infra.config.settings import get_settings
from src.infra.database import DatabaseManager, get_database_manager
from src.infra.repository.claim_history_repository import ClaimHistoryRepository

logger = get_logger(__name__)
settings = get_settings()


class CollectibleEngine:
    """Every engine component, constructed once and injected into dependents"""

    def __init__(
        self,
        chain_reader: ChainReader,
        store: ClaimLogStore,
        snapshot_store: Optional[TemplateSnapshotStore] = None,
        membership_provider: Optional[MembershipProvider] = None,
        price_feed: Optional[EthUsdPriceFeed] = None,
        metrics: Optional[ClaimMetrics] = None,
        database_manager: Optional[DatabaseManager] = None,
        owns_redis: bool = False,
    ):
        self.metrics = metrics or get_metrics()
        self.chain_reader = chain_reader
        self.store = store
        self.price_feed = price_feed
        self.database_manager = database_manager
        self.owns_redis = owns_redis

        self.registry = TemplateRegistry(chain_reader, snapshot_store=snapshot_store, metrics=self.metrics)
        self.eligibility = EligibilityService(
            self.registry,
            chain_reader,
            membership_provider or ChainMembershipProvider(chain_reader),
        )
        self.synchronizer = ClaimHistorySynchronizer(
            chain_reader, store, registry=self.registry, metrics=self.metrics
        )
        self.controller = ClaimController(
            chain_reader,
            self.eligibility,
            self.registry,
            synchronizer=self.synchronizer,
            price_feed=price_feed,
            metrics=self.metrics,
        )
        self.trending = TrendingService()

    async def close(self) -> None:
        await self.synchronizer.stop_all()
        if self.price_feed is not None:
            await self.price_feed.close()
        if self.database_manager is not None:
            await self.database_manager.close()
        if self.owns_redis:
            await close_redis()


async def build_engine() -> CollectibleEngine:
    """
    Construct the engine from settings.

    Redis is optional: without it the registry keeps its snapshot in process only.
    The claim log uses the database unless CLAIM_STORE_BACKEND is "memory".
    """
    snapshot_store = None
    try:
        redis_client = await get_redis()
        snapshot_store = TemplateSnapshotStore(redis_client, settings.TEMPLATE_CACHE_TTL_SECONDS)
    except Exception as e:
        logger.warning("Template snapshot store disabled, Redis unavailable", extra={"error": str(e)})

    database_manager = None
    if settings.CLAIM_STORE_BACKEND == "memory":
        store: ClaimLogStore = InMemoryClaimLogStore()
    else:
        database_manager = get_database_manager()
        await database_manager.connect()
        store = ClaimHistoryRepository(database_manager.get_session_factory())

    logger.info(
        "Collectible engine built",
        extra={
            "chain_id": settings.CHAIN_ID,
            "contract": settings.COLLECTIBLE_CONTRACT_ADDRESS,
            "claim_store": settings.CLAIM_STORE_BACKEND,
            "snapshot_store": snapshot_store is not None,
        }
    )
    return CollectibleEngine(
        chain_reader=ChainReader(),
        store=store,
        snapshot_store=snapshot_store,
        price_feed=EthUsdPriceFeed() if settings.ETH_USD_PRICE_URL else None,
        database_manager=database_manager,
        owns_redis=snapshot_store is not None,
    )


def get_engine(request: Request) -> CollectibleEngine:
    """Get the process-wide engine from app state."""
    return request.app.state.engine


def get_collectible_controller(engine: CollectibleEngine = Depends(get_engine)) -> CollectibleController:
    """Get the HTTP controller over the engine."""
    return CollectibleController(engine)
