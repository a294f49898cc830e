"""
Claim log database connection with SQLAlchemy ORM
"""

from typing import Optional, Dict, Any
from functools import lru_cache
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker, AsyncEngine

from src.infra.config.settings import get_settings
from src.infra.models import Base
from src.core.logger.logger import get_logger

logger = get_logger(__name__)
settings = get_settings()


class DatabaseManager:
    """SQLAlchemy async database manager"""

    def __init__(self, database_url: Optional[str] = None):
        self._database_url = database_url
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None

    def _build_database_url(self) -> str:
        """DATABASE_URL when set, otherwise PostgreSQL from the POSTGRES_* settings"""
        if self._database_url or settings.DATABASE_URL:
            return self._database_url or settings.DATABASE_URL
        return (
            f"postgresql+asyncpg://{settings.POSTGRES_USER}:{settings.POSTGRES_PASSWORD}"
            f"@{settings.POSTGRES_HOST}:{settings.POSTGRES_PORT}/{settings.POSTGRES_DB}"
        )

    def _engine_options(self, database_url: str) -> Dict[str, Any]:
        if not database_url.startswith("postgresql"):
            return {"echo": settings.DB_LOGGING_ENABLED}
        return {
            "echo": settings.DB_LOGGING_ENABLED,
            "pool_pre_ping": True,
            "pool_size": settings.POSTGRES_MIN_POOL_SIZE,
            "max_overflow": settings.POSTGRES_MAX_POOL_SIZE - settings.POSTGRES_MIN_POOL_SIZE,
            "pool_recycle": 3600,
        }

    async def connect(self) -> AsyncEngine:
        """Initialize database engine, session factory and tables"""
        if self._engine is not None:
            return self._engine

        database_url = self._build_database_url()
        dialect = database_url.split(":", 1)[0]
        try:
            self._engine = create_async_engine(database_url, **self._engine_options(database_url))

            self._session_factory = async_sessionmaker(
                self._engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False
            )

            async with self._engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
                await conn.run_sync(Base.metadata.create_all)

            logger.info(
                "Connected to claim log database successfully",
                extra={
                    "dialect": dialect,
                    "tables": sorted(Base.metadata.tables),
                }
            )
            return self._engine

        except Exception as e:
            logger.error(
                "Failed to connect to claim log database",
                extra={"dialect": dialect, "error": str(e)}
            )
            self._engine = None
            self._session_factory = None
            raise

    async def close(self):
        """Close database engine"""
        if self._engine is not None:
            try:
                await self._engine.dispose()
                logger.info("Database engine closed")
            except Exception as e:
                logger.error(f"Error closing database engine: {e}")
            finally:
                self._engine = None
                self._session_factory = None

    def get_engine(self) -> Optional[AsyncEngine]:
        """Get the current engine"""
        return self._engine

    def get_session_factory(self) -> Optional[async_sessionmaker]:
        """Get the session factory"""
        return self._session_factory


@lru_cache()
def get_database_manager() -> DatabaseManager:
    """Get the global database manager instance (cached)"""
    return DatabaseManager()


