"""
Claim history repository using SQLAlchemy ORM
"""

from typing import List, Optional
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from src.infra.models import ClaimHistoryModel, ClaimSyncCheckpointModel
from src.core.service.collectible.models import ClaimHistoryEntry, ClaimLogQuery
from src.core.logger.logger import get_logger

logger = get_logger(__name__)


class ClaimHistoryRepository:
    """Persisted claim log keyed on the claim idempotency key"""

    def __init__(self, session_factory: async_sessionmaker):
        # One short session per operation; the synchronizer outlives any request scope
        self.session_factory = session_factory

    async def upsert(self, key: str, row: ClaimHistoryEntry) -> bool:
        """
        Insert a claim unless its key already exists

        Args:
            key: Idempotency key
            row: Claim entry to store

        Returns:
            True if a row was inserted, False if the key was already present
        """
        async with self.session_factory() as session:
            existing = await session.scalar(select(ClaimHistoryModel.seq).where(ClaimHistoryModel.id == key))
            if existing is not None:
                return False

            session.add(ClaimHistoryModel(
                id=key,
                template_id=row.template_id,
                card_id=row.card_id,
                user_address=row.user_address.lower(),
                tx_hash=row.tx_hash.lower(),
                block_number=row.block_number,
                timestamp=row.timestamp,
                chain_id=row.chain_id,
                category=row.category,
                rarity_tier=row.rarity_tier,
                collectible_data=row.collectible_data,
            ))
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent ingest inserted the same key first
                await session.rollback()
                logger.debug("Claim already stored by a concurrent ingest", extra={"entry_id": key})
                return False
            except Exception as e:
                await session.rollback()
                logger.error(
                    "Failed to store claim history entry",
                    extra={"entry_id": key, "tx_hash": row.tx_hash, "error": str(e)}
                )
                raise
        return True

    async def query(self, query: ClaimLogQuery) -> List[ClaimHistoryEntry]:
        stmt = select(ClaimHistoryModel)
        if query.user_address:
            stmt = stmt.where(ClaimHistoryModel.user_address == query.user_address.lower())
        if query.since_timestamp is not None:
            stmt = stmt.where(ClaimHistoryModel.timestamp >= query.since_timestamp)

        filters = query.filters
        if filters.category is not None:
            stmt = stmt.where(ClaimHistoryModel.category == filters.category)
        if filters.rarity_tier is not None:
            stmt = stmt.where(ClaimHistoryModel.rarity_tier == int(filters.rarity_tier))
        if filters.template_id is not None:
            stmt = stmt.where(ClaimHistoryModel.template_id == filters.template_id)
        if filters.start_time is not None:
            stmt = stmt.where(ClaimHistoryModel.timestamp >= filters.start_time)
        if filters.end_time is not None:
            stmt = stmt.where(ClaimHistoryModel.timestamp <= filters.end_time)

        order = (ClaimHistoryModel.timestamp, ClaimHistoryModel.block_number, ClaimHistoryModel.seq)
        stmt = stmt.order_by(*(column.desc() if query.reverse else column.asc() for column in order))
        if query.offset:
            stmt = stmt.offset(query.offset)
        if query.limit is not None:
            stmt = stmt.limit(query.limit)

        async with self.session_factory() as session:
            result = await session.scalars(stmt)
            return [self._to_entry(model) for model in result.all()]

    async def get_checkpoint(self, user_address: str) -> Optional[int]:
        async with self.session_factory() as session:
            return await session.scalar(
                select(ClaimSyncCheckpointModel.block_number)
                .where(ClaimSyncCheckpointModel.user_address == user_address.lower())
            )

    async def save_checkpoint(self, user_address: str, block_number: int) -> None:
        """
        Move the user's scan checkpoint forward

        Args:
            user_address: Claimer address
            block_number: Last block of the scanned range
        """
        user = user_address.lower()
        async with self.session_factory() as session:
            checkpoint = await session.get(ClaimSyncCheckpointModel, user)
            if checkpoint is None:
                session.add(ClaimSyncCheckpointModel(user_address=user, block_number=block_number))
            elif checkpoint.block_number < block_number:
                checkpoint.block_number = block_number
            else:
                return
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent sync created the row first; keep the higher block
                await session.rollback()
                checkpoint = await session.get(ClaimSyncCheckpointModel, user)
                if checkpoint is not None and checkpoint.block_number < block_number:
                    checkpoint.block_number = block_number
                    await session.commit()

    @staticmethod
    def _to_entry(model: ClaimHistoryModel) -> ClaimHistoryEntry:
        return ClaimHistoryEntry(
            id=model.id,
            template_id=model.template_id,
            card_id=model.card_id,
            user_address=model.user_address,
            tx_hash=model.tx_hash,
            block_number=model.block_number,
            timestamp=model.timestamp,
            chain_id=model.chain_id,
            collectible_data=model.collectible_data or {},
        )
