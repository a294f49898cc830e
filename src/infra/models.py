"""
SQLAlchemy ORM models for database tables
"""

from sqlalchemy import BigInteger, Column, DateTime, Integer, JSON, String, Index
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class ClaimHistoryModel(Base):
    """SQLAlchemy ORM model for claim_history table"""

    __tablename__ = "claim_history"

    # Autoincrement sequence breaks ties between claims sharing a block
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(66), nullable=False)
    template_id = Column(BigInteger, nullable=False)
    card_id = Column(BigInteger, nullable=True)
    user_address = Column(String(42), nullable=False)
    tx_hash = Column(String(66), nullable=False)
    block_number = Column(BigInteger, nullable=False)
    timestamp = Column(BigInteger, nullable=False)
    chain_id = Column(Integer, nullable=False)
    category = Column(String(100), nullable=True)
    rarity_tier = Column(Integer, nullable=True)
    collectible_data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('idx_claim_history_id', 'id', unique=True),
        Index('idx_claim_history_user', 'user_address'),
        Index('idx_claim_history_user_block', 'user_address', 'block_number'),
        Index('idx_claim_history_timestamp', 'timestamp'),
        Index('idx_claim_history_template', 'template_id'),
    )

    def __repr__(self):
        return f"<ClaimHistory(user='{self.user_address}', template_id={self.template_id}, tx='{self.tx_hash}')>"


class ClaimSyncCheckpointModel(Base):
    """SQLAlchemy ORM model for claim_sync_checkpoint table"""

    __tablename__ = "claim_sync_checkpoint"

    # Last block of the contiguous range scanned by a range sync for this user
    user_address = Column(String(42), primary_key=True)
    block_number = Column(BigInteger, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<ClaimSyncCheckpoint(user='{self.user_address}', block={self.block_number})>"
