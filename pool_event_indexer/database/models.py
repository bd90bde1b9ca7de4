"""
SQLAlchemy database models for the pool event indexer.
"""

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class IndexerCheckpointModel(Base):
    """Resumable progress per (domain, pid)."""

    __tablename__ = "indexer_checkpoints"

    domain = Column(String(64), primary_key=True)
    pid = Column(Integer, primary_key=True)
    indexer_name = Column(String(128), nullable=False)
    genesis_block = Column(BigInteger, nullable=False, default=0)
    last_indexed_block = Column(BigInteger, nullable=False, default=0)
    target_block = Column(BigInteger)
    status = Column(String(16), nullable=False, default="idle")  # idle, running, complete, error
    total_events_indexed = Column(BigInteger, nullable=False, default=0)
    last_error = Column(Text)
    created_at = Column(DateTime, default=func.current_timestamp())
    updated_at = Column(DateTime, default=func.current_timestamp(), onupdate=func.current_timestamp())


class IndexedEventModel(Base):
    """Decoded chain events."""

    __tablename__ = "indexed_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    domain = Column(String(64), nullable=False)
    pid = Column(Integer, nullable=False)
    block_number = Column(BigInteger, nullable=False)
    tx_hash = Column(String(66), nullable=False)
    log_index = Column(Integer, nullable=False)
    event_type = Column(String(64), nullable=False)
    wallet = Column(String(42))
    amount = Column(String(80))  # uint256 does not fit a numeric column portably
    payload_json = Column(Text, default="{}")
    created_at = Column(DateTime, default=func.current_timestamp())

    # Re-scanning a block must not duplicate rows
    __table_args__ = (
        UniqueConstraint('domain', 'pid', 'tx_hash', 'log_index', name='uq_indexed_events_log'),
        Index('ix_indexed_events_domain_pid_block', 'domain', 'pid', 'block_number'),
    )


class StakerPositionModel(Base):
    """Staked balance and latest stake activity per wallet and pool."""

    __tablename__ = "staker_positions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    domain = Column(String(64), nullable=False)
    pid = Column(Integer, nullable=False)
    wallet = Column(String(42), nullable=False)
    last_activity_type = Column(String(32), nullable=False)
    last_activity_amount = Column(String(80))
    last_activity_block = Column(BigInteger, nullable=False)
    last_activity_tx_hash = Column(String(66))
    staked_lp = Column(String(80), nullable=False, default="0")  # Deposits minus withdrawals since the last emergency withdraw
    updated_at = Column(DateTime, default=func.current_timestamp(), onupdate=func.current_timestamp())

    __table_args__ = (
        UniqueConstraint('domain', 'pid', 'wallet', name='uq_staker_positions_wallet'),
    )
