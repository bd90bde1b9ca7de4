"""
SQLAlchemy implementation of the IndexerStore interface.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func
from sqlalchemy.exc import SQLAlchemyError

from pool_event_indexer.config.models import DatabaseConfig
from pool_event_indexer.database.connection import DatabaseConnection
from pool_event_indexer.database.manager import IndexerStore
from pool_event_indexer.database.models import (
    IndexedEventModel,
    IndexerCheckpointModel,
    StakerPositionModel,
)
from pool_event_indexer.exceptions import PersistError
from pool_event_indexer.models.core import CheckpointStatus, DecodedEvent, IndexerCheckpoint

logger = logging.getLogger(__name__)

STAKE_EVENT_TYPES = frozenset({"Deposit", "Withdraw", "EmergencyWithdraw"})


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class SQLAlchemyIndexerStore(IndexerStore):
    """
    SQLAlchemy implementation of the IndexerStore interface.

    Uses short-lived synchronous sessions; every method runs to completion
    without yielding to the event loop, so a single call is atomic with
    respect to the other worker tasks.
    """

    def __init__(self, config: DatabaseConfig):
        super().__init__(config)
        self.connection = DatabaseConnection(config)

    async def initialize(self) -> None:
        """Initialize database connection and create tables if needed."""
        self.connection.initialize()
        self.connection.create_tables()
        logger.info("SQLAlchemy indexer store initialized")

    async def close(self) -> None:
        self.connection.close()
        logger.info("SQLAlchemy indexer store closed")

    # Checkpoint operations
    async def load_checkpoint(self, domain: str, pid: int) -> Optional[IndexerCheckpoint]:
        with self.connection.get_session() as session:
            row = session.get(IndexerCheckpointModel, (domain, pid))
            if row is None:
                return None

            updated_at = row.updated_at or datetime.utcnow()
            return IndexerCheckpoint(
                domain=row.domain,
                pid=row.pid,
                genesis_block=row.genesis_block,
                last_indexed_block=row.last_indexed_block,
                status=CheckpointStatus(row.status),
                total_events_indexed=row.total_events_indexed or 0,
                last_error=row.last_error,
                target_block=row.target_block,
                updated_at=updated_at.replace(tzinfo=timezone.utc),
            )

    async def save_checkpoint(self, checkpoint: IndexerCheckpoint) -> None:
        with self.connection.get_session() as session:
            try:
                row = session.get(IndexerCheckpointModel, (checkpoint.domain, checkpoint.pid))
                if row is None:
                    row = IndexerCheckpointModel(domain=checkpoint.domain, pid=checkpoint.pid)
                    session.add(row)

                row.indexer_name = checkpoint.indexer_name
                row.genesis_block = checkpoint.genesis_block
                row.last_indexed_block = checkpoint.last_indexed_block
                row.target_block = checkpoint.target_block
                row.status = checkpoint.status.value
                row.total_events_indexed = checkpoint.total_events_indexed
                row.last_error = checkpoint.last_error
                row.updated_at = _naive_utc(checkpoint.updated_at)

                session.commit()

            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Error saving checkpoint {checkpoint.indexer_name}: {e}")
                raise PersistError(f"Failed to save checkpoint: {e}",
                                   domain=checkpoint.domain, pid=checkpoint.pid) from e

    async def reset(self, domain: str, pid: int) -> int:
        with self.connection.get_session() as session:
            try:
                deleted = 0
                for model in (IndexedEventModel, StakerPositionModel, IndexerCheckpointModel):
                    deleted += session.query(model).filter(
                        and_(model.domain == domain, model.pid == pid)
                    ).delete(synchronize_session=False)
                session.commit()

            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Error resetting {domain}/{pid}: {e}")
                raise PersistError(f"Failed to reset indexer: {e}", domain=domain, pid=pid) from e

        logger.info(f"Reset {domain}/{pid}: deleted {deleted} rows")
        return deleted

    # Event operations
    async def persist_events(self, domain: str, pid: int, events: List[DecodedEvent]) -> List[DecodedEvent]:
        if not events:
            return []

        # Collapse duplicates inside the batch first
        unique: Dict[tuple, DecodedEvent] = {}
        for decoded in events:
            unique.setdefault((decoded.tx_hash, decoded.log_index), decoded)

        with self.connection.get_session() as session:
            try:
                tx_hashes = {tx_hash for tx_hash, _ in unique}
                rows = session.query(IndexedEventModel.tx_hash, IndexedEventModel.log_index).filter(
                    and_(
                        IndexedEventModel.domain == domain,
                        IndexedEventModel.pid == pid,
                        IndexedEventModel.tx_hash.in_(tx_hashes),
                    )
                ).all()
                existing = {(row.tx_hash, row.log_index) for row in rows}

                new_events = [
                    decoded for key, decoded in unique.items()
                    if key not in existing
                ]

                for decoded in new_events:
                    session.add(IndexedEventModel(
                        domain=domain,
                        pid=pid,
                        block_number=decoded.block_number,
                        tx_hash=decoded.tx_hash,
                        log_index=decoded.log_index,
                        event_type=decoded.event_type,
                        wallet=decoded.wallet,
                        amount=str(decoded.amount) if decoded.amount is not None else None,
                        payload_json=json.dumps(decoded.payload, default=str),
                    ))

                self._upsert_staker_positions(session, domain, pid, new_events)
                session.commit()

            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Error storing events for {domain}/{pid}: {e}")
                raise PersistError(f"Failed to persist events: {e}", domain=domain, pid=pid) from e

        if len(new_events) < len(events):
            logger.debug(f"Skipped {len(events) - len(new_events)} already stored events for {domain}/{pid}")

        return new_events

    def _upsert_staker_positions(self, session, domain: str, pid: int, events: List[DecodedEvent]) -> None:
        """Refresh the staked balance and latest stake activity of every wallet in the batch."""
        latest: Dict[str, DecodedEvent] = {}
        for decoded in events:
            if decoded.event_type not in STAKE_EVENT_TYPES or not decoded.wallet:
                continue
            current = latest.get(decoded.wallet)
            if current is None or (decoded.block_number, decoded.log_index) > (current.block_number, current.log_index):
                latest[decoded.wallet] = decoded

        for wallet, decoded in latest.items():
            # Workers finish out of order, so the balance is replayed from every stored event
            balance = self._staked_balance(session, domain, pid, wallet)
            position = session.query(StakerPositionModel).filter_by(
                domain=domain, pid=pid, wallet=wallet
            ).first()

            if position is None:
                position = StakerPositionModel(domain=domain, pid=pid, wallet=wallet)
                session.add(position)
            position.staked_lp = str(balance)

            if position.last_activity_block is not None and position.last_activity_block > decoded.block_number:
                continue

            position.last_activity_type = decoded.event_type
            position.last_activity_amount = str(decoded.amount) if decoded.amount is not None else None
            position.last_activity_block = decoded.block_number
            position.last_activity_tx_hash = decoded.tx_hash

    @staticmethod
    def _staked_balance(session, domain: str, pid: int, wallet: str) -> int:
        rows = session.query(IndexedEventModel.event_type, IndexedEventModel.amount).filter(
            and_(
                IndexedEventModel.domain == domain,
                IndexedEventModel.pid == pid,
                IndexedEventModel.wallet == wallet,
                IndexedEventModel.event_type.in_(sorted(STAKE_EVENT_TYPES)),
            )
        ).order_by(IndexedEventModel.block_number, IndexedEventModel.log_index).all()

        balance = 0
        for event_type, amount in rows:
            if event_type == "EmergencyWithdraw":
                balance = 0
            elif event_type == "Deposit":
                balance += int(amount or 0)
            else:
                balance -= int(amount or 0)
        return max(balance, 0)

    async def count_events(self, domain: str, pid: int) -> int:
        with self.connection.get_session() as session:
            return session.query(func.count(IndexedEventModel.id)).filter(
                and_(IndexedEventModel.domain == domain, IndexedEventModel.pid == pid)
            ).scalar() or 0

    async def list_staker_positions(self, domain: str, pid: int) -> List[Dict[str, Any]]:
        with self.connection.get_session() as session:
            rows = session.query(StakerPositionModel).filter(
                and_(StakerPositionModel.domain == domain, StakerPositionModel.pid == pid)
            ).order_by(StakerPositionModel.wallet).all()
            return [_position_dict(row) for row in rows]

    async def list_active_stakers(self, domain: str, pid: int, limit: int = 500) -> List[Dict[str, Any]]:
        with self.connection.get_session() as session:
            rows = session.query(StakerPositionModel).filter(
                and_(
                    StakerPositionModel.domain == domain,
                    StakerPositionModel.pid == pid,
                    StakerPositionModel.staked_lp != "0",
                )
            ).all()

            # uint256 balances are stored as text; order numerically here
            rows.sort(key=lambda row: (-int(row.staked_lp), row.wallet))
            return [_position_dict(row) for row in rows[:limit]]


def _position_dict(row: StakerPositionModel) -> Dict[str, Any]:
    return {
        'wallet': row.wallet,
        'stakedLP': row.staked_lp,
        'lastActivityType': row.last_activity_type,
        'lastActivityAmount': row.last_activity_amount,
        'lastActivityBlock': row.last_activity_block,
        'lastActivityTxHash': row.last_activity_tx_hash,
    }
