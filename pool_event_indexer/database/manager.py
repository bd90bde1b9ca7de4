"""
Indexer store interface.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pool_event_indexer.config.models import DatabaseConfig
from pool_event_indexer.models.core import DecodedEvent, IndexerCheckpoint


class IndexerStore(ABC):
    """
    Abstract persistence interface for checkpoints and indexed events.

    Implementations must make ``persist_events`` idempotent on
    (domain, pid, tx_hash, log_index): scanning a block twice is normal.
    """

    def __init__(self, config: DatabaseConfig):
        """
        Initialize store with configuration.

        Args:
            config: Database configuration settings
        """
        self.config = config

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize database connection and schema."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close database connections and cleanup resources."""
        pass

    # Checkpoint operations
    @abstractmethod
    async def load_checkpoint(self, domain: str, pid: int) -> Optional[IndexerCheckpoint]:
        """Load the checkpoint for a pool, or None if it was never indexed."""
        pass

    @abstractmethod
    async def save_checkpoint(self, checkpoint: IndexerCheckpoint) -> None:
        """Insert or update a checkpoint."""
        pass

    @abstractmethod
    async def reset(self, domain: str, pid: int) -> int:
        """
        Delete the checkpoint, indexed events and staker positions of a pool.

        Returns:
            Number of rows deleted across all tables
        """
        pass

    # Event operations
    @abstractmethod
    async def persist_events(self, domain: str, pid: int, events: List[DecodedEvent]) -> List[DecodedEvent]:
        """
        Store decoded events, skipping ones already stored.

        Args:
            domain: Event domain
            pid: Pool id
            events: Decoded events from one batch

        Returns:
            The events that were not stored before

        Raises:
            PersistError: If the write fails
        """
        pass

    @abstractmethod
    async def count_events(self, domain: str, pid: int) -> int:
        pass

    @abstractmethod
    async def list_staker_positions(self, domain: str, pid: int) -> List[Dict[str, Any]]:
        """Staked balance and latest activity per wallet for a pool."""
        pass

    @abstractmethod
    async def list_active_stakers(self, domain: str, pid: int, limit: int = 500) -> List[Dict[str, Any]]:
        """Wallets with a non-zero staked balance, largest first."""
        pass
