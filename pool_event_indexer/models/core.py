"""
Core data models for the pool event indexer.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class CheckpointStatus(str, Enum):
    """Lifecycle status of one (domain, pid) indexer."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


class WorkerState(str, Enum):
    """Worker slot state machine: idle -> working -> done | stealing."""
    IDLE = "idle"
    WORKING = "working"
    DONE = "done"
    STEALING = "stealing"


@dataclass(frozen=True)
class BlockRange:
    """
    Contiguous span of block positions ``[start, end)``.

    ``owns_end`` marks the last range of a window, which also covers the
    window's target block itself.
    """
    start: int
    end: int
    owns_end: bool = False

    @property
    def size(self) -> int:
        return self.end - self.start


@dataclass
class IndexerCheckpoint:
    """Durable progress for one (domain, pid)."""
    domain: str
    pid: int
    genesis_block: int
    last_indexed_block: int
    status: CheckpointStatus = CheckpointStatus.IDLE
    total_events_indexed: int = 0
    last_error: Optional[str] = None
    target_block: Optional[int] = None
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if self.last_indexed_block < self.genesis_block:
            raise ValueError(
                f"last_indexed_block ({self.last_indexed_block}) is below "
                f"genesis_block ({self.genesis_block})"
            )
        if not isinstance(self.status, CheckpointStatus):
            self.status = CheckpointStatus(self.status)

    @classmethod
    def fresh(cls, domain: str, pid: int, genesis_block: int) -> 'IndexerCheckpoint':
        return cls(domain=domain, pid=pid, genesis_block=genesis_block,
                   last_indexed_block=genesis_block)

    @property
    def indexer_name(self) -> str:
        return f"{self.domain}_pool_{self.pid}"

    def advance_to(self, block: int) -> bool:
        """
        Move the frontier forward. Never moves it backwards.

        Returns:
            True if the checkpoint changed
        """
        if block <= self.last_indexed_block:
            return False
        self.last_indexed_block = block
        self.updated_at = utcnow()
        return True

    def touch(self) -> None:
        self.updated_at = utcnow()


@dataclass
class DecodedEvent:
    """A single decoded chain log, ready for persistence."""
    domain: str
    pid: int
    block_number: int
    tx_hash: str
    log_index: int
    event_type: str
    wallet: Optional[str] = None
    amount: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple:
        return (self.domain, self.pid, self.tx_hash, self.log_index)


@dataclass
class BatchResult:
    """Outcome of one worker batch; errors are carried, never raised."""
    worker_id: int
    from_block: int
    to_block: int
    new_current_block: int
    events_found: int = 0
    events_by_type: Dict[str, int] = field(default_factory=dict)
    error: Optional[Exception] = None
    fatal: bool = False
    elapsed_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class RunResult:
    """Summary of one coordinator run."""
    domain: str
    pid: int
    status: CheckpointStatus
    start_block: int
    last_indexed_block: int
    target_block: Optional[int]
    events_found: int = 0
    batches_completed: int = 0
    errors: int = 0
    cancelled: bool = False
    last_error: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    run_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'domain': self.domain,
            'pid': self.pid,
            'status': self.status.value,
            'startBlock': self.start_block,
            'lastIndexedBlock': self.last_indexed_block,
            'targetBlock': self.target_block,
            'eventsFound': self.events_found,
            'batchesCompleted': self.batches_completed,
            'errors': self.errors,
            'cancelled': self.cancelled,
            'lastError': self.last_error,
            'startedAt': _iso(self.started_at),
            'completedAt': _iso(self.completed_at),
            'runId': self.run_id,
        }


@dataclass
class AutoRunConfig:
    """Periodic re-trigger registration for one (domain, pid)."""
    domain: str
    pid: int
    interval_ms: int
    offset_ms: int = 0
    max_blocks_per_run: Optional[int] = None
    started_at: datetime = field(default_factory=utcnow)
    last_run_at: Optional[datetime] = None
    runs_completed: int = 0
    halted: bool = False
    halt_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'intervalMs': self.interval_ms,
            'offsetMs': self.offset_ms,
            'maxBlocksPerRun': self.max_blocks_per_run,
            'startedAt': _iso(self.started_at),
            'lastRunAt': _iso(self.last_run_at),
            'runsCompleted': self.runs_completed,
            'halted': self.halted,
            'haltReason': self.halt_reason,
        }


@dataclass(frozen=True)
class ProgressSnapshot:
    """Progress sample used for rate and ETA estimation (time in epoch seconds)."""
    time: float
    percent: float
    block: int
