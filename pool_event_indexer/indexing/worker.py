"""
Worker slot: one schedulable scan unit of a coordinator.
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Dict, Optional

from pool_event_indexer.database.manager import IndexerStore
from pool_event_indexer.exceptions import BatchCrashed, IndexerError, ProviderTimeout
from pool_event_indexer.indexing.decoder import ChainEventSource
from pool_event_indexer.indexing.partitioner import RangeToken
from pool_event_indexer.models.core import BatchResult, WorkerState, utcnow
from pool_event_indexer.utils.structured_logging import ContextualLogger, LogContext


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class WorkerSlot:
    """
    Scans the blocks of whatever range token it is bound to, one batch at
    a time.

    Batch failures are recorded on the slot and returned inside the
    BatchResult; ``run_batch`` never raises. The cursor only moves when the
    coordinator folds a successful result into the partitioner, so a
    failed sub-range is retried as-is.
    """

    def __init__(
        self,
        worker_id: int,
        domain: str,
        pid: int,
        source: ChainEventSource,
        store: IndexerStore,
        batch_timeout: float = 120.0,
    ):
        self.worker_id = worker_id
        self.domain = domain
        self.pid = pid
        self.source = source
        self.store = store
        self.batch_timeout = batch_timeout
        self.logger = ContextualLogger(
            __name__, LogContext(domain=domain, pid=pid, worker_id=worker_id)
        )

        self.token: Optional[RangeToken] = None
        self.state = WorkerState.IDLE
        self.range_start: Optional[int] = None
        self.range_end: Optional[int] = None
        self.current_block: Optional[int] = None
        self.is_running = False
        self.is_active = False
        self.events_found = 0
        self.events_by_type: Dict[str, int] = {}
        self.batches_completed = 0
        self.runs_completed = 0
        self.errors = 0
        self.consecutive_errors = 0
        self.last_error: Optional[str] = None
        self.started_at: Optional[datetime] = None
        self.last_batch_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None

    # Lifecycle
    def begin_run(self) -> None:
        """Reset per-run counters; ``runs_completed`` carries over."""
        self.token = None
        self.state = WorkerState.IDLE
        self.range_start = None
        self.range_end = None
        self.current_block = None
        self.is_running = True
        self.is_active = True
        self.events_found = 0
        self.events_by_type = {}
        self.batches_completed = 0
        self.errors = 0
        self.consecutive_errors = 0
        self.last_error = None
        self.started_at = utcnow()
        self.last_batch_at = None
        self.completed_at = None

    def bind(self, token: RangeToken, stolen: bool = False) -> None:
        """Attach a range token; a stolen token passes through ``stealing``."""
        if stolen:
            self.state = WorkerState.STEALING
        self.token = token
        self.range_start = token.current
        self.range_end = token.end
        self.current_block = token.current
        self.consecutive_errors = 0
        self.state = WorkerState.WORKING
        self.logger.debug(
            f"Worker {self.worker_id} bound to blocks {token.current}-{token.end}",
            stolen=stolen,
        )

    def finish(self) -> None:
        """No more work for this run."""
        self.token = None
        self.state = WorkerState.DONE
        self.is_running = False
        self.completed_at = utcnow()
        self.runs_completed += 1

    def stop(self) -> None:
        """Cooperative stop: the slot goes idle with its cursor preserved."""
        self.state = WorkerState.IDLE
        self.is_running = False
        self.is_active = False

    def sync_range(self) -> None:
        """Pick up a range end shrunk by a steal."""
        if self.token is not None:
            self.range_end = self.token.end

    @property
    def percent_complete(self) -> float:
        if self.range_start is None or self.range_end is None or self.current_block is None:
            return 0.0
        span = self.range_end - self.range_start
        if span <= 0:
            return 100.0
        percent = (self.current_block - self.range_start) / span * 100
        return max(0.0, min(100.0, percent))

    # Scanning
    async def run_batch(self, max_blocks_per_batch: int) -> BatchResult:
        """
        Scan the next sub-range of the bound token.

        The batch covers ``[token.current, min(token.current + max_blocks, token.end)]``
        and is bounded by ``batch_timeout``.
        """
        token = self.token
        if token is None:
            raise RuntimeError(f"Worker {self.worker_id} has no range token")

        from_block = token.current
        to_block = token.reserve(max_blocks_per_batch)
        started = time.monotonic()

        try:
            stored = await asyncio.wait_for(
                self._scan(from_block, to_block), timeout=self.batch_timeout
            )
        except asyncio.TimeoutError:
            error: IndexerError = ProviderTimeout(
                f"Batch {from_block}-{to_block} exceeded {self.batch_timeout}s",
                domain=self.domain, pid=self.pid,
            )
            return self._record_failure(from_block, to_block, error, started)
        except IndexerError as e:
            return self._record_failure(from_block, to_block, e, started)
        except Exception as e:
            self.logger.exception(f"Unexpected failure in batch {from_block}-{to_block}: {e}")
            error = BatchCrashed(
                f"Batch {from_block}-{to_block} crashed: {type(e).__name__}: {e}",
                domain=self.domain, pid=self.pid,
            )
            return self._record_failure(from_block, to_block, error, started)

        by_type: Dict[str, int] = {}
        for decoded in stored:
            by_type[decoded.event_type] = by_type.get(decoded.event_type, 0) + 1

        self.events_found += len(stored)
        for event_type, count in by_type.items():
            self.events_by_type[event_type] = self.events_by_type.get(event_type, 0) + count
        self.batches_completed += 1
        self.consecutive_errors = 0
        self.current_block = to_block
        self.last_batch_at = utcnow()
        self.range_end = token.end

        self.logger.debug(
            f"Batch {from_block}-{to_block} stored {len(stored)} events",
            from_block=from_block, to_block=to_block,
        )

        return BatchResult(
            worker_id=self.worker_id,
            from_block=from_block,
            to_block=to_block,
            new_current_block=to_block,
            events_found=len(stored),
            events_by_type=by_type,
            elapsed_seconds=time.monotonic() - started,
        )

    async def _scan(self, from_block: int, to_block: int):
        events = await self.source.fetch_events(self.pid, from_block, to_block)
        return await self.store.persist_events(self.domain, self.pid, events)

    def _record_failure(self, from_block: int, to_block: int, error: IndexerError, started: float) -> BatchResult:
        self.errors += 1
        self.consecutive_errors += 1
        self.last_error = str(error)
        self.last_batch_at = utcnow()

        self.logger.warning(
            f"Batch {from_block}-{to_block} failed: {error}",
            error_type=type(error).__name__, fatal=error.fatal,
        )

        return BatchResult(
            worker_id=self.worker_id,
            from_block=from_block,
            to_block=to_block,
            new_current_block=from_block,
            error=error,
            fatal=error.fatal,
            elapsed_seconds=time.monotonic() - started,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'workerId': self.worker_id,
            'state': self.state.value,
            'rangeStart': self.range_start,
            'rangeEnd': self.range_end,
            'currentBlock': self.current_block,
            'isRunning': self.is_running,
            'isActive': self.is_active,
            'percentComplete': round(self.percent_complete, 2),
            'eventsFound': self.events_found,
            'eventsByType': dict(self.events_by_type),
            'batchesCompleted': self.batches_completed,
            'runsCompleted': self.runs_completed,
            'errors': self.errors,
            'lastError': self.last_error,
            'startedAt': _iso(self.started_at),
            'lastBatchAt': _iso(self.last_batch_at),
            'completedAt': _iso(self.completed_at),
        }
