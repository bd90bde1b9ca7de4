"""
Per-pool indexing coordinator.

One coordinator owns the worker slots, the range token arena and the
checkpoint of a single (domain, pid). Slots report batch results back and
the coordinator folds them into the checkpoint under its lock, so the
checkpoint has exactly one writer.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

from pool_event_indexer.config.models import DomainConfig, IndexerSettings
from pool_event_indexer.database.manager import IndexerStore
from pool_event_indexer.exceptions import (
    AlreadyRunning,
    IndexerError,
    PersistError,
    ProviderError,
    ResetWhileRunning,
)
from pool_event_indexer.indexing.decoder import ChainEventSource
from pool_event_indexer.indexing.partitioner import BlockRangePartitioner, RangeToken
from pool_event_indexer.indexing.status import EtaEstimator, StatusDTO, StatusProjector
from pool_event_indexer.indexing.worker import WorkerSlot
from pool_event_indexer.models.core import (
    AutoRunConfig,
    BatchResult,
    CheckpointStatus,
    IndexerCheckpoint,
    RunResult,
    utcnow,
)
from pool_event_indexer.utils.error_handling import ErrorHandler, RetryConfig
from pool_event_indexer.utils.structured_logging import ContextualLogger, LogContext, run_scope

if TYPE_CHECKING:
    from pool_event_indexer.scheduling.scheduler import AutoRunScheduler


@dataclass
class _RunState:
    """Mutable bookkeeping for the run in flight."""
    result: RunResult
    head_block: int
    limit_block: Optional[int]
    fatal: bool = False
    exhausted: bool = False


def _consume_result(task: asyncio.Task) -> None:
    # Crashes are logged inside the run; mark background failures as retrieved
    if not task.cancelled():
        task.exception()


class Coordinator:
    """
    Runs parallel, resumable scans for one (domain, pid).

    Unfinished range tokens survive a run, so a stopped or failed run is
    resumed from the exact cursors it left behind.
    """

    def __init__(
        self,
        domain_config: DomainConfig,
        pid: int,
        settings: IndexerSettings,
        store: IndexerStore,
        source: ChainEventSource,
        scheduler: Optional['AutoRunScheduler'] = None,
    ):
        self.domain_config = domain_config
        self.domain = domain_config.name
        self.pid = pid
        self.settings = settings
        self.store = store
        self.source = source
        self.scheduler = scheduler

        indexer_config = settings.indexer
        self.partitioner = BlockRangePartitioner(indexer_config.min_blocks_to_steal)
        self._configure()

        self.projector = StatusProjector(indexer_config.eta_window_seconds)
        self.estimator = EtaEstimator(
            window_seconds=indexer_config.eta_window_seconds,
            max_snapshots=indexer_config.snapshot_history,
        )
        self.logger = ContextualLogger(__name__, LogContext(domain=self.domain, pid=pid))

        self.checkpoint: Optional[IndexerCheckpoint] = None
        self.slots: List[WorkerSlot] = []
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False
        self._stop_event = asyncio.Event()

    def _configure(self) -> None:
        indexer_config = self.settings.indexer
        self.worker_count = self.domain_config.workers_per_pool or indexer_config.workers_per_pool
        self.blocks_per_batch = indexer_config.blocks_per_batch
        self.retry_config = RetryConfig.from_error_config(self.settings.error_handling)
        self.error_handler = ErrorHandler(self.retry_config)
        self.partitioner.min_blocks_to_steal = max(1, indexer_config.min_blocks_to_steal)

    def apply_settings(self, settings: IndexerSettings) -> None:
        """
        Adopt reloaded run tuning.

        Batch size, retry policy and the steal threshold apply from the next
        batch; worker count and batch timeout from the next run.
        """
        self.settings = settings
        self._configure()

    @property
    def indexer_name(self) -> str:
        return self.domain_config.indexer_name(self.pid)

    @property
    def genesis_block(self) -> int:
        return self.domain_config.genesis_for(self.pid)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def load(self) -> IndexerCheckpoint:
        """Load the checkpoint, creating a fresh one on first use."""
        if self.checkpoint is None:
            checkpoint = await self.store.load_checkpoint(self.domain, self.pid)
            if checkpoint is None:
                checkpoint = IndexerCheckpoint.fresh(self.domain, self.pid, self.genesis_block)
                await self.store.save_checkpoint(checkpoint)
                self.logger.info(f"Created checkpoint for {self.indexer_name} at block {checkpoint.genesis_block}")
            elif checkpoint.status == CheckpointStatus.RUNNING:
                # The process died mid-run; cursors beyond the frontier are lost
                checkpoint.status = CheckpointStatus.IDLE
            self.checkpoint = checkpoint
        return self.checkpoint

    # Lifecycle control
    def trigger(self, max_blocks_per_run: Optional[int] = None) -> asyncio.Task:
        """
        Start a run in the background.

        Clears an auto-run halt left by a fatal error.

        Returns:
            Task resolving to the RunResult

        Raises:
            AlreadyRunning: If a run is active for this pool
        """
        if self.is_running:
            raise AlreadyRunning(
                f"{self.indexer_name} is already running", domain=self.domain, pid=self.pid
            )
        if self.scheduler is not None:
            self.scheduler.clear_halt(self.domain, self.pid)
        return self._start(max_blocks_per_run)

    async def run_once(self, max_blocks_per_run: Optional[int] = None) -> RunResult:
        return await self.trigger(max_blocks_per_run)

    async def run_scheduled(self, max_blocks_per_run: Optional[int] = None) -> Optional[RunResult]:
        """Auto-run tick: start a run unless one is already in flight."""
        if self.is_running:
            self.logger.debug(f"Skipping auto-run tick for {self.indexer_name}: run in progress")
            return None
        return await self._start(max_blocks_per_run)

    def _start(self, max_blocks_per_run: Optional[int]) -> asyncio.Task:
        self._cancelled = False
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(
            self._execute(max_blocks_per_run), name=f"run_{self.indexer_name}"
        )
        self._task.add_done_callback(_consume_result)
        return self._task

    async def stop(self) -> Optional[int]:
        """
        Stop auto-run and the run in flight at its next batch boundary.

        Cursors are preserved; the next run resumes from them.

        Returns:
            Runs completed by the removed auto-run registration, if any
        """
        runs_completed = None
        if self.scheduler is not None and self.scheduler.is_active(self.domain, self.pid):
            runs_completed = self.scheduler.unregister(self.domain, self.pid)

        task = self._task
        if task is not None and not task.done():
            self._request_cancel()
            for slot in self.slots:
                slot.stop()
            await asyncio.wait({task})

        if self.checkpoint is not None:
            async with self._lock:
                await self.store.save_checkpoint(self.checkpoint)

        self.logger.info(f"Stopped {self.indexer_name}")
        return runs_completed

    def _request_cancel(self) -> None:
        """Stop every slot at its next batch boundary and wake any backoff wait."""
        self._cancelled = True
        self._stop_event.set()

    async def reset(self) -> int:
        """
        Delete all indexed state for this pool.

        Raises:
            ResetWhileRunning: If a run is active or auto-run is registered
        """
        if self.is_running or (self.scheduler is not None and self.scheduler.is_active(self.domain, self.pid)):
            raise ResetWhileRunning(
                f"Stop {self.indexer_name} and its auto-run before resetting",
                domain=self.domain, pid=self.pid,
            )

        deleted = await self.store.reset(self.domain, self.pid)
        self.partitioner.clear()
        self.slots = []
        self.estimator.clear()
        self.checkpoint = IndexerCheckpoint.fresh(self.domain, self.pid, self.genesis_block)
        self._task = None

        self.logger.info(f"Reset {self.indexer_name}", deleted_rows=deleted)
        return deleted

    # Auto-run
    def start_auto_run(
        self,
        interval_ms: Optional[int] = None,
        offset_ms: int = 0,
        max_blocks_per_run: Optional[int] = None,
    ) -> AutoRunConfig:
        """
        Register periodic runs; the first one fires after ``offset_ms``.

        Raises:
            AlreadyRunning: If auto-run is already registered for this pool
        """
        if self.scheduler is None:
            raise IndexerError("No scheduler attached", domain=self.domain, pid=self.pid)
        return self.scheduler.register(
            self,
            interval_ms or self.settings.indexer.auto_run_interval_ms,
            offset_ms=offset_ms,
            max_blocks_per_run=max_blocks_per_run,
        )

    def stop_auto_run(self) -> int:
        """Unregister auto-run without touching the run in flight."""
        if self.scheduler is None:
            return 0
        return self.scheduler.unregister(self.domain, self.pid)

    # Status
    def status(self, now: Optional[float] = None) -> StatusDTO:
        """Last known state; never waits on the run in flight."""
        now = time.time() if now is None else now
        checkpoint = self.checkpoint or IndexerCheckpoint.fresh(self.domain, self.pid, self.genesis_block)

        percent = self.projector.percent_complete(checkpoint, self.slots)
        self.estimator.record(percent, self.partitioner.scanned_blocks(), self.is_running, now)

        auto_run = self.scheduler.get(self.domain, self.pid) if self.scheduler is not None else None
        return self.projector.project(
            checkpoint,
            self.slots,
            auto_run,
            list(self.estimator.snapshots),
            now,
            is_running=self.is_running,
        )

    # Run
    async def _execute(self, max_blocks_per_run: Optional[int]) -> RunResult:
        with run_scope() as run_id:
            try:
                result = await self._run_window(max_blocks_per_run)
            except Exception as e:
                self.logger.exception(f"Run of {self.indexer_name} crashed: {e}")
                if self.checkpoint is not None:
                    self.checkpoint.status = CheckpointStatus.ERROR
                    self.checkpoint.last_error = str(e)
                    self.checkpoint.touch()
                    await self.store.save_checkpoint(self.checkpoint)
                raise
            result.run_id = run_id
            return result

    async def _run_window(self, max_blocks_per_run: Optional[int]) -> RunResult:
        checkpoint = await self.load()
        budget = max_blocks_per_run or self.settings.indexer.max_blocks_per_run
        start_block = checkpoint.last_indexed_block

        head = await self._fetch_head()
        if head is None:
            if checkpoint.target_block is None:
                raise ProviderError("Chain head unavailable and no target block is known")
            head = checkpoint.target_block
            self.logger.warning(f"Chain head unavailable, using last known target {head}")

        limit = start_block + budget if budget else None
        window_end = min(head, limit) if limit is not None else head
        window_end = max(window_end, start_block)

        run = _RunState(
            result=RunResult(
                domain=self.domain,
                pid=self.pid,
                status=CheckpointStatus.RUNNING,
                start_block=start_block,
                last_indexed_block=start_block,
                target_block=head,
            ),
            head_block=head,
            limit_block=limit,
        )

        if self.partitioner.has_unfinished():
            pending = self.partitioner.resume()
            self.partitioner.extend_tail(window_end)
            self.logger.info(f"Resuming {len(pending)} unfinished ranges up to block {self.partitioner.high_water}")
        else:
            self.partitioner.open_window(start_block, window_end, self.worker_count)
            self.logger.info(f"Indexing blocks {start_block}-{window_end} with {self.worker_count} workers")

        checkpoint.status = CheckpointStatus.RUNNING
        checkpoint.target_block = head
        checkpoint.last_error = None
        checkpoint.touch()
        await self.store.save_checkpoint(checkpoint)

        if len(self.slots) != self.worker_count:
            self.slots = [
                WorkerSlot(
                    worker_id,
                    self.domain,
                    self.pid,
                    self.source,
                    self.store,
                    batch_timeout=self.settings.indexer.batch_timeout_seconds,
                )
                for worker_id in range(self.worker_count)
            ]
        for slot in self.slots:
            slot.batch_timeout = self.settings.indexer.batch_timeout_seconds
            slot.begin_run()
            token = self.partitioner.acquire(slot.worker_id)
            if token is not None:
                slot.bind(token)

        # Every slot settles before the run ends, so no scan outlives is_running
        outcomes = await asyncio.gather(
            *(self._drive_slot(slot, run) for slot in self.slots), return_exceptions=True
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        return await self._finish(run)

    async def _fetch_head(self) -> Optional[int]:
        try:
            return await self.error_handler.with_retry(
                self.source.provider.get_block_number,
                f"block number for {self.indexer_name}",
            )
        except IndexerError as e:
            self.logger.warning(f"Could not fetch chain head: {e}")
            return None

    async def _drive_slot(self, slot: WorkerSlot, run: _RunState) -> None:
        """Acquire, scan, steal or extend until no work is left."""
        token = slot.token
        try:
            while not self._cancelled:
                if token is None:
                    stolen = False
                    token = self.partitioner.acquire(slot.worker_id)
                    if token is None:
                        token = self.partitioner.steal(slot.worker_id)
                        stolen = token is not None
                        if stolen:
                            for other in self.slots:
                                other.sync_range()
                    if token is None:
                        high_water = self.partitioner.high_water
                        # A sibling may extend the tail while this slot awaits the head
                        if await self._extend_tail(run) or self.partitioner.high_water != high_water:
                            continue
                        break
                    slot.bind(token, stolen=stolen)

                await self._drain(slot, token, run)
                token = None
        except Exception:
            self._request_cancel()
            slot.stop()
            raise

        if self._cancelled:
            slot.stop()
        else:
            slot.finish()

    async def _drain(self, slot: WorkerSlot, token: RangeToken, run: _RunState) -> None:
        while not token.finished and not self._cancelled:
            result = await slot.run_batch(self.blocks_per_batch)

            async with self._lock:
                await self._fold(token, result, run)

            if result.success:
                slot.sync_range()
                continue

            if result.fatal:
                self._fail_run(result, run)
                return

            if slot.consecutive_errors > self.retry_config.max_retries:
                self.partitioner.mark_failed(token)
                run.exhausted = True
                run.result.last_error = str(result.error)
                slot.logger.error(
                    f"Giving up on blocks {token.current}-{token.end} after "
                    f"{slot.consecutive_errors} consecutive failures"
                )
                return

            await self._backoff(self.retry_config.get_delay(slot.consecutive_errors - 1))

    async def _backoff(self, delay: float) -> None:
        """Wait ``delay`` seconds, returning early once the run is cancelled."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _fold(self, token: RangeToken, result: BatchResult, run: _RunState) -> None:
        """Merge one batch outcome into the arena and the checkpoint."""
        checkpoint = self.checkpoint
        if result.success:
            self.partitioner.advance(token, result.new_current_block)
            run.result.events_found += result.events_found
            run.result.batches_completed += 1
            checkpoint.total_events_indexed += result.events_found
            frontier = self.partitioner.frontier()
            if frontier is not None:
                checkpoint.advance_to(frontier)
        else:
            self.partitioner.abort_batch(token)
            run.result.errors += 1
            checkpoint.last_error = str(result.error)

        checkpoint.touch()
        try:
            await self.store.save_checkpoint(checkpoint)
        except PersistError as e:
            # The next fold writes the same state again
            self.logger.warning(f"Checkpoint write failed: {e}")

    def _fail_run(self, result: BatchResult, run: _RunState) -> None:
        if run.fatal:
            return
        run.fatal = True
        run.result.last_error = str(result.error)
        self._request_cancel()
        self.logger.error(
            f"Fatal error in worker {result.worker_id} at blocks "
            f"{result.from_block}-{result.to_block}: {result.error}"
        )
        if self.scheduler is not None:
            self.scheduler.halt(self.domain, self.pid, str(result.error))

    async def _extend_tail(self, run: _RunState) -> bool:
        """Grow the window when the chain head moved during the run."""
        high_water = self.partitioner.high_water
        if high_water is None or (run.limit_block is not None and high_water >= run.limit_block):
            return False

        try:
            head = await self.source.provider.get_block_number()
        except IndexerError as e:
            self.logger.debug(f"Head refresh failed, not extending: {e}")
            return False

        new_target = min(head, run.limit_block) if run.limit_block is not None else head
        async with self._lock:
            if self._cancelled or self.partitioner.extend_tail(new_target) is None:
                return False
            run.head_block = max(run.head_block, head)
            run.result.target_block = run.head_block
            self.checkpoint.target_block = run.head_block

        self.logger.info(f"Chain head advanced, extended window to block {new_target}")
        return True

    async def _finish(self, run: _RunState) -> RunResult:
        checkpoint = self.checkpoint
        result = run.result

        async with self._lock:
            frontier = self.partitioner.frontier()
            if frontier is not None:
                checkpoint.advance_to(frontier)

            if run.fatal or run.exhausted:
                checkpoint.status = CheckpointStatus.ERROR
                checkpoint.last_error = result.last_error
            elif self._cancelled:
                checkpoint.status = CheckpointStatus.IDLE
            elif checkpoint.last_indexed_block >= run.head_block:
                checkpoint.status = CheckpointStatus.COMPLETE
                checkpoint.last_error = None
            else:
                checkpoint.status = CheckpointStatus.IDLE
                checkpoint.last_error = None

            checkpoint.touch()
            await self.store.save_checkpoint(checkpoint)

        result.status = checkpoint.status
        result.last_indexed_block = checkpoint.last_indexed_block
        result.cancelled = self._cancelled and not run.fatal
        result.completed_at = utcnow()

        self.logger.info(
            f"Run of {self.indexer_name} finished: {result.status.value} at block "
            f"{checkpoint.last_indexed_block}, {result.events_found} new events",
            batches=result.batches_completed, errors=result.errors,
        )
        return result
