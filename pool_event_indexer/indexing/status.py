"""
Status projection and ETA estimation.

The projector is pure: it turns a checkpoint, the live worker view, the
auto-run registration and the progress history into the JSON the admin
dashboards poll.
"""

import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Sequence

from pool_event_indexer.models.core import (
    AutoRunConfig,
    CheckpointStatus,
    IndexerCheckpoint,
    ProgressSnapshot,
)

MIN_WINDOW_SPAN_SECONDS = 3.0
MIN_FALLBACK_SPAN_SECONDS = 5.0
MIN_SAMPLE_SPACING_SECONDS = 1.0


@dataclass(frozen=True)
class EtaEstimate:
    seconds_remaining: Optional[float] = None
    throughput_per_minute: Optional[float] = None


def _rate_pair(snapshots: Sequence[ProgressSnapshot], now: float, window_seconds: float):
    """
    Pick the snapshot pair to measure rates over.

    Prefers the oldest and newest samples inside the window (at least
    3 s apart); otherwise the oldest and newest overall (at least 5 s
    apart).
    """
    if len(snapshots) < 2:
        return None

    recent = [snapshot for snapshot in snapshots if snapshot.time >= now - window_seconds]
    if len(recent) >= 2:
        first, last, min_span = recent[0], recent[-1], MIN_WINDOW_SPAN_SECONDS
    else:
        first, last, min_span = snapshots[0], snapshots[-1], MIN_FALLBACK_SPAN_SECONDS

    if last.time - first.time < min_span:
        return None
    return first, last


def estimate_from_snapshots(
    snapshots: Sequence[ProgressSnapshot],
    percent_complete: float,
    now: float,
    window_seconds: float = 30.0,
) -> EtaEstimate:
    """Seconds remaining and blocks per minute from a progress history."""
    pair = _rate_pair(snapshots, now, window_seconds)
    if pair is None:
        return EtaEstimate()

    first, last = pair
    elapsed = last.time - first.time
    throughput = max(last.block - first.block, 0) / elapsed * 60

    if percent_complete <= 0 or percent_complete >= 100:
        return EtaEstimate(throughput_per_minute=throughput)

    progress = last.percent - first.percent
    if progress <= 0:
        return EtaEstimate(throughput_per_minute=throughput)

    rate = progress / elapsed
    if not math.isfinite(rate) or rate <= 0:
        return EtaEstimate(throughput_per_minute=throughput)

    remaining = (100 - percent_complete) / rate
    if not math.isfinite(remaining) or remaining < 0:
        return EtaEstimate(throughput_per_minute=throughput)

    return EtaEstimate(seconds_remaining=remaining, throughput_per_minute=throughput)


def format_eta(seconds: Optional[float]) -> Optional[str]:
    """``~Ns``, ``~Nm``, ``~Hh Mm`` or ``~Dd Hh``."""
    if seconds is None or not math.isfinite(seconds) or seconds < 0:
        return None

    remaining_sec = int(seconds)
    if remaining_sec < 60:
        return f"~{remaining_sec}s"

    remaining_min = remaining_sec // 60
    if remaining_min < 60:
        return f"~{remaining_min}m"

    hours, mins = divmod(remaining_min, 60)
    if hours < 24:
        return f"~{hours}h {mins}m"

    days, hrs = divmod(hours, 24)
    return f"~{days}d {hrs}h"


class EtaEstimator:
    """
    Rolling progress history for one coordinator.

    Samples closer than a second apart are dropped, and history older than
    ``history_seconds`` is discarded. History is cleared whenever the
    indexer is not running or sits at 0% or 100%.
    """

    def __init__(self, window_seconds: float = 30.0, history_seconds: float = 60.0, max_snapshots: int = 120):
        self.window_seconds = window_seconds
        self.history_seconds = max(history_seconds, window_seconds)
        self.snapshots: Deque[ProgressSnapshot] = deque(maxlen=max_snapshots)

    def record(self, percent: float, block: int, is_running: bool, now: float) -> None:
        if not is_running or percent <= 0 or percent >= 100:
            self.snapshots.clear()
            return

        if not self.snapshots or now - self.snapshots[-1].time >= MIN_SAMPLE_SPACING_SECONDS:
            self.snapshots.append(ProgressSnapshot(time=now, percent=percent, block=block))

        cutoff = now - self.history_seconds
        while self.snapshots and self.snapshots[0].time < cutoff:
            self.snapshots.popleft()

    def estimate(self, percent: float, now: float) -> EtaEstimate:
        return estimate_from_snapshots(list(self.snapshots), percent, now, self.window_seconds)

    def clear(self) -> None:
        self.snapshots.clear()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class StatusDTO:
    """Polled status of one (domain, pid) indexer."""
    domain: str
    pid: int
    indexer_name: str
    status: CheckpointStatus
    is_running: bool
    current_block: int
    target_block: Optional[int]
    genesis_block: int
    last_indexed_block: int
    percent_complete: float
    total_events_indexed: int
    last_error: Optional[str]
    updated_at: Optional[datetime]
    workers: List[Dict[str, Any]] = field(default_factory=list)
    auto_run: Optional[Dict[str, Any]] = None
    throughput_per_minute: Optional[float] = None
    estimated_seconds_remaining: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.status != CheckpointStatus.ERROR

    @property
    def eta(self) -> Optional[str]:
        return format_eta(self.estimated_seconds_remaining)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'domain': self.domain,
            'pid': self.pid,
            'indexerName': self.indexer_name,
            'status': self.status.value,
            'ok': self.ok,
            'isRunning': self.is_running,
            'currentBlock': self.current_block,
            'targetBlock': self.target_block,
            'genesisBlock': self.genesis_block,
            'lastIndexedBlock': self.last_indexed_block,
            'percentComplete': round(self.percent_complete, 2),
            'totalEventsIndexed': self.total_events_indexed,
            'lastError': self.last_error,
            'updatedAt': _iso(self.updated_at),
            'workers': self.workers,
            'autoRun': self.auto_run,
            'throughputPerMinute': (
                round(self.throughput_per_minute, 2) if self.throughput_per_minute is not None else None
            ),
            'estimatedSecondsRemaining': (
                round(self.estimated_seconds_remaining) if self.estimated_seconds_remaining is not None else None
            ),
            'eta': self.eta,
        }


def checkpoint_percent(checkpoint: IndexerCheckpoint) -> float:
    """Progress of the checkpoint against its last known target."""
    genesis = checkpoint.genesis_block
    target = checkpoint.target_block
    if target is None or target <= genesis:
        return 100.0 if checkpoint.status == CheckpointStatus.COMPLETE else 0.0
    percent = (checkpoint.last_indexed_block - genesis) / (target - genesis) * 100
    return max(0.0, min(100.0, percent))


class StatusProjector:
    """Builds StatusDTOs; holds no state of its own."""

    def __init__(self, window_seconds: float = 30.0):
        self.window_seconds = window_seconds

    def percent_complete(self, checkpoint: IndexerCheckpoint, workers: Sequence[Any]) -> float:
        """Simple average of worker progress, else checkpoint progress."""
        if workers:
            return sum(worker.percent_complete for worker in workers) / len(workers)
        return checkpoint_percent(checkpoint)

    def project(
        self,
        checkpoint: IndexerCheckpoint,
        workers: Sequence[Any],
        auto_run: Optional[AutoRunConfig],
        snapshots: Sequence[ProgressSnapshot],
        now: float,
        is_running: bool = False,
    ) -> StatusDTO:
        """
        Project coordinator state to a StatusDTO.

        Args:
            checkpoint: Durable progress
            workers: Live worker slots (may be empty before the first run)
            auto_run: Auto-run registration, if any
            snapshots: Progress history for rate estimation
            now: Current time in epoch seconds
            is_running: Whether a run is in flight
        """
        percent = self.percent_complete(checkpoint, workers)
        estimate = estimate_from_snapshots(snapshots, percent, now, self.window_seconds)

        worker_blocks = [worker.current_block for worker in workers if worker.current_block is not None]
        current_block = max(worker_blocks) if worker_blocks else checkpoint.last_indexed_block

        return StatusDTO(
            domain=checkpoint.domain,
            pid=checkpoint.pid,
            indexer_name=checkpoint.indexer_name,
            status=checkpoint.status,
            is_running=is_running,
            current_block=current_block,
            target_block=checkpoint.target_block,
            genesis_block=checkpoint.genesis_block,
            last_indexed_block=checkpoint.last_indexed_block,
            percent_complete=percent,
            total_events_indexed=checkpoint.total_events_indexed,
            last_error=checkpoint.last_error,
            updated_at=checkpoint.updated_at,
            workers=[worker.to_dict() for worker in workers],
            auto_run=auto_run.to_dict() if auto_run is not None else None,
            throughput_per_minute=estimate.throughput_per_minute,
            estimated_seconds_remaining=estimate.seconds_remaining,
        )
