"""
Auto-run scheduler for periodically re-triggering pool indexers.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from pool_event_indexer.exceptions import AlreadyRunning
from pool_event_indexer.models.core import AutoRunConfig, utcnow

if TYPE_CHECKING:
    from pool_event_indexer.indexing.coordinator import Coordinator

logger = logging.getLogger(__name__)

Key = Tuple[str, int]


def job_id_for(domain: str, pid: int) -> str:
    return f"autorun_{domain}_{pid}"


class AutoRunScheduler:
    """
    Keyed registry of auto-run configs backed by APScheduler.

    At most one registration exists per (domain, pid). A tick never starts
    a second run for a pool: ticks that land while a run is in flight, or
    while the pool is halted by a fatal error, are skipped.
    """

    def __init__(self, timezone_name: str = "UTC", misfire_grace_time: int = 30):
        self.timezone_name = timezone_name
        self.misfire_grace_time = misfire_grace_time
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._configs: Dict[Key, AutoRunConfig] = {}
        self._coordinators: Dict[Key, 'Coordinator'] = {}

    def _ensure_started(self) -> AsyncIOScheduler:
        """Create the APScheduler instance on the running event loop."""
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(
                timezone=self.timezone_name,
                event_loop=asyncio.get_running_loop(),
                job_defaults={
                    'coalesce': True,
                    'max_instances': 1,
                    'misfire_grace_time': self.misfire_grace_time,
                },
            )
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Auto-run scheduler started")
        return self._scheduler

    def register(
        self,
        coordinator: 'Coordinator',
        interval_ms: int,
        offset_ms: int = 0,
        max_blocks_per_run: Optional[int] = None,
    ) -> AutoRunConfig:
        """
        Schedule periodic runs for a coordinator.

        The first tick fires after ``offset_ms``, later ticks every
        ``interval_ms``.

        Raises:
            AlreadyRunning: If the pool already has an auto-run registration
            ValueError: If the interval is not positive
        """
        key = (coordinator.domain, coordinator.pid)
        if key in self._configs:
            raise AlreadyRunning(
                f"Auto-run already active for {coordinator.indexer_name}",
                domain=coordinator.domain, pid=coordinator.pid,
            )
        if interval_ms <= 0:
            raise ValueError(f"interval_ms must be positive, got {interval_ms}")

        config = AutoRunConfig(
            domain=coordinator.domain,
            pid=coordinator.pid,
            interval_ms=interval_ms,
            offset_ms=max(offset_ms, 0),
            max_blocks_per_run=max_blocks_per_run,
        )

        scheduler = self._ensure_started()
        job_id = job_id_for(*key)
        scheduler.add_job(
            func=self._tick,
            trigger=IntervalTrigger(seconds=interval_ms / 1000),
            args=[coordinator.domain, coordinator.pid],
            id=job_id,
            name=f"Auto-run: {coordinator.indexer_name}",
            next_run_time=datetime.now(timezone.utc) + timedelta(milliseconds=config.offset_ms),
            replace_existing=True,
        )

        self._configs[key] = config
        self._coordinators[key] = coordinator

        logger.info(
            f"Auto-run started for {coordinator.indexer_name} "
            f"(interval {interval_ms / 1000:.1f}s, offset {config.offset_ms / 1000:.1f}s)"
        )
        return config

    def unregister(self, domain: str, pid: int) -> int:
        """
        Remove a registration. A run in flight keeps going.

        Returns:
            Runs completed under the registration (0 if there was none)
        """
        key = (domain, pid)
        config = self._configs.pop(key, None)
        self._coordinators.pop(key, None)
        if config is None:
            return 0

        if self._scheduler is not None and self._scheduler.get_job(job_id_for(domain, pid)):
            self._scheduler.remove_job(job_id_for(domain, pid))

        logger.info(f"Auto-run stopped for {domain}/{pid} after {config.runs_completed} runs")
        return config.runs_completed

    def is_active(self, domain: str, pid: int) -> bool:
        return (domain, pid) in self._configs

    def get(self, domain: str, pid: int) -> Optional[AutoRunConfig]:
        return self._configs.get((domain, pid))

    def list_configs(self, domain: Optional[str] = None) -> List[AutoRunConfig]:
        return [
            config for (config_domain, _), config in sorted(self._configs.items())
            if domain is None or config_domain == domain
        ]

    def halt(self, domain: str, pid: int, reason: str) -> None:
        """Skip ticks until the halt is cleared."""
        config = self._configs.get((domain, pid))
        if config is not None and not config.halted:
            config.halted = True
            config.halt_reason = reason
            logger.warning(f"Auto-run halted for {domain}/{pid}: {reason}")

    def clear_halt(self, domain: str, pid: int) -> None:
        config = self._configs.get((domain, pid))
        if config is not None and config.halted:
            config.halted = False
            config.halt_reason = None
            logger.info(f"Auto-run halt cleared for {domain}/{pid}")

    def next_run_time(self, domain: str, pid: int) -> Optional[datetime]:
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(job_id_for(domain, pid))
        return job.next_run_time if job else None

    async def _tick(self, domain: str, pid: int) -> None:
        """One scheduled execution for a pool."""
        key = (domain, pid)
        config = self._configs.get(key)
        coordinator = self._coordinators.get(key)
        if config is None or coordinator is None:
            return

        if config.halted:
            logger.debug(f"Auto-run tick skipped for {domain}/{pid}: halted ({config.halt_reason})")
            return

        try:
            result = await coordinator.run_scheduled(config.max_blocks_per_run)
        except Exception as e:
            logger.error(f"Auto-run tick failed for {domain}/{pid}: {e}")
            return

        if result is None:
            return

        config.last_run_at = utcnow()
        config.runs_completed += 1
        logger.debug(
            f"Auto-run tick for {domain}/{pid} finished with status {result.status.value} "
            f"(run {config.runs_completed})"
        )

    async def shutdown(self) -> None:
        """Remove every registration and stop APScheduler; runs in flight are left alone."""
        for domain, pid in list(self._configs):
            self.unregister(domain, pid)

        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Auto-run scheduler stopped")
        self._scheduler = None
