"""
Process-wide registry of pool coordinators.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from pool_event_indexer.clients.chain_client import BaseChainProvider
from pool_event_indexer.config.models import DomainConfig, IndexerSettings
from pool_event_indexer.database.manager import IndexerStore
from pool_event_indexer.exceptions import AlreadyRunning, UnknownIndexerError
from pool_event_indexer.indexing.coordinator import Coordinator
from pool_event_indexer.indexing.decoder import ChainEventSource, EventDecoder
from pool_event_indexer.indexing.status import StatusDTO
from pool_event_indexer.models.core import AutoRunConfig
from pool_event_indexer.scheduling.scheduler import AutoRunScheduler

logger = logging.getLogger(__name__)


class IndexerRegistry:
    """
    Maps (domain, pid) to its single Coordinator.

    Coordinators are created on first access and load their checkpoint
    lazily, so the registry guarantees one lock and one checkpoint writer
    per pool.
    """

    def __init__(
        self,
        settings: IndexerSettings,
        store: IndexerStore,
        provider: BaseChainProvider,
        scheduler: Optional[AutoRunScheduler] = None,
        decoders: Optional[Dict[str, EventDecoder]] = None,
    ):
        self.settings = settings
        self.store = store
        self.provider = provider
        self.scheduler = scheduler or AutoRunScheduler()
        self._decoders = decoders or {}
        self._sources: Dict[str, ChainEventSource] = {}
        self._coordinators: Dict[Tuple[str, int], Coordinator] = {}
        self._lock = asyncio.Lock()

    @property
    def domains(self) -> List[str]:
        return sorted(self.settings.domains)

    def domain_config(self, domain: str) -> DomainConfig:
        try:
            return self.settings.domains[domain]
        except KeyError:
            raise UnknownIndexerError(f"Unknown domain: {domain}", domain=domain) from None

    def pool_ids(self, domain: str) -> List[int]:
        return list(self.domain_config(domain).pool_ids)

    def _source_for(self, domain_config: DomainConfig) -> ChainEventSource:
        source = self._sources.get(domain_config.name)
        if source is None:
            source = ChainEventSource(
                domain_config, self.provider, self._decoders.get(domain_config.name)
            )
            self._sources[domain_config.name] = source
        return source

    async def get(self, domain: str, pid: int) -> Coordinator:
        """
        Coordinator for a configured pool, with its checkpoint loaded.

        Raises:
            UnknownIndexerError: If the domain or pid is not configured
        """
        domain_config = self.domain_config(domain)
        if pid not in domain_config.pool_ids:
            raise UnknownIndexerError(f"Unknown pool {pid} for domain {domain}", domain=domain, pid=pid)

        key = (domain, pid)
        coordinator = self._coordinators.get(key)
        if coordinator is None:
            async with self._lock:
                coordinator = self._coordinators.get(key)
                if coordinator is None:
                    coordinator = Coordinator(
                        domain_config,
                        pid,
                        self.settings,
                        self.store,
                        self._source_for(domain_config),
                        scheduler=self.scheduler,
                    )
                    self._coordinators[key] = coordinator
                    logger.debug(f"Created coordinator for {coordinator.indexer_name}")

        await coordinator.load()
        return coordinator

    def apply_settings(self, settings: IndexerSettings) -> None:
        """
        Push reloaded run tuning (indexer and error_handling sections) to
        every coordinator.

        Database, provider, API and domain changes only take effect after a
        restart.
        """
        for section in ("database", "provider", "api", "domains"):
            if getattr(settings, section) != getattr(self.settings, section):
                logger.warning(f"Configuration section '{section}' changed; restart to apply it")

        self.settings = replace(self.settings, indexer=settings.indexer, error_handling=settings.error_handling)
        for coordinator in self._coordinators.values():
            coordinator.apply_settings(self.settings)
        logger.info(f"Applied reloaded settings to {len(self._coordinators)} coordinators")

    async def statuses(self, domain: str) -> List[StatusDTO]:
        return [
            (await self.get(domain, pid)).status()
            for pid in self.pool_ids(domain)
        ]

    async def start_all_auto_runs(
        self,
        domain: Optional[str] = None,
        interval_ms: Optional[int] = None,
    ) -> List[AutoRunConfig]:
        """
        Register auto-run for every configured pool not already registered.

        With staggering enabled, pool ``i`` of ``n`` first fires after
        ``i / n * interval``, spreading provider load across the interval.
        """
        interval = interval_ms or self.settings.indexer.auto_run_interval_ms
        keys = [
            (name, pid)
            for name in ([domain] if domain else self.domains)
            for pid in self.pool_ids(name)
        ]

        started = []
        for index, (name, pid) in enumerate(keys):
            coordinator = await self.get(name, pid)
            offset = int(index / len(keys) * interval) if self.settings.indexer.stagger_auto_run else 0
            try:
                started.append(coordinator.start_auto_run(interval, offset_ms=offset))
            except AlreadyRunning:
                logger.debug(f"Auto-run already active for {coordinator.indexer_name}")

        logger.info(f"Started auto-run for {len(started)} of {len(keys)} pools")
        return started

    async def stop_all_auto_runs(self, domain: Optional[str] = None) -> Dict[Tuple[str, int], int]:
        """
        Unregister auto-run for every pool of a domain (or all domains).

        Returns:
            Runs completed per (domain, pid) for each registration removed
        """
        stopped = {}
        for config in self.scheduler.list_configs(domain):
            stopped[(config.domain, config.pid)] = self.scheduler.unregister(config.domain, config.pid)
        logger.info(f"Stopped auto-run for {len(stopped)} pools")
        return stopped

    async def shutdown(self) -> None:
        """Stop every coordinator and the scheduler; checkpoints are written."""
        await self.scheduler.shutdown()
        for coordinator in list(self._coordinators.values()):
            await coordinator.stop()
        await self.provider.close()
        logger.info("Indexer registry shut down")
