"""
Tests for the coordinator registry.
"""

from dataclasses import replace

import pytest

from pool_event_indexer.config.models import DatabaseConfig
from pool_event_indexer.exceptions import UnknownIndexerError
from pool_event_indexer.indexing.decoder import EventDecoder
from pool_event_indexer.indexing.registry import IndexerRegistry
from pool_event_indexer.models.core import CheckpointStatus


class TestIndexerRegistry:
    """Test cases for IndexerRegistry."""

    @pytest.mark.asyncio
    async def test_one_coordinator_per_pool(self, registry):
        first = await registry.get("pools", 2)
        second = await registry.get("pools", 2)

        assert first is second
        assert first.checkpoint.last_indexed_block == 1000
        assert first.scheduler is registry.scheduler

    @pytest.mark.asyncio
    async def test_unknown_domain_and_pool(self, registry):
        with pytest.raises(UnknownIndexerError):
            await registry.get("nope", 0)
        with pytest.raises(UnknownIndexerError):
            await registry.get("pools", 99)

    @pytest.mark.asyncio
    async def test_statuses_cover_every_pool(self, registry):
        statuses = await registry.statuses("pools")

        assert [status.pid for status in statuses] == [0, 1, 2, 3]
        assert all(status.status == CheckpointStatus.IDLE for status in statuses)

    @pytest.mark.asyncio
    async def test_start_all_staggers_first_ticks(self, registry):
        try:
            started = await registry.start_all_auto_runs("pools", interval_ms=60000)

            assert [config.offset_ms for config in started] == [0, 15000, 30000, 45000]
            assert [config.pid for config in started] == [0, 1, 2, 3]

            again = await registry.start_all_auto_runs("pools", interval_ms=60000)
            assert again == []

            stopped = await registry.stop_all_auto_runs("pools")
            assert stopped == {("pools", 0): 0, ("pools", 1): 0, ("pools", 2): 0, ("pools", 3): 0}
            assert registry.scheduler.list_configs() == []
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_start_all_without_stagger(self, indexer_settings, store, provider):
        indexer_settings.indexer.stagger_auto_run = False
        registry = IndexerRegistry(indexer_settings, store, provider)

        try:
            started = await registry.start_all_auto_runs("pools")

            assert {config.offset_ms for config in started} == {0}
            assert {config.interval_ms for config in started} == {60000}
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_stop_all_keeps_same_pid_of_other_domains_apart(
        self, indexer_settings, pools_domain, store, provider
    ):
        quests = replace(pools_domain, name="quests", pool_ids=[0, 1])
        settings = replace(indexer_settings, domains={"pools": pools_domain, "quests": quests})
        registry = IndexerRegistry(settings, store, provider)

        try:
            started = await registry.start_all_auto_runs(interval_ms=60000)
            assert len(started) == 6

            stopped = await registry.stop_all_auto_runs()

            assert len(stopped) == 6
            assert ("pools", 0) in stopped and ("quests", 0) in stopped
            assert registry.scheduler.list_configs() == []
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_custom_decoder_is_used(self, indexer_settings, store, provider, mocker):
        decoder = mocker.Mock(spec=EventDecoder)
        decoder.topic_filters.return_value = []
        decoder.decode.return_value = []
        registry = IndexerRegistry(indexer_settings, store, provider, decoders={"pools": decoder})

        coordinator = await registry.get("pools", 0)
        result = await coordinator.run_once()

        assert result.status == CheckpointStatus.COMPLETE
        assert decoder.decode.call_count == 4

    @pytest.mark.asyncio
    async def test_shutdown_stops_runs_and_closes_provider(self, registry, provider, mocker):
        provider.delays = {1000: [0.05]}
        close = mocker.patch.object(provider, "close")
        coordinator = await registry.get("pools", 0)
        task = coordinator.trigger()

        await registry.shutdown()

        assert task.done()
        assert task.result().cancelled
        close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_apply_settings_updates_run_tuning_only(self, registry, indexer_settings, caplog):
        coordinator = await registry.get("pools", 0)
        reloaded = replace(
            indexer_settings,
            indexer=replace(indexer_settings.indexer, blocks_per_batch=50, workers_per_pool=2),
            error_handling=replace(indexer_settings.error_handling, max_retries=7),
            database=DatabaseConfig(url="sqlite:///elsewhere.db"),
        )

        registry.apply_settings(reloaded)

        assert coordinator.blocks_per_batch == 50
        assert coordinator.worker_count == 2
        assert coordinator.retry_config.max_retries == 7
        assert registry.settings.database.url == "sqlite:///:memory:"
        assert "restart to apply" in caplog.text

        result = await coordinator.run_once()
        assert result.status == CheckpointStatus.COMPLETE
        assert len(coordinator.slots) == 2
