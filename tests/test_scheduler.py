"""
Tests for the auto-run scheduler.
"""

from datetime import datetime, timedelta, timezone

import pytest

from pool_event_indexer.exceptions import AlreadyRunning
from pool_event_indexer.models.core import CheckpointStatus
from pool_event_indexer.scheduling.scheduler import AutoRunScheduler, job_id_for

HOUR_MS = 3_600_000


class TestAutoRunScheduler:
    """Test cases for AutoRunScheduler."""

    def test_job_id(self):
        assert job_id_for("pools", 7) == "autorun_pools_7"

    @pytest.mark.asyncio
    async def test_register_and_unregister(self, make_coordinator):
        scheduler = AutoRunScheduler()
        coordinator = make_coordinator(pid=0, scheduler=scheduler)

        try:
            config = scheduler.register(coordinator, HOUR_MS, offset_ms=HOUR_MS)

            assert config.interval_ms == HOUR_MS
            assert scheduler.is_active("pools", 0)
            assert scheduler.list_configs("pools") == [config]
            assert scheduler.list_configs("gardening-quest") == []

            with pytest.raises(AlreadyRunning):
                scheduler.register(coordinator, HOUR_MS)

            assert scheduler.unregister("pools", 0) == 0
            assert not scheduler.is_active("pools", 0)
            assert scheduler.next_run_time("pools", 0) is None
            assert scheduler.unregister("pools", 0) == 0
        finally:
            await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_first_tick_waits_for_offset(self, make_coordinator):
        scheduler = AutoRunScheduler()
        coordinator = make_coordinator(pid=1, scheduler=scheduler)

        try:
            before = datetime.now(timezone.utc)
            scheduler.register(coordinator, HOUR_MS, offset_ms=30 * 60 * 1000)
            next_run = scheduler.next_run_time("pools", 1)

            assert next_run >= before + timedelta(minutes=29)
            assert next_run <= before + timedelta(minutes=31)
        finally:
            await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_rejects_non_positive_interval(self, make_coordinator):
        scheduler = AutoRunScheduler()

        with pytest.raises(ValueError):
            scheduler.register(make_coordinator(pid=0), 0)

        assert not scheduler.is_active("pools", 0)

    @pytest.mark.asyncio
    async def test_tick_runs_and_counts(self, make_coordinator):
        scheduler = AutoRunScheduler()
        coordinator = make_coordinator(pid=0, scheduler=scheduler)

        try:
            scheduler.register(coordinator, HOUR_MS, offset_ms=HOUR_MS)
            await scheduler._tick("pools", 0)

            config = scheduler.get("pools", 0)
            assert config.runs_completed == 1
            assert config.last_run_at is not None
            assert coordinator.checkpoint.status == CheckpointStatus.COMPLETE
            assert scheduler.unregister("pools", 0) == 1
        finally:
            await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_tick_skips_while_halted(self, make_coordinator, provider):
        scheduler = AutoRunScheduler()
        coordinator = make_coordinator(pid=0, scheduler=scheduler)

        try:
            scheduler.register(coordinator, HOUR_MS, offset_ms=HOUR_MS)
            scheduler.halt("pools", 0, "bad log")
            await scheduler._tick("pools", 0)

            config = scheduler.get("pools", 0)
            assert config.halted
            assert config.halt_reason == "bad log"
            assert config.runs_completed == 0
            assert provider.calls == []

            scheduler.clear_halt("pools", 0)
            assert not config.halted
            assert config.halt_reason is None
        finally:
            await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_tick_skips_while_a_run_is_in_flight(self, make_coordinator, provider):
        provider.delays = {1000: [0.05]}
        scheduler = AutoRunScheduler()
        coordinator = make_coordinator(pid=0, scheduler=scheduler)

        try:
            scheduler.register(coordinator, HOUR_MS, offset_ms=HOUR_MS)
            task = coordinator.trigger()
            await scheduler._tick("pools", 0)

            assert scheduler.get("pools", 0).runs_completed == 0
            await task
        finally:
            await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_tick_logs_run_failures(self, make_coordinator, mocker):
        scheduler = AutoRunScheduler()
        coordinator = make_coordinator(pid=0, scheduler=scheduler)
        mocker.patch.object(coordinator, "run_scheduled", side_effect=RuntimeError("boom"))

        try:
            scheduler.register(coordinator, HOUR_MS, offset_ms=HOUR_MS)
            await scheduler._tick("pools", 0)

            assert scheduler.get("pools", 0).runs_completed == 0
        finally:
            await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_removes_everything(self, make_coordinator):
        scheduler = AutoRunScheduler()
        for pid in range(3):
            scheduler.register(make_coordinator(pid=pid, scheduler=scheduler), HOUR_MS, offset_ms=HOUR_MS)

        await scheduler.shutdown()

        assert scheduler.list_configs() == []
