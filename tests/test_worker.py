"""
Tests for WorkerSlot batch execution.
"""

import pytest

from pool_event_indexer.clients.chain_client import MockChainProvider
from pool_event_indexer.exceptions import BatchCrashed, PersistError, ProviderError, ProviderTimeout
from pool_event_indexer.indexing.decoder import ChainEventSource
from pool_event_indexer.indexing.partitioner import BlockRangePartitioner
from pool_event_indexer.indexing.worker import WorkerSlot
from pool_event_indexer.models.core import WorkerState

from log_factory import WITHDRAW_SIGNATURE, deposit_log


def _bound_slot(pools_domain, store, provider, start=1000, end=2000, batch_timeout=5.0):
    partitioner = BlockRangePartitioner()
    token = partitioner.open_window(start, end, 1)[0]
    partitioner.acquire(0)
    slot = WorkerSlot(0, "pools", 1, ChainEventSource(pools_domain, provider), store,
                      batch_timeout=batch_timeout)
    slot.begin_run()
    slot.bind(token)
    return slot, token


class TestWorkerSlot:
    """Test cases for WorkerSlot."""

    def test_initial_view(self, pools_domain, store, provider):
        slot = WorkerSlot(2, "pools", 1, ChainEventSource(pools_domain, provider), store)

        view = slot.to_dict()

        assert view["workerId"] == 2
        assert view["state"] == "idle"
        assert view["rangeStart"] is None
        assert view["percentComplete"] == 0.0

    @pytest.mark.asyncio
    async def test_successful_batch_counts_new_events(self, pools_domain, store):
        provider = MockChainProvider(head_block=2000, logs=[
            deposit_log(1, 1010),
            deposit_log(1, 1200, signature=WITHDRAW_SIGNATURE),
            deposit_log(1, 1600),
        ])
        slot, token = _bound_slot(pools_domain, store, provider)

        result = await slot.run_batch(500)

        assert result.success
        assert (result.from_block, result.to_block) == (1000, 1500)
        assert result.events_found == 2
        assert result.events_by_type == {"Deposit": 1, "Withdraw": 1}
        assert slot.current_block == 1500
        assert slot.batches_completed == 1
        assert slot.percent_complete == 50.0
        assert slot.state == WorkerState.WORKING
        # The coordinator owns the cursor
        assert token.current == 1000
        assert token.inflight_end == 1500

    @pytest.mark.asyncio
    async def test_rescanned_boundary_block_is_not_counted_twice(self, pools_domain, store):
        provider = MockChainProvider(head_block=2000, logs=[deposit_log(1, 1500)])
        slot, token = _bound_slot(pools_domain, store, provider)

        first = await slot.run_batch(500)
        token.current = first.new_current_block
        second = await slot.run_batch(500)

        assert first.events_found == 1
        assert second.events_found == 0
        assert slot.events_found == 1

    @pytest.mark.asyncio
    async def test_provider_error_is_returned_not_raised(self, pools_domain, store):
        provider = MockChainProvider(head_block=2000, failures={1000: [ProviderError("rpc down")]})
        slot, token = _bound_slot(pools_domain, store, provider)

        result = await slot.run_batch(500)

        assert not result.success
        assert not result.fatal
        assert isinstance(result.error, ProviderError)
        assert result.new_current_block == 1000
        assert slot.errors == 1
        assert slot.consecutive_errors == 1
        assert slot.last_error == "rpc down"
        assert slot.current_block == 1000

    @pytest.mark.asyncio
    async def test_timeout_becomes_provider_timeout(self, pools_domain, store):
        provider = MockChainProvider(head_block=2000, delays={1000: [1.0]})
        slot, _ = _bound_slot(pools_domain, store, provider, batch_timeout=0.05)

        result = await slot.run_batch(500)

        assert isinstance(result.error, ProviderTimeout)
        assert result.error.transient
        assert slot.errors == 1

    @pytest.mark.asyncio
    async def test_decode_error_is_fatal(self, pools_domain, store):
        bad = deposit_log(1, 1100)
        bad["data"] = "0x"
        provider = MockChainProvider(head_block=2000, logs=[bad])
        slot, _ = _bound_slot(pools_domain, store, provider)

        result = await slot.run_batch(500)

        assert result.fatal
        assert slot.errors == 1

    @pytest.mark.asyncio
    async def test_persist_error_is_transient(self, pools_domain, store, mocker):
        provider = MockChainProvider(head_block=2000, logs=[deposit_log(1, 1100)])
        slot, _ = _bound_slot(pools_domain, store, provider)
        mocker.patch.object(store, "persist_events", side_effect=PersistError("disk full"))

        result = await slot.run_batch(500)

        assert isinstance(result.error, PersistError)
        assert not result.fatal

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_returned_as_fatal(self, pools_domain, store, mocker):
        provider = MockChainProvider(head_block=2000, logs=[deposit_log(1, 1100)])
        slot, token = _bound_slot(pools_domain, store, provider)
        mocker.patch.object(store, "persist_events", side_effect=KeyError("payload_json"))

        result = await slot.run_batch(500)

        assert isinstance(result.error, BatchCrashed)
        assert result.fatal
        assert "KeyError" in slot.last_error
        assert result.new_current_block == 1000
        assert token.current == 1000

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_errors(self, pools_domain, store):
        provider = MockChainProvider(head_block=2000, failures={1000: [ProviderError("once")]})
        slot, _ = _bound_slot(pools_domain, store, provider)

        await slot.run_batch(500)
        result = await slot.run_batch(500)

        assert result.success
        assert slot.errors == 1
        assert slot.consecutive_errors == 0

    def test_finish_and_stop(self, pools_domain, store, provider):
        slot, _ = _bound_slot(pools_domain, store, provider)

        slot.finish()
        assert slot.state == WorkerState.DONE
        assert not slot.is_running
        assert slot.completed_at is not None
        assert slot.runs_completed == 1

        slot.begin_run()
        slot.stop()
        assert slot.state == WorkerState.IDLE
        assert not slot.is_active
        assert slot.runs_completed == 1

    def test_percent_complete_for_empty_range(self, pools_domain, store, provider):
        slot, _ = _bound_slot(pools_domain, store, provider)
        slot.range_end = slot.range_start

        assert slot.percent_complete == 100.0
