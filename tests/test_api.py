"""
Tests for the admin HTTP API.
"""

import asyncio

import pytest
from aiohttp.test_utils import TestClient, TestServer

from pool_event_indexer.api.admin_routes import create_admin_app

from log_factory import WITHDRAW_SIGNATURE, deposit_log

BASE = "/api/admin/pools"
HOUR_MS = 3_600_000


def _client(registry):
    return TestClient(TestServer(create_admin_app(registry)))


async def _wait_idle(registry, pid):
    coordinator = await registry.get("pools", pid)
    while coordinator.is_running:
        await asyncio.sleep(0.01)
    return coordinator


class TestStatusRoutes:
    """Test cases for the read-only routes."""

    @pytest.mark.asyncio
    async def test_list_status(self, registry):
        async with _client(registry) as client:
            response = await client.get(f"{BASE}/status")
            data = await response.json()

        assert response.status == 200
        assert data["domain"] == "pools"
        assert [pool["pid"] for pool in data["pools"]] == [0, 1, 2, 3]
        assert data["pools"][0]["status"] == "idle"
        assert data["pools"][0]["lastIndexedBlock"] == 1000

    @pytest.mark.asyncio
    async def test_pool_status(self, registry):
        async with _client(registry) as client:
            response = await client.get(f"{BASE}/status/3")
            data = await response.json()

        assert response.status == 200
        assert data["indexerName"] == "pools_pool_3"
        assert data["isRunning"] is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path,status,error", [
        ("/api/admin/nope/status", 404, "not_found"),
        (f"{BASE}/status/99", 404, "not_found"),
        (f"{BASE}/status/abc", 400, "bad_request"),
    ])
    async def test_status_errors(self, registry, path, status, error):
        async with _client(registry) as client:
            response = await client.get(path)
            data = await response.json()

        assert response.status == status
        assert data["error"] == error

    @pytest.mark.asyncio
    async def test_stakers_after_a_run(self, registry, provider):
        provider.logs = [deposit_log(1, 1100), deposit_log(1, 1800, amount=5)]

        async with _client(registry) as client:
            response = await client.post(f"{BASE}/trigger", json={"pid": 1})
            assert response.status == 202
            await _wait_idle(registry, 1)

            response = await client.get(f"{BASE}/stakers/1")
            data = await response.json()

        assert data["pid"] == 1
        assert data["count"] == 1
        assert data["items"][0]["lastActivityBlock"] == 1800
        assert data["items"][0]["lastActivityAmount"] == "5"

    @pytest.mark.asyncio
    async def test_active_stakers_skip_withdrawn_wallets(self, registry, provider):
        other = "0x" + "cd" * 20
        provider.logs = [
            deposit_log(1, 1100, amount=5),
            deposit_log(1, 1200, amount=9, wallet=other),
            deposit_log(1, 1300, amount=9, wallet=other, signature=WITHDRAW_SIGNATURE),
        ]

        async with _client(registry) as client:
            await client.post(f"{BASE}/trigger", json={"pid": 1})
            await _wait_idle(registry, 1)

            everyone = await (await client.get(f"{BASE}/stakers/1")).json()
            active = await (await client.get(f"{BASE}/stakers/1?active=true")).json()
            bad_limit = await client.get(f"{BASE}/stakers/1?active=true&limit=zero")

        assert everyone["count"] == 2
        assert active["count"] == 1
        assert active["items"][0]["stakedLP"] == "5"
        assert bad_limit.status == 400


class TestTriggerRoute:
    """Test cases for POST /trigger."""

    @pytest.mark.asyncio
    async def test_trigger_runs_to_completion(self, registry):
        async with _client(registry) as client:
            response = await client.post(f"{BASE}/trigger", json={"pid": 0})
            started = await response.json()
            await _wait_idle(registry, 0)

            response = await client.get(f"{BASE}/status/0")
            status = await response.json()

        assert started == {"status": "started", "pid": 0}
        assert status["status"] == "complete"
        assert status["lastIndexedBlock"] == 2000
        assert status["percentComplete"] == 100.0

    @pytest.mark.asyncio
    async def test_trigger_with_budget(self, registry):
        async with _client(registry) as client:
            await client.post(f"{BASE}/trigger", json={"pid": 0, "maxBlocksPerRun": 400})
            coordinator = await _wait_idle(registry, 0)

        assert coordinator.checkpoint.last_indexed_block == 1400
        assert coordinator.checkpoint.status.value == "idle"

    @pytest.mark.asyncio
    async def test_second_trigger_conflicts(self, registry, provider):
        provider.delays = {1000: [0.1]}

        async with _client(registry) as client:
            await client.post(f"{BASE}/trigger", json={"pid": 0})
            response = await client.post(f"{BASE}/trigger", json={"pid": 0})
            data = await response.json()
            await _wait_idle(registry, 0)

        assert response.status == 409
        assert data["error"] == "already_running"
        assert data["pid"] == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {},
        {"pid": "1"},
        {"pid": -1},
        {"pid": True},
        {"pid": 0, "maxBlocksPerRun": 1.5},
        [0],
    ])
    async def test_invalid_bodies(self, registry, body):
        async with _client(registry) as client:
            response = await client.post(f"{BASE}/trigger", json=body)
            data = await response.json()

        assert response.status == 400
        assert data["error"] == "bad_request"

    @pytest.mark.asyncio
    async def test_malformed_json(self, registry):
        async with _client(registry) as client:
            response = await client.post(
                f"{BASE}/trigger", data="{not json", headers={"Content-Type": "application/json"}
            )

        assert response.status == 400


class TestAutoRunRoutes:
    """Test cases for auto-run control."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, registry):
        async with _client(registry) as client:
            response = await client.post(f"{BASE}/auto-run", json={"pid": 2, "action": "start", "offsetMs": HOUR_MS})
            started = await response.json()

            conflict = await client.post(f"{BASE}/auto-run", json={"pid": 2, "action": "start", "offsetMs": HOUR_MS})

            response = await client.post(f"{BASE}/auto-run", json={"pid": 2, "action": "stop"})
            stopped = await response.json()

        assert started["status"] == "started"
        assert started["pid"] == 2
        assert started["intervalMs"] == 60000
        assert started["offsetMs"] == HOUR_MS
        assert conflict.status == 409
        assert stopped == {"status": "stopped", "pid": 2, "runsCompleted": 0}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {"pid": 0, "action": "pause"},
        {"pid": 0},
        {"pid": 0, "action": "start", "intervalMs": 0},
    ])
    async def test_invalid_requests(self, registry, body):
        async with _client(registry) as client:
            response = await client.post(f"{BASE}/auto-run", json=body)

        assert response.status == 400

    @pytest.mark.asyncio
    async def test_auto_run_all(self, registry):
        async with _client(registry) as client:
            response = await client.post(f"{BASE}/auto-run-all", json={"action": "start", "intervalMs": 8000})
            started = await response.json()

            response = await client.post(f"{BASE}/auto-run-all", json={"action": "stop"})
            stopped = await response.json()

        assert started["status"] == "started"
        assert started["count"] == 4
        assert [pool["offsetMs"] for pool in started["pools"]] == [0, 2000, 4000, 6000]
        assert stopped["status"] == "stopped"
        assert stopped["count"] == 4
        # pool 0 has no offset, so its first tick may already have run
        assert set(stopped["runsCompleted"]) == {"0", "1", "2", "3"}

    @pytest.mark.asyncio
    async def test_auto_run_all_unknown_domain(self, registry):
        async with _client(registry) as client:
            response = await client.post("/api/admin/nope/auto-run-all", json={"action": "start"})

        assert response.status == 404


class TestStopAndReset:
    """Test cases for POST /stop and POST /reset."""

    @pytest.mark.asyncio
    async def test_stop_idle_pool(self, registry):
        async with _client(registry) as client:
            response = await client.post(f"{BASE}/stop", json={"pid": 0})
            data = await response.json()

        assert data == {"status": "stopped", "pid": 0, "runsCompleted": None, "lastIndexedBlock": 1000}

    @pytest.mark.asyncio
    async def test_stop_reports_auto_run_runs(self, registry):
        async with _client(registry) as client:
            await client.post(f"{BASE}/auto-run", json={"pid": 0, "action": "start", "offsetMs": HOUR_MS})
            response = await client.post(f"{BASE}/stop", json={"pid": 0})
            data = await response.json()

        assert data["runsCompleted"] == 0
        assert not registry.scheduler.is_active("pools", 0)

    @pytest.mark.asyncio
    async def test_reset_requires_auto_run_stopped(self, registry, provider):
        provider.logs = [deposit_log(0, 1500)]

        async with _client(registry) as client:
            await client.post(f"{BASE}/trigger", json={"pid": 0})
            await _wait_idle(registry, 0)
            await client.post(f"{BASE}/auto-run", json={"pid": 0, "action": "start", "offsetMs": HOUR_MS})

            blocked = await client.post(f"{BASE}/reset", json={"pid": 0})
            blocked_data = await blocked.json()

            await client.post(f"{BASE}/auto-run", json={"pid": 0, "action": "stop"})
            response = await client.post(f"{BASE}/reset", json={"pid": 0})
            data = await response.json()

            response = await client.get(f"{BASE}/status/0")
            status = await response.json()

        assert blocked.status == 409
        assert blocked_data["error"] == "reset_while_running"
        # one event, one staker position, one checkpoint
        assert data == {"status": "reset", "pid": 0, "deletedRows": 3}
        assert status["lastIndexedBlock"] == 1000
        assert status["totalEventsIndexed"] == 0
