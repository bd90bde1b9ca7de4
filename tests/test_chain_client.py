"""
Tests for the JSON-RPC chain provider and the scripted mock provider.
"""

import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from pool_event_indexer.clients.chain_client import (
    JsonRpcChainProvider,
    MockChainProvider,
    create_chain_provider,
)
from pool_event_indexer.config.models import ErrorConfig, ProviderConfig
from pool_event_indexer.exceptions import ProviderError, ProviderTimeout
from pool_event_indexer.utils.error_handling import CircuitBreakerOpenError

from log_factory import deposit_log

REQUESTS = web.AppKey("requests", list)


def _rpc_app(respond):
    """App answering JSON-RPC posts with ``respond(body)``; records request bodies."""
    app = web.Application()
    app[REQUESTS] = []

    async def handle(request):
        body = await request.json()
        request.app[REQUESTS].append(body)
        return await respond(body)

    app.router.add_post("/", handle)
    return app


def _result(body, result):
    return web.json_response({"jsonrpc": "2.0", "id": body["id"], "result": result})


def _provider(server, **overrides):
    provider_config = ProviderConfig(rpc_url=str(server.make_url("/")), **overrides)
    return JsonRpcChainProvider(provider_config, ErrorConfig(circuit_breaker_threshold=2))


class TestJsonRpcChainProvider:
    """Test cases for JsonRpcChainProvider."""

    @pytest.mark.asyncio
    async def test_block_number(self):
        async def respond(body):
            return _result(body, "0x7d0")

        async with TestServer(_rpc_app(respond)) as server:
            async with _provider(server) as provider:
                assert await provider.get_block_number() == 2000

            assert server.app[REQUESTS][0]["method"] == "eth_blockNumber"

    @pytest.mark.asyncio
    async def test_get_logs_splits_range_into_chunks(self):
        async def respond(body):
            return _result(body, [{"fromBlock": body["params"][0]["fromBlock"]}])

        async with TestServer(_rpc_app(respond)) as server:
            async with _provider(server, blocks_per_query=100) as provider:
                logs = await provider.get_logs(["0xABC"], [["0x01"], None, "0x02"], 1000, 1250)

            params = [request["params"][0] for request in server.app[REQUESTS]]

        assert [(p["fromBlock"], p["toBlock"]) for p in params] == [
            (hex(1000), hex(1099)),
            (hex(1100), hex(1199)),
            (hex(1200), hex(1250)),
        ]
        assert params[0]["address"] == ["0xabc"]
        assert params[0]["topics"] == [["0x01"], None, "0x02"]
        assert len(logs) == 3

    @pytest.mark.asyncio
    async def test_rpc_error_becomes_provider_error(self):
        async def respond(body):
            return web.json_response({
                "jsonrpc": "2.0", "id": body["id"],
                "error": {"code": -32005, "message": "query returned more than 10000 results"},
            })

        async with TestServer(_rpc_app(respond)) as server:
            async with _provider(server) as provider:
                with pytest.raises(ProviderError) as exc_info:
                    await provider.get_logs([], [], 0, 10)

        assert "-32005" in str(exc_info.value)
        assert exc_info.value.transient

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_http_errors_become_provider_errors(self, status):
        async def respond(body):
            return web.Response(status=status, text="nope")

        async with TestServer(_rpc_app(respond)) as server:
            async with _provider(server) as provider:
                with pytest.raises(ProviderError):
                    await provider.get_block_number()

    @pytest.mark.asyncio
    async def test_unexpected_log_payload(self):
        async def respond(body):
            return _result(body, {"not": "a list"})

        async with TestServer(_rpc_app(respond)) as server:
            async with _provider(server) as provider:
                with pytest.raises(ProviderError):
                    await provider.get_logs([], [], 0, 10)

    @pytest.mark.asyncio
    async def test_slow_endpoint_times_out(self):
        async def respond(body):
            await asyncio.sleep(0.5)
            return _result(body, "0x1")

        async with TestServer(_rpc_app(respond)) as server:
            async with _provider(server, timeout=0.1) as provider:
                with pytest.raises(ProviderTimeout):
                    await provider.get_block_number()

    @pytest.mark.asyncio
    async def test_circuit_opens_after_repeated_failures(self):
        async def respond(body):
            return web.Response(status=500)

        async with TestServer(_rpc_app(respond)) as server:
            async with _provider(server) as provider:
                for _ in range(2):
                    with pytest.raises(ProviderError):
                        await provider.get_block_number()

                with pytest.raises(CircuitBreakerOpenError):
                    await provider.get_block_number()

            assert len(server.app[REQUESTS]) == 2


class TestMockChainProvider:
    """Test cases for MockChainProvider."""

    @pytest.mark.asyncio
    async def test_filters_by_range_and_topics(self):
        provider = MockChainProvider(head_block=50, logs=[
            deposit_log(1, 10),
            deposit_log(2, 11),
            deposit_log(1, 30),
        ])
        wanted = [None, None, deposit_log(1, 0)["topics"][2]]

        logs = await provider.get_logs([], wanted, 0, 20)

        assert [int(log["blockNumber"], 16) for log in logs] == [10]
        assert provider.calls == [(0, 20)]

    @pytest.mark.asyncio
    async def test_scripted_failure_fires_once(self):
        provider = MockChainProvider(failures={5: [ProviderError("once")]})

        with pytest.raises(ProviderError):
            await provider.get_logs([], [], 5, 10)
        assert await provider.get_logs([], [], 5, 10) == []

    @pytest.mark.asyncio
    async def test_head_error(self):
        provider = MockChainProvider(head_block=10, head_error=ProviderTimeout("slow"))

        with pytest.raises(ProviderTimeout):
            await provider.get_block_number()

    def test_factory(self):
        assert isinstance(create_chain_provider(ProviderConfig(), ErrorConfig(), use_mock=True), MockChainProvider)
        assert isinstance(create_chain_provider(ProviderConfig(), ErrorConfig()), JsonRpcChainProvider)
