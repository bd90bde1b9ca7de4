"""
Admin HTTP API for status polling and lifecycle control.

All routes live under ``<base_path>/{domain}/`` and speak camelCase JSON.
"""

import json
import logging
from typing import Any, Dict, Optional

from aiohttp import web

from pool_event_indexer.exceptions import (
    AlreadyRunning,
    IndexerError,
    ResetWhileRunning,
    UnknownIndexerError,
)
from pool_event_indexer.indexing.registry import IndexerRegistry

logger = logging.getLogger(__name__)

REGISTRY_KEY = web.AppKey("registry", IndexerRegistry)


def _error(status: int, error: str, message: Optional[str] = None, **extra) -> web.Response:
    body: Dict[str, Any] = {"error": error}
    if message:
        body["message"] = message
    body.update(extra)
    return web.json_response(body, status=status)


def _bad_request(message: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(
        text=json.dumps({"error": "bad_request", "message": message}),
        content_type="application/json",
    )


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Map indexer exceptions onto HTTP status codes."""
    try:
        return await handler(request)
    except UnknownIndexerError as e:
        return _error(404, "not_found", str(e))
    except AlreadyRunning as e:
        return _error(409, "already_running", str(e), pid=e.pid)
    except ResetWhileRunning as e:
        return _error(409, "reset_while_running", str(e), pid=e.pid)
    except IndexerError as e:
        logger.error(f"Admin request {request.method} {request.path} failed: {e}")
        return _error(500, "indexer_error", str(e))


async def _read_body(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise _bad_request("invalid json body")
    if not isinstance(body, dict):
        raise _bad_request("json body must be an object")
    return body


def _int_field(body: Dict[str, Any], name: str, required: bool = True) -> Optional[int]:
    value = body.get(name)
    if value is None:
        if required:
            raise _bad_request(f"{name} is required")
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise _bad_request(f"{name} must be an integer")
    if value < 0:
        raise _bad_request(f"{name} must not be negative")
    return value


def _pid_from_path(request: web.Request) -> int:
    raw = request.match_info["pid"]
    try:
        return int(raw)
    except ValueError:
        raise _bad_request(f"pid must be an integer, got {raw!r}")


def _int_query(request: web.Request, name: str, default: int) -> int:
    raw = request.query.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise _bad_request(f"{name} must be an integer, got {raw!r}")
    if value <= 0:
        raise _bad_request(f"{name} must be positive")
    return value


class AdminHandlers:
    """Request handlers bound to one registry."""

    def __init__(self, registry: IndexerRegistry):
        self.registry = registry

    async def list_status(self, request: web.Request) -> web.Response:
        domain = request.match_info["domain"]
        statuses = await self.registry.statuses(domain)
        return web.json_response({
            "domain": domain,
            "pools": [status.to_dict() for status in statuses],
        })

    async def pool_status(self, request: web.Request) -> web.Response:
        coordinator = await self.registry.get(request.match_info["domain"], _pid_from_path(request))
        return web.json_response(coordinator.status().to_dict())

    async def stakers(self, request: web.Request) -> web.Response:
        coordinator = await self.registry.get(request.match_info["domain"], _pid_from_path(request))
        store = self.registry.store
        if request.query.get("active", "").lower() in ("1", "true", "yes"):
            limit = _int_query(request, "limit", 500)
            rows = await store.list_active_stakers(coordinator.domain, coordinator.pid, limit)
        else:
            rows = await store.list_staker_positions(coordinator.domain, coordinator.pid)
        return web.json_response({"pid": coordinator.pid, "count": len(rows), "items": rows})

    async def trigger(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        pid = _int_field(body, "pid")
        max_blocks = _int_field(body, "maxBlocksPerRun", required=False)

        coordinator = await self.registry.get(request.match_info["domain"], pid)
        coordinator.trigger(max_blocks or None)
        return web.json_response({"status": "started", "pid": pid}, status=202)

    async def auto_run(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        pid = _int_field(body, "pid")
        action = body.get("action")
        coordinator = await self.registry.get(request.match_info["domain"], pid)

        if action == "start":
            interval_ms = _int_field(body, "intervalMs", required=False)
            if interval_ms == 0:
                raise _bad_request("intervalMs must be positive")
            offset_ms = _int_field(body, "offsetMs", required=False) or 0
            config = coordinator.start_auto_run(interval_ms, offset_ms=offset_ms)
            return web.json_response({"status": "started", "pid": pid, **config.to_dict()})

        if action == "stop":
            runs_completed = coordinator.stop_auto_run()
            return web.json_response({"status": "stopped", "pid": pid, "runsCompleted": runs_completed})

        raise _bad_request("action must be 'start' or 'stop'")

    async def auto_run_all(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        domain = request.match_info["domain"]
        self.registry.domain_config(domain)
        action = body.get("action")

        if action == "start":
            interval_ms = _int_field(body, "intervalMs", required=False)
            if interval_ms == 0:
                raise _bad_request("intervalMs must be positive")
            started = await self.registry.start_all_auto_runs(domain, interval_ms)
            return web.json_response({
                "status": "started",
                "count": len(started),
                "pools": [{"pid": config.pid, **config.to_dict()} for config in started],
            })

        if action == "stop":
            stopped = await self.registry.stop_all_auto_runs(domain)
            return web.json_response({
                "status": "stopped",
                "count": len(stopped),
                "runsCompleted": {str(pid): runs for (_, pid), runs in stopped.items()},
            })

        raise _bad_request("action must be 'start' or 'stop'")

    async def stop(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        pid = _int_field(body, "pid")
        coordinator = await self.registry.get(request.match_info["domain"], pid)
        runs_completed = await coordinator.stop()
        return web.json_response({
            "status": "stopped",
            "pid": pid,
            "runsCompleted": runs_completed,
            "lastIndexedBlock": coordinator.checkpoint.last_indexed_block,
        })

    async def reset(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        pid = _int_field(body, "pid")
        coordinator = await self.registry.get(request.match_info["domain"], pid)
        deleted = await coordinator.reset()
        return web.json_response({"status": "reset", "pid": pid, "deletedRows": deleted})


def create_admin_app(registry: IndexerRegistry, base_path: str = "/api/admin") -> web.Application:
    """Build the aiohttp application serving the admin routes."""
    base = base_path.rstrip("/")
    handlers = AdminHandlers(registry)

    app = web.Application(middlewares=[error_middleware])
    app[REGISTRY_KEY] = registry
    app.add_routes([
        web.get(f"{base}/{{domain}}/status", handlers.list_status),
        web.get(f"{base}/{{domain}}/status/{{pid}}", handlers.pool_status),
        web.get(f"{base}/{{domain}}/stakers/{{pid}}", handlers.stakers),
        web.post(f"{base}/{{domain}}/trigger", handlers.trigger),
        web.post(f"{base}/{{domain}}/auto-run", handlers.auto_run),
        web.post(f"{base}/{{domain}}/auto-run-all", handlers.auto_run_all),
        web.post(f"{base}/{{domain}}/stop", handlers.stop),
        web.post(f"{base}/{{domain}}/reset", handlers.reset),
    ])

    async def on_cleanup(app: web.Application) -> None:
        await app[REGISTRY_KEY].shutdown()

    app.on_cleanup.append(on_cleanup)
    return app


async def run_admin_server(registry: IndexerRegistry, host: str, port: int, base_path: str) -> web.AppRunner:
    """Start serving the admin API; the caller owns the returned runner."""
    runner = web.AppRunner(create_admin_app(registry, base_path))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"Admin API listening on http://{host}:{port}{base_path}")
    return runner
