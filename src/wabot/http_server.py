"""Embedded HTTP server for health checks and status.

Exposes endpoints on ``server.host:server.port`` (default 0.0.0.0:3000).
Deploy platforms that require a listening port point their health check
at ``/health``.
"""

from __future__ import annotations

import time
from typing import Any, Protocol

from aiohttp import web

from wabot.logger import logger

_start_time = time.monotonic()


class HttpDeps(Protocol):
    """Dependencies injected by app.py."""

    def connection_status(self) -> dict[str, Any]: ...

    def plugin_summaries(self) -> list[dict[str, Any]]: ...

    def get_capabilities(self) -> dict[str, bool]: ...

    def bot_name(self) -> str: ...


# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------


async def _handle_health(request: web.Request) -> web.Response:
    deps: HttpDeps = request.app["deps"]
    status = deps.connection_status()
    return web.json_response(
        {
            "status": "ok",
            "uptime_seconds": round(time.monotonic() - _start_time),
            "connected": status.get("state") == "open",
        }
    )


async def _handle_api_status(request: web.Request) -> web.Response:
    deps: HttpDeps = request.app["deps"]
    return web.json_response(
        {
            "name": deps.bot_name(),
            "uptime_seconds": round(time.monotonic() - _start_time),
            "connection": deps.connection_status(),
            "plugins": len(deps.plugin_summaries()),
            "capabilities": deps.get_capabilities(),
        }
    )


async def _handle_api_plugins(request: web.Request) -> web.Response:
    deps: HttpDeps = request.app["deps"]
    return web.json_response(deps.plugin_summaries())


# ------------------------------------------------------------------
# Server setup
# ------------------------------------------------------------------


def create_app(deps: HttpDeps) -> web.Application:
    app = web.Application()
    app["deps"] = deps
    app.router.add_get("/", _handle_health)
    app.router.add_get("/health", _handle_health)
    app.router.add_get("/api/status", _handle_api_status)
    app.router.add_get("/api/plugins", _handle_api_plugins)
    return app


async def start_http_server(deps: HttpDeps, host: str, port: int) -> web.AppRunner:
    """Create, start, and return the HTTP server runner."""
    runner = web.AppRunner(create_app(deps))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("HTTP server listening", host=host, port=port)
    return runner
