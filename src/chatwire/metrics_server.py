"""
HTTP endpoints for scraping a running client.

GET /metrics  Prometheus exposition of a CollectorRegistry, refreshed per scrape
GET /healthz  Client.get_health_info() as JSON; 503 unless status is "ok"
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from aiohttp import web
from prometheus_client import generate_latest

if TYPE_CHECKING:
    from prometheus_client.registry import CollectorRegistry

logger = logging.getLogger(__name__)

HealthFn = Callable[[], dict[str, Any]]
RefreshFn = Callable[[], None]

METRICS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


class _Endpoints:
    def __init__(
        self,
        registry: CollectorRegistry,
        health_fn: HealthFn | None,
        refresh_fn: RefreshFn | None,
    ) -> None:
        self._registry = registry
        self._health_fn = health_fn
        self._refresh_fn = refresh_fn

    async def metrics(self, request: web.Request) -> web.Response:
        # Snapshot dispatcher/gateway counters into the registry first.
        if self._refresh_fn is not None:
            self._refresh_fn()
        return web.Response(
            body=generate_latest(self._registry),
            headers={"Content-Type": METRICS_CONTENT_TYPE},
        )

    async def healthz(self, request: web.Request) -> web.Response:
        if self._health_fn is None:
            return web.json_response({"status": "ok"})
        info = self._health_fn()
        status = 200 if info.get("status") == "ok" else 503
        return web.json_response(info, status=status)


def create_metrics_app(
    registry: CollectorRegistry,
    *,
    health_fn: HealthFn | None = None,
    refresh_fn: RefreshFn | None = None,
) -> web.Application:
    """
    Build the /metrics + /healthz application.

    Args:
        registry: Registry to expose.
        health_fn: Source of the /healthz body.
        refresh_fn: Run before each /metrics scrape.
    """
    endpoints = _Endpoints(registry, health_fn, refresh_fn)
    app = web.Application()
    app.router.add_get("/metrics", endpoints.metrics)
    app.router.add_get("/healthz", endpoints.healthz)
    return app


async def start_metrics_server(
    registry: CollectorRegistry,
    host: str = "127.0.0.1",
    port: int = 9090,
    *,
    health_fn: HealthFn | None = None,
    refresh_fn: RefreshFn | None = None,
) -> web.AppRunner:
    """Serve the metrics app; ``port=0`` binds an ephemeral port."""
    runner = web.AppRunner(
        create_metrics_app(registry, health_fn=health_fn, refresh_fn=refresh_fn),
        access_log=None,
    )
    await runner.setup()
    await web.TCPSite(runner, host, port).start()

    bound = runner.addresses[0][1] if runner.addresses else port
    logger.info("Metrics server listening", extra={"host": host, "port": bound})
    return runner


async def stop_metrics_server(runner: web.AppRunner) -> None:
    await runner.cleanup()
    logger.info("Metrics server stopped")
