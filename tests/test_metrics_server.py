"""
Smoke tests for the /metrics and /healthz HTTP endpoints.
"""

from __future__ import annotations

import aiohttp
import pytest
from aiohttp.test_utils import TestClient, TestServer
from prometheus_client import Counter, Gauge
from prometheus_client.registry import CollectorRegistry

from chatwire.metrics_server import (
    create_metrics_app,
    start_metrics_server,
    stop_metrics_server,
)


@pytest.fixture()
def registry() -> CollectorRegistry:
    """Fresh Prometheus registry with sample metrics."""
    reg = CollectorRegistry()
    Gauge("chatwire_gateway_ready_shards", "test gauge", registry=reg).set(3.0)
    Counter("chatwire_rest_retries", "test counter", registry=reg).inc(7)
    return reg


class TestMetricsEndpoint:
    """GET /metrics returns the Prometheus exposition."""

    @pytest.mark.asyncio
    async def test_metrics_content(self, registry: CollectorRegistry) -> None:
        app = create_metrics_app(registry)
        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/metrics")
            assert resp.status == 200
            assert resp.content_type == "text/plain"
            assert "version=0.0.4" in resp.headers.get("Content-Type", "")

            body = await resp.text()
            assert "chatwire_gateway_ready_shards 3.0" in body
            assert "chatwire_rest_retries_total 7.0" in body
            assert "# TYPE chatwire_rest_retries_total counter" in body

    @pytest.mark.asyncio
    async def test_refresh_runs_before_each_scrape(self, registry: CollectorRegistry) -> None:
        calls: list[int] = []
        app = create_metrics_app(registry, refresh_fn=lambda: calls.append(1))
        async with TestClient(TestServer(app)) as client:
            await client.get("/metrics")
            await client.get("/metrics")
            await client.get("/healthz")
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_unknown_path_returns_404(self, registry: CollectorRegistry) -> None:
        app = create_metrics_app(registry)
        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/unknown")
            assert resp.status == 404


class TestHealthzEndpoint:
    """GET /healthz returns health JSON."""

    @pytest.mark.asyncio
    async def test_default_response(self) -> None:
        app = create_metrics_app(CollectorRegistry())
        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/healthz")
            assert resp.status == 200
            assert await resp.json() == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_health_fn(self) -> None:
        def health_fn() -> dict[str, object]:
            return {"status": "degraded", "ready_shards": 1, "total_shards": 2}

        app = create_metrics_app(CollectorRegistry(), health_fn=health_fn)
        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/healthz")
            assert resp.status == 503
            data = await resp.json()
            assert data["status"] == "degraded"
            assert data["total_shards"] == 2


class TestServerLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, registry: CollectorRegistry) -> None:
        runner = await start_metrics_server(registry, port=0)
        try:
            assert runner.addresses
            port = runner.addresses[0][1]
            async with aiohttp.ClientSession() as session:
                async with session.get(f"http://127.0.0.1:{port}/metrics") as resp:
                    assert resp.status == 200
                    assert "chatwire_gateway_ready_shards" in await resp.text()
        finally:
            await stop_metrics_server(runner)
