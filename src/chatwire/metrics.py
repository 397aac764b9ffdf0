"""
Prometheus metrics exporter for chatwire.

Exports low-cardinality metrics for the REST dispatcher and the gateway
shards. No route, shard or guild labels: those grow with usage.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge
from prometheus_client.registry import CollectorRegistry

if TYPE_CHECKING:
    from chatwire.gateway.types import GatewayMetrics
    from chatwire.rest.types import DispatcherMetrics


# Labels that would cause cardinality explosion
FORBIDDEN_LABELS = frozenset(
    {
        "route",
        "path",
        "endpoint",
        "guild_id",
        "channel_id",
        "user_id",
        "shard_id",
        "session_id",
        "token",
    }
)


class MetricsExporter:
    """
    Prometheus metrics exporter for the dispatcher and shard coordinator.

    Metric families:
    - chatwire_rest_*    : RequestDispatcher metrics
    - chatwire_gateway_* : ShardCoordinator metrics

    Usage:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        exporter.update(dispatcher_metrics=dm, gateway_metrics=gm)
        # generate_latest(registry) -> bytes for /metrics endpoint
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """
        Initialize metrics exporter.

        Args:
            registry: Prometheus CollectorRegistry. If None, a fresh one is created.
        """
        self._registry = registry or CollectorRegistry()

        # === REST dispatcher (chatwire_rest_*) ===
        self._rest_requests_sent = Counter(
            "chatwire_rest_requests_sent",
            "HTTP attempts put on the wire",
            registry=self._registry,
        )
        self._rest_responses_ok = Counter(
            "chatwire_rest_responses_ok",
            "2xx responses received",
            registry=self._registry,
        )
        self._rest_ratelimit_hits = Counter(
            "chatwire_rest_ratelimit_hits",
            "429 responses received (absorbed and retried)",
            registry=self._registry,
        )
        self._rest_global_ratelimit_hits = Counter(
            "chatwire_rest_global_ratelimit_hits",
            "429 responses carrying the global flag",
            registry=self._registry,
        )
        self._rest_retries = Counter(
            "chatwire_rest_retries",
            "Requests re-queued after a 429, 5xx or network failure",
            registry=self._registry,
        )
        self._rest_errors_surfaced = Counter(
            "chatwire_rest_errors_surfaced",
            "Errors raised to request callers",
            registry=self._registry,
        )
        self._rest_buckets = Gauge(
            "chatwire_rest_buckets",
            "Route buckets created",
            registry=self._registry,
        )
        self._rest_global_blocked = Gauge(
            "chatwire_rest_global_blocked",
            "1 while a global rate limit is in effect",
            registry=self._registry,
        )
        self._rest_latency_ms = Gauge(
            "chatwire_rest_latency_ms",
            "Rolling HTTP round-trip latency estimate in milliseconds",
            registry=self._registry,
        )

        # === Gateway (chatwire_gateway_*) ===
        self._gw_shards = Gauge(
            "chatwire_gateway_shards",
            "Shards managed by this process",
            registry=self._registry,
        )
        self._gw_ready_shards = Gauge(
            "chatwire_gateway_ready_shards",
            "Shards in the ready state",
            registry=self._registry,
        )
        self._gw_connect_queue_length = Gauge(
            "chatwire_gateway_connect_queue_length",
            "Shards waiting for a connect turn",
            registry=self._registry,
        )
        self._gw_max_heartbeat_latency_ms = Gauge(
            "chatwire_gateway_max_heartbeat_latency_ms",
            "Worst heartbeat round trip across shards in milliseconds",
            registry=self._registry,
        )
        self._gw_dispatches = Counter(
            "chatwire_gateway_dispatches",
            "Dispatch frames received across all shards",
            registry=self._registry,
        )
        self._gw_reconnects = Counter(
            "chatwire_gateway_reconnects",
            "Automatic reconnects scheduled across all shards",
            registry=self._registry,
        )
        self._gw_zombie_disconnects = Counter(
            "chatwire_gateway_zombie_disconnects",
            "Connections closed for missing heartbeat acknowledgements",
            registry=self._registry,
        )

        # Last seen values for counter increments (counters are monotonic)
        self._last_seen: dict[str, int] = {}

    @property
    def registry(self) -> CollectorRegistry:
        """Get the Prometheus CollectorRegistry."""
        return self._registry

    def update(
        self,
        dispatcher_metrics: DispatcherMetrics | None = None,
        gateway_metrics: GatewayMetrics | None = None,
    ) -> None:
        """
        Sync component snapshots into Prometheus.

        Call this periodically (e.g. on a timer) or before each scrape.
        """
        if dispatcher_metrics is not None:
            self._update_rest_metrics(dispatcher_metrics)
        if gateway_metrics is not None:
            self._update_gateway_metrics(gateway_metrics)

    def _inc_by_delta(self, key: str, counter: Counter, current: int) -> None:
        delta = current - self._last_seen.get(key, 0)
        if delta > 0:
            counter.inc(delta)
        self._last_seen[key] = current

    def _update_rest_metrics(self, dm: DispatcherMetrics) -> None:
        """Update dispatcher gauges and counters."""
        self._rest_buckets.set(dm.bucket_count)
        self._rest_global_blocked.set(1 if dm.global_blocked else 0)
        self._rest_latency_ms.set(dm.latency_ms)

        self._inc_by_delta("requests_sent", self._rest_requests_sent, dm.requests_sent)
        self._inc_by_delta("responses_ok", self._rest_responses_ok, dm.responses_ok)
        self._inc_by_delta("ratelimit_hits", self._rest_ratelimit_hits, dm.ratelimit_hits)
        self._inc_by_delta(
            "global_ratelimit_hits", self._rest_global_ratelimit_hits, dm.global_ratelimit_hits
        )
        self._inc_by_delta("retries", self._rest_retries, dm.retries)
        self._inc_by_delta("errors_surfaced", self._rest_errors_surfaced, dm.errors_surfaced)

    def _update_gateway_metrics(self, gm: GatewayMetrics) -> None:
        """Update gateway gauges and counters."""
        self._gw_shards.set(gm.total_shards)
        self._gw_ready_shards.set(gm.ready_shards)
        self._gw_connect_queue_length.set(gm.connect_queue_length)
        latencies = [m.latency_ms for m in gm.shard_metrics if m.latency_ms is not None]
        self._gw_max_heartbeat_latency_ms.set(max(latencies) if latencies else 0)

        self._inc_by_delta("dispatches", self._gw_dispatches, gm.total_dispatches)
        self._inc_by_delta("reconnects", self._gw_reconnects, gm.total_reconnects)
        self._inc_by_delta(
            "zombie_disconnects",
            self._gw_zombie_disconnects,
            sum(m.zombie_count for m in gm.shard_metrics),
        )

    def reset_counter_tracking(self) -> None:
        """
        Reset internal counter tracking.

        Use when components are recreated. Does NOT reset the Prometheus
        counters themselves.
        """
        self._last_seen.clear()


# Counters are exported with a _total suffix by prometheus_client
REQUIRED_METRIC_NAMES: frozenset[str] = frozenset(
    {
        "chatwire_rest_requests_sent_total",
        "chatwire_rest_responses_ok_total",
        "chatwire_rest_ratelimit_hits_total",
        "chatwire_rest_global_ratelimit_hits_total",
        "chatwire_rest_retries_total",
        "chatwire_rest_errors_surfaced_total",
        "chatwire_rest_buckets",
        "chatwire_rest_global_blocked",
        "chatwire_rest_latency_ms",
        "chatwire_gateway_shards",
        "chatwire_gateway_ready_shards",
        "chatwire_gateway_connect_queue_length",
        "chatwire_gateway_max_heartbeat_latency_ms",
        "chatwire_gateway_dispatches_total",
        "chatwire_gateway_reconnects_total",
        "chatwire_gateway_zombie_disconnects_total",
    }
)
