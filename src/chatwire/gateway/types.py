"""
Types and configuration for gateway shards.

Platform limits:
- 120 outbound frames per 60 s per connection
- 5 presence updates per 20 s per connection
- One identify per 5 s per concurrency key
"""

from __future__ import annotations

import platform
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from chatwire.gateway.constants import Intents, resolve_intents
from chatwire.ratelimit.backoff import BackoffConfig


class ConnectionStatus(str, Enum):
    """Gateway connection status."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    IDENTIFYING = "identifying"
    RESUMING = "resuming"
    READY = "ready"


def _default_properties() -> dict[str, str]:
    return {"os": platform.system().lower() or "linux", "browser": "chatwire", "device": "chatwire"}


def _default_reconnect_backoff() -> BackoffConfig:
    return BackoffConfig(base_delay_ms=1000, max_delay_ms=30000, max_retries=10)


@dataclass
class GatewayConfig:
    """
    Configuration for gateway shards and their coordinator.

    Attributes:
        url: Gateway URL; None asks the REST API.
        autoreconnect: Reconnect automatically after unexpected closes.
        compress: Request zlib-stream transport compression.
        connection_timeout_ms: Time allowed between socket open and HELLO.
        disable_events: Dispatch event names not forwarded upward.
        first_shard_id: First shard this process runs.
        last_shard_id: Last shard this process runs; None means max_shards - 1.
        max_shards: Total shard count, or "auto" to ask the REST API.
        max_concurrency: Identify concurrency, or "auto" to ask the REST API.
        guild_create_timeout_ms: Wait for outstanding GUILD_CREATEs before ready.
        intents: Intent bitmask or list of intent names.
        large_threshold: Member count above which guilds are sent partially.
        max_reconnect_attempts: Automatic reconnect ceiling; None is unlimited.
        max_resume_attempts: Connect attempts after which the session is dropped.
        resume_window_ms: Maximum disconnect age for a resume.
        identify_spacing_ms: Minimum gap between identifies on one concurrency key.
        connect_poll_interval_ms: Connect queue retry interval.
        max_missed_heartbeats: Unacknowledged heartbeats before a zombie close.
        request_members_timeout_ms: Default timeout for member requests.
        reconnect_backoff: Per-shard backoff before a fresh identify.
        send_limit: Outbound frames per send window.
        send_interval_ms: Send window length.
        send_reserved: Send tokens reserved for priority frames.
        presence_limit: Presence updates per presence window.
        presence_interval_ms: Presence window length.
        presence: Initial presence sent with identify.
        properties: Connection properties sent with identify.
    """

    url: str | None = None
    autoreconnect: bool = True
    compress: bool = False
    connection_timeout_ms: int = 30000
    disable_events: frozenset[str] = field(default_factory=frozenset)
    first_shard_id: int = 0
    last_shard_id: int | None = None
    max_shards: int | Literal["auto"] = 1
    max_concurrency: int | Literal["auto"] = 1
    guild_create_timeout_ms: int = 2000
    intents: int | list[str] = field(default_factory=lambda: int(Intents.all_non_privileged()))
    large_threshold: int = 250
    max_reconnect_attempts: int | None = None
    max_resume_attempts: int = 10
    resume_window_ms: int = 300000
    identify_spacing_ms: int = 5000
    connect_poll_interval_ms: int = 500
    max_missed_heartbeats: int = 2
    request_members_timeout_ms: int = 15000
    reconnect_backoff: BackoffConfig = field(default_factory=_default_reconnect_backoff)
    send_limit: int = 120
    send_interval_ms: int = 60000
    send_reserved: int = 5
    presence_limit: int = 5
    presence_interval_ms: int = 20000
    presence: dict[str, Any] | None = None
    properties: dict[str, str] = field(default_factory=_default_properties)

    def __post_init__(self) -> None:
        self.disable_events = frozenset(self.disable_events)
        if self.connection_timeout_ms <= 0:
            raise ValueError(
                f"connection_timeout_ms must be > 0, got {self.connection_timeout_ms}"
            )
        if self.first_shard_id < 0:
            raise ValueError(f"first_shard_id must be >= 0, got {self.first_shard_id}")
        if self.last_shard_id is not None and self.last_shard_id < self.first_shard_id:
            raise ValueError(
                f"last_shard_id must be >= first_shard_id, got {self.last_shard_id}"
            )
        if self.max_shards != "auto" and (not isinstance(self.max_shards, int) or self.max_shards < 1):
            raise ValueError(f"max_shards must be >= 1 or 'auto', got {self.max_shards}")
        if self.max_concurrency != "auto" and (
            not isinstance(self.max_concurrency, int) or self.max_concurrency < 1
        ):
            raise ValueError(
                f"max_concurrency must be >= 1 or 'auto', got {self.max_concurrency}"
            )
        if not 50 <= self.large_threshold <= 250:
            raise ValueError(f"large_threshold must be in [50, 250], got {self.large_threshold}")
        if self.max_missed_heartbeats < 1:
            raise ValueError(
                f"max_missed_heartbeats must be >= 1, got {self.max_missed_heartbeats}"
            )
        if self.max_resume_attempts < 1:
            raise ValueError(f"max_resume_attempts must be >= 1, got {self.max_resume_attempts}")
        if self.max_reconnect_attempts is not None and self.max_reconnect_attempts < 0:
            raise ValueError(
                f"max_reconnect_attempts must be >= 0, got {self.max_reconnect_attempts}"
            )
        if not 0 <= self.send_reserved < self.send_limit:
            raise ValueError(f"send_reserved must be in [0, send_limit), got {self.send_reserved}")
        # Fails fast on unknown intent names.
        resolve_intents(self.intents)

    @property
    def intents_value(self) -> int:
        """Intents as a bitmask."""
        return resolve_intents(self.intents)


@dataclass
class ShardMetrics:
    """
    Metrics for a single shard.

    Attributes:
        shard_id: Shard identifier.
        status: Current connection status.
        frames_received: Frames decoded from the socket.
        dispatches_received: Dispatch frames among them.
        heartbeats_sent: Heartbeats sent.
        heartbeat_acks: Heartbeat acknowledgements received.
        latency_ms: Last heartbeat round trip.
        identify_count: Fresh identifies sent.
        resume_count: Resumes sent.
        reconnect_count: Automatic reconnects scheduled.
        zombie_count: Connections closed for missing heartbeat acks.
        sequence: Last dispatch sequence number.
    """

    shard_id: int
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    frames_received: int = 0
    dispatches_received: int = 0
    heartbeats_sent: int = 0
    heartbeat_acks: int = 0
    latency_ms: float | None = None
    identify_count: int = 0
    resume_count: int = 0
    reconnect_count: int = 0
    zombie_count: int = 0
    sequence: int = 0


@dataclass
class GatewayMetrics:
    """
    Aggregated metrics for the shard coordinator.

    Attributes:
        total_shards: Shards managed by this process.
        ready_shards: Shards in the ready state.
        connect_queue_length: Shards waiting for a connect turn.
        total_dispatches: Dispatch frames across all shards.
        total_reconnects: Automatic reconnects across all shards.
        shard_metrics: Per-shard metrics.
    """

    total_shards: int = 0
    ready_shards: int = 0
    connect_queue_length: int = 0
    total_dispatches: int = 0
    total_reconnects: int = 0
    shard_metrics: list[ShardMetrics] = field(default_factory=list)
