"""Gateway layer: shard connections, their coordinator and event types."""

from chatwire.gateway.compression import ZlibStreamInflater
from chatwire.gateway.connection import GatewayConnection
from chatwire.gateway.constants import (
    GATEWAY_VERSION,
    CloseAction,
    GatewayCloseCode,
    GatewayOpcode,
    Intents,
    describe_close_code,
    resolve_intents,
)
from chatwire.gateway.coordinator import ShardCoordinator
from chatwire.gateway.errors import ConnectionTimeoutError, GatewayCloseError, GatewayError
from chatwire.gateway.events import (
    ConnectEvent,
    DebugEvent,
    DisconnectEvent,
    DispatchEvent,
    ErrorEvent,
    EventChannel,
    GatewayEvent,
    GatewayPayload,
    HelloEvent,
    PreReadyEvent,
    ReadyEvent,
    ResumeEvent,
    Subscription,
    WarnEvent,
)
from chatwire.gateway.types import (
    ConnectionStatus,
    GatewayConfig,
    GatewayMetrics,
    ShardMetrics,
)

__all__ = [
    "GATEWAY_VERSION",
    "CloseAction",
    "ConnectEvent",
    "ConnectionStatus",
    "ConnectionTimeoutError",
    "DebugEvent",
    "DisconnectEvent",
    "DispatchEvent",
    "ErrorEvent",
    "EventChannel",
    "GatewayCloseCode",
    "GatewayCloseError",
    "GatewayConfig",
    "GatewayConnection",
    "GatewayError",
    "GatewayEvent",
    "GatewayMetrics",
    "GatewayOpcode",
    "GatewayPayload",
    "HelloEvent",
    "Intents",
    "PreReadyEvent",
    "ReadyEvent",
    "ResumeEvent",
    "ShardCoordinator",
    "ShardMetrics",
    "Subscription",
    "WarnEvent",
    "ZlibStreamInflater",
    "describe_close_code",
    "resolve_intents",
]
