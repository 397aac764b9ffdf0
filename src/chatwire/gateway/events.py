"""
Gateway wire payloads and the events shards emit upward.

Inbound frames are parsed into GatewayPayload. Shards translate them into a
closed set of typed events delivered through an EventChannel; each subscriber
gets its own FIFO queue.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Annotated, Any, Literal, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class GatewayPayload(BaseModel):
    """
    One gateway frame.

    Attributes:
        op: Opcode.
        d: Opcode-specific data.
        s: Sequence number (dispatch frames only).
        t: Event name (dispatch frames only).
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    op: int = Field(..., ge=0, description="Gateway opcode")
    d: Any = Field(default=None, description="Frame data")
    s: int | None = Field(default=None, description="Sequence number")
    t: str | None = Field(default=None, description="Dispatch event name")

    def to_json(self) -> bytes:
        """Serialize to JSON bytes using orjson."""
        return orjson.dumps({"op": self.op, "d": self.d})

    @classmethod
    def from_json(cls, data: bytes | str) -> GatewayPayload:
        """Deserialize from JSON."""
        if isinstance(data, str):
            data = data.encode()
        return cls.model_validate(orjson.loads(data))


class _ShardEvent(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    shard_id: int = Field(..., ge=0, description="Emitting shard")


class ConnectEvent(_ShardEvent):
    """Socket opened; the handshake has not started."""

    kind: Literal["connect"] = "connect"


class HelloEvent(_ShardEvent):
    """HELLO received; heartbeating has started."""

    kind: Literal["hello"] = "hello"
    heartbeat_interval_ms: int = Field(..., gt=0)


class PreReadyEvent(_ShardEvent):
    """READY received; guilds may still be streaming in."""

    kind: Literal["pre_ready"] = "pre_ready"
    session_id: str
    guild_count: int = 0


class ReadyEvent(_ShardEvent):
    """Shard is ready and every initial guild has arrived or timed out."""

    kind: Literal["ready"] = "ready"
    session_id: str | None = None
    unavailable_guilds: int = 0


class ResumeEvent(_ShardEvent):
    """Session resumed; missed events have been replayed."""

    kind: Literal["resume"] = "resume"


class DisconnectEvent(_ShardEvent):
    """Socket closed."""

    kind: Literal["disconnect"] = "disconnect"
    code: int | None = None
    reason: str | None = None
    will_reconnect: bool = False


class DispatchEvent(_ShardEvent):
    """A platform dispatch event, forwarded as received."""

    kind: Literal["dispatch"] = "dispatch"
    name: str
    sequence: int | None = None
    data: Any = None


class WarnEvent(_ShardEvent):
    """Recoverable protocol anomaly."""

    kind: Literal["warn"] = "warn"
    message: str


class ErrorEvent(_ShardEvent):
    """Connection failure; ``fatal`` means no automatic reconnect follows."""

    kind: Literal["error"] = "error"
    message: str
    code: int | None = None
    fatal: bool = False


class DebugEvent(_ShardEvent):
    """Diagnostic message mirroring the DEBUG log line."""

    kind: Literal["debug"] = "debug"
    message: str


GatewayEvent = Annotated[
    Union[
        ConnectEvent,
        HelloEvent,
        PreReadyEvent,
        ReadyEvent,
        ResumeEvent,
        DisconnectEvent,
        DispatchEvent,
        WarnEvent,
        ErrorEvent,
        DebugEvent,
    ],
    Field(discriminator="kind"),
]

EventKind = Literal[
    "connect",
    "hello",
    "pre_ready",
    "ready",
    "resume",
    "disconnect",
    "dispatch",
    "warn",
    "error",
    "debug",
]


class Subscription:
    """
    One subscriber's view of an EventChannel.

    Usage:
        sub = channel.subscribe({"ready", "dispatch"})
        async for event in sub:
            ...
    """

    def __init__(
        self,
        channel: EventChannel,
        kinds: frozenset[str] | None,
        maxsize: int = 0,
    ) -> None:
        self._channel = channel
        self.kinds = kinds
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def wants(self, event: Any) -> bool:
        return self.kinds is None or event.kind in self.kinds

    def _deliver(self, event: Any) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Subscriber queue full, dropping event",
                extra={"event_kind": event.kind, "dropped": self.dropped},
            )

    async def get(self) -> Any:
        """Wait for the next event; raises StopAsyncIteration once closed and drained."""
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        """Stop receiving; iteration ends after queued events are drained."""
        if self._closed:
            return
        self._closed = True
        self._channel.unsubscribe(self)
        # A full queue has no waiter to wake; get() stops once it is drained.
        if not self._queue.full():
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[Any]:
        return self

    async def __anext__(self) -> Any:
        return await self.get()


_CLOSED = object()


class EventChannel:
    """
    Fan-out of typed events to independent subscribers.

    Every subscriber receives every event it asked for, in publish order.
    """

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self.published = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        kinds: set[str] | frozenset[str] | None = None,
        *,
        maxsize: int = 0,
    ) -> Subscription:
        """
        Register a subscriber.

        Args:
            kinds: Event kinds to receive; None receives everything.
            maxsize: Queue bound; 0 is unbounded. Events beyond it are dropped.
        """
        subscription = Subscription(self, frozenset(kinds) if kinds else None, maxsize)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        if not subscription.closed:
            subscription.close()

    def publish(self, event: Any) -> None:
        """Deliver an event to every interested subscriber."""
        self.published += 1
        for subscription in list(self._subscriptions):
            if subscription.wants(event):
                subscription._deliver(event)

    def close(self) -> None:
        """Close every subscription."""
        for subscription in list(self._subscriptions):
            subscription.close()
