"""
Gateway connection - one shard's streaming socket.

Lifecycle:
    connecting -> handshaking (HELLO) -> identifying | resuming -> ready
Any state may drop to disconnected; the resume-or-identify decision is made
from the surviving session state on the next connect.

Per platform limits:
- 120 outbound frames per 60 s, 5 reserved for heartbeat/identify/resume
- 5 presence updates per 20 s
- Two unacknowledged heartbeats mean the socket is a zombie
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import time
import uuid
import zlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

import aiohttp
import orjson
from pydantic import ValidationError

from chatwire.gateway.compression import ZlibStreamInflater
from chatwire.gateway.constants import (
    GATEWAY_VERSION,
    NORMAL_CLOSE_CODE,
    RESUMABLE_CLOSE_CODE,
    CloseAction,
    GatewayOpcode,
    Intents,
    describe_close_code,
)
from chatwire.gateway.errors import ConnectionTimeoutError, GatewayCloseError, GatewayError
from chatwire.gateway.events import (
    ConnectEvent,
    DebugEvent,
    DisconnectEvent,
    DispatchEvent,
    ErrorEvent,
    EventChannel,
    GatewayPayload,
    HelloEvent,
    PreReadyEvent,
    ReadyEvent,
    ResumeEvent,
    WarnEvent,
)
from chatwire.gateway.types import ConnectionStatus, GatewayConfig, ShardMetrics
from chatwire.ratelimit.backoff import BackoffState, compute_backoff_delay
from chatwire.ratelimit.token_bucket import TokenBucket

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

logger = logging.getLogger(__name__)

ReconnectMode = bool | Literal["auto"]

# Upper bound for the closing handshake before the socket is abandoned.
CLOSE_TIMEOUT_S = 5.0


@dataclass
class _MemberRequest:
    future: asyncio.Future[list[dict[str, Any]]]
    members: list[dict[str, Any]] = field(default_factory=list)
    presences: list[dict[str, Any]] = field(default_factory=list)
    received_chunks: int = 0


@dataclass
class _SoundboardRequest:
    future: asyncio.Future[dict[str, list[dict[str, Any]]]]
    guild_ids: set[str]
    sounds: dict[str, list[dict[str, Any]]] = field(default_factory=dict)


class GatewayConnection:
    """
    A single gateway shard.

    Responsible for:
    - Socket lifecycle and the identify/resume handshake
    - Heartbeating and zombie detection
    - Sequence tracking and event dispatch upward
    - Rate-limited outbound control frames
    """

    def __init__(
        self,
        shard_id: int,
        token: str,
        config: GatewayConfig | None = None,
        *,
        events: EventChannel | None = None,
        total_shards: int = 1,
        gateway_url: str | None = None,
        on_ready: Callable[[GatewayConnection], None] | None = None,
        on_reconnect: Callable[[GatewayConnection, int], None] | None = None,
        time_fn: Callable[[], int] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """
        Initialize the shard.

        Args:
            shard_id: Shard index.
            token: Bot token sent in identify and resume.
            config: Gateway configuration.
            events: Channel receiving this shard's events.
            total_shards: Shard count sent in identify.
            gateway_url: URL for fresh connections; defaults to config.url.
            on_ready: Called when the shard reaches READY or RESUMED.
            on_reconnect: Called with a delay when the shard wants a new
                connect turn; without it the shard reconnects by itself.
            time_fn: Time provider for deterministic testing.
            rng: Seeded Random for deterministic reconnect jitter.
        """
        self.id = shard_id
        self._token = token
        self._config = config or GatewayConfig()
        self.events = events or EventChannel()
        self.total_shards = total_shards
        self.gateway_url = gateway_url or self._config.url
        self._on_ready = on_ready
        self._on_reconnect = on_reconnect
        self._time_fn = time_fn
        self._rng = rng

        self.status = ConnectionStatus.DISCONNECTED
        self.session_id: str | None = None
        self.sequence = 0
        self.resume_url: str | None = None
        self.heartbeat_interval_ms: int | None = None
        self.last_heartbeat_sent_ms: int | None = None
        self.last_heartbeat_ack_ms: int | None = None
        self.latency_ms: float | None = None
        self.connect_attempts = 0
        self.reconnect_attempts = 0
        self.presence: dict[str, Any] | None = (
            dict(self._config.presence) if self._config.presence else None
        )

        self._unacked_heartbeats = 0
        self._disconnected_at_ms: int | None = None
        self._ready_emitted = False
        self._unavailable_guilds: set[str] = set()
        self._disconnecting = False
        self._requested_reconnect: ReconnectMode = False
        self._teardown_done = asyncio.Event()

        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._receive_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._connect_timer: asyncio.TimerHandle | None = None
        self._guild_create_timer: asyncio.TimerHandle | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._inflater = ZlibStreamInflater()

        self._send_bucket = self._new_send_bucket()
        self._presence_bucket = self._new_presence_bucket()
        self._reconnect_backoff = BackoffState()

        self._member_requests: dict[str, _MemberRequest] = {}
        self._soundboard_requests: list[_SoundboardRequest] = []

        self._metrics = ShardMetrics(shard_id=shard_id)

    def _now_ms(self) -> int:
        """Get current time in milliseconds."""
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    def _new_send_bucket(self) -> TokenBucket:
        return TokenBucket(
            self._config.send_limit,
            self._config.send_interval_ms,
            reserved_tokens=self._config.send_reserved,
            name=f"shard-{self.id}-send",
        )

    def _new_presence_bucket(self) -> TokenBucket:
        return TokenBucket(
            self._config.presence_limit,
            self._config.presence_interval_ms,
            name=f"shard-{self.id}-presence",
        )

    @property
    def config(self) -> GatewayConfig:
        return self._config

    @property
    def connected(self) -> bool:
        """Whether a socket is open."""
        return self._ws is not None and not self._ws.closed

    def get_metrics(self) -> ShardMetrics:
        """Get current shard metrics."""
        self._metrics.status = self.status
        self._metrics.sequence = self.sequence
        self._metrics.latency_ms = self.latency_ms
        return self._metrics

    def _set_status(self, status: ConnectionStatus) -> None:
        if self.status != status:
            old_status = self.status
            self.status = status
            self._metrics.status = status
            logger.debug(
                "Shard status changed",
                extra={
                    "shard_id": self.id,
                    "old_status": old_status.value,
                    "new_status": status.value,
                },
            )

    def _emit(self, event: Any) -> None:
        self.events.publish(event)

    def _debug(self, message: str, **extra: Any) -> None:
        logger.debug(message, extra={"shard_id": self.id, **extra})
        self._emit(DebugEvent(shard_id=self.id, message=message))

    def _warn(self, message: str, **extra: Any) -> None:
        logger.warning(message, extra={"shard_id": self.id, **extra})
        self._emit(WarnEvent(shard_id=self.id, message=message))

    def _spawn(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    def can_resume(self) -> bool:
        """
        Whether the next connect should resume rather than identify.

        Requires a session and a sequence from a prior ready state, and a
        disconnect no older than the resume window.
        """
        if not self.session_id or self.sequence <= 0:
            return False
        if self._disconnected_at_ms is None:
            return True
        return self._now_ms() - self._disconnected_at_ms <= self._config.resume_window_ms

    def _build_url(self) -> str:
        base = self.resume_url if self.resume_url and self.can_resume() else self.gateway_url
        if not base:
            raise GatewayError("No gateway URL configured", self.id)
        base = base.rstrip("/")
        url = f"{base}/?v={GATEWAY_VERSION}&encoding=json"
        if self._config.compress:
            url += "&compress=zlib-stream"
        return url

    async def connect(self) -> None:
        """
        Open the socket and start the receive loop.

        Failures are reported as events and fed into the reconnect decision;
        they are not raised.
        """
        if self.connected:
            self._emit(
                ErrorEvent(shard_id=self.id, message="Existing connection detected", fatal=False)
            )
            return

        self.connect_attempts += 1
        self._set_status(ConnectionStatus.CONNECTING)
        self._send_bucket = self._new_send_bucket()
        self._presence_bucket = self._new_presence_bucket()
        self._inflater.reset()

        try:
            url = self._build_url()
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            self._debug("Connecting to gateway", url=url, attempt=self.connect_attempts)
            ws = await self._session.ws_connect(url, max_msg_size=0, autoping=True)
        except (aiohttp.ClientError, asyncio.TimeoutError, GatewayError) as e:
            logger.error(
                "Failed to connect",
                extra={"shard_id": self.id, "error": str(e) or type(e).__name__},
            )
            await self.disconnect(reconnect="auto", error=e)
            return

        self._ws = ws
        self._connect_timer = asyncio.get_running_loop().call_later(
            self._config.connection_timeout_ms / 1000, self._on_connection_timeout, ws
        )
        self._receive_task = asyncio.create_task(self._receive_loop(ws))
        logger.info("Gateway connected", extra={"shard_id": self.id})
        self._emit(ConnectEvent(shard_id=self.id))

    def _on_connection_timeout(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._connect_timer = None
        if self._ws is ws and self.status == ConnectionStatus.CONNECTING:
            self._spawn(
                self.disconnect(
                    reconnect="auto",
                    error=ConnectionTimeoutError("Connection timeout", self.id),
                )
            )

    async def disconnect(
        self,
        reconnect: ReconnectMode = False,
        error: BaseException | None = None,
    ) -> None:
        """
        Close the socket and decide what happens next.

        Args:
            reconnect: ``"auto"`` reconnects (resuming when possible),
                ``True`` keeps the session for a later manual connect,
                ``False`` discards the session.
            error: Cause, emitted as an ``error`` event.
        """
        if self._disconnecting:
            # The running teardown applies the most restrictive mode requested.
            if _reconnect_rank(reconnect) < _reconnect_rank(self._requested_reconnect):
                self._requested_reconnect = reconnect
            await self._teardown_done.wait()
            return
        ws = self._ws
        if ws is None and self.status == ConnectionStatus.DISCONNECTED:
            if reconnect is False:
                self.hard_reset()
            return

        self._disconnecting = True
        self._requested_reconnect = reconnect
        self._teardown_done.clear()
        try:
            await self._teardown(ws, reconnect, error)
        finally:
            self._disconnecting = False
            self._teardown_done.set()
        self._after_disconnect(self._requested_reconnect)

    async def _teardown(
        self,
        ws: aiohttp.ClientWebSocketResponse | None,
        reconnect: ReconnectMode,
        error: BaseException | None,
    ) -> None:
        self._cancel_timers()
        current = asyncio.current_task()
        for task in (self._heartbeat_task, self._receive_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._heartbeat_task = None
        self._receive_task = None

        close_code: int | None = None
        if ws is not None:
            if not ws.closed:
                close_code = (
                    RESUMABLE_CLOSE_CODE if reconnect and self.session_id else NORMAL_CLOSE_CODE
                )
                with contextlib.suppress(asyncio.TimeoutError, aiohttp.ClientError):
                    await asyncio.wait_for(ws.close(code=close_code), timeout=CLOSE_TIMEOUT_S)
            else:
                close_code = ws.close_code

        self._ws = None
        self._disconnected_at_ms = self._now_ms()
        self.reset()

        will_reconnect = reconnect == "auto" and self._config.autoreconnect
        logger.info(
            "Gateway disconnected",
            extra={"shard_id": self.id, "code": close_code, "reconnect": str(reconnect)},
        )
        self._emit(
            DisconnectEvent(
                shard_id=self.id,
                code=close_code,
                reason=str(error) if error is not None else None,
                will_reconnect=will_reconnect,
            )
        )
        if error is not None:
            code = error.code if isinstance(error, GatewayCloseError) else None
            self._emit(
                ErrorEvent(
                    shard_id=self.id,
                    message=str(error) or type(error).__name__,
                    code=code,
                    fatal=False,
                )
            )

    def _after_disconnect(self, reconnect: ReconnectMode) -> None:
        if reconnect == "auto" and self._config.autoreconnect:
            if self.session_id and self.connect_attempts >= self._config.max_resume_attempts:
                self._debug(
                    "Invalidating session after excessive resume attempts",
                    attempts=self.connect_attempts,
                )
                self.session_id = None
                self.sequence = 0

            self.reconnect_attempts += 1
            ceiling = self._config.max_reconnect_attempts
            if ceiling is not None and self.reconnect_attempts > ceiling:
                logger.error(
                    "Reconnect attempts exhausted",
                    extra={"shard_id": self.id, "attempts": self.reconnect_attempts - 1},
                )
                self._emit(
                    ErrorEvent(
                        shard_id=self.id,
                        message=f"Reconnect attempts exhausted ({ceiling})",
                        fatal=True,
                    )
                )
                self.hard_reset()
                return

            self._metrics.reconnect_count += 1
            if self.can_resume():
                self._debug("Immediately reconnecting for potential resume")
                delay_ms = 0
            else:
                self._reconnect_backoff.record_error(self._now_ms())
                delay_ms = compute_backoff_delay(
                    self._config.reconnect_backoff, self._reconnect_backoff, rng=self._rng
                )
                self._debug("Queueing reconnect", delay_ms=delay_ms)
            self._request_connect(delay_ms)
        elif reconnect is False:
            self.hard_reset()

    def _request_connect(self, delay_ms: int) -> None:
        if self._on_reconnect is not None:
            self._on_reconnect(self, delay_ms)
            return

        async def _later() -> None:
            if delay_ms > 0:
                await asyncio.sleep(delay_ms / 1000)
            if self.status == ConnectionStatus.DISCONNECTED and not self.connected:
                await self.connect()

        self._spawn(_later())

    def _cancel_timers(self) -> None:
        if self._connect_timer is not None:
            self._connect_timer.cancel()
            self._connect_timer = None
        if self._guild_create_timer is not None:
            self._guild_create_timer.cancel()
            self._guild_create_timer = None

    def reset(self) -> None:
        """Discard per-socket state; the session survives."""
        self._set_status(ConnectionStatus.DISCONNECTED)
        self._cancel_timers()
        self._unacked_heartbeats = 0
        self.heartbeat_interval_ms = None
        self.last_heartbeat_sent_ms = None
        self.last_heartbeat_ack_ms = None
        self._ready_emitted = False
        self._unavailable_guilds.clear()
        self._inflater.reset()
        self._send_bucket.clear()
        self._presence_bucket.clear()

        for request in self._member_requests.values():
            if not request.future.done():
                request.future.set_result(list(request.members))
        self._member_requests.clear()
        for sound_request in self._soundboard_requests:
            if not sound_request.future.done():
                sound_request.future.set_result(dict(sound_request.sounds))
        self._soundboard_requests.clear()

    def hard_reset(self) -> None:
        """Discard everything, forcing a fresh identify next time."""
        self.reset()
        self.session_id = None
        self.sequence = 0
        self.resume_url = None
        self.connect_attempts = 0
        self.reconnect_attempts = 0
        self._disconnected_at_ms = None
        self._reconnect_backoff.reset()

    async def close(self) -> None:
        """Disconnect for good and release the HTTP session."""
        await self.disconnect(reconnect=False)
        for task in list(self._background_tasks):
            task.cancel()
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def _receive_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Main loop for receiving gateway frames."""
        error: BaseException | None = None
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    raw: bytes | str | None = msg.data
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    raw = self._inflater.feed(msg.data) if self._config.compress else msg.data
                    if raw is None:
                        continue
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    error = ws.exception()
                    logger.error(
                        "WebSocket error",
                        extra={"shard_id": self.id, "error": str(error)},
                    )
                    break
                else:
                    continue

                payload = GatewayPayload.from_json(raw)
                self._metrics.frames_received += 1
                await self._on_packet(payload)
                if self._ws is not ws:
                    return

        except asyncio.CancelledError:
            raise
        except (orjson.JSONDecodeError, ValidationError, zlib.error) as e:
            logger.warning("Malformed gateway frame", extra={"shard_id": self.id, "error": str(e)})
            error = GatewayError(f"Malformed gateway frame: {e}", self.id)
        except Exception as e:
            logger.exception("Error in receive loop", extra={"shard_id": self.id})
            error = e

        if self._ws is not ws:
            return
        await self._on_socket_closed(ws, error)

    async def _on_socket_closed(
        self,
        ws: aiohttp.ClientWebSocketResponse,
        error: BaseException | None,
    ) -> None:
        code = ws.close_code
        if error is not None:
            await self.disconnect(reconnect="auto", error=error)
            return

        info = describe_close_code(code)
        close_error: BaseException | None = None
        if code not in (None, NORMAL_CLOSE_CODE):
            close_error = GatewayCloseError(code, info.message, self.id)

        if info.action == CloseAction.CLEAR_SESSION:
            self.session_id = None
            self.sequence = 0
        elif info.action == CloseAction.RESET_SEQUENCE:
            self.sequence = 0
        elif info.action == CloseAction.FATAL:
            logger.error(
                "Fatal gateway close",
                extra={"shard_id": self.id, "code": code, "reason": info.message},
            )
            await self.disconnect(reconnect=False)
            self._emit(
                ErrorEvent(shard_id=self.id, message=info.message, code=code, fatal=True)
            )
            return

        if close_error is None:
            close_error = GatewayError("Connection reset by peer", self.id)
        await self.disconnect(reconnect="auto", error=close_error)

    async def _on_packet(self, payload: GatewayPayload) -> None:
        if payload.s is not None:
            if payload.s > self.sequence + 1 and self.status != ConnectionStatus.RESUMING:
                self._warn(
                    f"Non-consecutive sequence ({self.sequence} -> {payload.s})",
                    sequence=self.sequence,
                    received=payload.s,
                )
            if payload.s > self.sequence:
                self.sequence = payload.s

        op = payload.op
        if op == GatewayOpcode.DISPATCH:
            await self._on_dispatch(payload)
        elif op == GatewayOpcode.HEARTBEAT:
            await self.heartbeat()
        elif op == GatewayOpcode.HEARTBEAT_ACK:
            now_ms = self._now_ms()
            self._unacked_heartbeats = 0
            self.last_heartbeat_ack_ms = now_ms
            self._metrics.heartbeat_acks += 1
            if self.last_heartbeat_sent_ms is not None:
                self.latency_ms = float(now_ms - self.last_heartbeat_sent_ms)
        elif op == GatewayOpcode.HELLO:
            await self._on_hello(payload.d or {})
        elif op == GatewayOpcode.RECONNECT:
            self._debug("Reconnect requested by gateway")
            await self.disconnect(reconnect="auto")
        elif op == GatewayOpcode.INVALID_SESSION:
            resumable = bool(payload.d)
            if not resumable:
                self.session_id = None
                self.sequence = 0
            self._warn("Invalid session", resumable=resumable)
            await self.disconnect(reconnect="auto")
        else:
            self._warn(f"Unhandled opcode {op}", op=op)

    async def _on_hello(self, data: dict[str, Any]) -> None:
        interval = data.get("heartbeat_interval")
        if not isinstance(interval, int) or interval <= 0:
            self._warn("HELLO without a valid heartbeat interval")
            return

        if self._connect_timer is not None:
            self._connect_timer.cancel()
            self._connect_timer = None
        self.heartbeat_interval_ms = interval
        self._set_status(ConnectionStatus.HANDSHAKING)
        self._emit(HelloEvent(shard_id=self.id, heartbeat_interval_ms=interval))

        ws = self._ws
        if ws is None:
            return
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws, interval))

        await self.heartbeat(normal=True)
        if self.can_resume():
            await self.resume()
        else:
            await self.identify()

    async def _heartbeat_loop(self, ws: aiohttp.ClientWebSocketResponse, interval_ms: int) -> None:
        """Send a heartbeat every interval while this socket is current."""
        while self._ws is ws and not ws.closed:
            await asyncio.sleep(interval_ms / 1000)
            if self._ws is not ws:
                return
            await self.heartbeat(normal=True)

    async def heartbeat(self, normal: bool = False) -> None:
        """
        Send a heartbeat.

        Args:
            normal: Scheduled heartbeat; counts toward zombie detection.
                Server-requested heartbeats do not.
        """
        if normal:
            if self._unacked_heartbeats >= self._config.max_missed_heartbeats:
                self._metrics.zombie_count += 1
                self._warn(
                    "Heartbeat not acknowledged, closing zombie connection",
                    missed=self._unacked_heartbeats,
                )
                await self.disconnect(
                    reconnect="auto",
                    error=GatewayError(
                        "Server didn't acknowledge previous heartbeat, possible lost connection",
                        self.id,
                    ),
                )
                return
            self._unacked_heartbeats += 1

        self.last_heartbeat_sent_ms = self._now_ms()
        self._metrics.heartbeats_sent += 1
        await self.send(GatewayOpcode.HEARTBEAT, self.sequence or None, priority=True)

    async def identify(self) -> None:
        """Start a fresh session."""
        self.session_id = None
        self.resume_url = None
        self.sequence = 0
        self._set_status(ConnectionStatus.IDENTIFYING)
        self._metrics.identify_count += 1

        data: dict[str, Any] = {
            "token": self._token,
            "properties": dict(self._config.properties),
            "compress": False,
            "large_threshold": self._config.large_threshold,
            "intents": self._config.intents_value,
        }
        if self.total_shards > 1:
            data["shard"] = [self.id, self.total_shards]
        if self.presence is not None:
            data["presence"] = self.presence
        await self.send(GatewayOpcode.IDENTIFY, data, priority=True)

    async def resume(self) -> None:
        """Reattach to the previous session."""
        self._set_status(ConnectionStatus.RESUMING)
        self._metrics.resume_count += 1
        await self.send(
            GatewayOpcode.RESUME,
            {"token": self._token, "session_id": self.session_id, "seq": self.sequence},
            priority=True,
        )

    async def send(self, op: int, data: Any, priority: bool = False) -> bool:
        """
        Send a control frame through the per-shard buckets.

        Returns:
            False if the socket closed or was replaced while waiting.
        """
        ws = self._ws
        if ws is None or ws.closed:
            return False

        if op == GatewayOpcode.PRESENCE_UPDATE and not await self._presence_bucket.acquire(
            priority
        ):
            return False
        if not await self._send_bucket.acquire(priority):
            return False
        if self._ws is not ws or ws.closed:
            logger.debug("Dropping frame for replaced socket", extra={"shard_id": self.id, "op": op})
            return False

        await ws.send_str(orjson.dumps({"op": op, "d": data}).decode())
        logger.debug(
            "Sent gateway frame",
            extra={"shard_id": self.id, "op": int(op), "d": _redact_frame(data)},
        )
        return True

    async def _on_dispatch(self, payload: GatewayPayload) -> None:
        name = payload.t or ""
        data = payload.d
        self._metrics.dispatches_received += 1

        if name == "READY":
            self._on_ready_dispatch(data or {})
        elif name == "RESUMED":
            self._set_status(ConnectionStatus.READY)
            self.connect_attempts = 0
            self.reconnect_attempts = 0
            self._reconnect_backoff.reset()
            logger.info("Session resumed", extra={"shard_id": self.id, "sequence": self.sequence})
            self._emit(ResumeEvent(shard_id=self.id))
            if self._on_ready is not None:
                self._on_ready(self)
        elif name == "GUILD_CREATE" and isinstance(data, dict):
            self._on_guild_create(data)
        elif name == "GUILD_MEMBERS_CHUNK" and isinstance(data, dict):
            self._on_members_chunk(data)
        elif name == "SOUNDBOARD_SOUNDS" and isinstance(data, dict):
            self._on_soundboard_sounds(data)

        if name not in self._config.disable_events:
            self._emit(DispatchEvent(shard_id=self.id, name=name, sequence=payload.s, data=data))

    def _on_ready_dispatch(self, data: dict[str, Any]) -> None:
        self._set_status(ConnectionStatus.READY)
        self.session_id = data.get("session_id")
        self.resume_url = data.get("resume_gateway_url")
        self.connect_attempts = 0
        self.reconnect_attempts = 0
        self._reconnect_backoff.reset()
        self._ready_emitted = False

        guilds = data.get("guilds") or []
        self._unavailable_guilds = {
            str(guild["id"]) for guild in guilds if isinstance(guild, dict) and guild.get("unavailable")
        }
        logger.info(
            "Shard ready",
            extra={"shard_id": self.id, "guilds": len(guilds)},
        )
        self._emit(
            PreReadyEvent(shard_id=self.id, session_id=self.session_id or "", guild_count=len(guilds))
        )
        if self._on_ready is not None:
            self._on_ready(self)

        if self._unavailable_guilds:
            self._restart_guild_create_timer()
        else:
            self._check_ready()

    def _on_guild_create(self, data: dict[str, Any]) -> None:
        guild_id = str(data.get("id"))
        if self._ready_emitted or guild_id not in self._unavailable_guilds:
            return
        self._unavailable_guilds.discard(guild_id)
        if self._unavailable_guilds:
            self._restart_guild_create_timer()
        else:
            self._check_ready()

    def _restart_guild_create_timer(self) -> None:
        if self._guild_create_timer is not None:
            self._guild_create_timer.cancel()
        self._guild_create_timer = asyncio.get_running_loop().call_later(
            self._config.guild_create_timeout_ms / 1000, self._check_ready
        )

    def _check_ready(self) -> None:
        if self._guild_create_timer is not None:
            self._guild_create_timer.cancel()
            self._guild_create_timer = None
        if self._ready_emitted or self.status != ConnectionStatus.READY:
            return
        self._ready_emitted = True
        self._emit(
            ReadyEvent(
                shard_id=self.id,
                session_id=self.session_id,
                unavailable_guilds=len(self._unavailable_guilds),
            )
        )

    def _on_members_chunk(self, data: dict[str, Any]) -> None:
        nonce = data.get("nonce")
        request = self._member_requests.get(nonce) if isinstance(nonce, str) else None
        if request is None:
            return
        request.members.extend(data.get("members") or [])
        request.presences.extend(data.get("presences") or [])
        request.received_chunks += 1
        if data.get("chunk_index", 0) + 1 >= data.get("chunk_count", 1):
            self._member_requests.pop(nonce, None)
            if not request.future.done():
                request.future.set_result(request.members)

    def _on_soundboard_sounds(self, data: dict[str, Any]) -> None:
        guild_id = str(data.get("guild_id"))
        for request in list(self._soundboard_requests):
            if guild_id not in request.guild_ids or guild_id in request.sounds:
                continue
            request.sounds[guild_id] = list(data.get("soundboard_sounds") or [])
            if request.guild_ids.issubset(request.sounds):
                self._soundboard_requests.remove(request)
                if not request.future.done():
                    request.future.set_result(request.sounds)

    async def request_guild_members(
        self,
        guild_id: int | str,
        *,
        query: str | None = None,
        limit: int = 0,
        user_ids: Sequence[int | str] | None = None,
        presences: bool = False,
        timeout_ms: int | None = None,
    ) -> list[dict[str, Any]]:
        """
        Ask the gateway for guild members and collect the chunked reply.

        On timeout or connection reset the members received so far are
        returned.

        Raises:
            ValueError: ``presences`` without the presences intent.
            GatewayError: The shard is not connected.
        """
        if presences and not self._config.intents_value & Intents.GUILD_PRESENCES:
            raise ValueError("presences requires the GUILD_PRESENCES intent")

        nonce = uuid.uuid4().hex
        data: dict[str, Any] = {
            "guild_id": str(guild_id),
            "limit": limit,
            "presences": presences,
            "nonce": nonce,
        }
        if user_ids:
            data["user_ids"] = [str(uid) for uid in user_ids]
        else:
            data["query"] = query or ""

        future: asyncio.Future[list[dict[str, Any]]] = asyncio.get_running_loop().create_future()
        request = _MemberRequest(future=future)
        self._member_requests[nonce] = request
        try:
            if not await self.send(GatewayOpcode.REQUEST_GUILD_MEMBERS, data):
                raise GatewayError("Shard is not connected", self.id)
            timeout = (timeout_ms or self._config.request_members_timeout_ms) / 1000
            try:
                return await asyncio.wait_for(asyncio.shield(future), timeout)
            except asyncio.TimeoutError:
                self._debug("Member request timed out", nonce=nonce, received=len(request.members))
                return list(request.members)
        finally:
            self._member_requests.pop(nonce, None)

    async def request_soundboard_sounds(
        self,
        guild_ids: Sequence[int | str],
        *,
        timeout_ms: int | None = None,
    ) -> dict[str, list[dict[str, Any]]]:
        """
        Ask the gateway for the soundboard sounds of several guilds.

        Returns:
            Sounds keyed by guild ID; partial on timeout or connection reset.

        Raises:
            GatewayError: The shard is not connected.
        """
        ids = {str(gid) for gid in guild_ids}
        future: asyncio.Future[dict[str, list[dict[str, Any]]]] = (
            asyncio.get_running_loop().create_future()
        )
        request = _SoundboardRequest(future=future, guild_ids=ids)
        self._soundboard_requests.append(request)
        try:
            if not await self.send(
                GatewayOpcode.REQUEST_SOUNDBOARD_SOUNDS, {"guild_ids": sorted(ids)}
            ):
                raise GatewayError("Shard is not connected", self.id)
            timeout = (timeout_ms or self._config.request_members_timeout_ms) / 1000
            try:
                return await asyncio.wait_for(asyncio.shield(future), timeout)
            except asyncio.TimeoutError:
                return dict(request.sounds)
        finally:
            if request in self._soundboard_requests:
                self._soundboard_requests.remove(request)

    async def edit_status(
        self,
        status: str = "online",
        activities: list[dict[str, Any]] | None = None,
    ) -> bool:
        """Update presence status and activities."""
        presence = dict(self.presence or {"afk": False})
        presence["status"] = status
        presence["activities"] = list(activities or [])
        presence["since"] = self._now_ms() if status == "idle" else None
        self.presence = presence
        return await self.send(GatewayOpcode.PRESENCE_UPDATE, presence)

    async def edit_afk(self, afk: bool) -> bool:
        """Mark the session as AFK so mobile push notifications still arrive."""
        presence = dict(self.presence or {"status": "online", "activities": [], "since": None})
        presence["afk"] = bool(afk)
        self.presence = presence
        return await self.send(GatewayOpcode.PRESENCE_UPDATE, presence)

    async def update_voice_state(
        self,
        guild_id: int | str,
        channel_id: int | str | None,
        *,
        self_mute: bool = False,
        self_deaf: bool = False,
    ) -> bool:
        """Join, move between or leave (``channel_id=None``) voice channels."""
        return await self.send(
            GatewayOpcode.VOICE_STATE_UPDATE,
            {
                "guild_id": str(guild_id),
                "channel_id": str(channel_id) if channel_id is not None else None,
                "self_mute": self_mute,
                "self_deaf": self_deaf,
            },
        )


def _reconnect_rank(mode: ReconnectMode) -> int:
    if mode is False:
        return 0
    return 1 if mode is True else 2


def _redact_frame(data: Any) -> Any:
    if isinstance(data, dict) and "token" in data:
        return {k: v for k, v in data.items() if k != "token"}
    return data
