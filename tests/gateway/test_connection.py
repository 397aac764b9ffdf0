"""
GatewayConnection integration tests against a fake gateway.

Validates:
- Identify handshake: heartbeat first, then identify; events in lifecycle order
- Heartbeat acks measure latency; missing acks close the socket as a zombie
- Resume after an unexpected close carries the session and last sequence
- Invalid sessions and fatal close codes
- zlib-stream transport, disabled events, guild streaming, member requests
"""

from __future__ import annotations

import asyncio
import time

import pytest

from chatwire.gateway import (
    ConnectionStatus,
    DisconnectEvent,
    ErrorEvent,
    GatewayConfig,
    GatewayConnection,
    GatewayError,
    GatewayOpcode,
    Intents,
)
from chatwire.gateway.constants import RESUMABLE_CLOSE_CODE
from chatwire.ratelimit import BackoffConfig
from tests.fixtures.fake_platform import FakeGateway, collect_until, wait_for_event, wait_until

TOKEN = "Bot test-token"

FAST_BACKOFF = BackoffConfig(base_delay_ms=10, max_delay_ms=20)


def _shard(server: FakeGateway, **overrides: object) -> GatewayConnection:
    overrides.setdefault("reconnect_backoff", FAST_BACKOFF)
    config = GatewayConfig(**overrides)  # type: ignore[arg-type]
    return GatewayConnection(0, TOKEN, config, gateway_url=server.base_url)


class TestHandshake:
    """Identify and ready."""

    @pytest.mark.asyncio
    async def test_identify_and_ready(self) -> None:
        server = FakeGateway()
        await server.start()
        shard = _shard(server)
        sub = shard.events.subscribe({"connect", "hello", "pre_ready", "ready"})
        try:
            await shard.connect()
            events = await collect_until(sub, "ready")

            assert [e.kind for e in events] == ["connect", "hello", "pre_ready", "ready"]
            assert events[1].heartbeat_interval_ms == 45000
            assert events[2].session_id == "session-1"

            ops = [frame["op"] for frame in server.frames]
            assert ops[:2] == [GatewayOpcode.HEARTBEAT, GatewayOpcode.IDENTIFY]
            assert server.frames[0]["d"] is None

            identify = server.frames_with_op(GatewayOpcode.IDENTIFY)[0]["d"]
            assert identify["token"] == TOKEN
            assert identify["intents"] == int(Intents.all_non_privileged())
            assert identify["large_threshold"] == 250
            assert identify["compress"] is False
            assert "shard" not in identify
            assert "browser" in identify["properties"]

            assert shard.status == ConnectionStatus.READY
            assert shard.session_id == "session-1"
            assert shard.resume_url == server.base_url
            assert shard.sequence == 1
            assert server.conns[0].query == {"v": "10", "encoding": "json"}
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_shard_pair_sent_when_sharded(self) -> None:
        server = FakeGateway()
        await server.start()
        config = GatewayConfig(max_shards=4)
        shard = GatewayConnection(2, TOKEN, config, total_shards=4, gateway_url=server.base_url)
        sub = shard.events.subscribe({"ready"})
        try:
            await shard.connect()
            await wait_for_event(sub, "ready")
            identify = server.frames_with_op(GatewayOpcode.IDENTIFY)[0]["d"]
            assert identify["shard"] == [2, 4]
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_connect_twice_reports_existing_connection(self) -> None:
        server = FakeGateway()
        await server.start()
        shard = _shard(server)
        sub = shard.events.subscribe({"ready", "error"})
        try:
            await shard.connect()
            await wait_for_event(sub, "ready")
            await shard.connect()
            error = await wait_for_event(sub, "error")
            assert error.message == "Existing connection detected"
            assert not error.fatal
            assert server.connections == 1
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_connection_timeout_without_hello(self) -> None:
        server = FakeGateway(send_hello=False)
        await server.start()
        shard = _shard(server, connection_timeout_ms=100, autoreconnect=False)
        sub = shard.events.subscribe({"disconnect", "error"})
        try:
            await shard.connect()
            disconnect = await wait_for_event(sub, "disconnect")
            error = await wait_for_event(sub, "error")

            assert disconnect.will_reconnect is False
            assert error.message == "Connection timeout"
            assert shard.status == ConnectionStatus.DISCONNECTED
            assert server.frames == []
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_unreachable_gateway_reports_error(self) -> None:
        shard = GatewayConnection(
            0, TOKEN, GatewayConfig(autoreconnect=False), gateway_url="ws://127.0.0.1:1"
        )
        sub = shard.events.subscribe({"error"})
        try:
            await shard.connect()
            error = await wait_for_event(sub, "error")
            assert not error.fatal
            assert shard.status == ConnectionStatus.DISCONNECTED
        finally:
            await shard.close()


class TestHeartbeat:
    """Latency measurement and zombie detection."""

    @pytest.mark.asyncio
    async def test_ack_measures_latency(self) -> None:
        server = FakeGateway()
        await server.start()
        shard = _shard(server)
        sub = shard.events.subscribe({"ready"})
        try:
            await shard.connect()
            await wait_for_event(sub, "ready")
            await wait_until(lambda: shard.latency_ms is not None)

            metrics = shard.get_metrics()
            assert metrics.latency_ms is not None and metrics.latency_ms >= 0
            assert metrics.heartbeat_acks >= 1
            assert metrics.heartbeats_sent >= 1
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_missing_acks_close_zombie_connection(self) -> None:
        server = FakeGateway(heartbeat_interval_ms=50, ack_heartbeats=False)
        await server.start()
        shard = _shard(server, autoreconnect=False)
        sub = shard.events.subscribe({"disconnect", "error"})
        try:
            started = time.monotonic()
            await shard.connect()
            disconnect = await wait_for_event(sub, "disconnect")
            elapsed = time.monotonic() - started
            error = await wait_for_event(sub, "error")

            # HELLO heartbeat + one interval heartbeat, then the zombie check
            assert elapsed >= 0.08
            assert disconnect.code == RESUMABLE_CLOSE_CODE
            assert disconnect.will_reconnect is False
            assert "acknowledge" in error.message

            metrics = shard.get_metrics()
            assert metrics.zombie_count == 1
            assert metrics.heartbeats_sent == 2
            # Session survives for a later resume
            assert shard.session_id == "session-1"
            assert shard.can_resume()
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_server_requested_heartbeat(self) -> None:
        server = FakeGateway()
        await server.start()
        shard = _shard(server)
        sub = shard.events.subscribe({"ready"})
        try:
            await shard.connect()
            await wait_for_event(sub, "ready")
            await server.push({"op": GatewayOpcode.HEARTBEAT, "d": None})
            await wait_until(lambda: len(server.frames_with_op(GatewayOpcode.HEARTBEAT)) == 2)
            assert server.frames_with_op(GatewayOpcode.HEARTBEAT)[1]["d"] == 1
        finally:
            await shard.close()
            await server.stop()


class TestSessionRecovery:
    """Resume, invalid session and close codes."""

    @pytest.mark.asyncio
    async def test_resume_after_unexpected_close(self) -> None:
        server = FakeGateway()
        await server.start()
        shard = _shard(server)
        sub = shard.events.subscribe({"ready", "disconnect", "resume"})
        try:
            await shard.connect()
            await wait_for_event(sub, "ready")

            await server.push({"op": 0, "t": "MESSAGE_CREATE", "s": 42, "d": {"id": "1"}})
            await wait_until(lambda: shard.sequence == 42)

            await server.close_all(4000)
            disconnect = await wait_for_event(sub, "disconnect")
            assert isinstance(disconnect, DisconnectEvent)
            assert disconnect.code == 4000
            assert disconnect.will_reconnect is True

            await wait_for_event(sub, "resume")
            resume = server.frames_with_op(GatewayOpcode.RESUME)[0]["d"]
            assert resume == {"token": TOKEN, "session_id": "session-1", "seq": 42}
            assert server.identify_count == 1
            assert server.connections == 2
            # First frame on the new socket is a heartbeat carrying the sequence
            assert server.conns[1].frames[0] == {"op": GatewayOpcode.HEARTBEAT, "d": 42}
            assert shard.status == ConnectionStatus.READY
            assert shard.get_metrics().resume_count == 1
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_gateway_reconnect_request_resumes(self) -> None:
        server = FakeGateway()
        await server.start()
        shard = _shard(server)
        sub = shard.events.subscribe({"ready", "resume"})
        try:
            await shard.connect()
            await wait_for_event(sub, "ready")
            await server.push({"op": GatewayOpcode.RECONNECT, "d": None})
            await wait_for_event(sub, "resume")
            assert server.resume_count == 1
            assert server.identify_count == 1
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_invalid_session_reidentifies(self) -> None:
        server = FakeGateway()
        server.identify_script = [("invalid_session", False)]
        await server.start()
        shard = _shard(server)
        sub = shard.events.subscribe({"ready", "warn"})
        try:
            await shard.connect()
            events = await collect_until(sub, "ready")

            assert any(e.kind == "warn" and e.message == "Invalid session" for e in events)
            assert server.identify_count == 2
            assert server.resume_count == 0
            assert server.connections == 2
            assert shard.session_id == "session-2"
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_fatal_close_code_stops_shard(self) -> None:
        server = FakeGateway()
        server.identify_script = [("close", 4004)]
        await server.start()
        shard = _shard(server)
        sub = shard.events.subscribe({"disconnect", "error"})
        try:
            await shard.connect()
            disconnect = await wait_for_event(sub, "disconnect")
            error = await wait_for_event(sub, "error")

            assert disconnect.code == 4004
            assert disconnect.will_reconnect is False
            assert isinstance(error, ErrorEvent)
            assert error.fatal is True
            assert error.code == 4004
            assert error.message == "Authentication failed"

            await asyncio.sleep(0.1)
            assert server.connections == 1
            assert shard.status == ConnectionStatus.DISCONNECTED
            assert shard.session_id is None
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_reconnect_ceiling_is_fatal(self) -> None:
        server = FakeGateway()
        server.identify_script = [("invalid_session", False)] * 3
        await server.start()
        shard = _shard(server, max_reconnect_attempts=1)
        sub = shard.events.subscribe({"error"})
        try:
            await shard.connect()
            error = await wait_for_event(sub, "error")
            assert error.fatal is True
            assert "exhausted" in error.message
            await asyncio.sleep(0.1)
            assert server.connections == 2
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_concurrent_disconnect_applies_strictest_mode(self) -> None:
        server = FakeGateway()
        await server.start()
        shard = _shard(server)
        sub = shard.events.subscribe({"ready"})
        try:
            await shard.connect()
            await wait_for_event(sub, "ready")

            pending = asyncio.create_task(shard.disconnect(reconnect="auto"))
            await asyncio.sleep(0)
            await shard.disconnect(reconnect=False)
            await pending
            await asyncio.sleep(0.3)

            assert server.connections == 1
            assert shard.status == ConnectionStatus.DISCONNECTED
            assert shard.session_id is None
            assert shard.sequence == 0
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_malformed_frame_drops_connection(self) -> None:
        server = FakeGateway()
        await server.start()
        shard = _shard(server, autoreconnect=False)
        sub = shard.events.subscribe({"ready", "error"})
        try:
            await shard.connect()
            await wait_for_event(sub, "ready")
            await server.push_raw("not json")
            error = await wait_for_event(sub, "error")
            assert error.message.startswith("Malformed gateway frame")
            assert shard.status == ConnectionStatus.DISCONNECTED
        finally:
            await shard.close()
            await server.stop()


class TestDispatch:
    """Events forwarded upward."""

    @pytest.mark.asyncio
    async def test_zlib_stream_transport(self) -> None:
        server = FakeGateway()
        await server.start()
        shard = _shard(server, compress=True)
        sub = shard.events.subscribe({"ready"})
        try:
            await shard.connect()
            await wait_for_event(sub, "ready")
            assert server.conns[0].query["compress"] == "zlib-stream"
            assert shard.session_id == "session-1"
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_disabled_events_not_forwarded(self) -> None:
        server = FakeGateway()
        server.after_ready = [
            {"op": 0, "t": "TYPING_START", "s": 2, "d": {}},
            {"op": 0, "t": "MESSAGE_CREATE", "s": 3, "d": {"id": "9"}},
        ]
        await server.start()
        shard = _shard(server, disable_events=frozenset({"TYPING_START"}))
        sub = shard.events.subscribe({"dispatch"})
        try:
            await shard.connect()
            seen = []
            while not seen or seen[-1].name != "MESSAGE_CREATE":
                seen.append(await wait_for_event(sub, "dispatch"))

            assert [e.name for e in seen] == ["READY", "MESSAGE_CREATE"]
            assert seen[-1].sequence == 3
            assert seen[-1].data == {"id": "9"}
            assert shard.sequence == 3
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_stale_and_missing_sequence_keep_highest(self) -> None:
        server = FakeGateway()
        server.after_ready = [
            {"op": 0, "t": "MESSAGE_CREATE", "s": 2, "d": {"id": "a"}},
            {"op": 0, "t": "MESSAGE_CREATE", "s": 1, "d": {"id": "b"}},
            {"op": 0, "t": "MESSAGE_CREATE", "d": {"id": "c"}},
        ]
        await server.start()
        shard = _shard(server)
        sub = shard.events.subscribe({"dispatch", "warn"})
        try:
            await shard.connect()
            seen = []
            while not seen or getattr(seen[-1], "data", None) != {"id": "c"}:
                seen.append(await asyncio.wait_for(sub.get(), 3.0))

            assert [e.kind for e in seen] == ["dispatch"] * 4
            assert [e.data["id"] for e in seen[1:]] == ["a", "b", "c"]
            assert [e.sequence for e in seen[1:]] == [2, 1, None]
            assert shard.sequence == 2
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_sequence_gap_warns_and_advances(self) -> None:
        server = FakeGateway()
        server.after_ready = [
            {"op": 0, "t": "MESSAGE_CREATE", "s": 10, "d": {"id": "a"}},
            {"op": 0, "t": "MESSAGE_CREATE", "s": 5, "d": {"id": "b"}},
            {"op": 0, "t": "MESSAGE_CREATE", "d": {"id": "c"}},
        ]
        await server.start()
        shard = _shard(server)
        sub = shard.events.subscribe({"dispatch", "warn"})
        try:
            await shard.connect()
            seen = []
            while not seen or getattr(seen[-1], "data", None) != {"id": "c"}:
                seen.append(await asyncio.wait_for(sub.get(), 3.0))

            warnings = [e.message for e in seen if e.kind == "warn"]
            assert warnings == ["Non-consecutive sequence (1 -> 10)"]
            assert [e.data["id"] for e in seen if e.kind == "dispatch"][1:] == ["a", "b", "c"]
            assert shard.sequence == 10
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_ready_waits_for_unavailable_guilds(self) -> None:
        server = FakeGateway()
        server.guilds = [{"id": "10", "unavailable": True}, {"id": "11", "unavailable": True}]
        server.after_ready = [
            {"op": 0, "t": "GUILD_CREATE", "s": 2, "d": {"id": "10"}},
            {"op": 0, "t": "GUILD_CREATE", "s": 3, "d": {"id": "11"}},
        ]
        await server.start()
        shard = _shard(server)
        sub = shard.events.subscribe({"pre_ready", "dispatch", "ready"})
        try:
            await shard.connect()
            events = await collect_until(sub, "ready")

            kinds = [e.kind for e in events]
            assert kinds.index("pre_ready") < kinds.index("ready")
            assert events[kinds.index("pre_ready")].guild_count == 2
            assert events[-1].unavailable_guilds == 0
            assert shard.sequence == 3
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_ready_after_guild_create_timeout(self) -> None:
        server = FakeGateway()
        server.guilds = [{"id": "10", "unavailable": True}]
        await server.start()
        shard = _shard(server, guild_create_timeout_ms=50)
        sub = shard.events.subscribe({"ready"})
        try:
            await shard.connect()
            ready = await wait_for_event(sub, "ready")
            assert ready.unavailable_guilds == 1
        finally:
            await shard.close()
            await server.stop()


class TestOutbound:
    """Control frames sent by the application."""

    @pytest.mark.asyncio
    async def test_request_guild_members(self) -> None:
        server = FakeGateway()
        await server.start()
        shard = _shard(server)
        sub = shard.events.subscribe({"ready"})
        try:
            await shard.connect()
            await wait_for_event(sub, "ready")
            members = await shard.request_guild_members(99, limit=0)

            assert [m["user"]["id"] for m in members] == ["0", "1"]
            request = server.frames_with_op(GatewayOpcode.REQUEST_GUILD_MEMBERS)[0]["d"]
            assert request["guild_id"] == "99"
            assert request["query"] == ""
            assert request["presences"] is False
            assert isinstance(request["nonce"], str)
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_member_request_timeout_returns_partial(self) -> None:
        server = FakeGateway()
        server.member_chunks = (1, 3)
        await server.start()
        shard = _shard(server)
        sub = shard.events.subscribe({"ready"})
        try:
            await shard.connect()
            await wait_for_event(sub, "ready")
            members = await shard.request_guild_members("99", user_ids=[5, 6], timeout_ms=100)

            assert len(members) == 1
            request = server.frames_with_op(GatewayOpcode.REQUEST_GUILD_MEMBERS)[0]["d"]
            assert request["user_ids"] == ["5", "6"]
            assert "query" not in request
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_presences_require_intent(self) -> None:
        shard = GatewayConnection(0, TOKEN, GatewayConfig())
        with pytest.raises(ValueError, match="GUILD_PRESENCES"):
            await shard.request_guild_members("1", presences=True)

    @pytest.mark.asyncio
    async def test_edit_status(self) -> None:
        server = FakeGateway()
        await server.start()
        shard = _shard(server)
        sub = shard.events.subscribe({"ready"})
        try:
            await shard.connect()
            await wait_for_event(sub, "ready")
            sent = await shard.edit_status("idle", [{"name": "tests", "type": 0}])
            assert sent is True

            await wait_until(lambda: bool(server.frames_with_op(GatewayOpcode.PRESENCE_UPDATE)))
            presence = server.frames_with_op(GatewayOpcode.PRESENCE_UPDATE)[0]["d"]
            assert presence["status"] == "idle"
            assert presence["activities"] == [{"name": "tests", "type": 0}]
            assert presence["afk"] is False
            assert isinstance(presence["since"], int)
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_soundboard_sounds(self) -> None:
        server = FakeGateway()
        server.soundboard = {"1": [{"sound_id": "10"}], "2": []}
        await server.start()
        shard = _shard(server)
        sub = shard.events.subscribe({"ready"})
        try:
            await shard.connect()
            await wait_for_event(sub, "ready")
            sounds = await shard.request_soundboard_sounds([1, "2"])

            assert sounds == {"1": [{"sound_id": "10"}], "2": []}
            request = server.frames_with_op(GatewayOpcode.REQUEST_SOUNDBOARD_SOUNDS)[0]["d"]
            assert request == {"guild_ids": ["1", "2"]}
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_soundboard_timeout_returns_partial(self) -> None:
        server = FakeGateway()
        server.soundboard = {"1": [{"sound_id": "10"}]}
        await server.start()
        shard = _shard(server)
        sub = shard.events.subscribe({"ready"})
        try:
            await shard.connect()
            await wait_for_event(sub, "ready")
            sounds = await shard.request_soundboard_sounds(["1", "3"], timeout_ms=100)
            assert sounds == {"1": [{"sound_id": "10"}]}
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_afk_and_voice_state(self) -> None:
        server = FakeGateway()
        await server.start()
        shard = _shard(server)
        sub = shard.events.subscribe({"ready"})
        try:
            await shard.connect()
            await wait_for_event(sub, "ready")
            assert await shard.edit_afk(True) is True
            assert await shard.update_voice_state(5, 6, self_deaf=True) is True
            assert await shard.update_voice_state(5, None) is True

            await wait_until(
                lambda: len(server.frames_with_op(GatewayOpcode.VOICE_STATE_UPDATE)) == 2
            )
            presence = server.frames_with_op(GatewayOpcode.PRESENCE_UPDATE)[0]["d"]
            assert presence == {"status": "online", "activities": [], "since": None, "afk": True}
            join, leave = server.frames_with_op(GatewayOpcode.VOICE_STATE_UPDATE)
            assert join["d"] == {
                "guild_id": "5",
                "channel_id": "6",
                "self_mute": False,
                "self_deaf": True,
            }
            assert leave["d"]["channel_id"] is None
        finally:
            await shard.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_send_while_disconnected(self) -> None:
        shard = GatewayConnection(0, TOKEN, GatewayConfig())
        assert await shard.send(GatewayOpcode.HEARTBEAT, None) is False
        assert await shard.edit_status("dnd") is False
        assert shard.presence is not None and shard.presence["status"] == "dnd"
        with pytest.raises(GatewayError, match="not connected"):
            await shard.request_guild_members("1")


class TestSessionState:
    """Resume eligibility without a socket."""

    def test_fresh_shard_cannot_resume(self) -> None:
        shard = GatewayConnection(0, TOKEN)
        assert not shard.can_resume()

    def test_session_and_sequence_allow_resume(self) -> None:
        shard = GatewayConnection(0, TOKEN)
        shard.session_id = "abc"
        shard.sequence = 5
        assert shard.can_resume()

    @pytest.mark.asyncio
    async def test_hard_reset_clears_session(self) -> None:
        shard = GatewayConnection(0, TOKEN)
        shard.session_id = "abc"
        shard.sequence = 5
        shard.resume_url = "ws://resume"
        shard.hard_reset()
        assert shard.session_id is None
        assert shard.sequence == 0
        assert shard.resume_url is None
        assert not shard.can_resume()

    def test_config_validation(self) -> None:
        with pytest.raises(ValueError, match="large_threshold"):
            GatewayConfig(large_threshold=10)
        with pytest.raises(ValueError, match="Unknown intent"):
            GatewayConfig(intents=["guilds", "not_an_intent"])
        with pytest.raises(ValueError, match="max_shards"):
            GatewayConfig(max_shards=0)
        with pytest.raises(ValueError, match="send_reserved"):
            GatewayConfig(send_limit=5, send_reserved=5)
