"""
Gateway protocol constants.

Opcodes, close codes and intent bits as defined by the platform's gateway
protocol, version 10.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum, IntFlag

GATEWAY_VERSION = 10

# Suffix marking the end of one zlib-stream message.
ZLIB_SUFFIX = b"\x00\x00\xff\xff"


class GatewayOpcode(IntEnum):
    """Gateway frame opcodes."""

    DISPATCH = 0
    HEARTBEAT = 1
    IDENTIFY = 2
    PRESENCE_UPDATE = 3
    VOICE_STATE_UPDATE = 4
    RESUME = 6
    RECONNECT = 7
    REQUEST_GUILD_MEMBERS = 8
    INVALID_SESSION = 9
    HELLO = 10
    HEARTBEAT_ACK = 11
    REQUEST_SOUNDBOARD_SOUNDS = 31


class CloseAction(str, Enum):
    """What a shard does with its session after a close code."""

    RECONNECT = "reconnect"
    CLEAR_SESSION = "clear_session"
    RESET_SEQUENCE = "reset_sequence"
    FATAL = "fatal"


@dataclass(frozen=True)
class CloseCodeInfo:
    """Meaning of one gateway close code."""

    message: str
    action: CloseAction


class GatewayCloseCode(IntEnum):
    """Platform-defined gateway close codes."""

    UNKNOWN_ERROR = 4000
    UNKNOWN_OPCODE = 4001
    DECODE_ERROR = 4002
    NOT_AUTHENTICATED = 4003
    AUTHENTICATION_FAILED = 4004
    ALREADY_AUTHENTICATED = 4005
    SESSION_NO_LONGER_VALID = 4006
    INVALID_SEQUENCE = 4007
    RATE_LIMITED = 4008
    SESSION_TIMED_OUT = 4009
    INVALID_SHARD = 4010
    SHARDING_REQUIRED = 4011
    INVALID_API_VERSION = 4012
    INVALID_INTENTS = 4013
    DISALLOWED_INTENTS = 4014


CLOSE_CODES: dict[int, CloseCodeInfo] = {
    4000: CloseCodeInfo("Unknown error", CloseAction.RECONNECT),
    4001: CloseCodeInfo("Gateway received an invalid opcode", CloseAction.RECONNECT),
    4002: CloseCodeInfo("Gateway received an invalid message", CloseAction.RECONNECT),
    4003: CloseCodeInfo("Not authenticated", CloseAction.CLEAR_SESSION),
    4004: CloseCodeInfo("Authentication failed", CloseAction.FATAL),
    4005: CloseCodeInfo("Already authenticated", CloseAction.RECONNECT),
    4006: CloseCodeInfo("Invalid session", CloseAction.CLEAR_SESSION),
    4007: CloseCodeInfo("Invalid sequence number", CloseAction.RESET_SEQUENCE),
    4008: CloseCodeInfo("Gateway connection was ratelimited", CloseAction.RECONNECT),
    4009: CloseCodeInfo("Invalid session", CloseAction.CLEAR_SESSION),
    4010: CloseCodeInfo("Invalid shard key", CloseAction.FATAL),
    4011: CloseCodeInfo("Shard has too many guilds (>2500)", CloseAction.FATAL),
    4012: CloseCodeInfo("Invalid gateway version", CloseAction.FATAL),
    4013: CloseCodeInfo("Invalid intents specified", CloseAction.FATAL),
    4014: CloseCodeInfo("Disallowed intents specified", CloseAction.FATAL),
}

# Close code used when the session should stay resumable.
RESUMABLE_CLOSE_CODE = 4901
NORMAL_CLOSE_CODE = 1000


def describe_close_code(code: int | None) -> CloseCodeInfo:
    """Look up a close code; unknown codes reconnect."""
    if code is None:
        return CloseCodeInfo("Connection closed", CloseAction.RECONNECT)
    return CLOSE_CODES.get(code, CloseCodeInfo(f"Connection closed ({code})", CloseAction.RECONNECT))


class Intents(IntFlag):
    """Gateway intent bits selecting which events a shard receives."""

    GUILDS = 1 << 0
    GUILD_MEMBERS = 1 << 1
    GUILD_MODERATION = 1 << 2
    GUILD_EXPRESSIONS = 1 << 3
    GUILD_INTEGRATIONS = 1 << 4
    GUILD_WEBHOOKS = 1 << 5
    GUILD_INVITES = 1 << 6
    GUILD_VOICE_STATES = 1 << 7
    GUILD_PRESENCES = 1 << 8
    GUILD_MESSAGES = 1 << 9
    GUILD_MESSAGE_REACTIONS = 1 << 10
    GUILD_MESSAGE_TYPING = 1 << 11
    DIRECT_MESSAGES = 1 << 12
    DIRECT_MESSAGE_REACTIONS = 1 << 13
    DIRECT_MESSAGE_TYPING = 1 << 14
    MESSAGE_CONTENT = 1 << 15
    GUILD_SCHEDULED_EVENTS = 1 << 16
    AUTO_MODERATION_CONFIGURATION = 1 << 20
    AUTO_MODERATION_EXECUTION = 1 << 21
    GUILD_MESSAGE_POLLS = 1 << 24
    DIRECT_MESSAGE_POLLS = 1 << 25

    @classmethod
    def privileged(cls) -> Intents:
        return cls.GUILD_MEMBERS | cls.GUILD_PRESENCES | cls.MESSAGE_CONTENT

    @classmethod
    def all(cls) -> Intents:
        value = cls(0)
        for member in cls:
            value |= member
        return value

    @classmethod
    def all_non_privileged(cls) -> Intents:
        return cls.all() & ~cls.privileged()


def resolve_intents(intents: int | list[str] | tuple[str, ...]) -> int:
    """
    Turn an intent bitmask or a list of intent names into a bitmask.

    Names are case-insensitive member names of ``Intents``, plus
    ``all``, ``all_non_privileged`` and ``all_privileged``.

    Raises:
        ValueError: On an unknown intent name.
    """
    if isinstance(intents, int):
        return int(intents)

    value = 0
    for name in intents:
        key = name.strip().upper()
        if key == "ALL":
            value |= Intents.all()
        elif key == "ALL_NON_PRIVILEGED":
            value |= Intents.all_non_privileged()
        elif key == "ALL_PRIVILEGED":
            value |= Intents.privileged()
        elif key in Intents.__members__:
            value |= Intents[key]
        else:
            raise ValueError(f"Unknown intent: {name}")
    return int(value)
