"""
Route key derivation.

Requests that the platform rate-limits together must share one key:
- Major parameters (channel, guild and webhook IDs) stay in the key
- Every other numeric ID collapses to ``:id``
- Webhook and interaction tokens collapse to ``:token``
- Message deletes are split by message age, reactions share one bucket
"""

from __future__ import annotations

import re
import time

# Platform epoch for snowflake IDs (2015-01-01T00:00:00Z).
SNOWFLAKE_EPOCH_MS = 1420070400000

MAJOR_PARAMETERS = frozenset({"channels", "guilds", "webhooks"})

# Messages older than this are deleted under a separate, slower limit.
OLD_MESSAGE_AGE_MS = 14 * 24 * 60 * 60 * 1000
# Messages younger than this are deleted under their own limit.
NEW_MESSAGE_AGE_MS = 10 * 1000

_ID_SEGMENT = re.compile(r"/([a-z-]+)/(\d+)")
_REACTION = re.compile(r"/reactions/[^/]+")
_REACTION_USER = re.compile(r"/reactions/:id/[^/]+")
_WEBHOOK_TOKEN = re.compile(r"^/webhooks/(\d+)/[A-Za-z0-9\-_]{64,}")
_INTERACTION_TOKEN = re.compile(r"^/interactions/:id/[^/]+")
_GUILD_CHANNELS = re.compile(r"^/guilds/\d+/channels$")


def snowflake_created_at(snowflake: int | str) -> int:
    """Creation time, in epoch milliseconds, encoded in a snowflake ID."""
    return (int(snowflake) >> 22) + SNOWFLAKE_EPOCH_MS


def _collapse_id(match: re.Match[str]) -> str:
    segment = match.group(1)
    if segment in MAJOR_PARAMETERS:
        return match.group(0)
    return f"/{segment}/:id"


def route_template(path: str) -> str:
    """
    Normalize a request path to its rate-limit template.

    Examples:
        /channels/123/messages/456 -> /channels/123/messages/:id
        /channels/1/messages/2/reactions/%F0%9F%91%8D/@me
            -> /channels/1/messages/:id/reactions/:id/:userID
    """
    path = path.split("?", 1)[0]
    template = _ID_SEGMENT.sub(_collapse_id, path)
    template = _REACTION.sub("/reactions/:id", template)
    template = _REACTION_USER.sub("/reactions/:id/:userID", template)
    template = _WEBHOOK_TOKEN.sub(r"/webhooks/\1/:token", template)
    return _INTERACTION_TOKEN.sub("/interactions/:id/:token", template)


def route_key(
    method: str,
    path: str,
    *,
    now_ms: int | None = None,
    latency_ms: float = 0.0,
) -> str:
    """
    Compute the bucket key for a request.

    Args:
        method: HTTP verb.
        path: Request path relative to the API base.
        now_ms: Current time, used to age message IDs on delete.
        latency_ms: Measured latency, subtracted from ``now_ms``.

    Returns:
        Key of the form ``"<VERB> <template>"``.
    """
    verb = method.upper()
    clean_path = path.split("?", 1)[0]
    template = route_template(clean_path)

    if verb == "DELETE" and template.endswith("/messages/:id"):
        message_id = clean_path.rstrip("/").rsplit("/", 1)[-1]
        if message_id.isdigit():
            if now_ms is None:
                now_ms = int(time.time() * 1000)
            age_ms = now_ms - latency_ms - snowflake_created_at(message_id)
            if age_ms >= OLD_MESSAGE_AGE_MS:
                verb = "DELETE_OLD"
            elif age_ms <= NEW_MESSAGE_AGE_MS:
                verb = "DELETE_NEW"
    elif verb == "GET" and _GUILD_CHANNELS.match(clean_path):
        template = "/guilds/:id/channels"

    if verb.startswith(("PUT", "DELETE")):
        index = template.find("/reactions")
        if index != -1:
            return f"MODIFY {template[:index]}/reactions"

    return f"{verb} {template}"


def is_reaction_route(key: str) -> bool:
    """Whether the key belongs to a reaction endpoint."""
    return "/reactions" in key
