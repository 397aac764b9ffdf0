"""
Structured logging for chatwire.

Every record passes through the same scrubber before it is written:
- credential fields (token, authorization, session_id, ...) are dropped
- bot/bearer tokens in free text become [TOKEN]
- URLs are reduced to their path, request bodies and uploads are replaced
- long lists (guild IDs, member chunks) are summarized

Usage:
    from chatwire.logging_config import setup_logging, get_logger

    setup_logging(json_format=False)
    logger = get_logger(__name__)
    logger.info("Shard ready", extra={"shard_id": 0})
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlsplit

MAX_LIST_ITEMS = 10
MAX_DEPTH = 3

_URL_PATTERN = re.compile(r"((?:https?|wss?)://[^\s\"'<>]+)")

# Applied in order to msg, exc and string values.
_TEXT_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b(Bot|Bearer)\s+[\w\-\.]+", re.I), "[TOKEN]"),
    # user id . timestamp . hmac
    (re.compile(r"\b[\w\-]{23,28}\.[\w\-]{6,7}\.[\w\-]{27,}\b"), "[TOKEN]"),
    (re.compile(r"\b(token|secret|password)[=:]\s*['\"]?[\w\-\.]+['\"]?", re.I), "[TOKEN]"),
    (re.compile(r"(authorization)[=:\s]+['\"]?[\w\-\.\s]+['\"]?", re.I), "[AUTH]"),
    (re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b"), "[IP]"),
    (re.compile(r"\b[\w\.-]+@[\w\.-]+\.\w+\b"), "[EMAIL]"),
)

# A key containing any of these is dropped, whatever its value.
BLOCKED_FIELDS: frozenset[str] = frozenset(
    {
        "token",
        "secret",
        "password",
        "authorization",
        "credential",
        "session_id",
        "email",
        "phone",
        "ip_address",
    }
)

HIGH_CARDINALITY_FIELDS: dict[str, str] = {
    "url": "endpoint",
    "body": "[BODY]",
    "payload": "[PAYLOAD]",
    "files": "[FILES]",
    "params": "[PARAMS]",
}

# Attributes every LogRecord carries; anything else came from ``extra``.
_RECORD_ATTRS: frozenset[str] = frozenset(
    logging.LogRecord("", logging.NOTSET, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


def _normalize_url(url: str) -> str:
    """Reduce a URL to its path; host and query string are dropped."""
    return urlsplit(url).path or "/"


def _url_to_path(match: re.Match[str]) -> str:
    path = _normalize_url(match.group(1))
    return "[URL]" if path == "/" else path


def _sanitize_text(text: str) -> str:
    """Scrub URLs, tokens, IPs and e-mail addresses out of free text."""
    if not text:
        return text
    text = _URL_PATTERN.sub(_url_to_path, text)
    for pattern, replacement in _TEXT_RULES:
        text = pattern.sub(replacement, text)
    return text


def _is_blocked(key: str) -> bool:
    return any(blocked in key for blocked in BLOCKED_FIELDS)


def _scrub(value: Any, depth: int) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return _sanitize_text(value)
    if isinstance(value, dict):
        return _filter_log_record(value, _depth=depth + 1)
    if isinstance(value, (list, tuple, set, frozenset)):
        if len(value) > MAX_LIST_ITEMS:
            return f"[list:{len(value)} items]"
        return [_scrub(item, depth) for item in value]
    return _sanitize_text(str(value))


def _filter_log_record(record: dict[str, Any], *, _depth: int = 0) -> dict[str, Any]:
    """Drop credentials and collapse high-cardinality values in ``extra``.

    Nested dicts (gateway frames, response bodies) are filtered the same way
    down to MAX_DEPTH levels.
    """
    if _depth > MAX_DEPTH:
        return {"_truncated": "max depth exceeded"}

    filtered: dict[str, Any] = {}
    for key, value in record.items():
        key_lower = str(key).lower()
        if _is_blocked(key_lower):
            continue

        replacement = HIGH_CARDINALITY_FIELDS.get(key_lower)
        if replacement is None:
            filtered[key] = _scrub(value, _depth)
        elif key_lower == "url" and isinstance(value, str):
            filtered[replacement] = _normalize_url(value)
        else:
            filtered[key] = replacement
    return filtered


def _record_extras(record: logging.LogRecord) -> dict[str, Any]:
    extras = {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS}
    return _filter_log_record(extras) if extras else {}


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    {"ts":"2024-01-01T00:00:00.000+00:00","level":"INFO","logger":"chatwire.gateway.connection",
     "msg":"Shard ready","shard_id":0}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": _sanitize_text(record.getMessage()),
        }
        if record.levelno >= logging.WARNING:
            entry["file"] = record.filename
            entry["line"] = record.lineno
        if record.exc_info:
            entry["exc"] = _sanitize_text(self.formatException(record.exc_info))

        entry.update(_record_extras(record))
        return json.dumps(entry, default=str, ensure_ascii=False)


class SimpleFormatter(logging.Formatter):
    """``LEVEL logger: message | key=value ...`` for terminals."""

    def format(self, record: logging.LogRecord) -> str:
        line = f"{record.levelname:8s} {record.name}: {_sanitize_text(record.getMessage())}"
        extras = _record_extras(record)
        if extras:
            line += " | " + " ".join(f"{k}={v}" for k, v in extras.items())
        if record.exc_info:
            line += "\n" + _sanitize_text(self.formatException(record.exc_info))
        return line


def setup_logging(
    *,
    level: int | str = logging.INFO,
    json_format: bool = True,
    stream: Any = None,
) -> None:
    """Install a single scrubbing handler on the root logger.

    Args:
        level: Root level; ``logging.DEBUG`` also surfaces per-frame gateway logs.
        json_format: JSON lines (default) or SimpleFormatter output.
        stream: Output stream (default stderr).
    """
    if isinstance(level, str):
        level = level.upper()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter() if json_format else SimpleFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    for noisy in ("aiohttp", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
