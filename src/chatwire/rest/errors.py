"""
Errors surfaced by the REST layer.

Rate limits and transient failures are retried inside the dispatcher; the
types below reach the caller only when that recovery is not possible.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from chatwire.errors import ChatwireError


@dataclass(frozen=True)
class RequestDescription:
    """
    What was asked for, attached to every REST error.

    Attributes:
        method: HTTP verb.
        path: Path relative to the API base.
        route: Rate-limit route key.
        attempts: Number of times the request was sent.
    """

    method: str
    path: str
    route: str
    attempts: int = 1

    def __str__(self) -> str:
        return f"{self.method} {self.path}"


def flatten_errors(errors: dict[str, Any], key_prefix: str = "") -> list[str]:
    """
    Flatten the platform's nested field-error tree into readable lines.

    Example:
        {"embeds": {"0": {"title": {"_errors": [{"message": "Too long"}]}}}}
        -> ["embeds.0.title: Too long"]
    """
    messages: list[str] = []
    for field_name, value in errors.items():
        if field_name in ("message", "code"):
            continue
        key = f"{key_prefix}{field_name}"
        if isinstance(value, dict) and "_errors" in value:
            messages.extend(
                f"{key}: {item.get('message', item)}" if isinstance(item, dict) else f"{key}: {item}"
                for item in value["_errors"]
            )
        elif isinstance(value, dict):
            messages.extend(flatten_errors(value, f"{key}."))
        elif isinstance(value, list):
            messages.extend(f"{key}: {item}" for item in value)
        elif isinstance(value, str):
            messages.append(f"{key}: {value}")
    return messages


class HTTPError(ChatwireError):
    """Non-success HTTP response the dispatcher gave up on."""

    def __init__(
        self,
        status: int,
        request: RequestDescription,
        *,
        headers: dict[str, str] | None = None,
        body: Any = None,
        message: str | None = None,
    ) -> None:
        self.status = status
        self.request = request
        self.headers = headers or {}
        self.body = body
        super().__init__(message or f"{status} on {request}")


class RESTError(HTTPError):
    """
    HTTP error whose body carries a structured platform error.

    Attributes:
        code: Platform error code.
        field_errors: Flattened per-field validation messages.
    """

    def __init__(
        self,
        status: int,
        request: RequestDescription,
        *,
        headers: dict[str, str] | None = None,
        body: dict[str, Any],
    ) -> None:
        self.code: int | None = body.get("code")
        self.field_errors = flatten_errors(body.get("errors") or {})
        text = f"{body.get('message', 'Unknown error')} on {request}"
        if self.code is not None:
            text = f"{self.code}: {text}"
        if self.field_errors:
            text = text + "\n  " + "\n  ".join(self.field_errors)
        super().__init__(status, request, headers=headers, body=body, message=text)


class RateLimitedError(HTTPError):
    """Raised only when a 429 retry ceiling is configured and exhausted."""

    def __init__(
        self,
        request: RequestDescription,
        *,
        retry_after_ms: float,
        is_global: bool = False,
        headers: dict[str, str] | None = None,
        body: Any = None,
    ) -> None:
        self.retry_after_ms = retry_after_ms
        self.is_global = is_global
        scope = "global" if is_global else "route"
        super().__init__(
            429,
            request,
            headers=headers,
            body=body,
            message=f"{scope} rate limit on {request} after {request.attempts} attempts",
        )


class NetworkError(ChatwireError):
    """Transport failure or timeout that outlived the retry ceiling."""

    def __init__(self, message: str, request: RequestDescription) -> None:
        super().__init__(message)
        self.request = request
