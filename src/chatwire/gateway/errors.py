"""Errors raised and emitted by gateway shards."""

from __future__ import annotations

from chatwire.errors import ChatwireError


class GatewayError(ChatwireError):
    """Gateway protocol or transport failure."""

    def __init__(self, message: str, shard_id: int | None = None) -> None:
        super().__init__(message)
        self.shard_id = shard_id


class GatewayCloseError(GatewayError):
    """Socket closed by the server with a close code."""

    def __init__(self, code: int | None, message: str, shard_id: int | None = None) -> None:
        super().__init__(f"{message} ({code})" if code is not None else message, shard_id)
        self.code = code


class ConnectionTimeoutError(GatewayError):
    """HELLO did not arrive within the connection timeout."""
