"""
Client facade.

Owns the RequestDispatcher, the ShardCoordinator and the EventChannel the
shards publish into. ``connect()`` resolves the gateway URL and, when
configured as "auto", the shard count and identify concurrency.
"""

from __future__ import annotations

import logging
import random
from typing import TYPE_CHECKING, Any

from chatwire.config import ClientConfig, ConfigurationError
from chatwire.gateway.coordinator import ShardCoordinator
from chatwire.gateway.events import EventChannel, Subscription
from chatwire.gateway.types import ConnectionStatus
from chatwire.rest.dispatcher import RequestDispatcher

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from types import TracebackType

    from chatwire.gateway.connection import GatewayConnection

logger = logging.getLogger(__name__)


class Client:
    """
    Entry point for applications.

    Usage:
        async with Client("Bot xyz", config) as client:
            await client.connect()
            async for event in client.subscribe({"dispatch"}):
                ...
    """

    def __init__(
        self,
        token: str | None = None,
        config: ClientConfig | None = None,
        *,
        time_fn: Callable[[], int] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            token: Bot token; falls back to config.token.
            config: Client configuration.
            time_fn: Time provider for deterministic testing.
            rng: Seeded Random for deterministic jitter.
        """
        self._config = config or ClientConfig()
        self._token = token or self._config.token
        self._time_fn = time_fn
        self._rng = rng
        self.events = EventChannel()
        self.rest = RequestDispatcher(self._token, self._config.rest, time_fn=time_fn, rng=rng)
        self.coordinator: ShardCoordinator | None = None
        self.gateway_url: str | None = None
        self.session_start_limit: dict[str, Any] | None = None
        self._closed = False

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def shards(self) -> dict[int, GatewayConnection]:
        if self.coordinator is None:
            return {}
        return self.coordinator.shards

    async def request(self, method: str, path: str, **options: Any) -> Any:
        """Issue a REST request; see RequestDispatcher.request for options."""
        return await self.rest.request(method, path, **options)

    def subscribe(self, kinds: Iterable[str] | None = None, *, maxsize: int = 0) -> Subscription:
        """Subscribe to gateway events, optionally filtered by kind."""
        return self.events.subscribe(kinds, maxsize=maxsize)

    async def connect(self) -> None:
        """
        Resolve gateway parameters and start every shard in range.

        Raises:
            ConfigurationError: Missing token, shard range outside the shard
                count, or not enough session starts left.
            RESTError: The platform rejected the gateway lookup (e.g. 401).
        """
        if self._closed:
            raise RuntimeError("Client is closed")
        if not self._token:
            raise ConfigurationError("token is required to connect")

        gateway = self._config.gateway
        total_shards = gateway.max_shards
        max_concurrency = gateway.max_concurrency
        url = gateway.url

        bot: dict[str, Any] = {}
        limit: dict[str, Any] = {}
        if total_shards == "auto" or max_concurrency == "auto":
            bot = await self.rest.request("GET", "/gateway/bot", auth=True)
            limit = bot.get("session_start_limit") or {}
            self.session_start_limit = limit
            url = url or bot["url"]
        elif url is None:
            data = await self.rest.request("GET", "/gateway")
            url = data["url"]

        total_shards = _resolved_count("max_shards", total_shards, bot.get("shards"))
        max_concurrency = _resolved_count(
            "max_concurrency", max_concurrency, limit.get("max_concurrency", 1)
        )
        last_shard_id = gateway.last_shard_id
        if last_shard_id is None:
            last_shard_id = total_shards - 1
        if last_shard_id >= total_shards:
            raise ConfigurationError(
                f"last_shard_id must be < max_shards, got {last_shard_id} >= {total_shards}"
            )

        shard_count = last_shard_id - gateway.first_shard_id + 1
        remaining = (self.session_start_limit or {}).get("remaining")
        if remaining is not None and remaining < shard_count:
            raise ConfigurationError(
                f"session start limit exhausted: {remaining} remaining for {shard_count} "
                f"shards, resets after {self.session_start_limit.get('reset_after')} ms"
            )

        self.gateway_url = url
        if self.coordinator is None:
            self.coordinator = ShardCoordinator(
                self._token,
                gateway,
                events=self.events,
                gateway_url=url,
                total_shards=total_shards,
                max_concurrency=max_concurrency,
                time_fn=self._time_fn,
                rng=self._rng,
            )
        logger.info(
            "Connecting",
            extra={
                "endpoint": url,
                "total_shards": total_shards,
                "max_concurrency": max_concurrency,
            },
        )
        await self.coordinator.start()

    async def close(self) -> None:
        """Stop all shards, close the HTTP session and end subscriptions."""
        if self._closed:
            return
        self._closed = True
        if self.coordinator is not None:
            await self.coordinator.stop()
        await self.rest.close()
        self.events.close()
        logger.info("Client closed")

    def get_health_info(self) -> dict[str, Any]:
        """Health summary for /healthz."""
        shards = self.shards
        ready = sum(1 for s in shards.values() if s.status == ConnectionStatus.READY)
        return {
            "status": "ok" if shards and ready == len(shards) else "degraded",
            "ready_shards": ready,
            "total_shards": len(shards),
            "global_blocked": self.rest.global_blocked,
        }

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


def _resolved_count(name: str, configured: int | str, fetched: Any) -> int:
    """Return ``configured`` unless it is "auto", else a positive ``fetched``."""
    if isinstance(configured, int):
        return configured
    try:
        value = int(fetched)
    except (TypeError, ValueError):
        value = 0
    if value < 1:
        raise ConfigurationError(
            f"{name} could not be resolved from /gateway/bot, got {fetched!r}"
        )
    return value
