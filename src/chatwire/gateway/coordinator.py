"""
Shard coordinator.

Owns every GatewayConnection in the process and hands out connect turns:
- One shard per concurrency key (``shard_id % max_concurrency``) may be
  between socket open and HELLO at a time
- Fresh identifies on one key are spaced by ``identify_spacing_ms``;
  shards holding a resumable session skip the spacing
- Disconnected shards re-enter the queue instead of connecting directly
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from typing import TYPE_CHECKING, Any

from chatwire.gateway.connection import GatewayConnection
from chatwire.gateway.events import EventChannel
from chatwire.gateway.types import ConnectionStatus, GatewayConfig, GatewayMetrics

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class ShardCoordinator:
    """
    Brings up and keeps up a fleet of shards.

    Usage:
        coordinator = ShardCoordinator(token, config, gateway_url=url, total_shards=4)
        await coordinator.start()
        ...
        await coordinator.stop()
    """

    def __init__(
        self,
        token: str,
        config: GatewayConfig | None = None,
        *,
        events: EventChannel | None = None,
        gateway_url: str | None = None,
        total_shards: int | None = None,
        max_concurrency: int | None = None,
        time_fn: Callable[[], int] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """
        Initialize the coordinator.

        Args:
            token: Bot token.
            config: Gateway configuration.
            events: Channel shared by every shard.
            gateway_url: URL for fresh connections.
            total_shards: Resolved shard count; defaults to config.max_shards.
            max_concurrency: Resolved identify concurrency; defaults to
                config.max_concurrency.
            time_fn: Time provider for deterministic testing.
            rng: Seeded Random for deterministic reconnect jitter.
        """
        self._token = token
        self._config = config or GatewayConfig()
        self.events = events or EventChannel()
        self.gateway_url = gateway_url or self._config.url
        self.total_shards = total_shards or _resolved(self._config.max_shards, "max_shards")
        self.max_concurrency = max_concurrency or _resolved(
            self._config.max_concurrency, "max_concurrency"
        )
        self._time_fn = time_fn
        self._rng = rng

        self.shards: dict[int, GatewayConnection] = {}
        self.connect_queue: deque[GatewayConnection] = deque()
        # Last connect start per concurrency key; cleared when a shard is ready.
        self._last_connect_ms: dict[int, int] = {}
        self._connect_tasks: dict[int, asyncio.Task[None]] = {}
        self._reconnect_timers: dict[int, asyncio.TimerHandle] = {}
        self._poll_timer: asyncio.TimerHandle | None = None
        self._running = False
        self._stopped = False

    def _now_ms(self) -> int:
        """Get current time in milliseconds."""
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    @property
    def first_shard_id(self) -> int:
        return self._config.first_shard_id

    @property
    def last_shard_id(self) -> int:
        if self._config.last_shard_id is not None:
            return self._config.last_shard_id
        return self.total_shards - 1

    def concurrency_key(self, shard_id: int) -> int:
        return shard_id % self.max_concurrency

    def spawn(self, shard_id: int) -> GatewayConnection:
        """Create the shard if needed and queue it when it is disconnected."""
        shard = self.shards.get(shard_id)
        if shard is None:
            shard = GatewayConnection(
                shard_id,
                self._token,
                self._config,
                events=self.events,
                total_shards=self.total_shards,
                gateway_url=self.gateway_url,
                on_ready=self._on_shard_ready,
                on_reconnect=self._on_shard_reconnect,
                time_fn=self._time_fn,
                rng=self._rng,
            )
            self.shards[shard_id] = shard
        if shard.status == ConnectionStatus.DISCONNECTED and not shard.connected:
            self.connect(shard)
        return shard

    async def start(self) -> None:
        """Spawn every shard in this process's range."""
        if self._running:
            return
        self._running = True
        self._stopped = False
        logger.info(
            "Starting shards",
            extra={
                "first_shard_id": self.first_shard_id,
                "last_shard_id": self.last_shard_id,
                "total_shards": self.total_shards,
                "max_concurrency": self.max_concurrency,
            },
        )
        for shard_id in range(self.first_shard_id, self.last_shard_id + 1):
            self.spawn(shard_id)

    async def stop(self) -> None:
        """Disconnect every shard without reconnecting."""
        self._running = False
        self._stopped = True
        if self._poll_timer is not None:
            self._poll_timer.cancel()
            self._poll_timer = None
        for timer in self._reconnect_timers.values():
            timer.cancel()
        self._reconnect_timers.clear()
        self.connect_queue.clear()

        for task in list(self._connect_tasks.values()):
            if not task.done():
                task.cancel()
        self._connect_tasks.clear()

        for shard in self.shards.values():
            await shard.close()
        logger.info("Shards stopped", extra={"shards": len(self.shards)})

    def connect(self, shard: GatewayConnection) -> None:
        """Queue a shard for its next connect turn."""
        if shard not in self.connect_queue:
            self.connect_queue.append(shard)
        self.try_connect()

    def _is_connecting(self, shard: GatewayConnection) -> bool:
        task = self._connect_tasks.get(shard.id)
        if task is not None and not task.done():
            return True
        return shard.status == ConnectionStatus.CONNECTING

    def try_connect(self) -> None:
        """Start every queued shard whose concurrency key allows it."""
        if not self.connect_queue:
            return

        now_ms = self._now_ms()
        for shard in list(self.connect_queue):
            key = self.concurrency_key(shard.id)
            last_ms = self._last_connect_ms.get(key)
            if (
                not shard.can_resume()
                and last_ms is not None
                and now_ms - last_ms < self._config.identify_spacing_ms
            ):
                continue
            if any(
                self.concurrency_key(other.id) == key and self._is_connecting(other)
                for other in self.shards.values()
            ):
                continue

            self.connect_queue.remove(shard)
            self._last_connect_ms[key] = now_ms
            logger.debug(
                "Connect turn granted",
                extra={"shard_id": shard.id, "key": key, "resume": shard.can_resume()},
            )
            task = asyncio.create_task(shard.connect())
            self._connect_tasks[shard.id] = task
            task.add_done_callback(lambda _t, sid=shard.id: self._on_connect_done(sid))

        if self.connect_queue and self._poll_timer is None:
            self._poll_timer = asyncio.get_running_loop().call_later(
                self._config.connect_poll_interval_ms / 1000, self._on_poll_timer
            )

    def _on_connect_done(self, shard_id: int) -> None:
        task = self._connect_tasks.get(shard_id)
        if task is not None and task.done():
            del self._connect_tasks[shard_id]
            if not task.cancelled() and task.exception() is not None:
                logger.error(
                    "Shard connect raised",
                    extra={"shard_id": shard_id, "error": str(task.exception())},
                )

    def _on_poll_timer(self) -> None:
        self._poll_timer = None
        self.try_connect()

    def _on_shard_ready(self, shard: GatewayConnection) -> None:
        self._last_connect_ms.pop(self.concurrency_key(shard.id), None)
        if self.connect_queue:
            self.try_connect()

    def _on_shard_reconnect(self, shard: GatewayConnection, delay_ms: int) -> None:
        if self._stopped:
            return
        existing = self._reconnect_timers.pop(shard.id, None)
        if existing is not None:
            existing.cancel()
        if delay_ms <= 0:
            self.connect(shard)
            return
        self._reconnect_timers[shard.id] = asyncio.get_running_loop().call_later(
            delay_ms / 1000, self._on_reconnect_timer, shard
        )

    def _on_reconnect_timer(self, shard: GatewayConnection) -> None:
        self._reconnect_timers.pop(shard.id, None)
        if not self._stopped:
            self.connect(shard)

    def get_metrics(self) -> GatewayMetrics:
        """Get aggregated shard metrics."""
        shard_metrics = [shard.get_metrics() for shard in self.shards.values()]
        return GatewayMetrics(
            total_shards=len(self.shards),
            ready_shards=sum(1 for m in shard_metrics if m.status == ConnectionStatus.READY),
            connect_queue_length=len(self.connect_queue),
            total_dispatches=sum(m.dispatches_received for m in shard_metrics),
            total_reconnects=sum(m.reconnect_count for m in shard_metrics),
            shard_metrics=shard_metrics,
        )

    def get_status(self) -> dict[str, Any]:
        """Per-shard status for observability."""
        return {
            "queue": [shard.id for shard in self.connect_queue],
            "shards": {shard_id: shard.status.value for shard_id, shard in self.shards.items()},
        }


def _resolved(value: int | str, name: str) -> int:
    if isinstance(value, int):
        return value
    raise ValueError(f"{name} must be resolved before starting shards, got {value!r}")
