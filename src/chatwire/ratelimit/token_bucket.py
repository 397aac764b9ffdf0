"""
Token bucket with priority queueing.

One bucket enforces one "X operations per interval" rule:
- The dispatcher's platform-wide request cap (one instance per process)
- Each shard's outbound frame limit and presence-update limit

Priority items are released before all non-priority items, FIFO within each
class. ``reserved_tokens`` are spendable only by priority items, so a burst of
ordinary sends can never starve heartbeats.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    from chatwire.ratelimit.latency import LatencyTracker

logger = logging.getLogger(__name__)


@dataclass
class _QueuedItem:
    """A pending bucket entry."""

    func: Callable[[], object]
    priority: bool
    waiter: asyncio.Future[bool] | None = None


class TokenBucket:
    """
    Generic rate limiter releasing queued callables as tokens allow.

    Usage:
        bucket = TokenBucket(120, 60000, reserved_tokens=5)
        bucket.queue(lambda: ws_send(frame), priority=True)
        # or, from a coroutine:
        if await bucket.acquire():
            await ws.send_str(frame)
    """

    def __init__(
        self,
        token_limit: int,
        interval_ms: int,
        *,
        latency: LatencyTracker | None = None,
        reserved_tokens: int = 0,
        name: str = "",
        time_fn: Callable[[], int] | None = None,
    ) -> None:
        """
        Initialize the bucket.

        Args:
            token_limit: Operations allowed per interval.
            interval_ms: Window length in milliseconds.
            latency: Shared latency reference used to pad window boundaries.
            reserved_tokens: Tokens only priority items may spend.
            name: Label used in logs.
            time_fn: Time provider for deterministic testing.
        """
        if token_limit < 1:
            raise ValueError(f"token_limit must be >= 1, got {token_limit}")
        if interval_ms <= 0:
            raise ValueError(f"interval_ms must be > 0, got {interval_ms}")
        if not 0 <= reserved_tokens < token_limit:
            raise ValueError(
                f"reserved_tokens must be in [0, token_limit), got {reserved_tokens}"
            )

        self.token_limit = token_limit
        self.interval_ms = interval_ms
        self.reserved_tokens = reserved_tokens
        self.name = name
        self.tokens = token_limit
        self.last_reset_ms = 0
        self.last_send_ms = 0

        self._latency = latency
        self._time_fn = time_fn
        self._priority: deque[_QueuedItem] = deque()
        self._normal: deque[_QueuedItem] = deque()
        self._timer: asyncio.TimerHandle | None = None
        self._check_scheduled = False

    def _now_ms(self) -> int:
        """Get current time in milliseconds."""
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    @property
    def latency_ms(self) -> float:
        return self._latency.latency if self._latency is not None else 0.0

    @property
    def pending(self) -> int:
        """Number of queued items."""
        return len(self._priority) + len(self._normal)

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    def queue(self, func: Callable[[], object], priority: bool = False) -> None:
        """
        Enqueue a callable to run once a token is available.

        Enqueues made within the same loop iteration are checked together,
        so a same-tick burst is released in priority order.
        """
        self._enqueue(_QueuedItem(func=func, priority=priority))

    async def acquire(self, priority: bool = False) -> bool:
        """
        Wait for a token.

        Returns:
            True when a token was granted, False if the bucket was cleared
            while waiting.
        """
        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[bool] = loop.create_future()

        def grant() -> None:
            if not waiter.done():
                waiter.set_result(True)

        self._enqueue(_QueuedItem(func=grant, priority=priority, waiter=waiter))
        return await waiter

    def _enqueue(self, item: _QueuedItem) -> None:
        if item.priority:
            self._priority.append(item)
        else:
            self._normal.append(item)

        if self._check_scheduled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.check()
            return
        self._check_scheduled = True
        loop.call_soon(self._scheduled_check)

    def _scheduled_check(self) -> None:
        self._check_scheduled = False
        self.check()

    def _head(self) -> _QueuedItem | None:
        if self._priority:
            return self._priority[0]
        if self._normal:
            return self._normal[0]
        return None

    def _pop(self) -> _QueuedItem:
        if self._priority:
            return self._priority.popleft()
        return self._normal.popleft()

    def _can_release(self, item: _QueuedItem) -> bool:
        if item.priority:
            return self.tokens > 0
        return self.tokens > self.reserved_tokens

    def check(self) -> None:
        """
        Release as many queued items as the current window allows.

        No-op when nothing is queued. While a reset timer is armed only
        priority items may still spend reserved tokens.
        """
        if self.pending == 0:
            return

        now_ms = self._now_ms()
        latency = self.latency_ms
        if now_ms - self.last_reset_ms >= self.interval_ms + self.token_limit * latency:
            self.last_reset_ms = now_ms
            self.tokens = self.token_limit

        while True:
            head = self._head()
            if head is None or not self._can_release(head):
                break
            item = self._pop()
            self.tokens -= 1

            # Keep consecutive sends at least one round trip apart
            gap_ms = latency - (now_ms - self.last_send_ms)
            if latency == 0 or gap_ms <= 0:
                self._invoke(item)
                self.last_send_ms = now_ms
            else:
                asyncio.get_running_loop().call_later(gap_ms / 1000, self._invoke, item)
                self.last_send_ms = int(now_ms + gap_ms)

        if self.pending > 0 and self._timer is None:
            delay_ms = max(
                0.0,
                self.last_reset_ms + self.interval_ms + self.token_limit * latency - now_ms,
            )
            logger.debug(
                "Token bucket exhausted",
                extra={
                    "bucket": self.name,
                    "pending": self.pending,
                    "delay_ms": round(delay_ms, 2),
                },
            )
            self._timer = asyncio.get_running_loop().call_later(delay_ms / 1000, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self.check()

    def _invoke(self, item: _QueuedItem) -> None:
        try:
            item.func()
        except Exception:
            logger.exception("Token bucket callback failed", extra={"bucket": self.name})

    def clear(self) -> None:
        """Drop all pending items; waiting ``acquire()`` calls return False."""
        for item in (*self._priority, *self._normal):
            if item.waiter is not None and not item.waiter.done():
                item.waiter.set_result(False)
        self._priority.clear()
        self._normal.clear()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def get_status(self) -> dict[str, int | bool | str]:
        """Get current bucket status for observability."""
        return {
            "name": self.name,
            "tokens": self.tokens,
            "token_limit": self.token_limit,
            "pending": self.pending,
            "timer_armed": self._timer is not None,
        }
