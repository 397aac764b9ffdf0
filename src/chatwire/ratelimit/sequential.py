"""
Per-route sequential rate limiter.

All requests sharing one route key pass through one SequentialBucket:
- Calls start in enqueue order, one at a time
- ``remaining`` is decremented optimistically before each call and then
  overwritten from the authoritative response headers
- An exhausted bucket waits until ``reset_at`` (padded by measured latency)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from chatwire.ratelimit.latency import LatencyTracker

logger = logging.getLogger(__name__)

# Default spacing between consecutive non-short calls on one route.
DEFAULT_SPACING_MS = 25


@dataclass
class _QueuedCall:
    func: Callable[[Callable[[], None]], Awaitable[Any] | None]
    short: bool


class _Slot:
    """Completion handle passed to a call; releasing it twice is harmless."""

    __slots__ = ("_bucket", "_short", "released")

    def __init__(self, bucket: SequentialBucket, short: bool) -> None:
        self._bucket = bucket
        self._short = short
        self.released = False

    def __call__(self) -> None:
        if self.released:
            return
        self.released = True
        self._bucket._on_call_done(self._short)


class SequentialBucket:
    """
    FIFO, one-in-flight rate limiter for a single route key.

    A queued call is a function receiving a completion callback. It may be a
    plain function or a coroutine function; in the latter case the bucket runs
    it as a task and releases the slot itself if the coroutine finishes
    without calling back.
    """

    def __init__(
        self,
        limit: int = 1,
        latency: LatencyTracker | None = None,
        *,
        route: str = "",
        spacing_ms: int = DEFAULT_SPACING_MS,
        time_fn: Callable[[], int] | None = None,
    ) -> None:
        """
        Initialize the bucket.

        Args:
            limit: Initial per-window request limit (servers correct it).
            latency: Shared latency reference.
            route: Route key, for logs.
            spacing_ms: Delay between consecutive non-short calls.
            time_fn: Time provider for deterministic testing.
        """
        self.limit = limit
        self.remaining = limit
        self.reset_at_ms = 0.0
        self.processing = False
        self.route = route
        self.spacing_ms = spacing_ms
        self.bucket_hash: str | None = None

        self._latency = latency
        self._time_fn = time_fn
        self._queue: deque[_QueuedCall] = deque()
        self._timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

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
        """Number of calls waiting to start."""
        return len(self._queue)

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    def queue(
        self,
        func: Callable[[Callable[[], None]], Awaitable[Any] | None],
        short: bool = False,
    ) -> None:
        """
        Append a call; start processing if idle.

        Args:
            func: Call receiving a completion callback.
            short: Skip the spacing delay after this call completes.
        """
        self._queue.append(_QueuedCall(func=func, short=short))
        self.check()

    def requeue(
        self,
        func: Callable[[Callable[[], None]], Awaitable[Any] | None],
        short: bool = True,
    ) -> None:
        """Put a retried call at the head of the queue, ahead of later arrivals."""
        self._queue.appendleft(_QueuedCall(func=func, short=short))
        self.check()

    def check(self, override: bool = False) -> None:
        """
        Start the next call if the bucket is idle and has capacity.

        Idempotent: with an empty queue, or while a call is in flight and
        ``override`` is False, this does nothing.

        Args:
            override: Set by the completion path and timers, which own the
                processing flag when they call in.
        """
        if not self._queue:
            return
        if self.processing and not override:
            return

        now_ms = self._now_ms()
        offset = self.latency_ms
        if not self.reset_at_ms or self.reset_at_ms < now_ms - offset:
            self.reset_at_ms = now_ms - offset
            self.remaining = self.limit

        if self.remaining <= 0:
            delay_ms = max(0.0, self.reset_at_ms - now_ms + offset) + 1
            logger.debug(
                "Route bucket exhausted, deferring",
                extra={"route": self.route, "delay_ms": round(delay_ms, 2)},
            )
            self.processing = True
            self._timer = asyncio.get_running_loop().call_later(delay_ms / 1000, self._on_timer)
            return

        self.remaining -= 1
        self.processing = True
        call = self._queue.popleft()
        self._run(call)

    def _run(self, call: _QueuedCall) -> None:
        slot = _Slot(self, call.short)
        try:
            result = call.func(slot)
        except Exception:
            logger.exception("Route bucket call failed", extra={"route": self.route})
            slot()
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)

            def _finished(done: asyncio.Future[Any]) -> None:
                self._tasks.discard(task)
                if not done.cancelled() and done.exception() is not None:
                    logger.error(
                        "Route bucket call raised",
                        extra={"route": self.route, "error": str(done.exception())},
                    )
                slot()

            task.add_done_callback(_finished)

    def _on_timer(self) -> None:
        self._timer = None
        self.check(override=True)

    def _on_call_done(self, short: bool) -> None:
        if not self._queue:
            self.processing = False
            return
        if short or self.spacing_ms <= 0:
            self.check(override=True)
            return
        self._timer = asyncio.get_running_loop().call_later(self.spacing_ms / 1000, self._on_timer)

    def update(
        self,
        *,
        limit: int | None = None,
        remaining: int | None = None,
        reset_at_ms: float | None = None,
        bucket_hash: str | None = None,
    ) -> None:
        """Overwrite bucket state from authoritative server headers."""
        if limit is not None:
            self.limit = limit
        if remaining is not None:
            self.remaining = remaining
        if reset_at_ms is not None:
            self.reset_at_ms = reset_at_ms
        if bucket_hash is not None:
            self.bucket_hash = bucket_hash

    def get_status(self) -> dict[str, Any]:
        """Get current bucket status for observability."""
        return {
            "route": self.route,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_at_ms": self.reset_at_ms,
            "processing": self.processing,
            "pending": len(self._queue),
        }
