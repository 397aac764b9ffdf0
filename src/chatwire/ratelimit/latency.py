"""
Rolling latency and clock-offset estimate shared by all rate limiters.

Every completed HTTP round trip feeds a sample. Buckets read ``latency`` to pad
their reset deadlines and ``time_offset`` to translate server-absolute reset
timestamps onto the local clock.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

# The Date header has one-second resolution; assume we are mid-second.
DATE_HEADER_SKEW_MS = 500


@dataclass
class LatencyTracker:
    """
    Shared, mutable latency reference.

    Attributes:
        offset_ms: Baseline added to every estimate (rate-limiter safety offset).
        sample_size: Number of samples in each rolling window.
        time_offset_check_interval_ms: Minimum spacing between clock-offset samples.
        latency_threshold_ms: Clock skew above which ``record_server_date`` reports drift.
    """

    offset_ms: int = 0
    sample_size: int = 10
    time_offset_check_interval_ms: int = 5000
    latency_threshold_ms: int = 30000

    latency: float = field(default=0.0, init=False)
    time_offset: float = field(default=0.0, init=False)
    last_time_offset_check_ms: int = field(default=0, init=False)

    _raw: deque[float] = field(default_factory=deque, init=False)
    _time_offsets: deque[float] = field(default_factory=deque, init=False)
    _time_fn: Callable[[], int] | None = field(default=None)

    def __post_init__(self) -> None:
        if self.sample_size < 1:
            raise ValueError(f"sample_size must be >= 1, got {self.sample_size}")
        self.reset()

    def _now_ms(self) -> int:
        """Get current time in milliseconds."""
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    def now_ms(self) -> int:
        """Current local time in milliseconds (injectable for tests)."""
        return self._now_ms()

    def reset(self) -> None:
        """Refill both windows with their neutral values."""
        self._raw = deque([float(self.offset_ms)] * self.sample_size, maxlen=self.sample_size)
        self._time_offsets = deque([0.0] * self.sample_size, maxlen=self.sample_size)
        self.latency = float(self.offset_ms)
        self.time_offset = 0.0
        self.last_time_offset_check_ms = 0

    @property
    def samples(self) -> list[float]:
        """Current round-trip samples, oldest first."""
        return list(self._raw)

    def record_round_trip(self, latency_ms: float) -> None:
        """Fold one observed round-trip time into the rolling mean."""
        oldest = self._raw[0]
        self._raw.append(float(latency_ms))
        self.latency = self.latency - oldest / self.sample_size + latency_ms / self.sample_size

    def record_server_date(self, server_now_ms: int | None) -> bool:
        """
        Fold a server clock reading into the clock-offset estimate.

        Samples are taken at most once per ``time_offset_check_interval_ms``.

        Args:
            server_now_ms: Server time parsed from the response ``Date`` header.

        Returns:
            True if both the averaged and the fresh offset exceed the latency
            threshold, i.e. the local clock is badly behind the server.
        """
        if server_now_ms is None:
            return False

        now_ms = self._now_ms()
        if self.last_time_offset_check_ms >= now_ms - self.time_offset_check_interval_ms:
            return False

        self.last_time_offset_check_ms = now_ms
        sample = float(server_now_ms + DATE_HEADER_SKEW_MS - now_ms)
        skewed = (
            self.time_offset - self.latency >= self.latency_threshold_ms
            and sample - self.latency >= self.latency_threshold_ms
        )

        oldest = self._time_offsets[0]
        self._time_offsets.append(sample)
        self.time_offset = self.time_offset - oldest / self.sample_size + sample / self.sample_size
        return skewed

    def server_to_local_ms(self, server_ms: float) -> float:
        """Translate a server-absolute timestamp onto the local clock."""
        return server_ms - self.time_offset

    def get_status(self) -> dict[str, float]:
        """Get current estimates for observability."""
        return {
            "latency_ms": round(self.latency, 2),
            "time_offset_ms": round(self.time_offset, 2),
        }
