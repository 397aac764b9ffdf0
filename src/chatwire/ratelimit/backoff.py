"""
Exponential backoff with jitter.

Two users:
- RequestDispatcher spaces retries of 5xx responses and network failures
  (``RestConfig.retry_backoff``) and gives up once the state is exhausted
- GatewayConnection delays re-queueing a shard that has to identify fresh
  (``GatewayConfig.reconnect_backoff``); the state resets on READY/RESUMED
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass


@dataclass
class BackoffConfig:
    """Exponential backoff policy.

    Attributes:
        base_delay_ms: Delay after the first failure.
        max_delay_ms: Cap applied after jitter.
        multiplier: Growth factor per failure.
        jitter_factor: 0.5 = ±50% jitter.
        max_retries: Failures tolerated before giving up.
    """

    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    multiplier: float = 2.0
    jitter_factor: float = 0.5
    max_retries: int = 10

    def __post_init__(self) -> None:
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms must be >= base_delay_ms, got {self.max_delay_ms}"
            )
        if self.multiplier < 1.0:
            raise ValueError(f"multiplier must be >= 1.0, got {self.multiplier}")
        if not 0.0 <= self.jitter_factor < 1.0:
            raise ValueError(f"jitter_factor must be in [0, 1), got {self.jitter_factor}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")


@dataclass
class BackoffState:
    """Failures seen by one request or one shard since its last success."""

    attempt: int = 0
    first_error_ms: int | None = None
    last_error_ms: int | None = None

    def record_error(self, now_ms: int | None = None) -> None:
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        self.attempt += 1
        if self.first_error_ms is None:
            self.first_error_ms = now_ms
        self.last_error_ms = now_ms

    def reset(self) -> None:
        self.attempt = 0
        self.first_error_ms = None
        self.last_error_ms = None

    def exhausted(self, config: BackoffConfig) -> bool:
        """True once more failures were recorded than ``max_retries`` allows."""
        return self.attempt > config.max_retries


def compute_backoff_delay(
    config: BackoffConfig,
    state: BackoffState,
    retry_after_ms: int | None = None,
    *,
    rng: random.Random | None = None,
) -> int:
    """
    Delay before the next attempt, in milliseconds.

    ``base * multiplier^(attempt-1)``, jittered by ±jitter_factor, capped at
    max_delay_ms. A server-provided ``retry_after_ms`` is a floor.

    Args:
        config: Backoff policy.
        state: Failures recorded so far; no failures means no delay.
        retry_after_ms: Server-provided retry delay.
        rng: Seeded Random for deterministic jitter in tests.
    """
    if state.attempt <= 0:
        return 0

    uniform = rng.uniform if rng is not None else random.uniform
    spread = config.jitter_factor
    delay = config.base_delay_ms * config.multiplier ** (state.attempt - 1)
    delay = min(delay * uniform(1.0 - spread, 1.0 + spread), config.max_delay_ms)

    if retry_after_ms:
        delay = max(delay, retry_after_ms)
    return int(delay)
