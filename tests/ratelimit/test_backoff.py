"""
Tests for exponential backoff with jitter.

Covers delay growth, the max cap, server retry-after floors and seeded
jitter for deterministic retry timing.
"""

from __future__ import annotations

import random

import pytest

from chatwire.ratelimit import BackoffConfig, BackoffState, compute_backoff_delay


class TestBackoffConfig:
    """Tests for BackoffConfig."""

    def test_default_values(self) -> None:
        """Test default configuration values."""
        config = BackoffConfig()
        assert config.base_delay_ms == 1000
        assert config.max_delay_ms == 30000
        assert config.multiplier == 2.0
        assert config.jitter_factor == 0.5
        assert config.max_retries == 10

    def test_negative_base_delay_rejected(self) -> None:
        with pytest.raises(ValueError, match="base_delay_ms"):
            BackoffConfig(base_delay_ms=-1)

    def test_max_below_base_rejected(self) -> None:
        with pytest.raises(ValueError, match="max_delay_ms"):
            BackoffConfig(base_delay_ms=500, max_delay_ms=100)

    def test_jitter_factor_bounds(self) -> None:
        with pytest.raises(ValueError, match="jitter_factor"):
            BackoffConfig(jitter_factor=1.0)


class TestBackoffState:
    """Tests for BackoffState."""

    def test_record_error_and_reset(self) -> None:
        state = BackoffState()
        state.record_error(now_ms=1000)
        state.record_error(now_ms=1500)
        assert state.attempt == 2
        assert state.first_error_ms == 1000
        assert state.last_error_ms == 1500

        state.reset()
        assert state.attempt == 0
        assert state.first_error_ms is None
        assert state.last_error_ms is None

    def test_wall_clock_by_default(self) -> None:
        state = BackoffState()
        state.record_error()
        assert state.last_error_ms is not None and state.last_error_ms > 0

    def test_exhausted_after_max_retries(self) -> None:
        config = BackoffConfig(max_retries=2)
        state = BackoffState()
        for _ in range(2):
            state.record_error(now_ms=0)
            assert not state.exhausted(config)
        state.record_error(now_ms=0)
        assert state.exhausted(config)


class TestComputeBackoffDelay:
    """Tests for compute_backoff_delay."""

    def test_no_delay_before_first_error(self) -> None:
        assert compute_backoff_delay(BackoffConfig(), BackoffState()) == 0

    def test_exponential_growth_without_jitter(self) -> None:
        """With zero jitter, delays double per attempt."""
        config = BackoffConfig(base_delay_ms=250, max_delay_ms=10000, jitter_factor=0.0)
        state = BackoffState()
        delays = []
        for _ in range(4):
            state.record_error()
            delays.append(compute_backoff_delay(config, state))
        assert delays == [250, 500, 1000, 2000]

    def test_capped_at_max_delay(self) -> None:
        config = BackoffConfig(base_delay_ms=250, max_delay_ms=2000, jitter_factor=0.0)
        state = BackoffState(attempt=10)
        assert compute_backoff_delay(config, state) == 2000

    def test_jitter_within_bounds(self) -> None:
        """±50% jitter keeps the first delay in [500, 1500]."""
        config = BackoffConfig(base_delay_ms=1000, jitter_factor=0.5)
        state = BackoffState(attempt=1)
        for _ in range(50):
            delay = compute_backoff_delay(config, state)
            assert 500 <= delay <= 1500

    def test_retry_after_is_a_floor(self) -> None:
        config = BackoffConfig(base_delay_ms=100, max_delay_ms=200, jitter_factor=0.0)
        state = BackoffState(attempt=1)
        assert compute_backoff_delay(config, state, retry_after_ms=5000) == 5000
        assert compute_backoff_delay(config, state, retry_after_ms=50) == 100

    def test_seeded_rng_is_deterministic(self) -> None:
        """Same seed produces the same delay sequence."""
        config = BackoffConfig()

        def sequence(seed: int) -> list[int]:
            rng = random.Random(seed)
            state = BackoffState()
            out = []
            for _ in range(5):
                state.record_error()
                out.append(compute_backoff_delay(config, state, rng=rng))
            return out

        assert sequence(42) == sequence(42)
        assert sequence(42) != sequence(7)
