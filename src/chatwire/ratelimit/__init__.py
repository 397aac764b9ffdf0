"""Rate limiting primitives shared by the REST and gateway layers."""

from chatwire.ratelimit.backoff import (
    BackoffConfig,
    BackoffState,
    compute_backoff_delay,
)
from chatwire.ratelimit.latency import LatencyTracker
from chatwire.ratelimit.sequential import DEFAULT_SPACING_MS, SequentialBucket
from chatwire.ratelimit.token_bucket import TokenBucket

__all__ = [
    "DEFAULT_SPACING_MS",
    "BackoffConfig",
    "BackoffState",
    "LatencyTracker",
    "SequentialBucket",
    "TokenBucket",
    "compute_backoff_delay",
]
