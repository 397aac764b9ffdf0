"""
Types and configuration for the REST request layer.

Platform limits:
- 50 requests per second across all routes, per bot token
- Per-route limits announced through x-ratelimit-* response headers
"""

from __future__ import annotations

from dataclasses import dataclass, field

from chatwire.ratelimit.backoff import BackoffConfig
from chatwire.ratelimit.sequential import DEFAULT_SPACING_MS

REST_VERSION = 10

DEFAULT_USER_AGENT = "DiscordBot (https://github.com/chatwire/chatwire, 0.1.0)"


def _default_retry_backoff() -> BackoffConfig:
    return BackoffConfig(base_delay_ms=250, max_delay_ms=2000, max_retries=3)


@dataclass
class RestConfig:
    """
    Configuration for the RequestDispatcher.

    Attributes:
        domain: API host.
        base_path: Versioned API prefix.
        https: Use TLS.
        port: Explicit port; None uses the scheme default.
        request_timeout_ms: Per-attempt HTTP timeout.
        ratelimiter_offset_ms: Safety offset added to every latency estimate.
        latency_threshold_ms: Clock skew that triggers a warning.
        disable_latency_compensation: Ignore measured latency in bucket timing.
        global_requests_per_second: Platform-wide request cap.
        bucket_spacing_ms: Delay between consecutive non-short calls on a route.
        reaction_reset_floor_ms: Minimum reset delay for reaction routes.
        retry_backoff: Backoff for 5xx responses and network failures.
        max_ratelimit_retries: Cap on 429 retries; None retries indefinitely.
        headers: Extra headers sent with every request.
        user_agent: Client identifier header.
    """

    domain: str = "discord.com"
    base_path: str = f"/api/v{REST_VERSION}"
    https: bool = True
    port: int | None = None
    request_timeout_ms: int = 15000
    ratelimiter_offset_ms: int = 0
    latency_threshold_ms: int = 30000
    disable_latency_compensation: bool = False
    global_requests_per_second: int = 50
    bucket_spacing_ms: int = DEFAULT_SPACING_MS
    reaction_reset_floor_ms: int = 250
    retry_backoff: BackoffConfig = field(default_factory=_default_retry_backoff)
    max_ratelimit_retries: int | None = None
    headers: dict[str, str] = field(default_factory=dict)
    user_agent: str = DEFAULT_USER_AGENT

    def __post_init__(self) -> None:
        if self.request_timeout_ms <= 0:
            raise ValueError(f"request_timeout_ms must be > 0, got {self.request_timeout_ms}")
        if self.ratelimiter_offset_ms < 0:
            raise ValueError(
                f"ratelimiter_offset_ms must be >= 0, got {self.ratelimiter_offset_ms}"
            )
        if self.global_requests_per_second < 1:
            raise ValueError(
                "global_requests_per_second must be >= 1, "
                f"got {self.global_requests_per_second}"
            )
        if self.bucket_spacing_ms < 0:
            raise ValueError(f"bucket_spacing_ms must be >= 0, got {self.bucket_spacing_ms}")
        if self.max_ratelimit_retries is not None and self.max_ratelimit_retries < 0:
            raise ValueError(
                f"max_ratelimit_retries must be >= 0, got {self.max_ratelimit_retries}"
            )
        if self.port is not None and not 0 < self.port < 65536:
            raise ValueError(f"port must be in (0, 65536), got {self.port}")

    @property
    def base_url(self) -> str:
        """Scheme, host, optional port and API prefix."""
        scheme = "https" if self.https else "http"
        port = f":{self.port}" if self.port is not None else ""
        return f"{scheme}://{self.domain}{port}{self.base_path}"


@dataclass
class DispatcherMetrics:
    """
    Counters and gauges for the RequestDispatcher.

    Attributes:
        requests_sent: HTTP attempts put on the wire.
        responses_ok: 2xx responses.
        ratelimit_hits: All 429 responses.
        global_ratelimit_hits: 429 responses carrying the global flag.
        retries: Attempts re-queued after a 429, 5xx or network failure.
        errors_surfaced: Errors raised to callers.
        bucket_count: Route buckets created so far.
        global_blocked: Whether a global rate limit is in effect.
        latency_ms: Current latency estimate.
    """

    requests_sent: int = 0
    responses_ok: int = 0
    ratelimit_hits: int = 0
    global_ratelimit_hits: int = 0
    retries: int = 0
    errors_surfaced: int = 0
    bucket_count: int = 0
    global_blocked: bool = False
    latency_ms: float = 0.0


@dataclass(frozen=True)
class FileAttachment:
    """
    A file uploaded with a multipart request.

    Attributes:
        name: Filename reported to the platform.
        data: Raw file content.
        content_type: MIME type of the part.
    """

    name: str
    data: bytes
    content_type: str = "application/octet-stream"
