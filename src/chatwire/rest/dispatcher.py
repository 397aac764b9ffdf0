"""
Rate-limit aware HTTP request dispatcher.

Every request goes through two gates before reaching the wire:
- The SequentialBucket for its route key (FIFO, one in flight per route)
- The process-wide TokenBucket enforcing the platform's global request cap

429 responses are absorbed and retried once capacity exists. 5xx responses and
network failures are retried with exponential backoff up to a ceiling. Other
4xx responses are surfaced immediately.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import aiohttp
import orjson

from chatwire.ratelimit.backoff import BackoffState, compute_backoff_delay
from chatwire.ratelimit.latency import LatencyTracker
from chatwire.ratelimit.sequential import SequentialBucket
from chatwire.ratelimit.token_bucket import TokenBucket
from chatwire.rest.errors import (
    HTTPError,
    NetworkError,
    RateLimitedError,
    RequestDescription,
    RESTError,
)
from chatwire.rest.routes import is_reaction_route, route_key
from chatwire.rest.types import DispatcherMetrics, FileAttachment, RestConfig

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

logger = logging.getLogger(__name__)

_QUERY_METHODS = frozenset({"GET", "DELETE"})


@dataclass
class _PendingRequest:
    """One logical request, across all of its attempts."""

    method: str
    path: str
    route: str
    future: asyncio.Future[Any]
    auth: bool = False
    body: Any = None
    files: Sequence[FileAttachment] | None = None
    reason: str | None = None
    attempts: int = 0
    ratelimit_retries: int = 0
    backoff: BackoffState = field(default_factory=BackoffState)

    def describe(self) -> RequestDescription:
        return RequestDescription(
            method=self.method, path=self.path, route=self.route, attempts=self.attempts
        )


@dataclass
class _RateLimitInfo:
    """What one response said about rate limits."""

    retry_after_ms: float | None
    is_global: bool


class RequestDispatcher:
    """
    Single entry point for REST calls.

    Route buckets are created lazily on first use and kept for the lifetime of
    the dispatcher; their number is bounded by the API surface, not by
    request volume.
    """

    def __init__(
        self,
        token: str | None = None,
        config: RestConfig | None = None,
        *,
        latency: LatencyTracker | None = None,
        time_fn: Callable[[], int] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """
        Initialize the dispatcher.

        Args:
            token: Authorization header value sent when ``auth=True``.
            config: REST configuration.
            latency: Shared latency reference; one is created if omitted.
            time_fn: Time provider for deterministic testing.
            rng: Seeded Random for deterministic retry jitter.
        """
        self._config = config or RestConfig()
        self._token = token
        self._time_fn = time_fn
        self._rng = rng
        self.latency = latency or LatencyTracker(
            offset_ms=self._config.ratelimiter_offset_ms,
            latency_threshold_ms=self._config.latency_threshold_ms,
            _time_fn=time_fn,
        )
        self.buckets: dict[str, SequentialBucket] = {}
        self.global_bucket = TokenBucket(
            self._config.global_requests_per_second,
            1000,
            latency=self._bucket_latency,
            name="global",
            time_fn=time_fn,
        )
        self._global_unblocked = asyncio.Event()
        self._global_unblocked.set()
        self._global_timer: asyncio.TimerHandle | None = None
        self._session: aiohttp.ClientSession | None = None
        self._metrics = DispatcherMetrics()
        self._closed = False

    @property
    def config(self) -> RestConfig:
        return self._config

    @property
    def _bucket_latency(self) -> LatencyTracker | None:
        if self._config.disable_latency_compensation:
            return None
        return self.latency

    @property
    def global_blocked(self) -> bool:
        """Whether a global rate limit is currently in effect."""
        return not self._global_unblocked.is_set()

    def _now_ms(self) -> int:
        return self.latency.now_ms()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._config.request_timeout_ms / 1000)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session and drop pending global tokens."""
        self._closed = True
        self.global_bucket.clear()
        if self._global_timer is not None:
            self._global_timer.cancel()
            self._global_timer = None
        self._global_unblocked.set()
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    def get_bucket(self, key: str) -> SequentialBucket:
        """Fetch or create the bucket for a route key."""
        bucket = self.buckets.get(key)
        if bucket is None:
            bucket = SequentialBucket(
                latency=self._bucket_latency,
                route=key,
                spacing_ms=self._config.bucket_spacing_ms,
                time_fn=self._time_fn,
            )
            self.buckets[key] = bucket
            self._metrics.bucket_count = len(self.buckets)
        return bucket

    async def request(
        self,
        method: str,
        path: str,
        *,
        auth: bool = False,
        body: Any = None,
        files: Sequence[FileAttachment] | None = None,
        reason: str | None = None,
        route: str | None = None,
        short: bool = False,
    ) -> Any:
        """
        Issue a rate-limit compliant request.

        Args:
            method: HTTP verb.
            path: Path relative to the API base, e.g. ``/channels/123``.
            auth: Send the Authorization header.
            body: JSON body; for GET and DELETE it becomes the query string.
            files: Files to upload as multipart parts.
            reason: Audit log reason.
            route: Explicit route key, bypassing derivation.
            short: Skip the bucket's inter-call spacing after this call.

        Returns:
            Parsed JSON body, text for non-JSON bodies, or None for 204.

        Raises:
            RESTError: 4xx response with a structured platform error.
            HTTPError: Other non-success response, or 5xx after retries.
            RateLimitedError: 429 retry ceiling exhausted (when configured).
            NetworkError: Transport failure or timeout after retries.
        """
        if self._closed:
            raise RuntimeError("RequestDispatcher is closed")

        verb = method.upper()
        key = route or route_key(
            verb, path, now_ms=self._now_ms(), latency_ms=self.latency.latency
        )
        pending = _PendingRequest(
            method=verb,
            path=path,
            route=key,
            future=asyncio.get_running_loop().create_future(),
            auth=auth,
            body=body,
            files=files,
            reason=reason,
        )
        bucket = self.get_bucket(key)
        bucket.queue(self._bucket_call(pending, bucket), short=short)
        return await pending.future

    def _bucket_call(
        self, pending: _PendingRequest, bucket: SequentialBucket
    ) -> Callable[[Callable[[], None]], Any]:
        def call(done: Callable[[], None]) -> Any:
            return self._attempt(pending, bucket, done)

        return call

    async def _attempt(
        self,
        pending: _PendingRequest,
        bucket: SequentialBucket,
        done: Callable[[], None],
    ) -> None:
        """Send one attempt, then resolve, retry or fail the request."""
        if pending.future.done():
            done()
            return

        try:
            await self._global_unblocked.wait()
            if not await self.global_bucket.acquire():
                self._fail(pending, NetworkError("Dispatcher closed", pending.describe()))
                done()
                return
            await self._send(pending, bucket, done)
        except Exception as e:
            self._fail(pending, e)
            done()

    def _build_request_kwargs(self, pending: _PendingRequest) -> dict[str, Any]:
        headers = {"User-Agent": self._config.user_agent, **self._config.headers}
        if pending.auth and self._token:
            headers["Authorization"] = self._token
        if pending.reason:
            headers["X-Audit-Log-Reason"] = quote(pending.reason, safe="")

        kwargs: dict[str, Any] = {}
        body = pending.body
        if body is not None and pending.method in _QUERY_METHODS:
            kwargs["params"] = {
                k: str(v).lower() if isinstance(v, bool) else str(v)
                for k, v in body.items()
                if v is not None
            }
        elif pending.files:
            form = aiohttp.FormData()
            if body is not None:
                form.add_field(
                    "payload_json", orjson.dumps(body).decode(), content_type="application/json"
                )
            for index, attachment in enumerate(pending.files):
                form.add_field(
                    f"files[{index}]",
                    attachment.data,
                    filename=attachment.name,
                    content_type=attachment.content_type,
                )
            kwargs["data"] = form
        elif body is not None:
            headers["Content-Type"] = "application/json"
            kwargs["data"] = orjson.dumps(body)

        kwargs["headers"] = headers
        return kwargs

    async def _send(
        self,
        pending: _PendingRequest,
        bucket: SequentialBucket,
        done: Callable[[], None],
    ) -> None:
        url = f"{self._config.base_url}{pending.path}"
        kwargs = self._build_request_kwargs(pending)
        pending.attempts += 1
        self._metrics.requests_sent += 1
        start_ms = self._now_ms()

        try:
            session = await self._get_session()
            async with session.request(pending.method, url, **kwargs) as response:
                status = response.status
                headers = {k.lower(): v for k, v in response.headers.items()}
                payload = await self._read_body(response)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            await self._retry_network_error(pending, bucket, done, e)
            return

        now_ms = self._now_ms()
        self.latency.record_round_trip(now_ms - start_ms)
        if self.latency.record_server_date(_parse_date_ms(headers.get("date"))):
            logger.warning(
                "Local clock is behind the API server; check system time",
                extra={"time_offset_ms": round(self.latency.time_offset, 2)},
            )

        info = self._apply_headers(pending, bucket, status, headers, payload, now_ms)
        logger.debug(
            "Request completed",
            extra={
                "method": pending.method,
                "route": pending.route,
                "status": status,
                "attempt": pending.attempts,
                "remaining": bucket.remaining,
                "latency_ms": now_ms - start_ms,
            },
        )

        if status < 300:
            self._metrics.responses_ok += 1
            if not pending.future.done():
                pending.future.set_result(payload)
            done()
            return

        if status == 429:
            await self._retry_ratelimited(pending, bucket, done, info, headers, payload)
            return

        if status >= 500:
            await self._retry_server_error(pending, bucket, done, status, headers, payload)
            return

        if status == 401:
            logger.warning("Request unauthorized; check the token", extra={"route": pending.route})
        self._fail(pending, _http_error(status, pending, headers, payload))
        done()

    @staticmethod
    async def _read_body(response: aiohttp.ClientResponse) -> Any:
        if response.status == 204:
            return None
        raw = await response.read()
        if not raw:
            return None
        if response.content_type == "application/json":
            return orjson.loads(raw)
        return raw.decode(response.charset or "utf-8", errors="replace")

    def _apply_headers(
        self,
        pending: _PendingRequest,
        bucket: SequentialBucket,
        status: int,
        headers: dict[str, str],
        payload: Any,
        now_ms: int,
    ) -> _RateLimitInfo:
        """Overwrite bucket state from the response; start a global block if signalled."""
        limit = _parse_int(headers.get("x-ratelimit-limit"))
        remaining = _parse_int(headers.get("x-ratelimit-remaining"))
        if remaining is None:
            remaining = 1
        bucket.update(
            limit=limit,
            remaining=max(remaining, 0),
            bucket_hash=headers.get("x-ratelimit-bucket"),
        )

        retry_after_ms = _parse_seconds_ms(
            headers.get("x-ratelimit-reset-after") or headers.get("retry-after")
        )
        if status == 429 and isinstance(payload, dict) and "retry_after" in payload:
            if retry_after_ms is None or headers.get("x-ratelimit-scope") == "shared":
                retry_after_ms = _parse_seconds_ms(payload.get("retry_after"))

        is_global = _truthy(headers.get("x-ratelimit-global")) or (
            status == 429 and isinstance(payload, dict) and bool(payload.get("global"))
        )

        if retry_after_ms is not None and is_global:
            self._block_global(retry_after_ms)
        elif retry_after_ms is not None:
            reset_at = now_ms + (retry_after_ms or 1)
            if is_reaction_route(pending.route):
                reset_at = max(reset_at, now_ms + self._config.reaction_reset_floor_ms)
            bucket.update(reset_at_ms=reset_at)
        elif "x-ratelimit-reset" in headers:
            reset_s = _parse_float(headers["x-ratelimit-reset"])
            if reset_s is not None:
                reset_at = max(self.latency.server_to_local_ms(reset_s * 1000), now_ms)
                if is_reaction_route(pending.route):
                    reset_at = max(reset_at, now_ms + self._config.reaction_reset_floor_ms)
                bucket.update(reset_at_ms=reset_at)
        else:
            bucket.update(reset_at_ms=now_ms)

        return _RateLimitInfo(retry_after_ms=retry_after_ms, is_global=is_global)

    def _block_global(self, retry_after_ms: float) -> None:
        """Pause every route until the global retry delay elapses."""
        if self._global_timer is not None:
            self._global_timer.cancel()
        self._global_unblocked.clear()
        self._metrics.global_blocked = True
        delay_s = max(retry_after_ms, 1) / 1000
        self._global_timer = asyncio.get_running_loop().call_later(delay_s, self._unblock_global)
        logger.warning("Global rate limit hit", extra={"retry_after_ms": retry_after_ms})

    def _unblock_global(self) -> None:
        self._global_timer = None
        self._metrics.global_blocked = False
        self._global_unblocked.set()

    async def _retry_ratelimited(
        self,
        pending: _PendingRequest,
        bucket: SequentialBucket,
        done: Callable[[], None],
        info: _RateLimitInfo,
        headers: dict[str, str],
        payload: Any,
    ) -> None:
        self._metrics.ratelimit_hits += 1
        if info.is_global:
            self._metrics.global_ratelimit_hits += 1
        pending.ratelimit_retries += 1
        retry_after_ms = info.retry_after_ms or 0.0

        logger.warning(
            "Rate limited",
            extra={
                "route": pending.route,
                "global": info.is_global,
                "retry_after_ms": retry_after_ms,
                "scope": headers.get("x-ratelimit-scope"),
                "retries": pending.ratelimit_retries,
            },
        )

        ceiling = self._config.max_ratelimit_retries
        if ceiling is not None and pending.ratelimit_retries > ceiling:
            self._fail(
                pending,
                RateLimitedError(
                    pending.describe(),
                    retry_after_ms=retry_after_ms,
                    is_global=info.is_global,
                    headers=headers,
                    body=payload,
                ),
            )
            done()
            return

        if not info.is_global and retry_after_ms > 0:
            await asyncio.sleep(retry_after_ms / 1000)
        self._requeue(pending, bucket, done)

    async def _retry_server_error(
        self,
        pending: _PendingRequest,
        bucket: SequentialBucket,
        done: Callable[[], None],
        status: int,
        headers: dict[str, str],
        payload: Any,
    ) -> None:
        pending.backoff.record_error(self._now_ms())
        backoff_config = self._config.retry_backoff
        if pending.backoff.exhausted(backoff_config):
            logger.error(
                "Server error, retries exhausted",
                extra={"route": pending.route, "status": status, "attempts": pending.attempts},
            )
            self._fail(pending, _http_error(status, pending, headers, payload))
            done()
            return

        delay_ms = compute_backoff_delay(backoff_config, pending.backoff, rng=self._rng)
        logger.warning(
            "Server error, retrying",
            extra={"route": pending.route, "status": status, "delay_ms": delay_ms},
        )
        await asyncio.sleep(delay_ms / 1000)
        self._requeue(pending, bucket, done)

    async def _retry_network_error(
        self,
        pending: _PendingRequest,
        bucket: SequentialBucket,
        done: Callable[[], None],
        error: Exception,
    ) -> None:
        pending.backoff.record_error(self._now_ms())
        backoff_config = self._config.retry_backoff
        message = str(error) or type(error).__name__
        if pending.backoff.exhausted(backoff_config):
            logger.error(
                "Request failed, retries exhausted",
                extra={"route": pending.route, "error": message, "attempts": pending.attempts},
            )
            surfaced = NetworkError(f"{message} on {pending.describe()}", pending.describe())
            surfaced.__cause__ = error
            self._fail(pending, surfaced)
            done()
            return

        delay_ms = compute_backoff_delay(backoff_config, pending.backoff, rng=self._rng)
        logger.warning(
            "Request failed, retrying",
            extra={"route": pending.route, "error": message, "delay_ms": delay_ms},
        )
        await asyncio.sleep(delay_ms / 1000)
        self._requeue(pending, bucket, done)

    def _requeue(
        self,
        pending: _PendingRequest,
        bucket: SequentialBucket,
        done: Callable[[], None],
    ) -> None:
        """Put the request back at the head of its bucket, then free the slot."""
        self._metrics.retries += 1
        bucket.requeue(self._bucket_call(pending, bucket))
        done()

    def _fail(self, pending: _PendingRequest, error: Exception) -> None:
        self._metrics.errors_surfaced += 1
        if not pending.future.done():
            pending.future.set_exception(error)

    def get_metrics(self) -> DispatcherMetrics:
        """Get current dispatcher metrics snapshot."""
        return DispatcherMetrics(
            requests_sent=self._metrics.requests_sent,
            responses_ok=self._metrics.responses_ok,
            ratelimit_hits=self._metrics.ratelimit_hits,
            global_ratelimit_hits=self._metrics.global_ratelimit_hits,
            retries=self._metrics.retries,
            errors_surfaced=self._metrics.errors_surfaced,
            bucket_count=len(self.buckets),
            global_blocked=self.global_blocked,
            latency_ms=round(self.latency.latency, 2),
        )


def _http_error(
    status: int, pending: _PendingRequest, headers: dict[str, str], payload: Any
) -> HTTPError:
    if isinstance(payload, dict) and "code" in payload:
        return RESTError(status, pending.describe(), headers=headers, body=payload)
    return HTTPError(status, pending.describe(), headers=headers, body=payload)


def _parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(float(value))
    except ValueError:
        return None


def _parse_float(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _parse_seconds_ms(value: Any) -> float | None:
    """Seconds (header string or body number) to milliseconds."""
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if seconds < 0:
        return None
    return seconds * 1000


def _parse_date_ms(value: str | None) -> int | None:
    if not value:
        return None
    try:
        return int(parsedate_to_datetime(value).timestamp() * 1000)
    except (TypeError, ValueError):
        return None


def _truthy(value: str | None) -> bool:
    return value is not None and value.lower() in ("true", "1")
