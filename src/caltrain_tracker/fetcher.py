"""HTTP fetch layer with per-endpoint rate limiting, response caching and retry."""

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from urllib.parse import parse_qs, urlparse, urlunparse

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from caltrain_tracker import __version__
from caltrain_tracker.config import resolve_auth
from caltrain_tracker.errors import (
    ConfigurationError,
    NetworkError,
    NonRetryableError,
    RateLimited,
)
from caltrain_tracker.logging import get_logger
from caltrain_tracker.metrics import (
    record_cache_hit,
    record_fetch_attempt,
    record_fetch_error,
    record_fetch_success,
    record_rate_limit_wait,
)
from caltrain_tracker.models import AuthType, EndpointConfig

logger = get_logger(__name__)

type Clock = Callable[[], float]
type Sleep = Callable[[float], Awaitable[None]]
type CacheKey = tuple[str, tuple[tuple[str, str], ...]]


@dataclass
class FetchResult:
    """Result of a successful fetch."""

    content: bytes
    headers: dict[str, str]
    status_code: int
    fetch_timestamp: datetime
    duration_ms: float
    content_length: int
    from_cache: bool = False

    @property
    def content_type(self) -> str | None:
        """Get the content-type header if present."""
        return self.headers.get("content-type")

    @property
    def etag(self) -> str | None:
        """Get the etag header if present."""
        return self.headers.get("etag")

    @property
    def last_modified(self) -> str | None:
        """Get the last-modified header if present."""
        return self.headers.get("last-modified")


# HTTP status codes that should not be retried
NON_RETRYABLE_STATUS_CODES = {
    400,  # Bad request (our fault)
    401,  # Unauthorized (config issue)
    403,  # Forbidden (config issue)
    404,  # Not found (URL changed)
    410,  # Gone (feed discontinued)
}

# Server-side throttling, handled by the rate-limit retry loop
TOO_MANY_REQUESTS = 429


class _SlotUnavailable(Exception):
    """The endpoint's rate-limit window is full (locally or per the server)."""


def _is_retryable(exc: BaseException) -> bool:
    """Transport failures, timeouts, 5xx and 408 are worth retrying."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status == 408
    return isinstance(exc, (httpx.TransportError, httpx.TimeoutException))


class RateLimitWindow:
    """Request timestamps for one endpoint over a trailing window.

    Timestamps are appended in non-decreasing order, so the oldest entry is
    always at the left of the deque and purging or evicting it is O(1).
    """

    def __init__(self, max_requests: int, window_seconds: float) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._timestamps: deque[float] = deque()

    def __len__(self) -> int:
        return len(self._timestamps)

    @property
    def oldest(self) -> float | None:
        return self._timestamps[0] if self._timestamps else None

    def purge(self, now: float) -> int:
        """Drop entries that have left the window. Returns how many were dropped."""
        dropped = 0
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()
            dropped += 1
        return dropped

    def record(self, now: float) -> int:
        """Record a request at ``now``. Returns how many old entries were evicted (0 or 1)."""
        self._timestamps.append(now)
        if len(self._timestamps) > self.max_requests:
            self._timestamps.popleft()
            return 1
        return 0

    def try_acquire(self, now: float) -> bool:
        """Take a slot if the window has room, recording the request."""
        self.purge(now)
        if len(self._timestamps) >= self.max_requests:
            return False
        self.record(now)
        return True

    def retry_after(self, now: float) -> float:
        """Seconds until the oldest entry leaves the window (0 when a slot is free)."""
        if len(self._timestamps) < self.max_requests or self.oldest is None:
            return 0.0
        return max(0.0, self.window_seconds - (now - self.oldest))


@dataclass
class CacheEntry:
    """A cached response for one (endpoint, params) key."""

    result: FetchResult
    fetched_at: float
    ttl_seconds: float

    def is_fresh(self, now: float) -> bool:
        return now - self.fetched_at < self.ttl_seconds


class ResponseCache:
    """Bounded TTL cache; the oldest inserted entry is evicted first."""

    def __init__(self, max_entries: int = 256) -> None:
        self.max_entries = max_entries
        # dicts preserve insertion order, so the first key is the oldest
        self._entries: dict[CacheKey, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: CacheKey, now: float) -> FetchResult | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_fresh(now):
            del self._entries[key]
            return None
        return entry.result

    def put(self, key: CacheKey, result: FetchResult, now: float, ttl_seconds: float) -> None:
        # Re-inserting moves an overwritten key to the newest position
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(result=result, fetched_at=now, ttl_seconds=ttl_seconds)
        if len(self._entries) > self.max_entries:
            del self._entries[next(iter(self._entries))]


def make_cache_key(endpoint_key: str, params: Mapping[str, str] | None) -> CacheKey:
    """Build the cache key for an endpoint and caller-supplied params."""
    return endpoint_key, tuple(sorted((params or {}).items()))


def create_retrying(endpoint: EndpointConfig, sleep: Sleep = asyncio.sleep) -> AsyncRetrying:
    """Create a tenacity AsyncRetrying for transport failures of an endpoint.

    Args:
        endpoint: Endpoint configuration with retry settings.
        sleep: Coroutine used to wait between attempts.

    Returns:
        An AsyncRetrying instance for use in async for loops.
    """
    return AsyncRetrying(
        stop=stop_after_attempt(endpoint.retry.max_attempts),
        wait=wait_exponential(
            multiplier=endpoint.retry.backoff_base,
            max=endpoint.retry.backoff_max,
        ),
        retry=retry_if_exception(_is_retryable),
        sleep=sleep,
        reraise=True,
    )


def create_rate_limit_retrying(endpoint: EndpointConfig, sleep: Sleep = asyncio.sleep) -> AsyncRetrying:
    """Create a tenacity AsyncRetrying that silently waits for a free rate-limit slot."""
    return AsyncRetrying(
        stop=stop_after_attempt(endpoint.rate_limit.max_attempts),
        wait=wait_exponential(
            multiplier=endpoint.rate_limit.backoff_base,
            max=endpoint.rate_limit.backoff_max,
        ),
        retry=retry_if_exception_type(_SlotUnavailable),
        sleep=sleep,
        reraise=True,
    )


def build_request(
    endpoint: EndpointConfig,
    params: Mapping[str, str] | None,
    auth_value: str | None,
) -> tuple[str, dict[str, str], dict[str, str] | None]:
    """Build the URL, query parameters and headers for an endpoint request.

    Query parameters are merged in increasing precedence: those embedded in
    the configured URL, the endpoint's static ``params``, the caller's
    ``params``, then a query-type auth value.
    """
    parsed_url = urlparse(str(endpoint.url))
    merged: dict[str, str] = {}

    # Convert parse_qs result (dict[str, list[str]]) to dict[str, str]
    if parsed_url.query:
        merged.update({k: v[0] for k, v in parse_qs(parsed_url.query).items()})
    merged.update(endpoint.params)
    if params:
        merged.update(params)

    headers: dict[str, str] | None = None
    if endpoint.auth is not None and auth_value is not None:
        if endpoint.auth.type == AuthType.HEADER:
            headers = {endpoint.auth.key: auth_value}
        elif endpoint.auth.type == AuthType.QUERY:
            merged[endpoint.auth.key] = auth_value

    # httpx rebuilds the query string from params
    clean_url = urlunparse((
        parsed_url.scheme,
        parsed_url.netloc,
        parsed_url.path,
        parsed_url.params,
        "",
        parsed_url.fragment,
    ))
    return clean_url, merged, headers


class FetchClient:
    """Outbound request executor shared by every network-facing service.

    One instance is created per process and passed explicitly to the
    services that need it. It owns the per-endpoint rate-limit windows and
    the response cache.

    Args:
        endpoints: Flattened endpoint configurations keyed by endpoint key.
        http_client: Async HTTP client used for requests.
        clock: Monotonic clock in seconds (injectable for tests).
        sleep: Coroutine used for all backoff waits (injectable for tests).
        max_cache_entries: Upper bound on cached responses.
    """

    def __init__(
        self,
        endpoints: Mapping[str, EndpointConfig],
        http_client: httpx.AsyncClient,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        max_cache_entries: int = 256,
    ) -> None:
        self.endpoints = dict(endpoints)
        self._http = http_client
        self._clock = clock
        self._sleep = sleep
        self._cache = ResponseCache(max_cache_entries)
        self._windows: dict[str, RateLimitWindow] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def endpoint(self, endpoint_key: str) -> EndpointConfig:
        """Return the configuration for an endpoint key."""
        try:
            return self.endpoints[endpoint_key]
        except KeyError:
            raise ConfigurationError(f"Unknown endpoint '{endpoint_key}'") from None

    def window(self, endpoint_key: str) -> RateLimitWindow:
        """Return (creating on first use) the rate-limit window of an endpoint."""
        window = self._windows.get(endpoint_key)
        if window is None:
            limit = self.endpoint(endpoint_key).rate_limit
            window = RateLimitWindow(limit.max_requests, limit.window_seconds)
            self._windows[endpoint_key] = window
        return window

    async def fetch(
        self,
        endpoint_key: str,
        params: Mapping[str, str] | None = None,
    ) -> FetchResult:
        """Fetch an endpoint, serving a fresh cached response when available.

        Args:
            endpoint_key: Configured endpoint key (also the rate-limit bucket).
            params: Caller query parameters (also part of the cache key).

        Returns:
            FetchResult; ``from_cache`` is True when no request was made.

        Raises:
            ConfigurationError: Unknown endpoint or unresolvable auth secret.
            NonRetryableError: The server answered 400/401/403/404/410.
            RateLimited: No rate-limit slot became free within the retry budget.
            NetworkError: Transport, timeout or HTTP failure after retries.
        """
        endpoint = self.endpoint(endpoint_key)
        cache_key = make_cache_key(endpoint_key, params)

        if endpoint.cache_ttl_seconds > 0:
            cached = self._cache.get(cache_key, self._clock())
            if cached is not None:
                record_cache_hit(endpoint_key)
                logger.debug("cache_hit", endpoint=endpoint_key)
                return replace(cached, from_cache=True)

        auth_value = resolve_auth(endpoint.auth) if endpoint.auth is not None else None

        try:
            result = await self._fetch_with_retry(endpoint, params, auth_value)
        except NonRetryableError:
            record_fetch_error(endpoint_key, "non_retryable")
            raise
        except RateLimited:
            record_fetch_error(endpoint_key, "rate_limited")
            raise
        except httpx.TimeoutException as e:
            record_fetch_error(endpoint_key, "timeout")
            logger.warning("fetch_failed", endpoint=endpoint_key, error_type="timeout", error=str(e))
            raise NetworkError(endpoint_key, e) from e
        except httpx.HTTPStatusError as e:
            record_fetch_error(endpoint_key, f"http_{e.response.status_code}")
            logger.warning(
                "fetch_failed",
                endpoint=endpoint_key,
                error_type="http",
                status_code=e.response.status_code,
            )
            raise NetworkError(endpoint_key, e) from e
        except httpx.HTTPError as e:
            record_fetch_error(endpoint_key, "transport")
            logger.warning("fetch_failed", endpoint=endpoint_key, error_type="transport", error=str(e))
            raise NetworkError(endpoint_key, e) from e

        if endpoint.cache_ttl_seconds > 0:
            self._cache.put(cache_key, result, self._clock(), endpoint.cache_ttl_seconds)
        return result

    async def _fetch_with_retry(
        self,
        endpoint: EndpointConfig,
        params: Mapping[str, str] | None,
        auth_value: str | None,
    ) -> FetchResult:
        """Retry transport failures; each attempt takes its own rate-limit slot."""
        retrying = create_retrying(endpoint, self._sleep)

        async for attempt in retrying:
            with attempt:
                return await self._fetch_within_rate_limit(endpoint, params, auth_value)

        # This should never be reached due to reraise=True
        raise RuntimeError("Retry loop exited without returning or raising")

    async def _fetch_within_rate_limit(
        self,
        endpoint: EndpointConfig,
        params: Mapping[str, str] | None,
        auth_value: str | None,
    ) -> FetchResult:
        """Wait silently for a rate-limit slot, then issue a single request."""
        retrying = create_rate_limit_retrying(endpoint, self._sleep)

        try:
            async for attempt in retrying:
                with attempt:
                    await self._acquire_slot(endpoint.key)
                    return await self._do_fetch(endpoint, params, auth_value)
        except _SlotUnavailable as e:
            raise RateLimited(endpoint.key, endpoint.rate_limit.max_attempts) from e

        raise RuntimeError("Retry loop exited without returning or raising")

    async def _acquire_slot(self, endpoint_key: str) -> None:
        """Atomically check and record a request in the endpoint's window.

        Raises:
            _SlotUnavailable: If the window is full.
        """
        lock = self._locks.setdefault(endpoint_key, asyncio.Lock())
        async with lock:
            window = self.window(endpoint_key)
            now = self._clock()
            if not window.try_acquire(now):
                record_rate_limit_wait(endpoint_key)
                logger.debug(
                    "rate_limit_wait",
                    endpoint=endpoint_key,
                    retry_after=round(window.retry_after(now), 3),
                )
                raise _SlotUnavailable(endpoint_key)

    async def _do_fetch(
        self,
        endpoint: EndpointConfig,
        params: Mapping[str, str] | None,
        auth_value: str | None,
    ) -> FetchResult:
        """Perform the actual HTTP fetch (single attempt).

        Raises:
            NonRetryableError: For client errors that should not be retried.
            _SlotUnavailable: When the server answers 429.
            httpx.HTTPStatusError: For other error statuses.
            httpx.TransportError: For network errors.
            httpx.TimeoutException: For timeout errors.
        """
        url, query, headers = build_request(endpoint, params, auth_value)
        fetch_start = datetime.now(UTC)
        started = time.perf_counter()
        record_fetch_attempt(endpoint.key)

        response = await self._http.get(
            url,
            params=query if query else None,
            headers=headers,
            timeout=endpoint.timeout_seconds,
        )

        duration_ms = (time.perf_counter() - started) * 1000

        if response.status_code in NON_RETRYABLE_STATUS_CODES:
            raise NonRetryableError(
                endpoint.key,
                response.status_code,
                f"Non-retryable error for endpoint {endpoint.key}",
            )
        if response.status_code == TOO_MANY_REQUESTS:
            logger.info("server_rate_limited", endpoint=endpoint.key)
            raise _SlotUnavailable(endpoint.key)

        # 5xx and 408 will be retried
        response.raise_for_status()

        record_fetch_success(endpoint.key, duration_ms / 1000)
        logger.debug(
            "fetch_succeeded",
            endpoint=endpoint.key,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 1),
            content_length=len(response.content),
        )

        return FetchResult(
            content=response.content,
            headers=dict(response.headers),
            status_code=response.status_code,
            fetch_timestamp=fetch_start,
            duration_ms=duration_ms,
            content_length=len(response.content),
        )


def create_http_client(max_connections: int = 20) -> httpx.AsyncClient:
    """Create an async HTTP client with connection pooling.

    Args:
        max_connections: Maximum number of concurrent connections.

    Returns:
        Configured httpx.AsyncClient instance.
    """
    limits = httpx.Limits(
        max_connections=max_connections,
        max_keepalive_connections=max_connections // 2,
    )

    return httpx.AsyncClient(
        limits=limits,
        follow_redirects=True,
        headers={
            "Accept": "application/json",
            "User-Agent": f"caltrain-tracker/{__version__}",
        },
    )
