"""
Poster source contract and the shared execution wrapper.

The fallback chain only depends on the PosterSource protocol. GuardedSource
implements it around any PosterLookup, adding availability checks, circuit
breaking, rate limiting, a hard timeout and metrics. HttpLookup is a helper
base for JSON-over-HTTP lookups.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Callable, Protocol, runtime_checkable

import httpx
from loguru import logger

from posterchain.services.circuit_breaker import CircuitBreaker, CircuitState
from posterchain.services.errors import (
    AuthenticationError,
    CircuitOpenError,
    NotFoundError,
    RateLimitError,
    RequestTimeoutError,
    SourceError,
    SourceUnavailableError,
    TransportError,
)
from posterchain.services.metrics import MetricsRecorder, SourceMetrics
from posterchain.services.rate_limiter import SlidingWindowRateLimiter
from posterchain.settings import CircuitBreakerConfig, RateLimitConfig, SourceConfig


@runtime_checkable
class PosterSource(Protocol):
    """Capabilities every poster source exposes to the fallback chain."""

    name: str
    priority: int

    @property
    def enabled(self) -> bool: ...

    async def fetch(self, item_id: str, item_name: str) -> str | None:
        """Poster URL, None when the source has nothing. Raises SourceError."""
        ...

    async def health_check(self) -> bool: ...

    def get_metrics(self) -> SourceMetrics: ...

    def reset_metrics(self) -> None: ...

    def set_enabled(self, enabled: bool) -> None: ...

    def is_available(self) -> bool: ...

    async def close(self) -> None: ...


class PosterLookup(Protocol):
    """The transport-specific part of a source."""

    async def lookup(self, item_id: str, item_name: str) -> str | None: ...

    async def ping(self) -> bool: ...


class GuardedSource:
    """
    A PosterSource running a PosterLookup behind resilience controls.

    Order of an attempt:
    1. availability pre-check (disabled / circuit open → SourceUnavailableError)
    2. circuit breaker admission (a single probe while half-open)
    3. rate limiter wait, outside the timeout window
    4. lookup raced against the timeout; a late lookup is cancelled
    5. outcome recorded in metrics and circuit breaker
    """

    HEALTH_CHECK_TIMEOUT = 5.0

    def __init__(
        self,
        name: str,
        lookup: PosterLookup,
        priority: int = 50,
        enabled: bool = True,
        timeout: timedelta = timedelta(seconds=3),
        rate_limit: RateLimitConfig | None = None,
        circuit_breaker: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.priority = priority
        self.lookup = lookup
        self.timeout = timeout.total_seconds()
        self._enabled = enabled

        self.circuit_breaker = CircuitBreaker(name, circuit_breaker, clock=clock)
        self.rate_limiter = (
            SlidingWindowRateLimiter(name, rate_limit, clock=clock)
            if rate_limit
            else None
        )
        self.metrics = MetricsRecorder()

    @classmethod
    def from_config(
        cls,
        name: str,
        lookup: PosterLookup,
        config: SourceConfig,
        circuit_breaker: CircuitBreakerConfig | None = None,
    ) -> "GuardedSource":
        return cls(
            name,
            lookup,
            priority=config.priority,
            enabled=config.enabled,
            timeout=config.timeout,
            rate_limit=config.rate_limit,
            circuit_breaker=config.circuit_breaker or circuit_breaker,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def temporarily_disabled(self) -> bool:
        return self.circuit_breaker.is_open

    def is_available(self) -> bool:
        return self._enabled and not self.temporarily_disabled

    def set_enabled(self, enabled: bool) -> None:
        """Enable or disable the source. Re-enabling also closes its circuit."""
        self._enabled = enabled
        if enabled and self.circuit_breaker.state != CircuitState.CLOSED:
            self.circuit_breaker.force_close()

    def apply_config(self, config: SourceConfig) -> None:
        self.set_enabled(config.enabled)
        self.priority = config.priority
        self.timeout = config.timeout.total_seconds()

    async def fetch(self, item_id: str, item_name: str) -> str | None:
        if not self._enabled:
            raise SourceUnavailableError(self.name, "disabled")
        if not self.circuit_breaker.allow_request():
            raise CircuitOpenError(
                self.name, self.circuit_breaker.get_time_until_reset() or 0.0
            )

        try:
            if self.rate_limiter:
                await self.rate_limiter.acquire()
        except asyncio.CancelledError:
            self.circuit_breaker.release_probe()
            raise

        started = time.perf_counter()
        try:
            url = await asyncio.wait_for(
                self.lookup.lookup(item_id, item_name), timeout=self.timeout
            )
        except asyncio.CancelledError:
            self.circuit_breaker.release_probe()
            raise
        except asyncio.TimeoutError as e:
            error = RequestTimeoutError(self.name, self.timeout)
            self._record_failure(error, started)
            raise error from e
        except NotFoundError:
            url = None
        except SourceError as e:
            e.source_name = e.source_name or self.name
            if not e.counts_as_failure:
                self.circuit_breaker.release_probe()
                raise
            self._handle_source_error(e)
            self._record_failure(e, started)
            raise
        except Exception as e:
            error = TransportError(f"{type(e).__name__}: {e}", source_name=self.name)
            self._record_failure(error, started)
            raise error from e

        self.metrics.record_success(self._elapsed_ms(started))
        self.circuit_breaker.record_success()
        return url or None

    def _handle_source_error(self, error: SourceError) -> None:
        if isinstance(error, RateLimitError) and error.retry_after and self.rate_limiter:
            self.rate_limiter.throttle(error.retry_after)
        elif isinstance(error, AuthenticationError):
            self._enabled = False
            logger.error(f"Source '{self.name}' disabled after authentication failure")

    def _record_failure(self, error: SourceError, started: float) -> None:
        self.metrics.record_failure(error, self._elapsed_ms(started))
        self.circuit_breaker.record_failure()

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return (time.perf_counter() - started) * 1000

    async def health_check(self) -> bool:
        timeout = max(self.timeout, self.HEALTH_CHECK_TIMEOUT)
        try:
            return await asyncio.wait_for(self.lookup.ping(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError(self.name, timeout) from e

    def get_metrics(self) -> SourceMetrics:
        return self.metrics.snapshot(
            consecutive_failures=self.circuit_breaker.failure_count,
            temporarily_disabled=self.temporarily_disabled,
        )

    def reset_metrics(self) -> None:
        """Reset counters and the failure streak. An open circuit stays open."""
        self.metrics.reset()
        self.circuit_breaker.reset_failures()

    def get_status(self) -> dict[str, Any]:
        """Circuit breaker and rate limiter state."""
        return {
            "circuit_breaker": self.circuit_breaker.get_status(),
            "rate_limit": self.rate_limiter.get_status() if self.rate_limiter else None,
            "timeout_seconds": self.timeout,
        }

    async def close(self) -> None:
        close = getattr(self.lookup, "close", None)
        if close is not None:
            await close()


class HttpLookup(ABC):
    """
    Base class for JSON API lookups.

    Translates httpx failures into SourceError subclasses:
    - 404 → None (nothing found)
    - 401/403 → AuthenticationError
    - 429 → RateLimitError
    - other status / network errors → TransportError
    - timeouts → RequestTimeoutError
    """

    USER_AGENT = "posterchain/1.0"

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client
        self._owns_client = client is None

    @property
    @abstractmethod
    def source_name(self) -> str:
        """Unique identifier for this source."""
        ...

    @abstractmethod
    async def lookup(self, item_id: str, item_name: str) -> str | None:
        """Find the poster URL of an item."""
        ...

    @abstractmethod
    async def ping(self) -> bool:
        """Check that the upstream API answers."""
        ...

    def is_configured(self) -> bool:
        """Check if the source is properly configured."""
        return True

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
            self._owns_client = True
        return self._client

    async def _get_json(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any] | None:
        """GET a JSON document. Returns None on 404."""
        req_headers = {"Accept": "application/json", "User-Agent": self.USER_AGENT}
        if headers:
            req_headers.update(headers)

        try:
            response = await self._get_client().get(
                url, params=params, headers=req_headers
            )
        except httpx.TimeoutException as e:
            timeout = self._get_client().timeout.read or 0.0
            raise RequestTimeoutError(self.source_name, timeout) from e
        except httpx.RequestError as e:
            raise TransportError(
                f"Network error: {e}", source_name=self.source_name
            ) from e

        if response.status_code == 404:
            return None
        self._raise_for_status(response)

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(
                f"Invalid JSON payload: {e}", source_name=self.source_name
            ) from e

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.is_success:
            return

        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError(
                f"HTTP {status}: credentials rejected", source_name=self.source_name
            )
        if status == 429:
            raise RateLimitError(self.source_name, self._parse_retry_after(response))
        raise TransportError(
            f"HTTP {status}: {response.text[:200]}", source_name=self.source_name
        )

    @staticmethod
    def _parse_retry_after(response: httpx.Response) -> float | None:
        header = response.headers.get("Retry-After")
        if header:
            try:
                return float(header)
            except ValueError:
                pass
        try:
            retry_after = response.json().get("retry_after")
        except (ValueError, AttributeError):
            return None
        try:
            return float(retry_after) if retry_after is not None else None
        except (TypeError, ValueError):
            return None

    async def close(self) -> None:
        """Close the HTTP client if this lookup created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
