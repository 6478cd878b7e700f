"""Sliding window rate limiting for outbound source requests."""

import asyncio
import time
from collections import deque
from typing import Any, Callable

from loguru import logger

from posterchain.settings import RateLimitConfig


class SlidingWindowRateLimiter:
    """
    Per-source sliding window limiter.

    Keeps the timestamps of the last `requests` attempts. When the window is
    full, acquire() sleeps until the oldest timestamp leaves the window (plus a
    small safety margin) instead of rejecting the request.
    """

    def __init__(
        self,
        source_name: str,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        config = config or RateLimitConfig()
        self.source_name = source_name
        self.max_requests = config.requests
        self.window_seconds = config.window.total_seconds()
        self.safety_margin = config.safety_margin.total_seconds()
        self._clock = clock
        self._timestamps: deque[float] = deque()
        self._lock = asyncio.Lock()

        # Temporary reduction after an upstream 429
        self._throttled_limit: int | None = None
        self._throttled_until = 0.0

    def _prune(self, now: float) -> None:
        window_start = now - self.window_seconds
        while self._timestamps and self._timestamps[0] <= window_start:
            self._timestamps.popleft()

    def _effective_limit(self, now: float) -> int:
        if self._throttled_limit is not None:
            if now < self._throttled_until:
                return self._throttled_limit
            logger.info(
                f"Rate limit for '{self.source_name}' restored: "
                f"{self.max_requests} req/{self.window_seconds:.0f}s"
            )
            self._throttled_limit = None
        return self.max_requests

    async def acquire(self) -> float:
        """
        Wait for a free slot and record the attempt.

        Returns:
            Seconds spent waiting
        """
        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                self._prune(now)
                if len(self._timestamps) < self._effective_limit(now):
                    self._timestamps.append(now)
                    return waited

                # Oldest timestamps beyond the current limit must leave first
                excess = len(self._timestamps) - self._effective_limit(now)
                oldest = self._timestamps[excess]
                delay = max(oldest + self.window_seconds - now, 0.0) + self.safety_margin
                logger.debug(
                    f"Rate limit reached for '{self.source_name}', waiting {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                waited += delay

    def remaining(self) -> int:
        """Number of attempts still allowed in the current window."""
        now = self._clock()
        self._prune(now)
        return max(0, self._effective_limit(now) - len(self._timestamps))

    def throttle(self, retry_after: float, factor: float = 0.5) -> None:
        """
        Temporarily shrink the allowance after the upstream asked us to slow down.

        The original limit comes back lazily once `retry_after` plus 5 seconds
        have elapsed.
        """
        now = self._clock()
        reduced = max(1, int(self.max_requests * factor))
        self._throttled_limit = reduced
        self._throttled_until = now + retry_after + 5.0
        logger.warning(
            f"Rate limit for '{self.source_name}' reduced: "
            f"{self.max_requests} → {reduced} req/{self.window_seconds:.0f}s"
        )

    def reset(self) -> None:
        """Forget all recorded attempts and any throttling."""
        self._timestamps.clear()
        self._throttled_limit = None
        self._throttled_until = 0.0

    def get_status(self) -> dict[str, Any]:
        return {
            "limit": self.max_requests,
            "window_seconds": self.window_seconds,
            "throttled_limit": self._throttled_limit,
            "in_window": len(self._timestamps),
        }
