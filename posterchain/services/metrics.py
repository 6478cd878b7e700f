"""
Metrics for poster resolution.

- MetricsRecorder: owned by one source, fed by its own request completions
- MetricsCollector: global counters owned by PosterManager

The two scopes are independent and reset independently.
"""

import time
from collections import deque
from typing import Any, Callable

from pydantic import BaseModel, Field


class SourceMetrics(BaseModel):
    """Snapshot of a source's request metrics."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    consecutive_failures: int = 0
    average_response_time_ms: float = 0.0
    last_error: str | None = None
    last_success_at: float | None = None
    temporarily_disabled: bool = False


class MetricsRecorder:
    """Request counters and rolling response time of a single source."""

    WINDOW = 100

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self.reset()

    def reset(self) -> None:
        self.total_requests = 0
        self.successful_requests = 0
        self.failed_requests = 0
        self.last_error: str | None = None
        self.last_success_at: float | None = None
        self._response_times: deque[float] = deque(maxlen=self.WINDOW)

    def record_success(self, response_time_ms: float) -> None:
        self.total_requests += 1
        self.successful_requests += 1
        self.last_success_at = self._clock()
        self._response_times.append(response_time_ms)

    def record_failure(self, error: Exception, response_time_ms: float = 0.0) -> None:
        self.total_requests += 1
        self.failed_requests += 1
        self.last_error = str(error)
        if response_time_ms > 0:
            self._response_times.append(response_time_ms)

    @property
    def average_response_time_ms(self) -> float:
        if not self._response_times:
            return 0.0
        return sum(self._response_times) / len(self._response_times)

    def snapshot(
        self,
        consecutive_failures: int = 0,
        temporarily_disabled: bool = False,
    ) -> SourceMetrics:
        """The failure streak is owned by the circuit breaker and passed in."""
        return SourceMetrics(
            total_requests=self.total_requests,
            successful_requests=self.successful_requests,
            failed_requests=self.failed_requests,
            consecutive_failures=consecutive_failures,
            average_response_time_ms=self.average_response_time_ms,
            last_error=self.last_error,
            last_success_at=self.last_success_at,
            temporarily_disabled=temporarily_disabled,
        )


class SourceUsage(BaseModel):
    success: int = 0
    failure: int = 0


class GlobalMetrics(BaseModel):
    """Aggregate counters of the whole system."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    average_response_time_ms: float = 0.0
    source_usage: dict[str, SourceUsage] = Field(default_factory=dict)
    error_types: dict[str, int] = Field(default_factory=dict)
    started_at: float = 0.0


class MetricsCollector:
    """
    Global metrics, tagged by source name and error kind.

    Usage:
        metrics = MetricsCollector()
        metrics.record_cache_miss()
        metrics.record_success("kitsu", elapsed_ms)
        metrics.get_stats()
    """

    WINDOW = 1000

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self.reset()

    def reset(self) -> None:
        """Zero every counter."""
        self._metrics = GlobalMetrics(started_at=self._clock())
        self._response_times: deque[float] = deque(maxlen=self.WINDOW)

    def record_cache_hit(self) -> None:
        self._metrics.cache_hits += 1

    def record_cache_miss(self) -> None:
        self._metrics.cache_misses += 1

    def _usage(self, source: str) -> SourceUsage:
        if source not in self._metrics.source_usage:
            self._metrics.source_usage[source] = SourceUsage()
        return self._metrics.source_usage[source]

    def record_success(self, source: str, response_time_ms: float = 0.0) -> None:
        """Record a resolution answered by `source`."""
        self._metrics.total_requests += 1
        self._metrics.successful_requests += 1
        self._usage(source).success += 1

        if response_time_ms > 0:
            self._response_times.append(response_time_ms)
            self._metrics.average_response_time_ms = sum(self._response_times) / len(
                self._response_times
            )

    def record_failure(self, error_type: str, source: str | None = None) -> None:
        """Record a resolution that produced no poster."""
        self._metrics.total_requests += 1
        self._metrics.failed_requests += 1
        self._metrics.error_types[error_type] = (
            self._metrics.error_types.get(error_type, 0) + 1
        )
        if source:
            self._usage(source).failure += 1

    def record_source_failure(self, source: str, error_kind: str) -> None:
        """Tally a failed source attempt without counting a resolution."""
        self._usage(source).failure += 1
        self._metrics.error_types[error_kind] = (
            self._metrics.error_types.get(error_kind, 0) + 1
        )

    def record_error(self, error: Exception) -> None:
        """Record an unexpected internal error."""
        self.record_failure(type(error).__name__)

    def get_stats(self) -> dict[str, Any]:
        """Get all metrics. Pure read: repeated calls return identical values."""
        m = self._metrics
        total_cache = m.cache_hits + m.cache_misses
        return {
            **m.model_dump(),
            "success_rate": (
                m.successful_requests / m.total_requests if m.total_requests else 0.0
            ),
            "cache_hit_rate": m.cache_hits / total_cache if total_cache else 0.0,
        }

    def get_source_stats(self) -> dict[str, dict[str, Any]]:
        stats = {}
        for source, usage in self._metrics.source_usage.items():
            total = usage.success + usage.failure
            stats[source] = {
                **usage.model_dump(),
                "total": total,
                "success_rate": usage.success / total if total else 0.0,
            }
        return stats

    def get_error_stats(self) -> dict[str, dict[str, Any]]:
        total_errors = sum(self._metrics.error_types.values())
        return {
            error_type: {
                "count": count,
                "percentage": (count / total_errors) * 100 if total_errors else 0.0,
            }
            for error_type, count in self._metrics.error_types.items()
        }
