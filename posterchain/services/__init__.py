"""
Service layer - resilience and orchestration for poster resolution.

Provides:
- PosterCache: TTL + LRU cache with optional JSON persistence
- CircuitBreaker: Stops calling a failing source for a cooldown
- SlidingWindowRateLimiter: Per-source request budget
- RequestDeduplicator: Collapses concurrent requests for the same key
- FallbackChain: Priority-ordered attempts across sources
- MetricsCollector: Global counters and response times
- PosterManager: Public entry point combining all of the above
"""

from posterchain.services.errors import (
    AuthenticationError,
    CacheError,
    CircuitOpenError,
    ErrorKind,
    NotFoundError,
    RateLimitError,
    RequestTimeoutError,
    SourceError,
    SourceUnavailableError,
    TransportError,
)
from posterchain.services.cache import CacheEntry, CacheStats, PosterCache
from posterchain.services.circuit_breaker import CircuitBreaker, CircuitState
from posterchain.services.rate_limiter import SlidingWindowRateLimiter
from posterchain.services.deduplicator import DeduplicatorStats, RequestDeduplicator
from posterchain.services.metrics import MetricsCollector, MetricsRecorder, SourceMetrics
from posterchain.services.fallback_chain import (
    ALL_SOURCES_FAILED,
    NO_SOURCES_AVAILABLE,
    FallbackChain,
    FallbackResult,
    SourceAttempt,
)
from posterchain.services.manager import ERROR_SOURCE, PosterManager

__all__ = [
    # Errors
    "AuthenticationError",
    "CacheError",
    "CircuitOpenError",
    "ErrorKind",
    "NotFoundError",
    "RateLimitError",
    "RequestTimeoutError",
    "SourceError",
    "SourceUnavailableError",
    "TransportError",
    # Cache
    "CacheEntry",
    "CacheStats",
    "PosterCache",
    # Circuit Breaker / Rate limiting
    "CircuitBreaker",
    "CircuitState",
    "SlidingWindowRateLimiter",
    # Deduplicator
    "DeduplicatorStats",
    "RequestDeduplicator",
    # Metrics
    "MetricsCollector",
    "MetricsRecorder",
    "SourceMetrics",
    # Chain / Manager
    "ALL_SOURCES_FAILED",
    "NO_SOURCES_AVAILABLE",
    "ERROR_SOURCE",
    "FallbackChain",
    "FallbackResult",
    "SourceAttempt",
    "PosterManager",
]
