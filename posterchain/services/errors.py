"""
Service layer exceptions.

Every provider failure is a SourceError carrying an ErrorKind. Only TIMEOUT and
TRANSPORT count toward a circuit breaker's consecutive failures.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Classification of a provider attempt outcome."""

    UNAVAILABLE = "unavailable"  # Disabled or circuit open, never attempted
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"  # Definitive "no result", not a failure
    TRANSPORT = "transport"  # Network / parse / auth error


class SourceError(Exception):
    """Base exception for provider errors."""

    kind: ErrorKind = ErrorKind.TRANSPORT

    def __init__(self, message: str, source_name: str | None = None):
        self.source_name = source_name
        super().__init__(message)

    @property
    def counts_as_failure(self) -> bool:
        """Whether this error should be counted by the circuit breaker."""
        return self.kind in (ErrorKind.TIMEOUT, ErrorKind.TRANSPORT)


class SourceUnavailableError(SourceError):
    """Source is disabled or temporarily out of rotation."""

    kind = ErrorKind.UNAVAILABLE

    def __init__(self, source_name: str, reason: str = "disabled"):
        self.reason = reason
        super().__init__(
            f"Source '{source_name}' is not available ({reason})",
            source_name=source_name,
        )


class CircuitOpenError(SourceUnavailableError):
    """Circuit breaker is open, request blocked."""

    def __init__(self, source_name: str, reset_after_seconds: float):
        self.reset_after_seconds = reset_after_seconds
        super().__init__(
            source_name,
            reason=f"circuit open, retry after {reset_after_seconds:.1f}s",
        )


class RequestTimeoutError(SourceError):
    """Request timed out."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, source_name: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Request to source '{source_name}' timed out after {timeout}s",
            source_name=source_name,
        )


class NotFoundError(SourceError):
    """The source answered definitively that it has no poster."""

    kind = ErrorKind.NOT_FOUND


class TransportError(SourceError):
    """Network, HTTP or payload error surfaced by a source."""

    kind = ErrorKind.TRANSPORT


class RateLimitError(TransportError):
    """Rate limit exceeded upstream."""

    def __init__(self, source_name: str, retry_after: float | None = None):
        self.retry_after = retry_after
        msg = f"Rate limit exceeded for source '{source_name}'"
        if retry_after:
            msg += f", retry after {retry_after}s"
        super().__init__(msg, source_name=source_name)


class AuthenticationError(TransportError):
    """Upstream rejected the credentials of a source."""

    pass


class CacheError(Exception):
    """Cache persistence failed."""

    pass
