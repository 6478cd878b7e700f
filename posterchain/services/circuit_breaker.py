"""
CircuitBreaker - Takes a failing poster source out of rotation.

States:
- CLOSED: lookups go through, consecutive failures are counted
- OPEN: the source is skipped until its cooldown elapses
- HALF_OPEN: one probe lookup decides between CLOSED and OPEN

Transitions:
- CLOSED → OPEN: When failure_threshold consecutive failures are reached
- OPEN → HALF_OPEN: Lazily, on the first state check after the cooldown
- HALF_OPEN → CLOSED: On successful probe
- HALF_OPEN → OPEN: On failed probe, with a fresh cooldown

Transitions never await, so they are atomic on the event loop.
"""

import time
from enum import Enum
from typing import Any, Callable

from loguru import logger

from posterchain.settings import CircuitBreakerConfig


class CircuitState(str, Enum):
    """Where a breaker stands."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """
    Circuit breaker owned by a single source.

    Usage:
        cb = CircuitBreaker("kitsu")

        if not cb.allow_request():
            raise CircuitOpenError(...)

        try:
            result = await make_request()
            cb.record_success()
            return result
        except Exception:
            cb.record_failure()
            raise
    """

    def __init__(
        self,
        source_name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source_name = source_name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._next_attempt_at: float | None = None
        self._probe_in_flight = False
        self._last_failure_time: float | None = None

    @property
    def state(self) -> CircuitState:
        """Current state. An OPEN breaker whose cooldown elapsed turns HALF_OPEN here."""
        if self._state == CircuitState.OPEN:
            if (
                self._next_attempt_at is not None
                and self._clock() >= self._next_attempt_at
            ):
                self._state = CircuitState.HALF_OPEN
                self._probe_in_flight = False
                logger.info(
                    f"Circuit breaker '{self.source_name}' transitioned to HALF_OPEN"
                )
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def allow_request(self) -> bool:
        """
        Check if a request may go through.

        In HALF_OPEN exactly one probe is admitted until its outcome is recorded.
        """
        current_state = self.state

        if current_state == CircuitState.CLOSED:
            return True

        if current_state == CircuitState.OPEN:
            return False

        if self._probe_in_flight:
            return False
        self._probe_in_flight = True
        return True

    def record_success(self) -> None:
        """Record a successful request (including "not found" answers)."""
        if self._state == CircuitState.HALF_OPEN:
            self._close()
        else:
            self._failure_count = 0

    def record_failure(self) -> None:
        """Count a timeout or transport failure."""
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if self._state == CircuitState.HALF_OPEN:
            # The probe failed
            self._open(self.config.cooldown.total_seconds())
        elif self._state == CircuitState.CLOSED:
            if self._failure_count >= self.config.failure_threshold:
                self._open(self.config.cooldown.total_seconds())

    def release_probe(self) -> None:
        """Give back a half-open probe slot whose attempt never reached the source."""
        self._probe_in_flight = False

    def force_open(self, duration: float | None = None) -> None:
        """Manually open the circuit for `duration` seconds (default: cooldown)."""
        if duration is None:
            duration = self.config.cooldown.total_seconds()
        self._open(duration)
        logger.info(
            f"Circuit breaker '{self.source_name}' manually opened for {duration:.0f}s"
        )

    def reset_failures(self) -> None:
        """Zero the consecutive failure count. The state is left as is."""
        self._failure_count = 0

    def force_close(self) -> None:
        """Close the breaker and forget past failures."""
        self._close()
        self._last_failure_time = None
        logger.info(f"Circuit breaker '{self.source_name}' manually reset")

    def _open(self, duration: float) -> None:
        self._state = CircuitState.OPEN
        self._next_attempt_at = self._clock() + duration
        self._probe_in_flight = False
        logger.warning(
            f"Circuit breaker '{self.source_name}' OPENED for {duration:.0f}s "
            f"({self._failure_count} consecutive failures)"
        )

    def _close(self) -> None:
        recovered = self._state != CircuitState.CLOSED
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._next_attempt_at = None
        self._probe_in_flight = False
        if recovered:
            logger.info(f"Circuit breaker '{self.source_name}' CLOSED (recovered)")

    def get_time_until_reset(self) -> float | None:
        """Seconds left in the cooldown, None unless OPEN."""
        if self._state != CircuitState.OPEN or self._next_attempt_at is None:
            return None
        return max(0.0, self._next_attempt_at - self._clock())

    def get_status(self) -> dict[str, Any]:
        """Snapshot for stats endpoints."""
        return {
            "source": self.source_name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.config.failure_threshold,
            "cooldown_seconds": self.config.cooldown.total_seconds(),
            "next_attempt_at": self._next_attempt_at,
            "last_failure": self._last_failure_time,
        }
