"""pytest configuration and shared fixtures."""

import asyncio
from datetime import timedelta

import pytest

from posterchain.datasource.base import GuardedSource
from posterchain.settings import CacheConfig, CircuitBreakerConfig


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedLookup:
    """
    Lookup returning scripted outcomes in order.

    Each outcome is a URL, None, or an exception instance to raise. The last
    outcome repeats once the script is exhausted.
    """

    def __init__(self, *outcomes, delay: float = 0.0, healthy: bool = True):
        self.outcomes = list(outcomes) or [None]
        self.delay = delay
        self.healthy = healthy
        self.calls: list[tuple[str, str]] = []
        self.closed = False

    async def lookup(self, item_id: str, item_name: str):
        self.calls.append((item_id, item_name))
        if self.delay:
            await asyncio.sleep(self.delay)
        index = min(len(self.calls) - 1, len(self.outcomes) - 1)
        outcome = self.outcomes[index]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def ping(self) -> bool:
        return self.healthy

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_source(clock):
    """Build a GuardedSource around a ScriptedLookup."""

    def _make(
        name: str,
        *outcomes,
        priority: int = 50,
        threshold: int = 3,
        cooldown: float = 60.0,
        timeout: float = 1.0,
        delay: float = 0.0,
        **kwargs,
    ) -> GuardedSource:
        return GuardedSource(
            name,
            ScriptedLookup(*outcomes, delay=delay),
            priority=priority,
            timeout=timedelta(seconds=timeout),
            circuit_breaker=CircuitBreakerConfig(
                failure_threshold=threshold, cooldown=timedelta(seconds=cooldown)
            ),
            clock=clock,
            **kwargs,
        )

    return _make


@pytest.fixture
def cache_config(tmp_path):
    return CacheConfig(
        ttl=timedelta(hours=1),
        max_size=3,
        persist=False,
        file_path=tmp_path / "posters.json",
        save_delay=timedelta(milliseconds=20),
        cleanup_interval=None,
    )
