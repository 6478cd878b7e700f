"""
RequestDeduplicator - One resolution per key at a time.

A resolution for a key that is already running is joined, not started again:
every caller of that key receives the very same result object (or exception).
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass
class DeduplicatorStats:
    """Counters of started and joined resolutions."""

    started: int = 0  # Resolutions actually executed
    joined: int = 0  # Calls served by a resolution already running
    in_flight: int = 0

    @property
    def dedup_rate(self) -> float:
        calls = self.started + self.joined
        return self.joined / calls if calls else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "started": self.started,
            "deduplicated": self.joined,
            "in_flight": self.in_flight,
            "dedup_rate": self.dedup_rate,
        }


class RequestDeduplicator:
    """
    Coalesces concurrent resolutions of the same key.

    The running task is awaited through asyncio.shield, so a caller that gives
    up never cancels the work other callers are waiting on. The key is released
    by a done-callback as soon as the task settles.

    Usage:
        dedup = RequestDeduplicator()
        result = await dedup.dedupe("42:Cowboy Bebop", lambda: resolve("42", "Cowboy Bebop"))
    """

    def __init__(self, debug: bool = False):
        self._running: dict[str, asyncio.Task[Any]] = {}
        self._debug = debug
        self._stats = DeduplicatorStats()

    async def dedupe(self, key: str, request_fn: Callable[[], Awaitable[T]]) -> T:
        """Join the running resolution of `key`, or start one with `request_fn`."""
        task = self._running.get(key)
        if task is None:
            task = asyncio.ensure_future(request_fn())
            task.add_done_callback(lambda done, key=key: self._release(key, done))
            self._running[key] = task
            self._stats.started += 1
            self._log(f"start {key[:50]}")
        else:
            self._stats.joined += 1
            self._log(f"join {key[:50]}")

        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Task[Any]) -> None:
        # A newer task may already own the key
        if self._running.get(key) is task:
            del self._running[key]
        if not task.cancelled() and task.exception() is not None:
            self._log(f"failed {key[:50]}: {task.exception()!r}")
        else:
            self._log(f"done {key[:50]}")

    async def wait_all(self) -> int:
        """Wait until every running resolution settles. Returns how many there were."""
        tasks = list(self._running.values())
        if tasks:
            self._log(f"draining {len(tasks)} resolutions")
            await asyncio.gather(*tasks, return_exceptions=True)
        return len(tasks)

    def get_in_flight_count(self) -> int:
        return len(self._running)

    def get_in_flight_keys(self) -> list[str]:
        return list(self._running)

    def get_stats(self) -> DeduplicatorStats:
        return DeduplicatorStats(
            started=self._stats.started,
            joined=self._stats.joined,
            in_flight=len(self._running),
        )

    def reset_stats(self) -> None:
        self._stats = DeduplicatorStats()

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")
