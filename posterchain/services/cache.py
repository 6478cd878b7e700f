"""
PosterCache - Async-compatible poster cache with TTL, LRU eviction and
optional JSON persistence.

Features:
- Memory cache ordered by recency (OrderedDict), LRU eviction at capacity
- Lazy TTL expiry on read
- Debounced, atomic snapshot writes that never block reads or writes
"""

import asyncio
import os
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from posterchain.services.errors import CacheError
from posterchain.settings import CacheConfig

SNAPSHOT_VERSION = "1.0"


class CacheEntry(BaseModel):
    """A resolved poster with metadata."""

    key: str
    url: str
    source: str
    created_at: float  # Epoch seconds
    ttl: float  # Seconds
    hits: int = 0

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl

    def is_expired(self, now: float) -> bool:
        """Check if entry is past its TTL."""
        return now >= self.expires_at


class SnapshotStats(BaseModel):
    sets: int = 0
    evictions: int = 0
    size: int = 0


class CacheSnapshot(BaseModel):
    """On-disk representation of the cache."""

    version: str = SNAPSHOT_VERSION
    timestamp: float
    entries: dict[str, CacheEntry] = Field(default_factory=dict)
    stats: SnapshotStats = Field(default_factory=SnapshotStats)


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "evictions": self.evictions,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": self.hit_rate,
        }


class PosterCache:
    """
    TTL + LRU cache of resolved posters.

    Usage:
        cache = PosterCache(CacheConfig(max_size=100))
        await cache.initialize()

        entry = await cache.get("42:Cowboy Bebop")
        if entry is None:
            await cache.set("42:Cowboy Bebop", url, source="kitsu")

        await cache.shutdown()
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        clock: Callable[[], float] = time.time,
        debug: bool = False,
    ):
        config = config or CacheConfig()
        self._max_size = config.max_size
        self._default_ttl = config.ttl
        self._persist = config.persist
        self._file_path = Path(config.file_path)
        self._save_delay = config.save_delay.total_seconds()
        self._clock = clock
        self._debug = debug

        self._memory: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = asyncio.Lock()
        self._stats = CacheStats(max_size=self._max_size)

        self._save_handle: asyncio.TimerHandle | None = None
        self._save_task: asyncio.Task[None] | None = None
        self._initialized = False

    @property
    def default_ttl(self) -> timedelta:
        return self._default_ttl

    def __len__(self) -> int:
        return len(self._memory)

    async def initialize(self) -> None:
        """Restore persisted entries if persistence is enabled."""
        if self._initialized:
            return
        if self._persist:
            await self._load_from_disk()
        self._initialized = True

    async def get(self, key: str) -> CacheEntry | None:
        """
        Get an entry from cache.

        Returns the entry if found and not expired, None otherwise.
        """
        async with self._lock:
            entry = self._memory.get(key)
            if entry is None:
                self._stats.misses += 1
                self._log(f"MISS: {key[:50]}")
                return None

            if entry.is_expired(self._clock()):
                del self._memory[key]
                self._stats.misses += 1
                self._log(f"EXPIRED: {key[:50]}")
                return None

            self._memory.move_to_end(key)
            entry.hits += 1
            self._stats.hits += 1
            self._log(f"HIT: {key[:50]}")
            return entry.model_copy()

    async def set(
        self,
        key: str,
        url: str,
        source: str,
        ttl: timedelta | None = None,
    ) -> CacheEntry:
        """
        Store a resolved poster.

        Args:
            key: Cache key
            url: Poster URL
            source: Name of the source that supplied the URL
            ttl: Time to live (uses default if not specified)
        """
        ttl = ttl if ttl is not None else self._default_ttl
        entry = CacheEntry(
            key=key,
            url=url,
            source=source,
            created_at=self._clock(),
            ttl=ttl.total_seconds(),
        )

        async with self._lock:
            if key in self._memory:
                self._memory.move_to_end(key)
            elif len(self._memory) >= self._max_size:
                self._evict_oldest()

            self._memory[key] = entry
            self._stats.sets += 1
            self._log(f"SET: {key[:50]} (TTL: {ttl.total_seconds()}s)")

        self._schedule_save()
        return entry.model_copy()

    async def invalidate(self, key: str) -> bool:
        """Delete a specific key from cache."""
        async with self._lock:
            existed = self._memory.pop(key, None) is not None
            if existed:
                self._log(f"INVALIDATE: {key[:50]}")

        if existed:
            self._schedule_save()
        return existed

    async def clear(self) -> int:
        """Clear all cache entries. Returns the number of removed entries."""
        async with self._lock:
            count = len(self._memory)
            self._memory.clear()
            self._stats.evictions += count
            self._log(f"CLEAR: {count} entries removed")

        self._schedule_save()
        return count

    async def cleanup(self) -> int:
        """Remove all expired entries. Returns count of removed entries."""
        now = self._clock()
        async with self._lock:
            expired_keys = [k for k, v in self._memory.items() if v.is_expired(now)]
            for key in expired_keys:
                del self._memory[key]

            if expired_keys:
                self._log(f"CLEANUP: {len(expired_keys)} expired entries removed")

        if expired_keys:
            self._schedule_save()
        return len(expired_keys)

    def _evict_oldest(self) -> None:
        """Evict the least recently used entry."""
        if not self._memory:
            return
        oldest_key, _ = self._memory.popitem(last=False)
        self._stats.evictions += 1
        self._log(f"EVICT: {oldest_key[:50]}")

    def get_stats(self) -> CacheStats:
        """Get cache statistics."""
        return CacheStats(
            hits=self._stats.hits,
            misses=self._stats.misses,
            sets=self._stats.sets,
            evictions=self._stats.evictions,
            size=len(self._memory),
            max_size=self._max_size,
        )

    # Persistence

    def _schedule_save(self) -> None:
        """Coalesce rapid mutations into one write after `save_delay`."""
        if not self._persist:
            return
        if self._save_handle is not None:
            self._save_handle.cancel()
        loop = asyncio.get_running_loop()
        self._save_handle = loop.call_later(self._save_delay, self._start_save)

    def _start_save(self) -> None:
        self._save_handle = None
        if self._save_task is not None and not self._save_task.done():
            # A write is running, queue another one behind it
            self._schedule_save()
            return
        self._save_task = asyncio.create_task(self._save_to_disk())

    def _build_snapshot(self) -> CacheSnapshot:
        return CacheSnapshot(
            timestamp=self._clock(),
            entries={k: v.model_copy() for k, v in self._memory.items()},
            stats=SnapshotStats(
                sets=self._stats.sets,
                evictions=self._stats.evictions,
                size=len(self._memory),
            ),
        )

    async def _save_to_disk(self) -> None:
        """Write the snapshot to a temp file and rename it over the target."""
        try:
            payload = self._build_snapshot().model_dump_json(indent=2)
            await asyncio.to_thread(self._write_atomic, payload)
            self._log(f"SAVED: {len(self._memory)} entries to {self._file_path}")
        except Exception as e:
            logger.error(f"Failed to save poster cache to {self._file_path}: {e}")

    def _write_atomic(self, payload: str) -> None:
        self._file_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._file_path.with_name(self._file_path.name + ".tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        os.replace(tmp_path, self._file_path)

    def _decode_snapshot(self, raw: str) -> CacheSnapshot:
        try:
            snapshot = CacheSnapshot.model_validate_json(raw)
        except ValidationError as e:
            raise CacheError(f"Invalid cache file: {e.error_count()} errors") from e
        if snapshot.version != SNAPSHOT_VERSION:
            raise CacheError(f"Unsupported cache file version {snapshot.version}")
        return snapshot

    async def _load_from_disk(self) -> None:
        """Restore non-expired entries. Never raises."""
        try:
            raw = await asyncio.to_thread(self._file_path.read_text, encoding="utf-8")
        except FileNotFoundError:
            logger.info(f"No poster cache file at {self._file_path}, starting empty")
            return
        except OSError as e:
            logger.warning(f"Could not read poster cache file {self._file_path}: {e}")
            return

        try:
            snapshot = self._decode_snapshot(raw)
        except CacheError as e:
            logger.warning(f"{e}, starting with an empty poster cache")
            return

        now = self._clock()
        valid = [
            (key, entry)
            for key, entry in snapshot.entries.items()
            if not entry.is_expired(now)
        ]
        expired_count = len(snapshot.entries) - len(valid)

        async with self._lock:
            # Keep the most recently used entries if the file exceeds capacity
            for key, entry in valid[-self._max_size :]:
                self._memory[key] = entry
            self._stats.sets = snapshot.stats.sets
            self._stats.evictions = snapshot.stats.evictions

        logger.info(
            f"Poster cache loaded from disk: {len(self._memory)} valid entries, "
            f"{expired_count} expired"
        )

    async def flush(self) -> None:
        """Cancel any pending debounced write and save immediately."""
        if not self._persist:
            return
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None
        if self._save_task is not None and not self._save_task.done():
            await self._save_task
        await self._save_to_disk()

    async def shutdown(self) -> None:
        """Final flush, then drop everything from memory."""
        await self.flush()
        if self._persist:
            logger.info(f"Poster cache saved on shutdown: {len(self._memory)} entries")
        async with self._lock:
            self._memory.clear()
        self._initialized = False

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[PosterCache] {message}")
