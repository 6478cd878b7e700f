"""
PosterManager - Public entry point of the poster resolution system.

Combines:
- PosterCache for resolved posters
- FallbackChain for prioritized source attempts
- RequestDeduplicator so a key is resolved by one chain walk at a time
- MetricsCollector for global statistics
"""

import asyncio
import time
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from posterchain.services.cache import PosterCache
from posterchain.services.deduplicator import RequestDeduplicator
from posterchain.services.fallback_chain import FallbackChain, FallbackResult
from posterchain.services.metrics import MetricsCollector
from posterchain.settings import PosterConfig, SourceConfig
from posterchain.utils import logged_job, make_cache_key

if TYPE_CHECKING:
    from posterchain.datasource.base import PosterSource

ERROR_SOURCE = "error"


class PosterManager:
    """
    Resolves one poster URL per catalog item.

    get_poster() never raises: failures come back as a FallbackResult with
    url=None and a sentinel source.

    Usage:
        async with PosterManager(config, sources=build_sources(config)) as manager:
            result = await manager.get_poster("1", "Cowboy Bebop")
            if result.url:
                ...
    """

    def __init__(
        self,
        config: PosterConfig | None = None,
        sources: "list[PosterSource] | None" = None,
        cache_clock: Callable[[], float] = time.time,
        debug: bool = False,
    ):
        self.config = config or PosterConfig()

        self.cache = PosterCache(self.config.cache, clock=cache_clock, debug=debug)
        self.fallback_chain = FallbackChain()
        self.metrics = MetricsCollector()
        self._deduplicator = RequestDeduplicator(debug=debug)

        self._scheduler: AsyncIOScheduler | None = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

        for source in sources or []:
            self.fallback_chain.register_source(source)

        logger.info(
            f"PosterManager created: {len(self.config.sources)} configured sources, "
            f"cache max_size={self.config.cache.max_size}, "
            f"ttl={self.config.cache.ttl.total_seconds():.0f}s"
        )

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Restore the cache, check sources and start background jobs. Idempotent."""
        async with self._init_lock:
            if self._initialized:
                return
            try:
                await self.cache.initialize()
                self.fallback_chain.validate_sources(list(self.config.sources))
                self._start_scheduler()
            except Exception as e:
                logger.error(f"PosterManager initialization failed: {e}")
                raise
            self._initialized = True
            logger.info("PosterManager initialized")

    def _start_scheduler(self) -> None:
        interval = self.config.cache.cleanup_interval
        if not interval:
            return
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.cache_cleanup_job,
            trigger="interval",
            seconds=interval.total_seconds(),
            id="poster_cache_cleanup",
            name="Poster cache cleanup",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            f"Cache cleanup scheduled every {interval.total_seconds():.0f}s"
        )

    @logged_job
    async def cache_cleanup_job(self) -> int:
        """Drop expired cache entries."""
        removed = await self.cache.cleanup()
        if removed:
            logger.info(f"Cache cleanup removed {removed} expired entries")
        return removed

    def register_source(self, source: "PosterSource") -> None:
        self.fallback_chain.register_source(source)

    async def get_poster(self, item_id: str, item_name: str) -> FallbackResult:
        """
        Resolve the poster of an item.

        Concurrent calls for the same (item_id, item_name) share one resolution
        and receive the same result.
        """
        cache_key = make_cache_key(item_id, item_name)
        try:
            if not self._initialized:
                await self.initialize()
            return await self._deduplicator.dedupe(
                cache_key,
                lambda: self._get_poster_internal(item_id, item_name, cache_key),
            )
        except Exception as e:
            self.metrics.record_error(e)
            logger.error(f"Poster resolution failed for '{item_name}': {e}")
            return FallbackResult(url=None, source=ERROR_SOURCE)

    async def _get_poster_internal(
        self,
        item_id: str,
        item_name: str,
        cache_key: str,
    ) -> FallbackResult:
        started = time.perf_counter()
        try:
            # 1. Cache
            cached = await self.cache.get(cache_key)
            if cached is not None:
                self.metrics.record_cache_hit()
                return FallbackResult(
                    url=cached.url,
                    source=cached.source,
                    from_cache=True,
                    elapsed_ms=_since(started),
                )
            self.metrics.record_cache_miss()

            # 2. Fallback chain
            result = await self.fallback_chain.fetch(item_id, item_name)
            for attempt in result.failed_attempts():
                self.metrics.record_source_failure(attempt.name, attempt.error_kind)

            # 3. Store or classify
            if result.url:
                await self.cache.set(cache_key, result.url, source=result.source)
                self.metrics.record_success(result.source, _since(started))
                logger.info(
                    f"Poster for '{item_name}' resolved via '{result.source}' "
                    f"in {_since(started):.0f}ms"
                )
            else:
                self.metrics.record_failure(result.source)
                logger.warning(
                    f"No poster found for '{item_name}' ({result.source})"
                )

            result.elapsed_ms = _since(started)
            return result

        except Exception as e:
            self.metrics.record_error(e)
            logger.error(f"Error while resolving poster for '{item_name}': {e}")
            return FallbackResult(
                url=None, source=ERROR_SOURCE, elapsed_ms=_since(started)
            )

    # Administration

    async def invalidate_cache(self, item_id: str, item_name: str) -> bool:
        return await self.cache.invalidate(make_cache_key(item_id, item_name))

    async def clear_cache(self) -> int:
        removed = await self.cache.clear()
        logger.info(f"Poster cache cleared: {removed} entries removed")
        return removed

    def reset_metrics(self) -> None:
        """Reset global metrics and the metrics of every source."""
        self.metrics.reset()
        self.fallback_chain.reset_metrics()
        self._deduplicator.reset_stats()
        logger.info("Metrics reset")

    def set_source_enabled(self, name: str, enabled: bool) -> bool:
        """Enable or disable a source. Returns False for unknown sources."""
        if not self.fallback_chain.set_source_enabled(name, enabled):
            logger.warning(f"Cannot change unknown source '{name}'")
            return False
        if name in self.config.sources:
            self.config.sources[name].enabled = enabled
        logger.info(f"Source '{name}' {'enabled' if enabled else 'disabled'}")
        return True

    def update_source_config(self, sources: dict[str, SourceConfig]) -> None:
        """Merge new per-source settings and apply them to registered sources."""
        self.config.sources.update(sources)
        self.fallback_chain.update_config(sources)
        logger.info(f"Source configuration updated: {list(sources)}")

    def reset_circuit(self, name: str) -> bool:
        """Force-close the circuit breaker of a source."""
        breaker = self._get_breaker(name)
        if breaker is None:
            return False
        breaker.force_close()
        return True

    def open_circuit(self, name: str, duration: timedelta | None = None) -> bool:
        """Force-open the circuit breaker of a source."""
        breaker = self._get_breaker(name)
        if breaker is None:
            return False
        breaker.force_open(duration.total_seconds() if duration else None)
        return True

    def _get_breaker(self, name: str):
        source = self.fallback_chain.get_source(name)
        return getattr(source, "circuit_breaker", None) if source else None

    async def health_check(self) -> dict[str, dict[str, Any]]:
        return await self.fallback_chain.health_check_all()

    def get_stats(self) -> dict[str, Any]:
        """Cache, source, global and configuration snapshots."""
        return {
            "cache": self.cache.get_stats().to_dict(),
            "sources": self.fallback_chain.get_sources_stats(),
            "global": self.metrics.get_stats(),
            "errors": self.metrics.get_error_stats(),
            "deduplicator": self._deduplicator.get_stats().to_dict(),
            "config": {
                "cache_size": self.config.cache.max_size,
                "cache_ttl_seconds": self.config.cache.ttl.total_seconds(),
                "sources_count": len(self.config.sources),
            },
        }

    # Lifecycle

    async def shutdown(self) -> None:
        """Let in-flight resolutions finish, stop jobs, persist the cache."""
        drained = await self._deduplicator.wait_all()
        if drained:
            logger.info(f"Waited for {drained} in-flight resolutions")

        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        await self.cache.shutdown()
        await self.fallback_chain.shutdown()
        self._initialized = False
        logger.info("PosterManager stopped")

    async def __aenter__(self) -> "PosterManager":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()


def _since(started: float) -> float:
    return (time.perf_counter() - started) * 1000
