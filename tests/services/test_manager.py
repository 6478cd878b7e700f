"""PosterManager tests."""

import asyncio
from datetime import timedelta

import pytest

from posterchain.services.errors import RequestTimeoutError, TransportError
from posterchain.services.fallback_chain import ALL_SOURCES_FAILED, NO_SOURCES_AVAILABLE
from posterchain.services.manager import ERROR_SOURCE, PosterManager
from posterchain.settings import PosterConfig, SourceConfig


@pytest.fixture
def config(cache_config):
    return PosterConfig(
        sources={"a": SourceConfig(priority=1), "b": SourceConfig(priority=2)},
        cache=cache_config,
    )


class TestPosterManagerResolution:
    """get_poster() scenarios."""

    @pytest.mark.asyncio
    async def test_second_call_is_served_from_cache(self, config, make_source):
        source = make_source("a", "https://img/1.jpg", priority=1)
        async with PosterManager(config, sources=[source]) as manager:
            first = await manager.get_poster("1", "Bebop")
            second = await manager.get_poster("1", "Bebop")

            assert first.url == second.url == "https://img/1.jpg"
            assert first.from_cache is False
            assert second.from_cache is True
            assert second.source == "a"
            assert len(source.lookup.calls) == 1

            stats = manager.get_stats()["global"]
            assert stats["cache_hits"] == 1
            assert stats["cache_misses"] == 1

    @pytest.mark.asyncio
    async def test_falls_back_to_next_source(self, config, make_source):
        a = make_source("a", RequestTimeoutError("a", 1), priority=1)
        b = make_source("b", "https://img/b.jpg", priority=2)
        async with PosterManager(config, sources=[a, b]) as manager:
            result = await manager.get_poster("1", "Bebop")
            stats = manager.get_stats()

        assert result.url == "https://img/b.jpg"
        assert result.source == "b"
        assert stats["sources"]["a"]["failed_requests"] == 1
        assert stats["sources"]["b"]["successful_requests"] == 1
        assert stats["global"]["source_usage"]["a"]["failure"] == 1
        assert stats["global"]["source_usage"]["b"]["success"] == 1
        assert stats["global"]["error_types"]["timeout"] == 1

    @pytest.mark.asyncio
    async def test_all_sources_failed_is_not_cached(self, config, make_source):
        a = make_source("a", None, priority=1)
        b = make_source("b", TransportError("down", "b"), priority=2)
        async with PosterManager(config, sources=[a, b]) as manager:
            result = await manager.get_poster("1", "Bebop")
            again = await manager.get_poster("1", "Bebop")
            stats = manager.get_stats()

        assert result.url is None
        assert result.source == ALL_SOURCES_FAILED
        assert again.from_cache is False
        assert stats["global"]["failed_requests"] == 2
        assert stats["global"]["error_types"][ALL_SOURCES_FAILED] == 2
        assert stats["cache"]["size"] == 0

    @pytest.mark.asyncio
    async def test_no_sources_available(self, config):
        async with PosterManager(config) as manager:
            result = await manager.get_poster("1", "Bebop")

        assert result.source == NO_SOURCES_AVAILABLE
        assert result.url is None

    @pytest.mark.asyncio
    async def test_concurrent_calls_are_deduplicated(self, config, make_source):
        source = make_source("a", "u", priority=1, delay=0.05)
        async with PosterManager(config, sources=[source]) as manager:
            results = await asyncio.gather(
                *(manager.get_poster("1", "Bebop") for _ in range(20))
            )
            dedup = manager.get_stats()["deduplicator"]

        assert len(source.lookup.calls) == 1
        assert all(r is results[0] for r in results)
        assert dedup["deduplicated"] == 19

    @pytest.mark.asyncio
    async def test_never_raises(self, config, make_source, monkeypatch):
        manager = PosterManager(config, sources=[make_source("a", "u")])

        async def broken(item_id, item_name):
            raise RuntimeError("chain exploded")

        monkeypatch.setattr(manager.fallback_chain, "fetch", broken)

        result = await manager.get_poster("1", "Bebop")

        assert result.url is None
        assert result.source == ERROR_SOURCE
        assert manager.get_stats()["global"]["error_types"]["RuntimeError"] == 1
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_failing_source_is_taken_out_of_rotation(self, config, make_source):
        a = make_source("a", TransportError("down", "a"), priority=1, threshold=2)
        b = make_source("b", "u", priority=2)
        async with PosterManager(config, sources=[a, b]) as manager:
            for i in range(3):
                result = await manager.get_poster(str(i), f"item {i}")
                assert result.source == "b"

            assert len(a.lookup.calls) == 2
            assert manager.get_stats()["sources"]["a"]["temporarily_disabled"] is True

    @pytest.mark.asyncio
    async def test_half_open_probe_restores_source(self, config, make_source, clock):
        a = make_source(
            "a", TransportError("down", "a"), "u-a", priority=1, threshold=1, cooldown=30
        )
        async with PosterManager(config, sources=[a]) as manager:
            await manager.get_poster("1", "x")
            assert a.circuit_breaker.is_open

            clock.advance(30)
            result = await manager.get_poster("2", "y")

            assert result.source == "a"
            assert not a.circuit_breaker.is_open

    @pytest.mark.asyncio
    async def test_expired_entry_is_fetched_again(self, config, make_source, clock):
        config.cache.ttl = timedelta(milliseconds=100)
        source = make_source("a", "https://img/1.jpg", priority=1)
        async with PosterManager(config, sources=[source], cache_clock=clock) as manager:
            first = await manager.get_poster("1", "Bebop")
            second = await manager.get_poster("1", "Bebop")
            clock.advance(0.1)
            third = await manager.get_poster("1", "Bebop")

            assert first.from_cache is False
            assert second.from_cache is True
            assert third.from_cache is False
            assert third.url == "https://img/1.jpg"
            assert len(source.lookup.calls) == 2

            cache_stats = manager.get_stats()["cache"]
            assert cache_stats["hits"] == 1
            assert cache_stats["misses"] == 2


class TestPosterManagerAdmin:
    """Administrative operations."""

    @pytest.mark.asyncio
    async def test_stats_are_idempotent(self, config, make_source):
        async with PosterManager(config, sources=[make_source("a", "u")]) as manager:
            await manager.get_poster("1", "Bebop")
            await manager.get_poster("1", "Bebop")

            assert manager.get_stats() == manager.get_stats()

    @pytest.mark.asyncio
    async def test_stats_include_config(self, config):
        async with PosterManager(config) as manager:
            stats = manager.get_stats()

        assert stats["config"] == {
            "cache_size": 3,
            "cache_ttl_seconds": 3600,
            "sources_count": 2,
        }

    @pytest.mark.asyncio
    async def test_invalidate_and_clear_cache(self, config, make_source):
        source = make_source("a", "u")
        async with PosterManager(config, sources=[source]) as manager:
            await manager.get_poster("1", "Bebop")
            await manager.get_poster("2", "Akira")

            assert await manager.invalidate_cache("1", "Bebop") is True
            assert await manager.clear_cache() == 1

            result = await manager.get_poster("2", "Akira")
            assert result.from_cache is False

    @pytest.mark.asyncio
    async def test_reset_metrics_cascades_to_sources(self, config, make_source):
        source = make_source("a", "u")
        async with PosterManager(config, sources=[source]) as manager:
            await manager.get_poster("1", "Bebop")

            manager.reset_metrics()
            stats = manager.get_stats()

        assert stats["global"]["total_requests"] == 0
        assert stats["sources"]["a"]["total_requests"] == 0

    @pytest.mark.asyncio
    async def test_set_source_enabled(self, config, make_source):
        a = make_source("a", "u-a", priority=1)
        b = make_source("b", "u-b", priority=2)
        async with PosterManager(config, sources=[a, b]) as manager:
            assert manager.set_source_enabled("a", False) is True
            assert manager.set_source_enabled("nope", False) is False

            result = await manager.get_poster("1", "Bebop")

            assert result.source == "b"
            assert config.sources["a"].enabled is False

    @pytest.mark.asyncio
    async def test_open_and_reset_circuit(self, config, make_source):
        a = make_source("a", "u-a", priority=1)
        b = make_source("b", "u-b", priority=2)
        async with PosterManager(config, sources=[a, b]) as manager:
            assert manager.open_circuit("a", timedelta(minutes=5)) is True
            assert (await manager.get_poster("1", "x")).source == "b"

            assert manager.reset_circuit("a") is True
            assert (await manager.get_poster("2", "y")).source == "a"
            assert manager.reset_circuit("missing") is False

    @pytest.mark.asyncio
    async def test_update_source_config_changes_priority(self, config, make_source):
        a = make_source("a", "u-a", priority=1)
        b = make_source("b", "u-b", priority=2)
        async with PosterManager(config, sources=[a, b]) as manager:
            manager.update_source_config({"a": SourceConfig(priority=5)})

            assert (await manager.get_poster("1", "x")).source == "b"

    @pytest.mark.asyncio
    async def test_health_check(self, config, make_source):
        async with PosterManager(config, sources=[make_source("a")]) as manager:
            reports = await manager.health_check()

        assert reports["a"]["healthy"] is True


class TestPosterManagerLifecycle:
    """Initialization, background cleanup and shutdown."""

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, config):
        manager = PosterManager(config)
        await asyncio.gather(manager.initialize(), manager.initialize())

        assert manager.is_initialized
        await manager.shutdown()
        assert not manager.is_initialized

    @pytest.mark.asyncio
    async def test_cleanup_job_is_scheduled(self, config):
        config.cache.cleanup_interval = timedelta(minutes=10)
        async with PosterManager(config) as manager:
            job = manager._scheduler.get_job("poster_cache_cleanup")
            assert job is not None

        assert manager._scheduler is None

    @pytest.mark.asyncio
    async def test_cleanup_job_removes_expired_entries(self, config, clock):
        manager = PosterManager(config, cache_clock=clock)
        await manager.cache.set("k", "u", source="a", ttl=timedelta(seconds=5))
        clock.advance(10)

        assert await manager.cache_cleanup_job() == 1
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_persists_cache(self, config, make_source):
        config.cache.persist = True
        async with PosterManager(config, sources=[make_source("a", "u")]) as manager:
            await manager.get_poster("1", "Bebop")

        assert config.cache.file_path.exists()

        async with PosterManager(config, sources=[make_source("a", "other")]) as manager:
            result = await manager.get_poster("1", "Bebop")

        assert result.from_cache is True
        assert result.url == "u"
