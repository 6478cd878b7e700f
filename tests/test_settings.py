"""Configuration loading tests."""

from datetime import timedelta

import pytest

from posterchain.datasource import build_sources
from posterchain.settings import (
    ConfigurationError,
    PosterConfig,
    SourceConfig,
    load_config,
    load_settings,
)

YAML_CONFIG = """
sources:
  kitsu:
    priority: 1
    timeout: 2
    rate_limit:
      requests: 10
      window: 60
  tmdb:
    priority: 2
    circuit_breaker:
      failure_threshold: 4
      cooldown: PT5M
cache:
  ttl: 7200
  max_size: 50
circuit_breaker:
  failure_threshold: 8
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "posters.yaml"
    path.write_text(YAML_CONFIG, encoding="utf-8")
    return path


class TestLoadSettings:
    """Environment parsing."""

    def test_reads_aliases(self):
        settings = load_settings(
            {"POSTER_CACHE_TTL": "600", "KITSU_ENABLED": "false", "LOG_LEVEL": "DEBUG"}
        )

        assert settings.cache_ttl_seconds == 600
        assert settings.kitsu_enabled is False
        assert settings.log_level == "DEBUG"

    def test_invalid_values_fall_back_to_defaults(self):
        settings = load_settings({"POSTER_CACHE_TTL": "5", "POSTER_CACHE_SIZE": "abc"})

        assert settings.cache_ttl_seconds is None
        assert settings.cache_max_size is None


class TestLoadConfig:
    """YAML file plus environment overrides."""

    def test_yaml_file(self, config_file):
        settings = load_settings(
            {"POSTER_CONFIG_PATH": str(config_file), "TMDB_API_KEY": "k"}
        )

        config = load_config(settings)

        assert config.sources["kitsu"].timeout == timedelta(seconds=2)
        assert config.sources["kitsu"].rate_limit.requests == 10
        assert config.sources["tmdb"].api_key == "k"
        assert config.cache.ttl == timedelta(hours=2)
        assert config.cache.max_size == 50
        assert config.breaker_for("tmdb").failure_threshold == 4
        assert config.breaker_for("tmdb").cooldown == timedelta(minutes=5)
        assert config.breaker_for("kitsu").failure_threshold == 8

    def test_environment_overrides_file(self, config_file, tmp_path):
        settings = load_settings(
            {
                "POSTER_CONFIG_PATH": str(config_file),
                "POSTER_CACHE_TTL": "120",
                "POSTER_CACHE_SIZE": "20",
                "POSTER_CACHE_PERSIST": "true",
                "POSTER_CACHE_PATH": str(tmp_path / "c.json"),
                "TMDB_API_KEY": "k",
            }
        )

        config = load_config(settings)

        assert config.cache.ttl == timedelta(seconds=120)
        assert config.cache.max_size == 20
        assert config.cache.persist is True
        assert config.cache.file_path == tmp_path / "c.json"

    def test_tmdb_disabled_without_api_key(self, tmp_path):
        settings = load_settings({"POSTER_CONFIG_PATH": str(tmp_path / "missing.yaml")})

        config = load_config(settings)

        assert config.sources["tmdb"].enabled is False
        assert config.enabled_sources() == ["kitsu"]

    def test_no_enabled_source_is_an_error(self, tmp_path):
        settings = load_settings(
            {
                "POSTER_CONFIG_PATH": str(tmp_path / "missing.yaml"),
                "KITSU_ENABLED": "false",
            }
        )

        with pytest.raises(ConfigurationError):
            load_config(settings)

    def test_invalid_yaml_is_an_error(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("cache:\n  max_size: -3\n", encoding="utf-8")

        with pytest.raises(ConfigurationError):
            load_config(load_settings({"POSTER_CONFIG_PATH": str(path)}))

    def test_masked_hides_api_keys(self):
        config = PosterConfig(sources={"tmdb": SourceConfig(api_key="secret")})

        assert config.masked()["sources"]["tmdb"]["api_key"] == "***MASKED***"


class TestBuildSources:
    """Sources built from configuration."""

    def test_builds_known_sources(self):
        config = PosterConfig(
            sources={
                "kitsu": SourceConfig(priority=1),
                "tmdb": SourceConfig(priority=2, api_key="k"),
                "anilist": SourceConfig(priority=3),
            }
        )

        sources = build_sources(config)

        assert [s.name for s in sources] == ["kitsu", "tmdb"]
        assert all(s.enabled for s in sources)

    def test_unconfigured_lookup_is_disabled(self):
        config = PosterConfig(sources={"tmdb": SourceConfig()})

        [tmdb] = build_sources(config)

        assert tmdb.enabled is False
