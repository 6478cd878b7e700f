"""
Configuration for the poster resolution system.

PosterConfig is the explicit context handed to PosterManager. It is built by
load_config() from an optional YAML file plus environment overrides.
"""

import os
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

load_dotenv()


class ConfigurationError(Exception):
    """Configuration is unusable."""

    pass


class RateLimitConfig(BaseModel):
    """Sliding window allowance for one source."""

    requests: int = Field(default=30, ge=1)
    window: timedelta = timedelta(seconds=60)
    safety_margin: timedelta = timedelta(milliseconds=50)


class CircuitBreakerConfig(BaseModel):
    """Configuration for circuit breaker."""

    failure_threshold: int = Field(default=10, ge=1)  # Failures before opening
    cooldown: timedelta = timedelta(minutes=30)  # Time before half-open


class SourceConfig(BaseModel):
    """Configuration of a single poster source."""

    enabled: bool = True
    priority: int = Field(default=50, ge=0)  # Lower is tried first
    timeout: timedelta = timedelta(seconds=3)
    rate_limit: RateLimitConfig | None = None
    circuit_breaker: CircuitBreakerConfig | None = None  # None: use global
    api_key: str = ""


class CacheConfig(BaseModel):
    """Result cache configuration."""

    ttl: timedelta = timedelta(hours=24)
    max_size: int = Field(default=1000, ge=1)
    persist: bool = False
    file_path: Path = Path("./cache/posters.json")
    save_delay: timedelta = timedelta(seconds=1)
    cleanup_interval: timedelta | None = timedelta(hours=1)


def _default_sources() -> dict[str, SourceConfig]:
    return {
        "kitsu": SourceConfig(
            priority=1,
            timeout=timedelta(seconds=3),
            rate_limit=RateLimitConfig(requests=30, window=timedelta(seconds=60)),
        ),
        "tmdb": SourceConfig(
            priority=2,
            timeout=timedelta(seconds=3),
            rate_limit=RateLimitConfig(requests=40, window=timedelta(seconds=10)),
        ),
    }


class PosterConfig(BaseModel):
    """Complete configuration of the resolution system."""

    sources: dict[str, SourceConfig] = Field(default_factory=_default_sources)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)

    def breaker_for(self, source_name: str) -> CircuitBreakerConfig:
        """Circuit breaker settings of a source, falling back to the global ones."""
        source = self.sources.get(source_name)
        if source and source.circuit_breaker:
            return source.circuit_breaker
        return self.circuit_breaker

    def enabled_sources(self) -> list[str]:
        return [name for name, cfg in self.sources.items() if cfg.enabled]

    def masked(self) -> dict[str, Any]:
        """Dump the configuration with API keys hidden."""
        data = self.model_dump(mode="json")
        for source in data["sources"].values():
            if source.get("api_key"):
                source["api_key"] = "***MASKED***"
        return data


class Settings(BaseModel):
    # Config file
    config_path: str = Field(default="config/posters.yaml", alias="POSTER_CONFIG_PATH")

    # Cache overrides
    cache_ttl_seconds: int | None = Field(default=None, ge=60, alias="POSTER_CACHE_TTL")
    cache_max_size: int | None = Field(default=None, ge=10, alias="POSTER_CACHE_SIZE")
    cache_persist: bool | None = Field(default=None, alias="POSTER_CACHE_PERSIST")
    cache_file_path: str | None = Field(default=None, alias="POSTER_CACHE_PATH")

    # Source overrides
    kitsu_enabled: bool | None = Field(default=None, alias="KITSU_ENABLED")
    tmdb_enabled: bool | None = Field(default=None, alias="TMDB_ENABLED")
    tmdb_api_key: str = Field(default="", alias="TMDB_API_KEY")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


def load_settings(environ: dict[str, str] | None = None) -> Settings:
    """
    Read Settings from the environment.

    Invalid values are reported and replaced by their defaults instead of
    aborting startup.
    """
    values = dict(os.environ if environ is None else environ)
    try:
        return Settings.model_validate(values)
    except ValidationError as e:
        for error in e.errors():
            env_name = str(error["loc"][0])
            logger.warning(
                f"Invalid environment variable {env_name}: {error['msg']}, "
                f"using default"
            )
            values.pop(env_name, None)
        return Settings.model_validate(values)


def load_config(settings: Settings | None = None) -> PosterConfig:
    """
    Build the PosterConfig from the YAML file and environment overrides.

    Raises:
        ConfigurationError: If the file is invalid or no source is enabled
    """
    settings = settings or load_settings()
    config_path = Path(settings.config_path)

    config = PosterConfig()
    if config_path.exists():
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            config = PosterConfig.model_validate(data)
            logger.info(f"Loaded poster config from {config_path}")
        except (yaml.YAMLError, ValidationError) as e:
            raise ConfigurationError(f"Invalid config file {config_path}: {e}") from e
    else:
        logger.info(f"Poster config not found: {config_path}, using defaults")

    if settings.cache_ttl_seconds is not None:
        config.cache.ttl = timedelta(seconds=settings.cache_ttl_seconds)
    if settings.cache_max_size is not None:
        config.cache.max_size = settings.cache_max_size
    if settings.cache_persist is not None:
        config.cache.persist = settings.cache_persist
    if settings.cache_file_path:
        config.cache.file_path = Path(settings.cache_file_path)

    if settings.kitsu_enabled is not None and "kitsu" in config.sources:
        config.sources["kitsu"].enabled = settings.kitsu_enabled
    if settings.tmdb_enabled is not None and "tmdb" in config.sources:
        config.sources["tmdb"].enabled = settings.tmdb_enabled

    tmdb = config.sources.get("tmdb")
    if tmdb is not None:
        if settings.tmdb_api_key:
            tmdb.api_key = settings.tmdb_api_key
        if not tmdb.api_key and tmdb.enabled:
            logger.warning("TMDB_API_KEY not set, disabling source 'tmdb'")
            tmdb.enabled = False

    if not config.enabled_sources():
        raise ConfigurationError(
            "No poster source is enabled, at least one source must be available"
        )

    return config


global_settings = load_settings()
