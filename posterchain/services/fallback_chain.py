"""
FallbackChain - Tries poster sources one after another by priority.

A source answering "nothing found" is not a failure: the chain just moves on.
Source errors are recorded and never escape the chain.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from loguru import logger

from posterchain.services.errors import ErrorKind, SourceError

if TYPE_CHECKING:
    from posterchain.datasource.base import PosterSource
    from posterchain.settings import SourceConfig

NO_SOURCES_AVAILABLE = "no_sources_available"
ALL_SOURCES_FAILED = "all_sources_failed"


class AttemptOutcome:
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class SourceAttempt:
    """What happened when the chain visited one source."""

    name: str
    outcome: str
    error_kind: str | None = None
    error: str | None = None
    elapsed_ms: float = 0.0


@dataclass
class FallbackResult:
    """Result of a poster resolution."""

    url: str | None
    source: str  # Source name or a sentinel
    from_cache: bool = False
    elapsed_ms: float = 0.0
    attempts: list[SourceAttempt] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return bool(self.url)

    def failed_attempts(self) -> list[SourceAttempt]:
        return [a for a in self.attempts if a.outcome == AttemptOutcome.FAILED]

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "source": self.source,
            "from_cache": self.from_cache,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }


class FallbackChain:
    """
    Ordered, sequential attempts across registered sources.

    Usage:
        chain = FallbackChain()
        chain.register_source(kitsu)
        chain.register_source(tmdb)

        result = await chain.fetch("42", "Cowboy Bebop")
    """

    def __init__(self):
        self._sources: dict[str, "PosterSource"] = {}

    @property
    def sources(self) -> dict[str, "PosterSource"]:
        return dict(self._sources)

    def register_source(self, source: "PosterSource") -> None:
        """Register a source. A source with the same name is replaced."""
        if source.name in self._sources:
            logger.warning(f"Source '{source.name}' registered twice, replacing it")
            # Re-insert at the end so ties keep registration order
            del self._sources[source.name]
        self._sources[source.name] = source
        logger.info(
            f"Source '{source.name}' registered "
            f"(priority={source.priority}, enabled={source.enabled})"
        )

    def unregister_source(self, name: str) -> "PosterSource | None":
        return self._sources.pop(name, None)

    def get_source(self, name: str) -> "PosterSource | None":
        return self._sources.get(name)

    def validate_sources(self, configured: list[str]) -> list[str]:
        """Warn about configured sources that were never registered."""
        missing = [name for name in configured if name not in self._sources]
        for name in missing:
            logger.warning(f"Configured source '{name}' is not registered")
        logger.info(
            f"{len(self._sources)} sources registered: {list(self._sources)}"
        )
        return missing

    def get_ordered_sources(self) -> list["PosterSource"]:
        """Enabled sources by ascending priority, ties in registration order."""
        return sorted(
            (s for s in self._sources.values() if s.enabled),
            key=lambda s: s.priority,
        )

    async def fetch(self, item_id: str, item_name: str) -> FallbackResult:
        """Walk the chain until a source yields a poster or all are exhausted."""
        started = time.perf_counter()
        ordered = self.get_ordered_sources()

        if not ordered:
            logger.warning(
                f"No source available for '{item_name}' "
                f"({len(self._sources)} registered)"
            )
            return FallbackResult(
                url=None, source=NO_SOURCES_AVAILABLE, elapsed_ms=_since(started)
            )

        attempts: list[SourceAttempt] = []
        for position, source in enumerate(ordered, start=1):
            if not source.is_available():
                logger.debug(f"Source '{source.name}' unavailable, skipping")
                attempts.append(
                    SourceAttempt(
                        name=source.name,
                        outcome=AttemptOutcome.SKIPPED,
                        error_kind=ErrorKind.UNAVAILABLE.value,
                    )
                )
                continue

            attempt_started = time.perf_counter()
            try:
                url = await source.fetch(item_id, item_name)
            except Exception as e:
                kind = e.kind if isinstance(e, SourceError) else ErrorKind.TRANSPORT
                attempts.append(
                    SourceAttempt(
                        name=source.name,
                        outcome=AttemptOutcome.FAILED,
                        error_kind=kind.value,
                        error=str(e),
                        elapsed_ms=_since(attempt_started),
                    )
                )
                logger.warning(
                    f"Source '{source.name}' failed for '{item_name}' "
                    f"({position}/{len(ordered)}): {e}"
                )
                continue

            elapsed = _since(attempt_started)
            if url:
                attempts.append(
                    SourceAttempt(
                        name=source.name,
                        outcome=AttemptOutcome.SUCCESS,
                        elapsed_ms=elapsed,
                    )
                )
                logger.debug(
                    f"Poster for '{item_name}' found via '{source.name}' "
                    f"after {position} attempt(s)"
                )
                return FallbackResult(
                    url=url,
                    source=source.name,
                    elapsed_ms=_since(started),
                    attempts=attempts,
                )

            attempts.append(
                SourceAttempt(
                    name=source.name,
                    outcome=AttemptOutcome.NOT_FOUND,
                    error_kind=ErrorKind.NOT_FOUND.value,
                    elapsed_ms=elapsed,
                )
            )
            logger.debug(f"No poster for '{item_name}' on '{source.name}'")

        logger.warning(
            f"All sources failed for '{item_name}': "
            f"{[a.name for a in attempts]}"
        )
        return FallbackResult(
            url=None,
            source=ALL_SOURCES_FAILED,
            elapsed_ms=_since(started),
            attempts=attempts,
        )

    async def health_check_all(self) -> dict[str, dict[str, Any]]:
        """Run every source's health check concurrently."""
        names = list(self._sources)
        reports = await asyncio.gather(
            *(self._health_check(self._sources[name]) for name in names)
        )
        return dict(zip(names, reports))

    async def _health_check(self, source: "PosterSource") -> dict[str, Any]:
        started = time.perf_counter()
        try:
            healthy = await source.health_check()
            error = None
        except Exception as e:
            healthy = False
            error = str(e)

        report: dict[str, Any] = {
            "healthy": bool(healthy),
            "enabled": source.enabled,
            "available": source.is_available(),
            "latency_ms": _since(started),
            "metrics": source.get_metrics().model_dump(),
        }
        if error is not None:
            report["error"] = error
        return report

    def get_sources_stats(self) -> dict[str, dict[str, Any]]:
        """Metrics plus priority / enabled / available of every source."""
        stats = {}
        for name, source in self._sources.items():
            entry = {
                **source.get_metrics().model_dump(),
                "priority": source.priority,
                "enabled": source.enabled,
                "available": source.is_available(),
            }
            get_status = getattr(source, "get_status", None)
            if get_status is not None:
                entry.update(get_status())
            stats[name] = entry
        return stats

    def set_source_enabled(self, name: str, enabled: bool) -> bool:
        source = self._sources.get(name)
        if source is None:
            return False
        source.set_enabled(enabled)
        return True

    def update_config(self, sources_config: dict[str, "SourceConfig"]) -> None:
        """Apply enabled / priority / timeout changes to registered sources."""
        for name, config in sources_config.items():
            source = self._sources.get(name)
            if source is None:
                continue
            apply_config = getattr(source, "apply_config", None)
            if apply_config is not None:
                apply_config(config)
            else:
                source.set_enabled(config.enabled)
                source.priority = config.priority

    def reset_metrics(self) -> None:
        for source in self._sources.values():
            source.reset_metrics()

    async def shutdown(self) -> None:
        """Close every source and forget them."""
        for source in self._sources.values():
            try:
                await source.close()
            except Exception as e:
                logger.error(f"Failed to close source '{source.name}': {e}")
        self._sources.clear()


def _since(started: float) -> float:
    return (time.perf_counter() - started) * 1000
