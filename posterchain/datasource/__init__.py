"""
Poster sources.

build_sources() turns the `sources` section of a PosterConfig into guarded
sources backed by the built-in HTTP lookups.
"""

import httpx
from loguru import logger

from posterchain.datasource.base import GuardedSource, HttpLookup, PosterLookup, PosterSource
from posterchain.datasource.kitsu import KitsuLookup
from posterchain.datasource.tmdb import TMDBLookup
from posterchain.settings import PosterConfig

LOOKUPS: dict[str, type[HttpLookup]] = {
    KitsuLookup.SERVICE_ID: KitsuLookup,
    TMDBLookup.SERVICE_ID: TMDBLookup,
}


def build_sources(
    config: PosterConfig,
    client: httpx.AsyncClient | None = None,
) -> list[GuardedSource]:
    """Create a GuardedSource for every configured source with a known lookup."""
    sources = []
    for name, source_config in config.sources.items():
        lookup_cls = LOOKUPS.get(name)
        if lookup_cls is None:
            logger.warning(f"No built-in lookup for configured source '{name}'")
            continue

        lookup = lookup_cls(client=client, config=source_config)
        source = GuardedSource.from_config(
            name, lookup, source_config, config.breaker_for(name)
        )
        if source.enabled and not lookup.is_configured():
            logger.warning(f"Source '{name}' is not configured, disabling it")
            source.set_enabled(False)
        sources.append(source)
    return sources


__all__ = [
    "GuardedSource",
    "HttpLookup",
    "KitsuLookup",
    "PosterLookup",
    "PosterSource",
    "TMDBLookup",
    "build_sources",
]
