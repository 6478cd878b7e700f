"""
TMDB (The Movie Database) poster lookup.

API Documentation: https://developer.themoviedb.org/docs
Requires an API key (TMDB_API_KEY). Items are searched by name, first as a
TV show, then as a movie.
"""

import re
from typing import Any

import httpx

from posterchain.datasource.base import HttpLookup
from posterchain.services.errors import AuthenticationError
from posterchain.settings import SourceConfig

# Season / edition markers stripped before searching
NAME_CLEANUP_PATTERNS = [
    re.compile(r"\s*\([^)]*\)"),
    re.compile(r"\s*\[[^\]]*\]"),
    re.compile(r"\s*saison\s*\d+", re.IGNORECASE),
    re.compile(r"\s*season\s*\d+", re.IGNORECASE),
    re.compile(r"\s*\bs\d+\b", re.IGNORECASE),
]


def clean_item_name(name: str) -> str:
    """Strip bracketed notes and season markers from a catalog name."""
    for pattern in NAME_CLEANUP_PATTERNS:
        name = pattern.sub("", name)
    return " ".join(name.split())


class TMDBLookup(HttpLookup):
    """Resolves posters through the TMDB search endpoints."""

    BASE_URL = "https://api.themoviedb.org/3"
    IMAGE_BASE_URL = "https://image.tmdb.org/t/p/w500"
    SERVICE_ID = "tmdb"
    SEARCH_KINDS = ("tv", "movie")

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        config: SourceConfig | None = None,
        language: str = "fr-FR",
    ):
        super().__init__(client)
        self.api_key = config.api_key if config else ""
        self.language = language

    @property
    def source_name(self) -> str:
        return self.SERVICE_ID

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def lookup(self, item_id: str, item_name: str) -> str | None:
        if not self.api_key:
            raise AuthenticationError("TMDB API key missing", source_name=self.SERVICE_ID)

        query = clean_item_name(item_name or "")
        if not query:
            return None

        for kind in self.SEARCH_KINDS:
            poster_url = await self._search(kind, query)
            if poster_url:
                return poster_url
        return None

    async def _search(self, kind: str, query: str) -> str | None:
        data = await self._get_json(
            f"{self.BASE_URL}/search/{kind}",
            params={"api_key": self.api_key, "query": query, "language": self.language},
        )
        return self._first_poster(data)

    def _first_poster(self, data: dict[str, Any] | None) -> str | None:
        """First search result that has a poster."""
        for result in (data or {}).get("results") or []:
            if result.get("poster_path"):
                return f"{self.IMAGE_BASE_URL}{result['poster_path']}"
        return None

    async def ping(self) -> bool:
        if not self.api_key:
            return False
        data = await self._get_json(
            f"{self.BASE_URL}/configuration", params={"api_key": self.api_key}
        )
        return bool(data and data.get("images", {}).get("base_url"))
