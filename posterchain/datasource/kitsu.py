"""
Kitsu API poster lookup.

API Documentation: https://kitsu.docs.apiary.io/
No API key required. Items are looked up by their numeric Kitsu id.
"""

import httpx
from loguru import logger

from posterchain.datasource.base import HttpLookup
from posterchain.settings import SourceConfig


class KitsuLookup(HttpLookup):
    """Resolves posters from the Kitsu anime endpoint."""

    BASE_URL = "https://kitsu.io/api/edge/anime"
    SERVICE_ID = "kitsu"
    HEADERS = {"Accept": "application/vnd.api+json"}
    POSTER_SIZES = ("large", "medium", "original")
    HEALTH_CHECK_ID = "1"  # Cowboy Bebop

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        config: SourceConfig | None = None,
    ):
        super().__init__(client)

    @property
    def source_name(self) -> str:
        return self.SERVICE_ID

    async def lookup(self, item_id: str, item_name: str) -> str | None:
        if not item_id or not item_id.isdigit():
            logger.debug(f"Kitsu skipped '{item_name}': id {item_id!r} is not numeric")
            return None

        data = await self._get_json(f"{self.BASE_URL}/{item_id}", headers=self.HEADERS)
        if not data:
            return None

        attributes = (data.get("data") or {}).get("attributes") or {}
        poster = attributes.get("posterImage") or {}
        for size in self.POSTER_SIZES:
            if poster.get(size):
                return poster[size]
        return None

    async def ping(self) -> bool:
        data = await self._get_json(
            f"{self.BASE_URL}/{self.HEALTH_CHECK_ID}", headers=self.HEADERS
        )
        return bool(data and data.get("data"))
