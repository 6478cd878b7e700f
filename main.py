"""
Poster resolution entry point.

Resolves the posters of the items given on the command line:

    python main.py 1:"Cowboy Bebop" 42:"Frieren (2023)"

Each argument is `<item_id>:<item_name>`.
"""

import asyncio
import sys

import httpx
from loguru import logger

from posterchain.datasource import build_sources
from posterchain.services import PosterManager
from posterchain.settings import ConfigurationError, global_settings, load_config


def parse_item(arg: str) -> tuple[str, str]:
    item_id, sep, item_name = arg.partition(":")
    if not sep or not item_name:
        raise ValueError(f"Expected <item_id>:<item_name>, got {arg!r}")
    return item_id.strip(), item_name.strip()


async def main(argv: list[str]) -> int:
    """Main function"""
    logger.remove()
    logger.add(sys.stderr, level=global_settings.log_level.upper())

    try:
        items = [parse_item(arg) for arg in argv]
    except ValueError as e:
        logger.error(str(e))
        return 2

    try:
        config = load_config(global_settings)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    logger.info(f"Starting poster resolution for {len(items)} items...")
    logger.debug(f"Config: {config.masked()}")

    async with httpx.AsyncClient(follow_redirects=True) as client:
        manager = PosterManager(config, sources=build_sources(config, client=client))
        try:
            await manager.initialize()
            results = await asyncio.gather(
                *(manager.get_poster(item_id, name) for item_id, name in items)
            )
            for (item_id, name), result in zip(items, results):
                print(f"{item_id}\t{name}\t{result.source}\t{result.url or '-'}")

            stats = manager.get_stats()
            logger.info(
                f"Done: cache hit rate {stats['global']['cache_hit_rate']:.0%}, "
                f"success rate {stats['global']['success_rate']:.0%}"
            )
        except KeyboardInterrupt:
            logger.info("Received interrupt signal, shutting down...")
        finally:
            await manager.shutdown()

    logger.info("Poster resolution stopped")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main(sys.argv[1:])))
