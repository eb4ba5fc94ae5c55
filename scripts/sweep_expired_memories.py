"""Delete expired AI memories.

Runs once by default, or forever on an interval.

Usage:
    python -m scripts.sweep_expired_memories
    python -m scripts.sweep_expired_memories --loop --interval 600
"""

import argparse
import asyncio
import logging

from src.conversations.memory_store import MemoryStore
from src.db.engine import Database
from src.logging_config import configure_logging
from src.settings import get_settings

logger = logging.getLogger(__name__)


async def sweep_once(store: MemoryStore) -> int:
    removed = await store.sweep_expired()
    logger.info("Removed %d expired memories", removed)
    return removed


async def run(loop: bool, interval: int) -> int:
    settings = get_settings()
    database = Database.from_settings(settings)
    store = MemoryStore(database)
    total = 0
    try:
        await database.create_schema()
        total += await sweep_once(store)
        while loop:
            await asyncio.sleep(interval)
            total += await sweep_once(store)
    finally:
        await database.dispose()
    return total


def main():
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Delete expired AI memories")
    parser.add_argument(
        "--loop", action="store_true",
        help="Keep running, sweeping every --interval seconds",
    )
    parser.add_argument(
        "--interval", type=int, default=settings.memory_sweep_interval_seconds,
        help="Seconds between sweeps in --loop mode",
    )
    args = parser.parse_args()

    configure_logging()
    try:
        asyncio.run(run(args.loop, args.interval))
    except KeyboardInterrupt:
        logger.info("Sweep loop stopped")


if __name__ == "__main__":
    main()
