#!/usr/bin/env python3
# eventsight/core/commands/init_db.py
"""
Storage initialization command for Eventsight.

Creates the relational tables (posthog_events, events, ingestion_attempts)
and the vector store collections (raw events, user profiles, query cache).
Safe to run repeatedly: existing tables and collections are left alone.

Usage:
    python -m eventsight.core.commands.init_db
    python -m eventsight.core.commands.init_db --skip-vectors
"""

import argparse
import asyncio
import logging
import sys

from eventsight.config import settings
from eventsight.dependencies import build_container

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("eventsight.commands.init_db")


async def init_storage(skip_vectors: bool = False) -> None:
    container = build_container(settings, use_null_pool=True)
    try:
        await container.database.init_db()
        logger.info("Database tables ready (%s)", container.database.dialect)

        if skip_vectors:
            logger.info("Skipping vector store collections")
            return
        await container.vector_store.ensure_collections(settings.collection_names)
        logger.info("Vector store collections ready: %s", ", ".join(settings.collection_names))
    finally:
        await container.close()


def main():
    parser = argparse.ArgumentParser(description="Create Eventsight tables and vector collections")
    parser.add_argument(
        "--skip-vectors",
        action="store_true",
        help="Only create database tables",
    )
    args = parser.parse_args()

    try:
        asyncio.run(init_storage(skip_vectors=args.skip_vectors))
    except Exception as e:
        logger.error("Initialization failed: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
