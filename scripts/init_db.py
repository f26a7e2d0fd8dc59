"""
Create the document store tables and the search index
"""

import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import build_engine
from core.exceptions import SearchIndexError
from core.logging import setup_logging
from ingestion.loaders.search_loader import ElasticsearchIndexer
# Importing the package registers every table on Base.metadata
from models import Base

logger = logging.getLogger(__name__)


async def init_database():
    logger.info("Connecting to database...")
    engine = build_engine()

    try:
        async with engine.begin() as conn:
            logger.info("Creating tables...")
            await conn.run_sync(Base.metadata.create_all)
            logger.info(f"Tables ready: {', '.join(sorted(Base.metadata.tables))}")
    finally:
        await engine.dispose()


async def init_search_index():
    indexer = ElasticsearchIndexer()
    try:
        created = await indexer.ensure_index()
        logger.info(f"Search index {indexer.index} {'created' if created else 'already exists'}")
    except SearchIndexError as e:
        logger.error(f"Could not prepare search index: {e}")
        raise
    finally:
        await indexer.close()


async def main():
    await init_database()
    await init_search_index()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(main())
