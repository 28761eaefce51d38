import argparse
import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from sqlalchemy import MetaData
from core.config import Settings
from core.database import create_engine
from exporter.registry import TableRegistry
from models.base import Base
from models.event_table import event_table
# Import all models to ensure they are registered
from models.checkpoint import ExportCheckpoint  # noqa: F401

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def init_database(settings: Settings, with_event_tables: bool = False):
    logger.info("Connecting to database...")
    engine = create_engine(settings)

    try:
        async with engine.begin() as conn:
            logger.info("Creating checkpoint table...")
            await conn.run_sync(Base.metadata.create_all)

            # Event tables normally belong to the upstream application
            if with_event_tables:
                metadata = MetaData()
                registry = TableRegistry.default(settings.REPORT_MODE_OVERRIDES)
                for schema in registry:
                    event_table(schema, metadata)
                logger.info(f"Creating event tables: {', '.join(registry.all_table_ids())}")
                await conn.run_sync(metadata.create_all)

            logger.info("Tables created successfully.")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create the export service tables")
    parser.add_argument(
        "--with-event-tables",
        action="store_true",
        help="also create the source event tables (local development)",
    )
    args = parser.parse_args()

    asyncio.run(init_database(Settings(), with_event_tables=args.with_event_tables))
