#!/usr/bin/env python3
"""Setup script for the tour payments API."""

import asyncio
import logging
import sys
from decimal import Decimal
from pathlib import Path

# Add the server directory to the Python path
server_dir = Path(__file__).parent.parent / "server"
sys.path.insert(0, str(server_dir))

from alembic import command  # noqa: E402
from alembic.config import Config  # noqa: E402
from sqlalchemy import func, select  # noqa: E402

from tour_payments.core.database import async_session_factory, close_db  # noqa: E402
from tour_payments.models import Destination  # noqa: E402

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SAMPLE_DESTINATIONS = [
    {
        "title": "Maasai Mara Safari",
        "description": "Three days of game drives in the Maasai Mara National Reserve",
        "citizen_price": Decimal("15000.00"),
        "resident_price": Decimal("250.00"),
        "non_resident_price": Decimal("450.00"),
    },
    {
        "title": "Amboseli Day Trip",
        "description": "Elephants under Kilimanjaro, departing from Nairobi",
        "citizen_price": Decimal("6500.00"),
        "resident_price": Decimal("90.00"),
        "non_resident_price": Decimal("180.00"),
    },
    {
        "title": "Lamu Old Town Walk",
        "description": "Guided walk through the UNESCO-listed old town",
        "citizen_price": Decimal("2000.00"),
        "resident_price": Decimal("25.00"),
        "non_resident_price": Decimal("40.00"),
    },
]


def setup_database() -> None:
    """Bring the schema up to date with Alembic."""
    logger.info("Running database migrations...")
    alembic_cfg = Config(str(server_dir / "db" / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(server_dir / "db" / "alembic"))
    command.upgrade(alembic_cfg, "head")
    logger.info("Database migrations completed")


async def create_sample_data() -> None:
    """Create sample destinations for local testing."""
    logger.info("Creating sample data...")

    async with async_session_factory() as db:
        existing = await db.execute(select(func.count()).select_from(Destination))
        if existing.scalar_one() > 0:
            logger.info("Sample data already exists, skipping...")
            return

        try:
            for values in SAMPLE_DESTINATIONS:
                db.add(Destination(**values))
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("Failed to create sample data")
            raise

    logger.info("Sample data created successfully!")


async def seed() -> None:
    try:
        await create_sample_data()
    finally:
        await close_db()


def main() -> None:
    """Main setup function."""
    logger.info("Starting tour payments API setup...")

    # Alembic's env.py runs its own event loop
    setup_database()
    asyncio.run(seed())

    logger.info("Setup completed successfully!")
    logger.info("You can now start the API server with: cd server && uvicorn tour_payments.main:app --reload")


if __name__ == "__main__":
    main()
