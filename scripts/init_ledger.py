"""Database initialization script.

Run this to create the PledgeMatch donation store and matching ledger schema,
and report the matching donors the configured directory currently exposes.
"""

import asyncio
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import config
from src.database import db
from src.logging_utils import get_logger, setup_logging
from src.models import round_money
from src.pledgematch.directory import create_directory
from src.pledgematch.errors import DirectoryUnavailableError

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def main():
    """Initialize the database."""
    logger.info("Initializing PledgeMatch database...")
    logger.info(f"Database path: {db.db_path}")

    await db.initialize()

    try:
        donors = await create_directory().list_active_matching_donors()
    except DirectoryUnavailableError as e:
        logger.error(f"Could not load matching donors: {e}")
        sys.exit(1)

    if donors:
        consumed = await db.sum_matched_by_donor(donor.id for donor in donors)
        logger.info(f"Found {len(donors)} active matching donors.")
        for donor in donors:
            remaining = donor.total_matching_amount - consumed.get(donor.id, 0)
            logger.info(
                f"- {donor.id}: {donor.name} ({donor.matching_type}, x{donor.multiplier}, "
                f"${round_money(remaining)} remaining)"
            )
    else:
        logger.warning(f"No active matching donors found ({config.matching_donor_source} source).")

    logger.info("Database initialization complete!")


if __name__ == "__main__":
    asyncio.run(main())
