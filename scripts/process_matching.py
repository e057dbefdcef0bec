"""Run the matching engine from the command line.

Usage:
    python scripts/process_matching.py --dry-run
    python scripts/process_matching.py --min-date 2025-01-01T00:00:00Z
"""

import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import config, validate_config_for_service
from src.database import db
from src.logging_utils import CorrelationIdContext, get_logger, setup_logging
from src.models import ensure_utc, round_money
from src.pledgematch.directory import create_directory
from src.pledgematch.matching import MatchingEngine

validate_config_for_service("matching")
setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Allocate matching donor budgets to donations.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Compute the allocation without writing anything",
    )
    parser.add_argument(
        "--min-date",
        type=lambda value: ensure_utc(datetime.fromisoformat(value)),
        help="Only consider donations created at or after this ISO 8601 date",
    )
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)

    await db.initialize()
    engine = MatchingEngine(db, create_directory())

    with CorrelationIdContext(prefix="match"):
        result = await engine.run(dry_run=args.dry_run, min_date=args.min_date)

    print(f"{'Dry run' if result.dry_run else 'Matching'} completed")
    print(f"  Processed: {result.processed}")
    print(f"  Matched:   {result.matched}")
    print(f"  Total:     ${round_money(result.total_matched_amount)}")
    if result.skipped:
        print(f"  Skipped:   {result.skipped} (invalid amount)")
    for error in result.errors:
        print(f"  Error: {error}")

    return 1 if result.errors else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
