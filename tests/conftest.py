import os
from datetime import timedelta
from decimal import Decimal

import pytest

TEST_AES_KEY = "000102030405060708090a0b0c0d0e0f101112131415161718191a1b1c1d1e1f"
TEST_AES_IV = "0f0e0d0c0b0a09080706050403020100"

# Set dummy environment variables for testing
# This must run before src.config is imported by any test
os.environ.setdefault("WEBHOOK_AES_KEY", TEST_AES_KEY)
os.environ.setdefault("WEBHOOK_AES_IV", TEST_AES_IV)
os.environ.setdefault("MATCHING_TRIGGER_ENABLED", "false")
os.environ.setdefault("MATCHING_DONOR_ORDER", "listing")
os.environ.setdefault("LOG_FORMAT", "text")

from src.database import Database  # noqa: E402
from src.models import Donation, MatchingDonor, utc_now  # noqa: E402


@pytest.fixture
def aes_key_iv():
    return TEST_AES_KEY, TEST_AES_IV


@pytest.fixture
async def test_db(tmp_path):
    """Create a temporary test database."""
    db = Database(str(tmp_path / "test.db"))
    await db.initialize()
    return db


@pytest.fixture
def make_donor():
    """Build an active matching donor valid for the surrounding month."""

    def _make(donor_id="D1", budget="100", multiplier="1", **overrides):
        now = utc_now()
        fields = {
            "id": donor_id,
            "name": f"Donor {donor_id}",
            "matching_type": "all-projects",
            "total_matching_amount": Decimal(budget),
            "multiplier": Decimal(multiplier) if multiplier is not None else None,
            "start_date": now - timedelta(days=30),
            "end_date": now + timedelta(days=30),
            "status": "active",
        }
        fields.update(overrides)
        return MatchingDonor(**fields)

    return _make


@pytest.fixture
def make_donation(test_db):
    """Insert a donation; later calls get later created_at values."""
    counter = {"n": 0}
    base = utc_now() - timedelta(hours=1)

    async def _make(value="100", project_slug="proj-a", pledge_id=None, **overrides):
        counter["n"] += 1
        fields = {
            "pledge_id": pledge_id or f"pledge-{counter['n']}",
            "project_slug": project_slug,
            "donation_type": "crypto",
            "value_at_donation_time_usd": Decimal(value) if value is not None else None,
            "created_at": base + timedelta(seconds=counter["n"]),
        }
        fields.update(overrides)
        return await test_db.create_donation(Donation(**fields))

    return _make
