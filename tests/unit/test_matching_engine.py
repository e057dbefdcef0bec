"""Unit tests for the matching allocation engine."""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from src.models import MatchingDonationLog, utc_now
from src.pledgematch.directory import StaticDonorDirectory
from src.pledgematch.errors import DirectoryUnavailableError
from src.pledgematch.matching import MatchingEngine, order_donors, plan_allocations


async def seed_consumed(db, donation, donor_id, amount):
    """Give a donor prior ledger consumption through an earlier donation."""
    await db.append_matching_log(
        MatchingDonationLog(
            donor_id=donor_id,
            donation_id=donation.id,
            matched_amount=Decimal(amount),
            project_slug=donation.project_slug,
        )
    )
    await db.mark_processed(donation.id)


@pytest.mark.unit
class TestMatchingScenarios:
    """Test end-to-end allocation against a real store."""

    @pytest.mark.asyncio
    async def test_budget_caps_single_donor(self, test_db, make_donor, make_donation):
        """Test a $100 donation against a $50 budget at x1 yields one $50 entry."""
        donation = await make_donation("100")
        engine = MatchingEngine(test_db, StaticDonorDirectory([make_donor("D1", "50", "1")]))

        result = await engine.run()

        assert result.processed == 1
        assert result.matched == 1
        assert result.total_matched_amount == Decimal("50")
        logs = await test_db.list_matching_logs()
        assert [(log.donor_id, log.matched_amount) for log in logs] == [("D1", Decimal("50"))]
        assert (await test_db.get_donation(donation.id)).processed is True

    @pytest.mark.asyncio
    async def test_multiplier_and_spillover(self, test_db, make_donor, make_donation):
        """Test $40 against D1 (remaining $10, x2) then D2 (remaining $100, x1)."""
        earlier = await make_donation("1")
        await seed_consumed(test_db, earlier, "D1", "90")
        await make_donation("40")

        donors = [make_donor("D1", "100", "2"), make_donor("D2", "100", "1")]
        engine = MatchingEngine(test_db, StaticDonorDirectory(donors))

        result = await engine.run()

        assert result.processed == 1
        assert result.matched == 2
        assert result.total_matched_amount == Decimal("45")
        new_logs = [log for log in await test_db.list_matching_logs() if log.donation_id != earlier.id]
        assert [(log.donor_id, log.matched_amount) for log in new_logs] == [
            ("D1", Decimal("10")),
            ("D2", Decimal("35")),
        ]

    @pytest.mark.asyncio
    async def test_zero_value_donation_left_queued(self, test_db, make_donor, make_donation):
        """Test a $0 donation gets no entries and stays unprocessed."""
        donation = await make_donation("0")
        engine = MatchingEngine(test_db, StaticDonorDirectory([make_donor()]))

        result = await engine.run()

        assert result.matched == 0
        assert result.skipped == 1
        assert result.errors == []
        assert await test_db.list_matching_logs() == []
        assert (await test_db.get_donation(donation.id)).processed is False

    @pytest.mark.asyncio
    async def test_missing_and_non_finite_values_skipped(self, test_db, make_donor, make_donation):
        """Test that null and NaN values are skipped, not matched."""
        missing = await make_donation(None)
        nan = await make_donation("NaN")
        engine = MatchingEngine(test_db, StaticDonorDirectory([make_donor()]))

        result = await engine.run()

        assert result.skipped == 2
        assert result.total_matched_amount == Decimal("0")
        assert (await test_db.get_donation(missing.id)).processed is False
        assert (await test_db.get_donation(nan.id)).processed is False

    @pytest.mark.asyncio
    async def test_no_unprocessed_donations(self, test_db, make_donor):
        """Test that an empty queue returns a zero result without reading donors."""
        directory = StaticDonorDirectory([make_donor()])
        directory.list_active_matching_donors = AsyncMock()
        engine = MatchingEngine(test_db, directory)

        result = await engine.run()

        assert (result.processed, result.matched, result.total_matched_amount) == (0, 0, Decimal("0"))
        directory.list_active_matching_donors.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_active_donors_marks_processed(self, test_db, make_donation):
        """Test that without donors valid donations are drained with no entries."""
        valid = await make_donation("25")
        invalid = await make_donation("0")
        engine = MatchingEngine(test_db, StaticDonorDirectory([]))

        result = await engine.run()

        assert result.processed == 2
        assert result.matched == 0
        assert (await test_db.get_donation(valid.id)).processed is True
        assert (await test_db.get_donation(invalid.id)).processed is False
        assert await test_db.list_matching_logs() == []

    @pytest.mark.asyncio
    async def test_inactive_and_expired_donors_ignored(self, test_db, make_donor, make_donation):
        """Test that only active donors inside their window receive entries."""
        await make_donation("10")
        now = utc_now()
        donors = [
            make_donor("inactive", status="inactive"),
            make_donor("expired", end_date=now - timedelta(days=1)),
            make_donor("future", start_date=now + timedelta(days=1)),
            make_donor("live", "100"),
        ]
        engine = MatchingEngine(test_db, StaticDonorDirectory(donors))

        await engine.run()

        assert [log.donor_id for log in await test_db.list_matching_logs()] == ["live"]

    @pytest.mark.asyncio
    async def test_per_project_donor_only_matches_its_projects(
        self, test_db, make_donor, make_donation
    ):
        """Test that per-project donors only match donations to listed slugs."""
        await make_donation("10", project_slug="proj-a")
        await make_donation("10", project_slug="proj-b")
        donor = make_donor(
            "P1", "100", matching_type="per-project", supported_project_slugs=["proj-b"]
        )
        engine = MatchingEngine(test_db, StaticDonorDirectory([donor]))

        result = await engine.run()

        assert result.processed == 2
        logs = await test_db.list_matching_logs()
        assert [log.project_slug for log in logs] == ["proj-b"]

    @pytest.mark.asyncio
    async def test_min_date_filters_donations(self, test_db, make_donor, make_donation):
        """Test that only donations created at or after min_date are considered."""
        old = await make_donation("10", created_at=utc_now() - timedelta(days=10))
        recent = await make_donation("10")
        engine = MatchingEngine(test_db, StaticDonorDirectory([make_donor()]))

        result = await engine.run(min_date=utc_now() - timedelta(days=1))

        assert result.processed == 1
        assert (await test_db.get_donation(old.id)).processed is False
        assert (await test_db.get_donation(recent.id)).processed is True

    @pytest.mark.asyncio
    async def test_oldest_donation_served_first(self, test_db, make_donor, make_donation):
        """Test that a scarce budget goes to the earliest donation."""
        first = await make_donation("30")
        second = await make_donation("30")
        engine = MatchingEngine(test_db, StaticDonorDirectory([make_donor("D1", "40")]))

        await engine.run()

        totals = {
            log.donation_id: log.matched_amount for log in await test_db.list_matching_logs()
        }
        assert totals == {first.id: Decimal("30"), second.id: Decimal("10")}


@pytest.mark.unit
class TestRunGuarantees:
    """Test dry runs, monotonic processing and failure isolation."""

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, test_db, make_donor, make_donation):
        """Test that a dry run reports the allocation without persisting it."""
        donation = await make_donation("100")
        engine = MatchingEngine(test_db, StaticDonorDirectory([make_donor("D1", "50")]))

        preview = await engine.run(dry_run=True)

        assert preview.dry_run is True
        assert preview.total_matched_amount == Decimal("50")
        assert await test_db.list_matching_logs() == []
        assert (await test_db.get_donation(donation.id)).processed is False

        # The real run then produces exactly what the preview promised
        real = await engine.run()
        assert real.total_matched_amount == preview.total_matched_amount
        assert real.matched == preview.matched

    @pytest.mark.asyncio
    async def test_processed_donations_never_rematched(self, test_db, make_donor, make_donation):
        """Test that a second run neither re-matches nor unmarks donations."""
        donation = await make_donation("20")
        engine = MatchingEngine(test_db, StaticDonorDirectory([make_donor()]))

        await engine.run()
        second = await engine.run()

        assert second.processed == 0
        assert len(await test_db.list_matching_logs()) == 1
        assert (await test_db.get_donation(donation.id)).processed is True

    @pytest.mark.asyncio
    async def test_failure_rolls_back_only_that_donation(
        self, test_db, make_donor, make_donation
    ):
        """Test that one donation's write failure does not abort the batch."""
        failing = await make_donation("10")
        healthy = await make_donation("10")
        engine = MatchingEngine(test_db, StaticDonorDirectory([make_donor()]))

        real_mark = test_db.mark_processed

        async def flaky_mark(donation_id):
            if donation_id == failing.id:
                raise RuntimeError("disk full")
            return await real_mark(donation_id)

        with patch.object(test_db, "mark_processed", side_effect=flaky_mark):
            result = await engine.run()

        assert len(result.errors) == 1
        assert f"Error processing donation ID {failing.id}" in result.errors[0]
        assert result.matched == 1
        assert result.total_matched_amount == Decimal("10")

        logs = await test_db.list_matching_logs()
        assert [log.donation_id for log in logs] == [healthy.id]
        assert (await test_db.get_donation(failing.id)).processed is False
        assert (await test_db.get_donation(healthy.id)).processed is True

    @pytest.mark.asyncio
    async def test_rolled_back_donation_does_not_consume_budget(
        self, test_db, make_donor, make_donation
    ):
        """Test that a failed donation's allocation is returned to the budget."""
        failing = await make_donation("30")
        await make_donation("30")
        engine = MatchingEngine(test_db, StaticDonorDirectory([make_donor("D1", "40")]))

        real_mark = test_db.mark_processed

        async def flaky_mark(donation_id):
            if donation_id == failing.id:
                raise RuntimeError("boom")
            return await real_mark(donation_id)

        with patch.object(test_db, "mark_processed", side_effect=flaky_mark):
            result = await engine.run()

        # The second donation still sees the full $40 budget
        assert result.total_matched_amount == Decimal("30")

    @pytest.mark.asyncio
    async def test_directory_failure_propagates(self, test_db, make_donation):
        """Test that an unavailable directory fails the run before any write."""
        donation = await make_donation("10")
        directory = StaticDonorDirectory()
        directory.list_active_matching_donors = AsyncMock(
            side_effect=DirectoryUnavailableError("cms down")
        )
        engine = MatchingEngine(test_db, directory)

        with pytest.raises(DirectoryUnavailableError):
            await engine.run()

        assert (await test_db.get_donation(donation.id)).processed is False

    @pytest.mark.asyncio
    async def test_donors_for_project(self, test_db, make_donor, make_donation):
        """Test per-project totals with names, including unknown donors."""
        donation = await make_donation("10", project_slug="proj-a")
        await seed_consumed(test_db, donation, "D1", "5")
        await seed_consumed(test_db, donation, "D1", "2.5")
        await seed_consumed(test_db, donation, "ghost", "1")
        engine = MatchingEngine(test_db, StaticDonorDirectory([make_donor("D1")]))

        donors = await engine.donors_for_project("proj-a")

        assert [(d.donor_id, d.donor_name, d.total_matched_amount) for d in donors] == [
            ("D1", "Donor D1", Decimal("7.5")),
            ("ghost", "Unknown Donor", Decimal("1")),
        ]
        assert await engine.donors_for_project("proj-unknown") == []


@pytest.mark.unit
class TestAllocationPlanning:
    """Test the pure allocation helpers."""

    def test_multiplier_consumes_budget_faster(self, make_donor):
        """Test that x3 on a $30 budget absorbs $10 of donation."""
        plan = plan_allocations(Decimal("50"), [make_donor("D1", "30", "3")], {})

        assert len(plan) == 1
        assert plan[0].match_amount == Decimal("10")
        assert plan[0].matched_value == Decimal("30")

    def test_inexact_division_never_overshoots(self, make_donor):
        """Test that a budget not divisible by the multiplier is still respected."""
        plan = plan_allocations(Decimal("100"), [make_donor("D1", "10", "3")], {})

        assert plan[0].matched_value <= Decimal("10")

    def test_non_positive_multiplier_skipped(self, make_donor):
        """Test that a zero multiplier donor is skipped."""
        donors = [make_donor("zero", multiplier="0"), make_donor("D2", "100")]

        plan = plan_allocations(Decimal("10"), donors, {})

        assert [a.donor_id for a in plan] == ["D2"]

    def test_exhausted_donor_skipped(self, make_donor):
        """Test that a fully consumed budget receives nothing."""
        donors = [make_donor("D1", "50"), make_donor("D2", "50")]

        plan = plan_allocations(Decimal("10"), donors, {"D1": Decimal("50")})

        assert [a.donor_id for a in plan] == ["D2"]

    def test_consumed_map_not_modified(self, make_donor):
        """Test that planning is side-effect free."""
        consumed = {"D1": Decimal("5")}

        plan_allocations(Decimal("10"), [make_donor("D1", "50")], consumed)

        assert consumed == {"D1": Decimal("5")}

    def test_null_multiplier_defaults_to_one(self, make_donor):
        """Test that a missing multiplier behaves as x1."""
        donor = make_donor("D1", "100", multiplier=None)

        assert donor.multiplier == Decimal(1)

    def test_order_policies(self, make_donor):
        """Test listing, remaining-budget and priority orderings."""
        big = make_donor("big", "100", priority=1)
        small = make_donor("small", "20", priority=5)
        tied = make_donor("tied", "100", priority=1)
        donors = [big, small, tied]

        assert [d.id for d in order_donors(donors, {}, "listing")] == ["big", "small", "tied"]
        assert [d.id for d in order_donors(donors, {}, "remaining_budget_asc")] == [
            "small",
            "big",
            "tied",
        ]
        assert [d.id for d in order_donors(donors, {"tied": Decimal("90")}, "remaining_budget_asc")] == [
            "tied",
            "small",
            "big",
        ]
        assert [d.id for d in order_donors(donors, {}, "priority")] == ["small", "big", "tied"]

    @pytest.mark.asyncio
    async def test_priority_policy_applied_by_engine(self, test_db, make_donor, make_donation):
        """Test that the engine consumes the higher priority budget first."""
        await make_donation("10")
        donors = [make_donor("low", priority=0), make_donor("high", priority=9)]
        engine = MatchingEngine(test_db, StaticDonorDirectory(donors), donor_order="priority")

        await engine.run()

        assert [log.donor_id for log in await test_db.list_matching_logs()] == ["high"]
