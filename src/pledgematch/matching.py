"""Matching allocation engine.

Distributes matching donor budgets across unprocessed donations, oldest
donation first. The ledger (matching_donation_logs) is the only record of
consumed budget; each run re-aggregates it rather than caching totals.

A run is serialised twice over: an in-process lock keeps runs in this service
from interleaving, and the write transaction (BEGIN IMMEDIATE) keeps runs in
other processes out between the budget aggregate and the last ledger append.
"""

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel

from src.config import config
from src.database import Database
from src.logging_utils import get_logger
from src.models import (
    Donation,
    MatchingDonationLog,
    MatchingDonor,
    MatchingResult,
    ProjectMatchingDonor,
    round_money,
    utc_now,
)
from src.pledgematch.directory import MatchingDonorDirectory
from src.pledgematch.errors import DataIntegrityError

logger = get_logger(__name__)

ZERO = Decimal(0)


class Allocation(BaseModel):
    """One donor's share of one donation."""

    donor_id: str
    match_amount: Decimal  # donation dollars absorbed
    matched_value: Decimal  # matched dollars credited (ledger amount)


def matchable_amount(donation: Donation) -> Decimal:
    """The donation's USD value, if it can be matched.

    Raises:
        DataIntegrityError: If the value is missing, non-finite or not positive.
    """
    value = donation.value_at_donation_time_usd
    if value is None or not value.is_finite() or value <= 0:
        raise DataIntegrityError(
            f"Donation ID {donation.id} has invalid amount ({value})"
        )
    return value


def order_donors(
    donors: Sequence[MatchingDonor],
    consumed: Dict[str, Decimal],
    policy: str = "listing",
) -> List[MatchingDonor]:
    """Order eligible donors by the budget consumption policy.

    Args:
        donors: Eligible donors in directory listing order.
        consumed: donor id -> budget consumed so far.
        policy: ``listing`` keeps directory order, ``remaining_budget_asc``
            drains the smallest remaining budget first, ``priority`` puts the
            highest priority first. Sorting is stable, ties keep listing order.
    """
    if policy == "remaining_budget_asc":
        return sorted(donors, key=lambda d: d.total_matching_amount - consumed.get(d.id, ZERO))
    if policy == "priority":
        return sorted(donors, key=lambda d: -d.priority)
    return list(donors)


def plan_allocations(
    donation_amount: Decimal,
    donors: Sequence[MatchingDonor],
    consumed: Dict[str, Decimal],
) -> List[Allocation]:
    """Split one donation across donors without exceeding any budget.

    Pure function: ``consumed`` is read, never modified.

    Args:
        donation_amount: Matchable USD value of the donation.
        donors: Eligible donors in consumption order.
        consumed: donor id -> budget consumed before this donation.

    Returns:
        Allocations in donor order.
    """
    spent = dict(consumed)
    remaining_donation = donation_amount
    allocations: List[Allocation] = []

    for donor in donors:
        already_matched = spent.get(donor.id, ZERO)
        remaining_budget = donor.total_matching_amount - already_matched

        logger.debug(
            f"  Donor {donor.name} ({donor.id}): total={donor.total_matching_amount}, "
            f"matched={already_matched}, remaining={remaining_budget}"
        )

        if remaining_budget <= 0:
            continue

        if donor.multiplier <= 0:
            logger.warning(f"  Donor {donor.id} has multiplier of {donor.multiplier}, skipping")
            continue

        max_matchable = remaining_budget / donor.multiplier
        if remaining_donation >= max_matchable:
            # Budget is the binding limit: drain it exactly, no rounding dust
            match_amount = max_matchable
            matched_value = remaining_budget
        else:
            match_amount = remaining_donation
            matched_value = min(match_amount * donor.multiplier, remaining_budget)
        if match_amount <= 0:
            continue

        allocations.append(
            Allocation(donor_id=donor.id, match_amount=match_amount, matched_value=matched_value)
        )
        spent[donor.id] = already_matched + matched_value
        remaining_donation -= match_amount

        if remaining_donation <= 0:
            break

    return allocations


class MatchingEngine:
    """Allocates matching donor budgets to unprocessed donations."""

    def __init__(
        self,
        database: Database,
        directory: MatchingDonorDirectory,
        donor_order: Optional[str] = None,
    ):
        """Initialize the engine.

        Args:
            database: Donation store and ledger.
            directory: Source of matching donor definitions.
            donor_order: Budget consumption policy. Defaults to
                config.matching_donor_order.
        """
        self.db = database
        self.directory = directory
        self.donor_order = donor_order or config.matching_donor_order
        self._run_lock = asyncio.Lock()

    async def run(self, dry_run: bool = False, min_date: Optional[datetime] = None) -> MatchingResult:
        """Run one matching pass.

        Args:
            dry_run: Compute the allocation without writing anything.
            min_date: Only consider donations created at or after this time.

        Returns:
            Aggregate counts, the matched total and per-donation errors.
        """
        logger.info(
            f"Starting matching run (dry_run={dry_run}"
            + (f", min_date={min_date.isoformat()})" if min_date else ")")
        )

        async with self._run_lock:
            if not await self.db.list_unprocessed_donations(min_date):
                logger.info("No unprocessed donations")
                return MatchingResult(dry_run=dry_run)

            donors = await self.directory.list_active_matching_donors(utc_now())
            logger.info(f"Found {len(donors)} active matching donors")

            async with self.db.transaction(write=not dry_run):
                result = await self._allocate(donors, dry_run, min_date)

        logger.info(
            f"Matching complete: processed={result.processed}, matched={result.matched}, "
            f"total=${round_money(result.total_matched_amount)}, skipped={result.skipped}, "
            f"errors={len(result.errors)}"
        )
        return result

    async def _allocate(
        self,
        donors: List[MatchingDonor],
        dry_run: bool,
        min_date: Optional[datetime],
    ) -> MatchingResult:
        result = MatchingResult(dry_run=dry_run)

        # Re-read under the lock; this is the authoritative batch
        donations = await self.db.list_unprocessed_donations(min_date)
        result.processed = len(donations)
        logger.info(f"Found {len(donations)} unprocessed donations")

        consumed: Dict[str, Decimal] = {}
        if donors:
            consumed = await self.db.sum_matched_by_donor(donor.id for donor in donors)
            logger.info(
                "Current matched amounts: "
                + ", ".join(f"{k}=${round_money(v)}" for k, v in consumed.items())
            )
        else:
            logger.info("No active matching donors, marking donations as processed")

        for donation in donations:
            try:
                amount = matchable_amount(donation)
            except DataIntegrityError as e:
                logger.warning(f"{e}, skipping matching but not marking as processed")
                result.skipped += 1
                continue

            try:
                eligible = [donor for donor in donors if donor.supports(donation.project_slug)]
                ordered = order_donors(eligible, consumed, self.donor_order)
                allocations = plan_allocations(amount, ordered, consumed)

                logger.info(
                    f"Donation ID {donation.id}: amount=${round_money(amount)}, "
                    f"project={donation.project_slug}, eligible donors={len(eligible)}, "
                    f"matches={len(allocations)}"
                )

                if not dry_run:
                    await self._persist(donation, allocations)

                for allocation in allocations:
                    consumed[allocation.donor_id] = (
                        consumed.get(allocation.donor_id, ZERO) + allocation.matched_value
                    )
                    result.matched += 1
                    result.total_matched_amount += allocation.matched_value
            except Exception as e:
                error_msg = f"Error processing donation ID {donation.id}: {e}"
                logger.error(error_msg, exc_info=True)
                result.errors.append(error_msg)

        return result

    async def _persist(self, donation: Donation, allocations: List[Allocation]) -> None:
        """Write one donation's ledger entries and processed flag atomically."""
        async with self.db.savepoint():
            for allocation in allocations:
                await self.db.append_matching_log(
                    MatchingDonationLog(
                        donor_id=allocation.donor_id,
                        donation_id=donation.id,
                        matched_amount=allocation.matched_value,
                        project_slug=donation.project_slug,
                        date=utc_now(),
                    )
                )
                logger.info(
                    f"  Matched ${round_money(allocation.matched_value)} from donor "
                    f"{allocation.donor_id} on ${round_money(allocation.match_amount)}"
                )
            await self.db.mark_processed(donation.id)

    async def donors_for_project(self, project_slug: str) -> List[ProjectMatchingDonor]:
        """Donors who have matched donations for a project, with their totals."""
        totals = await self.db.matched_totals_for_project(project_slug)
        if not totals:
            return []

        names = {donor.id: donor.name for donor in await self.directory.list_matching_donors()}
        return [
            ProjectMatchingDonor(
                donor_id=donor_id,
                donor_name=names.get(donor_id) or "Unknown Donor",
                total_matched_amount=total,
            )
            for donor_id, total in totals.items()
        ]
