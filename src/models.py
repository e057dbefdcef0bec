"""Shared data models for PledgeMatch.

All Pydantic models used across the store, the reconciler and the matching
engine. Money is always ``Decimal``.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    field_serializer,
    field_validator,
)
from pydantic.alias_generators import to_camel

CENT = Decimal("0.01")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def round_money(value: Decimal) -> Decimal:
    """Round a money value to cents for presentation."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


# Provider event payloads


class ProviderEvent(BaseModel):
    """Fields shared by every decrypted payment-provider event.

    Unknown keys are kept so the raw payload survives a parse/dump cycle.
    """

    model_config = ConfigDict(
        extra="allow",
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )

    eid: Optional[str] = None
    pledge_id: Optional[str] = None
    donation_uuid: Optional[str] = None
    event_timestamp: Any = None

    status: Optional[str] = None
    currency: Optional[str] = None
    amount: Optional[Decimal] = None
    value_at_donation_time_usd: Optional[Decimal] = Field(
        default=None, alias="valueAtDonationTimeUSD"
    )
    payout_amount: Optional[Decimal] = None
    payout_currency: Optional[str] = None
    external_id: Optional[str] = None
    campaign_id: Optional[str] = None
    transaction_hash: Optional[str] = None
    timestampms: Optional[str] = Field(default=None, description="Epoch milliseconds")

    @field_validator("value_at_donation_time_usd", mode="before")
    @classmethod
    def falsy_value_is_missing(cls, value: Any) -> Any:
        # "", false and 0 all mean "no value reported"
        if isinstance(value, str):
            return value.strip() or None
        if not value:
            return None
        return value


class DepositTransactionEvent(ProviderEvent):
    """DEPOSIT_TRANSACTION: crypto/fiat deposit confirmed by the provider."""

    payment_method: Optional[str] = None


class TransactionConvertedEvent(ProviderEvent):
    """TRANSACTION_CONVERTED: stock donation settled and converted."""

    converted_at: Optional[str] = Field(default=None, description="Epoch milliseconds")
    net_value_amount: Optional[Decimal] = None
    gross_amount: Optional[Decimal] = None
    net_value_currency: Optional[str] = None


DEPOSIT_TRANSACTION = "DEPOSIT_TRANSACTION"
TRANSACTION_CONVERTED = "TRANSACTION_CONVERTED"

EVENT_MODELS: dict[str, type[ProviderEvent]] = {
    DEPOSIT_TRANSACTION: DepositTransactionEvent,
    TRANSACTION_CONVERTED: TransactionConvertedEvent,
}


def parse_event(event_type: str, payload: dict[str, Any]) -> ProviderEvent:
    """Parse a raw payload into the model registered for its event type."""
    model = EVENT_MODELS.get(event_type, ProviderEvent)
    return model.model_validate(payload)


class WebhookEnvelope(BaseModel):
    """Outer webhook body: event type plus the hex encoded ciphertext."""

    model_config = ConfigDict(populate_by_name=True)

    event_type: str = Field(alias="eventType", min_length=1, max_length=200)
    payload: str = Field(min_length=1)


# Persistent records


class Donation(BaseModel):
    """One funding pledge."""

    id: Optional[int] = None
    pledge_id: Optional[str] = None
    donation_uuid: Optional[str] = None
    project_slug: str
    donation_type: Literal["crypto", "fiat", "stock"] = "crypto"

    amount: Optional[Decimal] = Field(default=None, allow_inf_nan=True)
    currency: Optional[str] = None
    value_at_donation_time_usd: Optional[Decimal] = Field(default=None, allow_inf_nan=True)
    status: Optional[str] = None
    processed: bool = False
    event_data: dict[str, dict[str, Any]] = Field(default_factory=dict)

    transaction_hash: Optional[str] = None
    payout_amount: Optional[Decimal] = Field(default=None, allow_inf_nan=True)
    payout_currency: Optional[str] = None
    external_id: Optional[str] = None
    campaign_id: Optional[str] = None
    timestampms: Optional[datetime] = None
    eid: Optional[str] = None
    payment_method: Optional[str] = None

    converted_at: Optional[datetime] = None
    net_value_amount: Optional[Decimal] = Field(default=None, allow_inf_nan=True)
    gross_amount: Optional[Decimal] = Field(default=None, allow_inf_nan=True)
    net_value_currency: Optional[str] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def event(self, event_type: str) -> Optional[ProviderEvent]:
        """Typed view of the payload stored for ``event_type``, if any."""
        raw = self.event_data.get(event_type)
        if raw is None:
            return None
        return parse_event(event_type, raw)


class MatchingDonor(BaseModel):
    """A sponsor offering to top up donations (read-only snapshot)."""

    id: str = Field(description="Ledger key for this donor")
    name: str
    matching_type: Literal["all-projects", "per-project"]
    total_matching_amount: Decimal = Field(description="Budget ceiling in matched dollars")
    multiplier: Decimal = Field(default=Decimal(1), description="Matched dollars per donation dollar")
    supported_project_slugs: list[str] = Field(default_factory=list)
    start_date: datetime
    end_date: datetime
    status: Literal["active", "inactive"] = "active"
    priority: int = Field(default=0, description="Higher goes first under the priority order policy")

    @field_validator("multiplier", mode="before")
    @classmethod
    def _default_multiplier(cls, value: Any) -> Any:
        return 1 if value is None else value

    @field_validator("start_date", "end_date")
    @classmethod
    def _normalize_dates(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def is_eligible(self, now: datetime) -> bool:
        """Active and inside its [start_date, end_date] window."""
        now = ensure_utc(now)
        return self.status == "active" and self.start_date <= now <= self.end_date

    def supports(self, project_slug: str) -> bool:
        if self.matching_type == "all-projects":
            return True
        return project_slug in self.supported_project_slugs


class MatchingDonationLog(BaseModel):
    """Append-only ledger entry."""

    id: Optional[int] = None
    donor_id: str
    donation_id: int
    matched_amount: Decimal
    project_slug: str
    date: datetime = Field(default_factory=utc_now)


class WebhookEvent(BaseModel):
    """Idempotency and audit record for one provider event id."""

    eid: str
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    donation_id: Optional[int] = None
    processed: bool = False
    claimed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)


class WebhookOutcome(BaseModel):
    """What a webhook delivery did."""

    status: Literal["applied", "duplicate", "ignored"]
    event_type: str
    eid: Optional[str] = None
    donation_id: Optional[int] = None


# Matching engine results and API shapes


class MatchingResult(BaseModel):
    """Aggregate outcome of one matching run."""

    processed: int = 0
    matched: int = 0
    total_matched_amount: Decimal = Decimal(0)
    skipped: int = Field(default=0, description="Donations left queued for an invalid amount")
    errors: list[str] = Field(default_factory=list)
    dry_run: bool = False


class MatchingRunRequest(BaseModel):
    """Body of the manual matching trigger."""

    model_config = ConfigDict(populate_by_name=True)

    # Only a JSON true selects a dry run
    dry_run: StrictBool = Field(default=False, alias="dryRun")
    min_date: Optional[str] = Field(default=None, alias="minDate")


class MatchingRunResponse(BaseModel):
    """Matching run result as presented to HTTP callers."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    message: str
    dry_run: bool
    processed: int
    matched: int
    total_matched_amount: Decimal
    skipped: int = 0
    errors: Optional[list[str]] = None

    @field_serializer("total_matched_amount")
    def _present_total(self, value: Decimal) -> float:
        return float(round_money(value))

    @classmethod
    def from_result(cls, result: MatchingResult) -> "MatchingRunResponse":
        return cls(
            message="Dry run completed" if result.dry_run else "Matching process completed",
            dry_run=result.dry_run,
            processed=result.processed,
            matched=result.matched,
            total_matched_amount=result.total_matched_amount,
            skipped=result.skipped,
            errors=result.errors or None,
        )


class ProjectMatchingDonor(BaseModel):
    """Donor who has matched donations for a project, with its project total."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    donor_id: str
    donor_name: str
    total_matched_amount: Decimal

    @field_serializer("total_matched_amount")
    def _present_total(self, value: Decimal) -> float:
        return float(round_money(value))
