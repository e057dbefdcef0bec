"""Webhook reconciliation for payment-provider donation events.

Decrypts the provider's event, rejects stale deliveries, and applies each event
id at most once to the donation it refers to.
"""

import math
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from src.config import config
from src.database import Database
from src.logging_utils import get_logger
from src.models import (
    DEPOSIT_TRANSACTION,
    TRANSACTION_CONVERTED,
    Donation,
    ProviderEvent,
    WebhookEnvelope,
    WebhookOutcome,
    parse_event,
    utc_now,
)
from src.pledgematch.decryption import PayloadDecryptor
from src.pledgematch.errors import (
    ConfigurationError,
    DecryptionError,
    NotFoundError,
    ValidationError,
    WebhookRejected,
)
from src.pledgematch.idempotency import IdempotencyGuard

logger = get_logger(__name__)

# Fields copied from any recognised event when present in the payload
SHARED_FIELDS = (
    "payout_amount",
    "payout_currency",
    "external_id",
    "campaign_id",
    "currency",
    "amount",
    "status",
    "eid",
)
DEPOSIT_FIELDS = SHARED_FIELDS + ("transaction_hash", "payment_method")
CONVERTED_FIELDS = SHARED_FIELDS + ("net_value_amount", "gross_amount", "net_value_currency")

Handler = Callable[[str, Dict[str, Any]], Awaitable[WebhookOutcome]]


def epoch_ms_to_datetime(value: Any, field: str) -> datetime:
    """Convert an epoch-milliseconds value (number or numeric string) to UTC.

    Raises:
        ValidationError: If the value is not a finite number of milliseconds.
    """
    try:
        millis = Decimal(str(value).strip())
        return datetime.fromtimestamp(float(millis) / 1000, tz=timezone.utc)
    except (InvalidOperation, ValueError, OverflowError, OSError) as e:
        raise ValidationError(f"Invalid {field}: {value!r}") from e


def _copy_present(event: ProviderEvent, fields: Iterable[str]) -> Dict[str, Any]:
    present = event.model_fields_set
    return {field: getattr(event, field) for field in fields if field in present}


class WebhookReconciler:
    """Turns provider webhook deliveries into donation updates."""

    def __init__(
        self,
        database: Database,
        decryptor: Optional[PayloadDecryptor] = None,
        guard: Optional[IdempotencyGuard] = None,
        max_event_age_seconds: Optional[int] = None,
    ):
        """Initialize the reconciler.

        Args:
            database: Donation store.
            decryptor: Payload decryptor. Defaults to one using the configured key/IV.
            guard: Idempotency guard. Defaults to one over ``database``.
            max_event_age_seconds: Freshness window. Defaults to
                config.webhook_max_event_age_seconds.
        """
        self.db = database
        self.decryptor = decryptor or PayloadDecryptor()
        self.guard = guard or IdempotencyGuard(database)
        self.max_event_age_seconds = (
            max_event_age_seconds
            if max_event_age_seconds is not None
            else config.webhook_max_event_age_seconds
        )
        self._handlers: Dict[str, Handler] = {
            DEPOSIT_TRANSACTION: self.handle_deposit_transaction,
            TRANSACTION_CONVERTED: self.handle_transaction_converted,
        }

    async def process(self, envelope: WebhookEnvelope) -> WebhookOutcome:
        """Process one webhook delivery.

        Args:
            envelope: Parsed ``{eventType, payload}`` body.

        Returns:
            The outcome of the delivery.

        Raises:
            WebhookRejected: Undecryptable or stale delivery, or unusable
                key/IV (nothing was touched).
            ReconciliationError: A known event could not be applied.
        """
        logger.info(f"Received event: {envelope.event_type}")

        try:
            payload = self.decryptor.decrypt(envelope.payload)
        except (ConfigurationError, DecryptionError) as e:
            logger.error(f"Decryption failed: {e}")
            raise WebhookRejected("Failed to decrypt payload") from e

        self.check_freshness(payload)

        handler = self._handlers.get(envelope.event_type, self.handle_unknown_event)
        return await handler(envelope.event_type, payload)

    def check_freshness(self, payload: Dict[str, Any], now: Optional[datetime] = None) -> None:
        """Reject events whose eventTimestamp is missing, malformed or too old.

        Future timestamps are accepted to tolerate provider clock skew.
        """
        raw = payload.get("eventTimestamp")
        try:
            if raw is None or isinstance(raw, bool):
                raise ValueError(raw)
            event_ms = float(str(raw).strip())
            if not math.isfinite(event_ms):
                raise ValueError(raw)
        except ValueError:
            logger.warning(f"Invalid eventTimestamp: {raw!r}")
            raise WebhookRejected("Invalid eventTimestamp")

        now_ms = (now or utc_now()).timestamp() * 1000
        if now_ms - event_ms > self.max_event_age_seconds * 1000:
            logger.warning(f"Outdated event: timestamp={event_ms:.0f}, current={now_ms:.0f}")
            raise WebhookRejected("Outdated event")

    @staticmethod
    def _parse(event_type: str, payload: Dict[str, Any]) -> ProviderEvent:
        try:
            return parse_event(event_type, payload)
        except PydanticValidationError as e:
            raise ValidationError(f"Malformed {event_type} payload: {e}") from e

    async def _find_donation(
        self, pledge_id: Optional[str], donation_uuid: Optional[str] = None
    ) -> Optional[Donation]:
        if pledge_id:
            donation = await self.db.find_donation_by_pledge_id(pledge_id)
            if donation:
                return donation
        if donation_uuid:
            return await self.db.find_donation_by_donation_uuid(donation_uuid)
        return None

    @staticmethod
    def _common_patch(event: ProviderEvent, fields: Iterable[str]) -> Dict[str, Any]:
        patch = _copy_present(event, fields)
        # A zero or missing value never overwrites a known one
        if event.value_at_donation_time_usd:
            patch["value_at_donation_time_usd"] = event.value_at_donation_time_usd
        if "timestampms" in event.model_fields_set and event.timestampms is not None:
            patch["timestampms"] = epoch_ms_to_datetime(event.timestampms, "timestampms")
        return patch

    async def _apply(
        self,
        event_type: str,
        payload: Dict[str, Any],
        eid: str,
        locate: Callable[[], Awaitable[Optional[Donation]]],
        not_found_message: str,
        build_patch: Callable[[], Dict[str, Any]],
    ) -> WebhookOutcome:
        """Claim ``eid``, update its donation, then record the event."""
        if not await self.guard.claim(eid, event_type, payload):
            return WebhookOutcome(status="duplicate", event_type=event_type, eid=eid)

        try:
            donation = await locate()
            if donation is None:
                raise NotFoundError(not_found_message)

            patch = build_patch()
            updated = await self.db.update_donation(
                donation.id, patch, event_type=event_type, event_payload=payload
            )
            if not updated:
                raise NotFoundError(not_found_message)
        except Exception:
            await self.guard.release(eid)
            raise

        try:
            await self.guard.record(eid, event_type, payload, donation.id)
        except Exception as e:
            # The update is committed but the claim stays unrecorded: redeliveries
            # are duplicates only until the claim lease expires, then reapply
            logger.error(f"Failed to record webhook event {eid}: {e}", exc_info=True)

        return WebhookOutcome(
            status="applied", event_type=event_type, eid=eid, donation_id=donation.id
        )

    async def handle_deposit_transaction(
        self, event_type: str, payload: Dict[str, Any]
    ) -> WebhookOutcome:
        """Apply a DEPOSIT_TRANSACTION event (crypto and fiat deposits)."""
        event = self._parse(event_type, payload)
        if (not event.pledge_id and not event.donation_uuid) or not event.eid:
            raise ValidationError("Missing pledgeId/donationUuid or eid in payload")

        outcome = await self._apply(
            event_type,
            payload,
            event.eid,
            locate=lambda: self._find_donation(event.pledge_id, event.donation_uuid),
            not_found_message=(
                f"Donation with pledgeId {event.pledge_id} or "
                f"donationUuid {event.donation_uuid} not found"
            ),
            build_patch=lambda: self._common_patch(event, DEPOSIT_FIELDS),
        )
        if outcome.status == "applied":
            logger.info(
                f"Processed {event_type}: eid={event.eid}, pledgeId={event.pledge_id}, "
                f"donationUuid={event.donation_uuid}"
            )
        return outcome

    async def handle_transaction_converted(
        self, event_type: str, payload: Dict[str, Any]
    ) -> WebhookOutcome:
        """Apply a TRANSACTION_CONVERTED event (stock donation settled)."""
        event = self._parse(event_type, payload)
        if not event.pledge_id or not event.eid:
            raise ValidationError("Missing pledgeId or eid in payload")

        def build_patch() -> Dict[str, Any]:
            patch = self._common_patch(event, CONVERTED_FIELDS)
            if event.converted_at is not None:
                patch["converted_at"] = epoch_ms_to_datetime(event.converted_at, "convertedAt")
            return patch

        outcome = await self._apply(
            event_type,
            payload,
            event.eid,
            locate=lambda: self._find_donation(event.pledge_id),
            not_found_message=f"Donation with pledgeId {event.pledge_id} not found",
            build_patch=build_patch,
        )
        if outcome.status == "applied":
            logger.info(f"Processed {event_type}: eid={event.eid}, pledgeId={event.pledge_id}")
        return outcome

    async def handle_unknown_event(
        self, event_type: str, payload: Dict[str, Any]
    ) -> WebhookOutcome:
        """Store an unrecognised event on its donation. Never fails the delivery."""
        pledge_id = payload.get("pledgeId")
        donation_uuid = payload.get("donationUuid")
        eid = payload.get("eid")

        if (not pledge_id and not donation_uuid) or not eid:
            logger.warning(
                f"Missing pledgeId/donationUuid or eid in payload for unknown event: {event_type}"
            )
            return WebhookOutcome(status="ignored", event_type=event_type)

        eid = str(eid)
        try:
            if not await self.guard.claim(eid, event_type, payload):
                return WebhookOutcome(status="duplicate", event_type=event_type, eid=eid)

            donation = await self._find_donation(
                str(pledge_id) if pledge_id else None,
                str(donation_uuid) if donation_uuid else None,
            )
            if donation is None:
                logger.warning(
                    f"Donation not found for unknown event: pledgeId={pledge_id}, "
                    f"donationUuid={donation_uuid}"
                )
                await self.guard.release(eid)
                return WebhookOutcome(status="ignored", event_type=event_type, eid=eid)
        except Exception as e:
            logger.error(f"Failed to handle unknown event {event_type} ({eid}): {e}", exc_info=True)
            return WebhookOutcome(status="ignored", event_type=event_type, eid=eid)

        try:
            await self.db.update_donation(
                donation.id, {}, event_type=event_type, event_payload=payload
            )
        except Exception as e:
            logger.error(f"Failed to store {event_type} on donation {donation.id}: {e}", exc_info=True)

        try:
            await self.guard.record(eid, event_type, payload, donation.id)
        except Exception as e:
            logger.error(f"Failed to record webhook event {eid}: {e}", exc_info=True)

        logger.info(f"Processed unknown event: type={event_type}, eid={eid}")
        return WebhookOutcome(
            status="applied", event_type=event_type, eid=eid, donation_id=donation.id
        )
