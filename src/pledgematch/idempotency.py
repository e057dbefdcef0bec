"""Idempotency guard for provider webhook events.

Each provider event carries an externally assigned ``eid``. An eid is applied
at most once: the first delivery claims it with a single insert-if-absent,
concurrent or repeated deliveries find the claim and back off.
"""

from datetime import timedelta
from typing import Any, Dict, Optional

from src.config import config
from src.database import Database
from src.logging_utils import get_logger
from src.models import WebhookEvent, utc_now

logger = get_logger(__name__)


class IdempotencyGuard:
    """Claims, records and releases webhook event ids."""

    def __init__(self, database: Database, claim_lease_seconds: Optional[int] = None):
        """Initialize the guard.

        Args:
            database: Store holding the webhook_events table.
            claim_lease_seconds: How long an unfinished claim blocks redelivery.
                Defaults to config.idempotency_claim_lease_seconds.
        """
        self.db = database
        self.claim_lease = timedelta(
            seconds=claim_lease_seconds
            if claim_lease_seconds is not None
            else config.idempotency_claim_lease_seconds
        )

    async def has_processed(self, eid: str) -> bool:
        """True if ``eid`` has already been applied."""
        return await self.db.has_webhook_event(eid)

    async def claim(self, eid: str, event_type: str, payload: Dict[str, Any]) -> bool:
        """Try to take ownership of ``eid`` for this delivery.

        Returns:
            True if the caller should apply the event, False if it was already
            applied or is being applied by another delivery.
        """
        claimed = await self.db.claim_webhook_event(
            eid, event_type, payload, stale_before=utc_now() - self.claim_lease
        )
        if not claimed:
            existing = await self.db.get_webhook_event(eid)
            state = "already processed" if existing and existing.processed else "in flight"
            logger.info(f"Event {eid} {state}, skipping (idempotency)")
        return claimed

    async def release(self, eid: str) -> None:
        """Give up a claim after a failed attempt so a retry can apply the event."""
        await self.db.release_webhook_event(eid)

    async def record(
        self,
        eid: str,
        event_type: str,
        payload: Dict[str, Any],
        donation_id: Optional[int],
    ) -> None:
        """Mark ``eid`` as applied (upsert, processed=true)."""
        await self.db.upsert_webhook_event(
            WebhookEvent(
                eid=eid,
                event_type=event_type,
                payload=payload,
                donation_id=donation_id,
                processed=True,
                processed_at=utc_now(),
            )
        )
