"""SQLite database interface for the donation store and matching ledger.

Holds donations, the append-only matching ledger and webhook event records,
with support for idempotent event claims and serialised matching runs.
"""

import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import aiosqlite

from .config import config
from .logging_utils import get_logger
from .models import (
    Donation,
    MatchingDonationLog,
    WebhookEvent,
    ensure_utc,
    utc_now,
)

logger = get_logger(__name__)

# SQL Schema
SCHEMA_SQL = """
-- Donations table (one row per pledge)
CREATE TABLE IF NOT EXISTS donations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pledge_id TEXT UNIQUE,
    donation_uuid TEXT UNIQUE,
    project_slug TEXT NOT NULL,
    donation_type TEXT NOT NULL CHECK(donation_type IN ('crypto', 'fiat', 'stock')),
    amount TEXT,
    currency TEXT,
    value_at_donation_time_usd TEXT,
    status TEXT,
    processed INTEGER NOT NULL DEFAULT 0,
    event_data TEXT NOT NULL DEFAULT '{}',
    transaction_hash TEXT,
    payout_amount TEXT,
    payout_currency TEXT,
    external_id TEXT,
    campaign_id TEXT,
    timestampms TEXT,
    eid TEXT,
    payment_method TEXT,
    converted_at TEXT,
    net_value_amount TEXT,
    gross_amount TEXT,
    net_value_currency TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Matching ledger (append-only, sole source of truth for consumed budget)
CREATE TABLE IF NOT EXISTS matching_donation_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    donor_id TEXT NOT NULL,
    donation_id INTEGER NOT NULL,
    matched_amount TEXT NOT NULL,
    project_slug TEXT NOT NULL,
    date TEXT NOT NULL,
    FOREIGN KEY (donation_id) REFERENCES donations(id)
);

CREATE TRIGGER IF NOT EXISTS trg_matching_logs_no_update
BEFORE UPDATE ON matching_donation_logs
BEGIN
    SELECT RAISE(ABORT, 'matching_donation_logs is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_matching_logs_no_delete
BEFORE DELETE ON matching_donation_logs
BEGIN
    SELECT RAISE(ABORT, 'matching_donation_logs is append-only');
END;

-- Webhook event tracking table (for idempotency)
CREATE TABLE IF NOT EXISTS webhook_events (
    eid TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    donation_id INTEGER,
    processed INTEGER NOT NULL DEFAULT 0,
    claimed_at TEXT,
    processed_at TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (donation_id) REFERENCES donations(id)
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_donations_unprocessed ON donations(processed, created_at);
CREATE INDEX IF NOT EXISTS idx_matching_logs_donor_id ON matching_donation_logs(donor_id);
CREATE INDEX IF NOT EXISTS idx_matching_logs_project_slug ON matching_donation_logs(project_slug);
CREATE INDEX IF NOT EXISTS idx_webhook_events_donation_id ON webhook_events(donation_id);
"""

# Columns webhook handlers may patch; `processed` only changes via mark_processed
UPDATABLE_DONATION_FIELDS = frozenset(
    {
        "amount",
        "currency",
        "value_at_donation_time_usd",
        "status",
        "transaction_hash",
        "payout_amount",
        "payout_currency",
        "external_id",
        "campaign_id",
        "timestampms",
        "eid",
        "payment_method",
        "converted_at",
        "net_value_amount",
        "gross_amount",
        "net_value_currency",
    }
)

_DECIMAL_COLUMNS = (
    "amount",
    "value_at_donation_time_usd",
    "payout_amount",
    "net_value_amount",
    "gross_amount",
)
_DATETIME_COLUMNS = ("timestampms", "converted_at", "created_at", "updated_at")


def _iso(value: datetime) -> str:
    # Fixed width so lexical order matches chronological order
    return ensure_utc(value).isoformat(timespec="microseconds")


def _to_db(value: Any) -> Any:
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return _iso(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return value


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_donation(row: aiosqlite.Row) -> Donation:
    data = dict(row)
    for column in _DECIMAL_COLUMNS:
        if data[column] is not None:
            data[column] = Decimal(data[column])
    for column in _DATETIME_COLUMNS:
        data[column] = _parse_datetime(data[column])
    data["processed"] = bool(data["processed"])
    data["event_data"] = json.loads(data["event_data"] or "{}")
    return Donation(**data)


def _row_to_log(row: aiosqlite.Row) -> MatchingDonationLog:
    return MatchingDonationLog(
        id=row["id"],
        donor_id=row["donor_id"],
        donation_id=row["donation_id"],
        matched_amount=Decimal(row["matched_amount"]),
        project_slug=row["project_slug"],
        date=datetime.fromisoformat(row["date"]),
    )


def _row_to_webhook_event(row: aiosqlite.Row) -> WebhookEvent:
    return WebhookEvent(
        eid=row["eid"],
        event_type=row["event_type"],
        payload=json.loads(row["payload"]),
        donation_id=row["donation_id"],
        processed=bool(row["processed"]),
        claimed_at=_parse_datetime(row["claimed_at"]),
        processed_at=_parse_datetime(row["processed_at"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class Database:
    """Async database interface for donations, the matching ledger and webhook events.

    Every operation opens its own connection and commits on success, unless it
    runs inside ``transaction()``, in which case it joins that transaction.
    """

    def __init__(self, db_path: str = None):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file. Defaults to config.database_path.
        """
        self.db_path = db_path or config.database_path
        self._lock = asyncio.Lock()
        self._active: ContextVar[Optional[aiosqlite.Connection]] = ContextVar(
            f"active_connection_{id(self)}", default=None
        )

    async def initialize(self) -> None:
        """Initialize database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.executescript(SCHEMA_SQL)
            await db.commit()
        logger.info(f"Database initialized at {self.db_path}")

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[aiosqlite.Connection]:
        active = self._active.get()
        if active is not None:
            yield active
            return

        async with aiosqlite.connect(self.db_path) as conn:
            conn.row_factory = aiosqlite.Row
            yield conn
            await conn.commit()

    @asynccontextmanager
    async def transaction(self, write: bool = True) -> AsyncIterator[None]:
        """Run the enclosed operations in one SQLite transaction.

        Write transactions start with ``BEGIN IMMEDIATE``, which takes the
        database write lock up front: no other connection, in this process or
        another, can write until this one commits or rolls back.

        Args:
            write: False opens a read transaction (consistent snapshot only).
        """
        if self._active.get() is not None:
            raise RuntimeError("Nested transactions are not supported; use savepoint()")

        async with self._lock if write else _null_async_context():
            async with aiosqlite.connect(self.db_path, isolation_level=None) as conn:
                conn.row_factory = aiosqlite.Row
                await conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
                token = self._active.set(conn)
                try:
                    yield
                except BaseException:
                    await conn.execute("ROLLBACK")
                    raise
                else:
                    await conn.execute("COMMIT")
                finally:
                    self._active.reset(token)

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        """Nested rollback scope inside ``transaction()``."""
        conn = self._active.get()
        if conn is None:
            raise RuntimeError("savepoint() requires an open transaction")

        name = f"sp_{uuid.uuid4().hex[:12]}"
        await conn.execute(f"SAVEPOINT {name}")
        try:
            yield
        except BaseException:
            await conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            await conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        else:
            await conn.execute(f"RELEASE SAVEPOINT {name}")

    # Donation operations
    async def create_donation(self, donation: Donation) -> Donation:
        """Insert a donation record.

        Args:
            donation: Donation to insert (its id is ignored).

        Returns:
            The stored donation with its assigned id.
        """
        data = donation.model_dump(exclude={"id"})
        columns = list(data)
        async with self._connection() as conn:
            cursor = await conn.execute(
                f"INSERT INTO donations ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                [_to_db(data[c]) for c in columns],
            )
            donation_id = cursor.lastrowid
        logger.info(f"Created donation {donation_id} for project {donation.project_slug}")
        return donation.model_copy(update={"id": donation_id})

    async def _fetch_donation(self, where: str, value: Any) -> Optional[Donation]:
        async with self._connection() as conn:
            cursor = await conn.execute(f"SELECT * FROM donations WHERE {where} = ?", (value,))
            row = await cursor.fetchone()
        return _row_to_donation(row) if row else None

    async def get_donation(self, donation_id: int) -> Optional[Donation]:
        """Get a donation by internal id."""
        return await self._fetch_donation("id", donation_id)

    async def find_donation_by_pledge_id(self, pledge_id: str) -> Optional[Donation]:
        """Get a donation by its provider pledge id."""
        return await self._fetch_donation("pledge_id", pledge_id)

    async def find_donation_by_donation_uuid(self, donation_uuid: str) -> Optional[Donation]:
        """Get a donation by its stock-path donation uuid."""
        return await self._fetch_donation("donation_uuid", donation_uuid)

    async def update_donation(
        self,
        donation_id: int,
        patch: Dict[str, Any],
        event_type: Optional[str] = None,
        event_payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Apply a field patch and optionally merge one event payload.

        The payload is stored as ``event_data[event_type]``. The merge reads and
        rewrites ``event_data`` inside a write transaction, so concurrent events
        for the same donation never overwrite each other's entries. Any string
        is accepted as ``event_type``.

        Args:
            donation_id: Donation to update.
            patch: Column -> value for columns in UPDATABLE_DONATION_FIELDS.
            event_type: Key under which to store ``event_payload``.
            event_payload: Raw event body to merge.

        Returns:
            True if a row was updated.

        Raises:
            ValueError: If the patch names a column that may not be updated.
        """
        unknown = set(patch) - UPDATABLE_DONATION_FIELDS
        if unknown:
            raise ValueError(f"Cannot update donation fields: {sorted(unknown)}")

        if event_type is not None and self._active.get() is None:
            async with self.transaction():
                return await self.update_donation(
                    donation_id, patch, event_type=event_type, event_payload=event_payload
                )

        assignments = [f"{column} = ?" for column in patch]
        params: List[Any] = [_to_db(value) for value in patch.values()]

        async with self._connection() as conn:
            if event_type is not None:
                cursor = await conn.execute(
                    "SELECT event_data FROM donations WHERE id = ?", (donation_id,)
                )
                row = await cursor.fetchone()
                event_data = json.loads(row["event_data"] or "{}") if row else {}
                event_data[event_type] = event_payload or {}
                assignments.append("event_data = ?")
                params.append(json.dumps(event_data, default=str))

            assignments.append("updated_at = ?")
            params.append(_iso(utc_now()))
            params.append(donation_id)

            cursor = await conn.execute(
                f"UPDATE donations SET {', '.join(assignments)} WHERE id = ?",
                params,
            )
            updated = cursor.rowcount > 0

        if updated:
            logger.info(f"Updated donation {donation_id}: {sorted(patch)}")
        else:
            logger.warning(f"Donation {donation_id} not updated (not found)")
        return updated

    async def list_unprocessed_donations(
        self, min_date: Optional[datetime] = None
    ) -> List[Donation]:
        """List donations not yet through the matching engine, oldest first.

        Args:
            min_date: Only include donations created at or after this time.
        """
        query = "SELECT * FROM donations WHERE processed = 0"
        params: List[Any] = []
        if min_date is not None:
            query += " AND created_at >= ?"
            params.append(_iso(min_date))
        query += " ORDER BY created_at ASC, id ASC"

        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
        return [_row_to_donation(row) for row in rows]

    async def mark_processed(self, donation_id: int) -> bool:
        """Mark a donation as processed (never reset).

        Returns:
            True if the flag changed, False if already processed or missing.
        """
        async with self._connection() as conn:
            cursor = await conn.execute(
                "UPDATE donations SET processed = 1, updated_at = ? WHERE id = ? AND processed = 0",
                (_iso(utc_now()), donation_id),
            )
            changed = cursor.rowcount > 0
        return changed

    # Matching ledger operations
    async def append_matching_log(self, entry: MatchingDonationLog) -> MatchingDonationLog:
        """Append a ledger entry.

        Returns:
            The stored entry with its assigned id.
        """
        async with self._connection() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO matching_donation_logs
                (donor_id, donation_id, matched_amount, project_slug, date)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    entry.donor_id,
                    entry.donation_id,
                    str(entry.matched_amount),
                    entry.project_slug,
                    _iso(entry.date),
                ),
            )
            log_id = cursor.lastrowid
        return entry.model_copy(update={"id": log_id})

    async def sum_matched_by_donor(self, donor_ids: Iterable[str]) -> Dict[str, Decimal]:
        """Total matched amount per donor, summed as Decimal.

        Args:
            donor_ids: Donors to aggregate.

        Returns:
            donor id -> consumed budget (donors with no entries are omitted).
        """
        donor_ids = list(donor_ids)
        if not donor_ids:
            return {}

        placeholders = ", ".join("?" for _ in donor_ids)
        async with self._connection() as conn:
            cursor = await conn.execute(
                f"SELECT donor_id, matched_amount FROM matching_donation_logs "
                f"WHERE donor_id IN ({placeholders})",
                donor_ids,
            )
            rows = await cursor.fetchall()

        totals: Dict[str, Decimal] = {}
        for row in rows:
            totals[row["donor_id"]] = totals.get(row["donor_id"], Decimal(0)) + Decimal(
                row["matched_amount"]
            )
        return totals

    async def matched_totals_for_project(self, project_slug: str) -> Dict[str, Decimal]:
        """Total matched amount per donor for one project, in first-match order."""
        async with self._connection() as conn:
            cursor = await conn.execute(
                "SELECT donor_id, matched_amount FROM matching_donation_logs "
                "WHERE project_slug = ? ORDER BY id ASC",
                (project_slug,),
            )
            rows = await cursor.fetchall()

        totals: Dict[str, Decimal] = {}
        for row in rows:
            totals[row["donor_id"]] = totals.get(row["donor_id"], Decimal(0)) + Decimal(
                row["matched_amount"]
            )
        return totals

    async def list_matching_logs(
        self,
        donor_id: Optional[str] = None,
        donation_id: Optional[int] = None,
    ) -> List[MatchingDonationLog]:
        """List ledger entries, optionally filtered by donor and/or donation."""
        query = "SELECT * FROM matching_donation_logs WHERE 1 = 1"
        params: List[Any] = []
        if donor_id is not None:
            query += " AND donor_id = ?"
            params.append(donor_id)
        if donation_id is not None:
            query += " AND donation_id = ?"
            params.append(donation_id)
        query += " ORDER BY id ASC"

        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
        return [_row_to_log(row) for row in rows]

    # Webhook event operations (idempotency)
    async def has_webhook_event(self, eid: str) -> bool:
        """True if the event has been applied and recorded."""
        async with self._connection() as conn:
            cursor = await conn.execute(
                "SELECT 1 FROM webhook_events WHERE eid = ? AND processed = 1",
                (eid,),
            )
            row = await cursor.fetchone()
        return row is not None

    async def get_webhook_event(self, eid: str) -> Optional[WebhookEvent]:
        """Get a webhook event record by eid."""
        async with self._connection() as conn:
            cursor = await conn.execute("SELECT * FROM webhook_events WHERE eid = ?", (eid,))
            row = await cursor.fetchone()
        return _row_to_webhook_event(row) if row else None

    async def claim_webhook_event(
        self,
        eid: str,
        event_type: str,
        payload: Dict[str, Any],
        stale_before: datetime,
    ) -> bool:
        """Atomically claim an event id for processing (insert-if-absent).

        An existing claim is only taken over when it was never completed and
        was made before ``stale_before``.

        Returns:
            True if this caller now owns the event, False for a duplicate.
        """
        now = _iso(utc_now())
        async with self._connection() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO webhook_events
                (eid, event_type, payload, donation_id, processed, claimed_at, created_at)
                VALUES (?, ?, ?, NULL, 0, ?, ?)
                ON CONFLICT(eid) DO UPDATE SET
                    event_type = excluded.event_type,
                    payload = excluded.payload,
                    claimed_at = excluded.claimed_at
                WHERE webhook_events.processed = 0
                  AND (webhook_events.claimed_at IS NULL OR webhook_events.claimed_at < ?)
                """,
                (eid, event_type, json.dumps(payload, default=str), now, now, _iso(stale_before)),
            )
            claimed = cursor.rowcount > 0
        return claimed

    async def release_webhook_event(self, eid: str) -> None:
        """Drop an unfinished claim so a redelivery can process the event."""
        async with self._connection() as conn:
            await conn.execute(
                "DELETE FROM webhook_events WHERE eid = ? AND processed = 0",
                (eid,),
            )
        logger.info(f"Released claim on webhook event {eid}")

    async def upsert_webhook_event(self, event: WebhookEvent) -> None:
        """Create or overwrite the record for ``event.eid``."""
        processed_at = event.processed_at or (utc_now() if event.processed else None)
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO webhook_events
                (eid, event_type, payload, donation_id, processed, claimed_at, processed_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(eid) DO UPDATE SET
                    event_type = excluded.event_type,
                    payload = excluded.payload,
                    donation_id = excluded.donation_id,
                    processed = excluded.processed,
                    processed_at = excluded.processed_at
                """,
                (
                    event.eid,
                    event.event_type,
                    json.dumps(event.payload, default=str),
                    event.donation_id,
                    1 if event.processed else 0,
                    _iso(event.claimed_at) if event.claimed_at else None,
                    _iso(processed_at) if processed_at else None,
                    _iso(event.created_at),
                ),
            )
        logger.info(f"Recorded webhook event {event.eid} ({event.event_type})")


@asynccontextmanager
async def _null_async_context() -> AsyncIterator[None]:
    yield


# Global database instance
db = Database()
