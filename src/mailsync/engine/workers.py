"""Due-item workers: scheduled sends and reminders.

Both workers run the same claim protocol on every run_once():
1. Recover stale claims (processing for longer than the claim timeout)
2. Claim due rows in one UPDATE, stamping them with a fresh claim id
3. Load only rows carrying that claim id and perform the side effect
4. Record the result

Two workers (or two processes) can never claim the same row, because the
claim is a single conditional UPDATE under BEGIN IMMEDIATE.

Scheduled sends are delivered at most once. A row is flagged 'attempted'
before the send request leaves the process; a stale claim on an attempted
row is marked failed instead of being retried.

Usage:
    from mailsync.engine.workers import ScheduledSendWorker, ReminderWorker

    sender = ScheduledSendWorker(store, credentials)
    await sender.schedule_email(account_id, ["a@example.com"], [], "Hi", "Body", when)
    result = await sender.run_once()
"""

import asyncio
import json
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

import aiosqlite
import regex

from mailsync.auth.credentials import CredentialStore
from mailsync.core.errors import (
    AuthenticationError,
    DueItemValidationError,
    EmailNotFoundError,
    MailSyncError,
    RateLimitedError,
)
from mailsync.core.events import StoreEvent
from mailsync.core.logging import get_logger
from mailsync.db.store import MailboxStore, from_iso, to_iso
from mailsync.graph.client import GraphClient
from mailsync.graph.messages import MessageManager

logger = get_logger(__name__)

REGEX_TIMEOUT = 1.0

# Items may be scheduled at most this far ahead
MAX_SCHEDULE_AHEAD = timedelta(days=365)

MAX_SUBJECT_LENGTH = 998

_ADDRESS_PATTERN = regex.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

ScheduledStatus = Literal["pending", "processing", "sent", "failed"]
ReminderStatus = Literal["pending", "processing", "fired", "completed"]


@dataclass
class ScheduledEmail:
    id: str
    account_id: str
    to_addresses: list[str]
    cc_addresses: list[str]
    subject: str
    body: str
    scheduled_at: datetime
    status: ScheduledStatus = "pending"
    error: str | None = None
    created_at: datetime | None = None
    sent_at: datetime | None = None


@dataclass
class Reminder:
    id: str
    account_id: str
    email_id: str
    remind_at: datetime
    note: str | None = None
    status: ReminderStatus = "pending"
    created_at: datetime | None = None
    fired_at: datetime | None = None


@dataclass
class WorkerRunResult:
    """Counts from one run_once()."""

    claim_id: str
    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    released: int = 0
    recovered: int = 0
    item_ids: list[str] = field(default_factory=list)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def validate_due_time(due_at: datetime, now: datetime) -> datetime:
    """Due items must be in the future and at most a year ahead.

    Raises:
        DueItemValidationError: If the time is out of range
    """
    due_at = _as_utc(due_at)
    if due_at <= now:
        raise DueItemValidationError("Scheduled time must be in the future")
    if due_at > now + MAX_SCHEDULE_AHEAD:
        raise DueItemValidationError("Scheduled time cannot be more than one year ahead")
    return due_at


def validate_addresses(addresses: Sequence[str], required: bool) -> list[str]:
    """Normalize a recipient list.

    Raises:
        DueItemValidationError: Empty required list or a malformed address
    """
    cleaned = [a.strip() for a in addresses if a and a.strip()]
    if required and not cleaned:
        raise DueItemValidationError("At least one recipient is required")
    for address in cleaned:
        try:
            valid = _ADDRESS_PATTERN.match(address, timeout=REGEX_TIMEOUT)
        except TimeoutError:
            valid = None
        if not valid:
            raise DueItemValidationError(f"Invalid email address: '{address}'")
    return cleaned


class _DueItemWorker:
    """Claim protocol shared by both workers."""

    table: str
    due_column: str

    def __init__(
        self,
        store: MailboxStore,
        claim_timeout_minutes: int = 10,
        batch_size: int = 25,
    ):
        self.store = store
        self.claim_timeout = timedelta(minutes=claim_timeout_minutes)
        self.batch_size = batch_size

    async def _recover_stale_claims(self, db: aiosqlite.Connection, now: datetime) -> int:
        cursor = await db.execute(
            f"""
            UPDATE {self.table} SET status = 'pending', claim_id = NULL, claimed_at = NULL
            WHERE status = 'processing' AND claimed_at < ?
            """,
            (to_iso(now - self.claim_timeout),),
        )
        return cursor.rowcount

    async def _claim(self, now: datetime) -> tuple[str, list[aiosqlite.Row], int]:
        """Claim due rows. Returns (claim id, claimed rows, recovered stale claims)."""
        claim_id = str(uuid.uuid4())
        async with self.store.transaction() as db:
            recovered = await self._recover_stale_claims(db, now)
            await db.execute(
                f"""
                UPDATE {self.table} SET status = 'processing', claim_id = ?, claimed_at = ?
                WHERE status = 'pending' AND id IN (
                    SELECT id FROM {self.table}
                    WHERE status = 'pending' AND {self.due_column} <= ?
                    ORDER BY {self.due_column}
                    LIMIT ?
                )
                """,
                (claim_id, to_iso(now), to_iso(now), self.batch_size),
            )
            cursor = await db.execute(
                f"SELECT * FROM {self.table} WHERE claim_id = ? ORDER BY {self.due_column}",
                (claim_id,),
            )
            rows = await cursor.fetchall()
        return claim_id, list(rows), recovered

    async def _set_status(self, item_id: str, owner: str, status: str, **columns: Any) -> None:
        """Update a row only while it still carries the owner's claim id."""
        assignments = ", ".join(["status = ?", *(f"{name} = ?" for name in columns)])
        async with self.store.transaction() as db:
            await db.execute(
                f"UPDATE {self.table} SET {assignments} WHERE id = ? AND claim_id = ?",
                (status, *columns.values(), item_id, owner),
            )


class ScheduledSendWorker(_DueItemWorker):
    """Sends scheduled emails through Microsoft Graph when they fall due.

    Attributes:
        credentials: Source of access tokens for the sending account
        client_factory: Builds a GraphClient from (access_token, account_id)
    """

    table = "scheduled_emails"
    due_column = "scheduled_at"

    def __init__(
        self,
        store: MailboxStore,
        credentials: CredentialStore,
        claim_timeout_minutes: int = 10,
        batch_size: int = 25,
        client_factory: Callable[[str, str], GraphClient] | None = None,
    ):
        super().__init__(store, claim_timeout_minutes, batch_size)
        self.credentials = credentials
        self.client_factory = client_factory or (
            lambda token, account_id: GraphClient(token, account_id=account_id)
        )

    # =========================================================================
    # CRUD
    # =========================================================================

    async def schedule_email(
        self,
        account_id: str,
        to_addresses: Sequence[str],
        cc_addresses: Sequence[str],
        subject: str,
        body: str,
        scheduled_at: datetime,
        now: datetime | None = None,
    ) -> ScheduledEmail:
        """Validate and store an email to be sent later.

        Raises:
            DueItemValidationError: Bad recipients, subject or time
            AccountNotFoundError: Unknown account
        """
        now = _as_utc(now or datetime.now(UTC))
        item = ScheduledEmail(
            id=str(uuid.uuid4()),
            account_id=account_id,
            to_addresses=validate_addresses(to_addresses, required=True),
            cc_addresses=validate_addresses(cc_addresses, required=False),
            subject=self._validate_subject(subject),
            body=body or "",
            scheduled_at=validate_due_time(scheduled_at, now),
            created_at=now,
        )
        await self.store.require_account(account_id)

        async with self.store.transaction() as db:
            await db.execute(
                """
                INSERT INTO scheduled_emails (
                    id, account_id, to_addresses, cc_addresses, subject, body,
                    scheduled_at, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?)
                """,
                (
                    item.id,
                    account_id,
                    json.dumps(item.to_addresses),
                    json.dumps(item.cc_addresses),
                    item.subject,
                    item.body,
                    to_iso(item.scheduled_at),
                    to_iso(now),
                ),
            )
        logger.info(
            "email_scheduled",
            account_id=account_id,
            scheduled_email_id=item.id,
            scheduled_at=to_iso(item.scheduled_at),
        )
        return item

    async def update_scheduled_email(
        self,
        account_id: str,
        scheduled_email_id: str,
        *,
        to_addresses: Sequence[str] | None = None,
        cc_addresses: Sequence[str] | None = None,
        subject: str | None = None,
        body: str | None = None,
        scheduled_at: datetime | None = None,
        now: datetime | None = None,
    ) -> ScheduledEmail:
        """Edit a scheduled email that has not been claimed yet.

        Raises:
            DueItemValidationError: Invalid values, or the email is no longer pending
        """
        now = _as_utc(now or datetime.now(UTC))
        current = await self.get_scheduled_email(account_id, scheduled_email_id)
        if current is None:
            raise DueItemValidationError(f"Scheduled email '{scheduled_email_id}' not found")

        if to_addresses is not None:
            current.to_addresses = validate_addresses(to_addresses, required=True)
        if cc_addresses is not None:
            current.cc_addresses = validate_addresses(cc_addresses, required=False)
        if subject is not None:
            current.subject = self._validate_subject(subject)
        if body is not None:
            current.body = body
        if scheduled_at is not None:
            current.scheduled_at = validate_due_time(scheduled_at, now)

        async with self.store.transaction() as db:
            cursor = await db.execute(
                """
                UPDATE scheduled_emails SET
                    to_addresses = ?, cc_addresses = ?, subject = ?, body = ?, scheduled_at = ?
                WHERE id = ? AND account_id = ? AND status = 'pending'
                """,
                (
                    json.dumps(current.to_addresses),
                    json.dumps(current.cc_addresses),
                    current.subject,
                    current.body,
                    to_iso(current.scheduled_at),
                    scheduled_email_id,
                    account_id,
                ),
            )
            if cursor.rowcount == 0:
                raise DueItemValidationError(
                    "Only pending scheduled emails can be edited; this one is already "
                    "being sent or has been sent"
                )
        return current

    async def cancel_scheduled_email(self, account_id: str, scheduled_email_id: str) -> bool:
        """Delete a pending scheduled email. Returns False if it is gone or claimed."""
        async with self.store.transaction() as db:
            cursor = await db.execute(
                """
                DELETE FROM scheduled_emails
                WHERE id = ? AND account_id = ? AND status IN ('pending', 'failed')
                """,
                (scheduled_email_id, account_id),
            )
            return cursor.rowcount > 0

    async def get_scheduled_email(
        self, account_id: str, scheduled_email_id: str
    ) -> ScheduledEmail | None:
        async with self.store.connection() as db:
            cursor = await db.execute(
                "SELECT * FROM scheduled_emails WHERE id = ? AND account_id = ?",
                (scheduled_email_id, account_id),
            )
            row = await cursor.fetchone()
        return self._row_to_scheduled(row) if row else None

    async def list_scheduled_emails(
        self, account_id: str, status: ScheduledStatus | None = None
    ) -> list[ScheduledEmail]:
        sql = "SELECT * FROM scheduled_emails WHERE account_id = ?"
        params: list[Any] = [account_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY scheduled_at"

        async with self.store.connection() as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [self._row_to_scheduled(row) for row in rows]

    @staticmethod
    def _validate_subject(subject: str | None) -> str:
        subject = (subject or "").strip()
        if len(subject) > MAX_SUBJECT_LENGTH:
            raise DueItemValidationError(
                f"Subject cannot be longer than {MAX_SUBJECT_LENGTH} characters"
            )
        return subject

    def _row_to_scheduled(self, row: aiosqlite.Row) -> ScheduledEmail:
        return ScheduledEmail(
            id=row["id"],
            account_id=row["account_id"],
            to_addresses=json.loads(row["to_addresses"]),
            cc_addresses=json.loads(row["cc_addresses"] or "[]"),
            subject=row["subject"],
            body=row["body"],
            scheduled_at=from_iso(row["scheduled_at"]),
            status=row["status"],
            error=row["error"],
            created_at=from_iso(row["created_at"]),
            sent_at=from_iso(row["sent_at"]),
        )

    # =========================================================================
    # Delivery
    # =========================================================================

    async def _recover_stale_claims(self, db: aiosqlite.Connection, now: datetime) -> int:
        cutoff = to_iso(now - self.claim_timeout)
        # The send may have reached the provider: never retry an attempted row
        cursor = await db.execute(
            """
            UPDATE scheduled_emails
            SET status = 'failed', error = 'Delivery interrupted; the email may not have been sent'
            WHERE status = 'processing' AND claimed_at < ? AND attempted = 1
            """,
            (cutoff,),
        )
        failed = cursor.rowcount
        cursor = await db.execute(
            """
            UPDATE scheduled_emails SET status = 'pending', claim_id = NULL, claimed_at = NULL
            WHERE status = 'processing' AND claimed_at < ? AND attempted = 0
            """,
            (cutoff,),
        )
        if failed or cursor.rowcount:
            logger.warning(
                "stale_send_claims_recovered", failed=failed, released=cursor.rowcount
            )
        return failed + cursor.rowcount

    async def run_once(self, now: datetime | None = None) -> WorkerRunResult:
        """Claim and send every due scheduled email."""
        now = _as_utc(now or datetime.now(UTC))
        claim_id, rows, recovered = await self._claim(now)
        result = WorkerRunResult(claim_id=claim_id, claimed=len(rows), recovered=recovered)

        for row in rows:
            item = self._row_to_scheduled(row)
            result.item_ids.append(item.id)
            outcome = await self._deliver(item, claim_id)
            match outcome:
                case "sent":
                    result.succeeded += 1
                case "released":
                    result.released += 1
                case _:
                    result.failed += 1

        if rows:
            logger.info(
                "scheduled_send_run_complete",
                claimed=result.claimed,
                sent=result.succeeded,
                failed=result.failed,
                released=result.released,
            )
        return result

    async def _deliver(self, item: ScheduledEmail, claim_id: str) -> str:
        try:
            token = await self.credentials.get_valid_token(item.account_id)
        except AuthenticationError as e:
            await self._fail(item, claim_id, f"Account is not authenticated: {e}")
            return "failed"
        except MailSyncError as e:
            await self._fail(item, claim_id, str(e))
            return "failed"

        await self._set_status(item.id, claim_id, "processing", attempted=1)
        manager = MessageManager(self.client_factory(token, item.account_id))
        try:
            await asyncio.to_thread(
                manager.send_mail,
                item.to_addresses,
                item.cc_addresses,
                item.subject,
                item.body,
            )
        except RateLimitedError as e:
            # Throttled requests are rejected before any processing
            await self._set_status(
                item.id, claim_id, "pending", claim_id=None, claimed_at=None, attempted=0
            )
            logger.info(
                "scheduled_send_throttled",
                scheduled_email_id=item.id,
                retry_after=e.retry_after,
            )
            return "released"
        except MailSyncError as e:
            await self._fail(item, claim_id, str(e))
            return "failed"

        await self._set_status(item.id, claim_id, "sent", sent_at=to_iso(datetime.now(UTC)))
        self.store.notifier.publish(
            StoreEvent(
                kind="scheduled_email_sent",
                account_id=item.account_id,
                payload={"scheduled_email_id": item.id},
            )
        )
        logger.info("scheduled_email_sent", account_id=item.account_id, scheduled_email_id=item.id)
        return "sent"

    async def _fail(self, item: ScheduledEmail, claim_id: str, error: str) -> None:
        logger.warning(
            "scheduled_send_failed",
            account_id=item.account_id,
            scheduled_email_id=item.id,
            error=error,
        )
        await self._set_status(item.id, claim_id, "failed", error=error)


class ReminderWorker(_DueItemWorker):
    """Fires reminders on cached emails when they fall due."""

    table = "reminders"
    due_column = "remind_at"

    async def create_reminder(
        self,
        account_id: str,
        email_id: str,
        remind_at: datetime,
        note: str | None = None,
        now: datetime | None = None,
    ) -> Reminder:
        """Set the reminder for an email, replacing any active one.

        Raises:
            DueItemValidationError: Time out of range, or the current reminder is firing
            EmailNotFoundError: Email not cached for the account
        """
        now = _as_utc(now or datetime.now(UTC))
        reminder = Reminder(
            id=str(uuid.uuid4()),
            account_id=account_id,
            email_id=email_id,
            remind_at=validate_due_time(remind_at, now),
            note=(note or "").strip() or None,
            created_at=now,
        )

        async with self.store.transaction() as db:
            cursor = await db.execute(
                "SELECT 1 FROM emails WHERE id = ? AND account_id = ?", (email_id, account_id)
            )
            if await cursor.fetchone() is None:
                raise EmailNotFoundError(email_id, account_id)

            cursor = await db.execute(
                "SELECT 1 FROM reminders WHERE email_id = ? AND status = 'processing'",
                (email_id,),
            )
            if await cursor.fetchone() is not None:
                raise DueItemValidationError("The current reminder for this email is firing")

            await db.execute(
                "DELETE FROM reminders WHERE email_id = ? AND status IN ('pending', 'fired')",
                (email_id,),
            )
            await db.execute(
                """
                INSERT INTO reminders (
                    id, account_id, email_id, remind_at, note, status, created_at
                ) VALUES (?, ?, ?, ?, ?, 'pending', ?)
                """,
                (
                    reminder.id,
                    account_id,
                    email_id,
                    to_iso(reminder.remind_at),
                    reminder.note,
                    to_iso(now),
                ),
            )
        logger.info("reminder_created", account_id=account_id, reminder_id=reminder.id)
        return reminder

    async def complete_reminder(self, account_id: str, reminder_id: str) -> bool:
        async with self.store.transaction() as db:
            cursor = await db.execute(
                """
                UPDATE reminders SET status = 'completed'
                WHERE id = ? AND account_id = ? AND status != 'completed'
                """,
                (reminder_id, account_id),
            )
            return cursor.rowcount > 0

    async def delete_reminder(self, account_id: str, reminder_id: str) -> bool:
        async with self.store.transaction() as db:
            cursor = await db.execute(
                "DELETE FROM reminders WHERE id = ? AND account_id = ?",
                (reminder_id, account_id),
            )
            return cursor.rowcount > 0

    async def list_due_reminders(
        self, account_id: str, now: datetime | None = None
    ) -> list[Reminder]:
        """Reminders that have fired or are due, not yet completed."""
        now = _as_utc(now or datetime.now(UTC))
        async with self.store.connection() as db:
            cursor = await db.execute(
                """
                SELECT * FROM reminders
                WHERE account_id = ?
                  AND (status = 'fired' OR (status IN ('pending', 'processing') AND remind_at <= ?))
                ORDER BY remind_at
                """,
                (account_id, to_iso(now)),
            )
            rows = await cursor.fetchall()
        return [self._row_to_reminder(row) for row in rows]

    def _row_to_reminder(self, row: aiosqlite.Row) -> Reminder:
        return Reminder(
            id=row["id"],
            account_id=row["account_id"],
            email_id=row["email_id"],
            remind_at=from_iso(row["remind_at"]),
            note=row["note"],
            status=row["status"],
            created_at=from_iso(row["created_at"]),
            fired_at=from_iso(row["fired_at"]),
        )

    async def run_once(self, now: datetime | None = None) -> WorkerRunResult:
        """Claim every due reminder, publish it and mark it fired."""
        now = _as_utc(now or datetime.now(UTC))
        claim_id, rows, recovered = await self._claim(now)
        result = WorkerRunResult(claim_id=claim_id, claimed=len(rows), recovered=recovered)

        for row in rows:
            reminder = self._row_to_reminder(row)
            result.item_ids.append(reminder.id)
            self.store.notifier.publish(
                StoreEvent(
                    kind="reminder_due",
                    account_id=reminder.account_id,
                    payload={
                        "reminder_id": reminder.id,
                        "email_id": reminder.email_id,
                        "note": reminder.note,
                    },
                )
            )
            await self._set_status(reminder.id, claim_id, "fired", fired_at=to_iso(now))
            result.succeeded += 1

        if rows:
            logger.info("reminders_fired", count=result.succeeded, recovered=recovered)
        return result
