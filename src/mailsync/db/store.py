"""Mailbox store: the single writer of the local cache.

This module provides the MailboxStore class that owns every write to the
SQLite cache. Sync batches, local user edits and account lifecycle changes
all go through the same per-account asyncio.Lock and a BEGIN IMMEDIATE
transaction, so a batch of provider changes and its cursor advance are
committed together or not at all.

Local edits (read, star, trash, labels) are applied to the cached row at
once and recorded in pending_mutations. Until the provider reports the same
value, or a pushed mutation outlives its TTL, incoming provider values for
that field are ignored. Edits not yet pushed never expire.

Usage:
    from mailsync.db.store import MailboxStore

    store = MailboxStore("data/mailsync.db")
    await store.initialize()

    summary = await store.apply_changes(account_id, result.changes, result.new_cursor)
    await store.mark_read(account_id, email_id)
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import AsyncIterator, Callable, Iterable, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import aiosqlite

from mailsync.classifier.categorization import (
    DEFAULT_CATEGORIES,
    DEFAULT_RULES,
    CategorizationRule,
    categorize,
    load_rules,
    parse_rule,
)
from mailsync.core.errors import (
    AccountNotFoundError,
    DatabaseError,
    EmailNotFoundError,
    RuleValidationError,
)
from mailsync.core.events import ChangeNotifier, EventKind, StoreEvent
from mailsync.core.logging import get_correlation_id, get_logger
from mailsync.db.models import init_database
from mailsync.engine.derived_index import DerivedIndexMaintainer

if TYPE_CHECKING:
    from mailsync.graph.delta import ChangeEvent, MessageBody, RemoteMessage

logger = get_logger(__name__)

# Maximum snippet length (the full body is only stored when fetched lazily)
MAX_SNIPPET_LENGTH = 1000

MAX_LABEL_LENGTH = 100

AuthState = Literal["active", "unauthenticated"]
MutableField = Literal["is_read", "is_starred", "is_trashed", "labels"]
SyncLogStatus = Literal["running", "completed", "failed"]

MUTABLE_FIELDS: tuple[MutableField, ...] = ("is_read", "is_starred", "is_trashed", "labels")


def to_iso(value: datetime | None) -> str | None:
    """Stored timestamp format: UTC, second precision."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="seconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _now_iso() -> str:
    return to_iso(datetime.now(UTC))


def _json_list(value: str | None) -> list[str]:
    if not value:
        return []
    try:
        loaded = json.loads(value)
    except json.JSONDecodeError:
        return []
    return loaded if isinstance(loaded, list) else []


@dataclass
class Account:
    """Account record. Tokens are stored encrypted and returned as stored."""

    id: str
    email: str
    display_name: str | None = None
    home_account_id: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    sync_cursor: str | None = None
    last_sync_at: datetime | None = None
    auth_state: AuthState = "active"
    last_error: str | None = None
    last_error_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class Email:
    """Email record from the local cache."""

    id: str
    account_id: str
    remote_id: str
    thread_id: str | None = None
    subject: str | None = None
    from_email: str | None = None
    from_name: str | None = None
    to_addresses: list[str] = field(default_factory=list)
    cc_addresses: list[str] = field(default_factory=list)
    snippet: str | None = None
    body: str | None = None
    body_html: str | None = None
    received_at: datetime | None = None
    is_read: bool = False
    is_starred: bool = False
    labels: list[str] = field(default_factory=list)
    has_attachments: bool = False
    has_list_unsubscribe: bool = False
    is_trashed: bool = False
    category_id: int | None = None
    category_override: bool = False
    topic_id: int | None = None
    synced_at: datetime | None = None

    @property
    def received_at_iso(self) -> str | None:
        return to_iso(self.received_at)


@dataclass
class Attachment:
    id: int
    email_id: str
    remote_attachment_id: str
    filename: str | None = None
    mime_type: str | None = None
    size: int | None = None


@dataclass
class PendingMutation:
    """A local edit waiting to be pushed to, or confirmed by, the provider."""

    email_id: str
    remote_id: str
    field: MutableField
    value: Any
    created_at: datetime
    pushed_at: datetime | None = None

    @property
    def op_id(self) -> str:
        """Identifier of this mutation within a push batch."""
        return f"{self.email_id}:{self.field}"


@dataclass
class Category:
    id: int
    account_id: str
    name: str
    color: str | None = None
    icon: str | None = None
    is_system: bool = False


@dataclass
class AppliedSummary:
    """Counts from one applied batch of provider changes."""

    added: int = 0
    updated: int = 0
    deleted: int = 0

    @property
    def total(self) -> int:
        return self.added + self.updated + self.deleted


@dataclass
class SyncLogEntry:
    id: int
    account_id: str
    started_at: datetime
    status: SyncLogStatus
    sync_cycle_id: str | None = None
    completed_at: datetime | None = None
    added: int = 0
    updated: int = 0
    deleted: int = 0
    full_resync: bool = False
    error: str | None = None


def _same_value(field_name: str, provider_value: Any, local_value: Any) -> bool:
    """Whether the provider now reports what a pending local edit set."""
    if field_name == "labels":
        return sorted(provider_value or []) == sorted(local_value or [])
    return bool(provider_value) == bool(local_value)


def _column_value(field_name: str, value: Any) -> Any:
    if field_name == "labels":
        return json.dumps(list(value))
    return int(bool(value))


class MailboxStore:
    """Async store for accounts, cached mail and everything derived from it.

    Attributes:
        db_path: Path to the SQLite database file
        notifier: Receives a StoreEvent after every committed change
        index: Derived index maintainer run inside each write transaction
    """

    def __init__(
        self,
        db_path: str | Path,
        notifier: ChangeNotifier | None = None,
        busy_timeout_ms: int = 5000,
        pending_mutation_ttl_minutes: int = 60,
    ):
        self.db_path = Path(db_path)
        self.notifier = notifier or ChangeNotifier()
        self.index = DerivedIndexMaintainer()
        self.busy_timeout_ms = busy_timeout_ms
        self.pending_mutation_ttl = timedelta(minutes=pending_mutation_ttl_minutes)
        self._locks: dict[str, asyncio.Lock] = {}
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed.

        This must be called before any other operations.
        """
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection in autocommit mode.

        Sets the PRAGMAs every connection needs:
        - busy_timeout: writers on other connections wait instead of failing
        - foreign_keys: ON so account deletion cascades
        - synchronous: NORMAL (safe with WAL, faster writes)
        """
        async with aiosqlite.connect(self.db_path, isolation_level=None) as db:
            await db.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA temp_store = MEMORY")
            db.row_factory = aiosqlite.Row
            yield db

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Read connection for query helpers."""
        async with self._db() as db:
            yield db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """BEGIN IMMEDIATE transaction; rolled back on any exception."""
        async with self._db() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                if db.in_transaction:
                    await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")

    def lock_for(self, account_id: str) -> asyncio.Lock:
        """The lock serializing every write for one account."""
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    @asynccontextmanager
    async def account_transaction(self, account_id: str) -> AsyncIterator[aiosqlite.Connection]:
        """Write transaction holding the account's lock."""
        async with self.lock_for(account_id):
            async with self.transaction() as db:
                yield db

    def _publish(self, kind: EventKind, account_id: str, **payload: Any) -> None:
        self.notifier.publish(StoreEvent(kind=kind, account_id=account_id, payload=payload))

    async def checkpoint_wal(self) -> None:
        """Run a WAL checkpoint to keep WAL file size bounded.

        Uses TRUNCATE mode to reset the WAL file after checkpointing.
        Safe to call periodically (e.g., at the end of each scheduler tick).
        """
        try:
            async with self._db() as db:
                await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            logger.debug("wal_checkpoint_complete")
        except aiosqlite.Error as e:
            logger.warning("wal_checkpoint_failed", error=str(e))

    # =========================================================================
    # Sync Batches
    # =========================================================================

    async def apply_changes(
        self,
        account_id: str,
        changes: Sequence[ChangeEvent],
        new_cursor: str,
    ) -> AppliedSummary:
        """Apply one batch of provider changes and advance the cursor atomically.

        Args:
            account_id: Account the changes belong to
            changes: Deduplicated change events from the delta fetcher
            new_cursor: Cursor to store once every change is applied

        Returns:
            Counts of inserted, updated and deleted rows

        Raises:
            AccountNotFoundError: If the account was removed
            DatabaseError: If the batch fails; nothing is applied
        """
        summary = AppliedSummary()
        try:
            async with self.account_transaction(account_id) as db:
                await self._require_account(db, account_id)
                await self._expire_pending_mutations(db, account_id)
                rules = await self._load_rules(db, account_id)
                synced_at = _now_iso()

                for change in changes:
                    if change.kind == "deleted":
                        if await self._delete_remote(db, account_id, change.remote_id):
                            summary.deleted += 1
                        continue
                    if change.message is None:
                        logger.warning(
                            "change_without_message",
                            account_id=account_id,
                            remote_id=change.remote_id,
                        )
                        continue
                    created = await self._upsert_remote(
                        db, account_id, change.message, rules, synced_at
                    )
                    if created:
                        summary.added += 1
                    else:
                        summary.updated += 1

                await db.execute(
                    "UPDATE accounts SET sync_cursor = ?, last_sync_at = ? WHERE id = ?",
                    (new_cursor, synced_at, account_id),
                )
        except aiosqlite.Error as e:
            logger.error(
                "apply_changes_failed",
                account_id=account_id,
                changes=len(changes),
                error=str(e),
            )
            raise DatabaseError(
                f"Failed to apply {len(changes)} changes for account '{account_id}': {e}. "
                "The batch was rolled back and the cursor was not advanced."
            ) from e

        logger.info(
            "changes_applied",
            account_id=account_id,
            added=summary.added,
            updated=summary.updated,
            deleted=summary.deleted,
        )
        if summary.total:
            self._publish(
                "emails_changed",
                account_id,
                added=summary.added,
                updated=summary.updated,
                deleted=summary.deleted,
            )
        return summary

    async def _expire_pending_mutations(self, db: aiosqlite.Connection, account_id: str) -> None:
        # Unpushed edits never expire; the provider has not seen them yet
        cutoff = to_iso(datetime.now(UTC) - self.pending_mutation_ttl)
        cursor = await db.execute(
            """
            DELETE FROM pending_mutations
            WHERE pushed_at IS NOT NULL AND pushed_at < ?
              AND email_id IN (SELECT id FROM emails WHERE account_id = ?)
            """,
            (cutoff, account_id),
        )
        if cursor.rowcount:
            logger.info(
                "pending_mutations_expired", account_id=account_id, count=cursor.rowcount
            )

    async def _pending_values(self, db: aiosqlite.Connection, email_id: str) -> dict[str, Any]:
        cursor = await db.execute(
            "SELECT field, value FROM pending_mutations WHERE email_id = ?", (email_id,)
        )
        return {row["field"]: json.loads(row["value"]) for row in await cursor.fetchall()}

    async def _upsert_remote(
        self,
        db: aiosqlite.Connection,
        account_id: str,
        message: RemoteMessage,
        rules: list[CategorizationRule],
        synced_at: str,
    ) -> bool:
        """Insert or update one provider message. Returns True when inserted."""
        existing = await self._email_by_remote_id(db, account_id, message.remote_id)

        values: dict[str, Any] = {name: getattr(message, name) for name in MUTABLE_FIELDS}
        if existing:
            for name, local_value in (await self._pending_values(db, existing.id)).items():
                if _same_value(name, values[name], local_value):
                    await db.execute(
                        "DELETE FROM pending_mutations WHERE email_id = ? AND field = ?",
                        (existing.id, name),
                    )
                else:
                    values[name] = local_value

        snippet = message.snippet
        if snippet and len(snippet) > MAX_SNIPPET_LENGTH:
            snippet = snippet[:MAX_SNIPPET_LENGTH]

        email = Email(
            id=existing.id if existing else str(uuid.uuid4()),
            account_id=account_id,
            remote_id=message.remote_id,
            thread_id=message.thread_id,
            subject=message.subject,
            from_email=message.from_email.lower() if message.from_email else None,
            from_name=message.from_name,
            to_addresses=list(message.to_addresses),
            cc_addresses=list(message.cc_addresses),
            snippet=snippet,
            body=existing.body if existing else None,
            body_html=existing.body_html if existing else None,
            received_at=message.received_at,
            is_read=bool(values["is_read"]),
            is_starred=bool(values["is_starred"]),
            labels=list(values["labels"]),
            has_attachments=message.has_attachments,
            has_list_unsubscribe=message.has_list_unsubscribe,
            is_trashed=bool(values["is_trashed"]),
            category_override=existing.category_override if existing else False,
            topic_id=existing.topic_id if existing else None,
            synced_at=from_iso(synced_at),
        )
        if email.category_override:
            email.category_id = existing.category_id
        else:
            email.category_id = categorize(email, rules)

        params = (
            email.thread_id,
            email.subject,
            email.from_email,
            email.from_name,
            json.dumps(email.to_addresses),
            json.dumps(email.cc_addresses),
            email.snippet,
            email.received_at_iso,
            int(email.is_read),
            int(email.is_starred),
            json.dumps(email.labels),
            int(email.has_attachments),
            int(email.has_list_unsubscribe),
            int(email.is_trashed),
            email.category_id,
            synced_at,
        )
        if existing:
            await db.execute(
                """
                UPDATE emails SET
                    thread_id = ?, subject = ?, from_email = ?, from_name = ?,
                    to_addresses = ?, cc_addresses = ?, snippet = ?, received_at = ?,
                    is_read = ?, is_starred = ?, labels = ?, has_attachments = ?,
                    has_list_unsubscribe = ?, is_trashed = ?, category_id = ?, synced_at = ?
                WHERE id = ?
                """,
                (*params, email.id),
            )
        else:
            await db.execute(
                """
                INSERT INTO emails (
                    thread_id, subject, from_email, from_name,
                    to_addresses, cc_addresses, snippet, received_at,
                    is_read, is_starred, labels, has_attachments,
                    has_list_unsubscribe, is_trashed, category_id, synced_at,
                    id, account_id, remote_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (*params, email.id, account_id, email.remote_id),
            )

        await self.index.on_ingest(db, email, previous=existing)
        return existing is None

    async def _delete_remote(
        self, db: aiosqlite.Connection, account_id: str, remote_id: str
    ) -> bool:
        existing = await self._email_by_remote_id(db, account_id, remote_id)
        if existing is None:
            return False
        await self.index.on_delete(db, existing)
        await db.execute("DELETE FROM emails WHERE id = ?", (existing.id,))
        return True

    async def _email_by_remote_id(
        self, db: aiosqlite.Connection, account_id: str, remote_id: str
    ) -> Email | None:
        cursor = await db.execute(
            "SELECT * FROM emails WHERE account_id = ? AND remote_id = ?",
            (account_id, remote_id),
        )
        row = await cursor.fetchone()
        return self.row_to_email(row) if row else None

    async def get_email(self, account_id: str, email_id: str) -> Email | None:
        async with self._db() as db:
            cursor = await db.execute(
                "SELECT * FROM emails WHERE id = ? AND account_id = ?", (email_id, account_id)
            )
            row = await cursor.fetchone()
        return self.row_to_email(row) if row else None

    def row_to_email(self, row: aiosqlite.Row) -> Email:
        """Convert a database row to an Email dataclass."""
        return Email(
            id=row["id"],
            account_id=row["account_id"],
            remote_id=row["remote_id"],
            thread_id=row["thread_id"],
            subject=row["subject"],
            from_email=row["from_email"],
            from_name=row["from_name"],
            to_addresses=_json_list(row["to_addresses"]),
            cc_addresses=_json_list(row["cc_addresses"]),
            snippet=row["snippet"],
            body=row["body"],
            body_html=row["body_html"],
            received_at=from_iso(row["received_at"]),
            is_read=bool(row["is_read"]),
            is_starred=bool(row["is_starred"]),
            labels=_json_list(row["labels"]),
            has_attachments=bool(row["has_attachments"]),
            has_list_unsubscribe=bool(row["has_list_unsubscribe"]),
            is_trashed=bool(row["is_trashed"]),
            category_id=row["category_id"],
            category_override=bool(row["category_override"]),
            topic_id=row["topic_id"],
            synced_at=from_iso(row["synced_at"]),
        )

    # =========================================================================
    # Account Operations
    # =========================================================================

    async def create_account(
        self,
        email: str,
        display_name: str | None = None,
        home_account_id: str | None = None,
        access_token: str | None = None,
        refresh_token: str | None = None,
        token_expires_at: datetime | None = None,
    ) -> tuple[Account, bool]:
        """Create an account, or refresh the tokens of the one with this address.

        Returns:
            (account, created) where created is False for an existing address
        """
        address = email.strip().lower()
        now = _now_iso()
        try:
            async with self.transaction() as db:
                cursor = await db.execute("SELECT id FROM accounts WHERE email = ?", (address,))
                row = await cursor.fetchone()
                if row:
                    account_id = row["id"]
                    await db.execute(
                        """
                        UPDATE accounts SET
                            display_name = COALESCE(?, display_name),
                            home_account_id = COALESCE(?, home_account_id),
                            access_token = ?, refresh_token = ?, token_expires_at = ?,
                            auth_state = 'active', last_error = NULL, last_error_at = NULL
                        WHERE id = ?
                        """,
                        (
                            display_name,
                            home_account_id,
                            access_token,
                            refresh_token,
                            to_iso(token_expires_at),
                            account_id,
                        ),
                    )
                else:
                    account_id = str(uuid.uuid4())
                    await db.execute(
                        """
                        INSERT INTO accounts (
                            id, email, display_name, home_account_id, access_token,
                            refresh_token, token_expires_at, auth_state, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, 'active', ?)
                        """,
                        (
                            account_id,
                            address,
                            display_name,
                            home_account_id,
                            access_token,
                            refresh_token,
                            to_iso(token_expires_at),
                            now,
                        ),
                    )
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to save account '{address}': {e}") from e

        created = row is None
        logger.info("account_saved", account_id=account_id, created=created)
        account = await self.get_account(account_id)
        self._publish("account_status", account_id, state="active", created=created)
        return account, created

    async def get_account(self, account_id: str) -> Account | None:
        async with self._db() as db:
            cursor = await db.execute("SELECT * FROM accounts WHERE id = ?", (account_id,))
            row = await cursor.fetchone()
        return self._row_to_account(row) if row else None

    async def get_account_by_email(self, email: str) -> Account | None:
        async with self._db() as db:
            cursor = await db.execute(
                "SELECT * FROM accounts WHERE email = ?", (email.strip().lower(),)
            )
            row = await cursor.fetchone()
        return self._row_to_account(row) if row else None

    async def require_account(self, account_id: str) -> Account:
        """Get an account or raise AccountNotFoundError."""
        account = await self.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    async def list_accounts(self) -> list[Account]:
        async with self._db() as db:
            cursor = await db.execute("SELECT * FROM accounts ORDER BY created_at, email")
            rows = await cursor.fetchall()
        return [self._row_to_account(row) for row in rows]

    async def delete_account(self, account_id: str) -> bool:
        """Delete an account and, by cascade, everything it owns.

        Waits for any in-flight write on the account to commit first.

        Returns:
            True if the account existed
        """
        try:
            async with self.account_transaction(account_id) as db:
                cursor = await db.execute("DELETE FROM accounts WHERE id = ?", (account_id,))
                deleted = cursor.rowcount > 0
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to delete account '{account_id}': {e}") from e

        self._locks.pop(account_id, None)
        if deleted:
            logger.info("account_deleted", account_id=account_id)
            self._publish("account_status", account_id, state="removed")
        return deleted

    async def update_tokens(
        self,
        account_id: str,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
    ) -> None:
        """Persist refreshed (already encrypted) tokens.

        A None refresh_token keeps the stored one.
        """
        async with self.transaction() as db:
            cursor = await db.execute(
                """
                UPDATE accounts SET
                    access_token = ?,
                    refresh_token = COALESCE(?, refresh_token),
                    token_expires_at = ?
                WHERE id = ?
                """,
                (access_token, refresh_token, to_iso(token_expires_at), account_id),
            )
            if cursor.rowcount == 0:
                raise AccountNotFoundError(account_id)

    async def set_auth_state(
        self, account_id: str, state: AuthState, error: str | None = None
    ) -> None:
        now = _now_iso()
        async with self.transaction() as db:
            if state == "unauthenticated":
                await db.execute(
                    """
                    UPDATE accounts SET auth_state = ?, access_token = NULL, refresh_token = NULL,
                        last_error = ?, last_error_at = ?
                    WHERE id = ?
                    """,
                    (state, error, now, account_id),
                )
            else:
                await db.execute(
                    "UPDATE accounts SET auth_state = ? WHERE id = ?", (state, account_id)
                )
        logger.info("auth_state_changed", account_id=account_id, state=state)
        self._publish("account_status", account_id, state=state)

    async def record_sync_success(self, account_id: str) -> None:
        async with self.transaction() as db:
            await db.execute(
                "UPDATE accounts SET last_error = NULL, last_error_at = NULL WHERE id = ?",
                (account_id,),
            )

    async def record_sync_failure(self, account_id: str, error: str) -> None:
        async with self.transaction() as db:
            await db.execute(
                "UPDATE accounts SET last_error = ?, last_error_at = ? WHERE id = ?",
                (error, _now_iso(), account_id),
            )

    async def _require_account(self, db: aiosqlite.Connection, account_id: str) -> None:
        cursor = await db.execute("SELECT 1 FROM accounts WHERE id = ?", (account_id,))
        if await cursor.fetchone() is None:
            raise AccountNotFoundError(account_id)

    def _row_to_account(self, row: aiosqlite.Row) -> Account:
        return Account(
            id=row["id"],
            email=row["email"],
            display_name=row["display_name"],
            home_account_id=row["home_account_id"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            token_expires_at=from_iso(row["token_expires_at"]),
            sync_cursor=row["sync_cursor"],
            last_sync_at=from_iso(row["last_sync_at"]),
            auth_state=row["auth_state"],
            last_error=row["last_error"],
            last_error_at=from_iso(row["last_error_at"]),
            created_at=from_iso(row["created_at"]),
        )

    # =========================================================================
    # Sync Log
    # =========================================================================

    async def start_sync_log(self, account_id: str) -> int:
        """Record the start of a sync cycle, tagged with the current sync_cycle_id."""
        async with self.transaction() as db:
            cursor = await db.execute(
                """
                INSERT INTO sync_log (account_id, sync_cycle_id, started_at, status)
                VALUES (?, ?, ?, 'running')
                """,
                (account_id, get_correlation_id(), _now_iso()),
            )
            return cursor.lastrowid

    async def finish_sync_log(
        self,
        log_id: int,
        status: SyncLogStatus,
        summary: AppliedSummary | None = None,
        full_resync: bool = False,
        error: str | None = None,
    ) -> None:
        summary = summary or AppliedSummary()
        async with self.transaction() as db:
            await db.execute(
                """
                UPDATE sync_log SET
                    completed_at = ?, status = ?, added = ?, updated = ?, deleted = ?,
                    full_resync = ?, error = ?
                WHERE id = ?
                """,
                (
                    _now_iso(),
                    status,
                    summary.added,
                    summary.updated,
                    summary.deleted,
                    int(full_resync),
                    error,
                    log_id,
                ),
            )

    async def recent_sync_log(self, account_id: str, limit: int = 20) -> list[SyncLogEntry]:
        async with self._db() as db:
            cursor = await db.execute(
                "SELECT * FROM sync_log WHERE account_id = ? ORDER BY id DESC LIMIT ?",
                (account_id, limit),
            )
            rows = await cursor.fetchall()
        return [
            SyncLogEntry(
                id=row["id"],
                account_id=row["account_id"],
                sync_cycle_id=row["sync_cycle_id"],
                started_at=from_iso(row["started_at"]),
                completed_at=from_iso(row["completed_at"]),
                status=row["status"],
                added=row["added"],
                updated=row["updated"],
                deleted=row["deleted"],
                full_resync=bool(row["full_resync"]),
                error=row["error"],
            )
            for row in rows
        ]

    # =========================================================================
    # Local Mutations
    # =========================================================================

    async def _mutate(
        self,
        account_id: str,
        email_ids: Iterable[str],
        field_name: MutableField,
        compute: Callable[[Email], Any],
        strict: bool = True,
    ) -> list[Email]:
        """Apply a local edit and record it as a pending mutation.

        Args:
            compute: Returns the new value of field_name for an email
            strict: Raise EmailNotFoundError for unknown ids instead of skipping

        Returns:
            The updated emails
        """
        if field_name not in MUTABLE_FIELDS:
            raise ValueError(f"Field '{field_name}' cannot be mutated locally")

        now = _now_iso()
        updated: list[Email] = []
        try:
            async with self.account_transaction(account_id) as db:
                rules = None
                for email_id in email_ids:
                    cursor = await db.execute(
                        "SELECT * FROM emails WHERE id = ? AND account_id = ?",
                        (email_id, account_id),
                    )
                    row = await cursor.fetchone()
                    if row is None:
                        if strict:
                            raise EmailNotFoundError(email_id, account_id)
                        continue

                    previous = self.row_to_email(row)
                    email = replace(previous, **{field_name: compute(previous)})
                    column = _column_value(field_name, getattr(email, field_name))

                    # field_name is checked against MUTABLE_FIELDS above
                    await db.execute(
                        f"UPDATE emails SET {field_name} = ? WHERE id = ?", (column, email.id)
                    )
                    await db.execute(
                        """
                        INSERT INTO pending_mutations (email_id, field, value, created_at)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT(email_id, field) DO UPDATE SET
                            value = excluded.value,
                            created_at = excluded.created_at,
                            pushed_at = NULL
                        """,
                        (email.id, field_name, json.dumps(getattr(email, field_name)), now),
                    )

                    if field_name == "labels":
                        if not email.category_override:
                            if rules is None:
                                rules = await self._load_rules(db, account_id)
                            email.category_id = categorize(email, rules)
                            await db.execute(
                                "UPDATE emails SET category_id = ? WHERE id = ?",
                                (email.category_id, email.id),
                            )
                        await self.index.on_ingest(db, email, previous=previous)

                    updated.append(email)
        except aiosqlite.Error as e:
            raise DatabaseError(
                f"Failed to update '{field_name}' for account '{account_id}': {e}"
            ) from e

        if updated:
            logger.debug(
                "local_mutation_recorded",
                account_id=account_id,
                field=field_name,
                count=len(updated),
            )
            self._publish(
                "emails_changed",
                account_id,
                email_ids=[email.id for email in updated],
                field=field_name,
            )
        return updated

    async def mark_read(self, account_id: str, email_id: str, is_read: bool = True) -> Email:
        (email,) = await self._mutate(account_id, [email_id], "is_read", lambda _: is_read)
        return email

    async def toggle_star(self, account_id: str, email_id: str) -> Email:
        (email,) = await self._mutate(
            account_id, [email_id], "is_starred", lambda e: not e.is_starred
        )
        return email

    async def trash_email(self, account_id: str, email_id: str, trashed: bool = True) -> Email:
        """Soft delete: the row stays until the provider reports the move."""
        (email,) = await self._mutate(account_id, [email_id], "is_trashed", lambda _: trashed)
        return email

    async def trash_emails(self, account_id: str, email_ids: Sequence[str]) -> int:
        """Trash several emails in one transaction. Unknown ids are skipped."""
        updated = await self._mutate(
            account_id, list(dict.fromkeys(email_ids)), "is_trashed", lambda _: True, strict=False
        )
        return len(updated)

    async def add_label(self, account_id: str, email_id: str, label: str) -> Email:
        label = self._validate_label(label)

        def with_label(email: Email) -> list[str]:
            if any(existing.casefold() == label.casefold() for existing in email.labels):
                return email.labels
            return [*email.labels, label]

        (email,) = await self._mutate(account_id, [email_id], "labels", with_label)
        return email

    async def remove_label(self, account_id: str, email_id: str, label: str) -> Email:
        label = self._validate_label(label)

        def without_label(email: Email) -> list[str]:
            wanted = label.casefold()
            return [existing for existing in email.labels if existing.casefold() != wanted]

        (email,) = await self._mutate(account_id, [email_id], "labels", without_label)
        return email

    @staticmethod
    def _validate_label(label: str) -> str:
        label = (label or "").strip()
        if not label:
            raise ValueError("Label cannot be empty")
        if len(label) > MAX_LABEL_LENGTH:
            raise ValueError(f"Label cannot be longer than {MAX_LABEL_LENGTH} characters")
        return label

    async def set_category_override(
        self, account_id: str, email_id: str, category_id: int | None
    ) -> None:
        """Pin an email to a category (or to none). Local only, never pushed."""
        async with self.account_transaction(account_id) as db:
            if category_id is not None:
                await self._require_category(db, account_id, category_id)
            cursor = await db.execute(
                """
                UPDATE emails SET category_id = ?, category_override = 1
                WHERE id = ? AND account_id = ?
                """,
                (category_id, email_id, account_id),
            )
            if cursor.rowcount == 0:
                raise EmailNotFoundError(email_id, account_id)
        self._publish("emails_changed", account_id, email_ids=[email_id], field="category_id")

    async def clear_category_override(self, account_id: str, email_id: str) -> int | None:
        """Hand the email back to the rules. Returns its recomputed category."""
        async with self.account_transaction(account_id) as db:
            cursor = await db.execute(
                "SELECT * FROM emails WHERE id = ? AND account_id = ?", (email_id, account_id)
            )
            row = await cursor.fetchone()
            if row is None:
                raise EmailNotFoundError(email_id, account_id)
            email = self.row_to_email(row)
            category_id = categorize(email, await self._load_rules(db, account_id))
            await db.execute(
                "UPDATE emails SET category_id = ?, category_override = 0 WHERE id = ?",
                (category_id, email_id),
            )
        self._publish("emails_changed", account_id, email_ids=[email_id], field="category_id")
        return category_id

    # =========================================================================
    # Pending Mutation Push
    # =========================================================================

    async def pending_mutations_for_push(self, account_id: str) -> list[PendingMutation]:
        """Local edits not yet sent to the provider, oldest first."""
        async with self._db() as db:
            cursor = await db.execute(
                """
                SELECT p.email_id, e.remote_id, p.field, p.value, p.created_at, p.pushed_at
                FROM pending_mutations p
                JOIN emails e ON e.id = p.email_id
                WHERE e.account_id = ? AND p.pushed_at IS NULL
                ORDER BY p.created_at
                """,
                (account_id,),
            )
            rows = await cursor.fetchall()
        return [
            PendingMutation(
                email_id=row["email_id"],
                remote_id=row["remote_id"],
                field=row["field"],
                value=json.loads(row["value"]),
                created_at=from_iso(row["created_at"]),
                pushed_at=from_iso(row["pushed_at"]),
            )
            for row in rows
        ]

    async def mark_mutations_pushed(
        self, account_id: str, mutations: Iterable[PendingMutation]
    ) -> int:
        """Mark mutations as sent. A value edited again since it was read stays unpushed."""
        now = _now_iso()
        marked = 0
        async with self.account_transaction(account_id) as db:
            for mutation in mutations:
                cursor = await db.execute(
                    """
                    UPDATE pending_mutations SET pushed_at = ?
                    WHERE email_id = ? AND field = ? AND value = ?
                    """,
                    (now, mutation.email_id, mutation.field, json.dumps(mutation.value)),
                )
                marked += cursor.rowcount
        return marked

    async def store_email_body(self, account_id: str, email_id: str, body: MessageBody) -> None:
        """Save a lazily fetched body and its attachment metadata."""
        async with self.account_transaction(account_id) as db:
            cursor = await db.execute(
                "UPDATE emails SET body = ?, body_html = ? WHERE id = ? AND account_id = ?",
                (body.body, body.body_html, email_id, account_id),
            )
            if cursor.rowcount == 0:
                raise EmailNotFoundError(email_id, account_id)
            for attachment in body.attachments:
                await db.execute(
                    """
                    INSERT INTO attachments
                        (email_id, filename, mime_type, size, remote_attachment_id)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(email_id, remote_attachment_id) DO UPDATE SET
                        filename = excluded.filename,
                        mime_type = excluded.mime_type,
                        size = excluded.size
                    """,
                    (
                        email_id,
                        attachment.filename,
                        attachment.mime_type,
                        attachment.size,
                        attachment.remote_attachment_id,
                    ),
                )
        logger.debug(
            "email_body_stored",
            account_id=account_id,
            email_id=email_id,
            attachments=len(body.attachments),
        )

    # =========================================================================
    # Categories and Rules
    # =========================================================================

    async def seed_default_categories(self, account_id: str) -> int:
        """Create the system categories and default rules for an account.

        Rules are only added for categories created by this call, so seeding
        twice is harmless.

        Returns:
            Number of categories created
        """
        now = _now_iso()
        created: dict[str, int] = {}
        async with self.account_transaction(account_id) as db:
            await self._require_account(db, account_id)
            for category in DEFAULT_CATEGORIES:
                cursor = await db.execute(
                    """
                    INSERT OR IGNORE INTO categories (account_id, name, color, icon, is_system)
                    VALUES (?, ?, ?, ?, 1)
                    """,
                    (account_id, category["name"], category["color"], category["icon"]),
                )
                if cursor.rowcount:
                    created[category["name"]] = cursor.lastrowid

            for category_name, rule_type, value, priority in DEFAULT_RULES:
                if category_name not in created:
                    continue
                await db.execute(
                    """
                    INSERT INTO categorization_rules
                        (account_id, category_id, type, value, priority, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (account_id, created[category_name], rule_type, value, priority, now),
                )

        logger.info("default_categories_seeded", account_id=account_id, created=len(created))
        return len(created)

    async def create_category(
        self,
        account_id: str,
        name: str,
        color: str | None = None,
        icon: str | None = None,
    ) -> Category:
        name = (name or "").strip()
        if not name:
            raise RuleValidationError("Category name cannot be empty")
        try:
            async with self.account_transaction(account_id) as db:
                await self._require_account(db, account_id)
                cursor = await db.execute(
                    """
                    INSERT INTO categories (account_id, name, color, icon, is_system)
                    VALUES (?, ?, ?, ?, 0)
                    """,
                    (account_id, name, color, icon),
                )
                category_id = cursor.lastrowid
        except aiosqlite.IntegrityError as e:
            raise RuleValidationError(f"Category '{name}' already exists") from e
        return Category(id=category_id, account_id=account_id, name=name, color=color, icon=icon)

    async def list_categories(self, account_id: str) -> list[Category]:
        async with self._db() as db:
            cursor = await db.execute(
                "SELECT * FROM categories WHERE account_id = ? ORDER BY is_system DESC, name",
                (account_id,),
            )
            rows = await cursor.fetchall()
        return [
            Category(
                id=row["id"],
                account_id=row["account_id"],
                name=row["name"],
                color=row["color"],
                icon=row["icon"],
                is_system=bool(row["is_system"]),
            )
            for row in rows
        ]

    async def delete_category(self, account_id: str, category_id: int) -> bool:
        """Delete a user category. Its rules go with it; its emails become uncategorized.

        Raises:
            RuleValidationError: For a system category
        """
        async with self.account_transaction(account_id) as db:
            cursor = await db.execute(
                "SELECT is_system FROM categories WHERE id = ? AND account_id = ?",
                (category_id, account_id),
            )
            row = await cursor.fetchone()
            if row is None:
                return False
            if row["is_system"]:
                raise RuleValidationError("System categories cannot be deleted")
            await db.execute("DELETE FROM categories WHERE id = ?", (category_id,))
        return True

    async def add_rule(self, account_id: str, data: Mapping[str, Any]) -> CategorizationRule:
        """Validate and store a categorization rule.

        Raises:
            RuleValidationError: Malformed rule, or a category of another account
        """
        rule = parse_rule({key: value for key, value in data.items() if key != "id"})
        async with self.account_transaction(account_id) as db:
            await self._require_category(db, account_id, rule.category_id)
            cursor = await db.execute(
                """
                INSERT INTO categorization_rules
                    (account_id, category_id, type, value, priority, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (account_id, rule.category_id, rule.type, rule.value, rule.priority, _now_iso()),
            )
            rule = rule.model_copy(update={"id": cursor.lastrowid})
        logger.info("rule_added", account_id=account_id, rule_id=rule.id, type=rule.type)
        return rule

    async def list_rules(self, account_id: str) -> list[CategorizationRule]:
        async with self._db() as db:
            return await self._load_rules(db, account_id)

    async def delete_rule(self, account_id: str, rule_id: int) -> bool:
        async with self.account_transaction(account_id) as db:
            cursor = await db.execute(
                "DELETE FROM categorization_rules WHERE id = ? AND account_id = ?",
                (rule_id, account_id),
            )
            return cursor.rowcount > 0

    async def recategorize_all(self, account_id: str) -> int:
        """Re-run the rules over every email without a manual override.

        Returns:
            Number of emails whose category changed
        """
        changed = 0
        async with self.account_transaction(account_id) as db:
            rules = await self._load_rules(db, account_id)
            cursor = await db.execute(
                "SELECT * FROM emails WHERE account_id = ? AND category_override = 0",
                (account_id,),
            )
            for row in await cursor.fetchall():
                email = self.row_to_email(row)
                category_id = categorize(email, rules)
                if category_id != email.category_id:
                    await db.execute(
                        "UPDATE emails SET category_id = ? WHERE id = ?", (category_id, email.id)
                    )
                    changed += 1

        logger.info("recategorized", account_id=account_id, changed=changed)
        if changed:
            self._publish("emails_changed", account_id, recategorized=changed)
        return changed

    async def _load_rules(
        self, db: aiosqlite.Connection, account_id: str
    ) -> list[CategorizationRule]:
        cursor = await db.execute(
            """
            SELECT id, category_id, type, value, priority FROM categorization_rules
            WHERE account_id = ? ORDER BY priority, id
            """,
            (account_id,),
        )
        return load_rules(dict(row) for row in await cursor.fetchall())

    async def _require_category(
        self, db: aiosqlite.Connection, account_id: str, category_id: int
    ) -> None:
        cursor = await db.execute(
            "SELECT 1 FROM categories WHERE id = ? AND account_id = ?", (category_id, account_id)
        )
        if await cursor.fetchone() is None:
            raise RuleValidationError(
                f"Category {category_id} does not exist for account '{account_id}'"
            )
