"""Read-only queries over the local cache.

Every UI view (inbox, by sender, by topic, by time, categories, newsletters,
attachments) reads through MailboxQueries. Nothing here writes; mutations go
through MailboxStore.

Time buckets are disjoint and computed in UTC:
- today: since the start of the current day
- yesterday: the previous day
- this_week: the 7 days before today, excluding yesterday
- this_month: from the first of the month up to the start of this_week
- older: everything before both this_week and this_month

Usage:
    from mailsync.db.queries import MailboxQueries

    queries = MailboxQueries(store)
    page = await queries.list_emails(account_id, time_bucket="today", unread=True)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from mailsync.core.errors import AccountNotFoundError
from mailsync.core.logging import get_logger
from mailsync.db.store import Attachment, Email, MailboxStore, from_iso, to_iso

logger = get_logger(__name__)

TimeBucket = Literal["today", "yesterday", "this_week", "this_month", "older"]

TIME_BUCKETS: tuple[TimeBucket, ...] = ("today", "yesterday", "this_week", "this_month", "older")

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


@dataclass
class EmailPage:
    emails: list[Email]
    total: int
    page: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.page * self.limit < self.total


@dataclass
class SenderGroup:
    email: str
    name: str | None
    domain: str | None
    message_count: int
    last_message_at: datetime | None


@dataclass
class Topic:
    id: int
    name: str | None
    normalized_subject: str
    message_count: int
    last_message_at: datetime | None


@dataclass
class NewsletterSender:
    sender_email: str
    sender_name: str | None
    is_muted: bool
    email_count: int
    last_email_at: datetime | None
    detected_at: datetime | None


@dataclass
class CategoryCount:
    category_id: int | None
    name: str
    color: str | None
    total: int
    unread: int


def bucket_bounds(now: datetime) -> dict[TimeBucket, tuple[datetime | None, datetime | None]]:
    """[start, end) of every time bucket relative to now. None is unbounded."""
    today = now.astimezone(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
    yesterday = today - timedelta(days=1)
    week_start = today - timedelta(days=7)
    month_start = today.replace(day=1)
    return {
        "today": (today, None),
        "yesterday": (yesterday, today),
        "this_week": (week_start, yesterday),
        # Empty during the first week of a month
        "this_month": (month_start, week_start),
        "older": (None, min(month_start, week_start)),
    }


def _page_params(page: int, limit: int) -> tuple[int, int]:
    page = max(1, page)
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    return page, limit


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class MailboxQueries:
    """Read helpers shared by every view of the cache."""

    def __init__(self, store: MailboxStore):
        self.store = store

    async def _fetch_page(
        self,
        where: list[str],
        params: list[Any],
        page: int,
        limit: int,
    ) -> EmailPage:
        page, limit = _page_params(page, limit)
        clause = " AND ".join(where)
        async with self.store.connection() as db:
            cursor = await db.execute(f"SELECT COUNT(*) FROM emails WHERE {clause}", params)
            total = (await cursor.fetchone())[0]
            cursor = await db.execute(
                f"""
                SELECT * FROM emails WHERE {clause}
                ORDER BY received_at DESC NULLS LAST, id
                LIMIT ? OFFSET ?
                """,
                [*params, limit, (page - 1) * limit],
            )
            rows = await cursor.fetchall()
        return EmailPage(
            emails=[self.store.row_to_email(row) for row in rows],
            total=total,
            page=page,
            limit=limit,
        )

    async def list_emails(
        self,
        account_id: str,
        *,
        label: str | None = None,
        category_id: int | None = None,
        sender: str | None = None,
        topic_id: int | None = None,
        time_bucket: TimeBucket | None = None,
        unread: bool | None = None,
        starred: bool | None = None,
        trashed: bool | None = False,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        now: datetime | None = None,
    ) -> EmailPage:
        """List emails newest first.

        Args:
            trashed: False hides trashed mail, True shows only trash, None shows both
            limit: Page size, capped at MAX_PAGE_SIZE
        """
        where = ["account_id = ?"]
        params: list[Any] = [account_id]

        if label is not None:
            where.append(
                "EXISTS (SELECT 1 FROM json_each(emails.labels) "
                "WHERE lower(json_each.value) = lower(?))"
            )
            params.append(label)
        if category_id is not None:
            where.append("category_id = ?")
            params.append(category_id)
        if sender is not None:
            where.append("from_email = ?")
            params.append(sender.strip().lower())
        if topic_id is not None:
            where.append("topic_id = ?")
            params.append(topic_id)
        if time_bucket is not None:
            if time_bucket not in TIME_BUCKETS:
                raise ValueError(f"Unknown time bucket '{time_bucket}'. Use one of {TIME_BUCKETS}")
            start, end = bucket_bounds(now or datetime.now(UTC))[time_bucket]
            if start is not None:
                where.append("received_at >= ?")
                params.append(to_iso(start))
            if end is not None:
                where.append("received_at < ?")
                params.append(to_iso(end))
        if unread is not None:
            where.append("is_read = ?")
            params.append(0 if unread else 1)
        if starred is not None:
            where.append("is_starred = ?")
            params.append(int(starred))
        if trashed is not None:
            where.append("is_trashed = ?")
            params.append(int(trashed))

        return await self._fetch_page(where, params, page, limit)

    async def search(
        self,
        account_id: str,
        query: str,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> EmailPage:
        """Substring search over subject, snippet, body and sender. Trash excluded."""
        query = (query or "").strip()
        if not query:
            return EmailPage(emails=[], total=0, page=1, limit=_page_params(page, limit)[1])

        pattern = f"%{_escape_like(query)}%"
        columns = ["subject", "snippet", "body", "from_email", "from_name"]
        where = [
            "account_id = ?",
            "is_trashed = 0",
            "(" + " OR ".join(f"{c} LIKE ? ESCAPE '\\'" for c in columns) + ")",
        ]
        return await self._fetch_page(
            where, [account_id, *([pattern] * len(columns))], page, limit
        )

    async def get_email(self, account_id: str, email_id: str) -> Email | None:
        return await self.store.get_email(account_id, email_id)

    async def list_sender_groups(
        self, account_id: str, limit: int = MAX_PAGE_SIZE, offset: int = 0
    ) -> list[SenderGroup]:
        async with self.store.connection() as db:
            cursor = await db.execute(
                """
                SELECT email, name, domain, message_count, last_message_at
                FROM sender_groups WHERE account_id = ?
                ORDER BY last_message_at DESC NULLS LAST, email
                LIMIT ? OFFSET ?
                """,
                (account_id, limit, offset),
            )
            rows = await cursor.fetchall()
        return [
            SenderGroup(
                email=row["email"],
                name=row["name"],
                domain=row["domain"],
                message_count=row["message_count"],
                last_message_at=from_iso(row["last_message_at"]),
            )
            for row in rows
        ]

    async def list_topics(
        self, account_id: str, limit: int = MAX_PAGE_SIZE, offset: int = 0
    ) -> list[Topic]:
        async with self.store.connection() as db:
            cursor = await db.execute(
                """
                SELECT id, name, normalized_subject, message_count, last_message_at
                FROM topics WHERE account_id = ?
                ORDER BY last_message_at DESC NULLS LAST, id
                LIMIT ? OFFSET ?
                """,
                (account_id, limit, offset),
            )
            rows = await cursor.fetchall()
        return [
            Topic(
                id=row["id"],
                name=row["name"],
                normalized_subject=row["normalized_subject"],
                message_count=row["message_count"],
                last_message_at=from_iso(row["last_message_at"]),
            )
            for row in rows
        ]

    async def list_newsletter_senders(
        self, account_id: str, include_muted: bool = True
    ) -> list[NewsletterSender]:
        """Detected newsletter senders, minus the ones the user removed."""
        sql = """
            SELECT * FROM newsletter_senders
            WHERE account_id = ? AND is_newsletter = 1 AND removed_by_user = 0
        """
        if not include_muted:
            sql += " AND is_muted = 0"
        sql += " ORDER BY last_email_at DESC NULLS LAST, sender_email"

        async with self.store.connection() as db:
            cursor = await db.execute(sql, (account_id,))
            rows = await cursor.fetchall()
        return [
            NewsletterSender(
                sender_email=row["sender_email"],
                sender_name=row["sender_name"],
                is_muted=bool(row["is_muted"]),
                email_count=row["email_count"],
                last_email_at=from_iso(row["last_email_at"]),
                detected_at=from_iso(row["detected_at"]),
            )
            for row in rows
        ]

    async def list_newsletter_emails(
        self,
        account_id: str,
        include_muted: bool = False,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> EmailPage:
        muted_clause = "" if include_muted else " AND n.is_muted = 0"
        where = [
            "account_id = ?",
            "is_trashed = 0",
            f"""from_email IN (
                SELECT n.sender_email FROM newsletter_senders n
                WHERE n.account_id = emails.account_id
                  AND n.is_newsletter = 1 AND n.removed_by_user = 0{muted_clause}
            )""",
        ]
        return await self._fetch_page(where, [account_id], page, limit)

    async def time_bucket_counts(
        self, account_id: str, now: datetime | None = None
    ) -> dict[TimeBucket, int]:
        """Non-trashed email count per time bucket."""
        bounds = bucket_bounds(now or datetime.now(UTC))
        counts: dict[TimeBucket, int] = {}
        async with self.store.connection() as db:
            for bucket in TIME_BUCKETS:
                start, end = bounds[bucket]
                sql = (
                    "SELECT COUNT(*) FROM emails "
                    "WHERE account_id = ? AND is_trashed = 0 AND received_at IS NOT NULL"
                )
                params: list[Any] = [account_id]
                if start is not None:
                    sql += " AND received_at >= ?"
                    params.append(to_iso(start))
                if end is not None:
                    sql += " AND received_at < ?"
                    params.append(to_iso(end))
                cursor = await db.execute(sql, params)
                counts[bucket] = (await cursor.fetchone())[0]
        return counts

    async def category_counts(self, account_id: str) -> list[CategoryCount]:
        """Totals per category, including empty ones, plus an uncategorized row."""
        async with self.store.connection() as db:
            cursor = await db.execute(
                """
                SELECT c.id, c.name, c.color,
                       COUNT(e.id) AS total,
                       COALESCE(SUM(CASE WHEN e.is_read = 0 THEN 1 ELSE 0 END), 0) AS unread
                FROM categories c
                LEFT JOIN emails e ON e.category_id = c.id AND e.is_trashed = 0
                WHERE c.account_id = ?
                GROUP BY c.id
                ORDER BY c.is_system DESC, c.name
                """,
                (account_id,),
            )
            rows = await cursor.fetchall()
            cursor = await db.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN is_read = 0 THEN 1 ELSE 0 END), 0) AS unread
                FROM emails
                WHERE account_id = ? AND is_trashed = 0 AND category_id IS NULL
                """,
                (account_id,),
            )
            uncategorized = await cursor.fetchone()

        counts = [
            CategoryCount(
                category_id=row["id"],
                name=row["name"],
                color=row["color"],
                total=row["total"],
                unread=row["unread"],
            )
            for row in rows
        ]
        counts.append(
            CategoryCount(
                category_id=None,
                name="Uncategorized",
                color=None,
                total=uncategorized["total"],
                unread=uncategorized["unread"],
            )
        )
        return counts

    async def list_attachments(
        self, account_id: str, email_id: str | None = None
    ) -> list[Attachment]:
        """Attachment metadata for one email, or for the whole account."""
        sql = """
            SELECT a.* FROM attachments a
            JOIN emails e ON e.id = a.email_id
            WHERE e.account_id = ?
        """
        params: list[Any] = [account_id]
        if email_id is not None:
            sql += " AND a.email_id = ?"
            params.append(email_id)
        sql += " ORDER BY e.received_at DESC NULLS LAST, a.id"

        async with self.store.connection() as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [
            Attachment(
                id=row["id"],
                email_id=row["email_id"],
                remote_attachment_id=row["remote_attachment_id"],
                filename=row["filename"],
                mime_type=row["mime_type"],
                size=row["size"],
            )
            for row in rows
        ]

    async def account_health(self, account_id: str) -> dict[str, Any]:
        """Sync and auth status of an account, for the status command and UI badges.

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        account = await self.store.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)

        async with self.store.connection() as db:
            cursor = await db.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN is_read = 0 AND is_trashed = 0 THEN 1 ELSE 0 END), 0)
                           AS unread
                FROM emails WHERE account_id = ?
                """,
                (account_id,),
            )
            email_counts = await cursor.fetchone()
            cursor = await db.execute(
                """
                SELECT COUNT(*) FROM pending_mutations p
                JOIN emails e ON e.id = p.email_id
                WHERE e.account_id = ?
                """,
                (account_id,),
            )
            pending = (await cursor.fetchone())[0]

        recent = await self.store.recent_sync_log(account_id, limit=1)
        last_cycle = recent[0] if recent else None

        return {
            "account_id": account.id,
            "email": account.email,
            "auth_state": account.auth_state,
            "last_sync_at": account.last_sync_at,
            "last_error": account.last_error,
            "last_error_at": account.last_error_at,
            "has_cursor": bool(account.sync_cursor),
            "total_emails": email_counts["total"],
            "unread_emails": email_counts["unread"],
            "pending_mutations": pending,
            "last_cycle_status": last_cycle.status if last_cycle else None,
            "last_cycle_at": last_cycle.started_at if last_cycle else None,
        }
