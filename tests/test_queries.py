"""Tests for read-only cache queries."""

from datetime import UTC, datetime, timedelta

import pytest

from mailsync.db.queries import MAX_PAGE_SIZE, MailboxQueries, bucket_bounds
from mailsync.db.store import Account, MailboxStore
from mailsync.graph.delta import AttachmentInfo, MessageBody

# Monday 19 October 2026, 15:00 UTC
NOW = datetime(2026, 10, 19, 15, 0, tzinfo=UTC)


@pytest.fixture
def queries(store: MailboxStore) -> MailboxQueries:
    return MailboxQueries(store)


async def _email_id(store: MailboxStore, remote_id: str) -> str:
    async with store.connection() as db:
        cursor = await db.execute("SELECT id FROM emails WHERE remote_id = ?", (remote_id,))
        return (await cursor.fetchone())["id"]


class TestBucketBounds:
    """Tests for time bucket boundaries."""

    def test_buckets_are_contiguous(self) -> None:
        """Test that each bucket ends where the next newer one starts."""
        bounds = bucket_bounds(NOW)

        assert bounds["today"] == (datetime(2026, 10, 19, tzinfo=UTC), None)
        assert bounds["yesterday"] == (
            datetime(2026, 10, 18, tzinfo=UTC),
            datetime(2026, 10, 19, tzinfo=UTC),
        )
        assert bounds["this_week"] == (
            datetime(2026, 10, 12, tzinfo=UTC),
            datetime(2026, 10, 18, tzinfo=UTC),
        )
        assert bounds["this_month"] == (
            datetime(2026, 10, 1, tzinfo=UTC),
            datetime(2026, 10, 12, tzinfo=UTC),
        )
        assert bounds["older"] == (None, datetime(2026, 10, 1, tzinfo=UTC))

    def test_first_week_of_month_has_empty_month_bucket(self) -> None:
        """Test that older starts at the week boundary when it precedes the month."""
        bounds = bucket_bounds(datetime(2026, 10, 3, 8, 0, tzinfo=UTC))

        start, end = bounds["this_month"]
        assert start >= end
        assert bounds["older"] == (None, bounds["this_week"][0])

    @pytest.mark.asyncio
    async def test_counts_per_bucket(
        self, queries: MailboxQueries, store: MailboxStore, account: Account, added
    ) -> None:
        """Test that every email lands in exactly one bucket."""
        times = {
            "t": NOW - timedelta(hours=1),
            "y": NOW - timedelta(days=1),
            "w": NOW - timedelta(days=4),
            "m": NOW - timedelta(days=12),
            "o": NOW - timedelta(days=40),
        }
        await store.apply_changes(
            account.id, [added(rid, received_at=at) for rid, at in times.items()], "c1"
        )

        counts = await queries.time_bucket_counts(account.id, now=NOW)

        assert counts == {
            "today": 1,
            "yesterday": 1,
            "this_week": 1,
            "this_month": 1,
            "older": 1,
        }
        page = await queries.list_emails(account.id, time_bucket="this_month", now=NOW)
        assert [e.remote_id for e in page.emails] == ["m"]

    @pytest.mark.asyncio
    async def test_unknown_bucket_rejected(
        self, queries: MailboxQueries, account: Account
    ) -> None:
        with pytest.raises(ValueError, match="Unknown time bucket"):
            await queries.list_emails(account.id, time_bucket="last_year")


class TestListEmails:
    """Tests for filtered listing and paging."""

    @pytest.mark.asyncio
    async def test_newest_first_with_paging(
        self, queries: MailboxQueries, store: MailboxStore, account: Account, added
    ) -> None:
        await store.apply_changes(
            account.id,
            [added(f"m{i}", received_at=NOW - timedelta(hours=i)) for i in range(5)],
            "c1",
        )

        first = await queries.list_emails(account.id, limit=2)
        last = await queries.list_emails(account.id, page=3, limit=2)

        assert [e.remote_id for e in first.emails] == ["m0", "m1"]
        assert first.total == 5
        assert first.has_more
        assert [e.remote_id for e in last.emails] == ["m4"]
        assert not last.has_more

    @pytest.mark.asyncio
    async def test_limit_capped(self, queries: MailboxQueries, account: Account) -> None:
        page = await queries.list_emails(account.id, limit=10_000)
        assert page.limit == MAX_PAGE_SIZE

    @pytest.mark.asyncio
    async def test_filters(
        self, queries: MailboxQueries, store: MailboxStore, account: Account, added
    ) -> None:
        """Test the unread, starred, sender, label and trash filters."""
        await store.apply_changes(
            account.id,
            [
                added("read", is_read=True),
                added("starred", is_starred=True, from_email="bob@other.org"),
                added("labelled", labels=["INBOX", "Receipts"]),
            ],
            "c1",
        )
        await store.trash_email(account.id, await _email_id(store, "labelled"))

        unread = await queries.list_emails(account.id, unread=True)
        starred = await queries.list_emails(account.id, starred=True)
        by_sender = await queries.list_emails(account.id, sender="Bob@Other.org")
        by_label = await queries.list_emails(account.id, label="receipts", trashed=None)
        trash = await queries.list_emails(account.id, trashed=True)

        assert {e.remote_id for e in unread.emails} == {"starred"}
        assert [e.remote_id for e in starred.emails] == ["starred"]
        assert [e.remote_id for e in by_sender.emails] == ["starred"]
        assert [e.remote_id for e in by_label.emails] == ["labelled"]
        assert [e.remote_id for e in trash.emails] == ["labelled"]

    @pytest.mark.asyncio
    async def test_accounts_are_isolated(
        self, queries: MailboxQueries, store: MailboxStore, account: Account, added
    ) -> None:
        other, _ = await store.create_account(email="other@example.com")
        await store.apply_changes(other.id, [added("theirs")], "c1")

        assert (await queries.list_emails(account.id)).total == 0


class TestSearch:
    """Tests for substring search."""

    @pytest.mark.asyncio
    async def test_matches_subject_and_sender(
        self, queries: MailboxQueries, store: MailboxStore, account: Account, added
    ) -> None:
        await store.apply_changes(
            account.id,
            [
                added("a", subject="Budget review"),
                added("b", subject="Lunch", from_name="Budget Bot"),
                added("c", subject="Unrelated", snippet="nothing here"),
            ],
            "c1",
        )

        result = await queries.search(account.id, "budget")

        assert {e.remote_id for e in result.emails} == {"a", "b"}

    @pytest.mark.asyncio
    async def test_wildcards_are_literal(
        self, queries: MailboxQueries, store: MailboxStore, account: Account, added
    ) -> None:
        """Test that % and _ in a query match only themselves."""
        await store.apply_changes(
            account.id,
            [
                added("pct", subject="100% done", snippet=""),
                added("plain", subject="100 done", snippet=""),
                added("under", subject="file_name", snippet=""),
                added("nounder", subject="filename", snippet=""),
            ],
            "c1",
        )

        assert [e.remote_id for e in (await queries.search(account.id, "0%")).emails] == ["pct"]
        found = await queries.search(account.id, "e_n")
        assert [e.remote_id for e in found.emails] == ["under"]

    @pytest.mark.asyncio
    async def test_blank_query_returns_nothing(
        self, queries: MailboxQueries, account: Account
    ) -> None:
        assert (await queries.search(account.id, "   ")).total == 0


class TestDerivedViews:
    """Tests for sender, topic, category and attachment views."""

    @pytest.mark.asyncio
    async def test_sender_groups_and_topics(
        self, queries: MailboxQueries, store: MailboxStore, account: Account, added
    ) -> None:
        await store.apply_changes(
            account.id,
            [added("a", subject="Plans"), added("b", subject="Re: Plans")],
            "c1",
        )

        [sender] = await queries.list_sender_groups(account.id)
        [topic] = await queries.list_topics(account.id)
        by_topic = await queries.list_emails(account.id, topic_id=topic.id)

        assert (sender.email, sender.domain, sender.message_count) == (
            "alice@partner.com",
            "partner.com",
            2,
        )
        assert topic.message_count == 2
        assert by_topic.total == 2

    @pytest.mark.asyncio
    async def test_category_counts(
        self, queries: MailboxQueries, store: MailboxStore, account: Account, added
    ) -> None:
        """Test per-category totals, empty categories and the uncategorized row."""
        await store.seed_default_categories(account.id)
        await store.apply_changes(
            account.id,
            [added("inv", subject="Invoice 42"), added("misc", subject="Hello", is_read=True)],
            "c1",
        )

        counts = {c.name: c for c in await queries.category_counts(account.id)}

        assert (counts["Finance"].total, counts["Finance"].unread) == (1, 1)
        assert counts["Work"].total == 0
        assert (counts["Uncategorized"].total, counts["Uncategorized"].unread) == (1, 0)
        assert counts["Uncategorized"].category_id is None

    @pytest.mark.asyncio
    async def test_attachments_listed_after_body_fetch(
        self, queries: MailboxQueries, store: MailboxStore, account: Account, added
    ) -> None:
        await store.apply_changes(account.id, [added("a", has_attachments=True)], "c1")
        email_id = await _email_id(store, "a")
        await store.store_email_body(
            account.id,
            email_id,
            MessageBody(
                body="text",
                body_html=None,
                attachments=[AttachmentInfo("att", "a.pdf", "application/pdf", 1024)],
            ),
        )

        [attachment] = await queries.list_attachments(account.id, email_id)

        assert attachment.filename == "a.pdf"
        assert (await queries.get_email(account.id, email_id)).body == "text"

    @pytest.mark.asyncio
    async def test_account_health(
        self, queries: MailboxQueries, store: MailboxStore, account: Account, added
    ) -> None:
        await store.apply_changes(account.id, [added("a"), added("b", is_read=True)], "c1")

        health = await queries.account_health(account.id)

        assert health["total_emails"] == 2
        assert health["unread_emails"] == 1
        assert health["has_cursor"]
        assert health["auth_state"] == "active"
