"""Tests for sender groups and topics."""

from datetime import UTC, datetime

import pytest

from mailsync.db.store import Account, Email, MailboxStore
from mailsync.engine.derived_index import (
    normalize_subject,
    sender_keys,
    strip_subject_prefixes,
    topic_for,
)
from mailsync.graph.delta import ChangeEvent, MessageBody


async def _rows(store: MailboxStore, sql: str, params: tuple = ()) -> list[dict]:
    async with store.connection() as db:
        cursor = await db.execute(sql, params)
        return [dict(row) for row in await cursor.fetchall()]


class TestNormalizeSubject:
    """Tests for subject normalization."""

    @pytest.mark.parametrize(
        "subject",
        [
            "Project kickoff",
            "Re: Project kickoff",
            "RE: Fwd: project KICKOFF",
            "Fw:  Re[2]:   Project   kickoff",
            "AW: WG: Project kickoff",
            "Re (3): Project kickoff",
        ],
    )
    def test_prefix_variants_share_a_key(self, subject: str) -> None:
        """Test that reply and forward prefixes do not split a topic."""
        assert normalize_subject(subject) == "project kickoff"

    def test_empty_subject(self) -> None:
        """Test that missing subjects normalize to an empty key."""
        assert normalize_subject(None) == ""
        assert normalize_subject("Re:") == ""

    def test_strip_keeps_case(self) -> None:
        """Test that the display name keeps its original case."""
        assert strip_subject_prefixes("Re: Budget Q3") == "Budget Q3"

    def test_prefix_inside_subject_is_kept(self) -> None:
        """Test that only leading prefixes are removed."""
        assert normalize_subject("Answer re: budget") == "answer re: budget"


class TestKeys:
    """Tests for sender and topic keys of a single email."""

    def test_topic_falls_back_to_first_preview_line(self) -> None:
        """Test that subjectless mail is grouped by the first line of its preview."""
        email = Email(
            id="e", account_id="a", remote_id="r", subject="", snippet="\n  Hello there\nmore"
        )
        assert topic_for(email) == ("hello there", "Hello there")

    def test_no_topic_without_text(self) -> None:
        """Test that emails with no text at all have no topic."""
        assert topic_for(Email(id="e", account_id="a", remote_id="r")) is None

    def test_sent_mail_grouped_by_recipients(self) -> None:
        """Test that sent mail is grouped under the people it went to."""
        email = Email(
            id="e",
            account_id="a",
            remote_id="r",
            from_email="me@example.com",
            to_addresses=["Bob@Example.org"],
            cc_addresses=["carol@example.org"],
            labels=["SENT"],
        )
        assert set(sender_keys(email)) == {"bob@example.org", "carol@example.org"}


class TestDerivedIndexMaintenance:
    """Tests for index upkeep as the store applies changes."""

    @pytest.mark.asyncio
    async def test_ingest_counts_senders_and_topics(
        self, store: MailboxStore, account: Account, added
    ) -> None:
        """Test that replies land in the same topic and sender group."""
        await store.apply_changes(
            account.id,
            [
                added("msg-1", subject="Budget"),
                added(
                    "msg-2",
                    subject="RE: budget",
                    received_at=datetime(2026, 10, 3, tzinfo=UTC),
                ),
                added("msg-3", subject="Lunch?", from_email="bob@other.org", from_name="Bob"),
            ],
            "c1",
        )

        senders = await _rows(
            store, "SELECT email, message_count, last_message_at FROM sender_groups ORDER BY email"
        )
        assert [(s["email"], s["message_count"]) for s in senders] == [
            ("alice@partner.com", 2),
            ("bob@other.org", 1),
        ]
        assert senders[0]["last_message_at"].startswith("2026-10-03")

        topics = await _rows(
            store, "SELECT id, normalized_subject, name, message_count FROM topics ORDER BY id"
        )
        assert [(t["normalized_subject"], t["message_count"]) for t in topics] == [
            ("budget", 2),
            ("lunch?", 1),
        ]
        assert topics[0]["name"] == "Budget"

        linked = await _rows(
            store, "SELECT COUNT(*) AS n FROM emails WHERE topic_id = ?", (topics[0]["id"],)
        )
        assert linked[0]["n"] == 2

    @pytest.mark.asyncio
    async def test_delete_decrements_and_drops_empty_groups(
        self, store: MailboxStore, account: Account, added
    ) -> None:
        """Test that deleting the last message removes its groups."""
        await store.apply_changes(
            account.id, [added("msg-1"), added("msg-2", from_email="bob@other.org")], "c1"
        )

        await store.apply_changes(account.id, [ChangeEvent("deleted", "msg-2")], "c2")

        senders = await _rows(store, "SELECT email, message_count FROM sender_groups")
        assert senders == [{"email": "alice@partner.com", "message_count": 1}]
        topics = await _rows(store, "SELECT message_count FROM topics")
        assert topics == [{"message_count": 1}]

    @pytest.mark.asyncio
    async def test_subject_change_moves_topic(
        self, store: MailboxStore, account: Account, added
    ) -> None:
        """Test that an updated subject moves the email to another topic."""
        await store.apply_changes(account.id, [added("msg-1", subject="Old")], "c1")
        await store.apply_changes(account.id, [added("msg-1", subject="New")], "c2")

        topics = await _rows(store, "SELECT normalized_subject, message_count FROM topics")
        assert topics == [{"normalized_subject": "new", "message_count": 1}]

    @pytest.mark.asyncio
    async def test_index_failure_does_not_abort_batch(
        self, store: MailboxStore, account: Account, added, monkeypatch
    ) -> None:
        """Test that a broken index update keeps the email and the cursor."""

        async def broken(*args, **kwargs):
            raise RuntimeError("index bug")

        monkeypatch.setattr(store.index, "_increment_topic", broken)

        summary = await store.apply_changes(account.id, [added("msg-1")], "c1")

        assert summary.added == 1
        assert (await store.require_account(account.id)).sync_cursor == "c1"
        assert await _rows(store, "SELECT * FROM topics") == []
        # The whole update is undone, sender counts included
        assert await _rows(store, "SELECT * FROM sender_groups") == []

    @pytest.mark.asyncio
    async def test_reply_chain_forms_one_topic(
        self, store: MailboxStore, account: Account, added
    ) -> None:
        """Test that a subject and its nested replies count as one topic."""
        await store.apply_changes(
            account.id,
            [
                added("msg-1", subject="Project X"),
                added("msg-2", subject="Re: Project X"),
                added("msg-3", subject="RE: Re: Project X"),
            ],
            "c1",
        )

        topics = await _rows(store, "SELECT normalized_subject, message_count FROM topics")
        assert topics == [{"normalized_subject": "project x", "message_count": 3}]

    @pytest.mark.asyncio
    async def test_body_fetch_does_not_move_subjectless_topic(
        self, store: MailboxStore, account: Account, added
    ) -> None:
        """Test that a subjectless email leaves its topic cleanly after its body is cached."""
        await store.apply_changes(
            account.id,
            [added("msg-1", subject="", snippet="Hi team the numbers for October are attached")],
            "c1",
        )
        email_id = (await _rows(store, "SELECT id FROM emails"))[0]["id"]
        await store.store_email_body(
            account.id,
            email_id,
            MessageBody(body="Hi team,\nthe numbers for October are attached.", body_html=None),
        )

        update = added("msg-1", subject="", snippet="Hi team the numbers for October")
        await store.apply_changes(account.id, [update], "c2")
        topics = await _rows(store, "SELECT normalized_subject, message_count FROM topics")
        assert topics == [
            {"normalized_subject": "hi team the numbers for october", "message_count": 1}
        ]

        await store.apply_changes(account.id, [ChangeEvent("deleted", "msg-1")], "c3")

        assert await _rows(store, "SELECT * FROM topics") == []
