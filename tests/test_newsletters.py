"""Tests for newsletter sender detection."""

from datetime import UTC, datetime, timedelta

import pytest

from mailsync.core.events import StoreEvent
from mailsync.db.queries import MailboxQueries
from mailsync.db.store import Account, MailboxStore
from mailsync.engine.newsletters import NewsletterDetector, is_newsletter_sender


def _recent(days: int = 1) -> datetime:
    return datetime.now(UTC) - timedelta(days=days)


async def _ingest(store: MailboxStore, account: Account, added, sender: str, count: int, **kw):
    changes = [
        added(f"{sender}-{i}", from_email=sender, received_at=_recent(i + 1), **kw)
        for i in range(count)
    ]
    await store.apply_changes(account.id, changes, "c1")


class TestIsNewsletterSender:
    """Tests for the per-sender classification."""

    def test_list_unsubscribe_wins(self) -> None:
        assert is_newsletter_sender("alice@partner.com", "Lunch?", has_list_unsubscribe=True)

    @pytest.mark.parametrize(
        "address", ["noreply@shop.com", "no-reply@shop.com", "newsletter@site.org", "news@x.io"]
    )
    def test_automated_addresses(self, address: str) -> None:
        assert is_newsletter_sender(address)

    def test_bulk_domain_and_subdomain(self) -> None:
        """Test that bulk platforms match on their subdomains too."""
        assert is_newsletter_sender("writer@substack.com")
        assert is_newsletter_sender("bounce@mail.sendgrid.net")

    def test_extra_domains(self) -> None:
        assert is_newsletter_sender("team@corp-mailer.com", extra_domains=["Corp-Mailer.com"])

    def test_digest_subject(self) -> None:
        assert is_newsletter_sender("editor@magazine.com", "The Weekly Recap, Issue #42")

    def test_person_is_not_newsletter(self) -> None:
        assert not is_newsletter_sender("alice@partner.com", "Contract questions")
        assert not is_newsletter_sender("")


class TestNewsletterDetector:
    """Tests for detection passes over the cache."""

    @pytest.mark.asyncio
    async def test_frequent_bulk_sender_detected(
        self, store: MailboxStore, account: Account, added
    ) -> None:
        """Test that a sender over the threshold with bulk signals is flagged."""
        events: list[StoreEvent] = []
        store.notifier.subscribe(events.append)
        await _ingest(store, account, added, "noreply@shop.com", 3)
        await _ingest(store, account, added, "alice@partner.com", 5)

        detected = await NewsletterDetector(store).detect(account.id)

        assert detected == 1
        senders = await MailboxQueries(store).list_newsletter_senders(account.id)
        assert [(s.sender_email, s.email_count) for s in senders] == [("noreply@shop.com", 3)]
        assert any(e.kind == "newsletters_detected" for e in events)

    @pytest.mark.asyncio
    async def test_below_threshold_ignored(
        self, store: MailboxStore, account: Account, added
    ) -> None:
        await _ingest(store, account, added, "noreply@shop.com", 2)

        assert await NewsletterDetector(store, min_messages=3).detect(account.id) == 0

    @pytest.mark.asyncio
    async def test_old_mail_outside_lookback_ignored(
        self, store: MailboxStore, account: Account, added
    ) -> None:
        """Test that only mail inside the lookback window counts."""
        changes = [
            added(f"old-{i}", from_email="noreply@shop.com", received_at=_recent(200 + i))
            for i in range(3)
        ]
        await store.apply_changes(account.id, changes, "c1")

        assert await NewsletterDetector(store, lookback_days=90).detect(account.id) == 0

    @pytest.mark.asyncio
    async def test_muted_state_survives_redetection(
        self, store: MailboxStore, account: Account, added
    ) -> None:
        """Test that a later pass refreshes counts without unmuting."""
        detector = NewsletterDetector(store)
        await _ingest(store, account, added, "noreply@shop.com", 3)
        await detector.detect(account.id)
        assert await detector.mute_newsletter_sender(account.id, "NoReply@Shop.com")

        await store.apply_changes(
            account.id,
            [added("extra", from_email="noreply@shop.com", received_at=_recent())],
            "c2",
        )
        assert await detector.detect(account.id) == 0

        queries = MailboxQueries(store)
        [sender] = await queries.list_newsletter_senders(account.id)
        assert sender.is_muted
        assert sender.email_count == 4
        assert await queries.list_newsletter_senders(account.id, include_muted=False) == []

    @pytest.mark.asyncio
    async def test_removed_sender_never_returns(
        self, store: MailboxStore, account: Account, added
    ) -> None:
        """Test that a sender the user removed is not flagged again."""
        detector = NewsletterDetector(store)
        await _ingest(store, account, added, "noreply@shop.com", 3)
        await detector.detect(account.id)

        assert await detector.remove_newsletter_sender(account.id, "noreply@shop.com")
        await detector.detect(account.id)

        assert await MailboxQueries(store).list_newsletter_senders(account.id) == []

    @pytest.mark.asyncio
    async def test_sent_mail_not_counted(
        self, store: MailboxStore, account: Account, added
    ) -> None:
        """Test that the user's own sent mail never makes them a newsletter."""
        await _ingest(store, account, added, "noreply@example.com", 3, labels=["SENT"])

        assert await NewsletterDetector(store).detect(account.id) == 0

    @pytest.mark.asyncio
    async def test_mute_unknown_sender(self, store: MailboxStore, account: Account) -> None:
        assert not await NewsletterDetector(store).mute_newsletter_sender(
            account.id, "nobody@example.com"
        )
