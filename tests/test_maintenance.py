"""Tests for database maintenance operations."""

from datetime import UTC, datetime, timedelta

import pytest

from mailsync.db import maintenance
from mailsync.db.models import SCHEMA_VERSION
from mailsync.db.store import Account, MailboxStore


async def _count(store: MailboxStore, sql: str) -> int:
    async with store.connection() as db:
        cursor = await db.execute(sql)
        return (await cursor.fetchone())[0]


class TestPrune:
    """Tests for dropping old cached mail."""

    @pytest.mark.asyncio
    async def test_prune_removes_old_mail_and_updates_index(
        self, store: MailboxStore, account: Account, added
    ) -> None:
        """Test that pruned emails leave the derived index consistent."""
        now = datetime.now(UTC)
        await store.apply_changes(
            account.id,
            [
                added("old", subject="Archive", received_at=now - timedelta(days=400)),
                added("new", subject="Current", received_at=now - timedelta(days=2)),
            ],
            "c1",
        )

        deleted = await maintenance.delete_emails_older_than(store, account.id, days=365)

        assert deleted == 1
        assert await _count(store, "SELECT COUNT(*) FROM emails") == 1
        assert await _count(store, "SELECT message_count FROM sender_groups") == 1
        assert await _count(store, "SELECT COUNT(*) FROM topics") == 1

    @pytest.mark.asyncio
    async def test_prune_rejects_non_positive_days(
        self, store: MailboxStore, account: Account
    ) -> None:
        with pytest.raises(ValueError):
            await maintenance.delete_emails_older_than(store, account.id, days=0)


class TestOrphanCleanup:
    """Tests for repairing rows whose owner is gone."""

    @pytest.mark.asyncio
    async def test_orphans_removed(self, store: MailboxStore, account: Account, added) -> None:
        """Test that rows left behind with foreign keys off are cleaned up."""
        await store.apply_changes(account.id, [added("msg-1")], "c1")
        async with store.connection() as db:
            await db.execute("PRAGMA foreign_keys = OFF")
            await db.execute("DELETE FROM accounts WHERE id = ?", (account.id,))

        removed = await maintenance.delete_orphaned_records(store)

        assert removed["emails"] == 1
        assert removed["sender_groups"] == 1
        assert await _count(store, "SELECT COUNT(*) FROM emails") == 0
        assert await _count(store, "SELECT COUNT(*) FROM topics") == 0

    @pytest.mark.asyncio
    async def test_clean_database_untouched(
        self, store: MailboxStore, account: Account, added
    ) -> None:
        await store.apply_changes(account.id, [added("msg-1")], "c1")

        removed = await maintenance.delete_orphaned_records(store)

        assert sum(removed.values()) == 0
        assert await _count(store, "SELECT COUNT(*) FROM emails") == 1


class TestStats:
    """Tests for stats and housekeeping."""

    @pytest.mark.asyncio
    async def test_database_stats(self, store: MailboxStore, account: Account, added) -> None:
        await store.apply_changes(account.id, [added("msg-1")], "c1")

        stats = await maintenance.database_stats(store)

        assert stats["schema_version"] == SCHEMA_VERSION
        assert stats["row_counts"]["accounts"] == 1
        assert stats["row_counts"]["emails"] == 1
        assert stats["file_size_bytes"] > 0

    @pytest.mark.asyncio
    async def test_vacuum_and_checkpoint(self, store: MailboxStore, account: Account) -> None:
        """Test that housekeeping runs on a live database."""
        await maintenance.vacuum(store)
        await maintenance.checkpoint_wal(store)

        assert await store.get_account(account.id) is not None
