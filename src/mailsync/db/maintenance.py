"""Database maintenance operations.

Run from the CLI ('mailsync maintenance ...') or periodically by the
service. Pruning goes through the account lock and keeps the derived
indexes consistent; orphan cleanup repairs rows left behind by databases
written with foreign keys disabled.

Usage:
    from mailsync.db import maintenance

    removed = await maintenance.delete_orphaned_records(store)
    pruned = await maintenance.delete_emails_older_than(store, account_id, days=365)
"""

from datetime import UTC, datetime, timedelta
from typing import Any

import aiosqlite

from mailsync.core.errors import DatabaseError
from mailsync.core.logging import get_logger
from mailsync.db.models import ACCOUNT_TABLES
from mailsync.db.store import MailboxStore, to_iso

logger = get_logger(__name__)

# Table -> statement deleting its orphaned rows
_ORPHAN_STATEMENTS: dict[str, str] = {
    **{
        table: f"DELETE FROM {table} WHERE account_id NOT IN (SELECT id FROM accounts)"
        for table in ACCOUNT_TABLES
    },
    "attachments": "DELETE FROM attachments WHERE email_id NOT IN (SELECT id FROM emails)",
    "pending_mutations": (
        "DELETE FROM pending_mutations WHERE email_id NOT IN (SELECT id FROM emails)"
    ),
    "reminders_without_email": (
        "DELETE FROM reminders WHERE email_id NOT IN (SELECT id FROM emails)"
    ),
    "categorization_rules_without_category": (
        "DELETE FROM categorization_rules WHERE category_id NOT IN (SELECT id FROM categories)"
    ),
    "empty_sender_groups": "DELETE FROM sender_groups WHERE message_count <= 0",
    "empty_topics": "DELETE FROM topics WHERE message_count <= 0",
}


async def vacuum(store: MailboxStore) -> None:
    """Reclaim deleted space and defragment database.

    Should be run after pruning. VACUUM requires exclusive access and may take
    time on large databases.
    """
    try:
        async with store.connection() as db:
            await db.execute("VACUUM")
            await db.execute("ANALYZE")
        logger.info("database_vacuumed", db_path=str(store.db_path))
    except aiosqlite.Error as e:
        logger.error("vacuum_failed", error=str(e))
        raise DatabaseError(f"Failed to vacuum database: {e}") from e


async def checkpoint_wal(store: MailboxStore) -> None:
    await store.checkpoint_wal()


async def delete_orphaned_records(store: MailboxStore) -> dict[str, int]:
    """Delete rows whose owner no longer exists.

    Returns:
        Rows removed per cleanup step (steps that removed nothing included)
    """
    removed: dict[str, int] = {}
    try:
        async with store.transaction() as db:
            for name, statement in _ORPHAN_STATEMENTS.items():
                cursor = await db.execute(statement)
                removed[name] = max(cursor.rowcount, 0)
            # Dangling references are nulled rather than deleted
            cursor = await db.execute(
                "UPDATE emails SET topic_id = NULL "
                "WHERE topic_id IS NOT NULL AND topic_id NOT IN (SELECT id FROM topics)"
            )
            removed["email_topic_refs"] = max(cursor.rowcount, 0)
            cursor = await db.execute(
                "UPDATE emails SET category_id = NULL "
                "WHERE category_id IS NOT NULL AND category_id NOT IN (SELECT id FROM categories)"
            )
            removed["email_category_refs"] = max(cursor.rowcount, 0)
    except aiosqlite.Error as e:
        logger.error("orphan_cleanup_failed", error=str(e))
        raise DatabaseError(f"Failed to delete orphaned records: {e}") from e

    logger.info("orphans_deleted", total=sum(removed.values()), **removed)
    return removed


async def delete_emails_older_than(store: MailboxStore, account_id: str, days: int) -> int:
    """Drop cached mail received more than `days` ago.

    Sender groups and topics are decremented like a provider delete. The
    provider copy is untouched.

    Returns:
        Number of emails deleted
    """
    if days < 1:
        raise ValueError("days must be at least 1")

    cutoff = to_iso(datetime.now(UTC) - timedelta(days=days))
    deleted = 0
    try:
        async with store.account_transaction(account_id) as db:
            cursor = await db.execute(
                "SELECT * FROM emails WHERE account_id = ? AND received_at < ?",
                (account_id, cutoff),
            )
            for row in await cursor.fetchall():
                email = store.row_to_email(row)
                await store.index.on_delete(db, email)
                await db.execute("DELETE FROM emails WHERE id = ?", (email.id,))
                deleted += 1
    except aiosqlite.Error as e:
        logger.error("prune_failed", account_id=account_id, error=str(e))
        raise DatabaseError(f"Failed to prune emails for account '{account_id}': {e}") from e

    logger.info("emails_pruned", account_id=account_id, days=days, deleted=deleted)
    return deleted


async def database_stats(store: MailboxStore) -> dict[str, Any]:
    """File sizes, schema version and row counts per table."""
    stats: dict[str, Any] = {
        "db_path": str(store.db_path),
        "file_size_bytes": store.db_path.stat().st_size if store.db_path.exists() else 0,
    }
    wal_path = store.db_path.with_suffix(store.db_path.suffix + "-wal")
    stats["wal_size_bytes"] = wal_path.stat().st_size if wal_path.exists() else 0

    tables = ["accounts", *ACCOUNT_TABLES, "attachments", "pending_mutations"]
    counts: dict[str, int] = {}
    try:
        async with store.connection() as db:
            for table in tables:
                cursor = await db.execute(f"SELECT COUNT(*) FROM {table}")
                counts[table] = (await cursor.fetchone())[0]
            cursor = await db.execute("SELECT MAX(version) FROM schema_meta")
            stats["schema_version"] = (await cursor.fetchone())[0]
    except aiosqlite.Error as e:
        raise DatabaseError(f"Failed to read database stats: {e}") from e

    stats["row_counts"] = counts
    return stats
