"""Database layer for the mailbox sync engine.

This module provides SQLite database access with async operations.

Usage:
    from mailsync.db import MailboxQueries, MailboxStore

    store = MailboxStore("data/mailsync.db")
    await store.initialize()

    # Apply a batch of provider changes and the new cursor atomically
    summary = await store.apply_changes(account_id, changes, new_cursor)

    # Read views
    queries = MailboxQueries(store)
    page = await queries.list_emails(account_id, label="INBOX", unread=True)
"""

from mailsync.db.models import (
    SCHEMA_VERSION,
    init_database,
    verify_schema,
)
from mailsync.db.queries import EmailPage, MailboxQueries
from mailsync.db.store import (
    MAX_SNIPPET_LENGTH,
    Account,
    AppliedSummary,
    Attachment,
    Category,
    Email,
    MailboxStore,
    PendingMutation,
    SyncLogEntry,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "MailboxStore",
    "MailboxQueries",
    "MAX_SNIPPET_LENGTH",
    # Dataclasses
    "Account",
    "AppliedSummary",
    "Attachment",
    "Category",
    "Email",
    "EmailPage",
    "PendingMutation",
    "SyncLogEntry",
]
