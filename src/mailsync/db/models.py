"""SQLite database schema and initialization for the mailbox sync engine.

Tables:
- accounts: Authenticated mailboxes, encrypted tokens, per-folder delta cursor
- emails: Local cache of provider messages, one row per (account, remote id)
- attachments: Attachment metadata (bytes are never cached)
- pending_mutations: Local edits not yet confirmed by the provider
- sender_groups / topics: Derived aggregates maintained incrementally
- categories / categorization_rules: Category buckets and the rules feeding them
- newsletter_senders: Output of the periodic newsletter detection pass
- scheduled_emails / reminders: Due-items claimed by the workers
- sync_log: One row per sync cycle
- schema_meta: Applied schema versions

Every account-scoped table cascades on account deletion.

Usage:
    from mailsync.db.models import init_database

    await init_database("data/mailsync.db")
"""

import stat
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

from mailsync.core.errors import DatabaseError
from mailsync.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS schema_meta (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    display_name TEXT,
    home_account_id TEXT,
    access_token TEXT,                      -- Fernet-encrypted
    refresh_token TEXT,                     -- Fernet-encrypted
    token_expires_at TEXT,
    sync_cursor TEXT,                       -- JSON: {folder: deltaLink}
    last_sync_at TEXT,
    auth_state TEXT NOT NULL DEFAULT 'active',  -- 'active', 'unauthenticated'
    last_error TEXT,
    last_error_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS categories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    color TEXT,
    icon TEXT,
    is_system INTEGER NOT NULL DEFAULT 0,
    UNIQUE(account_id, name)
);

CREATE TABLE IF NOT EXISTS categorization_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    category_id INTEGER NOT NULL REFERENCES categories(id) ON DELETE CASCADE,
    type TEXT NOT NULL,                     -- sender_domain, sender_email, subject_keyword, label
    value TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 100,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_rules_account_priority
    ON categorization_rules(account_id, priority, id);

CREATE TABLE IF NOT EXISTS topics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    normalized_subject TEXT NOT NULL,
    name TEXT,
    message_count INTEGER NOT NULL DEFAULT 0,
    last_message_at TEXT,
    UNIQUE(account_id, normalized_subject)
);

CREATE TABLE IF NOT EXISTS sender_groups (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    email TEXT NOT NULL,                    -- lower-cased
    name TEXT,
    domain TEXT,
    message_count INTEGER NOT NULL DEFAULT 0,
    last_message_at TEXT,
    UNIQUE(account_id, email)
);

CREATE TABLE IF NOT EXISTS emails (
    id TEXT PRIMARY KEY,                    -- local UUID
    account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    remote_id TEXT NOT NULL,                -- Graph message ID
    thread_id TEXT,                         -- Graph conversationId
    subject TEXT,
    from_email TEXT,
    from_name TEXT,
    to_addresses TEXT NOT NULL DEFAULT '[]',    -- JSON list
    cc_addresses TEXT NOT NULL DEFAULT '[]',    -- JSON list
    snippet TEXT,
    body TEXT,                              -- lazily fetched
    body_html TEXT,                         -- lazily fetched
    received_at TEXT,
    is_read INTEGER NOT NULL DEFAULT 0,
    is_starred INTEGER NOT NULL DEFAULT 0,
    labels TEXT NOT NULL DEFAULT '[]',      -- JSON list
    has_attachments INTEGER NOT NULL DEFAULT 0,
    has_list_unsubscribe INTEGER NOT NULL DEFAULT 0,
    is_trashed INTEGER NOT NULL DEFAULT 0,
    category_id INTEGER REFERENCES categories(id) ON DELETE SET NULL,
    category_override INTEGER NOT NULL DEFAULT 0,
    topic_id INTEGER REFERENCES topics(id) ON DELETE SET NULL,
    synced_at TEXT,
    UNIQUE(account_id, remote_id)
);

CREATE INDEX IF NOT EXISTS idx_emails_account_received ON emails(account_id, received_at DESC);
CREATE INDEX IF NOT EXISTS idx_emails_account_sender ON emails(account_id, from_email);
CREATE INDEX IF NOT EXISTS idx_emails_topic ON emails(topic_id);
CREATE INDEX IF NOT EXISTS idx_emails_category ON emails(category_id);

CREATE TABLE IF NOT EXISTS attachments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email_id TEXT NOT NULL REFERENCES emails(id) ON DELETE CASCADE,
    filename TEXT,
    mime_type TEXT,
    size INTEGER,
    remote_attachment_id TEXT NOT NULL,
    UNIQUE(email_id, remote_attachment_id)
);

CREATE TABLE IF NOT EXISTS pending_mutations (
    email_id TEXT NOT NULL REFERENCES emails(id) ON DELETE CASCADE,
    field TEXT NOT NULL CHECK (field IN ('is_read', 'is_starred', 'is_trashed', 'labels')),
    value TEXT NOT NULL,                    -- JSON
    created_at TEXT NOT NULL,
    pushed_at TEXT,                         -- NULL until sent to the provider
    PRIMARY KEY (email_id, field)
);

CREATE TABLE IF NOT EXISTS newsletter_senders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    sender_email TEXT NOT NULL,
    sender_name TEXT,
    is_newsletter INTEGER NOT NULL DEFAULT 1,
    is_muted INTEGER NOT NULL DEFAULT 0,
    removed_by_user INTEGER NOT NULL DEFAULT 0,
    email_count INTEGER NOT NULL DEFAULT 0,
    last_email_at TEXT,
    detected_at TEXT,
    UNIQUE(account_id, sender_email)
);

CREATE TABLE IF NOT EXISTS scheduled_emails (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    to_addresses TEXT NOT NULL,             -- JSON list
    cc_addresses TEXT NOT NULL DEFAULT '[]',
    subject TEXT NOT NULL DEFAULT '',
    body TEXT NOT NULL DEFAULT '',
    scheduled_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending', -- 'pending', 'processing', 'sent', 'failed'
    claim_id TEXT,
    claimed_at TEXT,
    attempted INTEGER NOT NULL DEFAULT 0,   -- 1 once the send request left the process
    error TEXT,
    created_at TEXT NOT NULL,
    sent_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_scheduled_due ON scheduled_emails(status, scheduled_at);

CREATE TABLE IF NOT EXISTS reminders (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    email_id TEXT NOT NULL REFERENCES emails(id) ON DELETE CASCADE,
    remind_at TEXT NOT NULL,
    note TEXT,
    status TEXT NOT NULL DEFAULT 'pending', -- 'pending', 'processing', 'fired', 'completed'
    claim_id TEXT,
    claimed_at TEXT,
    created_at TEXT NOT NULL,
    fired_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_reminders_due ON reminders(status, remind_at);
CREATE INDEX IF NOT EXISTS idx_reminders_email ON reminders(email_id);

CREATE TABLE IF NOT EXISTS sync_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    sync_cycle_id TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    status TEXT NOT NULL DEFAULT 'running', -- 'running', 'completed', 'failed'
    added INTEGER NOT NULL DEFAULT 0,
    updated INTEGER NOT NULL DEFAULT 0,
    deleted INTEGER NOT NULL DEFAULT 0,
    full_resync INTEGER NOT NULL DEFAULT 0,
    error TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_log_account ON sync_log(account_id, started_at DESC);
"""

# Statements that bring a database at version N-1 up to version N
MIGRATIONS: dict[int, list[str]] = {}

# Account-owned tables, in the order they are listed by stats and cleanup
ACCOUNT_TABLES = [
    "emails",
    "sender_groups",
    "topics",
    "categories",
    "categorization_rules",
    "newsletter_senders",
    "scheduled_emails",
    "reminders",
    "sync_log",
]


async def _current_version(db: aiosqlite.Connection) -> int:
    cursor = await db.execute("SELECT MAX(version) FROM schema_meta")
    row = await cursor.fetchone()
    return row[0] or 0


async def _apply_migrations(db: aiosqlite.Connection) -> int:
    """Bring the schema up to SCHEMA_VERSION and record each applied version."""
    version = await _current_version(db)
    if version > SCHEMA_VERSION:
        raise DatabaseError(
            f"Database schema version {version} is newer than supported version "
            f"{SCHEMA_VERSION}. Upgrade mailsync."
        )

    now = datetime.now(UTC).isoformat(timespec="seconds")
    if version == 0:
        # Fresh database: SCHEMA_SQL already describes the latest version
        await db.execute(
            "INSERT INTO schema_meta (version, applied_at) VALUES (?, ?)",
            (SCHEMA_VERSION, now),
        )
        return SCHEMA_VERSION

    for target in range(version + 1, SCHEMA_VERSION + 1):
        for statement in MIGRATIONS.get(target, []):
            await db.execute(statement)
        await db.execute(
            "INSERT INTO schema_meta (version, applied_at) VALUES (?, ?)",
            (target, now),
        )
        logger.info("schema_migrated", version=target)

    return SCHEMA_VERSION


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Creates the database file if it doesn't exist, enables WAL mode, creates
    all tables and indexes, and applies pending migrations.

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "wal_mode_not_enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            version = await _apply_migrations(db)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Mailbox contents and tokens: owner read/write only
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "database_initialized",
            db_path=str(db_path),
            schema_version=version,
            tables=table_count,
        )

    except aiosqlite.Error as e:
        logger.error("database_init_failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Check that every required table exists."""
    required_tables = {
        "schema_meta",
        "accounts",
        "attachments",
        "pending_mutations",
        *ACCOUNT_TABLES,
    }

    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}
    except aiosqlite.Error as e:
        logger.error("schema_verification_failed", db_path=str(db_path), error=str(e))
        return False

    missing = required_tables - existing_tables
    if missing:
        logger.warning("missing_tables", missing=sorted(missing), db_path=str(db_path))
        return False
    return True
