"""Incremental maintenance of sender groups and topics.

Both indexes are updated on the connection of the transaction that applies
the change, inside a SAVEPOINT. A failure rolls back only the index update,
is logged, and never fails the ingest itself.

Keys:
- Sender group: (account_id, lower-cased address). Messages labelled SENT
  are grouped under their recipients instead of the sender.
- Topic: (account_id, normalized subject). Reply/forward prefixes are
  stripped repeatedly; an empty subject falls back to the first line of the
  provider's body preview. Each email keeps the id of the topic it was
  counted under, and decrements always go through that id.

Usage:
    from mailsync.engine.derived_index import DerivedIndexMaintainer, normalize_subject

    normalize_subject("RE: Re: Project X")  # "project x"
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import aiosqlite
import regex

from mailsync.core.logging import get_logger

if TYPE_CHECKING:
    from mailsync.db.store import Email

logger = get_logger(__name__)

# Regex timeout for security (used in match operations)
REGEX_TIMEOUT = 1.0

# Reply/forward prefixes, English and the common localized forms, with
# optional counters ("Re[2]:", "AW (3):")
SUBJECT_PREFIX_PATTERN = regex.compile(
    r"^\s*(?:re|fwd?|aw|wg|sv|vs|antw|tr|válasz|továbbítás)\s*(?:\[\d+\]|\(\d+\))?\s*:\s*",
    regex.IGNORECASE,
)
_WHITESPACE_PATTERN = regex.compile(r"\s+")

MAX_TOPIC_NAME_LENGTH = 200


def strip_subject_prefixes(subject: str) -> str:
    """Remove every leading reply/forward prefix, keeping the original case."""
    stripped = subject
    while True:
        new_stripped = SUBJECT_PREFIX_PATTERN.sub("", stripped, count=1, timeout=REGEX_TIMEOUT)
        if new_stripped == stripped:
            break
        stripped = new_stripped
    return _WHITESPACE_PATTERN.sub(" ", stripped, timeout=REGEX_TIMEOUT).strip()


def normalize_subject(subject: str | None) -> str:
    """Topic key for a subject: prefixes stripped, whitespace collapsed, casefolded."""
    if not subject:
        return ""
    try:
        return strip_subject_prefixes(subject).casefold()
    except TimeoutError:
        return subject.strip().casefold()


def topic_for(email: Email) -> tuple[str, str] | None:
    """(key, display name) of the email's topic, or None when it has none."""
    subject = email.subject or ""
    try:
        name = strip_subject_prefixes(subject)
    except TimeoutError:
        name = subject.strip()

    if not name:
        # Provider preview only: the lazily fetched body would change the key
        source = email.snippet or ""
        first_line = next((line.strip() for line in source.splitlines() if line.strip()), "")
        name = first_line

    name = name[:MAX_TOPIC_NAME_LENGTH]
    if not name:
        return None
    return name.casefold(), name


def sender_keys(email: Email) -> dict[str, str | None]:
    """Addresses the email is grouped under, mapped to a display name."""
    if "SENT" in email.labels:
        return {address.lower(): None for address in email.to_addresses + email.cc_addresses}
    if email.from_email:
        return {email.from_email.lower(): email.from_name}
    return {}


class DerivedIndexMaintainer:
    """Keeps sender_groups and topics in step with the emails table."""

    async def on_ingest(
        self,
        db: aiosqlite.Connection,
        email: Email,
        previous: Email | None = None,
    ) -> None:
        """Account for an inserted email, or an update of `previous` to `email`."""
        await self._guarded(db, "ingest", email, self._ingest(db, email, previous))

    async def on_delete(self, db: aiosqlite.Connection, email: Email) -> None:
        """Remove a deleted email's contribution to every index."""
        await self._guarded(db, "delete", email, self._delete(db, email))

    async def _guarded(self, db: aiosqlite.Connection, operation: str, email: Email, work) -> None:
        await db.execute("SAVEPOINT derived_index")
        try:
            await work
        except Exception as e:
            await db.execute("ROLLBACK TO SAVEPOINT derived_index")
            await db.execute("RELEASE SAVEPOINT derived_index")
            logger.warning(
                "derived_index_update_failed",
                operation=operation,
                account_id=email.account_id,
                email_id=email.id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return
        await db.execute("RELEASE SAVEPOINT derived_index")

    async def _ingest(self, db: aiosqlite.Connection, email: Email, previous: Email | None) -> None:
        seen_at = email.received_at_iso
        new_senders = sender_keys(email)
        old_senders = sender_keys(previous) if previous else {}

        for address, name in new_senders.items():
            if address in old_senders:
                await self._touch_sender(db, email.account_id, address, name, seen_at)
            else:
                await self._increment_sender(db, email.account_id, address, name, seen_at)
        for address in old_senders.keys() - new_senders.keys():
            await self._decrement_sender(db, email.account_id, address)

        new_topic = topic_for(email)
        old_topic_id = previous.topic_id if previous else None
        old_key = await self._topic_key(db, old_topic_id) if old_topic_id else None

        if old_topic_id and (new_topic is None or old_key != new_topic[0]):
            await self._decrement_topic(db, old_topic_id)

        topic_id = None
        if new_topic:
            if old_key == new_topic[0]:
                topic_id = await self._touch_topic(db, old_topic_id, seen_at)
            else:
                topic_id = await self._increment_topic(
                    db, email.account_id, new_topic[0], new_topic[1], seen_at
                )

        await db.execute("UPDATE emails SET topic_id = ? WHERE id = ?", (topic_id, email.id))

    async def _delete(self, db: aiosqlite.Connection, email: Email) -> None:
        for address in sender_keys(email):
            await self._decrement_sender(db, email.account_id, address)
        if email.topic_id:
            await self._decrement_topic(db, email.topic_id)

    # ------------------------------------------------------------------
    # Sender groups
    # ------------------------------------------------------------------

    async def _increment_sender(
        self,
        db: aiosqlite.Connection,
        account_id: str,
        address: str,
        name: str | None,
        seen_at: str | None,
    ) -> None:
        _, _, domain = address.rpartition("@")
        await db.execute(
            """
            INSERT INTO sender_groups
                (account_id, email, name, domain, message_count, last_message_at)
            VALUES (?, ?, ?, ?, 1, ?)
            ON CONFLICT(account_id, email) DO UPDATE SET
                message_count = message_count + 1,
                name = COALESCE(excluded.name, name),
                last_message_at = CASE
                    WHEN excluded.last_message_at > COALESCE(last_message_at, '')
                    THEN excluded.last_message_at ELSE last_message_at END
            """,
            (account_id, address, name, domain or None, seen_at),
        )

    async def _touch_sender(
        self,
        db: aiosqlite.Connection,
        account_id: str,
        address: str,
        name: str | None,
        seen_at: str | None,
    ) -> None:
        await db.execute(
            """
            UPDATE sender_groups SET
                name = COALESCE(?, name),
                last_message_at = CASE
                    WHEN ? > COALESCE(last_message_at, '') THEN ? ELSE last_message_at END
            WHERE account_id = ? AND email = ?
            """,
            (name, seen_at, seen_at, account_id, address),
        )

    async def _decrement_sender(
        self, db: aiosqlite.Connection, account_id: str, address: str
    ) -> None:
        await db.execute(
            "UPDATE sender_groups SET message_count = message_count - 1 "
            "WHERE account_id = ? AND email = ?",
            (account_id, address),
        )
        await db.execute(
            "DELETE FROM sender_groups WHERE account_id = ? AND email = ? AND message_count <= 0",
            (account_id, address),
        )

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------

    async def _increment_topic(
        self,
        db: aiosqlite.Connection,
        account_id: str,
        key: str,
        name: str,
        seen_at: str | None,
    ) -> int:
        cursor = await db.execute(
            """
            INSERT INTO topics
                (account_id, normalized_subject, name, message_count, last_message_at)
            VALUES (?, ?, ?, 1, ?)
            ON CONFLICT(account_id, normalized_subject) DO UPDATE SET
                message_count = message_count + 1,
                last_message_at = CASE
                    WHEN excluded.last_message_at > COALESCE(last_message_at, '')
                    THEN excluded.last_message_at ELSE last_message_at END
            RETURNING id
            """,
            (account_id, key, name, seen_at),
        )
        row = await cursor.fetchone()
        return row[0]

    async def _topic_key(self, db: aiosqlite.Connection, topic_id: int) -> str | None:
        cursor = await db.execute(
            "SELECT normalized_subject FROM topics WHERE id = ?", (topic_id,)
        )
        row = await cursor.fetchone()
        return row[0] if row else None

    async def _touch_topic(
        self,
        db: aiosqlite.Connection,
        topic_id: int,
        seen_at: str | None,
    ) -> int | None:
        cursor = await db.execute(
            """
            UPDATE topics SET last_message_at = CASE
                WHEN ? > COALESCE(last_message_at, '') THEN ? ELSE last_message_at END
            WHERE id = ?
            RETURNING id
            """,
            (seen_at, seen_at, topic_id),
        )
        row = await cursor.fetchone()
        return row[0] if row else None

    async def _decrement_topic(self, db: aiosqlite.Connection, topic_id: int) -> None:
        await db.execute(
            "UPDATE topics SET message_count = message_count - 1 WHERE id = ?", (topic_id,)
        )
        await db.execute(
            "DELETE FROM topics WHERE id = ? AND message_count <= 0", (topic_id,)
        )
