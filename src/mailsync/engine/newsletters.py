"""Periodic newsletter sender detection.

Senders seen often enough within the lookback window are flagged as
newsletters when any of these hold:
- One of their messages carried a List-Unsubscribe header
- Their domain is a known bulk-mail platform
- The local part of their address looks automated (noreply@, news@, ...)
- Their latest subject looks like a digest (weekly, issue #12, ...)

User decisions win over detection. A muted sender stays muted and a sender
the user removed from the list is never flagged again; later passes only
refresh the counts.

Usage:
    from mailsync.engine.newsletters import NewsletterDetector

    detector = NewsletterDetector(store, min_messages=3, lookback_days=90)
    detected = await detector.detect(account_id)
"""

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

import regex

from mailsync.core.events import StoreEvent
from mailsync.core.logging import get_logger
from mailsync.db.store import MailboxStore, to_iso

logger = get_logger(__name__)

REGEX_TIMEOUT = 1.0

BULK_ADDRESS_PATTERNS = [
    regex.compile(p, regex.IGNORECASE)
    for p in [
        r"^no-?reply@",
        r"^newsletters?@",
        r"^news@",
        r"^digest@",
        r"^updates@",
        r"^notifications@",
        r"^mailer@",
        r"^marketing@",
        r"^info@",
        r"^hello@",
    ]
]

KNOWN_BULK_DOMAINS = frozenset(
    {
        "substack.com",
        "mailchimp.com",
        "sendgrid.net",
        "mailgun.org",
        "constantcontact.com",
        "sendinblue.com",
        "klaviyo.com",
        "buttondown.email",
        "convertkit.com",
        "revue.email",
        "ghost.io",
        "beehiiv.com",
        "medium.com",
    }
)

DIGEST_SUBJECT_PATTERNS = [
    regex.compile(p, regex.IGNORECASE)
    for p in [
        r"newsletter",
        r"digest",
        r"weekly",
        r"daily",
        r"monthly",
        r"issue\s*#?\d+",
        r"edition",
        r"update",
        r"recap",
        r"roundup",
    ]
]


def _matches_any(patterns: list[regex.Pattern], text: str) -> bool:
    for pattern in patterns:
        try:
            if pattern.search(text, timeout=REGEX_TIMEOUT):
                return True
        except TimeoutError:
            logger.warning("newsletter_pattern_timeout", pattern=pattern.pattern)
    return False


def _is_bulk_domain(domain: str, domains: Iterable[str]) -> bool:
    return any(domain == d or domain.endswith("." + d) for d in domains)


def is_newsletter_sender(
    sender_email: str,
    latest_subject: str | None = None,
    has_list_unsubscribe: bool = False,
    extra_domains: Iterable[str] = (),
) -> bool:
    """Classify one sender from its aggregated signals."""
    if not sender_email:
        return False
    if has_list_unsubscribe:
        return True

    address = sender_email.strip().lower()
    _, _, domain = address.rpartition("@")
    if _is_bulk_domain(domain, KNOWN_BULK_DOMAINS | {d.lower() for d in extra_domains}):
        return True
    if _matches_any(BULK_ADDRESS_PATTERNS, address):
        return True
    return bool(latest_subject) and _matches_any(DIGEST_SUBJECT_PATTERNS, latest_subject)


class NewsletterDetector:
    """Maintains newsletter_senders for each account."""

    def __init__(
        self,
        store: MailboxStore,
        min_messages: int = 3,
        lookback_days: int = 90,
        extra_domains: Iterable[str] = (),
    ):
        self.store = store
        self.min_messages = min_messages
        self.lookback_days = lookback_days
        self.extra_domains = [d.strip().lower() for d in extra_domains if d.strip()]

    async def detect(self, account_id: str) -> int:
        """Run one detection pass for an account.

        Returns:
            Number of senders newly flagged as newsletters
        """
        cutoff = to_iso(datetime.now(UTC) - timedelta(days=self.lookback_days))
        now = to_iso(datetime.now(UTC))
        detected = 0
        refreshed = 0

        async with self.store.account_transaction(account_id) as db:
            cursor = await db.execute(
                """
                SELECT e.from_email,
                       MAX(e.from_name) AS sender_name,
                       COUNT(*) AS email_count,
                       MAX(e.received_at) AS last_email_at,
                       MAX(e.has_list_unsubscribe) AS has_list_unsubscribe,
                       (SELECT e2.subject FROM emails e2
                        WHERE e2.account_id = e.account_id AND e2.from_email = e.from_email
                        ORDER BY e2.received_at DESC LIMIT 1) AS latest_subject
                FROM emails e
                WHERE e.account_id = ?
                  AND e.from_email IS NOT NULL
                  AND e.received_at >= ?
                  AND NOT EXISTS (SELECT 1 FROM json_each(e.labels) WHERE value = 'SENT')
                GROUP BY e.from_email
                HAVING COUNT(*) >= ?
                """,
                (account_id, cutoff, self.min_messages),
            )
            senders = await cursor.fetchall()

            for sender in senders:
                # Existing rows carry user state; only the counts move
                cursor = await db.execute(
                    """
                    UPDATE newsletter_senders SET
                        email_count = ?,
                        last_email_at = ?,
                        sender_name = COALESCE(?, sender_name)
                    WHERE account_id = ? AND sender_email = ?
                    """,
                    (
                        sender["email_count"],
                        sender["last_email_at"],
                        sender["sender_name"],
                        account_id,
                        sender["from_email"],
                    ),
                )
                if cursor.rowcount:
                    refreshed += 1
                    continue

                if not is_newsletter_sender(
                    sender["from_email"],
                    sender["latest_subject"],
                    bool(sender["has_list_unsubscribe"]),
                    self.extra_domains,
                ):
                    continue

                await db.execute(
                    """
                    INSERT INTO newsletter_senders (
                        account_id, sender_email, sender_name, is_newsletter, is_muted,
                        email_count, last_email_at, detected_at
                    ) VALUES (?, ?, ?, 1, 0, ?, ?, ?)
                    """,
                    (
                        account_id,
                        sender["from_email"],
                        sender["sender_name"],
                        sender["email_count"],
                        sender["last_email_at"],
                        now,
                    ),
                )
                detected += 1

        logger.info(
            "newsletter_detection_complete",
            account_id=account_id,
            candidates=len(senders),
            detected=detected,
            refreshed=refreshed,
        )
        if detected:
            self.store.notifier.publish(
                StoreEvent(
                    kind="newsletters_detected",
                    account_id=account_id,
                    payload={"detected": detected},
                )
            )
        return detected

    async def mute_newsletter_sender(
        self, account_id: str, sender_email: str, muted: bool = True
    ) -> bool:
        """Mute (or unmute) a sender. Returns False if it is not a known newsletter."""
        async with self.store.account_transaction(account_id) as db:
            cursor = await db.execute(
                """
                UPDATE newsletter_senders SET is_muted = ?
                WHERE account_id = ? AND sender_email = ?
                """,
                (int(muted), account_id, sender_email.strip().lower()),
            )
            changed = cursor.rowcount > 0
        if changed:
            logger.info("newsletter_sender_muted", account_id=account_id, muted=muted)
        return changed

    async def remove_newsletter_sender(self, account_id: str, sender_email: str) -> bool:
        """Take a sender off the newsletter list for good."""
        async with self.store.account_transaction(account_id) as db:
            cursor = await db.execute(
                """
                UPDATE newsletter_senders SET is_newsletter = 0, removed_by_user = 1
                WHERE account_id = ? AND sender_email = ?
                """,
                (account_id, sender_email.strip().lower()),
            )
            changed = cursor.rowcount > 0
        if changed:
            logger.info("newsletter_sender_removed", account_id=account_id)
        return changed
