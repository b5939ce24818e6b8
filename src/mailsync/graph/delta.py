"""Delta fetching: turn a stored sync cursor into message change events.

The cursor is a JSON object mapping each synced folder to the link the next
listing resumes from. Normally that is the folder's @odata.deltaLink. While a
capped full listing is still in progress it is the @odata.nextLink instead,
so the next cycle carries on where this one stopped.

Listing modes per folder:
- No link: full listing of mail received within the initial window, newest
  first, every item an "added" change
- Link present: incremental listing; items carrying @removed are "deleted",
  everything else "changed"
- Link rejected (410 / SyncStateNotFound): the folder falls back to a full
  listing within the same call

Usage:
    from mailsync.graph.delta import DeltaFetcher

    fetcher = DeltaFetcher(client, folders=["Inbox", "SentItems"])
    result = fetcher.fetch_changes(account_id, cursor)
"""

import html
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

import regex

from mailsync.core.errors import CursorInvalidError
from mailsync.core.logging import get_logger
from mailsync.graph.client import GraphClient

logger = get_logger(__name__)

ChangeKind = Literal["added", "changed", "deleted"]

# Folder name -> label carried by every message listed from it
FOLDER_LABELS = {
    "Inbox": "INBOX",
    "SentItems": "SENT",
    "Archive": "ARCHIVE",
    "Drafts": "DRAFTS",
    "DeletedItems": "TRASH",
    "JunkEmail": "JUNK",
}

MESSAGE_SELECT = (
    "id,conversationId,subject,from,toRecipients,ccRecipients,bodyPreview,"
    "receivedDateTime,isRead,flag,categories,hasAttachments,internetMessageHeaders"
)

# Safety limit to prevent runaway pagination on corrupted delta streams
DELTA_MAX_PAGES = 100

REGEX_TIMEOUT = 1.0

_BLOCK_TAG_PATTERN = regex.compile(
    r"<\s*(?:br|/p|/div|/tr|/li|/h[1-6])\b[^>]*>", regex.IGNORECASE
)
_STRIP_BLOCK_PATTERN = regex.compile(
    r"<(script|style)\b.*?</\1\s*>", regex.IGNORECASE | regex.DOTALL
)
_HTML_TAG_PATTERN = regex.compile(r"<[^>]+>")
_BLANK_LINES_PATTERN = regex.compile(r"\n\s*\n\s*\n+")


@dataclass(frozen=True)
class RemoteMessage:
    """Provider-sourced fields of one message."""

    remote_id: str
    thread_id: str | None = None
    subject: str | None = None
    from_email: str | None = None
    from_name: str | None = None
    to_addresses: list[str] = field(default_factory=list)
    cc_addresses: list[str] = field(default_factory=list)
    snippet: str | None = None
    received_at: datetime | None = None
    is_read: bool = False
    is_starred: bool = False
    labels: list[str] = field(default_factory=list)
    has_attachments: bool = False
    has_list_unsubscribe: bool = False
    is_trashed: bool = False


@dataclass(frozen=True)
class ChangeEvent:
    """One message-level change reported by the provider."""

    kind: ChangeKind
    remote_id: str
    message: RemoteMessage | None = None


@dataclass
class FetchResult:
    """Outcome of one fetch: the changes and the cursor that follows them."""

    changes: list[ChangeEvent]
    new_cursor: str
    full_resync: bool = False


@dataclass(frozen=True)
class AttachmentInfo:
    remote_attachment_id: str
    filename: str | None
    mime_type: str | None
    size: int | None


@dataclass(frozen=True)
class MessageBody:
    body: str
    body_html: str | None
    attachments: list[AttachmentInfo] = field(default_factory=list)


def parse_cursor(cursor: str | None) -> dict[str, str]:
    """Decode a stored cursor; anything unreadable means "no cursor"."""
    if not cursor:
        return {}
    try:
        links = json.loads(cursor)
    except json.JSONDecodeError:
        logger.warning("sync_cursor_unreadable")
        return {}
    if not isinstance(links, dict):
        logger.warning("sync_cursor_unreadable")
        return {}
    return {str(k): str(v) for k, v in links.items() if v}


def encode_cursor(links: dict[str, str]) -> str:
    return json.dumps(links, sort_keys=True)


def is_delta_link(link: str) -> bool:
    """True for a completed listing's deltaLink, False for a paging nextLink."""
    return "deltatoken=" in link.lower()


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _addresses(recipients: list[dict[str, Any]] | None) -> list[str]:
    result = []
    for recipient in recipients or []:
        address = (recipient.get("emailAddress") or {}).get("address")
        if address:
            result.append(address.lower())
    return result


def to_remote_message(item: dict[str, Any], folder: str) -> RemoteMessage:
    """Map a Graph message resource to a RemoteMessage."""
    sender = (item.get("from") or {}).get("emailAddress") or {}
    headers = item.get("internetMessageHeaders") or []
    folder_label = FOLDER_LABELS.get(folder, folder.upper())

    labels = list(dict.fromkeys([folder_label, *(item.get("categories") or [])]))

    return RemoteMessage(
        remote_id=item["id"],
        thread_id=item.get("conversationId"),
        subject=item.get("subject"),
        from_email=(sender.get("address") or "").lower() or None,
        from_name=sender.get("name"),
        to_addresses=_addresses(item.get("toRecipients")),
        cc_addresses=_addresses(item.get("ccRecipients")),
        snippet=item.get("bodyPreview"),
        received_at=_parse_datetime(item.get("receivedDateTime")),
        is_read=bool(item.get("isRead", False)),
        is_starred=(item.get("flag") or {}).get("flagStatus") == "flagged",
        labels=labels,
        has_attachments=bool(item.get("hasAttachments", False)),
        has_list_unsubscribe=any(
            (h.get("name") or "").lower() == "list-unsubscribe" for h in headers
        ),
        is_trashed=folder == "DeletedItems",
    )


def merge_changes(changes: list[ChangeEvent]) -> list[ChangeEvent]:
    """Collapse events for the same message into one.

    A message moved between two synced folders shows up as a removal from
    one and an addition to the other. Added/changed always wins over
    deleted; between two non-deleted events the later one wins.
    """
    merged: dict[str, ChangeEvent] = {}
    for change in changes:
        existing = merged.get(change.remote_id)
        if existing is None:
            merged[change.remote_id] = change
            continue
        if change.kind == "deleted":
            continue
        kind: ChangeKind = "added" if "added" in (existing.kind, change.kind) else "changed"
        merged[change.remote_id] = ChangeEvent(kind, change.remote_id, change.message)
    return list(merged.values())


class DeltaFetcher:
    """Pulls message changes for one account across its synced folders.

    Synchronous; run it with asyncio.to_thread().
    """

    def __init__(
        self,
        client: GraphClient,
        folders: list[str],
        page_size: int = 50,
        max_initial_messages: int = 500,
        initial_days_back: int = 30,
    ):
        self.client = client
        self.folders = folders
        self.page_size = page_size
        self.max_initial_messages = max_initial_messages
        self.initial_days_back = initial_days_back

    def fetch_changes(self, account_id: str, cursor: str | None) -> FetchResult:
        """Fetch every change since the cursor.

        Raises:
            RateLimitedError: Throttled; nothing from this call may be applied
            TokenExpiredTransient: Access token rejected mid-fetch
            GraphAPIError / TransientNetworkError: Other failures
        """
        links = parse_cursor(cursor)
        new_links: dict[str, str] = {}
        changes: list[ChangeEvent] = []
        full_resync = False
        budget = self.max_initial_messages

        for folder in self.folders:
            link = links.get(folder)

            if link and is_delta_link(link):
                try:
                    folder_changes, next_link = self._list(folder, link, "changed", limit=None)
                except CursorInvalidError:
                    logger.warning(
                        "delta_link_invalid_full_resync",
                        account_id=account_id,
                        folder=folder,
                    )
                    link = None
                else:
                    changes.extend(folder_changes)
                    new_links[folder] = next_link
                    continue

            full_resync = True
            if budget <= 0:
                # Cap spent by earlier folders; list this one next cycle
                if link:
                    new_links[folder] = link
                continue

            try:
                folder_changes, next_link = self._list(folder, link, "added", limit=budget)
            except CursorInvalidError:
                # A stale paging link from an interrupted listing: start over
                folder_changes, next_link = self._list(folder, None, "added", limit=budget)

            budget -= len(folder_changes)
            changes.extend(folder_changes)
            new_links[folder] = next_link

        merged = merge_changes(changes)

        logger.info(
            "delta_fetch_complete",
            account_id=account_id,
            folders=len(self.folders),
            changes=len(merged),
            full_resync=full_resync,
        )

        return FetchResult(
            changes=merged, new_cursor=encode_cursor(new_links), full_resync=full_resync
        )

    def _list(
        self,
        folder: str,
        link: str | None,
        kind: ChangeKind,
        limit: int | None,
    ) -> tuple[list[ChangeEvent], str]:
        """Walk one folder's delta pages.

        Returns:
            (changes, link to resume from). The link is the deltaLink when
            the listing completed, or the nextLink when it stopped at the limit.
        """
        if link:
            response = self.client.get(link)
        else:
            since = datetime.now(UTC) - timedelta(days=self.initial_days_back)
            response = self.client.get(
                f"/me/mailFolders/{folder}/messages/delta",
                params={
                    "$select": MESSAGE_SELECT,
                    "$filter": f"receivedDateTime ge {since.strftime('%Y-%m-%dT%H:%M:%SZ')}",
                    "$orderby": "receivedDateTime desc",
                    "$top": self.page_size,
                },
            )

        changes: list[ChangeEvent] = []
        page_count = 1

        while True:
            for item in response.get("value", []):
                if "@removed" in item:
                    changes.append(ChangeEvent("deleted", item["id"]))
                else:
                    changes.append(ChangeEvent(kind, item["id"], to_remote_message(item, folder)))

            next_link = response.get("@odata.nextLink")
            delta_link = response.get("@odata.deltaLink")

            if delta_link:
                resume_from = delta_link
                break
            if not next_link:
                # Neither link: keep resuming from where this listing started
                resume_from = link or ""
                break
            if (limit is not None and len(changes) >= limit) or page_count >= DELTA_MAX_PAGES:
                logger.info(
                    "delta_listing_paused",
                    folder=folder,
                    pages=page_count,
                    items=len(changes),
                )
                resume_from = next_link
                break

            response = self.client.get(next_link)
            page_count += 1

        logger.debug(
            "delta_query_complete",
            folder=folder,
            pages=page_count,
            messages=len(changes),
            was_incremental=kind == "changed",
        )
        return changes, resume_from

    def fetch_body(self, remote_id: str) -> MessageBody:
        """Fetch the full body and attachment metadata of one message."""
        message = self.client.get(
            f"/me/messages/{remote_id}",
            params={"$select": "body,hasAttachments"},
        )
        body = message.get("body") or {}
        content = body.get("content") or ""
        is_html = (body.get("contentType") or "").lower() == "html"

        attachments: list[AttachmentInfo] = []
        if message.get("hasAttachments"):
            items = self.client.paginate(
                f"/me/messages/{remote_id}/attachments",
                params={"$select": "id,name,contentType,size"},
            )
            attachments = [
                AttachmentInfo(
                    remote_attachment_id=item["id"],
                    filename=item.get("name"),
                    mime_type=item.get("contentType"),
                    size=item.get("size"),
                )
                for item in items
            ]

        return MessageBody(
            body=html_to_text(content) if is_html else content,
            body_html=content if is_html else None,
            attachments=attachments,
        )


def html_to_text(content: str) -> str:
    """Reduce an HTML body to readable plain text."""
    text = _STRIP_BLOCK_PATTERN.sub("", content, timeout=REGEX_TIMEOUT)
    text = _BLOCK_TAG_PATTERN.sub("\n", text, timeout=REGEX_TIMEOUT)
    text = _HTML_TAG_PATTERN.sub("", text, timeout=REGEX_TIMEOUT)
    text = html.unescape(text).replace("\xa0", " ")
    text = _BLANK_LINES_PATTERN.sub("\n\n", text, timeout=REGEX_TIMEOUT)
    return text.strip()
