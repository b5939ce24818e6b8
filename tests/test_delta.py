"""Tests for the delta fetcher and change merging."""

import json
from unittest.mock import MagicMock

import pytest

from mailsync.core.errors import CursorInvalidError, RateLimitedError
from mailsync.graph.delta import (
    ChangeEvent,
    DeltaFetcher,
    RemoteMessage,
    encode_cursor,
    html_to_text,
    is_delta_link,
    merge_changes,
    parse_cursor,
    to_remote_message,
)

DELTA_LINK = "https://graph.microsoft.com/v1.0/me/mailFolders/Inbox/messages/delta?$deltatoken=abc"
NEXT_LINK = "https://graph.microsoft.com/v1.0/me/mailFolders/Inbox/messages/delta?$skiptoken=xyz"


def _item(message_id: str, **overrides) -> dict:
    item = {
        "id": message_id,
        "conversationId": f"conv-{message_id}",
        "subject": f"Subject {message_id}",
        "from": {"emailAddress": {"address": "Alice@Partner.com", "name": "Alice"}},
        "toRecipients": [{"emailAddress": {"address": "me@example.com"}}],
        "bodyPreview": "Preview",
        "receivedDateTime": "2026-10-01T09:30:00Z",
        "isRead": False,
        "flag": {"flagStatus": "notFlagged"},
        "categories": [],
        "hasAttachments": False,
    }
    item.update(overrides)
    return item


class TestCursor:
    """Tests for cursor encoding."""

    def test_round_trip(self) -> None:
        """Test that an encoded cursor decodes to the same links."""
        links = {"Inbox": DELTA_LINK, "SentItems": NEXT_LINK}
        assert parse_cursor(encode_cursor(links)) == links

    @pytest.mark.parametrize("cursor", [None, "", "not json", "[1, 2]"])
    def test_unreadable_cursor_means_no_cursor(self, cursor: str | None) -> None:
        """Test that garbage cursors start a full listing instead of failing."""
        assert parse_cursor(cursor) == {}

    def test_delta_link_detection(self) -> None:
        """Test that deltaLinks and nextLinks are told apart."""
        assert is_delta_link(DELTA_LINK)
        assert not is_delta_link(NEXT_LINK)


class TestToRemoteMessage:
    """Tests for mapping Graph messages."""

    def test_maps_fields(self) -> None:
        """Test that the Graph resource maps onto RemoteMessage."""
        item = _item(
            "m1",
            isRead=True,
            flag={"flagStatus": "flagged"},
            categories=["Receipts"],
            internetMessageHeaders=[{"name": "List-Unsubscribe", "value": "<mailto:x>"}],
        )
        message = to_remote_message(item, "Inbox")

        assert message.from_email == "alice@partner.com"
        assert message.is_read and message.is_starred
        assert message.labels == ["INBOX", "Receipts"]
        assert message.has_list_unsubscribe
        assert message.received_at.isoformat() == "2026-10-01T09:30:00+00:00"

    def test_deleted_items_are_trashed(self) -> None:
        """Test that messages listed from Deleted Items are marked trashed."""
        assert to_remote_message(_item("m1"), "DeletedItems").is_trashed


class TestMergeChanges:
    """Tests for collapsing per-folder events."""

    def test_move_between_folders_is_an_update(self) -> None:
        """Test that a removal plus an addition keeps the message."""
        message = RemoteMessage(remote_id="m1", labels=["ARCHIVE"])
        merged = merge_changes(
            [ChangeEvent("deleted", "m1"), ChangeEvent("changed", "m1", message)]
        )
        assert merged == [ChangeEvent("changed", "m1", message)]

    def test_addition_wins_over_later_deletion(self) -> None:
        """Test that a later removal from another folder does not drop the message."""
        message = RemoteMessage(remote_id="m1")
        merged = merge_changes(
            [ChangeEvent("added", "m1", message), ChangeEvent("deleted", "m1")]
        )
        assert [c.kind for c in merged] == ["added"]

    def test_plain_deletion_kept(self) -> None:
        """Test that a lone deletion survives merging."""
        assert merge_changes([ChangeEvent("deleted", "m1")]) == [ChangeEvent("deleted", "m1")]


class TestDeltaFetcher:
    """Tests for fetching changes."""

    @pytest.fixture
    def client(self) -> MagicMock:
        client = MagicMock()
        client.account_id = "acct"
        return client

    def test_initial_listing_stores_delta_link(self, client: MagicMock) -> None:
        """Test that a complete listing returns additions and the deltaLink."""
        client.get.return_value = {
            "value": [_item("m1"), _item("m2")],
            "@odata.deltaLink": DELTA_LINK,
        }
        fetcher = DeltaFetcher(client, folders=["Inbox"])

        result = fetcher.fetch_changes("acct", None)

        assert [c.kind for c in result.changes] == ["added", "added"]
        assert result.full_resync
        assert json.loads(result.new_cursor) == {"Inbox": DELTA_LINK}
        _, kwargs = client.get.call_args
        assert "receivedDateTime ge" in kwargs["params"]["$filter"]

    def test_incremental_fetch_uses_delta_link(self, client: MagicMock) -> None:
        """Test that a stored deltaLink is followed and removals reported."""
        new_link = DELTA_LINK + "2"
        client.get.return_value = {
            "value": [_item("m1"), {"id": "m2", "@removed": {"reason": "deleted"}}],
            "@odata.deltaLink": new_link,
        }
        fetcher = DeltaFetcher(client, folders=["Inbox"])

        result = fetcher.fetch_changes("acct", encode_cursor({"Inbox": DELTA_LINK}))

        client.get.assert_called_once_with(DELTA_LINK)
        assert [(c.kind, c.remote_id) for c in result.changes] == [
            ("changed", "m1"),
            ("deleted", "m2"),
        ]
        assert not result.full_resync
        assert parse_cursor(result.new_cursor) == {"Inbox": new_link}

    def test_expired_delta_link_heals_with_full_listing(self, client: MagicMock) -> None:
        """Test that a 410 on the deltaLink falls back to a full listing."""
        client.get.side_effect = [
            CursorInvalidError("gone"),
            {"value": [_item("m1")], "@odata.deltaLink": DELTA_LINK + "new"},
        ]
        fetcher = DeltaFetcher(client, folders=["Inbox"])

        result = fetcher.fetch_changes("acct", encode_cursor({"Inbox": DELTA_LINK}))

        assert result.full_resync
        assert [c.kind for c in result.changes] == ["added"]
        assert parse_cursor(result.new_cursor) == {"Inbox": DELTA_LINK + "new"}

    def test_initial_listing_pauses_at_cap(self, client: MagicMock) -> None:
        """Test that the message cap stores the nextLink to resume from."""
        client.get.return_value = {
            "value": [_item("m1"), _item("m2")],
            "@odata.nextLink": NEXT_LINK,
        }
        fetcher = DeltaFetcher(client, folders=["Inbox"], max_initial_messages=2)

        result = fetcher.fetch_changes("acct", None)

        assert len(result.changes) == 2
        assert parse_cursor(result.new_cursor) == {"Inbox": NEXT_LINK}
        assert client.get.call_count == 1

    def test_interrupted_listing_resumes_from_next_link(self, client: MagicMock) -> None:
        """Test that a stored nextLink continues the listing."""
        client.get.return_value = {"value": [_item("m3")], "@odata.deltaLink": DELTA_LINK}
        fetcher = DeltaFetcher(client, folders=["Inbox"])

        result = fetcher.fetch_changes("acct", encode_cursor({"Inbox": NEXT_LINK}))

        client.get.assert_called_once_with(NEXT_LINK)
        assert result.full_resync
        assert parse_cursor(result.new_cursor) == {"Inbox": DELTA_LINK}

    def test_throttling_propagates(self, client: MagicMock) -> None:
        """Test that throttling aborts the fetch so nothing partial is applied."""
        client.get.side_effect = RateLimitedError("slow down", retry_after=30)
        fetcher = DeltaFetcher(client, folders=["Inbox"])

        with pytest.raises(RateLimitedError):
            fetcher.fetch_changes("acct", encode_cursor({"Inbox": DELTA_LINK}))

    def test_fetch_body_converts_html(self, client: MagicMock) -> None:
        """Test that HTML bodies are stored as text plus the original HTML."""
        client.get.return_value = {
            "body": {"contentType": "html", "content": "<p>Hello</p><p>World</p>"},
            "hasAttachments": True,
        }
        client.paginate.return_value = [
            {"id": "att-1", "name": "report.pdf", "contentType": "application/pdf", "size": 10}
        ]
        fetcher = DeltaFetcher(client, folders=["Inbox"])

        body = fetcher.fetch_body("m1")

        assert body.body == "Hello\nWorld"
        assert body.body_html == "<p>Hello</p><p>World</p>"
        assert body.attachments[0].filename == "report.pdf"


class TestHtmlToText:
    """Tests for HTML body conversion."""

    def test_scripts_removed_and_entities_decoded(self) -> None:
        """Test that script blocks vanish and entities are decoded."""
        text = html_to_text("<script>alert(1)</script><div>Tom &amp; Jerry</div>")
        assert text == "Tom & Jerry"
