"""Tests for the Graph client: error mapping, retries and batching."""

from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import requests

from mailsync.core.errors import (
    CursorInvalidError,
    GraphAPIError,
    PermanentRemoteError,
    RateLimitedError,
    TokenExpiredTransient,
    TransientNetworkError,
)
from mailsync.graph.client import GraphClient, parse_retry_after
from mailsync.graph.messages import MessageManager, mutation_request


def _response(
    status: int, body: dict[str, Any] | None = None, headers: dict[str, str] | None = None
) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.headers = headers or {}
    response.json.return_value = body or {}
    response.content = b"{}" if body is not None else b""
    response.text = ""
    return response


def _error(status: int, code: str = "ErrorCode", **headers: str) -> MagicMock:
    return _response(status, {"error": {"code": code, "message": "failure"}}, headers)


@pytest.fixture
def session() -> MagicMock:
    return MagicMock(spec=requests.Session)


@pytest.fixture
def client(session: MagicMock) -> GraphClient:
    return GraphClient("token", account_id="acct", session=session, rate=1000.0)


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("mailsync.graph.client.time.sleep") as sleep:
        yield sleep


class TestErrorMapping:
    """Tests for mapping provider responses to exceptions."""

    def test_success_returns_json(self, client: GraphClient, session: MagicMock) -> None:
        """Test that a 200 returns the parsed body."""
        session.request.return_value = _response(200, {"value": [1]})
        assert client.get("/me/messages") == {"value": [1]}

    def test_no_content_returns_empty_dict(
        self, client: GraphClient, session: MagicMock
    ) -> None:
        """Test that 202/204 responses return {}."""
        session.request.return_value = _response(202)
        assert client.post("/me/sendMail", json={}) == {}

    def test_429_is_rate_limited_with_retry_after(
        self, client: GraphClient, session: MagicMock
    ) -> None:
        """Test that throttling carries the provider's Retry-After."""
        session.request.return_value = _error(429, **{"Retry-After": "17"})

        with pytest.raises(RateLimitedError) as exc_info:
            client.get("/me/messages")

        assert exc_info.value.retry_after == 17
        assert session.request.call_count == 1

    def test_503_with_retry_after_is_throttling(
        self, client: GraphClient, session: MagicMock
    ) -> None:
        """Test that a 503 with Retry-After is treated as throttling, not retried."""
        session.request.return_value = _error(503, **{"Retry-After": "5"})

        with pytest.raises(RateLimitedError):
            client.get("/me/messages")
        assert session.request.call_count == 1

    def test_503_with_http_date_retry_after_is_throttling(
        self, client: GraphClient, session: MagicMock
    ) -> None:
        """Test that a Retry-After date in the past still maps to throttling."""
        session.request.return_value = _error(
            503, **{"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}
        )

        with pytest.raises(RateLimitedError) as exc_info:
            client.get("/me/messages")

        assert exc_info.value.retry_after == 0
        assert session.request.call_count == 1

    def test_410_is_cursor_invalid(self, client: GraphClient, session: MagicMock) -> None:
        """Test that an expired delta link raises CursorInvalidError."""
        session.request.return_value = _error(410, "SyncStateNotFound")
        with pytest.raises(CursorInvalidError):
            client.get("https://graph.microsoft.com/v1.0/delta?$deltatoken=x")

    def test_401_is_token_expired(self, client: GraphClient, session: MagicMock) -> None:
        """Test that a rejected token raises TokenExpiredTransient."""
        session.request.return_value = _error(401, "InvalidAuthenticationToken")
        with pytest.raises(TokenExpiredTransient):
            client.get("/me")

    @pytest.mark.parametrize("status", [400, 403, 404])
    def test_other_4xx_are_permanent(
        self, client: GraphClient, session: MagicMock, status: int
    ) -> None:
        """Test that client errors are not retried."""
        session.request.return_value = _error(status)

        with pytest.raises(PermanentRemoteError):
            client.get("/me/messages/x")
        assert session.request.call_count == 1

    def test_5xx_retried_then_succeeds(
        self, client: GraphClient, session: MagicMock, no_sleep: MagicMock
    ) -> None:
        """Test that server errors are retried with backoff."""
        session.request.side_effect = [_error(500), _error(502), _response(200, {"ok": True})]

        assert client.get("/me") == {"ok": True}
        assert no_sleep.call_count == 2

    def test_5xx_exhausts_retries(self, client: GraphClient, session: MagicMock) -> None:
        """Test that persistent server errors raise GraphAPIError."""
        session.request.return_value = _error(500)

        with pytest.raises(GraphAPIError) as exc_info:
            client.get("/me")

        assert not isinstance(exc_info.value, PermanentRemoteError)
        assert session.request.call_count == client.max_retries + 1

    def test_network_errors_become_transient(
        self, client: GraphClient, session: MagicMock
    ) -> None:
        """Test that connection failures raise TransientNetworkError after retries."""
        session.request.side_effect = requests.exceptions.ConnectionError("down")

        with pytest.raises(TransientNetworkError):
            client.get("/me")
        assert session.request.call_count == client.max_retries + 1

    def test_retry_delay_has_bounded_jitter(self, client: GraphClient) -> None:
        """Test that retry delays stay within ±20% of the schedule."""
        for attempt, base in enumerate([1.0, 2.0, 4.0]):
            for _ in range(20):
                delay = client._retry_delay(attempt)
                assert base * 0.8 <= delay <= base * 1.2

    def test_immutable_ids_requested(self, client: GraphClient, session: MagicMock) -> None:
        """Test that every request asks for immutable message IDs."""
        session.request.return_value = _response(200, {})
        client.get("/me")
        headers = session.request.call_args.kwargs["headers"]
        assert headers["Prefer"] == 'IdType="ImmutableId"'
        assert headers["Authorization"] == "Bearer token"


class TestParseRetryAfter:
    """Tests for Retry-After parsing."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [("30", 30.0), ("1.5", 1.5), ("-3", 0.0), (None, None), ("soon", None)],
    )
    def test_values(self, value: str | None, expected: float | None) -> None:
        assert parse_retry_after(value) == expected

    def test_http_date(self) -> None:
        """Test that a date is turned into the seconds left until it."""
        now = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

        assert parse_retry_after("Mon, 19 Oct 2026 12:01:30 GMT", now=now) == 90.0
        assert parse_retry_after("Mon, 19 Oct 2026 11:00:00 GMT", now=now) == 0.0


class TestMessageManager:
    """Tests for pushing local edits and sending mail."""

    def test_mutation_requests(self) -> None:
        """Test that each mutable field maps to the right Graph request."""
        assert mutation_request("m1", "is_read", True)["body"] == {"isRead": True}
        assert mutation_request("m1", "is_starred", False)["body"] == {
            "flag": {"flagStatus": "notFlagged"}
        }
        assert mutation_request("m1", "labels", ["INBOX", "Receipts"])["body"] == {
            "categories": ["Receipts"]
        }
        trash = mutation_request("m1", "is_trashed", True)
        assert trash["url"] == "/me/messages/m1/move"
        assert trash["body"] == {"destinationId": "deleteditems"}

    def test_push_returns_accepted_ids(self) -> None:
        """Test that only operations the provider accepted are reported."""
        client = MagicMock()
        client.account_id = "acct"
        client.batch_request.return_value = [
            {"id": "e1:is_read", "status": 200},
            {"id": "e2:is_starred", "status": 404, "body": {"error": {"code": "NotFound"}}},
        ]

        accepted = MessageManager(client).push_mutations(
            [("e1:is_read", "m1", "is_read", True), ("e2:is_starred", "m2", "is_starred", True)]
        )

        assert accepted == {"e1:is_read"}

    def test_send_mail_posts_message(self) -> None:
        """Test that sendMail carries recipients and saves a copy."""
        client = MagicMock()
        client.account_id = "acct"

        MessageManager(client).send_mail(["a@example.com"], ["b@example.com"], "Hi", "Body")

        endpoint = client.post.call_args.args[0]
        payload = client.post.call_args.kwargs["json"]
        assert endpoint == "/me/sendMail"
        assert payload["saveToSentItems"] is True
        assert payload["message"]["ccRecipients"] == [
            {"emailAddress": {"address": "b@example.com"}}
        ]

    def test_batch_request_chunks_by_twenty(
        self, client: GraphClient, session: MagicMock
    ) -> None:
        """Test that large batches are split into $batch POSTs of 20."""
        session.request.side_effect = [
            _response(200, {"responses": [{"id": str(i), "status": 200} for i in range(20)]}),
            _response(200, {"responses": [{"id": "20", "status": 200}]}),
        ]
        operations = [
            {"id": str(i), "method": "PATCH", "url": f"/me/messages/{i}", "body": {}}
            for i in range(21)
        ]

        responses = client.batch_request(operations)

        assert len(responses) == 21
        assert session.request.call_count == 2
