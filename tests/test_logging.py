"""Tests for structured logging setup."""

import asyncio
import logging

import pytest
import structlog

from mailsync.core.logging import (
    REDACTED,
    bind_sync_context,
    configure_logging,
    get_correlation_id,
    redact_secrets,
    reset_sync_context,
)


@pytest.fixture
def restore_logging():
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


class TestRedaction:
    """Tests for keeping OAuth tokens out of log output."""

    def test_sensitive_keys_masked(self) -> None:
        event = redact_secrets(
            None,
            "info",
            {"event": "token_refreshed", "access_token": "eyJ0eXAi", "Refresh_Token": "0.AX"},
        )
        assert event["access_token"] == REDACTED
        assert event["Refresh_Token"] == REDACTED
        assert event["event"] == "token_refreshed"

    def test_bearer_header_inside_message_masked(self) -> None:
        """Test that a token echoed inside an error string is masked."""
        event = redact_secrets(
            None, "warning", {"event": "graph_api_error", "error": "sent Bearer eyJ.a-b_c= twice"}
        )
        assert event["error"] == f"sent Bearer {REDACTED} twice"

    def test_empty_and_unrelated_values_kept(self) -> None:
        event = redact_secrets(
            None, "info", {"event": "x", "access_token": None, "has_token": True, "count": 3}
        )
        assert event == {"event": "x", "access_token": None, "has_token": True, "count": 3}


class TestSyncContext:
    """Tests for cycle-scoped log context."""

    def test_bind_and_reset(self, restore_logging) -> None:
        tokens = bind_sync_context("cycle-1", "acct-1")

        assert get_correlation_id() == "cycle-1"
        assert structlog.contextvars.get_contextvars()["account_id"] == "acct-1"

        reset_sync_context(tokens)
        assert get_correlation_id() is None
        assert "account_id" not in structlog.contextvars.get_contextvars()

    def test_nested_bind_restores_outer_cycle(self, restore_logging) -> None:
        outer = bind_sync_context("outer", "acct-1")
        inner = bind_sync_context("inner", "acct-2")

        reset_sync_context(inner)
        assert get_correlation_id() == "outer"

        reset_sync_context(outer)
        assert get_correlation_id() is None

    @pytest.mark.asyncio
    async def test_concurrent_cycles_keep_their_own_ids(self, restore_logging) -> None:
        """Test that accounts synced concurrently never see each other's cycle id."""
        seen: dict[str, str | None] = {}

        async def cycle(account_id: str) -> None:
            tokens = bind_sync_context(f"cycle-{account_id}", account_id)
            try:
                await asyncio.sleep(0)
                seen[account_id] = get_correlation_id()
            finally:
                reset_sync_context(tokens)

        await asyncio.gather(cycle("a"), cycle("b"))

        assert seen == {"a": "cycle-a", "b": "cycle-b"}
        assert get_correlation_id() is None


class TestConfigureLogging:
    """Tests for logger configuration."""

    def test_third_party_loggers_quieted(self, restore_logging) -> None:
        configure_logging("INFO", json_output=True)

        assert logging.getLogger().level == logging.INFO
        assert logging.getLogger("msal").level == logging.WARNING
        assert logging.getLogger("urllib3").level == logging.WARNING

    def test_reconfiguring_applies_new_level(self, restore_logging) -> None:
        """Test that a second call (CLI group, then `run`) takes effect."""
        configure_logging("INFO", json_output=False)
        configure_logging("DEBUG", json_output=True)

        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("msal").level == logging.DEBUG
