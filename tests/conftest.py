"""Pytest fixtures and configuration for mailsync tests.

Provides common fixtures for configuration, the database store and
provider messages.
"""

import os
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generator

import pytest

from mailsync.config import reset_config
from mailsync.config_schema import AppConfig
from mailsync.core.rate_limiter import reset_buckets
from mailsync.db.store import Account, MailboxStore
from mailsync.graph.delta import ChangeEvent, RemoteMessage


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture(autouse=True)
def reset_rate_buckets() -> Generator[None, None, None]:
    """Give every test fresh Graph rate buckets."""
    reset_buckets()
    yield
    reset_buckets()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

auth:
  client_id: "test-client-id"
  tenant_id: "test-tenant-id"

sync:
  interval_minutes: 5
  folders: ["Inbox", "SentItems"]
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "auth": {
            "client_id": "test-client-id",
            "tenant_id": "test-tenant-id",
        },
        "sync": {
            "interval_minutes": 5,
            "folders": ["Inbox", "SentItems"],
            "backoff_base_seconds": 30,
            "backoff_ceiling_seconds": 240,
        },
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the MAILSYNC_CONFIG_PATH environment variable."""
    old_value = os.environ.get("MAILSYNC_CONFIG_PATH")
    os.environ["MAILSYNC_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["MAILSYNC_CONFIG_PATH"]
    else:
        os.environ["MAILSYNC_CONFIG_PATH"] = old_value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
async def store(data_dir: Path) -> MailboxStore:
    """Create and initialize a MailboxStore."""
    store = MailboxStore(data_dir / "test.db")
    await store.initialize()
    return store


@pytest.fixture
async def account(store: MailboxStore) -> Account:
    """An active account with no cursor."""
    account, _ = await store.create_account(
        email="me@example.com",
        display_name="Me",
        access_token="encrypted-access",
        refresh_token="encrypted-refresh",
    )
    return account


@pytest.fixture
def make_message() -> Callable[..., RemoteMessage]:
    """Factory for provider messages with sensible defaults."""

    def _make(remote_id: str = "msg-1", **overrides: Any) -> RemoteMessage:
        fields: dict[str, Any] = {
            "remote_id": remote_id,
            "thread_id": f"conv-{remote_id}",
            "subject": "Quarterly report",
            "from_email": "alice@partner.com",
            "from_name": "Alice",
            "to_addresses": ["me@example.com"],
            "snippet": "Please find the report attached.",
            "received_at": datetime(2026, 10, 1, 9, 30, tzinfo=UTC),
            "labels": ["INBOX"],
        }
        fields.update(overrides)
        return RemoteMessage(**fields)

    return _make


@pytest.fixture
def added(make_message: Callable[..., RemoteMessage]) -> Callable[..., ChangeEvent]:
    """Factory for 'added' change events."""

    def _added(remote_id: str = "msg-1", **overrides: Any) -> ChangeEvent:
        return ChangeEvent("added", remote_id, make_message(remote_id, **overrides))

    return _added
