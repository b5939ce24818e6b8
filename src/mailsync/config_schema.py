"""Pydantic configuration schema for the mailbox sync engine.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.

Usage:
    from mailsync.config_schema import AppConfig

    # Validate a config dict
    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1

# Folders the delta fetcher knows how to map to a well-known label
KNOWN_FOLDERS = {"Inbox", "SentItems", "Archive", "Drafts", "DeletedItems", "JunkEmail"}


class AuthConfig(BaseModel):
    """Azure AD authentication configuration."""

    client_id: str = Field(description="Azure AD Application (client) ID")
    tenant_id: str = Field(
        default="common",
        description="Azure AD Directory (tenant) ID or 'common' for personal accounts",
    )
    scopes: list[str] = Field(
        default=[
            "Mail.ReadWrite",
            "Mail.Send",
            "User.Read",
        ],
        description="Microsoft Graph API permission scopes",
    )
    token_refresh_skew_seconds: int = Field(
        default=300,
        ge=0,
        le=3600,
        description="Refresh access tokens this many seconds before they expire",
    )
    encryption_key_env: str = Field(
        default="MAILSYNC_ENCRYPTION_KEY",
        description="Environment variable holding the Fernet key for tokens at rest",
    )

    @field_validator("client_id")
    @classmethod
    def validate_client_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("client_id cannot be empty")
        return v.strip()


class StorageConfig(BaseModel):
    """Local SQLite store configuration."""

    db_path: str = Field(
        default="data/mailsync.db",
        description="Path to the SQLite database file",
    )
    busy_timeout_ms: int = Field(
        default=5000,
        ge=100,
        le=60000,
        description="How long a writer waits for the database lock (milliseconds)",
    )

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: str) -> str:
        """Ensure database path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class SyncConfig(BaseModel):
    """Sync scheduler and delta fetcher configuration."""

    interval_minutes: int = Field(
        default=5,
        ge=1,
        le=1440,
        description="How often every account is synced (minutes)",
    )
    folders: list[str] = Field(
        default=["Inbox", "SentItems", "Archive"],
        description="Mail folders kept in the local cache",
    )
    page_size: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Messages requested per delta page",
    )
    max_initial_messages: int = Field(
        default=500,
        ge=1,
        le=100000,
        description="Upper bound on messages pulled by a full listing, per account and cycle",
    )
    initial_days_back: int = Field(
        default=30,
        ge=1,
        le=3650,
        description="A full listing only covers mail received within this window",
    )
    backoff_base_seconds: float = Field(
        default=30.0,
        gt=0,
        description="First backoff delay after a failed cycle",
    )
    backoff_ceiling_seconds: float = Field(
        default=1800.0,
        gt=0,
        description="Largest backoff delay, regardless of consecutive failures",
    )
    pending_mutation_ttl_minutes: int = Field(
        default=60,
        ge=1,
        le=10080,
        description="Pushed edits older than this no longer shadow provider values",
    )
    request_rate_per_second: float = Field(
        default=10.0,
        gt=0,
        description="Proactive request rate per account",
    )

    @field_validator("folders")
    @classmethod
    def validate_folders(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("At least one folder must be synced")
        unknown = sorted(set(v) - KNOWN_FOLDERS)
        if unknown:
            raise ValueError(
                f"Unknown folders {unknown}. Use well-known names: {sorted(KNOWN_FOLDERS)}"
            )
        return v

    @model_validator(mode="after")
    def validate_backoff(self) -> "SyncConfig":
        if self.backoff_ceiling_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_ceiling_seconds must be >= backoff_base_seconds")
        return self


class WorkersConfig(BaseModel):
    """Scheduled-send and reminder worker configuration."""

    interval_seconds: int = Field(
        default=60,
        ge=5,
        le=3600,
        description="How often due items are claimed",
    )
    claim_timeout_minutes: int = Field(
        default=10,
        ge=1,
        le=1440,
        description="Claims older than this are considered abandoned",
    )
    batch_size: int = Field(
        default=25,
        ge=1,
        le=500,
        description="Max due items claimed per run",
    )


class NewsletterConfig(BaseModel):
    """Newsletter detection configuration."""

    min_messages: int = Field(
        default=3,
        ge=1,
        le=100,
        description="Messages a sender needs before it can be flagged",
    )
    lookback_days: int = Field(
        default=90,
        ge=1,
        le=3650,
        description="Only senders seen within this window are considered",
    )
    interval_minutes: int = Field(
        default=60,
        ge=5,
        le=10080,
        description="How often the detection pass runs",
    )
    extra_domains: list[str] = Field(
        default_factory=list,
        description="Additional bulk-mail domains",
    )


class LoggingConfig(BaseModel):
    """Log output configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    json_output: bool = Field(
        default=True,
        description="JSON logs for the service; the CLI always uses console output",
    )


class AppConfig(BaseModel):
    """Root configuration schema for the mailbox sync engine.

    If validation fails on startup, the application exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    auth: AuthConfig
    storage: StorageConfig = Field(default_factory=StorageConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    workers: WorkersConfig = Field(default_factory=WorkersConfig)
    newsletter: NewsletterConfig = Field(default_factory=NewsletterConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
