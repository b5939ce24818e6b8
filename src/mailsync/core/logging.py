"""Structured logging for the mailbox sync engine.

structlog renders JSON for the long-running service and colored console
output for CLI commands. Everything logged inside a sync cycle carries the
cycle's sync_cycle_id and account_id, bound through structlog's contextvars
so concurrent cycles for different accounts never mix their context.

OAuth tokens pass through the auth and graph layers; the redact_secrets
processor keeps them out of log output whatever the caller passes.

Usage:
    from mailsync.core.logging import bind_sync_context, get_logger, reset_sync_context

    logger = get_logger(__name__)

    tokens = bind_sync_context(cycle_id, account_id)
    try:
        logger.info("changes_applied", added=4)  # includes sync_cycle_id, account_id
    finally:
        reset_sync_context(tokens)
"""

import logging
import sys
from collections.abc import Mapping
from typing import Any

import regex
import structlog

# Event keys whose values are never written out
SENSITIVE_KEYS = frozenset(
    {"access_token", "refresh_token", "id_token", "authorization", "client_secret", "password"}
)
REDACTED = "[redacted]"

_BEARER_PATTERN = regex.compile(r"(?i)\bbearer\s+[A-Za-z0-9\-._~+/]+=*")

# Chatty libraries; kept at WARNING unless the engine itself logs at DEBUG
_THIRD_PARTY_LOGGERS = ("msal", "urllib3", "apscheduler", "aiosqlite")


def bind_sync_context(cycle_id: str, account_id: str) -> Mapping[str, Any]:
    """Attach a sync cycle's identifiers to every log entry in this context.

    Returns:
        Tokens to hand to reset_sync_context() when the cycle ends
    """
    return structlog.contextvars.bind_contextvars(sync_cycle_id=cycle_id, account_id=account_id)


def reset_sync_context(tokens: Mapping[str, Any]) -> None:
    """Restore the logging context that was active before bind_sync_context()."""
    structlog.contextvars.reset_contextvars(**tokens)


def get_correlation_id() -> str | None:
    """The sync_cycle_id of the running cycle, if any."""
    return structlog.contextvars.get_contextvars().get("sync_cycle_id")


def redact_secrets(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor masking tokens by key and bearer headers inside strings."""
    for key, value in event_dict.items():
        if key.lower() in SENSITIVE_KEYS and value:
            event_dict[key] = REDACTED
        elif isinstance(value, str):
            event_dict[key] = _BEARER_PATTERN.sub(f"Bearer {REDACTED}", value)
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog and the stdlib root logger.

    Safe to call again (the CLI group configures console output before a
    subcommand such as `run` switches to the service settings).

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable format
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)

    third_party_level = level if level <= logging.DEBUG else max(level, logging.WARNING)
    for name in _THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        redact_secrets,
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)
    """
    return structlog.get_logger(name)
