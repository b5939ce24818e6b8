"""Command-line interface for the mailbox sync engine.

Provides commands for configuration, account sign-in, manual sync,
the long-running sync service and database maintenance.

Usage:
    python -m mailsync validate-config
    python -m mailsync add-account
    python -m mailsync sync me@example.com --full
    python -m mailsync run
    python -m mailsync maintenance prune --days 365
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

import click
from rich.console import Console
from rich.table import Table

from mailsync.config import validate_config_file
from mailsync.core.logging import configure_logging

if TYPE_CHECKING:
    from mailsync.auth.credentials import CredentialStore
    from mailsync.auth.msal_auth import MsalTokenClient
    from mailsync.config_schema import AppConfig
    from mailsync.db.store import Account, MailboxStore
    from mailsync.engine.sync_cycle import SyncCycle

console = Console()

T = TypeVar("T")

# How often the service checks config.yaml for changes
CONFIG_RELOAD_SECONDS = 30


@dataclass(frozen=True, slots=True)
class CLIDeps:
    """Shared dependencies initialized by _init_cli_deps()."""

    config: AppConfig
    store: MailboxStore
    token_client: MsalTokenClient
    credentials: CredentialStore
    cycle: SyncCycle


def _load_config_or_exit() -> AppConfig:
    from mailsync.config import get_config
    from mailsync.core.errors import ConfigLoadError, ConfigValidationError

    try:
        return get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Create config/config.yaml with at least an [cyan]auth[/cyan] section.\n"
            "See config/config.yaml.example."
        )
        sys.exit(1)


async def _open_store(config: AppConfig) -> MailboxStore:
    """Open (and migrate) the local database."""
    from mailsync.db.store import MailboxStore

    db_path = Path(config.storage.db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = MailboxStore(
        db_path,
        busy_timeout_ms=config.storage.busy_timeout_ms,
        pending_mutation_ttl_minutes=config.sync.pending_mutation_ttl_minutes,
    )
    await store.initialize()
    return store


async def _init_cli_deps() -> CLIDeps:
    """Initialize shared CLI dependencies.

    Loads config, opens the database and builds the token client, the
    credential store and the sync cycle. Prints actionable error messages
    and calls sys.exit(1) on failure.
    """
    from mailsync.auth.credentials import CredentialStore
    from mailsync.auth.crypto import TokenCipher
    from mailsync.auth.msal_auth import MsalTokenClient
    from mailsync.core.errors import AuthenticationError
    from mailsync.engine.sync_cycle import SyncCycle

    # 1. Load config
    config = _load_config_or_exit()

    # 2. Token encryption key
    try:
        cipher = TokenCipher.from_env(config.auth.encryption_key_env)
    except AuthenticationError as e:
        console.print(f"[red]Encryption key error:[/red] {e}")
        sys.exit(1)

    # 3. MSAL client
    try:
        token_client = MsalTokenClient(
            client_id=config.auth.client_id,
            tenant_id=config.auth.tenant_id,
            scopes=config.auth.scopes,
        )
    except ValueError as e:
        console.print(
            f"[red]Authentication error:[/red] {e}\n\n"
            "Check your Azure AD app registration and try again."
        )
        sys.exit(1)

    # 4. Database, credentials and sync cycle
    store = await _open_store(config)
    credentials = CredentialStore(
        store,
        token_client,
        cipher,
        refresh_skew_seconds=config.auth.token_refresh_skew_seconds,
    )
    cycle = SyncCycle(store, credentials, config)

    return CLIDeps(
        config=config,
        store=store,
        token_client=token_client,
        credentials=credentials,
        cycle=cycle,
    )


def _run_async(coro_factory: Callable[[], Awaitable[T]]) -> T:
    """Run an async command body with the CLI's standard error handling."""
    from mailsync.core.errors import MailSyncError

    try:
        return asyncio.run(coro_factory())
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except MailSyncError as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


async def _resolve_account(store: MailboxStore, identifier: str) -> Account:
    """Find an account by id or email address, or exit."""
    account = await store.get_account(identifier) or await store.get_account_by_email(
        identifier
    )
    if account is None:
        console.print(
            f"[red]No account matches '{identifier}'.[/red] "
            "Run [cyan]mailsync accounts[/cyan] to list accounts."
        )
        sys.exit(1)
    return account


def _format_time(value: datetime | None) -> str:
    if value is None:
        return "never"
    return value.astimezone().strftime("%Y-%m-%d %H:%M")


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """Mailbox sync engine - local cache of your Outlook mail."""
    log_level = "DEBUG" if debug else "WARNING"
    # Human-readable output for CLI, JSON for the service
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    if config_path:
        console.print(f"Validating config: [cyan]{config_path}[/cyan]")
    else:
        console.print("Validating config: [cyan]config/config.yaml[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("generate-key")
def generate_key() -> None:
    """Print a new key for encrypting stored tokens."""
    from mailsync.auth.crypto import TokenCipher

    console.print(TokenCipher.generate_key())
    console.print(
        "\n[dim]Store it as MAILSYNC_ENCRYPTION_KEY in your environment or .env file. "
        "Losing it signs every account out.[/dim]",
    )


@cli.command("init-db")
def init_db() -> None:
    """Create or migrate the local database."""

    async def _init() -> None:
        config = _load_config_or_exit()
        store = await _open_store(config)
        console.print(f"[green]✓[/green] Database ready at [cyan]{store.db_path}[/cyan]")

    _run_async(_init)


@cli.command("add-account")
def add_account() -> None:
    """Sign in a Microsoft account with the device code flow."""

    async def _add() -> None:
        deps = await _init_cli_deps()
        result = await asyncio.to_thread(deps.token_client.device_code_login)
        account, created = await deps.credentials.register_account(result)
        verb = "Added" if created else "Signed in again:"
        console.print(f"\n[green]✓[/green] {verb} [cyan]{account.email}[/cyan]")
        if created:
            console.print("Run [cyan]mailsync sync[/cyan] to fill the local cache.")

    _run_async(_add)


@cli.command("accounts")
def accounts() -> None:
    """List accounts and their sync state."""

    async def _list() -> None:
        config = _load_config_or_exit()
        store = await _open_store(config)
        rows = await store.list_accounts()
        if not rows:
            console.print("No accounts. Add one with [cyan]mailsync add-account[/cyan].")
            return

        table = Table(title="Accounts")
        table.add_column("Email", style="cyan")
        table.add_column("State")
        table.add_column("Last sync")
        table.add_column("Last error", overflow="fold")
        for account in rows:
            state = (
                "[green]active[/green]"
                if account.auth_state == "active"
                else "[red]signed out[/red]"
            )
            table.add_row(
                account.email,
                state,
                _format_time(account.last_sync_at),
                account.last_error or "",
            )
        console.print(table)

    _run_async(_list)


@cli.command("remove-account")
@click.argument("account")
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt")
def remove_account(account: str, yes: bool) -> None:
    """Delete an account and all of its cached data."""

    async def _remove() -> None:
        config = _load_config_or_exit()
        store = await _open_store(config)
        target = await _resolve_account(store, account)
        if not yes and not click.confirm(
            f"Delete {target.email} and all of its cached mail?", default=False
        ):
            console.print("[yellow]Cancelled.[/yellow]")
            return
        await store.delete_account(target.id)
        console.print(f"[green]✓[/green] Removed [cyan]{target.email}[/cyan]")

    _run_async(_remove)


@cli.command("sign-out")
@click.argument("account")
def sign_out(account: str) -> None:
    """Forget an account's tokens. Cached mail is kept."""

    async def _sign_out() -> None:
        deps = await _init_cli_deps()
        target = await _resolve_account(deps.store, account)
        await deps.credentials.revoke(target.id)
        console.print(f"[green]✓[/green] Signed out [cyan]{target.email}[/cyan]")

    _run_async(_sign_out)


@cli.command("sync")
@click.argument("account", required=False)
@click.option("--full", is_flag=True, help="Drop the sync cursor and re-list every folder")
def sync(account: str | None, full: bool) -> None:
    """Sync one account now, or every account if none is given."""
    _run_async(lambda: _run_sync(account, full))


async def _run_sync(account: str | None, full: bool) -> None:
    """Async implementation of sync command."""
    from mailsync.engine.scheduler import SyncScheduler

    deps = await _init_cli_deps()
    scheduler = SyncScheduler(deps.store, deps.cycle, deps.config)
    await scheduler.load_accounts()

    if account:
        targets = [await _resolve_account(deps.store, account)]
    else:
        targets = await deps.store.list_accounts()
    if not targets:
        console.print("No accounts. Add one with [cyan]mailsync add-account[/cyan].")
        return

    failed = False
    for target in targets:
        outcome = await scheduler.sync(target.id, full=full)
        if outcome.status == "completed" and outcome.result:
            summary = outcome.result.summary
            console.print(
                f"[green]✓[/green] [cyan]{target.email}[/cyan] "
                f"added={summary.added} updated={summary.updated} deleted={summary.deleted} "
                f"pushed={outcome.result.mutations_pushed} "
                f"({outcome.result.duration_ms}ms)"
                + (" [yellow]full resync[/yellow]" if outcome.result.full_resync else "")
            )
        else:
            failed = True
            console.print(
                f"[red]✗[/red] [cyan]{target.email}[/cyan] {outcome.status}"
                + (f": {outcome.error}" if outcome.error else "")
            )
    if failed:
        sys.exit(1)


@cli.command("status")
@click.argument("account", required=False)
@click.option("--limit", default=10, type=int, help="Sync log entries per account")
def status(account: str | None, limit: int) -> None:
    """Show cache health and recent sync cycles."""

    async def _status() -> None:
        from mailsync.db.queries import MailboxQueries

        config = _load_config_or_exit()
        store = await _open_store(config)
        queries = MailboxQueries(store)
        targets = (
            [await _resolve_account(store, account)] if account else await store.list_accounts()
        )

        for target in targets:
            health = await queries.account_health(target.id)
            console.print(f"\n[bold]{target.email}[/bold]")
            for key, value in health.items():
                console.print(f"  {key.replace('_', ' ').capitalize():<22} {value}")

            entries = await store.recent_sync_log(target.id, limit=limit)
            if not entries:
                continue
            table = Table(show_header=True, header_style="bold")
            table.add_column("Started")
            table.add_column("Status")
            table.add_column("+", justify="right")
            table.add_column("~", justify="right")
            table.add_column("-", justify="right")
            table.add_column("Error", overflow="fold")
            for entry in entries:
                color = {"completed": "green", "failed": "red"}.get(entry.status, "yellow")
                table.add_row(
                    _format_time(entry.started_at),
                    f"[{color}]{entry.status}[/{color}]",
                    str(entry.added),
                    str(entry.updated),
                    str(entry.deleted),
                    entry.error or "",
                )
            console.print(table)

    _run_async(_status)


@cli.command("detect-newsletters")
@click.argument("account", required=False)
def detect_newsletters(account: str | None) -> None:
    """Run newsletter sender detection now."""

    async def _detect() -> None:
        from mailsync.engine.newsletters import NewsletterDetector

        config = _load_config_or_exit()
        store = await _open_store(config)
        detector = NewsletterDetector(
            store,
            min_messages=config.newsletter.min_messages,
            lookback_days=config.newsletter.lookback_days,
            extra_domains=config.newsletter.extra_domains,
        )
        targets = (
            [await _resolve_account(store, account)] if account else await store.list_accounts()
        )
        for target in targets:
            detected = await detector.detect(target.id)
            console.print(f"[cyan]{target.email}[/cyan]: {detected} new newsletter senders")

    _run_async(_detect)


@cli.command("run")
def run() -> None:
    """Run the sync service: periodic sync, due-item workers and newsletter detection."""
    config = _load_config_or_exit()
    configure_logging(log_level=config.logging.level, json_output=config.logging.json_output)
    console.print("Starting sync service. Press Ctrl+C to stop.")
    _run_async(_run_service)


async def _run_service() -> None:
    """Run the scheduler, workers and detector until SIGINT/SIGTERM."""
    import signal

    from mailsync.config import get_config, reload_config_if_changed
    from mailsync.engine.newsletters import NewsletterDetector
    from mailsync.engine.scheduler import SyncScheduler
    from mailsync.engine.workers import ReminderWorker, ScheduledSendWorker

    deps = await _init_cli_deps()
    config = deps.config

    scheduler = SyncScheduler(deps.store, deps.cycle, config)
    await scheduler.load_accounts()
    sender = ScheduledSendWorker(
        deps.store,
        deps.credentials,
        claim_timeout_minutes=config.workers.claim_timeout_minutes,
        batch_size=config.workers.batch_size,
    )
    reminders = ReminderWorker(
        deps.store,
        claim_timeout_minutes=config.workers.claim_timeout_minutes,
        batch_size=config.workers.batch_size,
    )
    detector = NewsletterDetector(
        deps.store,
        min_messages=config.newsletter.min_messages,
        lookback_days=config.newsletter.lookback_days,
        extra_domains=config.newsletter.extra_domains,
    )

    async def run_workers() -> None:
        await sender.run_once()
        await reminders.run_once()

    async def run_detection() -> None:
        for account in await deps.store.list_accounts():
            await detector.detect(account.id)

    def check_config() -> None:
        if reload_config_if_changed():
            scheduler.update_config(get_config())

    jobs = scheduler.start()
    jobs.add_job(
        run_workers,
        "interval",
        seconds=config.workers.interval_seconds,
        id="due_items",
        max_instances=1,
        coalesce=True,
    )
    jobs.add_job(
        run_detection,
        "interval",
        minutes=config.newsletter.interval_minutes,
        id="newsletter_detection",
        max_instances=1,
        coalesce=True,
    )
    jobs.add_job(
        check_config,
        "interval",
        seconds=CONFIG_RELOAD_SECONDS,
        id="config_reload",
        max_instances=1,
        coalesce=True,
    )

    console.print(
        f"Syncing every {config.sync.interval_minutes} minutes, "
        f"checking due items every {config.workers.interval_seconds} seconds."
    )

    # Wait until interrupted
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, stop_event.set)
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    await stop_event.wait()

    scheduler.shutdown()
    console.print("\n[yellow]Stopped.[/yellow]")


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


@cli.group("maintenance")
def maintenance_group() -> None:
    """Database maintenance commands."""


@maintenance_group.command("vacuum")
def maintenance_vacuum() -> None:
    """Reclaim free space and refresh query statistics."""

    async def _vacuum() -> None:
        from mailsync.db import maintenance

        store = await _open_store(_load_config_or_exit())
        await maintenance.vacuum(store)
        console.print("[green]✓[/green] Database vacuumed")

    _run_async(_vacuum)


@maintenance_group.command("cleanup")
def maintenance_cleanup() -> None:
    """Delete orphaned rows and dangling references."""

    async def _cleanup() -> None:
        from mailsync.db import maintenance

        store = await _open_store(_load_config_or_exit())
        removed = await maintenance.delete_orphaned_records(store)
        total = sum(removed.values())
        console.print(f"[green]✓[/green] Removed {total} orphaned rows")
        for name, count in removed.items():
            if count:
                console.print(f"  {name}: {count}")

    _run_async(_cleanup)


@maintenance_group.command("prune")
@click.option("--days", required=True, type=click.IntRange(min=1), help="Keep this many days")
@click.option("--account", "account", default=None, help="Only prune this account")
def maintenance_prune(days: int, account: str | None) -> None:
    """Drop cached mail older than N days. The provider copy is untouched."""

    async def _prune() -> None:
        from mailsync.db import maintenance

        store = await _open_store(_load_config_or_exit())
        targets = (
            [await _resolve_account(store, account)] if account else await store.list_accounts()
        )
        for target in targets:
            deleted = await maintenance.delete_emails_older_than(store, target.id, days)
            console.print(f"[cyan]{target.email}[/cyan]: pruned {deleted} emails")

    _run_async(_prune)


@maintenance_group.command("stats")
def maintenance_stats() -> None:
    """Show database size and row counts."""

    async def _stats() -> None:
        from mailsync.db import maintenance

        store = await _open_store(_load_config_or_exit())
        stats = await maintenance.database_stats(store)

        console.print(f"Database:       [cyan]{stats['db_path']}[/cyan]")
        console.print(f"Schema version: {stats['schema_version']}")
        console.print(f"File size:      {stats['file_size_bytes'] / 1024:.1f} KiB")
        console.print(f"WAL size:       {stats['wal_size_bytes'] / 1024:.1f} KiB")

        table = Table(show_header=True, header_style="bold")
        table.add_column("Table")
        table.add_column("Rows", justify="right")
        for name, count in stats["row_counts"].items():
            table.add_row(name, str(count))
        console.print(table)

    _run_async(_stats)


def main() -> None:
    """Entry point for the CLI."""
    from dotenv import load_dotenv

    load_dotenv()
    cli()


if __name__ == "__main__":
    main()
