"""Per-account sync scheduling.

Each account moves through a small state machine:

    idle -> syncing -> idle
    idle -> syncing -> backoff -> (deadline passes) -> idle
    any  -> unauthenticated   (refresh token denied; until reauthenticate())
    any  -> removed           (account deleted; never scheduled again)

A sync request for an account that is already syncing returns at once with
"already_running", so concurrent requests coalesce into the running cycle.
A request during backoff returns "deferred" until the deadline passes.

Failures never escape the scheduler: they are turned into a state and an
outcome, and one account's failure never affects the others.

Usage:
    from mailsync.engine.scheduler import SyncScheduler

    scheduler = SyncScheduler(store, cycle, config)
    await scheduler.load_accounts()
    scheduler.start()  # periodic tick with APScheduler
    outcome = await scheduler.sync(account_id)
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import Literal

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from mailsync.config_schema import AppConfig
from mailsync.core.errors import (
    AccountNotFoundError,
    MailSyncError,
    PermanentRemoteError,
    RateLimitedError,
    RefreshDeniedError,
)
from mailsync.core.logging import get_logger
from mailsync.db.store import AppliedSummary, MailboxStore
from mailsync.engine.sync_cycle import SyncCycle, SyncCycleResult

logger = get_logger(__name__)

SyncState = Literal["idle", "syncing", "backoff", "unauthenticated", "removed"]
OutcomeStatus = Literal[
    "completed",
    "already_running",
    "deferred",
    "failed",
    "unauthenticated",
    "removed",
]

SYNC_JOB_ID = "sync_tick"


@dataclass
class AccountSyncStatus:
    """Inspectable scheduling state of one account."""

    account_id: str
    state: SyncState = "idle"
    consecutive_failures: int = 0
    backoff_until: datetime | None = None
    last_error: str | None = None
    last_summary: AppliedSummary | None = None
    last_completed_at: datetime | None = None


@dataclass
class SyncOutcome:
    """What happened to one sync request."""

    account_id: str
    status: OutcomeStatus
    result: SyncCycleResult | None = None
    error: str | None = None
    backoff_until: datetime | None = None
    retry_after: float | None = None
    retryable: bool = True


def backoff_delay(failures: int, base: float, ceiling: float) -> float:
    """Exponential backoff: base, 2*base, 4*base, ... capped at ceiling."""
    if failures < 1:
        return 0.0
    return min(ceiling, base * 2 ** (failures - 1))


class SyncScheduler:
    """Registry of account states plus the periodic tick that drives them.

    Attributes:
        _store: MailboxStore (account list and deletion)
        _cycle: Runs one sync cycle
        _config: Application configuration (interval and backoff constants)
        _clock: Current time; injectable for tests
    """

    def __init__(
        self,
        store: MailboxStore,
        cycle: SyncCycle,
        config: AppConfig,
        clock: Callable[[], datetime] | None = None,
    ):
        self._store = store
        self._cycle = cycle
        self._config = config
        self._clock = clock or (lambda: datetime.now(UTC))
        self._registry: dict[str, AccountSyncStatus] = {}
        self._registry_lock = asyncio.Lock()
        self._scheduler: AsyncIOScheduler | None = None

    def update_config(self, config: AppConfig) -> None:
        """Update the config reference for hot-reload support."""
        self._config = config
        self._cycle.update_config(config)
        if self._scheduler is not None and self._scheduler.get_job(SYNC_JOB_ID):
            self._scheduler.reschedule_job(
                SYNC_JOB_ID, trigger="interval", minutes=config.sync.interval_minutes
            )

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    async def load_accounts(self) -> None:
        """Bring the registry in line with the accounts table.

        New accounts start idle (or unauthenticated), deleted ones become
        removed, and an account signed in again elsewhere (the CLI runs in
        another process) leaves the unauthenticated state.
        """
        accounts = {account.id: account for account in await self._store.list_accounts()}

        async with self._registry_lock:
            for account_id, account in accounts.items():
                status = self._registry.get(account_id)
                if status is None:
                    state: SyncState = (
                        "unauthenticated" if account.auth_state == "unauthenticated" else "idle"
                    )
                    self._registry[account_id] = AccountSyncStatus(account_id, state=state)
                elif status.state == "unauthenticated" and account.auth_state == "active":
                    status.state = "idle"
                    status.consecutive_failures = 0
                    logger.info("account_reauthenticated", account_id=account_id)
                elif account.auth_state == "unauthenticated" and status.state != "syncing":
                    status.state = "unauthenticated"
                    status.last_error = account.last_error

            for account_id, status in self._registry.items():
                if account_id not in accounts and status.state != "syncing":
                    status.state = "removed"

    def status(self) -> dict[str, AccountSyncStatus]:
        """Snapshot of every account's scheduling state."""
        return {account_id: replace(s) for account_id, s in self._registry.items()}

    async def reauthenticate(self, account_id: str) -> None:
        """Return an unauthenticated account to the schedule after a new sign-in."""
        async with self._registry_lock:
            status = self._registry.setdefault(account_id, AccountSyncStatus(account_id))
            if status.state != "removed":
                status.state = "idle"
                status.consecutive_failures = 0
                status.backoff_until = None
        logger.info("account_reauthenticated", account_id=account_id)

    async def remove_account(self, account_id: str) -> bool:
        """Delete an account; an in-flight cycle commits or rolls back first.

        Returns:
            True if the account existed
        """
        async with self._registry_lock:
            status = self._registry.setdefault(account_id, AccountSyncStatus(account_id))
            status.state = "removed"
        deleted = await self._store.delete_account(account_id)
        logger.info("account_removed", account_id=account_id, existed=deleted)
        return deleted

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(self, account_id: str, full: bool = False) -> SyncOutcome:
        """Sync one account now, unless it is running, backing off or excluded."""
        async with self._registry_lock:
            status = self._registry.get(account_id)
            if status is None:
                if await self._store.get_account(account_id) is None:
                    return SyncOutcome(account_id, "removed", error="Account not found")
                status = AccountSyncStatus(account_id)
                self._registry[account_id] = status

            match status.state:
                case "removed":
                    return SyncOutcome(account_id, "removed")
                case "unauthenticated":
                    return SyncOutcome(account_id, "unauthenticated", error=status.last_error)
                case "syncing":
                    return SyncOutcome(account_id, "already_running")
                case "backoff" if status.backoff_until and self._clock() < status.backoff_until:
                    return SyncOutcome(
                        account_id, "deferred", backoff_until=status.backoff_until
                    )

            status.state = "syncing"

        outcome = await self._run_cycle(account_id, full)

        async with self._registry_lock:
            if status.state == "removed":
                return SyncOutcome(account_id, "removed", result=outcome.result)
            self._apply_outcome(status, outcome)
        return outcome

    async def _run_cycle(self, account_id: str, full: bool) -> SyncOutcome:
        try:
            result = await self._cycle.run(account_id, full=full)
        except RefreshDeniedError as e:
            return SyncOutcome(account_id, "unauthenticated", error=str(e))
        except AccountNotFoundError as e:
            return SyncOutcome(account_id, "removed", error=str(e))
        except PermanentRemoteError as e:
            return SyncOutcome(account_id, "failed", error=str(e), retryable=False)
        except RateLimitedError as e:
            return SyncOutcome(account_id, "failed", error=str(e), retry_after=e.retry_after)
        except MailSyncError as e:
            return SyncOutcome(account_id, "failed", error=str(e))
        except Exception as e:
            # A bug in one account's cycle must not stop the scheduler
            logger.exception("sync_unexpected_error", account_id=account_id)
            return SyncOutcome(account_id, "failed", error=f"{type(e).__name__}: {e}")
        return SyncOutcome(account_id, "completed", result=result)

    def _apply_outcome(self, status: AccountSyncStatus, outcome: SyncOutcome) -> None:
        sync = self._config.sync

        match outcome.status:
            case "completed":
                status.state = "idle"
                status.consecutive_failures = 0
                status.backoff_until = None
                status.last_error = None
                status.last_summary = outcome.result.summary if outcome.result else None
                status.last_completed_at = self._clock()
            case "unauthenticated":
                status.state = "unauthenticated"
                status.last_error = outcome.error
                logger.warning("account_excluded_unauthenticated", account_id=status.account_id)
            case "removed":
                status.state = "removed"
            case "failed" if not outcome.retryable:
                # Permanent provider error: abort this cycle only
                status.state = "idle"
                status.last_error = outcome.error
            case "failed":
                status.consecutive_failures += 1
                delay = backoff_delay(
                    status.consecutive_failures,
                    sync.backoff_base_seconds,
                    sync.backoff_ceiling_seconds,
                )
                delay = max(delay, outcome.retry_after or 0.0)
                status.state = "backoff"
                status.backoff_until = self._clock() + timedelta(seconds=delay)
                status.last_error = outcome.error
                outcome.backoff_until = status.backoff_until
                logger.warning(
                    "sync_backoff",
                    account_id=status.account_id,
                    failures=status.consecutive_failures,
                    delay_seconds=delay,
                    error=outcome.error,
                )

    async def tick(self) -> list[SyncOutcome]:
        """Sync every eligible account concurrently."""
        await self.load_accounts()

        now = self._clock()
        eligible = [
            s.account_id
            for s in self._registry.values()
            if s.state == "idle"
            or (s.state == "backoff" and (s.backoff_until is None or now >= s.backoff_until))
        ]
        if not eligible:
            logger.debug("sync_tick_nothing_eligible", accounts=len(self._registry))
            return []

        results = await asyncio.gather(
            *(self.sync(account_id) for account_id in eligible), return_exceptions=True
        )

        outcomes: list[SyncOutcome] = []
        for account_id, result in zip(eligible, results, strict=True):
            if isinstance(result, BaseException):
                logger.error("sync_tick_error", account_id=account_id, error=str(result))
                continue
            outcomes.append(result)

        logger.info(
            "sync_tick_complete",
            accounts=len(eligible),
            completed=sum(1 for o in outcomes if o.status == "completed"),
            failed=sum(1 for o in outcomes if o.status == "failed"),
        )
        await self._store.checkpoint_wal()
        return outcomes

    # ------------------------------------------------------------------
    # Periodic scheduling
    # ------------------------------------------------------------------

    def start(self) -> AsyncIOScheduler:
        """Schedule tick() every sync.interval_minutes, starting now."""
        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            self.tick,
            "interval",
            minutes=self._config.sync.interval_minutes,
            id=SYNC_JOB_ID,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(UTC),
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("sync_scheduler_started", interval_minutes=self._config.sync.interval_minutes)
        return scheduler

    def shutdown(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
