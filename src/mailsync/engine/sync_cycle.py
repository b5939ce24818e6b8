"""One sync cycle for one account.

Steps:
1. Generate a sync_cycle_id and bind it as the logging correlation ID
2. Get a valid access token from the CredentialStore
3. Push pending local mutations to the provider ($batch)
4. Fetch changes from the stored cursor (self-healing on invalid cursors)
5. Apply the changes and the new cursor in one store transaction
6. Record the outcome on the account and in sync_log

A 401 from the provider forces one token refresh and one retry of the
failed step. Every other error propagates to the scheduler, which owns the
backoff policy; the cursor only advances when step 5 commits.

Usage:
    from mailsync.engine.sync_cycle import SyncCycle

    cycle = SyncCycle(store, credentials, config)
    result = await cycle.run(account_id)
"""

import asyncio
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

import aiosqlite

from mailsync.auth.credentials import CredentialStore
from mailsync.config_schema import AppConfig
from mailsync.core.errors import (
    AuthenticationError,
    DatabaseError,
    EmailNotFoundError,
    MailSyncError,
    TokenExpiredTransient,
)
from mailsync.core.logging import bind_sync_context, get_logger, reset_sync_context
from mailsync.db.store import AppliedSummary, MailboxStore
from mailsync.graph.client import GraphClient
from mailsync.graph.delta import DeltaFetcher, MessageBody
from mailsync.graph.messages import MessageManager

logger = get_logger(__name__)

T = TypeVar("T")

ClientFactory = Callable[[str, str], GraphClient]


@dataclass
class SyncCycleResult:
    """Result of a single sync cycle."""

    cycle_id: str
    account_id: str
    summary: AppliedSummary = field(default_factory=AppliedSummary)
    full_resync: bool = False
    mutations_pushed: int = 0
    duration_ms: int = 0


class SyncCycle:
    """Runs sync cycles; holds no per-account state between them.

    Attributes:
        _store: MailboxStore the changes are applied to
        _credentials: Source of access tokens
        _config: Application configuration
        _client_factory: Builds a GraphClient from (access_token, account_id)
    """

    def __init__(
        self,
        store: MailboxStore,
        credentials: CredentialStore,
        config: AppConfig,
        client_factory: ClientFactory | None = None,
    ):
        self._store = store
        self._credentials = credentials
        self._config = config
        self._client_factory = client_factory or self._default_client

    def _default_client(self, access_token: str, account_id: str) -> GraphClient:
        return GraphClient(
            access_token,
            account_id=account_id,
            rate=self._config.sync.request_rate_per_second,
        )

    def update_config(self, config: AppConfig) -> None:
        """Update the config reference for hot-reload support."""
        self._config = config

    def _fetcher(self, client: GraphClient) -> DeltaFetcher:
        sync = self._config.sync
        return DeltaFetcher(
            client,
            folders=sync.folders,
            page_size=sync.page_size,
            max_initial_messages=sync.max_initial_messages,
            initial_days_back=sync.initial_days_back,
        )

    async def run(self, account_id: str, full: bool = False) -> SyncCycleResult:
        """Execute one sync cycle.

        Args:
            account_id: Account to sync
            full: Re-list every folder, ignoring the stored cursor

        Raises:
            AccountNotFoundError: Account was removed
            RefreshDeniedError: Account needs the user to sign in again
            RateLimitedError / GraphAPIError / TransientNetworkError: Remote failures
            DatabaseError: The batch could not be applied (nothing was)
        """
        await self._store.require_account(account_id)

        cycle_id = str(uuid.uuid4())
        log_context = bind_sync_context(cycle_id, account_id)
        start_time = time.monotonic()
        result = SyncCycleResult(cycle_id=cycle_id, account_id=account_id)
        log_id = await self._store.start_sync_log(account_id)

        logger.info("sync_cycle_start", account_id=account_id, full=full)

        try:
            token = await self._credentials.get_valid_token(account_id)
            client = self._client_factory(token, account_id)

            result.mutations_pushed = await self._push_mutations(account_id, client)

            # A full sync ignores the stored cursor; it is only replaced when
            # the new listing is applied
            account = await self._store.require_account(account_id)
            cursor = None if full else account.sync_cursor
            fetcher = self._fetcher(client)
            fetched = await self._call_with_refresh(
                account_id,
                client,
                lambda: fetcher.fetch_changes(account_id, cursor),
            )
            result.full_resync = fetched.full_resync

            result.summary = await self._store.apply_changes(
                account_id, fetched.changes, fetched.new_cursor
            )

            await self._store.finish_sync_log(
                log_id, "completed", result.summary, full_resync=result.full_resync
            )
            await self._store.record_sync_success(account_id)

        except MailSyncError as e:
            logger.error(
                "sync_cycle_failed",
                account_id=account_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._record_failure(account_id, log_id, e)
            raise
        finally:
            result.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                "sync_cycle_complete",
                account_id=account_id,
                duration_ms=result.duration_ms,
                added=result.summary.added,
                updated=result.summary.updated,
                deleted=result.summary.deleted,
                full_resync=result.full_resync,
                mutations_pushed=result.mutations_pushed,
            )
            reset_sync_context(log_context)

        return result

    async def _record_failure(self, account_id: str, log_id: int, error: Exception) -> None:
        try:
            await self._store.finish_sync_log(log_id, "failed", error=str(error))
            await self._store.record_sync_failure(account_id, str(error))
        except (aiosqlite.Error, DatabaseError) as e:
            logger.warning("sync_failure_not_recorded", account_id=account_id, error=str(e))

    async def _call_with_refresh(
        self,
        account_id: str,
        client: GraphClient,
        operation: Callable[[], T],
    ) -> T:
        """Run a blocking Graph operation, refreshing the token once on a 401."""
        try:
            return await asyncio.to_thread(operation)
        except TokenExpiredTransient:
            logger.info("access_token_rejected_refreshing", account_id=account_id)

        token = await self._credentials.get_valid_token(account_id, force_refresh=True)
        client.set_access_token(token)
        try:
            return await asyncio.to_thread(operation)
        except TokenExpiredTransient as e:
            raise AuthenticationError(
                "Provider rejected a freshly refreshed access token. "
                "Check the app registration's Mail permissions.",
                account_id=account_id,
            ) from e

    async def _push_mutations(self, account_id: str, client: GraphClient) -> int:
        mutations = await self._store.pending_mutations_for_push(account_id)
        if not mutations:
            return 0

        manager = MessageManager(client)
        accepted = await self._call_with_refresh(
            account_id,
            client,
            lambda: manager.push_mutations(
                [(m.op_id, m.remote_id, m.field, m.value) for m in mutations]
            ),
        )
        return await self._store.mark_mutations_pushed(
            account_id, [m for m in mutations if m.op_id in accepted]
        )

    async def fetch_email_body(self, account_id: str, email_id: str) -> MessageBody:
        """Lazily load an email's body and attachment metadata into the cache.

        Raises:
            EmailNotFoundError: If the email is not cached for the account
        """
        email = await self._store.get_email(account_id, email_id)
        if email is None:
            raise EmailNotFoundError(email_id, account_id)
        token = await self._credentials.get_valid_token(account_id)
        client = self._client_factory(token, account_id)
        fetcher = self._fetcher(client)

        body = await self._call_with_refresh(
            account_id, client, lambda: fetcher.fetch_body(email.remote_id)
        )
        await self._store.store_email_body(account_id, email_id, body)
        return body
