"""Per-account credential management.

The CredentialStore is the only component that sees plaintext tokens. It
decrypts the cached access token while it is still valid, refreshes it
through MSAL shortly before it expires, and writes the rotated tokens back
encrypted.

Usage:
    from mailsync.auth.credentials import CredentialStore

    credentials = CredentialStore(store, token_client, TokenCipher.from_env())
    token = await credentials.get_valid_token(account_id)
"""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

from mailsync.auth.crypto import TokenCipher
from mailsync.auth.msal_auth import MsalTokenClient
from mailsync.core.errors import AuthenticationError, RefreshDeniedError
from mailsync.core.logging import get_logger
from mailsync.db.store import Account, MailboxStore

logger = get_logger(__name__)

# Used when the token result has no expires_in
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


class CredentialStore:
    """Valid access tokens for accounts, refreshed on demand.

    Attributes:
        store: Where encrypted tokens are persisted
        token_client: MSAL wrapper used to redeem refresh tokens
        cipher: Encrypts tokens at rest
        refresh_skew: Tokens expiring within this window are refreshed early
    """

    def __init__(
        self,
        store: MailboxStore,
        token_client: MsalTokenClient,
        cipher: TokenCipher,
        refresh_skew_seconds: int = 300,
    ):
        self.store = store
        self.token_client = token_client
        self.cipher = cipher
        self.refresh_skew = timedelta(seconds=refresh_skew_seconds)
        self._refresh_locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._refresh_locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._refresh_locks[account_id] = lock
        return lock

    def _is_fresh(self, account: Account) -> bool:
        if not account.access_token or account.token_expires_at is None:
            return False
        return account.token_expires_at - datetime.now(UTC) > self.refresh_skew

    async def get_valid_token(self, account_id: str, force_refresh: bool = False) -> str:
        """Return an access token valid for at least the refresh skew.

        Args:
            account_id: Account to get a token for
            force_refresh: Ignore the cached token (after the provider sent a 401)

        Raises:
            AccountNotFoundError: If the account does not exist
            RefreshDeniedError: Account needs the user to sign in again
            TransientNetworkError: Token endpoint unreachable after retries
            AuthenticationError: Stored tokens cannot be decrypted or the refresh failed
        """
        # One refresh per account at a time; the second caller reuses the result
        async with self._lock_for(account_id):
            account = await self.store.require_account(account_id)
            if account.auth_state == "unauthenticated":
                raise RefreshDeniedError(
                    f"Account '{account.email}' is signed out. "
                    "Sign in again with 'mailsync add-account'.",
                    account_id=account_id,
                )

            if not force_refresh and self._is_fresh(account):
                return self.cipher.decrypt(account.access_token)

            if not account.refresh_token:
                await self.mark_unauthenticated(account_id, "No refresh token stored")
                raise RefreshDeniedError(
                    f"Account '{account.email}' has no refresh token. "
                    "Sign in again with 'mailsync add-account'.",
                    account_id=account_id,
                )

            refresh_token = self.cipher.decrypt(account.refresh_token)
            try:
                result = await asyncio.to_thread(self.token_client.refresh, refresh_token)
            except RefreshDeniedError as e:
                await self.mark_unauthenticated(account_id, str(e))
                raise RefreshDeniedError(str(e), account_id=account_id) from e

            access_token = result["access_token"]
            await self.store.update_tokens(
                account_id,
                access_token=self.cipher.encrypt(access_token),
                refresh_token=(
                    self.cipher.encrypt(result["refresh_token"])
                    if result.get("refresh_token")
                    else None
                ),
                token_expires_at=_expires_at(result),
            )
            logger.info("access_token_refreshed", account_id=account_id, forced=force_refresh)
            return access_token

    async def register_account(self, token_result: dict[str, Any]) -> tuple[Account, bool]:
        """Create or update an account from an MSAL token result.

        New accounts get the default categories and rules.

        Returns:
            (account, created)

        Raises:
            AuthenticationError: If the result carries no tokens or no user identity
        """
        if "access_token" not in token_result:
            raise AuthenticationError("Token result contains no access token")

        claims = token_result.get("id_token_claims") or {}
        email = claims.get("preferred_username") or claims.get("email")
        if not email:
            raise AuthenticationError(
                "Token result does not identify the user. "
                "Ensure the 'User.Read' scope is granted."
            )

        home_account_id = None
        if claims.get("oid") and claims.get("tid"):
            home_account_id = f"{claims['oid']}.{claims['tid']}"

        refresh_token = token_result.get("refresh_token")
        account, created = await self.store.create_account(
            email=email,
            display_name=claims.get("name"),
            home_account_id=home_account_id,
            access_token=self.cipher.encrypt(token_result["access_token"]),
            refresh_token=self.cipher.encrypt(refresh_token) if refresh_token else None,
            token_expires_at=_expires_at(token_result),
        )
        if created:
            await self.store.seed_default_categories(account.id)

        logger.info("account_registered", account_id=account.id, created=created)
        return account, created

    async def mark_unauthenticated(self, account_id: str, reason: str) -> None:
        """Drop the account's tokens; periodic sync skips it until the next sign-in."""
        logger.warning("account_unauthenticated", account_id=account_id, reason=reason)
        await self.store.set_auth_state(account_id, "unauthenticated", error=reason)

    async def revoke(self, account_id: str) -> None:
        """Sign an account out locally. Cached mail is kept."""
        await self.store.require_account(account_id)
        await self.mark_unauthenticated(account_id, "Signed out by user")


def _expires_at(token_result: dict[str, Any]) -> datetime:
    try:
        lifetime = int(token_result.get("expires_in", DEFAULT_TOKEN_LIFETIME_SECONDS))
    except (TypeError, ValueError):
        lifetime = DEFAULT_TOKEN_LIFETIME_SECONDS
    return datetime.now(UTC) + timedelta(seconds=lifetime)
