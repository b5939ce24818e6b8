"""Tests for token encryption and the credential store."""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from mailsync.auth.credentials import CredentialStore
from mailsync.auth.crypto import TokenCipher
from mailsync.auth.msal_auth import MsalTokenClient
from mailsync.core.errors import AuthenticationError, RefreshDeniedError
from mailsync.db.store import MailboxStore


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(TokenCipher.generate_key())


@pytest.fixture
def token_client() -> MagicMock:
    client = MagicMock(spec=MsalTokenClient)
    client.refresh.return_value = {
        "access_token": "new-access",
        "refresh_token": "new-refresh",
        "expires_in": 3600,
    }
    return client


@pytest.fixture
def credentials(
    store: MailboxStore, token_client: MagicMock, cipher: TokenCipher
) -> CredentialStore:
    return CredentialStore(store, token_client, cipher)


async def _account_with_tokens(
    store: MailboxStore, cipher: TokenCipher, expires_in: timedelta
) -> str:
    account, _ = await store.create_account(
        email="me@example.com",
        access_token=cipher.encrypt("old-access"),
        refresh_token=cipher.encrypt("old-refresh"),
        token_expires_at=datetime.now(UTC) + expires_in,
    )
    return account.id


class TestTokenCipher:
    """Tests for at-rest token encryption."""

    def test_ciphertext_is_not_plaintext(self, cipher: TokenCipher) -> None:
        """Test that stored tokens do not contain the secret."""
        encrypted = cipher.encrypt("secret-token")
        assert "secret-token" not in encrypted
        assert cipher.decrypt(encrypted) == "secret-token"

    def test_wrong_key_is_authentication_error(self, cipher: TokenCipher) -> None:
        """Test that a changed key asks the user to sign in again."""
        other = TokenCipher(TokenCipher.generate_key())
        with pytest.raises(AuthenticationError, match="sign in again"):
            other.decrypt(cipher.encrypt("secret-token"))

    def test_invalid_key_rejected(self) -> None:
        """Test that a malformed key fails fast."""
        with pytest.raises(AuthenticationError, match="not a valid Fernet key"):
            TokenCipher("too-short")

    def test_missing_env_key(self, monkeypatch) -> None:
        """Test that an unset key variable names the variable."""
        monkeypatch.delenv("MAILSYNC_ENCRYPTION_KEY", raising=False)
        with pytest.raises(AuthenticationError, match="MAILSYNC_ENCRYPTION_KEY"):
            TokenCipher.from_env()


class TestGetValidToken:
    """Tests for token refresh on demand."""

    @pytest.mark.asyncio
    async def test_fresh_token_is_decrypted(
        self, store, cipher, credentials, token_client
    ) -> None:
        """Test that a token far from expiry is used without refreshing."""
        account_id = await _account_with_tokens(store, cipher, timedelta(hours=1))

        assert await credentials.get_valid_token(account_id) == "old-access"
        token_client.refresh.assert_not_called()

    @pytest.mark.asyncio
    async def test_expiring_token_is_refreshed_and_stored_encrypted(
        self, store, cipher, credentials, token_client
    ) -> None:
        """Test that a token inside the refresh window is rotated."""
        account_id = await _account_with_tokens(store, cipher, timedelta(minutes=2))

        token = await credentials.get_valid_token(account_id)

        assert token == "new-access"
        token_client.refresh.assert_called_once_with("old-refresh")
        account = await store.require_account(account_id)
        assert account.access_token != "new-access"
        assert cipher.decrypt(account.access_token) == "new-access"
        assert cipher.decrypt(account.refresh_token) == "new-refresh"
        assert account.token_expires_at > datetime.now(UTC) + timedelta(minutes=50)

    @pytest.mark.asyncio
    async def test_force_refresh_ignores_cached_token(
        self, store, cipher, credentials, token_client
    ) -> None:
        """Test that a forced refresh happens even for a fresh token."""
        account_id = await _account_with_tokens(store, cipher, timedelta(hours=1))

        assert await credentials.get_valid_token(account_id, force_refresh=True) == "new-access"
        token_client.refresh.assert_called_once()

    @pytest.mark.asyncio
    async def test_rotation_without_new_refresh_token_keeps_old(
        self, store, cipher, credentials, token_client
    ) -> None:
        """Test that a refresh result without refresh_token keeps the stored one."""
        token_client.refresh.return_value = {"access_token": "new-access", "expires_in": 60}
        account_id = await _account_with_tokens(store, cipher, timedelta(seconds=-1))

        await credentials.get_valid_token(account_id)

        account = await store.require_account(account_id)
        assert cipher.decrypt(account.refresh_token) == "old-refresh"

    @pytest.mark.asyncio
    async def test_refresh_denied_marks_account_unauthenticated(
        self, store, cipher, credentials, token_client
    ) -> None:
        """Test that a rejected refresh token signs the account out."""
        token_client.refresh.side_effect = RefreshDeniedError("invalid_grant")
        account_id = await _account_with_tokens(store, cipher, timedelta(seconds=-1))

        with pytest.raises(RefreshDeniedError) as exc_info:
            await credentials.get_valid_token(account_id)

        assert exc_info.value.account_id == account_id
        account = await store.require_account(account_id)
        assert account.auth_state == "unauthenticated"
        assert account.access_token is None
        assert account.refresh_token is None

        # Later calls fail without contacting the provider
        token_client.refresh.reset_mock()
        with pytest.raises(RefreshDeniedError):
            await credentials.get_valid_token(account_id)
        token_client.refresh.assert_not_called()


class TestRegistration:
    """Tests for adding and signing out accounts."""

    @pytest.mark.asyncio
    async def test_register_new_account_seeds_categories(
        self, store, cipher, credentials
    ) -> None:
        """Test that the first sign-in creates the account with default categories."""
        account, created = await credentials.register_account(
            {
                "access_token": "at",
                "refresh_token": "rt",
                "expires_in": 3600,
                "id_token_claims": {
                    "preferred_username": "Me@Example.com",
                    "name": "Me",
                    "oid": "o1",
                    "tid": "t1",
                },
            }
        )

        assert created
        assert account.email == "me@example.com"
        assert account.home_account_id == "o1.t1"
        assert cipher.decrypt(account.access_token) == "at"
        assert len(await store.list_categories(account.id)) > 0

    @pytest.mark.asyncio
    async def test_reregister_reactivates(self, store, cipher, credentials) -> None:
        """Test that signing in again reactivates an unauthenticated account."""
        result = {"access_token": "at", "id_token_claims": {"preferred_username": "me@x.com"}}
        account, _ = await credentials.register_account(result)
        await credentials.revoke(account.id)

        again, created = await credentials.register_account(result)

        assert not created
        assert again.id == account.id
        assert again.auth_state == "active"

    @pytest.mark.asyncio
    async def test_register_requires_identity(self, credentials) -> None:
        """Test that a token result without user claims is rejected."""
        with pytest.raises(AuthenticationError, match="does not identify"):
            await credentials.register_account({"access_token": "at"})

    @pytest.mark.asyncio
    async def test_revoke_keeps_cached_mail(
        self, store, cipher, credentials, account, added
    ) -> None:
        """Test that signing out drops tokens but keeps emails."""
        await store.apply_changes(account.id, [added("msg-1")], "c1")

        await credentials.revoke(account.id)

        revoked = await store.require_account(account.id)
        assert revoked.auth_state == "unauthenticated"
        assert revoked.access_token is None
        async with store.connection() as db:
            cursor = await db.execute("SELECT COUNT(*) FROM emails")
            assert (await cursor.fetchone())[0] == 1
