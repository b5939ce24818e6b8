"""Authentication for Microsoft accounts.

Device code sign-in and refresh via MSAL, tokens encrypted at rest, and a
credential store that hands out valid access tokens per account.

Usage:
    from mailsync.auth import CredentialStore, MsalTokenClient, TokenCipher

    token_client = MsalTokenClient(client_id, tenant_id, scopes)
    credentials = CredentialStore(store, token_client, TokenCipher.from_env())

    token = await credentials.get_valid_token(account_id)
"""

from mailsync.auth.credentials import CredentialStore
from mailsync.auth.crypto import TokenCipher
from mailsync.auth.msal_auth import MsalTokenClient

__all__ = ["CredentialStore", "MsalTokenClient", "TokenCipher"]
