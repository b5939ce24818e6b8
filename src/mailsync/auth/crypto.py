"""Encryption of OAuth tokens at rest.

Access and refresh tokens are stored in the accounts table as Fernet tokens
(AES-128-CBC + HMAC). The key comes from an environment variable so it never
lives next to the database file.

Generate a key once with:
    mailsync generate-key
"""

import os

from cryptography.fernet import Fernet, InvalidToken

from mailsync.core.errors import AuthenticationError

DEFAULT_KEY_ENV = "MAILSYNC_ENCRYPTION_KEY"


class TokenCipher:
    """Symmetric encryption for token strings."""

    def __init__(self, key: str | bytes):
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise AuthenticationError(
                "Token encryption key is not a valid Fernet key. "
                "Generate one with 'mailsync generate-key'."
            ) from e

    @classmethod
    def from_env(cls, env_var: str = DEFAULT_KEY_ENV) -> "TokenCipher":
        """Build a cipher from the key in the given environment variable.

        Raises:
            AuthenticationError: If the variable is unset or not a valid key
        """
        key = os.environ.get(env_var)
        if not key:
            raise AuthenticationError(
                f"{env_var} is not set. Generate a key with 'mailsync generate-key' "
                "and put it in your environment or .env file."
            )
        return cls(key)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Decrypt a stored token.

        Raises:
            AuthenticationError: If the value was encrypted with another key
                or has been tampered with
        """
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise AuthenticationError(
                "Stored token could not be decrypted. The encryption key changed; "
                "sign in again with 'mailsync add-account'."
            ) from e
