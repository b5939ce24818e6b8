"""Custom exception types for the mailbox sync engine.

Error messages follow one standard:
- What failed (specific operation or component)
- Why it failed (the specific condition)
- How to fix it (actionable guidance), where there is something to do

The hierarchy mirrors how the scheduler reacts to a failure:
- AuthenticationError subclasses decide whether an account needs the user
- GraphAPIError subclasses decide between backoff, resync and abort
- DatabaseError aborts the whole batch (never partially applied)
"""


class MailSyncError(Exception):
    """Base exception for all mailbox sync engine errors."""

    pass


class ConfigValidationError(MailSyncError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(MailSyncError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class AuthenticationError(MailSyncError):
    """Raised when tokens cannot be acquired for an account."""

    def __init__(self, message: str, account_id: str | None = None):
        super().__init__(message)
        self.account_id = account_id


class RefreshDeniedError(AuthenticationError):
    """Raised when the identity provider rejects an account's refresh token.

    Terminal for the account: it is marked unauthenticated and excluded from
    periodic sync until the user signs in again. Never retried.
    """

    pass


class TokenExpiredTransient(AuthenticationError):
    """Raised when the provider rejects an access token that looked valid (401).

    Recovered inside the sync cycle by forcing one refresh; callers of the
    engine never see it.
    """

    pass


class TransientNetworkError(MailSyncError):
    """Raised when a network call fails in a way that is worth retrying later."""

    pass


class GraphAPIError(MailSyncError):
    """Raised when Microsoft Graph API returns an error.

    Attributes:
        status_code: HTTP status code from the API
        error_code: Error code from Graph API response (if available)
        message: Error message from Graph API response
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code

    @property
    def retryable(self) -> bool:
        """Whether a later attempt might succeed (server-side or no status)."""
        return self.status_code is None or self.status_code >= 500


class RateLimitedError(GraphAPIError):
    """Raised when the provider throttles requests (429, or 503 with Retry-After).

    Attributes:
        retry_after: Seconds the provider asked us to wait before retrying
    """

    def __init__(self, message: str, retry_after: float, status_code: int = 429):
        super().__init__(message, status_code=status_code, error_code="TooManyRequests")
        self.retry_after = retry_after


class CursorInvalidError(GraphAPIError):
    """Raised when a stored delta link can no longer be resolved (410 Gone).

    The delta fetcher heals this itself with a full listing of the folder,
    so the scheduler never sees it.
    """

    def __init__(self, message: str, folder: str | None = None):
        super().__init__(message, status_code=410, error_code="SyncStateNotFound")
        self.folder = folder


class PermanentRemoteError(GraphAPIError):
    """Raised for provider errors that will not go away by retrying (4xx).

    The cycle is aborted without advancing the cursor.
    """

    pass


class DatabaseError(MailSyncError):
    """Raised when SQLite operations fail."""

    pass


class AccountNotFoundError(MailSyncError):
    """Raised when an operation references an account that does not exist."""

    def __init__(self, account_id: str):
        super().__init__(f"Account '{account_id}' not found. Run 'mailsync accounts' to list them.")
        self.account_id = account_id


class RuleValidationError(MailSyncError):
    """Raised when a categorization rule fails validation at the input boundary."""

    pass


class DueItemValidationError(MailSyncError):
    """Raised when a scheduled email or reminder is rejected on creation or update."""

    pass


class EmailNotFoundError(MailSyncError):
    """Raised when a mutation references an email not cached for the account."""

    def __init__(self, email_id: str, account_id: str | None = None):
        super().__init__(f"Email '{email_id}' not found for account '{account_id}'")
        self.email_id = email_id
        self.account_id = account_id
