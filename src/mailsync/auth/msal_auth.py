"""MSAL token acquisition for Microsoft Graph accounts.

Two flows are supported:
- Device code flow, run once per account from the CLI ('mailsync add-account')
- Refresh token redemption, run by the CredentialStore whenever a cached
  access token is about to expire

Tokens are not kept in an MSAL cache file. The CredentialStore persists them
(encrypted) in the accounts table, so each account's tokens live next to the
account they belong to.

Usage:
    from mailsync.auth.msal_auth import MsalTokenClient

    client = MsalTokenClient(client_id="...", tenant_id="common", scopes=[...])
    result = client.device_code_login()
    refreshed = client.refresh(result["refresh_token"])
"""

import random
import time
from collections.abc import Callable
from typing import Any

import msal
import requests
from rich.console import Console
from rich.panel import Panel

from mailsync.core.errors import AuthenticationError, RefreshDeniedError, TransientNetworkError
from mailsync.core.logging import get_logger

logger = get_logger(__name__)
console = Console()

# Retry configuration for MSAL operations
MSAL_MAX_RETRIES = 3
MSAL_RETRY_DELAYS = [1.0, 2.0, 4.0]  # Exponential backoff with jitter

# MSAL error codes meaning the refresh token will never work again
REFRESH_DENIED_ERRORS = frozenset({"invalid_grant", "interaction_required", "consent_required"})

# MSAL reserves these and rejects them if passed explicitly
_RESERVED_SCOPES = frozenset({"openid", "profile", "offline_access"})


class MsalTokenClient:
    """Thin wrapper over msal.PublicClientApplication.

    Every call that touches the network is retried on transient failures
    (requests exceptions) with ±20% jitter. Errors returned by the identity
    provider are never retried.
    """

    def __init__(
        self,
        client_id: str,
        tenant_id: str,
        scopes: list[str],
        app: msal.PublicClientApplication | None = None,
    ):
        if not client_id or not client_id.strip():
            raise ValueError(
                "client_id is required. "
                "Register an app in Azure Portal: https://portal.azure.com → "
                "Microsoft Entra ID → App registrations → New registration"
            )

        self.client_id = client_id
        self.tenant_id = tenant_id
        self.scopes = [s for s in scopes if s not in _RESERVED_SCOPES]
        self.app = app or msal.PublicClientApplication(
            client_id=client_id,
            authority=f"https://login.microsoftonline.com/{tenant_id}",
        )

    def refresh(self, refresh_token: str) -> dict[str, Any]:
        """Redeem a refresh token for a new access token.

        Returns:
            MSAL token result (access_token, refresh_token, expires_in, ...)

        Raises:
            RefreshDeniedError: Token revoked or expired; the user must sign in
            TransientNetworkError: Token endpoint unreachable after retries
            AuthenticationError: Any other error reported by the provider
        """
        result = self._with_retry(
            lambda: self.app.acquire_token_by_refresh_token(refresh_token, scopes=self.scopes),
            "token_refresh",
        )

        if "access_token" in result:
            return result

        error = result.get("error", "unknown_error")
        description = result.get("error_description", "")
        if error in REFRESH_DENIED_ERRORS:
            logger.warning("refresh_token_denied", error=error)
            raise RefreshDeniedError(
                f"Refresh token rejected ({error}). Sign in again with 'mailsync add-account'."
            )

        logger.error("token_refresh_failed", error=error, description=description)
        raise AuthenticationError(f"Token refresh failed: {error}: {description}")

    def device_code_login(self) -> dict[str, Any]:
        """Run the interactive device code flow.

        Returns:
            MSAL token result including id_token_claims

        Raises:
            AuthenticationError: If the flow cannot start or the user does not
                complete it
            TransientNetworkError: If the identity provider is unreachable
        """
        flow = self._with_retry(
            lambda: self.app.initiate_device_flow(scopes=self.scopes),
            "device_flow_initiate",
        )

        if "user_code" not in flow:
            error_msg = flow.get("error_description", "Unknown error during flow initiation")
            logger.error("device_flow_initiation_failed", error=error_msg)
            raise AuthenticationError(
                f"Failed to initiate device code flow: {error_msg}. "
                "Check that 'Allow public client flows' is enabled in Azure Portal: "
                "App registrations → Your app → Authentication → Advanced settings"
            )

        self._display_auth_prompt(
            verification_uri=flow["verification_uri"],
            user_code=flow["user_code"],
        )

        result = self._with_retry(
            lambda: self.app.acquire_token_by_device_flow(flow),
            "device_flow_acquire",
        )

        if "access_token" not in result:
            error = result.get("error", "unknown_error")
            error_desc = result.get("error_description", "Authentication failed")

            if error == "authorization_pending":
                raise AuthenticationError(
                    "Authentication timed out. Please try again and complete the "
                    "sign-in process within the time limit."
                )
            if error == "authorization_declined":
                raise AuthenticationError(
                    "Authentication was declined. Please try again and accept "
                    "the permission request."
                )
            if "AADSTS7000218" in error_desc:
                raise AuthenticationError(
                    "Device code flow is not enabled for this application. "
                    "In Azure Portal: App registrations → Your app → Authentication → "
                    "Advanced settings → Set 'Allow public client flows' to Yes"
                )
            logger.error("device_flow_failed", error=error, description=error_desc)
            raise AuthenticationError(f"Authentication failed: {error_desc}")

        logger.info(
            "device_flow_complete",
            username=result.get("id_token_claims", {}).get("preferred_username", "unknown"),
        )
        return result

    def _with_retry(self, operation: Callable[[], dict[str, Any]], name: str) -> dict[str, Any]:
        """Run an MSAL call, retrying transient network errors."""
        last_error: Exception | None = None

        for attempt in range(MSAL_MAX_RETRIES):
            try:
                return operation()
            except requests.exceptions.RequestException as e:
                last_error = e
                if attempt < MSAL_MAX_RETRIES - 1:
                    delay = MSAL_RETRY_DELAYS[attempt]
                    jitter = delay * 0.2 * (2 * random.random() - 1)
                    actual_delay = delay + jitter
                    logger.warning(
                        "msal_request_retrying",
                        operation=name,
                        attempt=attempt + 1,
                        max_retries=MSAL_MAX_RETRIES,
                        delay=actual_delay,
                        error=str(e),
                    )
                    time.sleep(actual_delay)

        raise TransientNetworkError(
            f"{name} failed after {MSAL_MAX_RETRIES} attempts: {last_error}. "
            "Check your network connection."
        ) from last_error

    def _display_auth_prompt(self, verification_uri: str, user_code: str) -> None:
        panel_content = (
            f"To authenticate, open a browser and go to:\n\n"
            f"  [bold blue]{verification_uri}[/bold blue]\n\n"
            f"Enter this code: [bold green]{user_code}[/bold green]\n\n"
            f"Waiting for authentication..."
        )

        console.print()
        console.print(
            Panel(
                panel_content,
                title="Microsoft Authentication Required",
                border_style="bright_blue",
            )
        )
        console.print()
