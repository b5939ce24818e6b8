"""Microsoft Graph API client with retry logic and error classification.

One GraphClient serves one account. It is synchronous (requests); the engine
calls it through asyncio.to_thread().

Error mapping:
- 429, or 503 with Retry-After -> RateLimitedError (never retried here; the
  scheduler owns the wait)
- 410, SyncStateNotFound/resyncRequired -> CursorInvalidError
- 401 -> TokenExpiredTransient (the sync cycle refreshes and retries once)
- other 4xx -> PermanentRemoteError
- 5xx, timeouts, connection errors -> retried with jitter, then
  GraphAPIError / TransientNetworkError

Usage:
    from mailsync.graph.client import GraphClient

    client = GraphClient(access_token, account_id="abc")
    me = client.get("/me")
"""

import random
import time
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import requests

from mailsync.core.errors import (
    CursorInvalidError,
    GraphAPIError,
    PermanentRemoteError,
    RateLimitedError,
    TokenExpiredTransient,
    TransientNetworkError,
)
from mailsync.core.logging import get_logger
from mailsync.core.rate_limiter import get_bucket

logger = get_logger(__name__)

# Microsoft Graph API base URL
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

# Default retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAYS = [1.0, 2.0, 4.0]  # Exponential backoff delays in seconds

# Microsoft Graph allows 10,000 requests per 10 minutes per app per mailbox
MS_GRAPH_RATE = 10.0  # requests per second
MS_GRAPH_CAPACITY = 10  # burst capacity

# Used when a throttling response carries no usable Retry-After
DEFAULT_RETRY_AFTER_SECONDS = 60.0

# Error codes meaning a delta link can no longer be resumed
CURSOR_INVALID_CODES = frozenset({"SyncStateNotFound", "SyncStateInvalid", "resyncRequired"})


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header given in seconds or as an HTTP date.

    Returns:
        Seconds to wait (never negative), or None when the value is unusable
    """
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=UTC)
    now = now or datetime.now(UTC)
    return max((retry_at - now).total_seconds(), 0.0)


class GraphClient:
    """Microsoft Graph API client for a single account.

    Attributes:
        account_id: Local account ID (used for logging and the rate bucket)
        base_url: Microsoft Graph API base URL
        max_retries: Retry attempts for 5xx and network errors
        retry_delays: Delay (seconds) before each retry, ±20% jitter applied
    """

    def __init__(
        self,
        access_token: str,
        account_id: str = "default",
        base_url: str = GRAPH_BASE_URL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delays: list[float] | None = None,
        rate: float = MS_GRAPH_RATE,
        session: requests.Session | None = None,
    ):
        self.access_token = access_token
        self.account_id = account_id
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delays = retry_delays or DEFAULT_RETRY_DELAYS
        self.session = session or requests.Session()

        # Graph throttles per mailbox, so each account gets its own bucket
        self._rate_bucket = get_bucket(
            name=f"ms_graph:{account_id}",
            rate=rate,
            capacity=MS_GRAPH_CAPACITY,
        )

    def set_access_token(self, access_token: str) -> None:
        """Swap in a freshly refreshed access token."""
        self.access_token = access_token

    def _get_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            # Message IDs survive folder moves
            "Prefer": 'IdType="ImmutableId"',
        }

    def _make_url(self, endpoint: str) -> str:
        if endpoint.startswith("http"):
            return endpoint  # @odata.nextLink / @odata.deltaLink
        if not endpoint.startswith("/"):
            endpoint = "/" + endpoint
        return self.base_url + endpoint

    def _handle_error_response(
        self, response: requests.Response, method: str, endpoint: str
    ) -> None:
        """Raise the exception matching a non-success response."""
        try:
            error_info = response.json().get("error", {})
            error_code = error_info.get("code", "unknown")
            error_message = error_info.get("message", response.text)
        except ValueError:
            error_code = "unknown"
            error_message = response.text or f"HTTP {response.status_code}"

        status = response.status_code
        retry_after = parse_retry_after(response.headers.get("Retry-After"))

        logger.warning(
            "graph_api_error",
            account_id=self.account_id,
            method=method,
            endpoint=endpoint[:120],
            status_code=status,
            error_code=error_code,
            error_message=error_message[:200],
        )

        if status == 429 or (status == 503 and response.headers.get("Retry-After")):
            wait = retry_after if retry_after is not None else DEFAULT_RETRY_AFTER_SECONDS
            raise RateLimitedError(
                f"Microsoft Graph throttled the request ({status}). "
                f"Retry after {wait:.0f} seconds.",
                retry_after=wait,
                status_code=status,
            )
        if status == 410 or error_code in CURSOR_INVALID_CODES:
            raise CursorInvalidError(f"Delta link can no longer be resumed: {error_message}")
        if status == 401:
            raise TokenExpiredTransient(
                f"Access token rejected (401): {error_message}",
                account_id=self.account_id,
            )
        if status == 403:
            raise PermanentRemoteError(
                f"Permission denied (403): {error_message}. "
                "Check that the required API permissions are granted in Azure Portal.",
                status_code=403,
                error_code=error_code,
            )
        if status == 404:
            raise PermanentRemoteError(
                f"Resource not found (404): {error_message}",
                status_code=404,
                error_code=error_code,
            )
        if 400 <= status < 500:
            raise PermanentRemoteError(
                f"Graph API rejected the request ({status}): {error_message}",
                status_code=status,
                error_code=error_code,
            )
        raise GraphAPIError(
            f"Graph API error ({status}): {error_message}",
            status_code=status,
            error_code=error_code,
        )

    def _retry_delay(self, attempt: int) -> float:
        base_delay = self.retry_delays[min(attempt, len(self.retry_delays) - 1)]
        # ±20% jitter to prevent retry storms
        return base_delay + base_delay * 0.2 * (2 * random.random() - 1)

    def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        timeout: float = 30.0,
    ) -> dict[str, Any]:
        """Make an HTTP request to the Graph API.

        Returns:
            Parsed JSON response ({} for 202/204)

        Raises:
            RateLimitedError: Throttled by the provider or the local bucket
            CursorInvalidError: Delta link expired
            TokenExpiredTransient: Access token rejected
            PermanentRemoteError: Non-retryable 4xx
            GraphAPIError: 5xx after retries
            TransientNetworkError: Timeouts or connection failures after retries
        """
        url = self._make_url(endpoint)
        last_response: requests.Response | None = None

        for attempt in range(self.max_retries + 1):
            self._rate_bucket.consume_sync()

            try:
                response = self.session.request(
                    method=method,
                    url=url,
                    headers=self._get_headers(),
                    params=params,
                    json=json,
                    timeout=timeout,
                )
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                if attempt < self.max_retries:
                    delay = self._retry_delay(attempt)
                    logger.warning(
                        "graph_request_network_retry",
                        account_id=self.account_id,
                        method=method,
                        attempt=attempt + 1,
                        delay=delay,
                        error_type=type(e).__name__,
                    )
                    time.sleep(delay)
                    continue
                raise TransientNetworkError(
                    f"Connection to Microsoft Graph failed after {self.max_retries} retries: {e}. "
                    "Check your internet connection."
                ) from e

            last_response = response

            if response.status_code < 400:
                if response.status_code in (202, 204) or not response.content:
                    return {}
                return response.json()

            throttled = response.status_code == 429 or (
                response.status_code == 503 and response.headers.get("Retry-After")
            )
            if 500 <= response.status_code < 600 and not throttled and attempt < self.max_retries:
                delay = self._retry_delay(attempt)
                logger.warning(
                    "graph_request_server_retry",
                    account_id=self.account_id,
                    method=method,
                    status_code=response.status_code,
                    attempt=attempt + 1,
                    delay=delay,
                )
                time.sleep(delay)
                continue

            self._handle_error_response(response, method, endpoint)

        if last_response is not None:
            self._handle_error_response(last_response, method, endpoint)
        raise GraphAPIError(f"Request to {endpoint} failed after {self.max_retries} retries")

    def get(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        timeout: float = 30.0,
    ) -> dict[str, Any]:
        return self.request("GET", endpoint, params=params, timeout=timeout)

    def post(
        self,
        endpoint: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        timeout: float = 30.0,
    ) -> dict[str, Any]:
        return self.request("POST", endpoint, params=params, json=json, timeout=timeout)

    def patch(
        self,
        endpoint: str,
        json: dict[str, Any] | None = None,
        timeout: float = 30.0,
    ) -> dict[str, Any]:
        return self.request("PATCH", endpoint, json=json, timeout=timeout)

    def get_user_info(self) -> dict[str, Any]:
        """Get the signed-in user's profile (id, displayName, mail, userPrincipalName)."""
        return self.get("/me", params={"$select": "id,displayName,mail,userPrincipalName"})

    def paginate(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        max_pages: int | None = None,
    ) -> list[dict[str, Any]]:
        """Follow @odata.nextLink and collect every item."""
        all_items: list[dict[str, Any]] = []
        response = self.get(endpoint, params=params)
        page_count = 1

        while True:
            all_items.extend(response.get("value", []))
            next_url = response.get("@odata.nextLink")
            if not next_url or (max_pages and page_count >= max_pages):
                break
            response = self.get(next_url)
            page_count += 1

        return all_items

    # ------------------------------------------------------------------
    # Batch requests
    # ------------------------------------------------------------------

    BATCH_MAX_SIZE = 20  # Graph API limit per $batch POST

    def batch_request(self, operations: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Execute operations through $batch, 20 per POST.

        Each operation needs 'id', 'method' and 'url', and may carry 'body'.

        Returns:
            Response dicts ('id', 'status', 'body', 'headers'), sorted by id
        """
        if not operations:
            return []

        all_responses: list[dict[str, Any]] = []

        for chunk_start in range(0, len(operations), self.BATCH_MAX_SIZE):
            chunk = operations[chunk_start : chunk_start + self.BATCH_MAX_SIZE]

            requests_payload = []
            for op in chunk:
                req: dict[str, Any] = {"id": op["id"], "method": op["method"], "url": op["url"]}
                if op.get("body") is not None:
                    req["body"] = op["body"]
                    req["headers"] = {"Content-Type": "application/json"}
                requests_payload.append(req)

            response = self.post("/$batch", json={"requests": requests_payload})
            responses = response.get("responses", [])
            all_responses.extend(responses)

            logger.debug(
                "batch_request_complete",
                account_id=self.account_id,
                sent=len(chunk),
                received=len(responses),
            )

        all_responses.sort(key=lambda r: r.get("id", ""))
        return all_responses
