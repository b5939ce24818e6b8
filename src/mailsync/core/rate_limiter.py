"""Proactive rate limiting for Microsoft Graph requests.

A token bucket shared by every request a GraphClient makes. It keeps the
request rate under the provider's published limits so 429 responses are the
exception; when one does arrive, the sync scheduler's backoff takes over.

Graph allows 10,000 requests per 10 minutes per app per mailbox. Each
account gets its own bucket (keyed by account ID) because the limit is per
mailbox.
"""

import threading
import time

from mailsync.core.errors import RateLimitedError
from mailsync.core.logging import get_logger

logger = get_logger(__name__)

# Waits longer than this are handed back to the scheduler instead of blocking
MAX_BLOCKING_WAIT_SECONDS = 20.0


class TokenBucket:
    """Token bucket rate limiter implementation.

    Tokens are added at a fixed rate and each request consumes one. If no
    tokens are available the caller sleeps until one is. Thread-safe, since
    GraphClient requests run in worker threads via asyncio.to_thread().

    Example:
        limiter = TokenBucket(rate=10.0, capacity=10)
        limiter.consume_sync()  # blocks if needed
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: int = 1,
        initial_tokens: int | None = None,
    ):
        """Initialize a token bucket rate limiter.

        Args:
            rate: Token refill rate per second
            capacity: Maximum number of tokens in the bucket
            initial_tokens: Initial number of tokens in the bucket (defaults to capacity)
        """
        self.rate = rate
        self.capacity = capacity
        self.tokens: float = capacity if initial_tokens is None else initial_tokens
        self.last_refill = time.monotonic()
        self.sync_lock = threading.Lock()

    def consume_sync(self, tokens: int = 1) -> bool:
        """Consume tokens, sleeping until they are available.

        Args:
            tokens: Number of tokens to consume

        Returns:
            True if tokens were consumed

        Raises:
            RateLimitedError: If the wait would exceed MAX_BLOCKING_WAIT_SECONDS
        """
        if tokens > self.capacity:
            raise RateLimitedError(
                f"Requested tokens ({tokens}) exceed bucket capacity ({self.capacity})",
                retry_after=tokens / self.rate,
            )

        with self.sync_lock:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return True

            required_tokens = tokens - self.tokens
            wait_time = required_tokens / self.rate

            if wait_time > MAX_BLOCKING_WAIT_SECONDS:
                logger.warning(
                    "rate_limit_wait_too_long",
                    wait_time=wait_time,
                    tokens_needed=required_tokens,
                )
                raise RateLimitedError(
                    f"Local rate limit would require {wait_time:.2f}s wait",
                    retry_after=wait_time,
                )

        # Release lock during sleep
        logger.debug("rate_limit_waiting", wait_time=wait_time, tokens_needed=required_tokens)
        time.sleep(wait_time)

        with self.sync_lock:
            self._refill()
            # May go negative if another thread consumed the refill first
            self.tokens -= tokens
            return True

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now


_buckets: dict[str, TokenBucket] = {}
_buckets_lock = threading.Lock()


def get_bucket(name: str = "default", rate: float = 1.0, capacity: int = 1) -> TokenBucket:
    """Get or create a token bucket for the given name.

    Args:
        name: Bucket name/identifier
        rate: Token refill rate if creating a new bucket
        capacity: Token capacity if creating a new bucket

    Returns:
        TokenBucket instance
    """
    with _buckets_lock:
        if name not in _buckets:
            _buckets[name] = TokenBucket(rate=rate, capacity=capacity)
        return _buckets[name]


def reset_buckets() -> None:
    """Drop all buckets. Primarily for testing."""
    with _buckets_lock:
        _buckets.clear()
