"""Change notification hook for consumers of the local cache.

The engine never imports anything from the presentation layer. Instead,
anything that wants to react to new data (a web socket push, a UI cache
invalidation, a desktop notification) subscribes a callback here.

Usage:
    from mailsync.core.events import ChangeNotifier, StoreEvent

    notifier = ChangeNotifier()
    notifier.subscribe(lambda event: print(event.kind, event.account_id))
    notifier.publish(StoreEvent(kind="emails_changed", account_id="abc"))
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from mailsync.core.logging import get_logger

logger = get_logger(__name__)

EventKind = Literal[
    "emails_changed",
    "account_status",
    "reminder_due",
    "scheduled_email_sent",
    "newsletters_detected",
]


@dataclass(frozen=True)
class StoreEvent:
    """A notification that some cached data for an account changed."""

    kind: EventKind
    account_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))


Subscriber = Callable[[StoreEvent], None]


class ChangeNotifier:
    """Fan-out of StoreEvents to registered callbacks.

    A failing subscriber is logged and skipped; it never affects the
    publisher or the other subscribers.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback.

        Returns:
            A function that removes the subscription when called
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: StoreEvent) -> None:
        """Deliver an event to every subscriber."""
        with self._lock:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.warning(
                    "change_subscriber_failed",
                    kind=event.kind,
                    account_id=event.account_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
