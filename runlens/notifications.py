"""
Refresh notifications.

Live dashboards subscribe to hear about freshly recomputed metrics.
A notification is sent only when a value was actually recomputed, never
for cache hits.

A misbehaving subscriber is logged and skipped. It cannot fail the
computation that triggered the notification, and it cannot stop other
subscribers from being told.
"""

import logging
import threading
from typing import Any, Callable, List


logger = logging.getLogger(__name__)

Subscriber = Callable[[str, Any], None]


class RefreshNotifier:
    """Fan-out of (cache key, value) refresh events to subscribers."""

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register a callback.

        Returns:
            Function that removes the subscription when called
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def notify(self, key: str, value: Any) -> int:
        """
        Deliver a refresh to every subscriber.

        Returns:
            Number of subscribers that accepted the notification
        """
        with self._lock:
            subscribers = list(self._subscribers)

        delivered = 0
        for callback in subscribers:
            try:
                callback(key, value)
                delivered += 1
            except Exception:
                logger.exception(f"[Notifier] subscriber failed for {key}")
        return delivered
