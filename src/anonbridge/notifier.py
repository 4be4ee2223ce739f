from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List

from .models import ThreadChange


logger = logging.getLogger(__name__)

Callback = Callable[[ThreadChange], None]


@dataclass(eq=False)
class Subscription:
    subscriber_id: str
    thread_id: str
    callback: Callback

    def deliver(self, change: ThreadChange) -> None:
        self.callback(change)


class ChangeNotifier:
    """Fans committed thread changes out to subscribers, best effort.

    Delivery is at most once. A failing subscriber is logged and skipped; the
    publisher never sees the failure.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, subscriber_id: str, thread_id: str, callback: Callback) -> Subscription:
        subscription = Subscription(subscriber_id=subscriber_id, thread_id=thread_id, callback=callback)
        with self._lock:
            self._subscriptions.setdefault(thread_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(subscription.thread_id)
            if not subs:
                return
            try:
                subs.remove(subscription)
            except ValueError:
                return
            if not subs:
                self._subscriptions.pop(subscription.thread_id, None)

    def subscriber_count(self, thread_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(thread_id, []))

    def publish(self, change: ThreadChange) -> None:
        with self._lock:
            targets = list(self._subscriptions.get(change.thread_id, []))
        for subscription in targets:
            try:
                subscription.deliver(change)
            except Exception:
                logger.warning(
                    "dropping %s change for subscriber %s on thread %s",
                    change.change,
                    subscription.subscriber_id,
                    change.thread_id,
                    exc_info=True,
                )
