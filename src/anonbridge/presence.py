from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict

from .models import Actor


ONLINE_MS = 5 * 60 * 1000
RECENTLY_ACTIVE_MS = 30 * 60 * 1000
TODAY_MS = 24 * 60 * 60 * 1000


class Availability(str, Enum):
    ONLINE = "online"
    RECENTLY_ACTIVE = "recently_active"
    TODAY = "today"
    OFFLINE = "offline"


def availability_tier(last_active_ms: int, now_ms: int) -> Availability:
    """Bucket recency of activity; a convenience view, not authoritative presence."""

    delta_ms = max(0, now_ms - last_active_ms)
    if delta_ms < ONLINE_MS:
        return Availability.ONLINE
    if delta_ms < RECENTLY_ACTIVE_MS:
        return Availability.RECENTLY_ACTIVE
    if delta_ms < TODAY_MS:
        return Availability.TODAY
    return Availability.OFFLINE


@dataclass(frozen=True)
class AvailableResponder:
    actor: Actor
    availability: Availability

    def to_api_dict(self) -> dict:
        body = self.actor.to_api_dict()
        # the responder id is what a requester passes to create a thread
        body["responder_id"] = self.actor.actor_id
        body["availability"] = self.availability.value
        return body


class FixedWindowRateLimiter:
    def __init__(self, limit: int, window_ms: int = 60_000) -> None:
        self.limit = limit
        self.window_ms = window_ms
        self._windows: Dict[str, tuple[int, int]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str, now_ms: int) -> bool:
        with self._lock:
            window_start, count = self._windows.get(key, (now_ms, 0))
            if now_ms - window_start >= self.window_ms:
                window_start, count = now_ms, 0
            count += 1
            self._windows[key] = (window_start, count)
            return count <= self.limit
