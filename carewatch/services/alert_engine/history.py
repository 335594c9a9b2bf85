"""Time-indexed alert history with lazy eviction.

Each subject keeps a deque of fired AlertEvents ordered by
``computed_at``. Entries older than the retention window are purged on
every access, so behavior never depends on a cleanup timer firing.
"""
from collections import deque
from datetime import datetime, timedelta
from typing import Deque, Dict, List, Optional

from carewatch.shared.models import AlertEvent, AlertLevel


class AlertHistory:
    """Bounded-lifetime record of fired alerts per subject."""

    def __init__(self, retention: timedelta = timedelta(hours=24)):
        self.retention = retention
        self._events: Dict[str, Deque[AlertEvent]] = {}

    def _purge(self, user_id: str, now: datetime) -> Deque[AlertEvent]:
        events = self._events.get(user_id)
        if events is None:
            return deque()
        cutoff = now - self.retention
        while events and events[0].computed_at <= cutoff:
            events.popleft()
        if not events:
            del self._events[user_id]
        return events

    def append(self, event: AlertEvent) -> None:
        self._purge(event.user_id, event.computed_at)
        self._events.setdefault(event.user_id, deque()).append(event)

    def recent(self, user_id: str, now: datetime) -> List[AlertEvent]:
        return list(self._purge(user_id, now))

    def last_of_level(
        self, user_id: str, level: AlertLevel, now: datetime
    ) -> Optional[AlertEvent]:
        for event in reversed(self._purge(user_id, now)):
            if event.level == level:
                return event
        return None

    def count_since(self, user_id: str, since: datetime, now: datetime) -> int:
        return sum(1 for e in self._purge(user_id, now) if e.computed_at > since)

    def subject_count(self) -> int:
        return len(self._events)
