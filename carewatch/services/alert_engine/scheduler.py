"""Cooperative timer scheduling for the alert engine.

Every wait in the engine (quiet-hours replay, retry backoff, escalation
re-checks, confirmation windows) is a scheduled callback keyed by a
token of the form ``"<subject>:<purpose>"``. Nothing blocks: callbacks
run when the periodic trigger calls ``run_pending()``.
"""
import heapq
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class Clock(ABC):
    """Source of the current time (timezone-aware UTC)."""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock(Clock):
    """Clock that only moves when told to. Used by tests and replays."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2026, 1, 14, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> datetime:
        self._now = self._now + delta
        return self._now

    def set(self, moment: datetime) -> None:
        self._now = moment


def subject_token(user_id: str, purpose: str) -> str:
    """Build the scheduler token for one subject and purpose."""
    return f"{user_id}:{purpose}"


@dataclass(order=True)
class _ScheduledTask:
    due_at: datetime
    sequence: int
    token: str = field(compare=False)
    callback: Callable[[], None] = field(compare=False)
    cancelled: bool = field(default=False, compare=False)


class TaskScheduler:
    """Single-threaded timer wheel with cancellation by token.

    Scheduling a token that is already pending replaces the previous
    task, so a subject+purpose pair never has two live timers.
    """

    def __init__(self, clock: Clock):
        self.clock = clock
        self._heap: List[_ScheduledTask] = []
        self._by_token: Dict[str, _ScheduledTask] = {}
        self._sequence = itertools.count()

    def after(self, delay: timedelta, token: str, callback: Callable[[], None]) -> datetime:
        """Schedule ``callback`` to run once ``delay`` has elapsed.

        Returns:
            The due time of the task
        """
        if delay < timedelta(0):
            delay = timedelta(0)
        self.cancel(token)
        task = _ScheduledTask(
            due_at=self.clock.now() + delay,
            sequence=next(self._sequence),
            token=token,
            callback=callback,
        )
        heapq.heappush(self._heap, task)
        self._by_token[token] = task

        logger.debug(
            "TASK_SCHEDULED",
            extra={"token_purpose": token.rsplit(":", 1)[-1], "due_at": task.due_at.isoformat()}
        )
        return task.due_at

    def cancel(self, token: str) -> bool:
        """Cancel a pending task. Returns True if one was pending."""
        task = self._by_token.pop(token, None)
        if task is None:
            return False
        task.cancelled = True
        return True

    def cancel_prefix(self, prefix: str) -> int:
        """Cancel every pending task whose token starts with ``prefix``."""
        tokens = [t for t in self._by_token if t.startswith(prefix)]
        for token in tokens:
            self.cancel(token)
        return len(tokens)

    def is_scheduled(self, token: str) -> bool:
        return token in self._by_token

    def due_at(self, token: str) -> Optional[datetime]:
        task = self._by_token.get(token)
        return task.due_at if task else None

    @property
    def pending_count(self) -> int:
        return len(self._by_token)

    def run_pending(self) -> int:
        """Run every task whose due time has passed, in due-time order.

        Tasks scheduled by a running callback that are already due run in
        the same pass. A failing callback is logged and does not stop the
        remaining tasks.

        Returns:
            Number of callbacks executed
        """
        executed = 0
        while self._heap and self._heap[0].due_at <= self.clock.now():
            task = heapq.heappop(self._heap)
            if task.cancelled:
                continue
            if self._by_token.get(task.token) is task:
                del self._by_token[task.token]
            executed += 1
            try:
                task.callback()
            except Exception as e:
                logger.error(
                    "SCHEDULED_TASK_FAILED",
                    extra={
                        "token_purpose": task.token.rsplit(":", 1)[-1],
                        "error": str(e),
                        "error_type": type(e).__name__,
                    }
                )
        return executed
