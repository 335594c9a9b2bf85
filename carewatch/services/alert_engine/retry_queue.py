"""Retry queue - time-driven re-delivery of failed notifications.

A sweep runs on a fixed interval and re-dispatches every item whose
``next_attempt_at`` has elapsed. Delay grows linearly with the attempt
count. The queue is capped; when full, the oldest non-Emergency item
is evicted first.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from carewatch.shared.models import AlertEvent, AlertLevel
from carewatch.shared.utils import hash_pii
from .collaborators import ErrorReporter
from .config import RetryConfig
from .scheduler import TaskScheduler

logger = logging.getLogger(__name__)

SWEEP_TOKEN = "retry_queue:sweep"


@dataclass(eq=False)
class RetryItem:
    alert_event: AlertEvent
    attempt: int
    max_attempts: int
    next_attempt_at: datetime
    enqueued_at: datetime

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


class RetryQueue:
    """Bounded queue of alert events awaiting re-delivery."""

    def __init__(
        self,
        config: RetryConfig,
        scheduler: TaskScheduler,
        error_reporter: ErrorReporter,
    ):
        self.config = config
        self.scheduler = scheduler
        self.clock = scheduler.clock
        self.error_reporter = error_reporter
        self._items: List[RetryItem] = []
        self._redeliver: Optional[Callable[[AlertEvent], bool]] = None

    def bind(self, redeliver: Callable[[AlertEvent], bool]) -> None:
        """Attach the re-delivery function (returns True on success)."""
        self._redeliver = redeliver

    def __len__(self) -> int:
        return len(self._items)

    def items(self) -> List[RetryItem]:
        return list(self._items)

    def pending_for(self, user_id: str) -> int:
        return sum(1 for item in self._items if item.alert_event.user_id == user_id)

    def enqueue(self, event: AlertEvent) -> bool:
        """Queue a failed event for retry.

        Returns:
            True if the event is now queued
        """
        now = self.clock.now()
        if len(self._items) >= self.config.capacity:
            self._evict_one()

        self._items.append(RetryItem(
            alert_event=event,
            attempt=0,
            max_attempts=self.config.max_attempts,
            next_attempt_at=now + self.config.base_delay,
            enqueued_at=now,
        ))
        logger.info(
            "RETRY_ENQUEUED",
            extra={
                "event_id": event.event_id,
                "user_id_hash": hash_pii(event.user_id),
                "level": event.level.value,
                "queue_size": len(self._items),
            }
        )
        self.start()
        return True

    def _evict_one(self) -> None:
        victim = next(
            (i for i in self._items if i.alert_event.level != AlertLevel.EMERGENCY),
            self._items[0],
        )
        self._items.remove(victim)
        logger.warning(
            "RETRY_EVICTED",
            extra={
                "event_id": victim.alert_event.event_id,
                "level": victim.alert_event.level.value,
                "capacity": self.config.capacity,
            }
        )

    def discard_subject(self, user_id: str) -> int:
        """Drop every queued item for a subject (e.g. silence resolved)."""
        before = len(self._items)
        self._items = [i for i in self._items if i.alert_event.user_id != user_id]
        return before - len(self._items)

    def start(self) -> None:
        """Arm the periodic sweep if it is not already armed."""
        if not self.scheduler.is_scheduled(SWEEP_TOKEN):
            self.scheduler.after(self.config.sweep_interval, SWEEP_TOKEN, self._on_sweep)

    def _on_sweep(self) -> None:
        self.sweep()
        if self._items:
            self.start()

    def sweep(self) -> int:
        """Re-dispatch every due item.

        Returns:
            Number of items retried in this sweep
        """
        if self._redeliver is None:
            raise RuntimeError("RetryQueue is not bound to a dispatcher")

        now = self.clock.now()
        due = [item for item in self._items if item.next_attempt_at <= now]
        for item in due:
            if item not in self._items:
                continue
            delivered = self._redeliver(item.alert_event)
            if item not in self._items:
                # Discarded while redelivering (subject resolved)
                continue
            if delivered:
                self._items.remove(item)
                logger.info(
                    "RETRY_SUCCEEDED",
                    extra={"event_id": item.alert_event.event_id, "attempt": item.attempt + 1}
                )
                continue

            item.attempt += 1
            if item.exhausted:
                self._items.remove(item)
                self._report_permanent_failure(item)
            else:
                item.next_attempt_at = now + self.config.base_delay * (item.attempt + 1)
                logger.info(
                    "RETRY_RESCHEDULED",
                    extra={
                        "event_id": item.alert_event.event_id,
                        "attempt": item.attempt,
                        "next_attempt_at": item.next_attempt_at.isoformat(),
                    }
                )
        return len(due)

    def _report_permanent_failure(self, item: RetryItem) -> None:
        logger.critical(
            "NOTIFICATION_PERMANENTLY_FAILED",
            extra={
                "event_id": item.alert_event.event_id,
                "user_id_hash": hash_pii(item.alert_event.user_id),
                "level": item.alert_event.level.value,
                "attempts": item.attempt,
            }
        )
        try:
            self.error_reporter.report_permanent_failure(item)
        except Exception as e:
            logger.error(
                "ERROR_REPORTER_FAILED",
                extra={"event_id": item.alert_event.event_id, "error": str(e)}
            )
