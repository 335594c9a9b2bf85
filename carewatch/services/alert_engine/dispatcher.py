"""Notification dispatcher - ordered channel fallback.

Channels are tried strictly in priority order and dispatch stops at the
first success. A channel that raises, reports failure, or does not
answer within its timeout counts as failed for this attempt. When every
channel fails the event is handed to the retry queue instead of being
dropped.

Failure Handling:
    - Channel failures are recoverable and never raise to the caller
    - Every attempt is recorded on the DispatchResult
"""
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from carewatch.shared.models import AlertEvent
from carewatch.shared.utils import hash_pii
from .collaborators import Channel, ChannelResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelAttempt:
    channel: str
    success: bool
    detail: str
    attempted_at: datetime


@dataclass
class DispatchResult:
    event_id: str
    attempts: List[ChannelAttempt] = field(default_factory=list)
    retry_enqueued: bool = False

    @property
    def success(self) -> bool:
        return any(a.success for a in self.attempts)

    @property
    def delivered_via(self) -> Optional[str]:
        for attempt in self.attempts:
            if attempt.success:
                return attempt.channel
        return None

    def to_payload(self) -> dict:
        return {
            "event_id": self.event_id,
            "success": self.success,
            "delivered_via": self.delivered_via,
            "retry_enqueued": self.retry_enqueued,
            "attempts": [
                {"channel": a.channel, "success": a.success, "detail": a.detail}
                for a in self.attempts
            ],
        }


class NotificationDispatcher:
    """Delivers alert events over an ordered list of channels."""

    def __init__(
        self,
        channels: Sequence[Channel],
        clock,
        channel_timeout_seconds: float = 10.0,
        on_all_failed: Optional[Callable[[AlertEvent], bool]] = None,
    ):
        """Initialize dispatcher.

        Args:
            channels: Channels in priority order
            clock: Clock used to timestamp attempts
            channel_timeout_seconds: Per-channel timeout in seconds
            on_all_failed: Called with the event when every channel failed;
                returns True if the event was queued for retry
        """
        self.channels = list(channels)
        self.clock = clock
        self.channel_timeout_seconds = channel_timeout_seconds
        self.on_all_failed = on_all_failed
        self._executor = self._new_executor()

        logger.info(
            "NOTIFICATION_DISPATCHER_INITIALIZED",
            extra={
                "channels": [c.name for c in self.channels],
                "channel_timeout_seconds": channel_timeout_seconds,
            }
        )

    def dispatch(self, event: AlertEvent, enqueue_on_failure: bool = True) -> DispatchResult:
        """Deliver ``event`` on the first channel that accepts it.

        Args:
            event: Allowed alert event
            enqueue_on_failure: Hand the event to the retry queue when every
                channel fails (retries themselves pass False)

        Returns:
            DispatchResult with one attempt per channel tried
        """
        result = DispatchResult(event_id=event.event_id)

        for channel in self.channels:
            outcome = self._send_with_timeout(channel, event)
            result.attempts.append(ChannelAttempt(
                channel=channel.name,
                success=outcome.success,
                detail=outcome.detail,
                attempted_at=self.clock.now(),
            ))
            if outcome.success:
                logger.info(
                    "NOTIFICATION_DELIVERED",
                    extra={
                        "event_id": event.event_id,
                        "user_id_hash": hash_pii(event.user_id),
                        "level": event.level.value,
                        "channel": channel.name,
                        "attempted_channels": len(result.attempts),
                    }
                )
                return result

            logger.warning(
                "NOTIFICATION_CHANNEL_FAILED",
                extra={
                    "event_id": event.event_id,
                    "channel": channel.name,
                    "detail": outcome.detail,
                }
            )

        logger.error(
            "NOTIFICATION_ALL_CHANNELS_FAILED",
            extra={
                "event_id": event.event_id,
                "user_id_hash": hash_pii(event.user_id),
                "level": event.level.value,
                "channel_count": len(self.channels),
            }
        )
        if enqueue_on_failure and self.on_all_failed is not None:
            result.retry_enqueued = bool(self.on_all_failed(event))
        return result

    def _send_with_timeout(self, channel: Channel, event: AlertEvent) -> ChannelResult:
        future = self._executor.submit(channel.send, event)
        try:
            outcome = future.result(timeout=self.channel_timeout_seconds)
        except FutureTimeout:
            future.cancel()
            self._abandon_executor(channel)
            return ChannelResult(
                success=False,
                detail=f"timeout after {self.channel_timeout_seconds}s",
            )
        except Exception as e:
            return ChannelResult(success=False, detail=f"{type(e).__name__}: {e}")

        if not isinstance(outcome, ChannelResult):
            return ChannelResult(success=False, detail="invalid channel response")
        return outcome

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(
            max_workers=max(len(self.channels), 1),
            thread_name_prefix="carewatch-channel",
        )

    def _abandon_executor(self, channel: Channel) -> None:
        """Swap in a fresh pool; the hung call keeps only the old one busy."""
        hung = self._executor
        self._executor = self._new_executor()
        hung.shutdown(wait=False)
        logger.warning(
            "NOTIFICATION_CHANNEL_HUNG",
            extra={"channel": channel.name, "timeout_seconds": self.channel_timeout_seconds}
        )

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
