"""Suppression policy - decides whether a computed alert actually fires.

Decision order (first match wins):
1. Recent activity      -> suppress (false positive)
2. Same-level cooldown  -> suppress (duplicate)
3. Quiet hours          -> defer until quiet hours end (below Emergency)
4. Hourly rate limit    -> suppress
5. Otherwise            -> allow, and record in history
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from carewatch.shared.models import AlertEvent, AlertLevel, QuietHours, SubjectAlertSettings
from carewatch.shared.utils import hash_pii
from .config import SuppressionConfig
from .history import AlertHistory

logger = logging.getLogger(__name__)


class SuppressionOutcome(Enum):
    ALLOW = "allow"
    SUPPRESS_RECENT_ACTIVITY = "suppress_recent_activity"
    SUPPRESS_DUPLICATE = "suppress_duplicate"
    DEFER_QUIET_HOURS = "defer_quiet_hours"
    SUPPRESS_RATE_LIMIT = "suppress_rate_limit"


@dataclass(frozen=True)
class SuppressionDecision:
    outcome: SuppressionOutcome
    replay_at: Optional[datetime] = None   # Set only when deferred

    @property
    def allowed(self) -> bool:
        return self.outcome == SuppressionOutcome.ALLOW


def quiet_hours_end(quiet_hours: QuietHours, moment: datetime, tz: ZoneInfo) -> datetime:
    """Next instant at which ``quiet_hours`` end, as seen from ``moment``."""
    local = moment.astimezone(tz)
    end = local.replace(
        hour=quiet_hours.end.hour,
        minute=quiet_hours.end.minute,
        second=0,
        microsecond=0,
    )
    if end <= local:
        end += timedelta(days=1)
    return end.astimezone(moment.tzinfo)


class SuppressionPolicy:
    """Owns the alert history and applies the suppression rules."""

    def __init__(
        self,
        config: SuppressionConfig,
        timezone: str = "UTC",
        history: Optional[AlertHistory] = None,
    ):
        self.config = config
        self.tz = ZoneInfo(timezone)
        self.history = history or AlertHistory(retention=config.history_retention)

    def cooldown_for(self, level: AlertLevel) -> timedelta:
        return self.config.cooldowns[level]

    def in_quiet_hours(self, quiet_hours: Optional[QuietHours], moment: datetime) -> bool:
        if quiet_hours is None:
            return False
        return quiet_hours.contains(moment.astimezone(self.tz).time())

    def evaluate(
        self,
        candidate: AlertEvent,
        recent_activity: bool,
        settings: SubjectAlertSettings,
        now: Optional[datetime] = None,
    ) -> SuppressionDecision:
        """Decide whether ``candidate`` fires.

        Args:
            candidate: Alert computed for the subject
            recent_activity: Activity seen within the freshness window
            settings: Subject quiet hours and rate limit
            now: Decision instant (defaults to the candidate's time)

        Returns:
            SuppressionDecision; an allowed candidate is appended to history
        """
        now = now or candidate.computed_at
        user_id = candidate.user_id
        level = candidate.level

        if recent_activity:
            return self._decide(candidate, SuppressionOutcome.SUPPRESS_RECENT_ACTIVITY)

        previous = self.history.last_of_level(user_id, level, now)
        if previous is not None and now - previous.computed_at < self.cooldown_for(level):
            return self._decide(candidate, SuppressionOutcome.SUPPRESS_DUPLICATE)

        if level < AlertLevel.EMERGENCY and self.in_quiet_hours(settings.quiet_hours, now):
            return self._decide(
                candidate,
                SuppressionOutcome.DEFER_QUIET_HOURS,
                replay_at=quiet_hours_end(settings.quiet_hours, now, self.tz),
            )

        limit = settings.max_alerts_per_hour or self.config.default_max_alerts_per_hour
        fired_last_hour = self.history.count_since(user_id, now - timedelta(hours=1), now)
        if fired_last_hour >= limit:
            return self._decide(candidate, SuppressionOutcome.SUPPRESS_RATE_LIMIT)

        self.history.append(candidate)
        return self._decide(candidate, SuppressionOutcome.ALLOW)

    def _decide(
        self,
        candidate: AlertEvent,
        outcome: SuppressionOutcome,
        replay_at: Optional[datetime] = None,
    ) -> SuppressionDecision:
        logger.info(
            "ALERT_ALLOWED" if outcome == SuppressionOutcome.ALLOW else "ALERT_SUPPRESSED",
            extra={
                "event_id": candidate.event_id,
                "user_id_hash": hash_pii(candidate.user_id),
                "level": candidate.level.value,
                "outcome": outcome.value,
                "replay_at": replay_at.isoformat() if replay_at else None,
            }
        )
        return SuppressionDecision(outcome=outcome, replay_at=replay_at)
