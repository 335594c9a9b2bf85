"""Alert level calculation from silence duration.

Pure functions of their inputs: no clock reads, no history, no I/O.
"""
import logging
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from carewatch.shared.models import (
    AlertLevel,
    CalendarContext,
    ContextualMultipliers,
    ThresholdOverride,
    ThresholdSet,
)
from .config import CalendarConfig

logger = logging.getLogger(__name__)


class HeartbeatUnavailableError(ValueError):
    """Raised when silence cannot be measured for a subject."""


def minutes_between(earlier: datetime, later: datetime) -> float:
    """Minutes elapsed from ``earlier`` to ``later``, floored at zero."""
    return max((later - earlier).total_seconds() / 60.0, 0.0)


def calendar_context_for(moment: datetime, calendar: CalendarConfig) -> CalendarContext:
    """Derive weekend / night / holiday flags for an instant.

    The instant is converted to the installation's local timezone first;
    night wraps midnight (22:00 through 06:59 by default).
    """
    local = moment.astimezone(ZoneInfo(calendar.timezone)) if moment.tzinfo else moment
    hour = local.hour
    if calendar.night_start_hour > calendar.night_end_hour:
        is_night = hour >= calendar.night_start_hour or hour <= calendar.night_end_hour
    else:
        is_night = calendar.night_start_hour <= hour <= calendar.night_end_hour
    return CalendarContext(
        is_weekend=local.weekday() >= 5,
        is_night=is_night,
        is_holiday=local.strftime("%m-%d") in calendar.holidays,
    )


class AlertLevelCalculator:
    """Turns a silence duration into a severity level.

    Multipliers compose multiplicatively and apply to all three
    thresholds; a night-time weekend applies both in sequence.
    """

    def __init__(
        self,
        thresholds: ThresholdSet,
        multipliers: ContextualMultipliers,
    ):
        self.thresholds = thresholds
        self.multipliers = multipliers

    def effective_thresholds(
        self,
        calendar: CalendarContext,
        override: Optional[ThresholdOverride] = None,
    ) -> ThresholdSet:
        """Thresholds after per-user override and calendar multipliers."""
        base = override.apply_to(self.thresholds) if override else self.thresholds
        factor = 1.0
        if calendar.is_weekend:
            factor *= self.multipliers.weekend
        if calendar.is_night:
            factor *= self.multipliers.night
        if calendar.is_holiday:
            factor *= self.multipliers.holiday
        return base.scaled(factor) if factor != 1.0 else base

    def level_for_minutes(self, minutes_silent: float, thresholds: ThresholdSet) -> AlertLevel:
        """Highest level whose threshold is <= the silence (ties go up)."""
        if minutes_silent >= thresholds.emergency_minutes:
            return AlertLevel.EMERGENCY
        if minutes_silent >= thresholds.danger_minutes:
            return AlertLevel.DANGER
        if minutes_silent >= thresholds.warning_minutes:
            return AlertLevel.WARNING
        return AlertLevel.NORMAL

    def calculate(
        self,
        last_heartbeat_at: Optional[datetime],
        now: datetime,
        calendar: Optional[CalendarContext] = None,
        override: Optional[ThresholdOverride] = None,
    ) -> AlertLevel:
        """Classify the silence since ``last_heartbeat_at``.

        Args:
            last_heartbeat_at: Timestamp of the most recent heartbeat
            now: Evaluation instant
            calendar: Calendar flags; no multipliers apply when omitted
            override: Per-user threshold override

        Returns:
            AlertLevel for the silence

        Raises:
            HeartbeatUnavailableError: If ``last_heartbeat_at`` is missing
        """
        if not isinstance(last_heartbeat_at, datetime):
            raise HeartbeatUnavailableError("No heartbeat timestamp to evaluate")

        minutes_silent = minutes_between(last_heartbeat_at, now)
        thresholds = self.effective_thresholds(calendar or CalendarContext(), override)
        return self.level_for_minutes(minutes_silent, thresholds)
