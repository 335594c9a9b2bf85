"""Alert Engine configuration and silence thresholds.

Defaults mirror the admin settings shipped with the mobile app:
24h / 48h / 72h of silence for warning / danger / emergency.
"""
import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, FrozenSet, Tuple

from carewatch.shared.models import (
    AlertLevel,
    ContextualMultipliers,
    PublicService,
    ThresholdSet,
)


# Month-day holidays (fixed-date public holidays plus lunar-calendar
# examples). Admin tooling may supply a different set per installation.
DEFAULT_HOLIDAYS: FrozenSet[str] = frozenset({
    "01-01",                    # New Year's Day
    "02-09", "02-10", "02-11",  # Lunar New Year (example dates)
    "03-01",                    # Independence Movement Day
    "05-05",                    # Children's Day
    "06-06",                    # Memorial Day
    "08-15",                    # Liberation Day
    "09-16", "09-17", "09-18",  # Chuseok (example dates)
    "10-03",                    # National Foundation Day
    "10-09",                    # Hangul Day
    "12-25",                    # Christmas
})

# Minimum spacing between two fired alerts of the same level.
# Strictly decreasing with severity so emergencies re-fire soonest.
DEFAULT_COOLDOWNS: Dict[AlertLevel, timedelta] = {
    AlertLevel.NORMAL: timedelta(hours=24),
    AlertLevel.WARNING: timedelta(hours=12),
    AlertLevel.DANGER: timedelta(hours=8),
    AlertLevel.EMERGENCY: timedelta(hours=6),
}

# Priority order for outside reports
DEFAULT_ENABLED_SERVICES: Tuple[PublicService, ...] = (
    PublicService.MEDICAL,
    PublicService.POLICE,
)


@dataclass(frozen=True)
class CalendarConfig:
    """How the evaluation instant is mapped onto a calendar context."""
    timezone: str = "UTC"
    night_start_hour: int = 22   # 22:00 inclusive
    night_end_hour: int = 6      # through 06:59
    holidays: FrozenSet[str] = DEFAULT_HOLIDAYS


@dataclass(frozen=True)
class SuppressionConfig:
    """Duplicate, activity and rate-limit rules."""
    cooldowns: Dict[AlertLevel, timedelta] = field(
        default_factory=lambda: dict(DEFAULT_COOLDOWNS)
    )
    activity_freshness_minutes: int = 5
    default_max_alerts_per_hour: int = 5
    history_retention: timedelta = timedelta(hours=24)

    def __post_init__(self):
        ordered = [self.cooldowns[level] for level in sorted(AlertLevel)]
        if any(a <= b for a, b in zip(ordered, ordered[1:])):
            raise ValueError("Cooldowns must strictly decrease with severity")


@dataclass(frozen=True)
class RetryConfig:
    sweep_interval: timedelta = timedelta(seconds=30)
    base_delay: timedelta = timedelta(seconds=30)
    max_attempts: int = 3
    capacity: int = 100


@dataclass(frozen=True)
class EscalationConfig:
    recheck_delay: timedelta = timedelta(hours=1)
    emergency_contact_from_level: int = 2


@dataclass(frozen=True)
class ConfirmationConfig:
    """Double-confirmation protocol windows."""
    window: timedelta = timedelta(minutes=30)
    early_exit_window: timedelta = timedelta(minutes=15)
    max_contacts: int = 3
    peer_report_lookback_hours: int = 24
    motion_lookback_minutes: int = 72 * 60
    enabled_services: Tuple[PublicService, ...] = DEFAULT_ENABLED_SERVICES

    def __post_init__(self):
        if not timedelta(0) < self.early_exit_window < self.window:
            raise ValueError("Early-exit window must be shorter than the full window")


@dataclass(frozen=True)
class EngineConfig:
    """Every tunable of the alert engine."""
    thresholds: ThresholdSet = field(default_factory=ThresholdSet)
    multipliers: ContextualMultipliers = field(default_factory=ContextualMultipliers)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    suppression: SuppressionConfig = field(default_factory=SuppressionConfig)
    channel_timeout_seconds: float = 10.0
    retry: RetryConfig = field(default_factory=RetryConfig)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    confirmation: ConfirmationConfig = field(default_factory=ConfirmationConfig)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build config from ``CAREWATCH_*`` environment variables."""
        services = os.getenv("CAREWATCH_REPORT_SERVICES")
        enabled_services = (
            tuple(PublicService(s.strip()) for s in services.split(",") if s.strip())
            if services else DEFAULT_ENABLED_SERVICES
        )
        return cls(
            thresholds=ThresholdSet(
                warning_minutes=float(os.getenv("CAREWATCH_WARNING_MINUTES", "1440")),
                danger_minutes=float(os.getenv("CAREWATCH_DANGER_MINUTES", "2880")),
                emergency_minutes=float(os.getenv("CAREWATCH_EMERGENCY_MINUTES", "4320")),
            ),
            multipliers=ContextualMultipliers(
                weekend=float(os.getenv("CAREWATCH_WEEKEND_MULTIPLIER", "1.5")),
                night=float(os.getenv("CAREWATCH_NIGHT_MULTIPLIER", "0.8")),
                holiday=float(os.getenv("CAREWATCH_HOLIDAY_MULTIPLIER", "2.0")),
            ),
            calendar=CalendarConfig(
                timezone=os.getenv("CAREWATCH_TIMEZONE", "UTC"),
            ),
            channel_timeout_seconds=float(os.getenv("CAREWATCH_CHANNEL_TIMEOUT_SECONDS", "10")),
            retry=RetryConfig(
                max_attempts=int(os.getenv("CAREWATCH_RETRY_MAX_ATTEMPTS", "3")),
                capacity=int(os.getenv("CAREWATCH_RETRY_CAPACITY", "100")),
            ),
            escalation=EscalationConfig(
                recheck_delay=timedelta(
                    minutes=int(os.getenv("CAREWATCH_ESCALATION_DELAY_MINUTES", "60"))
                ),
            ),
            confirmation=ConfirmationConfig(
                window=timedelta(
                    minutes=int(os.getenv("CAREWATCH_CONFIRMATION_WINDOW_MINUTES", "30"))
                ),
                early_exit_window=timedelta(
                    minutes=int(os.getenv("CAREWATCH_CONFIRMATION_EARLY_MINUTES", "15"))
                ),
                enabled_services=enabled_services,
            ),
        )
