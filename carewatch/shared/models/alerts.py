"""Alert level and silence-monitoring domain models.

This file defines the core enums and data structures shared by the
alert engine. Everything here is immutable once created: heartbeats and
threshold sets belong to external collaborators, alert events belong to
the engine history.
"""
from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from typing import List, Optional


class AlertLevel(Enum):
    """Severity classification of a silence duration.

    Totally ordered by ``rank``; comparisons use the rank, not the value.
    """
    NORMAL = "normal"
    WARNING = "warning"
    DANGER = "danger"
    EMERGENCY = "emergency"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    def __lt__(self, other):
        if not isinstance(other, AlertLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, AlertLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, AlertLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, AlertLevel):
            return NotImplemented
        return self.rank >= other.rank


_LEVEL_RANK = {
    AlertLevel.NORMAL: 0,
    AlertLevel.WARNING: 1,
    AlertLevel.DANGER: 2,
    AlertLevel.EMERGENCY: 3,
}


@dataclass(frozen=True)
class HeartbeatRecord:
    """Most recent liveness signal observed for a subject."""
    user_id: str
    timestamp: Optional[datetime]


@dataclass(frozen=True)
class ThresholdSet:
    """Minutes of silence at which each alert level starts."""
    warning_minutes: float = 1440     # 24 hours
    danger_minutes: float = 2880      # 48 hours
    emergency_minutes: float = 4320   # 72 hours

    def __post_init__(self):
        if not 0 < self.warning_minutes <= self.danger_minutes <= self.emergency_minutes:
            raise ValueError(
                "Thresholds must be positive and ordered warning <= danger <= emergency, "
                f"got {self.warning_minutes}/{self.danger_minutes}/{self.emergency_minutes}"
            )

    def scaled(self, factor: float) -> "ThresholdSet":
        """Return a copy with every threshold multiplied by ``factor``."""
        return ThresholdSet(
            warning_minutes=self.warning_minutes * factor,
            danger_minutes=self.danger_minutes * factor,
            emergency_minutes=self.emergency_minutes * factor,
        )


@dataclass(frozen=True)
class ThresholdOverride:
    """Per-user replacement for any of the installation thresholds.

    ``None`` leaves the installation default in place.
    """
    warning_minutes: Optional[float] = None
    danger_minutes: Optional[float] = None
    emergency_minutes: Optional[float] = None

    def apply_to(self, base: ThresholdSet) -> ThresholdSet:
        return ThresholdSet(
            warning_minutes=(
                self.warning_minutes if self.warning_minutes is not None
                else base.warning_minutes
            ),
            danger_minutes=(
                self.danger_minutes if self.danger_minutes is not None
                else base.danger_minutes
            ),
            emergency_minutes=(
                self.emergency_minutes if self.emergency_minutes is not None
                else base.emergency_minutes
            ),
        )


@dataclass(frozen=True)
class ContextualMultipliers:
    """Multiplicative threshold adjustments for calendar context.

    Values above 1.0 slow escalation down (e.g. weekends), values below
    1.0 speed it up (e.g. night time).
    """
    weekend: float = 1.5
    night: float = 0.8
    holiday: float = 2.0

    def __post_init__(self):
        for name in ("weekend", "night", "holiday"):
            if getattr(self, name) <= 0:
                raise ValueError(f"Multiplier '{name}' must be positive")


@dataclass(frozen=True)
class CalendarContext:
    """Calendar facts about the evaluation instant."""
    is_weekend: bool = False
    is_night: bool = False
    is_holiday: bool = False


@dataclass(frozen=True)
class QuietHours:
    """Local time-of-day range during which non-critical alerts wait.

    The range is half-open ``[start, end)``; ``start > end`` wraps past
    midnight (e.g. 22:00-07:00).
    """
    start: time
    end: time
    enabled: bool = True

    def contains(self, moment: time) -> bool:
        if not self.enabled or self.start == self.end:
            return False
        moment = moment.replace(second=0, microsecond=0, tzinfo=None)
        if self.start < self.end:
            return self.start <= moment < self.end
        return moment >= self.start or moment < self.end


@dataclass(frozen=True)
class SubjectAlertSettings:
    """Per-user alert settings returned by the threshold store."""
    threshold_override: Optional[ThresholdOverride] = None
    quiet_hours: Optional[QuietHours] = None
    max_alerts_per_hour: int = 5


@dataclass(frozen=True)
class AlertEvent:
    """A fired (or candidate) notification about a silent subject."""
    event_id: str
    user_id: str
    level: AlertLevel
    computed_at: datetime
    minutes_silent: float

    def to_payload(self) -> dict:
        return {
            "event_id": self.event_id,
            "user_id": self.user_id,
            "level": self.level.value,
            "computed_at": self.computed_at.isoformat(),
            "minutes_silent": round(self.minutes_silent, 1),
        }


@dataclass(frozen=True)
class Contact:
    """A person watching over a subject (friend, family member)."""
    contact_id: str
    name: str = ""
    phone: Optional[str] = None


@dataclass(frozen=True)
class SubjectProfile:
    """Subject details needed to file an outside emergency report."""
    user_id: str
    name: str = ""
    address: str = ""
    detail_address: str = ""
    blood_type: str = "unknown"
    medical_conditions: List[str] = field(default_factory=list)
    medications: List[str] = field(default_factory=list)
    allergies: List[str] = field(default_factory=list)
    emergency_contacts: List[Contact] = field(default_factory=list)
    emergency_contact_consent: Optional[bool] = None
