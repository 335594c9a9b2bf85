"""Tests for AlertLevelCalculator and calendar context derivation."""
import pytest
from datetime import datetime, timedelta, timezone

from carewatch.shared.models import (
    AlertLevel,
    CalendarContext,
    ContextualMultipliers,
    ThresholdOverride,
    ThresholdSet,
)
from carewatch.shared.utils import configure_pii_salt
from carewatch.services.alert_engine.calculator import (
    AlertLevelCalculator,
    HeartbeatUnavailableError,
    calendar_context_for,
    minutes_between,
)
from carewatch.services.alert_engine.config import CalendarConfig


NOW = datetime(2026, 1, 14, 12, 0, tzinfo=timezone.utc)   # Wednesday


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@pytest.fixture
def calculator():
    return AlertLevelCalculator(ThresholdSet(), ContextualMultipliers())


def silent_for(minutes: float) -> datetime:
    return NOW - timedelta(minutes=minutes)


class TestLevelBoundaries:
    def test_exact_emergency_threshold_is_emergency(self, calculator):
        assert calculator.calculate(silent_for(4320), NOW) == AlertLevel.EMERGENCY

    def test_one_minute_short_is_danger(self, calculator):
        assert calculator.calculate(silent_for(4319), NOW) == AlertLevel.DANGER

    @pytest.mark.parametrize("minutes,expected", [
        (0, AlertLevel.NORMAL),
        (1439, AlertLevel.NORMAL),
        (1440, AlertLevel.WARNING),
        (2879, AlertLevel.WARNING),
        (2880, AlertLevel.DANGER),
        (10000, AlertLevel.EMERGENCY),
    ])
    def test_levels(self, calculator, minutes, expected):
        assert calculator.calculate(silent_for(minutes), NOW) == expected

    def test_monotonic_in_silence(self, calculator):
        levels = [
            calculator.calculate(silent_for(m), NOW)
            for m in range(0, 6000, 60)
        ]
        assert all(a <= b for a, b in zip(levels, levels[1:]))

    def test_future_heartbeat_counts_as_no_silence(self, calculator):
        assert calculator.calculate(NOW + timedelta(hours=1), NOW) == AlertLevel.NORMAL
        assert minutes_between(NOW + timedelta(hours=1), NOW) == 0.0


class TestMissingHeartbeat:
    def test_missing_timestamp_raises(self, calculator):
        with pytest.raises(HeartbeatUnavailableError):
            calculator.calculate(None, NOW)

    def test_unavailable_is_a_value_error(self):
        assert issubclass(HeartbeatUnavailableError, ValueError)


class TestMultipliers:
    def test_weekend_slows_escalation(self, calculator):
        weekend = CalendarContext(is_weekend=True)
        # 4320 * 1.5 = 6480
        assert calculator.calculate(silent_for(4320), NOW, weekend) == AlertLevel.DANGER
        assert calculator.calculate(silent_for(6480), NOW, weekend) == AlertLevel.EMERGENCY

    def test_night_speeds_escalation(self, calculator):
        night = CalendarContext(is_night=True)
        # 4320 * 0.8 = 3456
        assert calculator.calculate(silent_for(3456), NOW, night) == AlertLevel.EMERGENCY

    def test_multipliers_compose_multiplicatively(self, calculator):
        both = calculator.effective_thresholds(CalendarContext(is_weekend=True, is_holiday=True))
        assert both.emergency_minutes == pytest.approx(4320 * 1.5 * 2.0)
        assert both.warning_minutes == pytest.approx(1440 * 1.5 * 2.0)

    def test_weekend_and_night_raise_more_than_either(self):
        calculator = AlertLevelCalculator(
            ThresholdSet(), ContextualMultipliers(weekend=1.5, night=1.25)
        )
        weekend = calculator.effective_thresholds(CalendarContext(is_weekend=True))
        night = calculator.effective_thresholds(CalendarContext(is_night=True))
        both = calculator.effective_thresholds(CalendarContext(is_weekend=True, is_night=True))

        assert both.emergency_minutes > weekend.emergency_minutes
        assert both.emergency_minutes > night.emergency_minutes
        assert both.emergency_minutes == pytest.approx(4320 * 1.5 * 1.25)

    def test_no_context_leaves_thresholds(self, calculator):
        assert calculator.effective_thresholds(CalendarContext()) == ThresholdSet()


class TestOverride:
    def test_override_replaces_present_values(self, calculator):
        override = ThresholdOverride(emergency_minutes=3000)
        assert calculator.calculate(silent_for(3000), NOW, override=override) == AlertLevel.EMERGENCY
        assert calculator.calculate(silent_for(2880), NOW, override=override) == AlertLevel.DANGER

    def test_override_then_multiplier(self, calculator):
        override = ThresholdOverride(warning_minutes=600)
        thresholds = calculator.effective_thresholds(CalendarContext(is_weekend=True), override)
        assert thresholds.warning_minutes == pytest.approx(900)
        assert thresholds.danger_minutes == pytest.approx(2880 * 1.5)

    def test_misordered_override_rejected(self, calculator):
        with pytest.raises(ValueError):
            calculator.effective_thresholds(
                CalendarContext(), ThresholdOverride(warning_minutes=5000)
            )


class TestCalendarContext:
    def test_weekday_midday(self):
        context = calendar_context_for(NOW, CalendarConfig())
        assert context == CalendarContext()

    def test_saturday_night(self):
        moment = datetime(2026, 1, 17, 23, 30, tzinfo=timezone.utc)
        context = calendar_context_for(moment, CalendarConfig())
        assert context.is_weekend is True
        assert context.is_night is True

    def test_night_window_wraps(self):
        config = CalendarConfig()
        early = datetime(2026, 1, 14, 6, 59, tzinfo=timezone.utc)
        seven = datetime(2026, 1, 14, 7, 0, tzinfo=timezone.utc)
        assert calendar_context_for(early, config).is_night is True
        assert calendar_context_for(seven, config).is_night is False

    def test_holiday(self):
        moment = datetime(2026, 12, 25, 12, 0, tzinfo=timezone.utc)
        assert calendar_context_for(moment, CalendarConfig()).is_holiday is True

    def test_local_timezone_applied(self):
        # 14:00 UTC is 23:00 in Seoul
        moment = datetime(2026, 1, 14, 14, 0, tzinfo=timezone.utc)
        context = calendar_context_for(moment, CalendarConfig(timezone="Asia/Seoul"))
        assert context.is_night is True
