"""Tests for engine configuration and threshold models."""
import pytest
from datetime import time, timedelta

from carewatch.shared.models import (
    AlertLevel,
    ContextualMultipliers,
    PublicService,
    QuietHours,
    ThresholdOverride,
    ThresholdSet,
)
from carewatch.shared.utils import configure_pii_salt
from carewatch.services.alert_engine.config import (
    ConfirmationConfig,
    EngineConfig,
)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


class TestDefaults:
    def test_engine_defaults(self):
        config = EngineConfig()

        assert config.thresholds == ThresholdSet(1440, 2880, 4320)
        assert config.multipliers == ContextualMultipliers(1.5, 0.8, 2.0)
        assert config.channel_timeout_seconds == 10.0
        assert config.retry.max_attempts == 3
        assert config.retry.capacity == 100
        assert config.escalation.recheck_delay == timedelta(hours=1)
        assert config.confirmation.window == timedelta(minutes=30)
        assert config.confirmation.early_exit_window == timedelta(minutes=15)
        assert config.confirmation.enabled_services == (
            PublicService.MEDICAL,
            PublicService.POLICE,
        )

    def test_cooldowns_decrease_with_severity(self):
        cooldowns = EngineConfig().suppression.cooldowns
        ordered = [cooldowns[level] for level in sorted(AlertLevel)]
        assert ordered == sorted(ordered, reverse=True)

    def test_early_window_must_be_shorter(self):
        with pytest.raises(ValueError):
            ConfirmationConfig(window=timedelta(minutes=15), early_exit_window=timedelta(minutes=15))


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("CAREWATCH_EMERGENCY_MINUTES", "3000")
        monkeypatch.setenv("CAREWATCH_WEEKEND_MULTIPLIER", "1.2")
        monkeypatch.setenv("CAREWATCH_TIMEZONE", "Asia/Seoul")
        monkeypatch.setenv("CAREWATCH_REPORT_SERVICES", "medical, administrative")
        monkeypatch.setenv("CAREWATCH_CONFIRMATION_WINDOW_MINUTES", "20")
        monkeypatch.setenv("CAREWATCH_CONFIRMATION_EARLY_MINUTES", "10")

        config = EngineConfig.from_env()

        assert config.thresholds.emergency_minutes == 3000
        assert config.multipliers.weekend == 1.2
        assert config.calendar.timezone == "Asia/Seoul"
        assert config.confirmation.enabled_services == (
            PublicService.MEDICAL,
            PublicService.ADMINISTRATIVE,
        )
        assert config.confirmation.window == timedelta(minutes=20)

    def test_defaults_without_environment(self, monkeypatch):
        for name in ("CAREWATCH_EMERGENCY_MINUTES", "CAREWATCH_REPORT_SERVICES"):
            monkeypatch.delenv(name, raising=False)

        config = EngineConfig.from_env()

        assert config.thresholds.emergency_minutes == 4320
        assert config.confirmation.enabled_services == (
            PublicService.MEDICAL,
            PublicService.POLICE,
        )


class TestThresholdModels:
    def test_levels_are_ordered(self):
        assert AlertLevel.NORMAL < AlertLevel.WARNING < AlertLevel.DANGER < AlertLevel.EMERGENCY
        assert max([AlertLevel.DANGER, AlertLevel.WARNING]) == AlertLevel.DANGER

    def test_misordered_thresholds_rejected(self):
        with pytest.raises(ValueError):
            ThresholdSet(warning_minutes=3000, danger_minutes=2880, emergency_minutes=4320)

    def test_override_keeps_missing_values(self):
        merged = ThresholdOverride(danger_minutes=2000).apply_to(ThresholdSet())
        assert merged == ThresholdSet(1440, 2000, 4320)

    def test_non_positive_multiplier_rejected(self):
        with pytest.raises(ValueError):
            ContextualMultipliers(night=0)


class TestQuietHoursModel:
    def test_overnight_range_is_half_open(self):
        quiet = QuietHours(start=time(22, 0), end=time(7, 0))
        assert quiet.contains(time(22, 0)) is True
        assert quiet.contains(time(6, 59)) is True
        assert quiet.contains(time(7, 0)) is False

    def test_daytime_range(self):
        quiet = QuietHours(start=time(13, 0), end=time(15, 0))
        assert quiet.contains(time(14, 0)) is True
        assert quiet.contains(time(16, 0)) is False

    def test_empty_range_never_contains(self):
        assert QuietHours(start=time(8, 0), end=time(8, 0)).contains(time(8, 0)) is False
