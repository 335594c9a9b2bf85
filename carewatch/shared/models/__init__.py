"""Shared domain models for the CareWatch engine."""
from .alerts import (
    AlertLevel,
    HeartbeatRecord,
    ThresholdSet,
    ThresholdOverride,
    ContextualMultipliers,
    CalendarContext,
    QuietHours,
    SubjectAlertSettings,
    AlertEvent,
    Contact,
    SubjectProfile,
)
from .reports import (
    PublicService,
    ConfirmationDecision,
    ConfirmationStatus,
    ConfirmationRequest,
    EmergencyReport,
    ReportResult,
)

__all__ = [
    "AlertLevel",
    "HeartbeatRecord",
    "ThresholdSet",
    "ThresholdOverride",
    "ContextualMultipliers",
    "CalendarContext",
    "QuietHours",
    "SubjectAlertSettings",
    "AlertEvent",
    "Contact",
    "SubjectProfile",
    "PublicService",
    "ConfirmationDecision",
    "ConfirmationStatus",
    "ConfirmationRequest",
    "EmergencyReport",
    "ReportResult",
]
