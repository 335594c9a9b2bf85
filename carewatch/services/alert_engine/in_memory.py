"""In-process collaborator implementations.

Used by the HTTP handler for local development and by tests. Stores are
plain dicts; outbound collaborators only log what they would send.
"""
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from carewatch.shared.models import (
    AlertEvent,
    ConfirmationRequest,
    Contact,
    EmergencyReport,
    HeartbeatRecord,
    SubjectAlertSettings,
    SubjectProfile,
)
from carewatch.shared.utils import hash_pii
from carewatch.services.audit_service import AuditLogger
from .collaborators import (
    ActivitySource,
    AdminNotifier,
    Channel,
    ChannelResult,
    ConfirmationLog,
    ConfirmationTransport,
    ContactDirectory,
    ErrorReporter,
    HeartbeatSource,
    PeerReportSource,
    ProfileSource,
    ThresholdStore,
)

logger = logging.getLogger(__name__)


class InMemoryHeartbeatSource(HeartbeatSource):
    def __init__(self):
        self._latest: Dict[str, HeartbeatRecord] = {}

    def record(self, user_id: str, timestamp: datetime) -> HeartbeatRecord:
        """Store a heartbeat; older timestamps never replace newer ones."""
        current = self._latest.get(user_id)
        if current is None or current.timestamp is None or timestamp >= current.timestamp:
            self._latest[user_id] = HeartbeatRecord(user_id=user_id, timestamp=timestamp)
        return self._latest[user_id]

    def get_latest(self, user_id: str) -> Optional[HeartbeatRecord]:
        return self._latest.get(user_id)

    def user_ids(self) -> List[str]:
        return list(self._latest)


class _TimestampLog:
    """Per-user list of observation times, queried against a clock."""

    def __init__(self, clock):
        self.clock = clock
        self._seen: Dict[str, List[datetime]] = defaultdict(list)

    def add(self, user_id: str, at: Optional[datetime] = None) -> None:
        self._seen[user_id].append(at or self.clock.now())

    def any_since(self, user_id: str, window: timedelta) -> bool:
        cutoff = self.clock.now() - window
        return any(t >= cutoff for t in self._seen.get(user_id, ()))


class InMemoryActivitySource(ActivitySource):
    def __init__(self, clock):
        self._log = _TimestampLog(clock)

    def record_activity(self, user_id: str, at: Optional[datetime] = None) -> None:
        self._log.add(user_id, at)

    def has_recent_activity(self, user_id: str, within_minutes: int) -> bool:
        return self._log.any_since(user_id, timedelta(minutes=within_minutes))


class InMemoryPeerReportSource(PeerReportSource):
    def __init__(self, clock):
        self._log = _TimestampLog(clock)

    def record_peer_report(self, user_id: str, at: Optional[datetime] = None) -> None:
        self._log.add(user_id, at)

    def has_recent_peer_report(self, user_id: str, within_hours: int) -> bool:
        return self._log.any_since(user_id, timedelta(hours=within_hours))


class InMemoryThresholdStore(ThresholdStore):
    def __init__(self, settings: Optional[Dict[str, SubjectAlertSettings]] = None):
        self._settings = dict(settings or {})

    def put(self, user_id: str, settings: SubjectAlertSettings) -> None:
        self._settings[user_id] = settings

    def get(self, user_id: str) -> SubjectAlertSettings:
        return self._settings.get(user_id) or SubjectAlertSettings()


class InMemoryContactDirectory(ContactDirectory):
    def __init__(self, contacts: Optional[Dict[str, List[Contact]]] = None):
        self._contacts = {k: list(v) for k, v in (contacts or {}).items()}

    def put(self, user_id: str, contacts: List[Contact]) -> None:
        self._contacts[user_id] = list(contacts)

    def get_contacts(self, user_id: str) -> List[Contact]:
        return list(self._contacts.get(user_id, []))


class InMemoryProfileSource(ProfileSource):
    def __init__(self, profiles: Optional[Dict[str, SubjectProfile]] = None):
        self._profiles = dict(profiles or {})

    def put(self, profile: SubjectProfile) -> None:
        self._profiles[profile.user_id] = profile

    def get_profile(self, user_id: str) -> Optional[SubjectProfile]:
        return self._profiles.get(user_id)


class LoggingChannel(Channel):
    """Channel that accepts every event and logs it."""

    def __init__(self, name: str = "log"):
        self.name = name

    def send(self, event: AlertEvent) -> ChannelResult:
        logger.warning(
            "ALERT_NOTIFICATION",
            extra={
                "channel": self.name,
                "event_id": event.event_id,
                "user_id_hash": hash_pii(event.user_id),
                "level": event.level.value,
                "minutes_silent": round(event.minutes_silent, 1),
            }
        )
        return ChannelResult(success=True, detail="logged")


class LoggingConfirmationTransport(ConfirmationTransport):
    def request(self, contact_id: str, request: ConfirmationRequest) -> None:
        logger.info(
            "CONFIRMATION_REQUEST_SENT",
            extra={"contact_id": contact_id, "request_id": request.request_id}
        )

    def request_peer_check(self, contact_id: str, user_id: str) -> None:
        logger.info(
            "PEER_CHECK_SENT",
            extra={"contact_id": contact_id, "user_id_hash": hash_pii(user_id)}
        )

    def request_consent(self, user_id: str) -> None:
        logger.info(
            "CONSENT_REQUEST_SENT",
            extra={"user_id_hash": hash_pii(user_id)}
        )

    def notify_report_filed(self, contact_id: str, report: EmergencyReport) -> None:
        logger.info(
            "REPORT_FILED_NOTICE_SENT",
            extra={"contact_id": contact_id, "report_id": report.report_id}
        )


class LoggingAdminNotifier(AdminNotifier):
    def notify_escalation(self, notice) -> None:
        logger.critical(
            "ADMIN_ESCALATION_NOTICE",
            extra={
                "notice_id": notice.notice_id,
                "user_id_hash": hash_pii(notice.user_id),
                "escalation_level": notice.escalation_level,
                "contacts_emergency_services": notice.contacts_emergency_services,
            }
        )


class AuditConfirmationLog(ConfirmationLog):
    """Writes terminal confirmation requests to the audit trail."""

    def __init__(self, audit_logger: AuditLogger):
        self.audit_logger = audit_logger

    def record(self, request: ConfirmationRequest) -> None:
        self.audit_logger.log_confirmation(request)


class AuditErrorReporter(ErrorReporter):
    """Writes permanent delivery failures to the audit trail."""

    def __init__(self, audit_logger: AuditLogger):
        self.audit_logger = audit_logger

    def report_permanent_failure(self, item) -> None:
        self.audit_logger.log_delivery_failure(item)
