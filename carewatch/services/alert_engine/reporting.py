"""Emergency report construction and fan-out to public services.

Each enabled service is contacted in priority order. A failure on one
service (e.g. police) is recorded and the remaining services are still
contacted.
"""
import logging
import uuid
from datetime import datetime
from typing import List, Optional, Sequence

from carewatch.shared.models import (
    Contact,
    EmergencyReport,
    PublicService,
    ReportResult,
    SubjectProfile,
)
from carewatch.shared.utils import hash_pii
from carewatch.services.audit_service import AuditLogger
from .collaborators import ConfirmationTransport, EmergencyContactChannel

logger = logging.getLogger(__name__)


class EmergencyReporter:
    """Builds emergency reports and hands them to outside services."""

    def __init__(
        self,
        channel: EmergencyContactChannel,
        enabled_services: Sequence[PublicService],
        clock,
        transport: Optional[ConfirmationTransport] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self.channel = channel
        self.enabled_services = tuple(enabled_services)
        self.clock = clock
        self.transport = transport
        self.audit_logger = audit_logger

    def build_report(
        self,
        user_id: str,
        profile: Optional[SubjectProfile],
        reported_by: List[Contact],
        minutes_silent: float,
        last_heartbeat_at: Optional[datetime],
        confirmation_request_id: Optional[str] = None,
    ) -> EmergencyReport:
        profile = profile or SubjectProfile(user_id=user_id)
        return EmergencyReport(
            report_id=f"EMERGENCY_{uuid.uuid4().hex[:12]}",
            user_id=user_id,
            user_name=profile.name,
            address=profile.address or "address unavailable",
            detail_address=profile.detail_address,
            blood_type=profile.blood_type,
            medical_conditions=list(profile.medical_conditions),
            medications=list(profile.medications),
            allergies=list(profile.allergies),
            emergency_contacts=list(profile.emergency_contacts),
            reported_by=list(reported_by),
            minutes_silent=minutes_silent,
            last_heartbeat_at=last_heartbeat_at,
            created_at=self.clock.now(),
            confirmation_request_id=confirmation_request_id,
        )

    def file_report(self, report: EmergencyReport) -> List[ReportResult]:
        """Send ``report`` to every enabled public service.

        Returns:
            One ReportResult per enabled service, in priority order
        """
        logger.critical(
            "EMERGENCY_REPORT_FILING",
            extra={
                "report_id": report.report_id,
                "user_id_hash": hash_pii(report.user_id),
                "services": [s.value for s in self.enabled_services],
                "inactive_hours": report.inactive_hours,
            }
        )

        results = [self._report_to(report, service) for service in self.enabled_services]

        logger.critical(
            "EMERGENCY_REPORT_FILED",
            extra={
                "report_id": report.report_id,
                "succeeded": sum(1 for r in results if r.success),
                "failed": sum(1 for r in results if not r.success),
            }
        )
        if self.audit_logger is not None:
            self.audit_logger.log_emergency_report(report, results)

        self._notify_reporters(report)
        return results

    def _report_to(self, report: EmergencyReport, service: PublicService) -> ReportResult:
        try:
            outcome = self.channel.report(report, service)
            success, detail = bool(outcome.success), outcome.detail
        except Exception as e:
            success, detail = False, f"{type(e).__name__}: {e}"

        if not success:
            logger.critical(
                "EMERGENCY_SERVICE_CONTACT_FAILED",
                extra={
                    "report_id": report.report_id,
                    "service": service.value,
                    "detail": detail,
                    "action": "MANUAL_FOLLOW_UP_REQUIRED",
                }
            )
        return ReportResult(
            service=service,
            success=success,
            detail=detail,
            timestamp=self.clock.now(),
        )

    def _notify_reporters(self, report: EmergencyReport) -> None:
        if self.transport is None:
            return
        for contact in report.reported_by:
            try:
                self.transport.notify_report_filed(contact.contact_id, report)
            except Exception as e:
                logger.warning(
                    "REPORT_FILED_NOTIFY_FAILED",
                    extra={
                        "report_id": report.report_id,
                        "contact_id": contact.contact_id,
                        "error": str(e),
                    }
                )
