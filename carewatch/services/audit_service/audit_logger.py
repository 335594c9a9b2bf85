"""Audit logger - immutable trail of every emergency-path action.

Confirmation outcomes, escalation steps, outside reports and permanent
delivery failures are appended to a hash chain so that a later review
can prove nothing was altered or removed.
"""
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from carewatch.shared.utils import hash_pii

logger = logging.getLogger(__name__)


class AuditAction(Enum):
    """Actions that require audit logging."""
    # Confirmation protocol
    CONFIRMATION_RESOLVED = "confirmation_resolved"

    # Escalation
    ESCALATION_ADVANCED = "escalation_advanced"
    ESCALATION_RESOLVED = "escalation_resolved"

    # Outside reports
    EMERGENCY_REPORT_FILED = "emergency_report_filed"

    # Delivery
    NOTIFICATION_PERMANENTLY_FAILED = "notification_permanently_failed"


class AuditEntity(Enum):
    """Entity types for audit logging."""
    SUBJECT = "subject"
    ALERT_EVENT = "alert_event"
    CONFIRMATION_REQUEST = "confirmation_request"
    EMERGENCY_REPORT = "emergency_report"


@dataclass(frozen=True)
class AuditEntry:
    """Immutable audit log entry."""
    entry_id: str
    timestamp: datetime
    action: AuditAction
    entity_type: AuditEntity
    entity_id: str
    actor_id: str
    actor_role: str
    details: Dict[str, Any] = field(default_factory=dict)
    previous_hash: str = ""  # Chain to previous entry for verification
    entry_hash: str = ""

    def compute_hash(self) -> str:
        """SHA-256 over every field except ``entry_hash`` itself."""
        content = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "details": self.details,
            "previous_hash": self.previous_hash,
        }
        content_str = json.dumps(content, sort_keys=True, default=str)
        return hashlib.sha256(content_str.encode()).hexdigest()


class AuditLogger:
    """Appends audit entries to an in-process hash chain.

    Subject identifiers are stored hashed; contact and request ids are
    stored as-is.
    """

    def __init__(self, clock=None):
        """Initialize audit logger.

        Args:
            clock: Object with ``now()``; defaults to the system UTC clock
        """
        self.clock = clock
        self._entries: List[AuditEntry] = []
        self._last_hash: str = "genesis"

        logger.info("AUDIT_LOGGER_INITIALIZED")

    def _now(self) -> datetime:
        return self.clock.now() if self.clock else datetime.now(timezone.utc)

    def __len__(self) -> int:
        return len(self._entries)

    def log(
        self,
        action: AuditAction,
        entity_type: AuditEntity,
        entity_id: str,
        actor_id: str = "system",
        actor_role: str = "system",
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Append an audit entry.

        Args:
            action: Action being audited
            entity_type: Type of entity being acted upon
            entity_id: Identifier of entity (hashed if it names a subject)
            actor_id: Who performed the action
            actor_role: Role of actor (system, contact, admin)
            details: Additional context

        Returns:
            Created AuditEntry
        """
        unsigned = AuditEntry(
            entry_id=f"audit_{uuid.uuid4().hex[:16]}",
            timestamp=self._now(),
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=actor_id,
            actor_role=actor_role,
            details=details or {},
            previous_hash=self._last_hash,
        )
        entry_hash = unsigned.compute_hash()
        entry = AuditEntry(
            entry_id=unsigned.entry_id,
            timestamp=unsigned.timestamp,
            action=unsigned.action,
            entity_type=unsigned.entity_type,
            entity_id=unsigned.entity_id,
            actor_id=unsigned.actor_id,
            actor_role=unsigned.actor_role,
            details=unsigned.details,
            previous_hash=unsigned.previous_hash,
            entry_hash=entry_hash,
        )

        self._entries.append(entry)
        self._last_hash = entry_hash

        logger.info(
            "AUDIT_ENTRY_CREATED",
            extra={
                "entry_id": entry.entry_id,
                "action": action.value,
                "entity_type": entity_type.value,
                "actor_role": actor_role,
                "entry_hash": entry_hash[:16],  # Truncated for logs
            }
        )
        return entry

    def log_confirmation(self, request) -> AuditEntry:
        """Record a confirmation request that reached a terminal status."""
        tally = request.tally()
        return self.log(
            action=AuditAction.CONFIRMATION_RESOLVED,
            entity_type=AuditEntity.CONFIRMATION_REQUEST,
            entity_id=request.request_id,
            details={
                "user_id_hash": hash_pii(request.subject_user_id),
                "status": request.status.value,
                "reason": request.resolution_reason,
                "contact_ids": list(request.contact_ids),
                "responses": {k: v.value for k, v in request.responses.items()},
                "confirm_count": tally["confirm"],
                "deny_count": tally["deny"],
                "created_at": request.created_at.isoformat(),
                "resolved_at": request.resolved_at.isoformat() if request.resolved_at else None,
            },
        )

    def log_escalation(
        self,
        action: AuditAction,
        user_id: str,
        escalation_level: int,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        entry_details = dict(details or {})
        entry_details["escalation_level"] = escalation_level
        return self.log(
            action=action,
            entity_type=AuditEntity.SUBJECT,
            entity_id=hash_pii(user_id),
            details=entry_details,
        )

    def log_emergency_report(self, report, results) -> AuditEntry:
        """Record an outside report and every per-service outcome."""
        return self.log(
            action=AuditAction.EMERGENCY_REPORT_FILED,
            entity_type=AuditEntity.EMERGENCY_REPORT,
            entity_id=report.report_id,
            details={
                "user_id_hash": hash_pii(report.user_id),
                "confirmation_request_id": report.confirmation_request_id,
                "inactive_hours": report.inactive_hours,
                "results": [
                    {
                        "service": r.service.value,
                        "success": r.success,
                        "detail": r.detail,
                        "timestamp": r.timestamp.isoformat(),
                    }
                    for r in results
                ],
            },
        )

    def log_delivery_failure(self, item) -> AuditEntry:
        """Record an alert whose delivery attempts were exhausted."""
        event = item.alert_event
        return self.log(
            action=AuditAction.NOTIFICATION_PERMANENTLY_FAILED,
            entity_type=AuditEntity.ALERT_EVENT,
            entity_id=event.event_id,
            details={
                "user_id_hash": hash_pii(event.user_id),
                "level": event.level.value,
                "attempts": item.attempt,
                "max_attempts": item.max_attempts,
            },
        )

    def verify_chain(self) -> bool:
        """Verify integrity of the audit chain.

        Returns:
            True if chain is valid, False if tampered
        """
        expected_prev = "genesis"
        for entry in self._entries:
            if entry.previous_hash != expected_prev:
                logger.critical(
                    "AUDIT_CHAIN_VERIFICATION_FAILED",
                    extra={
                        "entry_id": entry.entry_id,
                        "expected_prev": expected_prev[:16],
                        "actual_prev": entry.previous_hash[:16],
                    }
                )
                return False

            if entry.compute_hash() != entry.entry_hash:
                logger.critical(
                    "AUDIT_ENTRY_HASH_MISMATCH",
                    extra={"entry_id": entry.entry_id}
                )
                return False

            expected_prev = entry.entry_hash

        return True

    def query(
        self,
        entity_type: Optional[AuditEntity] = None,
        entity_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        since: Optional[datetime] = None,
    ) -> List[AuditEntry]:
        """Filter audit entries; every argument is optional."""
        results = self._entries
        if entity_type:
            results = [e for e in results if e.entity_type == entity_type]
        if entity_id:
            results = [e for e in results if e.entity_id == entity_id]
        if action:
            results = [e for e in results if e.action == action]
        if since:
            results = [e for e in results if e.timestamp >= since]
        return list(results)
