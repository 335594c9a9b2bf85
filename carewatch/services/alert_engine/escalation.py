"""Escalation scheduler - repeated response to sustained Emergency silence.

State machine per subject:

    IDLE --emergency alert--> ARMED --recheck, still emergency--> ESCALATED(n+1)
      ^                         |                                   |
      |                         +-------fresh heartbeat-------------+--> RESOLVED

Each re-check is a single scheduled task keyed ``"<subject>:escalation"``.
A re-check carries the generation it was armed with; a resolved or
re-armed subject never acts on a stale callback.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional

from carewatch.shared.models import AlertLevel
from carewatch.shared.utils import hash_pii
from carewatch.services.audit_service import AuditAction, AuditLogger
from .collaborators import AdminNotifier
from .config import EscalationConfig
from .scheduler import TaskScheduler, subject_token

logger = logging.getLogger(__name__)


class EscalationState(Enum):
    IDLE = "idle"
    ARMED = "armed"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


@dataclass
class EscalationRecord:
    """Mutable escalation state for one subject."""
    user_id: str
    state: EscalationState = EscalationState.IDLE
    level: int = 0
    generation: int = 0
    armed_at: Optional[datetime] = None
    last_escalated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    next_check_at: Optional[datetime] = None

    @property
    def active(self) -> bool:
        return self.state in (EscalationState.ARMED, EscalationState.ESCALATED)


@dataclass(frozen=True)
class EscalationNotice:
    """Payload delivered to administrators on each escalation step."""
    notice_id: str
    user_id: str
    escalation_level: int
    escalated_at: datetime
    contacts_emergency_services: bool


class EscalationScheduler:
    """Arms, advances and resolves escalation for silent subjects."""

    def __init__(
        self,
        config: EscalationConfig,
        scheduler: TaskScheduler,
        admin_notifier: AdminNotifier,
        level_probe: Callable[[str], Optional[AlertLevel]],
        emergency_contact: Callable[[str, EscalationNotice], None],
        audit_logger: Optional[AuditLogger] = None,
    ):
        """Initialize scheduler.

        Args:
            config: Re-check delay and emergency-contact threshold
            scheduler: Shared task scheduler
            admin_notifier: Receives every escalation notice
            level_probe: Re-evaluates a subject's current level (None when
                it cannot be evaluated)
            emergency_contact: Invoked from the configured escalation level
            audit_logger: Optional audit trail
        """
        self.config = config
        self.scheduler = scheduler
        self.clock = scheduler.clock
        self.admin_notifier = admin_notifier
        self.level_probe = level_probe
        self.emergency_contact = emergency_contact
        self.audit_logger = audit_logger
        self._records: Dict[str, EscalationRecord] = {}

    def record_for(self, user_id: str) -> EscalationRecord:
        return self._records.get(user_id) or EscalationRecord(user_id=user_id)

    def arm(self, user_id: str) -> EscalationRecord:
        """Start watching a subject after an allowed Emergency alert.

        Already armed or escalated subjects keep their pending re-check.
        """
        record = self._records.setdefault(user_id, EscalationRecord(user_id=user_id))
        if record.active:
            return record

        record.state = EscalationState.ARMED
        record.level = 0
        record.armed_at = self.clock.now()
        record.resolved_at = None
        self._schedule_recheck(record)

        logger.warning(
            "ESCALATION_ARMED",
            extra={
                "user_id_hash": hash_pii(user_id),
                "next_check_at": record.next_check_at.isoformat(),
            }
        )
        return record

    def resolve(self, user_id: str, reason: str = "fresh_heartbeat") -> bool:
        """Stop escalating a subject and cancel its pending re-check.

        Returns:
            True if the subject was armed or escalated
        """
        record = self._records.get(user_id)
        if record is None or not record.active:
            return False

        self.scheduler.cancel(subject_token(user_id, "escalation"))
        record.state = EscalationState.RESOLVED
        record.generation += 1
        record.resolved_at = self.clock.now()
        record.next_check_at = None

        logger.info(
            "ESCALATION_RESOLVED",
            extra={
                "user_id_hash": hash_pii(user_id),
                "escalation_level": record.level,
                "reason": reason,
            }
        )
        if self.audit_logger is not None:
            self.audit_logger.log_escalation(
                action=AuditAction.ESCALATION_RESOLVED,
                user_id=user_id,
                escalation_level=record.level,
                details={"reason": reason},
            )
        return True

    def _schedule_recheck(self, record: EscalationRecord) -> None:
        record.generation += 1
        generation = record.generation
        record.next_check_at = self.scheduler.after(
            self.config.recheck_delay,
            subject_token(record.user_id, "escalation"),
            lambda: self._on_recheck(record.user_id, generation),
        )

    def _on_recheck(self, user_id: str, generation: int) -> None:
        record = self._records.get(user_id)
        if record is None or not record.active or record.generation != generation:
            logger.info(
                "ESCALATION_RECHECK_STALE",
                extra={"user_id_hash": hash_pii(user_id), "generation": generation}
            )
            return

        try:
            level = self.level_probe(user_id)
        except Exception as e:
            logger.error(
                "ESCALATION_RECHECK_FAILED",
                extra={
                    "user_id_hash": hash_pii(user_id),
                    "escalation_level": record.level,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )
            self._schedule_recheck(record)
            return

        if level is None:
            logger.warning(
                "ESCALATION_RECHECK_UNAVAILABLE",
                extra={"user_id_hash": hash_pii(user_id), "escalation_level": record.level}
            )
            self._schedule_recheck(record)
            return

        if level < AlertLevel.EMERGENCY:
            self.resolve(user_id, reason="silence_resolved")
            return

        self._escalate(record)
        if record.active:
            self._schedule_recheck(record)

    def _escalate(self, record: EscalationRecord) -> None:
        record.state = EscalationState.ESCALATED
        record.level += 1
        record.last_escalated_at = self.clock.now()
        contacts_services = record.level >= self.config.emergency_contact_from_level

        notice = EscalationNotice(
            notice_id=f"esc_{uuid.uuid4().hex[:12]}",
            user_id=record.user_id,
            escalation_level=record.level,
            escalated_at=record.last_escalated_at,
            contacts_emergency_services=contacts_services,
        )

        logger.critical(
            "ESCALATION_ADVANCED",
            extra={
                "notice_id": notice.notice_id,
                "user_id_hash": hash_pii(record.user_id),
                "escalation_level": record.level,
                "contacts_emergency_services": contacts_services,
            }
        )

        try:
            self.admin_notifier.notify_escalation(notice)
        except Exception as e:
            logger.error(
                "ESCALATION_ADMIN_NOTIFY_FAILED",
                extra={
                    "notice_id": notice.notice_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )

        if contacts_services:
            try:
                self.emergency_contact(record.user_id, notice)
            except Exception as e:
                logger.critical(
                    "ESCALATION_EMERGENCY_CONTACT_FAILED",
                    extra={
                        "notice_id": notice.notice_id,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    }
                )

        if self.audit_logger is not None:
            self.audit_logger.log_escalation(
                action=AuditAction.ESCALATION_ADVANCED,
                user_id=record.user_id,
                escalation_level=record.level,
                details={
                    "notice_id": notice.notice_id,
                    "contacts_emergency_services": contacts_services,
                },
            )
