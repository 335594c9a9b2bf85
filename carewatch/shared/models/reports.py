"""Emergency report and confirmation protocol models.

A ConfirmationRequest is the only mutable record here: it is owned by
the confirmation coordinator while Pending and frozen in spirit once it
reaches a terminal status.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from .alerts import Contact


class PublicService(Enum):
    """Outside services that can receive an emergency report."""
    MEDICAL = "medical"                 # Ambulance / fire department (119)
    POLICE = "police"                   # Police (112)
    ADMINISTRATIVE = "administrative"   # Local welfare / administrative center


class ConfirmationDecision(Enum):
    CONFIRM = "confirm"
    DENY = "deny"


class ConfirmationStatus(Enum):
    """Lifecycle of a confirmation request."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DENIED = "denied"
    TIMED_OUT = "timed_out"   # No responses by expiry; treated as confirmed

    @property
    def is_terminal(self) -> bool:
        return self != ConfirmationStatus.PENDING

    @property
    def leads_to_report(self) -> bool:
        return self in (ConfirmationStatus.CONFIRMED, ConfirmationStatus.TIMED_OUT)


@dataclass
class ConfirmationRequest:
    """Mutable record of one double-confirmation round for a subject."""
    request_id: str
    subject_user_id: str
    contact_ids: List[str]
    created_at: datetime
    expires_at: datetime
    early_exit_at: datetime
    minutes_silent: float = 0.0
    responses: Dict[str, ConfirmationDecision] = field(default_factory=dict)
    status: ConfirmationStatus = ConfirmationStatus.PENDING
    resolved_at: Optional[datetime] = None
    resolution_reason: Optional[str] = None

    def tally(self) -> Dict[str, int]:
        confirms = sum(1 for d in self.responses.values() if d == ConfirmationDecision.CONFIRM)
        return {"confirm": confirms, "deny": len(self.responses) - confirms}

    def to_payload(self) -> dict:
        return {
            "request_id": self.request_id,
            "subject_user_id": self.subject_user_id,
            "contact_ids": list(self.contact_ids),
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "status": self.status.value,
            "responses": {k: v.value for k, v in self.responses.items()},
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution_reason": self.resolution_reason,
        }


@dataclass(frozen=True)
class EmergencyReport:
    """Immutable report handed to outside public services."""
    report_id: str
    user_id: str
    user_name: str
    address: str
    detail_address: str
    blood_type: str
    medical_conditions: List[str]
    medications: List[str]
    allergies: List[str]
    emergency_contacts: List[Contact]
    reported_by: List[Contact]
    minutes_silent: float
    last_heartbeat_at: Optional[datetime]
    created_at: datetime
    confirmation_request_id: Optional[str] = None
    report_source: str = "automated_silence_detection"

    @property
    def inactive_hours(self) -> int:
        return int(self.minutes_silent // 60)

    def to_payload(self) -> dict:
        return {
            "report_id": self.report_id,
            "created_at": self.created_at.isoformat(),
            "source": self.report_source,
            "data": {
                "user_id": self.user_id,
                "user_name": self.user_name,
                "address": self.address,
                "detail_address": self.detail_address,
                "blood_type": self.blood_type,
                "medical_conditions": self.medical_conditions,
                "medications": self.medications,
                "allergies": self.allergies,
                "emergency_contacts": [
                    {"name": c.name, "phone": c.phone} for c in self.emergency_contacts
                ],
                "reported_by": [
                    {"contact_id": c.contact_id, "name": c.name, "phone": c.phone}
                    for c in self.reported_by
                ],
                "inactive_hours": self.inactive_hours,
                "last_heartbeat_at": (
                    self.last_heartbeat_at.isoformat() if self.last_heartbeat_at else None
                ),
                "confirmation_request_id": self.confirmation_request_id,
            },
        }


@dataclass(frozen=True)
class ReportResult:
    """Outcome of handing a report to one public service."""
    service: PublicService
    success: bool
    detail: str
    timestamp: datetime
