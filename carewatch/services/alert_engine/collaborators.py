"""Collaborator contracts consumed by the alert engine.

The engine never talks to storage, push gateways or public services
directly. Each outside concern is an abstract base class injected at
construction time; ``in_memory`` provides development implementations.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from carewatch.shared.models import (
    AlertEvent,
    ConfirmationRequest,
    Contact,
    EmergencyReport,
    HeartbeatRecord,
    PublicService,
    SubjectAlertSettings,
    SubjectProfile,
)


@dataclass(frozen=True)
class ChannelResult:
    """Outcome of one delivery attempt on one medium."""
    success: bool
    detail: str = ""


class HeartbeatSource(ABC):
    @abstractmethod
    def get_latest(self, user_id: str) -> Optional[HeartbeatRecord]:
        """Most recent heartbeat for the subject, or None if never seen."""


class ActivitySource(ABC):
    @abstractmethod
    def has_recent_activity(self, user_id: str, within_minutes: int) -> bool:
        """Whether motion or app activity was observed recently."""


class PeerReportSource(ABC):
    @abstractmethod
    def has_recent_peer_report(self, user_id: str, within_hours: int) -> bool:
        """Whether a contact has already flagged concern about the subject."""


class ThresholdStore(ABC):
    @abstractmethod
    def get(self, user_id: str) -> SubjectAlertSettings:
        """Per-user threshold override, quiet hours and rate limit."""


class ContactDirectory(ABC):
    @abstractmethod
    def get_contacts(self, user_id: str) -> List[Contact]:
        """Contacts watching over the subject, in priority order."""


class ProfileSource(ABC):
    @abstractmethod
    def get_profile(self, user_id: str) -> Optional[SubjectProfile]:
        """Identity, address and medical notes for outside reports."""


class Channel(ABC):
    """One notification medium (local system, push service, in-app banner)."""

    name: str = "channel"

    @abstractmethod
    def send(self, event: AlertEvent) -> ChannelResult:
        ...


class EmergencyContactChannel(ABC):
    """Hands emergency reports to outside public services."""

    @abstractmethod
    def report(self, report: EmergencyReport, service: PublicService) -> ChannelResult:
        ...


class ConfirmationTransport(ABC):
    """Fire-and-forget messaging to a subject's contacts."""

    @abstractmethod
    def request(self, contact_id: str, request: ConfirmationRequest) -> None:
        """Ask a contact to confirm or deny an emergency."""

    @abstractmethod
    def request_peer_check(self, contact_id: str, user_id: str) -> None:
        """Ask a contact to check on the subject before any confirmation round."""

    @abstractmethod
    def request_consent(self, user_id: str) -> None:
        """Ask the subject to consent to automatic outside reports."""

    @abstractmethod
    def notify_report_filed(self, contact_id: str, report: EmergencyReport) -> None:
        """Tell a contact that an outside report was filed."""


class AdminNotifier(ABC):
    @abstractmethod
    def notify_escalation(self, notice) -> None:
        """Deliver an ``EscalationNotice`` to the administrators on duty."""


class ErrorReporter(ABC):
    @abstractmethod
    def report_permanent_failure(self, item) -> None:
        """Surface a ``RetryItem`` whose delivery attempts are exhausted."""


class ConfirmationLog(ABC):
    @abstractmethod
    def record(self, request: ConfirmationRequest) -> None:
        """Persist a confirmation request that reached a terminal status."""
