"""Emergency confirmation coordinator - double confirmation before outside reports.

No outside report is filed on silence alone. Once per silence episode,
when the subject is past the emergency threshold, shows no motion, a
contact has already flagged concern and the subject has consented to
outside reports, up to three contacts are asked to confirm or deny.

Two paths race for the single terminal decision:

- Early exit: the first response inside the early window (15 min)
  decides immediately; confirm files the report, deny aborts.
- Timeout: otherwise responses are collected until the full window
  (30 min) expires and the majority decides. Zero responses resolve to
  TIMED_OUT, which files the report.

Both paths are timers keyed ``"<subject>:confirmation:<request>:*"``;
resolving cancels whichever is still pending. Responses arriving after
resolution are logged and ignored.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Union

from carewatch.shared.models import (
    ConfirmationDecision,
    ConfirmationRequest,
    ConfirmationStatus,
    Contact,
)
from carewatch.shared.utils import hash_pii
from .collaborators import (
    ActivitySource,
    ConfirmationLog,
    ConfirmationTransport,
    ContactDirectory,
    PeerReportSource,
    ProfileSource,
)
from .config import ConfirmationConfig
from .reporting import EmergencyReporter
from .scheduler import TaskScheduler, subject_token

logger = logging.getLogger(__name__)

# Terminal requests and finished episodes are kept this long
RESOLVED_RETENTION = timedelta(hours=24)


class ConfirmationOutcome(Enum):
    """Result of asking the coordinator to consider a subject."""
    STARTED = "started"
    ALREADY_ACTIVE = "already_active"
    EPISODE_HANDLED = "episode_handled"
    BELOW_THRESHOLD = "below_threshold"
    RECENT_ACTIVITY = "recent_activity"
    NO_CONSENT = "no_consent"
    AWAITING_PEER_REPORT = "awaiting_peer_report"


class ContactNotOnRequestError(ValueError):
    """A response came from a contact the request was not sent to."""


@dataclass
class _Episode:
    """Coordinator bookkeeping for one subject's current silence episode."""
    contacts: List[Contact] = field(default_factory=list)
    request_id: Optional[str] = None
    status: Optional[ConfirmationStatus] = None
    peer_check_sent: bool = False
    consent_requested: bool = False
    opened_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    last_heartbeat_at: Optional[datetime] = None
    reports_filed: int = 0


class EmergencyConfirmationCoordinator:
    """Runs the double-confirmation protocol per subject."""

    def __init__(
        self,
        config: ConfirmationConfig,
        scheduler: TaskScheduler,
        transport: ConfirmationTransport,
        contacts: ContactDirectory,
        profiles: ProfileSource,
        activity: ActivitySource,
        peer_reports: PeerReportSource,
        reporter: EmergencyReporter,
        confirmation_log: ConfirmationLog,
    ):
        self.config = config
        self.scheduler = scheduler
        self.clock = scheduler.clock
        self.transport = transport
        self.contacts = contacts
        self.profiles = profiles
        self.activity = activity
        self.peer_reports = peer_reports
        self.reporter = reporter
        self.confirmation_log = confirmation_log

        self._active: Dict[str, ConfirmationRequest] = {}
        self._resolved: Dict[str, ConfirmationRequest] = {}
        self._episodes: Dict[str, _Episode] = {}

        logger.info(
            "CONFIRMATION_COORDINATOR_INITIALIZED",
            extra={
                "window_minutes": config.window.total_seconds() / 60,
                "early_exit_minutes": config.early_exit_window.total_seconds() / 60,
                "max_contacts": config.max_contacts,
            }
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def active_request_for(self, user_id: str) -> Optional[ConfirmationRequest]:
        episode = self._episodes.get(user_id)
        if episode is None or episode.request_id is None:
            return None
        return self._active.get(episode.request_id)

    def episode_status(self, user_id: str) -> Optional[ConfirmationStatus]:
        episode = self._episodes.get(user_id)
        return episode.status if episode else None

    # ------------------------------------------------------------------
    # Protocol entry points
    # ------------------------------------------------------------------

    def consider(
        self,
        user_id: str,
        minutes_silent: float,
        emergency_threshold_minutes: float,
        last_heartbeat_at: Optional[datetime] = None,
    ) -> ConfirmationOutcome:
        """Start a confirmation round if every precondition holds.

        Args:
            user_id: Silent subject
            minutes_silent: Current silence
            emergency_threshold_minutes: Adjusted emergency threshold
            last_heartbeat_at: For the outside report

        Returns:
            ConfirmationOutcome describing what happened
        """
        self._purge_expired(self.clock.now())
        episode = self._episodes.get(user_id)
        if episode is not None and episode.status == ConfirmationStatus.PENDING:
            return ConfirmationOutcome.ALREADY_ACTIVE
        if episode is not None and episode.request_id is not None:
            return ConfirmationOutcome.EPISODE_HANDLED

        if minutes_silent < emergency_threshold_minutes:
            return ConfirmationOutcome.BELOW_THRESHOLD

        if self.activity.has_recent_activity(user_id, self.config.motion_lookback_minutes):
            logger.info(
                "CONFIRMATION_SKIPPED_RECENT_MOTION",
                extra={"user_id_hash": hash_pii(user_id)}
            )
            return ConfirmationOutcome.RECENT_ACTIVITY

        episode = self._episodes.setdefault(user_id, _Episode(opened_at=self.clock.now()))
        episode.last_heartbeat_at = last_heartbeat_at
        contacts = list(self.contacts.get_contacts(user_id))[: self.config.max_contacts]
        episode.contacts = contacts

        if not self.peer_reports.has_recent_peer_report(
            user_id, self.config.peer_report_lookback_hours
        ):
            if not episode.peer_check_sent:
                self._request_peer_checks(user_id, contacts)
                episode.peer_check_sent = True
            return ConfirmationOutcome.AWAITING_PEER_REPORT

        if not self._has_consent(user_id, episode):
            return ConfirmationOutcome.NO_CONSENT

        self._start(user_id, contacts, minutes_silent, episode)
        return ConfirmationOutcome.STARTED

    def submit_response(
        self,
        request_id: str,
        contact_id: str,
        decision: Union[ConfirmationDecision, str],
    ) -> Optional[ConfirmationRequest]:
        """Record a contact's confirm/deny answer.

        Args:
            request_id: Confirmation request identifier
            contact_id: Responding contact
            decision: ConfirmationDecision or its string value

        Returns:
            The request after the response was applied (unchanged if it
            had already resolved), or None if the request is unknown

        Raises:
            ValueError: If ``decision`` is not confirm/deny
            ContactNotOnRequestError: If the contact was not asked
        """
        decision = ConfirmationDecision(decision)
        request = self._active.get(request_id)

        if request is None:
            resolved = self._resolved.get(request_id)
            if resolved is None:
                logger.warning(
                    "CONFIRMATION_REQUEST_NOT_FOUND",
                    extra={"request_id": request_id}
                )
                return None
            self._log_late_response(resolved, contact_id, decision)
            return resolved

        if contact_id not in request.contact_ids:
            logger.warning(
                "CONFIRMATION_RESPONSE_UNKNOWN_CONTACT",
                extra={"request_id": request_id, "contact_id": contact_id}
            )
            raise ContactNotOnRequestError(
                f"Contact {contact_id} is not on request {request_id}"
            )

        now = self.clock.now()
        if now >= request.expires_at:
            # Expiry timer has not run yet; the window is closed regardless
            self._on_expiry(request_id)
            self._log_late_response(request, contact_id, decision)
            return request

        request.responses[contact_id] = decision
        logger.info(
            "CONFIRMATION_RESPONSE_RECORDED",
            extra={
                "request_id": request_id,
                "contact_id": contact_id,
                "decision": decision.value,
                "minutes_since_request": round(
                    (now - request.created_at).total_seconds() / 60, 1
                ),
            }
        )

        if now < request.early_exit_at:
            if decision == ConfirmationDecision.CONFIRM:
                self._resolve(request, ConfirmationStatus.CONFIRMED, "early_confirmation")
            else:
                self._resolve(request, ConfirmationStatus.DENIED, "early_denial")
        return request

    def on_escalation(
        self,
        user_id: str,
        escalation_level: int,
        minutes_silent: float,
        emergency_threshold_minutes: float,
        last_heartbeat_at: Optional[datetime] = None,
    ) -> None:
        """Contact outside services on behalf of a sustained escalation.

        A confirmed episode gets a follow-up report; a pending or denied
        episode files nothing; an episode with no request yet is
        considered for confirmation.
        """
        episode = self._episodes.get(user_id)
        status = episode.status if episode else None

        if status is not None and status.leads_to_report:
            request = self._resolved.get(episode.request_id)
            self._file_report(user_id, episode, minutes_silent, request)
            return

        if status == ConfirmationStatus.PENDING:
            logger.warning(
                "ESCALATION_AWAITING_CONFIRMATION",
                extra={"user_id_hash": hash_pii(user_id), "escalation_level": escalation_level}
            )
            return

        if status == ConfirmationStatus.DENIED:
            logger.warning(
                "ESCALATION_REPORT_WITHHELD",
                extra={
                    "user_id_hash": hash_pii(user_id),
                    "escalation_level": escalation_level,
                    "reason": "confirmation_denied",
                }
            )
            return

        self.consider(user_id, minutes_silent, emergency_threshold_minutes, last_heartbeat_at)

    def end_episode(self, user_id: str, reason: str = "subject_active") -> None:
        """Close the subject's silence episode (fresh heartbeat observed).

        A pending request is resolved as DENIED so that no report is filed
        and every timer for it stops.
        """
        episode = self._episodes.pop(user_id, None)
        if episode is None:
            return
        if episode.request_id and episode.request_id in self._active:
            request = self._active[episode.request_id]
            self._resolve(request, ConfirmationStatus.DENIED, reason, episode=episode)
        self.scheduler.cancel_prefix(subject_token(user_id, "confirmation"))

        logger.info(
            "CONFIRMATION_EPISODE_ENDED",
            extra={"user_id_hash": hash_pii(user_id), "reason": reason}
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _has_consent(self, user_id: str, episode: _Episode) -> bool:
        """Only an explicit yes on the profile allows an outside report.

        An unset consent asks the subject once per episode.
        """
        profile = self.profiles.get_profile(user_id)
        consent = profile.emergency_contact_consent if profile is not None else False
        if consent:
            return True

        if consent is None and not episode.consent_requested:
            episode.consent_requested = True
            try:
                self.transport.request_consent(user_id)
            except Exception as e:
                logger.warning(
                    "CONSENT_REQUEST_TRANSPORT_FAILED",
                    extra={"user_id_hash": hash_pii(user_id), "error": str(e)}
                )

        logger.warning(
            "CONFIRMATION_SKIPPED_NO_CONSENT",
            extra={
                "user_id_hash": hash_pii(user_id),
                "profile_found": profile is not None,
                "consent": consent,
            }
        )
        return False

    def _request_peer_checks(self, user_id: str, contacts: List[Contact]) -> None:
        logger.info(
            "PEER_CHECK_REQUESTED",
            extra={"user_id_hash": hash_pii(user_id), "contact_count": len(contacts)}
        )
        for contact in contacts:
            try:
                self.transport.request_peer_check(contact.contact_id, user_id)
            except Exception as e:
                logger.warning(
                    "PEER_CHECK_TRANSPORT_FAILED",
                    extra={"contact_id": contact.contact_id, "error": str(e)}
                )

    def _start(
        self,
        user_id: str,
        contacts: List[Contact],
        minutes_silent: float,
        episode: _Episode,
    ) -> ConfirmationRequest:
        now = self.clock.now()
        request = ConfirmationRequest(
            request_id=f"confirm_{uuid.uuid4().hex[:12]}",
            subject_user_id=user_id,
            contact_ids=[c.contact_id for c in contacts],
            created_at=now,
            expires_at=now + self.config.window,
            early_exit_at=now + self.config.early_exit_window,
            minutes_silent=minutes_silent,
        )
        self._active[request.request_id] = request
        episode.request_id = request.request_id
        episode.status = ConfirmationStatus.PENDING

        prefix = f"confirmation:{request.request_id}"
        self.scheduler.after(
            self.config.early_exit_window,
            subject_token(user_id, f"{prefix}:early"),
            lambda: self._on_early_window_closed(request.request_id),
        )
        self.scheduler.after(
            self.config.window,
            subject_token(user_id, f"{prefix}:expiry"),
            lambda: self._on_expiry(request.request_id),
        )

        logger.critical(
            "CONFIRMATION_REQUEST_CREATED",
            extra={
                "request_id": request.request_id,
                "user_id_hash": hash_pii(user_id),
                "contact_count": len(request.contact_ids),
                "expires_at": request.expires_at.isoformat(),
            }
        )

        for contact_id in request.contact_ids:
            try:
                self.transport.request(contact_id, request)
            except Exception as e:
                # Contact simply will not respond; timeout logic proceeds
                logger.warning(
                    "CONFIRMATION_TRANSPORT_FAILED",
                    extra={
                        "request_id": request.request_id,
                        "contact_id": contact_id,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    }
                )
        return request

    def _on_early_window_closed(self, request_id: str) -> None:
        request = self._active.get(request_id)
        if request is None:
            return
        logger.info(
            "CONFIRMATION_EARLY_WINDOW_CLOSED",
            extra={"request_id": request_id, "responses": len(request.responses)}
        )

    def _on_expiry(self, request_id: str) -> None:
        request = self._active.get(request_id)
        if request is None:
            return

        tally = request.tally()
        if not request.responses:
            self._resolve(request, ConfirmationStatus.TIMED_OUT, "no_responses")
        elif tally["deny"] > tally["confirm"]:
            self._resolve(request, ConfirmationStatus.DENIED, "majority_denied")
        elif tally["confirm"] > tally["deny"]:
            self._resolve(request, ConfirmationStatus.CONFIRMED, "majority_confirmed")
        else:
            self._resolve(request, ConfirmationStatus.CONFIRMED, "tie_fail_safe")

    def _resolve(
        self,
        request: ConfirmationRequest,
        status: ConfirmationStatus,
        reason: str,
        episode: Optional[_Episode] = None,
    ) -> None:
        if request.status.is_terminal:
            return

        now = self.clock.now()
        request.status = status
        request.resolved_at = now
        request.resolution_reason = reason

        user_id = request.subject_user_id
        self.scheduler.cancel_prefix(
            subject_token(user_id, f"confirmation:{request.request_id}")
        )
        self._active.pop(request.request_id, None)
        self._purge_expired(now)
        self._resolved[request.request_id] = request

        episode = episode or self._episodes.get(user_id)
        if episode is not None:
            episode.status = status
            episode.resolved_at = now

        tally = request.tally()
        logger.critical(
            "CONFIRMATION_RESOLVED",
            extra={
                "request_id": request.request_id,
                "user_id_hash": hash_pii(user_id),
                "status": status.value,
                "reason": reason,
                "confirm_count": tally["confirm"],
                "deny_count": tally["deny"],
            }
        )

        try:
            self.confirmation_log.record(request)
        except Exception as e:
            logger.error(
                "CONFIRMATION_LOG_FAILED",
                extra={"request_id": request.request_id, "error": str(e)}
            )

        if status.leads_to_report and episode is not None:
            self._file_report(user_id, episode, request.minutes_silent, request)

    def _file_report(
        self,
        user_id: str,
        episode: _Episode,
        minutes_silent: float,
        request: Optional[ConfirmationRequest],
    ) -> None:
        report = self.reporter.build_report(
            user_id=user_id,
            profile=self.profiles.get_profile(user_id),
            reported_by=episode.contacts,
            minutes_silent=minutes_silent,
            last_heartbeat_at=episode.last_heartbeat_at,
            confirmation_request_id=request.request_id if request else None,
        )
        self.reporter.file_report(report)
        episode.reports_filed += 1

    def _log_late_response(
        self,
        request: ConfirmationRequest,
        contact_id: str,
        decision: ConfirmationDecision,
    ) -> None:
        logger.info(
            "CONFIRMATION_RESPONSE_LATE",
            extra={
                "request_id": request.request_id,
                "contact_id": contact_id,
                "decision": decision.value,
                "status": request.status.value,
            }
        )

    def _purge_expired(self, now: datetime) -> None:
        """Drop old terminal requests and episodes that are finished or stalled.

        A subject still silent after its episode is dropped starts a fresh
        round on the next evaluation.
        """
        cutoff = now - RESOLVED_RETENTION
        stale = [
            rid for rid, req in self._resolved.items()
            if req.resolved_at is not None and req.resolved_at < cutoff
        ]
        for rid in stale:
            del self._resolved[rid]

        expired = [
            user_id for user_id, episode in self._episodes.items()
            if _episode_expired(episode, cutoff)
        ]
        for user_id in expired:
            del self._episodes[user_id]


def _episode_expired(episode: _Episode, cutoff: datetime) -> bool:
    if episode.resolved_at is not None:
        return episode.resolved_at < cutoff
    # Waiting on a peer report or consent, no request yet
    return (
        episode.request_id is None
        and episode.opened_at is not None
        and episode.opened_at < cutoff
    )
