"""Alert engine facade - one instance owns every piece of per-subject state.

Pipeline for ``evaluate(user_id)``:

    HeartbeatSource -> AlertLevelCalculator -> SuppressionPolicy
        -> NotificationDispatcher (-> RetryQueue on total failure)
        -> EscalationScheduler.arm            (allowed Emergency only)
        -> EmergencyConfirmationCoordinator   (any Emergency evaluation)

All waiting is done through the shared TaskScheduler; the periodic
trigger calls ``tick()`` to run whatever is due.

The public operations share one re-entrant state lock, so callers on
different threads (Flask request threads, the tick trigger) never
interleave state changes.
"""
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, Optional, Sequence, Set, Tuple, Union

from carewatch.shared.models import (
    AlertEvent,
    AlertLevel,
    ConfirmationDecision,
    ConfirmationRequest,
    ThresholdSet,
)
from carewatch.shared.utils import hash_pii
from carewatch.services.audit_service import AuditLogger
from .calculator import (
    AlertLevelCalculator,
    HeartbeatUnavailableError,
    calendar_context_for,
    minutes_between,
)
from .collaborators import (
    ActivitySource,
    AdminNotifier,
    Channel,
    ConfirmationLog,
    ConfirmationTransport,
    ContactDirectory,
    EmergencyContactChannel,
    ErrorReporter,
    HeartbeatSource,
    PeerReportSource,
    ProfileSource,
    ThresholdStore,
)
from .config import EngineConfig
from .confirmation import ConfirmationOutcome, EmergencyConfirmationCoordinator
from .dispatcher import DispatchResult, NotificationDispatcher
from .escalation import EscalationNotice, EscalationScheduler
from .in_memory import AuditConfirmationLog, AuditErrorReporter
from .reporting import EmergencyReporter
from .retry_queue import RetryQueue
from .scheduler import Clock, TaskScheduler, subject_token
from .suppression import SuppressionOutcome, SuppressionPolicy

logger = logging.getLogger(__name__)

REPLAY_PURPOSE = "quiet_hours_replay"


class EvaluationOutcome(Enum):
    SKIPPED = "skipped"          # No usable heartbeat
    NO_ALERT = "no_alert"        # Level is Normal
    SUPPRESSED = "suppressed"
    DEFERRED = "deferred"        # Quiet hours; replay scheduled
    DISPATCHED = "dispatched"
    COALESCED = "coalesced"      # Same subject already being evaluated
    ERROR = "error"


@dataclass
class EvaluationResult:
    user_id: str
    outcome: EvaluationOutcome
    evaluated_at: datetime
    level: Optional[AlertLevel] = None
    minutes_silent: Optional[float] = None
    event: Optional[AlertEvent] = None
    suppression: Optional[SuppressionOutcome] = None
    dispatch: Optional[DispatchResult] = None
    confirmation: Optional[ConfirmationOutcome] = None
    replay_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_payload(self) -> dict:
        return {
            "user_id": self.user_id,
            "outcome": self.outcome.value,
            "evaluated_at": self.evaluated_at.isoformat(),
            "level": self.level.value if self.level else None,
            "minutes_silent": (
                round(self.minutes_silent, 1) if self.minutes_silent is not None else None
            ),
            "event": self.event.to_payload() if self.event else None,
            "suppression": self.suppression.value if self.suppression else None,
            "dispatch": self.dispatch.to_payload() if self.dispatch else None,
            "confirmation": self.confirmation.value if self.confirmation else None,
            "replay_at": self.replay_at.isoformat() if self.replay_at else None,
            "error": self.error,
        }


@dataclass
class SubjectStatus:
    """Point-in-time view of everything the engine holds for a subject."""
    user_id: str
    last_level: Optional[AlertLevel]
    last_evaluated_at: Optional[datetime]
    minutes_silent: Optional[float]
    escalation_state: str
    escalation_level: int
    next_escalation_check_at: Optional[datetime]
    active_confirmation: Optional[ConfirmationRequest]
    confirmation_status: Optional[str]
    pending_retries: int
    quiet_hours_replay_at: Optional[datetime]

    def to_payload(self) -> dict:
        def iso(value):
            return value.isoformat() if value else None

        return {
            "user_id": self.user_id,
            "last_level": self.last_level.value if self.last_level else None,
            "last_evaluated_at": iso(self.last_evaluated_at),
            "minutes_silent": (
                round(self.minutes_silent, 1) if self.minutes_silent is not None else None
            ),
            "escalation": {
                "state": self.escalation_state,
                "level": self.escalation_level,
                "next_check_at": iso(self.next_escalation_check_at),
            },
            "confirmation": {
                "status": self.confirmation_status,
                "active_request": (
                    self.active_confirmation.to_payload() if self.active_confirmation else None
                ),
            },
            "pending_retries": self.pending_retries,
            "quiet_hours_replay_at": iso(self.quiet_hours_replay_at),
        }


@dataclass
class _Observation:
    level: AlertLevel
    evaluated_at: datetime
    minutes_silent: float
    last_heartbeat_at: datetime


class AlertEngine:
    """Evaluates silent subjects and drives every follow-up action."""

    def __init__(
        self,
        config: EngineConfig,
        clock: Clock,
        heartbeats: HeartbeatSource,
        activity: ActivitySource,
        peer_reports: PeerReportSource,
        threshold_store: ThresholdStore,
        contacts: ContactDirectory,
        profiles: ProfileSource,
        channels: Sequence[Channel],
        emergency_channel: EmergencyContactChannel,
        transport: ConfirmationTransport,
        admin_notifier: AdminNotifier,
        error_reporter: Optional[ErrorReporter] = None,
        confirmation_log: Optional[ConfirmationLog] = None,
        audit_logger: Optional[AuditLogger] = None,
        scheduler: Optional[TaskScheduler] = None,
    ):
        self.config = config
        self.clock = clock
        self.heartbeats = heartbeats
        self.activity = activity
        self.threshold_store = threshold_store

        self.audit_logger = audit_logger if audit_logger is not None else AuditLogger(clock=clock)
        self.scheduler = scheduler or TaskScheduler(clock)
        self.calculator = AlertLevelCalculator(config.thresholds, config.multipliers)
        self.suppression = SuppressionPolicy(config.suppression, config.calendar.timezone)

        self.retry_queue = RetryQueue(
            config.retry,
            self.scheduler,
            error_reporter or AuditErrorReporter(self.audit_logger),
        )
        self.dispatcher = NotificationDispatcher(
            channels,
            clock,
            channel_timeout_seconds=config.channel_timeout_seconds,
            on_all_failed=self.retry_queue.enqueue,
        )
        self.retry_queue.bind(
            lambda event: self.dispatcher.dispatch(event, enqueue_on_failure=False).success
        )

        self.reporter = EmergencyReporter(
            emergency_channel,
            config.confirmation.enabled_services,
            clock,
            transport=transport,
            audit_logger=self.audit_logger,
        )
        self.coordinator = EmergencyConfirmationCoordinator(
            config.confirmation,
            self.scheduler,
            transport,
            contacts,
            profiles,
            activity,
            peer_reports,
            self.reporter,
            confirmation_log or AuditConfirmationLog(self.audit_logger),
        )
        self.escalation = EscalationScheduler(
            config.escalation,
            self.scheduler,
            admin_notifier,
            level_probe=self._probe_level,
            emergency_contact=self._contact_emergency_services,
            audit_logger=self.audit_logger,
        )

        self._observations: Dict[str, _Observation] = {}
        self._in_flight: Set[str] = set()
        self._rerun: Set[str] = set()
        self._guard = threading.Lock()
        self._state_lock = threading.RLock()

        logger.info(
            "ALERT_ENGINE_INITIALIZED",
            extra={
                "channels": [c.name for c in channels],
                "timezone": config.calendar.timezone,
                "report_services": [s.value for s in config.confirmation.enabled_services],
            }
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def evaluate(self, user_id: str) -> EvaluationResult:
        """Run the full alert pipeline for one subject.

        A call for a subject that is already being evaluated returns
        COALESCED and exactly one follow-up evaluation runs once the
        in-flight one finishes.

        Raises:
            Exception: Collaborator or configuration errors propagate;
                ``evaluate_all`` isolates them per subject
        """
        with self._guard:
            if user_id in self._in_flight:
                self._rerun.add(user_id)
                coalesced = True
            else:
                self._in_flight.add(user_id)
                coalesced = False

        if coalesced:
            logger.info(
                "ALERT_EVALUATION_COALESCED",
                extra={"user_id_hash": hash_pii(user_id)}
            )
            return EvaluationResult(
                user_id=user_id,
                outcome=EvaluationOutcome.COALESCED,
                evaluated_at=self.clock.now(),
            )

        try:
            with self._state_lock:
                result = self._evaluate(user_id)
                while self._take_rerun(user_id):
                    self._evaluate(user_id)
            return result
        except Exception:
            with self._guard:
                self._in_flight.discard(user_id)
                self._rerun.discard(user_id)
            raise

    def evaluate_all(self, user_ids: Iterable[str]) -> Dict[str, EvaluationResult]:
        """Evaluate many subjects; a failure on one never affects the rest."""
        results: Dict[str, EvaluationResult] = {}
        for user_id in user_ids:
            try:
                results[user_id] = self.evaluate(user_id)
            except Exception as e:
                logger.error(
                    "ALERT_EVALUATION_FAILED",
                    extra={
                        "user_id_hash": hash_pii(user_id),
                        "error": str(e),
                        "error_type": type(e).__name__,
                    }
                )
                results[user_id] = EvaluationResult(
                    user_id=user_id,
                    outcome=EvaluationOutcome.ERROR,
                    evaluated_at=self.clock.now(),
                    error=f"{type(e).__name__}: {e}",
                )
        return results

    def submit_confirmation_response(
        self,
        request_id: str,
        contact_id: str,
        decision: Union[ConfirmationDecision, str],
    ) -> Optional[ConfirmationRequest]:
        with self._state_lock:
            return self.coordinator.submit_response(request_id, contact_id, decision)

    def get_status(self, user_id: str) -> SubjectStatus:
        with self._state_lock:
            return self._status(user_id)

    def _status(self, user_id: str) -> SubjectStatus:
        observation = self._observations.get(user_id)
        record = self.escalation.record_for(user_id)
        episode_status = self.coordinator.episode_status(user_id)
        return SubjectStatus(
            user_id=user_id,
            last_level=observation.level if observation else None,
            last_evaluated_at=observation.evaluated_at if observation else None,
            minutes_silent=observation.minutes_silent if observation else None,
            escalation_state=record.state.value,
            escalation_level=record.level,
            next_escalation_check_at=record.next_check_at if record.active else None,
            active_confirmation=self.coordinator.active_request_for(user_id),
            confirmation_status=episode_status.value if episode_status else None,
            pending_retries=self.retry_queue.pending_for(user_id),
            quiet_hours_replay_at=self.scheduler.due_at(
                subject_token(user_id, REPLAY_PURPOSE)
            ),
        )

    def tick(self) -> int:
        """Run every scheduled callback that is due. Returns the count run."""
        with self._state_lock:
            return self.scheduler.run_pending()

    def shutdown(self) -> None:
        self.dispatcher.shutdown()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _take_rerun(self, user_id: str) -> bool:
        with self._guard:
            if user_id in self._rerun:
                self._rerun.discard(user_id)
                return True
            self._in_flight.discard(user_id)
            return False

    def _measure(
        self, user_id: str, now: datetime
    ) -> Tuple[datetime, float, ThresholdSet, AlertLevel]:
        """Silence, effective thresholds and level for a subject at ``now``.

        Raises:
            HeartbeatUnavailableError: If no usable heartbeat exists
        """
        record = self.heartbeats.get_latest(user_id)
        last_at = record.timestamp if record else None
        if isinstance(last_at, datetime) and last_at.tzinfo is None:
            last_at = last_at.replace(tzinfo=timezone.utc)

        settings = self.threshold_store.get(user_id)
        calendar = calendar_context_for(now, self.config.calendar)
        level = self.calculator.calculate(last_at, now, calendar, settings.threshold_override)
        thresholds = self.calculator.effective_thresholds(calendar, settings.threshold_override)
        return last_at, minutes_between(last_at, now), thresholds, level

    def _evaluate(self, user_id: str) -> EvaluationResult:
        now = self.clock.now()
        try:
            last_at, minutes_silent, thresholds, level = self._measure(user_id, now)
        except HeartbeatUnavailableError as e:
            logger.warning(
                "ALERT_EVALUATION_SKIPPED",
                extra={"user_id_hash": hash_pii(user_id), "reason": str(e)}
            )
            return EvaluationResult(
                user_id=user_id,
                outcome=EvaluationOutcome.SKIPPED,
                evaluated_at=now,
                error=str(e),
            )

        previous = self._observations.get(user_id)
        self._observations[user_id] = _Observation(
            level=level,
            evaluated_at=now,
            minutes_silent=minutes_silent,
            last_heartbeat_at=last_at,
        )
        if previous is not None and last_at > previous.last_heartbeat_at and level < AlertLevel.EMERGENCY:
            self._end_episode(user_id)

        result = EvaluationResult(
            user_id=user_id,
            outcome=EvaluationOutcome.NO_ALERT,
            evaluated_at=now,
            level=level,
            minutes_silent=minutes_silent,
        )
        if level == AlertLevel.NORMAL:
            return result

        settings = self.threshold_store.get(user_id)
        event = AlertEvent(
            event_id=f"alert_{uuid.uuid4().hex[:12]}",
            user_id=user_id,
            level=level,
            computed_at=now,
            minutes_silent=minutes_silent,
        )
        result.event = event
        recent = self.activity.has_recent_activity(
            user_id, self.config.suppression.activity_freshness_minutes
        )
        decision = self.suppression.evaluate(event, recent, settings, now)
        result.suppression = decision.outcome

        if decision.outcome == SuppressionOutcome.DEFER_QUIET_HOURS:
            self.scheduler.after(
                decision.replay_at - now,
                subject_token(user_id, REPLAY_PURPOSE),
                lambda: self.evaluate(user_id),
            )
            result.outcome = EvaluationOutcome.DEFERRED
            result.replay_at = decision.replay_at
        elif decision.allowed:
            result.dispatch = self.dispatcher.dispatch(event)
            result.outcome = EvaluationOutcome.DISPATCHED
            if level == AlertLevel.EMERGENCY:
                self.escalation.arm(user_id)
        else:
            result.outcome = EvaluationOutcome.SUPPRESSED

        if level == AlertLevel.EMERGENCY and decision.outcome != SuppressionOutcome.SUPPRESS_RECENT_ACTIVITY:
            result.confirmation = self.coordinator.consider(
                user_id,
                minutes_silent,
                thresholds.emergency_minutes,
                last_heartbeat_at=last_at,
            )

        logger.info(
            "ALERT_EVALUATED",
            extra={
                "user_id_hash": hash_pii(user_id),
                "level": level.value,
                "minutes_silent": round(minutes_silent, 1),
                "outcome": result.outcome.value,
                "confirmation": result.confirmation.value if result.confirmation else None,
            }
        )
        return result

    def _end_episode(self, user_id: str) -> None:
        """Fresh heartbeat: stop every follow-up for the subject."""
        self.escalation.resolve(user_id, reason="fresh_heartbeat")
        self.scheduler.cancel(subject_token(user_id, REPLAY_PURPOSE))
        dropped = self.retry_queue.discard_subject(user_id)
        self.coordinator.end_episode(user_id, reason="subject_active")
        logger.info(
            "SILENCE_EPISODE_ENDED",
            extra={"user_id_hash": hash_pii(user_id), "dropped_retries": dropped}
        )

    # ------------------------------------------------------------------
    # Escalation hooks
    # ------------------------------------------------------------------

    def _probe_level(self, user_id: str) -> Optional[AlertLevel]:
        try:
            return self._measure(user_id, self.clock.now())[3]
        except HeartbeatUnavailableError:
            return None

    def _contact_emergency_services(self, user_id: str, notice: EscalationNotice) -> None:
        last_at, minutes_silent, thresholds, _ = self._measure(user_id, self.clock.now())
        self.coordinator.on_escalation(
            user_id,
            notice.escalation_level,
            minutes_silent,
            thresholds.emergency_minutes,
            last_heartbeat_at=last_at,
        )
