"""Alert Engine: silence classification, notification and escalation.

The engine:
1. Classifies each subject's heartbeat silence into an alert level
2. Suppresses duplicates, defers through quiet hours, rate limits
3. Delivers over ordered fallback channels with a bounded retry queue
4. Escalates sustained Emergency silence on an hourly re-check
5. Requires contact confirmation before filing an outside report

Endpoints:
- POST /subjects/<id>/heartbeat - Record heartbeat and re-evaluate
- POST /subjects/<id>/evaluate - Run the alert pipeline
- GET /subjects/<id>/status - Engine state for a subject
- POST /confirmations/<id>/responses - Contact confirm/deny
- POST /tick - Run due scheduled work
"""

from .config import EngineConfig
from .calculator import AlertLevelCalculator, HeartbeatUnavailableError
from .confirmation import (
    ConfirmationOutcome,
    ContactNotOnRequestError,
    EmergencyConfirmationCoordinator,
)
from .dispatcher import DispatchResult, NotificationDispatcher
from .engine import AlertEngine, EvaluationOutcome, EvaluationResult, SubjectStatus
from .escalation import EscalationScheduler, EscalationState
from .retry_queue import RetryQueue
from .scheduler import ManualClock, SystemClock, TaskScheduler
from .suppression import SuppressionOutcome, SuppressionPolicy

__all__ = [
    "AlertEngine",
    "AlertLevelCalculator",
    "ConfirmationOutcome",
    "ContactNotOnRequestError",
    "DispatchResult",
    "EmergencyConfirmationCoordinator",
    "EngineConfig",
    "EscalationScheduler",
    "EscalationState",
    "EvaluationOutcome",
    "EvaluationResult",
    "HeartbeatUnavailableError",
    "ManualClock",
    "NotificationDispatcher",
    "RetryQueue",
    "SubjectStatus",
    "SuppressionOutcome",
    "SuppressionPolicy",
    "SystemClock",
    "TaskScheduler",
]
