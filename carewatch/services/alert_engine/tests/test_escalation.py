"""Tests for EscalationScheduler state machine."""
import pytest
from datetime import timedelta
from unittest.mock import MagicMock

from carewatch.shared.models import AlertLevel
from carewatch.shared.utils import configure_pii_salt
from carewatch.services.audit_service import AuditAction, AuditLogger
from carewatch.services.alert_engine.collaborators import AdminNotifier
from carewatch.services.alert_engine.config import EscalationConfig
from carewatch.services.alert_engine.escalation import EscalationScheduler, EscalationState
from carewatch.services.alert_engine.scheduler import ManualClock, TaskScheduler


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


class Harness:
    def __init__(self):
        self.clock = ManualClock()
        self.scheduler = TaskScheduler(self.clock)
        self.admin = MagicMock(spec=AdminNotifier)
        self.emergency_contact = MagicMock()
        self.level = AlertLevel.EMERGENCY
        self.probe_errors = []
        self.audit = AuditLogger(clock=self.clock)
        self.escalation = EscalationScheduler(
            EscalationConfig(),
            self.scheduler,
            self.admin,
            level_probe=self.probe,
            emergency_contact=self.emergency_contact,
            audit_logger=self.audit,
        )

    def probe(self, user_id):
        if self.probe_errors:
            raise self.probe_errors.pop(0)
        return self.level

    def hours(self, n):
        for _ in range(n):
            self.clock.advance(timedelta(hours=1))
            self.scheduler.run_pending()


@pytest.fixture
def h():
    return Harness()


class TestArming:
    def test_arm_schedules_recheck_in_one_hour(self, h):
        record = h.escalation.arm("user_1")

        assert record.state == EscalationState.ARMED
        assert record.next_check_at == h.clock.now() + timedelta(hours=1)

    def test_arm_twice_keeps_pending_recheck(self, h):
        first = h.escalation.arm("user_1").next_check_at
        h.clock.advance(timedelta(minutes=30))
        second = h.escalation.arm("user_1").next_check_at

        assert first == second

    def test_unknown_subject_is_idle(self, h):
        assert h.escalation.record_for("nobody").state == EscalationState.IDLE


class TestEscalating:
    def test_sustained_emergency_escalates(self, h):
        h.escalation.arm("user_1")
        h.hours(1)

        record = h.escalation.record_for("user_1")
        assert record.state == EscalationState.ESCALATED
        assert record.level == 1
        h.admin.notify_escalation.assert_called_once()
        h.emergency_contact.assert_not_called()

    def test_level_two_contacts_emergency_services(self, h):
        h.escalation.arm("user_1")
        h.hours(2)

        assert h.escalation.record_for("user_1").level == 2
        h.emergency_contact.assert_called_once()
        user_id, notice = h.emergency_contact.call_args.args
        assert user_id == "user_1"
        assert notice.escalation_level == 2
        assert notice.contacts_emergency_services is True

    def test_each_step_audited(self, h):
        h.escalation.arm("user_1")
        h.hours(3)

        advanced = h.audit.query(action=AuditAction.ESCALATION_ADVANCED)
        assert [e.details["escalation_level"] for e in advanced] == [1, 2, 3]
        assert h.audit.verify_chain() is True

    def test_admin_failure_still_rearms(self, h):
        h.admin.notify_escalation.side_effect = ConnectionError("pager down")
        h.escalation.arm("user_1")
        h.hours(2)

        assert h.escalation.record_for("user_1").level == 2
        h.emergency_contact.assert_called_once()

    def test_emergency_contact_failure_contained(self, h):
        h.emergency_contact.side_effect = RuntimeError("report channel down")
        h.escalation.arm("user_1")
        h.hours(3)

        assert h.escalation.record_for("user_1").level == 3


class TestResolution:
    def test_resolved_subject_never_fires_stale_recheck(self, h):
        h.escalation.arm("user_1")
        h.clock.advance(timedelta(minutes=30))
        assert h.escalation.resolve("user_1") is True

        h.hours(3)

        h.admin.notify_escalation.assert_not_called()
        h.emergency_contact.assert_not_called()
        assert h.escalation.record_for("user_1").state == EscalationState.RESOLVED
        assert h.scheduler.pending_count == 0

    def test_resolve_after_escalation_stops_further_steps(self, h):
        h.escalation.arm("user_1")
        h.hours(1)
        h.escalation.resolve("user_1")
        h.hours(5)

        assert h.admin.notify_escalation.call_count == 1
        entries = h.audit.query(action=AuditAction.ESCALATION_RESOLVED)
        assert entries[0].details["reason"] == "fresh_heartbeat"

    def test_silence_resolving_on_recheck(self, h):
        h.escalation.arm("user_1")
        h.level = AlertLevel.DANGER
        h.hours(1)

        assert h.escalation.record_for("user_1").state == EscalationState.RESOLVED
        h.admin.notify_escalation.assert_not_called()

    def test_unavailable_probe_rearms_without_escalating(self, h):
        h.escalation.arm("user_1")
        h.level = None
        h.hours(1)

        record = h.escalation.record_for("user_1")
        assert record.state == EscalationState.ARMED
        assert record.next_check_at == h.clock.now() + timedelta(hours=1)
        h.admin.notify_escalation.assert_not_called()

    def test_probe_error_rearms_and_escalation_continues(self, h):
        h.escalation.arm("user_1")
        h.probe_errors.append(ConnectionError("heartbeat store down"))
        h.hours(1)

        record = h.escalation.record_for("user_1")
        assert record.state == EscalationState.ARMED
        assert record.next_check_at == h.clock.now() + timedelta(hours=1)
        h.admin.notify_escalation.assert_not_called()

        h.hours(3)

        assert h.escalation.record_for("user_1").level == 3
        assert h.admin.notify_escalation.call_count == 3

    def test_resolve_idle_subject_is_noop(self, h):
        assert h.escalation.resolve("user_1") is False

    def test_rearm_after_resolution_starts_over(self, h):
        h.escalation.arm("user_1")
        h.hours(1)
        h.escalation.resolve("user_1")

        record = h.escalation.arm("user_1")
        assert record.state == EscalationState.ARMED
        assert record.level == 0
