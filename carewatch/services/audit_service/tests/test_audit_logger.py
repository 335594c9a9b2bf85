"""Tests for AuditLogger - hash-chained trail of emergency-path actions."""
import pytest
from datetime import timedelta

from carewatch.shared.models import (
    AlertEvent,
    AlertLevel,
    ConfirmationDecision,
    ConfirmationRequest,
    ConfirmationStatus,
    EmergencyReport,
    PublicService,
    ReportResult,
)
from carewatch.shared.utils import configure_pii_salt, hash_pii
from carewatch.services.audit_service.audit_logger import (
    AuditLogger,
    AuditAction,
    AuditEntity,
    AuditEntry,
)
from carewatch.services.alert_engine.retry_queue import RetryItem
from carewatch.services.alert_engine.scheduler import ManualClock


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def logger(clock):
    return AuditLogger(clock=clock)


class TestAuditEntryCreation:
    def test_log_creates_entry(self, logger):
        entry = logger.log(
            action=AuditAction.ESCALATION_ADVANCED,
            entity_type=AuditEntity.SUBJECT,
            entity_id="hash_abc123",
            actor_id="scheduler",
            actor_role="system",
        )

        assert entry.entry_id.startswith("audit_")
        assert entry.action == AuditAction.ESCALATION_ADVANCED
        assert entry.entity_id == "hash_abc123"
        assert entry.previous_hash == "genesis"
        assert len(entry.entry_hash) == 64  # SHA-256 hex

    def test_entry_is_immutable(self, logger):
        entry = logger.log(
            action=AuditAction.ESCALATION_RESOLVED,
            entity_type=AuditEntity.SUBJECT,
            entity_id="hash_abc",
        )

        with pytest.raises(Exception):  # FrozenInstanceError
            entry.action = AuditAction.EMERGENCY_REPORT_FILED


class TestHashChain:
    def test_entries_form_chain(self, logger):
        first = logger.log(AuditAction.ESCALATION_ADVANCED, AuditEntity.SUBJECT, "s1")
        second = logger.log(AuditAction.ESCALATION_RESOLVED, AuditEntity.SUBJECT, "s1")

        assert second.previous_hash == first.entry_hash
        assert logger.verify_chain() is True
        assert len(logger) == 2

    def test_tampering_detected(self, logger):
        logger.log(AuditAction.ESCALATION_ADVANCED, AuditEntity.SUBJECT, "s1")
        original = logger.log(AuditAction.ESCALATION_RESOLVED, AuditEntity.SUBJECT, "s1")

        forged = AuditEntry(
            entry_id=original.entry_id,
            timestamp=original.timestamp,
            action=AuditAction.EMERGENCY_REPORT_FILED,
            entity_type=original.entity_type,
            entity_id=original.entity_id,
            actor_id=original.actor_id,
            actor_role=original.actor_role,
            details=original.details,
            previous_hash=original.previous_hash,
            entry_hash=original.entry_hash,
        )
        logger._entries[1] = forged

        assert logger.verify_chain() is False


class TestDomainEntries:
    def test_confirmation_entry(self, logger, clock):
        request = ConfirmationRequest(
            request_id="confirm_001",
            subject_user_id="user_1",
            contact_ids=["c1", "c2"],
            created_at=clock.now(),
            expires_at=clock.now() + timedelta(minutes=30),
            early_exit_at=clock.now() + timedelta(minutes=15),
            responses={"c1": ConfirmationDecision.DENY},
            status=ConfirmationStatus.DENIED,
            resolved_at=clock.now() + timedelta(minutes=5),
            resolution_reason="early_denial",
        )

        entry = logger.log_confirmation(request)

        assert entry.entity_type == AuditEntity.CONFIRMATION_REQUEST
        assert entry.details["status"] == "denied"
        assert entry.details["deny_count"] == 1
        assert entry.details["user_id_hash"] == hash_pii("user_1")
        assert "user_1" not in str(entry.details)

    def test_escalation_entry_hashes_subject(self, logger):
        entry = logger.log_escalation(AuditAction.ESCALATION_ADVANCED, "user_1", 2)

        assert entry.entity_id == hash_pii("user_1")
        assert entry.details["escalation_level"] == 2

    def test_report_entry_lists_service_outcomes(self, logger, clock):
        report = EmergencyReport(
            report_id="EMERGENCY_001",
            user_id="user_1",
            user_name="Kim",
            address="addr",
            detail_address="",
            blood_type="A+",
            medical_conditions=[],
            medications=[],
            allergies=[],
            emergency_contacts=[],
            reported_by=[],
            minutes_silent=4400,
            last_heartbeat_at=None,
            created_at=clock.now(),
        )
        results = [
            ReportResult(PublicService.MEDICAL, False, "unreachable", clock.now()),
            ReportResult(PublicService.POLICE, True, "ok", clock.now()),
        ]

        entry = logger.log_emergency_report(report, results)

        assert entry.entity_id == "EMERGENCY_001"
        assert [r["success"] for r in entry.details["results"]] == [False, True]

    def test_delivery_failure_entry(self, logger, clock):
        event = AlertEvent("alert_001", "user_1", AlertLevel.DANGER, clock.now(), 3000)
        item = RetryItem(event, attempt=3, max_attempts=3,
                         next_attempt_at=clock.now(), enqueued_at=clock.now())

        entry = logger.log_delivery_failure(item)

        assert entry.action == AuditAction.NOTIFICATION_PERMANENTLY_FAILED
        assert entry.details["attempts"] == 3


class TestQuery:
    def test_filters(self, logger, clock):
        logger.log(AuditAction.ESCALATION_ADVANCED, AuditEntity.SUBJECT, "s1")
        clock.advance(timedelta(hours=1))
        logger.log(AuditAction.ESCALATION_RESOLVED, AuditEntity.SUBJECT, "s2")

        assert len(logger.query(entity_id="s1")) == 1
        assert len(logger.query(action=AuditAction.ESCALATION_RESOLVED)) == 1
        assert len(logger.query(since=clock.now())) == 1
        assert len(logger.query(entity_type=AuditEntity.SUBJECT)) == 2
