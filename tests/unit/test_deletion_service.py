"""Tests for the deletion orchestrator."""
import re
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from zoneinfo import ZoneInfo

import pytest

from app.errors import ConflictError, NotFoundError, PermissionDeniedError, TransientInfraError, ValidationError
from app.models import (
    AuditLogEntry,
    AuthSession,
    Consent,
    DeletionCertificate,
    DeletionRequest,
    RecoveryCode,
    TrainingSession,
    User,
)
from app.services.audit_log import hash_user_id
from app.services.auth import local_identity_provider
from app.services.deletion_certificates import DeletionCertificateService, verify_certificate
from app.services.deletion_service import (
    ALREADY_ACTIVE_REASON,
    SCHEDULING_FAILURE,
    DeletionOrchestrator,
    grace_period_end,
    recover_deadline_for,
)
from app.services.task_scheduler import Ok, Permanent
from tests.factories import create_full_profile, create_session, create_user


@pytest.fixture
def user(db):
    user = create_user(db, email="member@example.com", birth_year=1990)
    create_full_profile(db, user)
    create_session(db, user)
    db.commit()
    return user


@pytest.fixture
def deletions(db, rate_limiter, scheduler, storage, clock):
    return DeletionOrchestrator(
        db,
        rate_limiter=rate_limiter,
        scheduler=scheduler,
        storage=storage,
        identity_provider=local_identity_provider,
        now=clock,
    )


def active_requests(db, user_id):
    return (
        db.query(DeletionRequest)
        .filter(
            DeletionRequest.user_id == user_id,
            DeletionRequest.status.in_(("pending", "scheduled", "processing")),
        )
        .all()
    )


class TestGracePeriod:
    """Grace period and recovery window arithmetic."""

    def test_grace_period_is_thirty_days_of_24_hours(self, clock):
        assert grace_period_end(clock()) - clock() == timedelta(days=30)

    @pytest.mark.parametrize("local", [
        datetime(2026, 3, 15, 9, 0, tzinfo=ZoneInfo("Europe/Berlin")),  # spans spring forward
        datetime(2026, 10, 10, 9, 0, tzinfo=ZoneInfo("America/New_York")),  # spans fall back
        datetime(2026, 6, 1, 9, 0, tzinfo=ZoneInfo("Asia/Tokyo")),
    ])
    def test_grace_period_across_dst(self, local):
        """Measured in the user's local calendar the grace period is 30 days, give or take a day."""
        requested_at = local.astimezone(timezone.utc)
        scheduled_local = grace_period_end(requested_at).astimezone(local.tzinfo)

        calendar_days = (scheduled_local.replace(tzinfo=None) - local.replace(tzinfo=None)).total_seconds() / 86400
        assert abs(calendar_days - 30) <= 1

    def test_recover_deadline_is_between_request_and_execution(self, clock):
        scheduled_at = grace_period_end(clock())
        deadline = recover_deadline_for(scheduled_at)

        assert clock() < deadline < scheduled_at
        assert scheduled_at - deadline == timedelta(hours=1)


class TestRequestDeletion:
    """Tests for DeletionOrchestrator.request_deletion."""

    def test_soft_deletion_returns_recovery_code(self, deletions, user, db, clock):
        result = deletions.request_deletion(user.id, "soft", {"type": "all"})

        assert result["status"] == "scheduled"
        assert result["canRecover"] is True
        assert re.fullmatch(r"\d{6}", result["recoveryCode"])
        assert result["scheduledAt"] == (clock() + timedelta(days=30)).isoformat()
        assert result["recoverDeadline"] == (clock() + timedelta(days=30, hours=-1)).isoformat()

    def test_full_deletion_flags_user_and_revokes_sessions(self, deletions, user, db, clock):
        deletions.request_deletion(user.id, "soft", {"type": "all"})

        db.expire_all()
        stored = db.get(User, user.id)
        assert stored.deletion_scheduled is True
        assert stored.scheduled_deletion_at == clock() + timedelta(days=30)
        assert stored.force_logout_at == clock()
        assert db.query(AuthSession).filter(AuthSession.user_id == user.id).count() == 0

    def test_job_is_armed_for_scheduled_time(self, deletions, user, db, broker):
        result = deletions.request_deletion(user.id, "hard")

        assert broker.queues["default.DQ"].qsize() == 1
        assert db.get(DeletionRequest, result["requestId"]).task_message_id

    def test_hard_deletion_has_no_recovery_code(self, deletions, user, db):
        result = deletions.request_deletion(user.id, "hard", {"type": "all"})

        assert result["canRecover"] is False
        assert "recoveryCode" not in result
        assert db.query(RecoveryCode).count() == 0

    def test_specific_scope_leaves_account_flags(self, deletions, user, db):
        deletions.request_deletion(user.id, "hard", {"type": "specific", "dataTypes": ["sessions"]})

        db.expire_all()
        stored = db.get(User, user.id)
        assert stored.deletion_scheduled is False
        assert db.query(AuthSession).filter(AuthSession.user_id == user.id).count() == 1

    def test_recovery_code_is_stored_hashed(self, deletions, user, db):
        code = deletions.request_deletion(user.id, "soft")["recoveryCode"]

        stored = db.query(RecoveryCode).one()
        assert stored.code_hash != code
        assert stored.status == "pending"

    def test_second_request_is_cancelled_as_duplicate(self, deletions, user, db, clock):
        first = deletions.request_deletion(user.id, "soft")
        clock.advance(seconds=1)

        with pytest.raises(ConflictError) as exc_info:
            deletions.request_deletion(user.id, "hard")

        duplicate = db.get(DeletionRequest, exc_info.value.request_id)
        assert duplicate.status == "cancelled"
        assert duplicate.cancellation_reason == ALREADY_ACTIVE_REASON
        assert [r.request_id for r in active_requests(db, user.id)] == [first["requestId"]]

    def test_unknown_user(self, deletions):
        with pytest.raises(NotFoundError):
            deletions.request_deletion(uuid.uuid4())

    def test_invalid_type(self, deletions, user):
        with pytest.raises(ValidationError):
            deletions.request_deletion(user.id, "forever")

    def test_schedule_failure_leaves_failed_record_and_free_slot(self, db, rate_limiter, storage, clock, user):
        scheduler = MagicMock()
        scheduler.schedule.side_effect = TransientInfraError("broker down")
        deletions = DeletionOrchestrator(
            db, rate_limiter=rate_limiter, scheduler=scheduler, storage=storage,
            identity_provider=local_identity_provider, now=clock,
        )

        with pytest.raises(TransientInfraError):
            deletions.request_deletion(user.id, "soft")

        request = db.query(DeletionRequest).one()
        assert request.status == "failed"
        assert request.error == SCHEDULING_FAILURE
        db.expire_all()
        stored = db.get(User, user.id)
        assert stored.active_deletion_request_id is None
        assert stored.deletion_scheduled is False
        assert db.query(RecoveryCode).count() == 0
        assert db.query(AuthSession).filter(AuthSession.user_id == user.id).count() == 1


class TestCancelDeletion:
    """Tests for cancellation, recovery codes and account recovery."""

    def test_soft_cancel_with_code(self, deletions, user, db):
        created = deletions.request_deletion(user.id, "soft")

        result = deletions.cancel_deletion(created["requestId"], user.id, recovery_code=created["recoveryCode"])

        assert result["status"] == "cancelled"
        db.expire_all()
        stored = db.get(User, user.id)
        assert stored.active_deletion_request_id is None
        assert stored.deletion_scheduled is False
        assert db.query(RecoveryCode).one().status == "used"

    def test_user_can_request_again_after_cancel(self, deletions, user, clock):
        created = deletions.request_deletion(user.id, "hard")
        deletions.cancel_deletion(created["requestId"], user.id)
        clock.advance(seconds=1)

        assert deletions.request_deletion(user.id, "hard")["status"] == "scheduled"

    def test_soft_cancel_requires_code(self, deletions, user):
        created = deletions.request_deletion(user.id, "soft")

        with pytest.raises(ValidationError) as exc_info:
            deletions.cancel_deletion(created["requestId"], user.id)
        assert exc_info.value.field == "recoveryCode"

    def test_wrong_code_counts_attempt(self, deletions, user, db):
        created = deletions.request_deletion(user.id, "soft")
        wrong = "000000" if created["recoveryCode"] != "000000" else "111111"

        with pytest.raises(ValidationError):
            deletions.cancel_deletion(created["requestId"], user.id, recovery_code=wrong)

        assert db.query(RecoveryCode).one().attempts == 1
        assert db.get(DeletionRequest, created["requestId"]).status == "scheduled"

    def test_code_locks_after_five_wrong_attempts(self, deletions, user, db):
        created = deletions.request_deletion(user.id, "soft")
        wrong = "000000" if created["recoveryCode"] != "000000" else "111111"

        for _ in range(5):
            with pytest.raises(ValidationError):
                deletions.cancel_deletion(created["requestId"], user.id, recovery_code=wrong)

        # The correct code no longer works
        with pytest.raises(ValidationError):
            deletions.cancel_deletion(created["requestId"], user.id, recovery_code=created["recoveryCode"])
        assert db.query(RecoveryCode).one().status == "invalidated"

    def test_cancel_just_before_deadline(self, deletions, user, clock):
        created = deletions.request_deletion(user.id, "soft")
        clock.advance(days=30, hours=-1, seconds=-1)

        result = deletions.cancel_deletion(created["requestId"], user.id, recovery_code=created["recoveryCode"])

        assert result["status"] == "cancelled"

    def test_cancel_at_deadline_is_rejected(self, deletions, user, clock):
        created = deletions.request_deletion(user.id, "soft")
        clock.advance(days=30, hours=-1)

        with pytest.raises(ConflictError):
            deletions.cancel_deletion(created["requestId"], user.id, recovery_code=created["recoveryCode"])

    def test_hard_cancel_without_code(self, deletions, user):
        created = deletions.request_deletion(user.id, "hard")
        assert deletions.cancel_deletion(created["requestId"], user.id)["status"] == "cancelled"

    def test_cannot_cancel_someone_elses_request(self, deletions, user, db):
        created = deletions.request_deletion(user.id, "hard")
        other = create_user(db)
        db.commit()

        with pytest.raises(PermissionDeniedError):
            deletions.cancel_deletion(created["requestId"], other.id)

    def test_cannot_cancel_twice(self, deletions, user):
        created = deletions.request_deletion(user.id, "hard")
        deletions.cancel_deletion(created["requestId"], user.id)

        with pytest.raises(ConflictError):
            deletions.cancel_deletion(created["requestId"], user.id)

    def test_reissue_invalidates_previous_code(self, deletions, user, db, clock):
        created = deletions.request_deletion(user.id, "soft")
        clock.advance(minutes=5)

        reissued = deletions.reissue_recovery_code(created["requestId"], user.id)

        with pytest.raises(ValidationError):
            deletions.cancel_deletion(created["requestId"], user.id, recovery_code=created["recoveryCode"])
        result = deletions.cancel_deletion(created["requestId"], user.id, recovery_code=reissued["recoveryCode"])
        assert result["status"] == "cancelled"

    def test_reissue_not_available_for_hard_deletion(self, deletions, user):
        created = deletions.request_deletion(user.id, "hard")
        with pytest.raises(ConflictError):
            deletions.reissue_recovery_code(created["requestId"], user.id)

    def test_recover_account_by_email(self, deletions, user):
        created = deletions.request_deletion(user.id, "soft")

        result = deletions.recover_account("Member@Example.com ", created["recoveryCode"])

        assert result["requestId"] == created["requestId"]
        assert result["status"] == "cancelled"

    def test_recover_account_unknown_email(self, deletions):
        with pytest.raises(ValidationError):
            deletions.recover_account("nobody@example.com", "123456")


class TestDeletionStatus:
    def test_latest_active_request(self, deletions, user):
        created = deletions.request_deletion(user.id, "soft")
        status = deletions.get_deletion_status(user.id)

        assert status["requestId"] == created["requestId"]
        assert status["canRecover"] is True

    def test_no_active_request(self, deletions, user):
        assert deletions.get_deletion_status(user.id) is None

    def test_list_includes_cancelled(self, deletions, user, clock):
        created = deletions.request_deletion(user.id, "hard")
        deletions.cancel_deletion(created["requestId"], user.id)

        listed = deletions.list_deletion_requests(user.id)

        assert [r["status"] for r in listed] == ["cancelled"]


class TestProcessDeletion:
    """Tests for the worker side."""

    def test_early_delivery_rearms(self, deletions, user, db, broker):
        created = deletions.request_deletion(user.id, "hard")
        broker.flush_all()

        result = deletions.process_deletion(created["requestId"])

        assert isinstance(result, Ok)
        assert db.get(DeletionRequest, created["requestId"]).status == "scheduled"
        assert broker.queues["default.DQ"].qsize() == 1
        assert db.get(User, user.id) is not None

    def test_full_deletion_removes_everything(self, deletions, user, db, clock):
        user_id = user.id
        created = deletions.request_deletion(user_id, "hard")
        clock.advance(days=30)

        result = deletions.process_deletion(created["requestId"])

        assert isinstance(result, Ok)
        db.expire_all()
        request = db.get(DeletionRequest, created["requestId"])
        assert request.status == "completed"
        assert request.executed_at == clock()
        assert db.get(User, user_id) is None
        assert db.query(TrainingSession).filter(TrainingSession.user_id == user_id).count() == 0
        assert db.query(Consent).filter(Consent.user_id == user_id).count() == 0
        assert db.query(AuditLogEntry).filter(AuditLogEntry.actor == str(user_id)).count() == 0

    def test_certificate_is_issued_and_verifies(self, deletions, user, db, clock):
        user_id = user.id
        created = deletions.request_deletion(user_id, "hard")
        clock.advance(days=30)
        deletions.process_deletion(created["requestId"])

        request = db.get(DeletionRequest, created["requestId"])
        certificate = DeletionCertificateService(db).get(request.certificate_id)
        assert certificate["userIdHash"] == hash_user_id(user_id)
        assert "user_profile" in certificate["deletedSteps"]
        assert verify_certificate(certificate)
        assert certificate["valid"] is True

    def test_redelivery_after_completion_is_noop(self, deletions, user, db, clock):
        created = deletions.request_deletion(user.id, "hard")
        clock.advance(days=30)
        deletions.process_deletion(created["requestId"])
        certificate_id = db.get(DeletionRequest, created["requestId"]).certificate_id

        result = deletions.process_deletion(created["requestId"])

        assert isinstance(result, Ok)
        assert db.query(DeletionCertificate).count() == 1
        assert db.get(DeletionRequest, created["requestId"]).certificate_id == certificate_id

    def test_cancelled_request_is_not_executed(self, deletions, user, db, clock):
        created = deletions.request_deletion(user.id, "hard")
        deletions.cancel_deletion(created["requestId"], user.id)
        clock.advance(days=30)

        deletions.process_deletion(created["requestId"])

        assert db.get(DeletionRequest, created["requestId"]).status == "cancelled"
        assert db.get(User, user.id) is not None

    def test_specific_scope_keeps_account(self, deletions, user, db, clock):
        created = deletions.request_deletion(user.id, "hard", {"type": "specific", "dataTypes": ["sessions"]})
        clock.advance(days=30)

        deletions.process_deletion(created["requestId"])

        db.expire_all()
        stored = db.get(User, user.id)
        assert stored is not None
        assert stored.active_deletion_request_id is None
        assert db.query(TrainingSession).filter(TrainingSession.user_id == user.id).count() == 0
        assert db.query(Consent).filter(Consent.user_id == user.id).count() == 1

    def test_cascade_failure_is_terminal_and_holds_slot(self, db, rate_limiter, scheduler, clock, user):
        failing_storage = MagicMock()
        failing_storage.delete_prefix.side_effect = OSError("bucket unavailable")
        deletions = DeletionOrchestrator(
            db, rate_limiter=rate_limiter, scheduler=scheduler, storage=failing_storage,
            identity_provider=local_identity_provider, now=clock,
        )
        created = deletions.request_deletion(user.id, "hard")
        clock.advance(days=30)

        result = deletions.process_deletion(created["requestId"])

        assert isinstance(result, Permanent)
        request = db.get(DeletionRequest, created["requestId"])
        assert request.status == "failed"
        assert "export_artifacts" in request.error
        assert "training_sessions" in request.completed_steps
        db.expire_all()
        assert db.get(User, user.id).active_deletion_request_id == created["requestId"]

    def test_requeue_resumes_failed_deletion(self, db, rate_limiter, scheduler, storage, clock, user, admin_user):
        failing_storage = MagicMock()
        failing_storage.delete_prefix.side_effect = OSError("bucket unavailable")
        deletions = DeletionOrchestrator(
            db, rate_limiter=rate_limiter, scheduler=scheduler, storage=failing_storage,
            identity_provider=local_identity_provider, now=clock,
        )
        created = deletions.request_deletion(user.id, "hard")
        clock.advance(days=30)
        deletions.process_deletion(created["requestId"])

        deletions.storage = storage
        requeued = deletions.requeue_failed(created["requestId"], admin_user.id)
        assert requeued["status"] == "scheduled"
        result = deletions.process_deletion(created["requestId"])

        assert isinstance(result, Ok)
        request = db.get(DeletionRequest, created["requestId"])
        assert request.status == "completed"
        assert request.completed_steps.count("training_sessions") == 1

    def test_requeue_rejects_non_failed(self, deletions, user, admin_user):
        created = deletions.request_deletion(user.id, "hard")
        with pytest.raises(ConflictError):
            deletions.requeue_failed(created["requestId"], admin_user.id)

    def test_stalled_processing_request_is_resumed(self, deletions, user, db, clock):
        created = deletions.request_deletion(user.id, "hard")
        clock.advance(days=30)
        request = db.get(DeletionRequest, created["requestId"])
        request.status = "processing"
        request.processing_started_at = clock()
        request.completed_steps = ["training_sessions"]
        db.query(TrainingSession).filter(TrainingSession.user_id == user.id).delete()
        db.commit()

        result = deletions.process_deletion(created["requestId"])

        assert isinstance(result, Ok)
        assert db.get(DeletionRequest, created["requestId"]).status == "completed"


class TestDispatchDueDeletions:
    def test_dispatches_overdue_requests(self, deletions, user, db, broker, clock):
        deletions.request_deletion(user.id, "hard")
        broker.flush_all()

        assert deletions.dispatch_due_deletions() == 0
        clock.advance(days=30, minutes=1)
        assert deletions.dispatch_due_deletions() == 1
        assert broker.queues["default"].qsize() == 1

    def test_dispatches_stalled_processing(self, deletions, user, db, broker, clock):
        created = deletions.request_deletion(user.id, "hard")
        clock.advance(days=30)
        request = db.get(DeletionRequest, created["requestId"])
        request.status = "processing"
        request.processing_started_at = clock()
        db.commit()
        broker.flush_all()

        clock.advance(minutes=30)
        assert deletions.dispatch_due_deletions() == 0
        clock.advance(minutes=31)
        assert deletions.dispatch_due_deletions() == 1
