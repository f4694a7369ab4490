"""
Account and data deletion (erasure) orchestration.

DeletionRequest state machine:

    pending -> scheduled -> cancelled
                         -> processing -> completed
                                       -> failed -> scheduled (operator requeue)

A user holds at most one active (pending, scheduled or processing) request.
The slot is the ``users.active_deletion_request_id`` column, claimed with a
single conditional UPDATE. A request that loses the claim is stored as
``cancelled`` and reported back as a conflict.

Every request waits out the grace period before ``process_scheduled_deletion``
runs the deletion plan. Soft deletions can be cancelled with a recovery code
until one hour before the scheduled time; hard deletions can be cancelled by
the signed-in user while still scheduled.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.config import settings
from app.database import utcnow
from app.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    TransientInfraError,
    ValidationError,
)
from app.models import DeletionRequest, User
from app.models.deletion_request import DELETION_ACTIVE_STATUSES
from app.services.audit_log import AuditLog, hash_user_id
from app.services.auth.base import IdentityProvider
from app.services.deletion_certificates import DeletionCertificateService
from app.services.deletion_plan import DeletionPlanExecutor
from app.services.export_storage import ExportStorage
from app.services.rate_limiter import RateLimiter
from app.services.recovery_codes import CodeCheck, RecoveryCodeService
from app.services.request_validator import AllScope, validate_deletion_request
from app.services.task_scheduler import (
    JobResult,
    Ok,
    Permanent,
    Retryable,
    RetryPolicy,
    TaskScheduler,
)

logger = logging.getLogger(__name__)

DELETION_JOB = "process_scheduled_deletion"
DELETION_RETRY_POLICY = RetryPolicy()
CANCELLABLE_STATUSES = ("pending", "scheduled")

ALREADY_ACTIVE_REASON = "Another deletion request is already active"
SCHEDULING_FAILURE = "The deletion could not be scheduled. Please try again later."
CASCADE_FAILURE = "Deletion failed and has been referred to an operator."

CODE_ERRORS = {
    CodeCheck.INVALID: "Invalid recovery code",
    CodeCheck.LOCKED: "Too many invalid attempts. Request a new recovery code.",
    CodeCheck.EXPIRED: "The recovery code has expired",
    CodeCheck.MISSING: "No recovery code is pending for this request. Request a new one.",
}


def make_deletion_request_id(user_id, at: datetime) -> str:
    return f"deletion_{user_id}_{int(at.timestamp() * 1000)}"


def grace_period_end(requested_at: datetime) -> datetime:
    """Scheduled execution time: a fixed 30 x 24h after the request (UTC)."""
    return requested_at + timedelta(days=settings.deletion_grace_period_days)


def recover_deadline_for(scheduled_at: datetime) -> datetime:
    return scheduled_at - timedelta(hours=settings.recovery_window_hours)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def deletion_projection(request: DeletionRequest) -> dict:
    return {
        "requestId": request.request_id,
        "type": request.type,
        "scope": request.scope,
        "status": request.status,
        "requestedAt": _iso(request.requested_at),
        "scheduledAt": _iso(request.scheduled_at),
        "canRecover": request.can_recover,
        "recoverDeadline": _iso(request.recover_deadline),
        "cancelledAt": _iso(request.cancelled_at),
        "cancellationReason": request.cancellation_reason,
        "executedAt": _iso(request.executed_at),
        "certificateId": request.certificate_id,
        "error": request.error,
    }


class DeletionOrchestrator:
    """Creates, cancels, executes and reports on deletion requests."""

    def __init__(
        self,
        db: Session,
        rate_limiter: Optional[RateLimiter] = None,
        scheduler: Optional[TaskScheduler] = None,
        storage: Optional[ExportStorage] = None,
        identity_provider: Optional[IdentityProvider] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.rate_limiter = rate_limiter
        self.scheduler = scheduler
        self.storage = storage
        self.identity_provider = identity_provider
        self.now = now
        self.audit = AuditLog(db, now=now)
        self.codes = RecoveryCodeService(db, now=now)

    # ------------------------------------------------------------------
    # Slot handling
    # ------------------------------------------------------------------

    def _claim_slot(self, user_id, request_id: str) -> bool:
        result = self.db.execute(
            update(User)
            .where(User.id == user_id, User.active_deletion_request_id.is_(None))
            .values(active_deletion_request_id=request_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _release_user(self, request: DeletionRequest) -> None:
        """Clear the active slot and, for full deletions, the deletion flags."""
        values = {"active_deletion_request_id": None}
        if request.scope.get("type") == "all":
            values.update(deletion_scheduled=False, scheduled_deletion_at=None)
        self.db.execute(
            update(User)
            .where(User.id == request.user_id, User.active_deletion_request_id == request.request_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    def _transition(self, request_id: str, from_statuses: tuple, **values) -> bool:
        """Conditional status change; False if another actor moved the request first."""
        result = self.db.execute(
            update(DeletionRequest)
            .where(
                DeletionRequest.request_id == request_id,
                DeletionRequest.status.in_(from_statuses),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # API side
    # ------------------------------------------------------------------

    def request_deletion(
        self,
        user_id,
        type: Optional[str] = None,
        scope=None,
        reason: Optional[str] = None,
    ) -> dict:
        """
        Create a deletion request and arm its deferred job.

        Returns:
            Dict with requestId, status, scheduledAt, canRecover and, for soft
            deletions, recoverDeadline and the one-time recoveryCode

        Raises:
            RateLimitError, ValidationError, NotFoundError
            ConflictError: another request is active; the new one is stored as cancelled
            TransientInfraError: the deferred job could not be armed
        """
        logger.info("Deletion request received for user %s", user_id)
        if self.rate_limiter is not None:
            self.rate_limiter.check("GDPR_DELETE_REQUEST", user_id)

        deletion_type, parsed_scope = validate_deletion_request(type, scope)

        user = self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User", str(user_id))

        now = self.now()
        request_id = make_deletion_request_id(user_id, now)
        scheduled_at = grace_period_end(now)
        soft = deletion_type == "soft"
        recover_deadline = recover_deadline_for(scheduled_at) if soft else None
        scope_dict = parsed_scope.to_dict()

        if not self._claim_slot(user_id, request_id):
            self.db.rollback()
            self._record_rejected_duplicate(user_id, request_id, deletion_type, scope_dict, reason, now)

        request = DeletionRequest(
            request_id=request_id,
            user_id=user_id,
            type=deletion_type,
            scope=scope_dict,
            status="pending",
            reason=reason,
            requested_at=now,
            scheduled_at=scheduled_at,
            can_recover=soft,
            recover_deadline=recover_deadline,
            completed_steps=[],
        )
        self.db.add(request)

        revoked = 0
        if isinstance(parsed_scope, AllScope):
            user.deletion_scheduled = True
            user.scheduled_deletion_at = scheduled_at
            user.force_logout_at = now
            if self.identity_provider is not None:
                revoked = self.identity_provider.revoke_all_sessions(self.db, user_id)

        recovery_code = None
        if soft:
            recovery_code = self.codes.issue(user_id, request_id, expires_at=recover_deadline)

        request.status = "scheduled"
        self.audit.record(
            actor=user_id,
            action="deletion_request",
            resource_type="deletion",
            resource_id=request_id,
            after={
                "type": deletion_type,
                "scope": scope_dict,
                "status": "scheduled",
                "scheduled_at": scheduled_at.isoformat(),
                "sessions_revoked": revoked,
            },
        )
        self.db.flush()

        # Arm the job before committing so a broker failure leaves nothing behind
        try:
            handle = self.scheduler.schedule(
                DELETION_JOB,
                {"request_id": request_id},
                run_at=scheduled_at,
                retry_policy=DELETION_RETRY_POLICY,
            )
        except TransientInfraError:
            self.db.rollback()
            self._record_schedule_failure(user_id, request_id, deletion_type, scope_dict, reason, now)
            raise

        request.task_message_id = handle.message_id
        self.db.commit()
        logger.info(
            "Deletion %s scheduled for %s (type=%s)", request_id, scheduled_at.isoformat(), deletion_type
        )

        response = {
            "requestId": request_id,
            "status": "scheduled",
            "scheduledAt": scheduled_at.isoformat(),
            "canRecover": soft,
        }
        if soft:
            response["recoverDeadline"] = recover_deadline.isoformat()
            response["recoveryCode"] = recovery_code
        return response

    def _record_rejected_duplicate(self, user_id, request_id, deletion_type, scope_dict, reason, now):
        active_id = self.db.query(User.active_deletion_request_id).filter(User.id == user_id).scalar()
        if self.db.get(DeletionRequest, request_id) is None:
            self.db.add(
                DeletionRequest(
                    request_id=request_id,
                    user_id=user_id,
                    type=deletion_type,
                    scope=scope_dict,
                    status="cancelled",
                    reason=reason,
                    requested_at=now,
                    scheduled_at=grace_period_end(now),
                    can_recover=False,
                    cancelled_at=now,
                    cancellation_reason=ALREADY_ACTIVE_REASON,
                    completed_steps=[],
                )
            )
        self.audit.record(
            actor=user_id,
            action="deletion_request",
            resource_type="deletion",
            resource_id=request_id,
            after={"status": "cancelled", "active_request_id": active_id},
            success=False,
            error_message=ALREADY_ACTIVE_REASON,
        )
        self.db.commit()
        logger.warning(
            "Deletion request %s auto-cancelled: %s already active for user %s",
            request_id, active_id, user_id,
        )
        raise ConflictError(ALREADY_ACTIVE_REASON, request_id=request_id, status="cancelled")

    def _record_schedule_failure(self, user_id, request_id, deletion_type, scope_dict, reason, now):
        self.db.add(
            DeletionRequest(
                request_id=request_id,
                user_id=user_id,
                type=deletion_type,
                scope=scope_dict,
                status="failed",
                reason=reason,
                requested_at=now,
                scheduled_at=grace_period_end(now),
                can_recover=False,
                error=SCHEDULING_FAILURE,
                completed_steps=[],
            )
        )
        self.audit.record(
            actor=user_id,
            action="deletion_request",
            resource_type="deletion",
            resource_id=request_id,
            success=False,
            error_message="scheduling failed",
        )
        self.db.commit()

    def _load_owned(self, request_id: str, caller_id) -> DeletionRequest:
        request = self.db.get(DeletionRequest, request_id)
        if request is None:
            raise NotFoundError("Deletion request", request_id)
        if str(request.user_id) != str(caller_id):
            raise PermissionDeniedError()
        return request

    def cancel_deletion(
        self,
        request_id: str,
        caller_id,
        recovery_code: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> dict:
        """
        Cancel a pending or scheduled request.

        Soft deletions need a valid recovery code strictly before the recover
        deadline. Wrong codes count towards the attempt limit even though the
        call fails.
        """
        request = self._load_owned(request_id, caller_id)
        if request.status not in CANCELLABLE_STATUSES:
            raise ConflictError(
                f"Deletion request is {request.status} and can no longer be cancelled",
                request_id=request_id,
                status=request.status,
            )

        now = self.now()
        if request.type == "soft":
            if request.recover_deadline is None or now >= request.recover_deadline:
                raise ConflictError(
                    "The recovery deadline has passed", request_id=request_id, status=request.status
                )
            if not recovery_code:
                raise ValidationError("A recovery code is required", field="recoveryCode")
            check = self.codes.verify(request_id, recovery_code)
            if check is not CodeCheck.VALID:
                self.audit.record(
                    actor=caller_id,
                    action="deletion_cancel",
                    resource_type="deletion",
                    resource_id=request_id,
                    success=False,
                    error_message=check.value,
                )
                self.db.commit()
                raise ValidationError(CODE_ERRORS[check], field="recoveryCode")

        if not self._transition(
            request_id,
            CANCELLABLE_STATUSES,
            status="cancelled",
            cancelled_at=now,
            cancellation_reason=reason or "Cancelled by user",
        ):
            self.db.rollback()
            self.db.refresh(request)
            raise ConflictError(
                f"Deletion request is {request.status} and can no longer be cancelled",
                request_id=request_id,
                status=request.status,
            )

        self._release_user(request)
        self.codes.invalidate_all(request_id)
        self.audit.record(
            actor=caller_id,
            action="deletion_cancel",
            resource_type="deletion",
            resource_id=request_id,
            before={"status": request.status},
            after={"status": "cancelled", "reason": reason},
        )
        self.db.commit()
        self.db.refresh(request)
        logger.info("Deletion %s cancelled by user %s", request_id, caller_id)
        return deletion_projection(request)

    def reissue_recovery_code(self, request_id: str, caller_id) -> dict:
        """Replace the pending recovery code of a soft deletion."""
        if self.rate_limiter is not None:
            self.rate_limiter.check("GDPR_RECOVERY_CODE", caller_id)
        request = self._load_owned(request_id, caller_id)
        if request.type != "soft" or request.status not in CANCELLABLE_STATUSES:
            raise ConflictError(
                "Recovery codes are only available for scheduled soft deletions",
                request_id=request_id,
                status=request.status,
            )
        if self.now() >= request.recover_deadline:
            raise ConflictError("The recovery deadline has passed", request_id=request_id, status=request.status)

        code = self.codes.issue(request.user_id, request_id, expires_at=request.recover_deadline)
        self.audit.record(
            actor=caller_id,
            action="recovery_code_reissued",
            resource_type="deletion",
            resource_id=request_id,
        )
        self.db.commit()
        return {
            "requestId": request_id,
            "recoveryCode": code,
            "expiresAt": request.recover_deadline.isoformat(),
        }

    def recover_account(self, email: str, recovery_code: str) -> dict:
        """Unauthenticated cancellation of a soft deletion by email and code."""
        normalized = (email or "").strip().lower()
        if self.rate_limiter is not None:
            self.rate_limiter.check("GDPR_RECOVER_ACCOUNT", normalized)

        user = self.db.query(User).filter(User.email == normalized).first()
        if user is None or not user.active_deletion_request_id:
            raise ValidationError("Invalid email or recovery code", field="recoveryCode")

        request = self.db.get(DeletionRequest, user.active_deletion_request_id)
        if request is None or request.type != "soft":
            raise ValidationError("Invalid email or recovery code", field="recoveryCode")

        return self.cancel_deletion(
            request.request_id,
            user.id,
            recovery_code=recovery_code,
            reason="Recovered by user",
        )

    def get_deletion_status(self, caller_id, request_id: Optional[str] = None) -> Optional[dict]:
        """A specific request, or the caller's latest active request (None if there is none)."""
        if request_id:
            return deletion_projection(self._load_owned(request_id, caller_id))
        request = (
            self.db.query(DeletionRequest)
            .filter(
                DeletionRequest.user_id == caller_id,
                DeletionRequest.status.in_(DELETION_ACTIVE_STATUSES),
            )
            .order_by(DeletionRequest.requested_at.desc())
            .first()
        )
        return deletion_projection(request) if request else None

    def list_deletion_requests(self, caller_id, limit: int = 10) -> list[dict]:
        limit = min(max(limit, 1), 50)
        requests = (
            self.db.query(DeletionRequest)
            .filter(DeletionRequest.user_id == caller_id)
            .order_by(DeletionRequest.requested_at.desc())
            .limit(limit)
            .all()
        )
        return [deletion_projection(r) for r in requests]

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def process_deletion(self, request_id: str) -> JobResult:
        """
        Execute a due deletion.

        The request must still be ``scheduled`` when the worker claims it;
        a cancellation that lands first turns this into a no-op. A request
        left in ``processing`` by a crashed worker is resumed from its
        ``completed_steps``. Cascade failures are terminal and never retried
        automatically.
        """
        request = self.db.get(DeletionRequest, request_id)
        if request is None:
            return Permanent(f"deletion request {request_id} not found")
        if request.status not in ("scheduled", "processing"):
            logger.info("Deletion %s is %s, nothing to do", request_id, request.status)
            return Ok(f"status {request.status}")

        now = self.now()
        if request.status == "scheduled":
            if now < request.scheduled_at:
                return self._rearm(request)
            if not self._transition(
                request_id, ("scheduled",), status="processing", processing_started_at=now
            ):
                self.db.rollback()
                logger.info("Deletion %s changed state before processing, skipping", request_id)
                return Ok("state changed")
            self.db.commit()
            self.db.refresh(request)
        else:
            logger.warning("Resuming deletion %s after steps %s", request_id, request.completed_steps)

        executor = DeletionPlanExecutor(self.db, storage=self.storage)
        try:
            executor.run(request)
            leftovers = executor.verify(request)
            if leftovers:
                raise RuntimeError(f"records remain after deletion: {leftovers}")
        except Exception as e:
            self.db.rollback()
            logger.exception("Deletion %s failed at step %s", request_id, executor.current_step)
            self._fail(request_id, executor.current_step, str(e))
            return Permanent(str(e))

        return self._complete(request)

    def _rearm(self, request: DeletionRequest) -> JobResult:
        try:
            handle = self.scheduler.schedule(
                DELETION_JOB,
                {"request_id": request.request_id},
                run_at=request.scheduled_at,
                retry_policy=DELETION_RETRY_POLICY,
            )
        except TransientInfraError as e:
            return Retryable(str(e))
        request.task_message_id = handle.message_id
        self.db.commit()
        logger.info("Deletion %s delivered early, re-armed for %s", request.request_id, request.scheduled_at)
        return Ok("re-armed")

    def _complete(self, request: DeletionRequest) -> JobResult:
        now = self.now()
        request.status = "completed"
        request.executed_at = now
        request.error = None
        certificate = DeletionCertificateService(self.db, now=self.now).issue(
            request, list(request.completed_steps or [])
        )
        if request.scope.get("type") != "all":
            self._release_user(request)
        self.audit.record(
            actor=hash_user_id(request.user_id),
            action="account_deleted" if request.scope.get("type") == "all" else "data_deleted",
            resource_type="deletion",
            resource_id=request.request_id,
            after={"status": "completed", "certificate_id": certificate.certificate_id},
        )
        self.db.commit()
        logger.info("Deletion %s completed, certificate %s", request.request_id, certificate.certificate_id)
        return Ok()

    def _fail(self, request_id: str, step: Optional[str], internal_error: str) -> None:
        request = self.db.get(DeletionRequest, request_id)
        if request is None:
            return
        request.status = "failed"
        request.error = CASCADE_FAILURE if step is None else f"{CASCADE_FAILURE} (step: {step})"
        self.audit.record(
            actor="system",
            action="deletion_failed",
            resource_type="deletion",
            resource_id=request_id,
            after={"status": "failed", "step": step, "completed_steps": request.completed_steps},
            success=False,
            error_message=internal_error[:500],
        )
        self.db.commit()

    # ------------------------------------------------------------------
    # Operator side
    # ------------------------------------------------------------------

    def list_failed_deletions(self, limit: int = 50) -> list[dict]:
        requests = (
            self.db.query(DeletionRequest)
            .filter(DeletionRequest.status == "failed")
            .order_by(DeletionRequest.requested_at)
            .limit(limit)
            .all()
        )
        return [
            dict(deletion_projection(r), userId=str(r.user_id), completedSteps=r.completed_steps)
            for r in requests
        ]

    def requeue_failed(self, request_id: str, operator_id) -> dict:
        """Put a failed deletion back on the schedule to run now."""
        request = self.db.get(DeletionRequest, request_id)
        if request is None:
            raise NotFoundError("Deletion request", request_id)

        now = self.now()
        if not self._transition(request_id, ("failed",), status="scheduled", error=None, scheduled_at=now):
            raise ConflictError(
                f"Only failed deletions can be requeued (status: {request.status})",
                request_id=request_id,
                status=request.status,
            )
        self.audit.record(
            actor=operator_id,
            action="deletion_requeued",
            resource_type="deletion",
            resource_id=request_id,
            before={"status": "failed"},
            after={"status": "scheduled"},
        )
        self.db.flush()

        try:
            handle = self.scheduler.schedule(
                DELETION_JOB, {"request_id": request_id}, run_at=now, retry_policy=DELETION_RETRY_POLICY
            )
        except TransientInfraError:
            self.db.rollback()
            raise

        self.db.refresh(request)
        request.task_message_id = handle.message_id
        self.db.commit()
        logger.info("Deletion %s requeued by operator %s", request_id, operator_id)
        return deletion_projection(request)

    def dispatch_due_deletions(self, limit: int = 500) -> int:
        """
        Re-send jobs for overdue scheduled requests and stalled processing ones.

        Safe to run at any frequency: the worker's conditional claim makes
        duplicate jobs no-ops.
        """
        now = self.now()
        stalled_before = now - timedelta(minutes=settings.stuck_deletion_minutes)
        due = (
            self.db.query(DeletionRequest)
            .filter(
                ((DeletionRequest.status == "scheduled") & (DeletionRequest.scheduled_at <= now))
                | (
                    (DeletionRequest.status == "processing")
                    & (DeletionRequest.processing_started_at <= stalled_before)
                )
            )
            .order_by(DeletionRequest.scheduled_at)
            .limit(limit)
            .all()
        )
        dispatched = 0
        for request in due:
            try:
                self.scheduler.schedule(
                    DELETION_JOB, {"request_id": request.request_id}, retry_policy=DELETION_RETRY_POLICY
                )
                dispatched += 1
            except TransientInfraError:
                logger.error("Could not dispatch overdue deletion %s", request.request_id)
        if dispatched:
            logger.info("Dispatched %d overdue deletions", dispatched)
        return dispatched
