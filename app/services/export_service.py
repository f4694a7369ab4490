"""
Data export (portability) orchestration.

Owns the ExportRequest state machine:

    pending -> processing -> completed | failed

The API side creates the request and schedules ``process_data_export``; the
worker side collects, formats and uploads the user's data. Terminal requests
are never touched again, which makes duplicate deliveries harmless.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

import redis
from sqlalchemy import or_, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.config import settings
from app.database import utcnow
from app.errors import (
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    TransientInfraError,
)
from app.models import ExportRequest, User
from app.services.audit_log import AuditLog
from app.services.data_collector import DataCollector, count_records
from app.services.export_formatter import render
from app.services.export_storage import ExportStorage
from app.services.rate_limiter import RateLimiter
from app.services.request_validator import parse_export_scope, validate_export_request
from app.services.task_scheduler import (
    JobResult,
    Ok,
    Permanent,
    Retryable,
    RetryPolicy,
    TaskScheduler,
)

logger = logging.getLogger(__name__)

EXPORT_JOB = "process_data_export"
EXPORT_RETRY_POLICY = RetryPolicy()

# Errors worth another attempt; everything else fails the request immediately
TRANSIENT_ERRORS = (TransientInfraError, OperationalError, redis.RedisError)

USER_FACING_FAILURE = "The export could not be completed. Please request a new export."
SCHEDULING_FAILURE = "The export could not be started. Please try again later."


def make_export_request_id(user_id, at: datetime) -> str:
    return f"export_{user_id}_{int(at.timestamp() * 1000)}"


class ExportOrchestrator:
    """Creates export requests, runs them in the worker and reports status."""

    def __init__(
        self,
        db: Session,
        rate_limiter: Optional[RateLimiter] = None,
        scheduler: Optional[TaskScheduler] = None,
        storage: Optional[ExportStorage] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.rate_limiter = rate_limiter
        self.scheduler = scheduler
        self.storage = storage
        self.now = now
        self.audit = AuditLog(db, now=now)

    # ------------------------------------------------------------------
    # API side
    # ------------------------------------------------------------------

    def _claim_export_window(self, user_id, now: datetime) -> bool:
        """Stamp the user's export window if no export was requested within it."""
        cutoff = now - timedelta(hours=settings.export_rate_limit_hours)
        result = self.db.execute(
            update(User)
            .where(
                User.id == user_id,
                or_(
                    User.last_export_requested_at.is_(None),
                    User.last_export_requested_at <= cutoff,
                ),
            )
            .values(last_export_requested_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def request_export(self, user_id, format: Optional[str] = None, scope=None) -> dict:
        """
        Create an export request and schedule its processing.

        Raises:
            RateLimitError: limiter rejected, or an export already exists in the window
            ValidationError: bad format or scope
            NotFoundError: unknown user
            TransientInfraError: the job could not be scheduled
        """
        logger.info("Data export request received for user %s", user_id)
        if self.rate_limiter is not None:
            self.rate_limiter.check("GDPR_DATA_EXPORT", user_id)

        export_format, parsed_scope = validate_export_request(format, scope)

        user = self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User", str(user_id))

        now = self.now()
        if not self._claim_export_window(user_id, now):
            self.db.rollback()
            logger.warning("Export rejected for user %s: request within window", user_id)
            raise RateLimitError(
                f"Data export is limited to once every {settings.export_rate_limit_hours} hours",
                retry_after=settings.export_rate_limit_hours * 3600,
            )

        request = ExportRequest(
            request_id=make_export_request_id(user_id, now),
            user_id=user_id,
            format=export_format,
            scope=parsed_scope.to_dict(),
            status="pending",
            requested_at=now,
        )
        self.db.add(request)
        self.audit.record(
            actor=user_id,
            action="data_export_request",
            resource_type="export",
            resource_id=request.request_id,
            after={"format": export_format, "scope": request.scope, "status": "pending"},
        )
        self.db.commit()

        try:
            self.scheduler.schedule(
                EXPORT_JOB,
                {"request_id": request.request_id},
                run_at=now,
                retry_policy=EXPORT_RETRY_POLICY,
            )
        except TransientInfraError:
            self._release_after_schedule_failure(request, user_id)
            raise

        estimated = now + timedelta(minutes=settings.export_estimated_minutes)
        logger.info("Export %s created for user %s", request.request_id, user_id)
        return {
            "requestId": request.request_id,
            "status": request.status,
            "estimatedCompletionTime": estimated.isoformat(),
        }

    def _release_after_schedule_failure(self, request: ExportRequest, user_id) -> None:
        request.status = "failed"
        request.error = SCHEDULING_FAILURE
        request.completed_at = self.now()
        self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(last_export_requested_at=None)
            .execution_options(synchronize_session=False)
        )
        self.audit.record(
            actor=user_id,
            action="data_export_request",
            resource_type="export",
            resource_id=request.request_id,
            success=False,
            error_message="scheduling failed",
        )
        self.db.commit()
        if self.rate_limiter is not None:
            self.rate_limiter.reset("GDPR_DATA_EXPORT", user_id)

    def _load_owned(self, request_id: str, caller_id) -> ExportRequest:
        request = self.db.get(ExportRequest, request_id)
        if request is None:
            raise NotFoundError("Export request", request_id)
        if str(request.user_id) != str(caller_id):
            raise PermissionDeniedError()
        return request

    def _projection(self, request: ExportRequest) -> dict:
        body = {
            "requestId": request.request_id,
            "status": request.status,
            "format": request.format,
            "requestedAt": request.requested_at.isoformat(),
        }
        if request.status == "completed":
            body["recordCount"] = request.record_count
            body["sizeBytes"] = request.size_bytes
            body["expiresAt"] = request.expires_at.isoformat() if request.expires_at else None
            if request.download_ref and request.expires_at and request.expires_at > self.now():
                body["downloadUrl"] = self.storage.signed_url(request.download_ref, request.expires_at)
            else:
                body["downloadUrl"] = None
        if request.status == "failed":
            body["error"] = request.error
        return body

    def get_export_status(self, request_id: str, caller_id) -> dict:
        return self._projection(self._load_owned(request_id, caller_id))

    def list_export_requests(self, caller_id, limit: int = 10) -> list[dict]:
        limit = min(max(limit, 1), 50)
        requests = (
            self.db.query(ExportRequest)
            .filter(ExportRequest.user_id == caller_id)
            .order_by(ExportRequest.requested_at.desc())
            .limit(limit)
            .all()
        )
        return [self._projection(r) for r in requests]

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def process_export(self, request_id: str) -> JobResult:
        """Collect, format and upload one export. Safe to run more than once."""
        request = self.db.get(ExportRequest, request_id)
        if request is None:
            return Permanent(f"export request {request_id} not found")
        if request.is_terminal:
            logger.info("Export %s already %s, skipping", request_id, request.status)
            return Ok("already terminal")

        now = self.now()
        if request.status == "pending":
            request.status = "processing"
            request.processing_started_at = now
        request.attempts = (request.attempts or 0) + 1
        self.db.commit()

        try:
            data = DataCollector(self.db).collect(request.user_id, parse_export_scope(request.scope))
            content, content_type = render(data, request.format)
            key = f"{request.user_id}/{request.request_id}.{request.format}"
            self.storage.upload(key, content, content_type)

            completed_at = self.now()
            request.status = "completed"
            request.download_ref = key
            request.expires_at = completed_at + timedelta(hours=settings.download_url_expiry_hours)
            request.record_count = count_records(data)
            request.size_bytes = len(content)
            request.completed_at = completed_at
            request.error = None
            self.audit.record(
                actor=request.user_id,
                action="data_export_completed",
                resource_type="export",
                resource_id=request_id,
                after={"record_count": request.record_count, "size_bytes": request.size_bytes},
            )
            self.db.commit()
        except TRANSIENT_ERRORS as e:
            self.db.rollback()
            logger.warning("Transient failure processing export %s: %s", request_id, e)
            return Retryable(str(e))
        except Exception as e:
            self.db.rollback()
            logger.exception("Export %s failed", request_id)
            self.fail_export(request_id, str(e))
            return Permanent(str(e))

        logger.info(
            "Export %s completed: %d records, %d bytes",
            request_id, request.record_count, request.size_bytes,
        )
        return Ok()

    def fail_export(self, request_id: str, internal_error: str) -> None:
        """Mark an export failed with a user-readable message. Terminal requests are left alone."""
        request = self.db.get(ExportRequest, request_id)
        if request is None or request.is_terminal:
            return
        request.status = "failed"
        request.error = USER_FACING_FAILURE
        request.completed_at = self.now()
        self.audit.record(
            actor=request.user_id,
            action="data_export_completed",
            resource_type="export",
            resource_id=request_id,
            success=False,
            error_message=internal_error[:500],
        )
        self.db.commit()

    def cleanup_expired_exports(self, lookback_days: int = 7) -> int:
        """
        Remove artifacts whose download window has passed.

        Request rows are terminal and stay as they are; only the stored file
        goes. Run at least once per ``lookback_days``.
        """
        now = self.now()
        expired = (
            self.db.query(ExportRequest)
            .filter(
                ExportRequest.status == "completed",
                ExportRequest.download_ref.isnot(None),
                ExportRequest.expires_at < now,
                ExportRequest.expires_at >= now - timedelta(days=lookback_days),
            )
            .all()
        )
        removed = sum(1 for request in expired if self.storage.delete(request.download_ref))
        if removed:
            logger.info("Removed %d expired export artifacts", removed)
        return removed
