"""Operator endpoints. Every route requires the admin claim."""

import logging
from datetime import date
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.database import get_db
from app.errors import NotFoundError
from app.models.user import User
from app.services.analytics_aggregation import AnalyticsAggregator
from app.services.auth.dependencies import require_admin
from app.services.deletion_certificates import DeletionCertificateService
from app.services.deletion_service import DeletionOrchestrator
from app.services.dlq_recovery import DeadLetterRecovery
from app.services.event_queue import EventQueue
from app.services.rate_limiter import RATE_LIMITS, RateLimiter
from app.api.dependencies import get_deletion_orchestrator, get_event_queue, get_rate_limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class AggregateRequest(BaseModel):
    period: Literal["daily", "weekly"] = "daily"
    stat_date: Optional[date] = None


# =============================================================================
# Analytics DLQ
# =============================================================================


@router.post("/dlq/sweep")
async def sweep_dlq(
    max_messages: int = Query(100, ge=1, le=1000),
    admin: User = Depends(require_admin),
    queue: EventQueue = Depends(get_event_queue),
):
    logger.info("Admin %s triggered DLQ sweep", admin.id)
    return DeadLetterRecovery(queue).sweep(max_messages)


@router.post("/dlq/recover/{session_id}")
async def recover_session(
    session_id: str,
    admin: User = Depends(require_admin),
    queue: EventQueue = Depends(get_event_queue),
):
    logger.info("Admin %s recovering session %s from DLQ", admin.id, session_id)
    return DeadLetterRecovery(queue).recover_session(session_id)


# =============================================================================
# Deletions
# =============================================================================


@router.get("/deletion-certificates/{certificate_id}")
async def get_certificate(
    certificate_id: str,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Certificate with a ``valid`` flag from re-checking its signature."""
    return DeletionCertificateService(db).get(certificate_id)


@router.get("/deletions/failed")
async def list_failed_deletions(
    limit: int = Query(50, ge=1, le=500),
    admin: User = Depends(require_admin),
    deletions: DeletionOrchestrator = Depends(get_deletion_orchestrator),
):
    return {"requests": deletions.list_failed_deletions(limit=limit)}


@router.post("/deletions/{request_id}/requeue")
async def requeue_deletion(
    request_id: str,
    admin: User = Depends(require_admin),
    deletions: DeletionOrchestrator = Depends(get_deletion_orchestrator),
):
    return deletions.requeue_failed(request_id, operator_id=admin.id)


# =============================================================================
# Analytics
# =============================================================================


@router.post("/analytics/aggregate")
async def aggregate(
    body: AggregateRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Rerun or backfill one aggregation partition."""
    aggregator = AnalyticsAggregator(db)
    if body.period == "weekly":
        rows = aggregator.run_weekly(body.stat_date)
    else:
        rows = aggregator.run_daily(body.stat_date)
    logger.info("Admin %s reran %s aggregation for %s", admin.id, body.period, body.stat_date)
    return {"period": body.period, "statDate": body.stat_date, "rows": rows}


# =============================================================================
# Rate limits
# =============================================================================


def _known_operation(operation_key: str) -> str:
    if operation_key not in RATE_LIMITS:
        raise NotFoundError("Rate limit", operation_key)
    return operation_key


@router.get("/rate-limits/{operation_key}/{actor_id}")
async def get_rate_limit(
    operation_key: str,
    actor_id: str,
    admin: User = Depends(require_admin),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
):
    """Remaining quota in the actor's current window."""
    status = rate_limiter.remaining(_known_operation(operation_key), actor_id)
    return {
        "operation": operation_key,
        "actorId": actor_id,
        "remaining": status["remaining"],
        "resetAt": status["reset_at"],
    }


@router.delete("/rate-limits/{operation_key}/{actor_id}")
async def reset_rate_limit(
    operation_key: str,
    actor_id: str,
    admin: User = Depends(require_admin),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
):
    rate_limiter.reset(_known_operation(operation_key), actor_id)
    logger.info("Admin %s reset %s window for %s", admin.id, operation_key, actor_id)
    return {"operation": operation_key, "actorId": actor_id, "reset": True}
