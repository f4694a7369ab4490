"""
Dramatiq worker for scheduled deletions.

``process_scheduled_deletion`` is sent with a delay of the full grace period.
``dispatch_due_deletions`` runs hourly and re-sends jobs for requests whose
delayed message was lost or whose worker died mid-plan.
"""
import logging

import dramatiq

# Import broker setup (must be before actor definitions)
from app.workers import broker  # noqa: F401
from app.database import SessionLocal
from app.services.auth import get_identity_provider
from app.services.deletion_service import DELETION_JOB, DeletionOrchestrator
from app.services.export_storage import get_export_storage
from app.services.task_scheduler import get_task_scheduler, run_job

logger = logging.getLogger(__name__)


def _orchestrator(db) -> DeletionOrchestrator:
    return DeletionOrchestrator(
        db,
        scheduler=get_task_scheduler(),
        storage=get_export_storage(),
        identity_provider=get_identity_provider(),
    )


@dramatiq.actor(actor_name=DELETION_JOB, max_retries=2, min_backoff=60_000, max_backoff=600_000)
def process_scheduled_deletion(request_id: str):
    """
    Execute a deletion whose grace period has ended.

    Args:
        request_id: DeletionRequest id
    """
    db = SessionLocal()
    try:
        orchestrator = _orchestrator(db)
        run_job(DELETION_JOB, lambda: orchestrator.process_deletion(request_id))
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@dramatiq.actor(max_retries=0)
def dispatch_due_deletions():
    """Re-send jobs for overdue and stalled deletion requests."""
    db = SessionLocal()
    try:
        count = _orchestrator(db).dispatch_due_deletions()
        logger.info("Due-deletion sweep dispatched %d jobs", count)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
