"""
Dramatiq worker for data export jobs.

``process_data_export`` is sent by ``ExportOrchestrator.request_export`` with
the retry policy carried on the message. Transient failures are retried with
backoff; when the last attempt fails the request is marked failed.
"""
import logging

import dramatiq

# Import broker setup (must be before actor definitions)
from app.workers import broker  # noqa: F401
from app.database import SessionLocal
from app.services.export_service import EXPORT_JOB, ExportOrchestrator
from app.services.export_storage import get_export_storage
from app.services.task_scheduler import run_job

logger = logging.getLogger(__name__)


@dramatiq.actor(actor_name=EXPORT_JOB, max_retries=2, min_backoff=60_000, max_backoff=600_000)
def process_data_export(request_id: str):
    """
    Build and upload one user's export.

    Args:
        request_id: ExportRequest id
    """
    db = SessionLocal()
    try:
        orchestrator = ExportOrchestrator(db, storage=get_export_storage())
        run_job(
            EXPORT_JOB,
            lambda: orchestrator.process_export(request_id),
            on_exhausted=lambda error: orchestrator.fail_export(request_id, error),
        )
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@dramatiq.actor(max_retries=0)
def cleanup_expired_exports():
    """Delete export artifacts whose download window has passed."""
    db = SessionLocal()
    try:
        ExportOrchestrator(db, storage=get_export_storage()).cleanup_expired_exports()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
