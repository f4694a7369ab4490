"""FastAPI dependencies that build the lifecycle services for a request."""
from fastapi import Depends
from redis import Redis
from sqlalchemy.orm import Session

from app.database import get_db
from app.redis_client import get_redis
from app.services.auth import IdentityProvider, get_identity_provider
from app.services.deletion_service import DeletionOrchestrator
from app.services.event_queue import EventQueue, RedisEventQueue
from app.services.export_service import ExportOrchestrator
from app.services.export_storage import ExportStorage, get_export_storage
from app.services.rate_limiter import RateLimiter
from app.services.session_stream import SessionStreamPublisher, TrainingSessionService
from app.services.task_scheduler import TaskScheduler, get_task_scheduler


def get_rate_limiter(redis_client: Redis = Depends(get_redis)) -> RateLimiter:
    return RateLimiter(redis_client)


def get_event_queue(redis_client: Redis = Depends(get_redis)) -> EventQueue:
    return RedisEventQueue(redis_client)


def get_export_orchestrator(
    db: Session = Depends(get_db),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    scheduler: TaskScheduler = Depends(get_task_scheduler),
    storage: ExportStorage = Depends(get_export_storage),
) -> ExportOrchestrator:
    return ExportOrchestrator(db, rate_limiter=rate_limiter, scheduler=scheduler, storage=storage)


def get_deletion_orchestrator(
    db: Session = Depends(get_db),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    scheduler: TaskScheduler = Depends(get_task_scheduler),
    storage: ExportStorage = Depends(get_export_storage),
    identity_provider: IdentityProvider = Depends(get_identity_provider),
) -> DeletionOrchestrator:
    return DeletionOrchestrator(
        db,
        rate_limiter=rate_limiter,
        scheduler=scheduler,
        storage=storage,
        identity_provider=identity_provider,
    )


def get_training_service(
    db: Session = Depends(get_db),
    queue: EventQueue = Depends(get_event_queue),
) -> TrainingSessionService:
    return TrainingSessionService(db, SessionStreamPublisher(queue))
