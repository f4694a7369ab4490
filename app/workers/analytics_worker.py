"""
Dramatiq workers for the session analytics pipeline.

Consumes the training-session stream into the analytics store, rebuilds the
daily and weekly aggregates, and sweeps the dead-letter queue.
"""
import logging
from datetime import date

import dramatiq

# Import broker setup (must be before actor definitions)
from app.workers import broker  # noqa: F401
from app.config import settings
from app.database import SessionLocal
from app.redis_client import get_redis
from app.services.analytics_aggregation import AnalyticsAggregator
from app.services.dlq_recovery import DeadLetterRecovery
from app.services.event_queue import RedisEventQueue
from app.services.session_stream import SessionStreamConsumer

logger = logging.getLogger(__name__)


@dramatiq.actor(max_retries=0, time_limit=300_000)
def consume_session_stream(max_messages: int = settings.stream_batch_size):
    """Drain one batch of session events, first reclaiming abandoned in-flight ones."""
    queue = RedisEventQueue(get_redis())
    queue.restore_inflight(settings.session_stream_queue)

    db = SessionLocal()
    try:
        SessionStreamConsumer(db, queue).consume(max_messages)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@dramatiq.actor(max_retries=3, min_backoff=60_000)
def run_daily_aggregation(stat_date: str | None = None):
    """
    Rebuild daily stats.

    Args:
        stat_date: ISO date to rebuild; yesterday (UTC) when omitted
    """
    db = SessionLocal()
    try:
        AnalyticsAggregator(db).run_daily(date.fromisoformat(stat_date) if stat_date else None)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@dramatiq.actor(max_retries=3, min_backoff=60_000)
def run_weekly_aggregation(week_start: str | None = None):
    """Rebuild weekly stats for the week starting ``week_start`` (default: last week)."""
    db = SessionLocal()
    try:
        AnalyticsAggregator(db).run_weekly(date.fromisoformat(week_start) if week_start else None)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@dramatiq.actor(max_retries=0, time_limit=300_000)
def sweep_session_dlq(max_messages: int = settings.dlq_max_messages_per_run):
    """Republish dead-lettered session events to the live stream."""
    queue = RedisEventQueue(get_redis())
    queue.restore_inflight(settings.session_dlq_queue)
    report = DeadLetterRecovery(queue).sweep(max_messages)
    if report["failed"]:
        logger.error("DLQ sweep left %d messages in the DLQ", report["failed"])
