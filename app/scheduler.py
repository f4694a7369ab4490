"""
Periodic job trigger.

Run as ``python -m app.scheduler``. The process only enqueues Dramatiq
actors; the work itself runs in the worker processes. Cron expressions come
from settings and are evaluated in UTC.
"""
import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from app.config import settings
from app.workers.analytics_worker import (
    consume_session_stream,
    run_daily_aggregation,
    run_weekly_aggregation,
    sweep_session_dlq,
)
from app.workers.deletion_worker import dispatch_due_deletions
from app.workers.export_worker import cleanup_expired_exports

logger = logging.getLogger(__name__)


def scheduled_jobs() -> list[tuple]:
    """(job id, actor, trigger) for every periodic job."""
    return [
        (
            "consume_session_stream",
            consume_session_stream,
            IntervalTrigger(seconds=settings.stream_consume_interval_seconds),
        ),
        ("daily_aggregation", run_daily_aggregation, CronTrigger.from_crontab(settings.daily_aggregation_cron, timezone="UTC")),
        ("weekly_aggregation", run_weekly_aggregation, CronTrigger.from_crontab(settings.weekly_aggregation_cron, timezone="UTC")),
        ("dlq_sweep", sweep_session_dlq, CronTrigger.from_crontab(settings.dlq_sweep_cron, timezone="UTC")),
        ("due_deletion_sweep", dispatch_due_deletions, CronTrigger.from_crontab(settings.due_deletion_sweep_cron, timezone="UTC")),
        ("export_cleanup", cleanup_expired_exports, CronTrigger.from_crontab(settings.export_cleanup_cron, timezone="UTC")),
    ]


def build_scheduler() -> BlockingScheduler:
    scheduler = BlockingScheduler(timezone="UTC")
    for job_id, actor, trigger in scheduled_jobs():
        scheduler.add_job(
            actor.send,
            trigger=trigger,
            id=job_id,
            name=actor.actor_name,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )
        logger.info("Registered %s -> %s (%s)", job_id, actor.actor_name, trigger)
    return scheduler


def main():
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    scheduler = build_scheduler()
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")


if __name__ == "__main__":
    main()
