"""
Delayed job scheduling on top of Dramatiq.

``TaskScheduler.schedule`` sends a message to a named actor with a delay and a
per-message retry policy. Job bodies do not raise to ask for a retry; they
return a ``JobResult`` and ``run_job`` turns that into Dramatiq's retry
behaviour:

- ``Ok``: done, acknowledge
- ``Retryable``: raise ``RetryableJobError`` so the Retries middleware
  redelivers with exponential backoff, unless this was the last attempt, in
  which case the job's exhaustion hook runs and the message is acknowledged
- ``Permanent``: the job already persisted the failure, acknowledge

Delivery is at-least-once. Jobs check the state of the record they act on,
never scheduler-side deduplication.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import dramatiq
import redis
from dramatiq.errors import DramatiqError
from dramatiq.middleware import CurrentMessage

from app.config import settings
from app.database import utcnow
from app.errors import TransientInfraError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = settings.job_max_attempts
    min_backoff_ms: int = settings.job_min_backoff_ms
    max_backoff_ms: int = settings.job_max_backoff_ms
    time_limit_ms: int = settings.job_time_limit_ms

    def message_options(self) -> dict:
        return {
            "max_retries": max(self.max_attempts - 1, 0),
            "min_backoff": self.min_backoff_ms,
            "max_backoff": self.max_backoff_ms,
            "time_limit": self.time_limit_ms,
        }


DEFAULT_RETRY_POLICY = RetryPolicy()


@dataclass(frozen=True)
class TaskHandle:
    job_kind: str
    message_id: str
    run_at: datetime


@dataclass(frozen=True)
class JobResult:
    detail: Optional[str] = None


@dataclass(frozen=True)
class Ok(JobResult):
    pass


@dataclass(frozen=True)
class Retryable(JobResult):
    pass


@dataclass(frozen=True)
class Permanent(JobResult):
    pass


class RetryableJobError(Exception):
    """Raised inside an actor to hand the message back to Dramatiq for retry."""


class TaskScheduler:
    """Schedules jobs by actor name on the configured Dramatiq broker."""

    def __init__(self, broker: Optional[dramatiq.Broker] = None, now: Callable[[], datetime] = utcnow):
        self.broker = broker or dramatiq.get_broker()
        self.now = now

    def schedule(
        self,
        job_kind: str,
        payload: dict,
        run_at: Optional[datetime] = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    ) -> TaskHandle:
        """
        Enqueue ``job_kind`` with ``payload`` as keyword arguments.

        Args:
            job_kind: Dramatiq actor name
            payload: JSON-serialisable keyword arguments for the actor
            run_at: earliest execution time; None or past means now
            retry_policy: attempts, backoff and per-attempt time limit

        Raises:
            TransientInfraError: if the broker rejects or cannot store the message
        """
        now = self.now()
        run_at = run_at or now
        delay_ms = max(int((run_at - now).total_seconds() * 1000), 0)

        try:
            actor = self.broker.get_actor(job_kind)
            message = actor.send_with_options(
                kwargs=payload,
                delay=delay_ms or None,
                **retry_policy.message_options(),
            )
        except (DramatiqError, redis.RedisError) as e:
            logger.error("Failed to schedule %s %s: %s", job_kind, payload, e)
            raise TransientInfraError(f"Could not schedule {job_kind}") from e

        logger.info(
            "Scheduled %s (message %s) for %s", job_kind, message.message_id, run_at.isoformat()
        )
        return TaskHandle(job_kind=job_kind, message_id=message.message_id, run_at=run_at)


def current_attempt() -> tuple[int, int]:
    """Return (attempt number, max attempts) for the message being processed."""
    message = CurrentMessage.get_current_message()
    if message is None:
        return 1, DEFAULT_RETRY_POLICY.max_attempts
    retries = message.options.get("retries", 0)
    max_retries = message.options.get("max_retries", DEFAULT_RETRY_POLICY.max_attempts - 1)
    return retries + 1, max_retries + 1


def run_job(
    job_kind: str,
    body: Callable[[], JobResult],
    on_exhausted: Optional[Callable[[str], None]] = None,
) -> JobResult:
    """Run a job body and map its result onto Dramatiq's retry semantics."""
    attempt, max_attempts = current_attempt()
    result = body()

    if isinstance(result, Retryable):
        if attempt >= max_attempts:
            logger.error(
                "%s exhausted %d attempts: %s", job_kind, max_attempts, result.detail
            )
            if on_exhausted is not None:
                on_exhausted(result.detail or "retries exhausted")
            return Permanent(result.detail)
        logger.warning(
            "%s attempt %d/%d failed, will retry: %s",
            job_kind, attempt, max_attempts, result.detail,
        )
        raise RetryableJobError(result.detail)

    if isinstance(result, Permanent):
        logger.error("%s failed permanently: %s", job_kind, result.detail)
    return result


_scheduler: Optional[TaskScheduler] = None


def get_task_scheduler() -> TaskScheduler:
    """Scheduler bound to the global broker with every lifecycle actor declared."""
    global _scheduler
    if _scheduler is None:
        # Actors must be declared on the broker before they can be looked up by name
        import app.workers.export_worker  # noqa: F401
        import app.workers.deletion_worker  # noqa: F401
        import app.workers.analytics_worker  # noqa: F401

        _scheduler = TaskScheduler()
    return _scheduler
