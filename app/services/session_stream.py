"""
Training-session analytics stream.

The publisher emits one SessionEvent when a training session completes:

    body:       {userId, sessionId, data: {...}, timestamp}
    attributes: {retryCount, sourceCollection, userId, sessionId}

The consumer upserts each event into ``analytics_training_sessions`` keyed by
session id, so any number of redeliveries leaves exactly one row holding the
latest payload. Messages that keep failing are moved to the DLQ with
``{error, failedAt, retryCount}`` for ``DeadLetterRecovery`` to pick up.
"""

import hashlib
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.database import utcnow
from app.errors import ConflictError, NotFoundError, PermissionDeniedError, TransientInfraError
from app.models import AnalyticsSession, TrainingSession, User
from app.services.event_queue import EventQueue, QueueMessage

logger = logging.getLogger(__name__)


class MalformedEventError(ValueError):
    """Event cannot be turned into an analytics row; retrying will not help."""


def pseudonymize_user_id(user_id, salt: Optional[str] = None) -> str:
    """Salted SHA-256 of a user id for the analytics store."""
    salt = salt if salt is not None else settings.anonymization_salt
    return hashlib.sha256(f"{user_id}{salt}".encode("utf-8")).hexdigest()


def age_group(birth_year: Optional[int], today: datetime) -> str:
    if not birth_year:
        return "unknown"
    age = today.year - birth_year
    if age < 20:
        return "under_20"
    if age >= 60:
        return "60_plus"
    return f"{(age // 10) * 10}s"


def _parse_time(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise MalformedEventError(f"invalid timestamp: {value!r}") from e


class SessionStreamPublisher:
    """Publishes completed training sessions to the analytics stream."""

    def __init__(self, queue: EventQueue, now: Callable[[], datetime] = utcnow):
        self.queue = queue
        self.now = now

    def build_event(self, session: TrainingSession, user: Optional[User]) -> tuple[dict, dict]:
        user_id = str(session.user_id)
        now = self.now()
        body = {
            "userId": user_id,
            "sessionId": session.id,
            "data": {
                "exerciseType": session.exercise_type,
                "startTime": session.start_time.isoformat() if session.start_time else None,
                "endTime": session.end_time.isoformat() if session.end_time else None,
                "durationSeconds": session.duration_seconds,
                "repCount": session.rep_count,
                "averageScore": session.average_score,
                "deviceInfo": session.device_info,
                "ageGroup": age_group(user.birth_year if user else None, now),
                "countryCode": (user.country_code if user else None) or "JP",
                "createdAt": (session.completed_at or now).isoformat(),
            },
            "timestamp": now.isoformat(),
        }
        attributes = {
            "retryCount": 0,
            "sourceCollection": f"users/{user_id}/sessions",
            "userId": user_id,
            "sessionId": session.id,
        }
        return body, attributes

    def publish_completed(self, session: TrainingSession, user: Optional[User] = None) -> str:
        """
        Emit the completion event.

        If the live queue rejects the event it is parked on the DLQ instead.

        Raises:
            TransientInfraError: if neither queue accepted the event
        """
        body, attributes = self.build_event(session, user)
        try:
            message_id = self.queue.publish(settings.session_stream_queue, body, attributes)
        except TransientInfraError as e:
            logger.error("Publish of session %s failed, parking on DLQ: %s", session.id, e)
            failed = dict(body, error=str(e), failedAt=self.now().isoformat(), retryCount=0)
            return self.queue.publish(settings.session_dlq_queue, failed, attributes)
        logger.info("Published session %s to analytics stream (%s)", session.id, message_id)
        return message_id


class SessionStreamConsumer:
    """Drains the live stream into the analytics store."""

    def __init__(
        self,
        db: Session,
        queue: EventQueue,
        now: Callable[[], datetime] = utcnow,
        max_retries: int = settings.stream_max_consumer_retries,
    ):
        self.db = db
        self.queue = queue
        self.now = now
        self.max_retries = max_retries

    def to_row(self, message: QueueMessage) -> AnalyticsSession:
        body = message.body
        session_id = body.get("sessionId") or message.attributes.get("sessionId")
        user_id = body.get("userId") or message.attributes.get("userId")
        data = body.get("data")
        if not session_id or not user_id or not isinstance(data, dict):
            raise MalformedEventError("event is missing sessionId, userId or data")
        if not data.get("exerciseType"):
            raise MalformedEventError("event data is missing exerciseType")

        created_at = _parse_time(data.get("createdAt")) or _parse_time(body.get("timestamp")) or self.now()
        return AnalyticsSession(
            session_id=session_id,
            user_id_hash=pseudonymize_user_id(user_id),
            exercise_id=data["exerciseType"],
            start_time=_parse_time(data.get("startTime")),
            end_time=_parse_time(data.get("endTime")),
            duration_seconds=data.get("durationSeconds"),
            rep_count=data.get("repCount"),
            average_score=data.get("averageScore"),
            device_info=data.get("deviceInfo"),
            age_group=data.get("ageGroup") or "unknown",
            country_code=data.get("countryCode") or "JP",
            source_collection=message.attributes.get("sourceCollection"),
            created_at=created_at,
            ingested_at=self.now(),
            is_deleted=False,
        )

    def upsert(self, message: QueueMessage) -> AnalyticsSession:
        """Insert or replace the analytics row for the event's session id."""
        row = self.db.merge(self.to_row(message))
        self.db.commit()
        return row

    def _dead_letter(self, message: QueueMessage, error: str, retry_count: int) -> None:
        self.queue.dead_letter(
            message,
            settings.session_dlq_queue,
            {
                "error": error[:1000],
                "failedAt": self.now().isoformat(),
                "retryCount": retry_count,
            },
            {"retryCount": retry_count},
        )
        logger.error(
            "Session event %s moved to DLQ after %d attempts: %s",
            message.body.get("sessionId"), retry_count, error,
        )

    def consume(self, max_messages: int = settings.stream_batch_size) -> dict:
        """
        Process up to ``max_messages`` events.

        Returns:
            Counts of processed, succeeded, retried and dead-lettered messages
        """
        stats = {"processed": 0, "succeeded": 0, "retried": 0, "dead_lettered": 0}
        for message in self.queue.pull(settings.session_stream_queue, max_messages):
            stats["processed"] += 1
            retry_count = int(message.attributes.get("retryCount", 0) or 0)
            try:
                self.upsert(message)
            except MalformedEventError as e:
                self.db.rollback()
                self._dead_letter(message, str(e), retry_count)
                stats["dead_lettered"] += 1
                continue
            except Exception as e:
                self.db.rollback()
                retry_count += 1
                if retry_count >= self.max_retries:
                    self._dead_letter(message, str(e), retry_count)
                    stats["dead_lettered"] += 1
                else:
                    logger.warning(
                        "Session event %s failed (attempt %d/%d): %s",
                        message.body.get("sessionId"), retry_count, self.max_retries, e,
                    )
                    self.queue.nack(message, {"retryCount": retry_count})
                    stats["retried"] += 1
                continue

            self.queue.ack(message)
            stats["succeeded"] += 1

        if stats["processed"]:
            logger.info("Session stream batch: %s", stats)
        return stats


class TrainingSessionService:
    """Completion of training sessions, the trigger for the analytics stream."""

    def __init__(self, db: Session, publisher: SessionStreamPublisher, now: Callable[[], datetime] = utcnow):
        self.db = db
        self.publisher = publisher
        self.now = now

    def complete_session(self, user: User, session_id: str, results: dict) -> dict:
        """
        Move an active session to ``completed`` and publish it.

        Completing an already completed session returns it unchanged and does
        not publish again.
        """
        session = self.db.get(TrainingSession, session_id)
        if session is None:
            raise NotFoundError("Training session", session_id)
        if session.user_id != user.id:
            raise PermissionDeniedError("You do not have access to this session")
        if session.status == "completed":
            return {"sessionId": session.id, "status": session.status, "published": False}
        if session.status != "active":
            raise ConflictError(f"Session is {session.status}", status=session.status)

        now = self.now()
        session.status = "completed"
        session.end_time = results.get("end_time") or now
        session.completed_at = now
        for key in ("rep_count", "total_score", "average_score", "duration_seconds", "average_fps"):
            if results.get(key) is not None:
                setattr(session, key, results[key])
        if not session.duration_seconds and session.start_time:
            session.duration_seconds = int((session.end_time - session.start_time).total_seconds())
        self.db.commit()

        published = True
        try:
            self.publisher.publish_completed(session, user)
        except TransientInfraError as e:
            # Session stays completed
            logger.error("Could not publish session %s: %s", session.id, e)
            published = False

        return {"sessionId": session.id, "status": session.status, "published": published}
