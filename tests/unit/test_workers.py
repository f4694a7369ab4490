"""
Tests for the Dramatiq actors.

Actors are called through ``.fn`` so they run inline; ``SessionLocal`` is
patched to hand out the test session.
"""
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from app.config import settings
from app.database import utcnow
from app.models import AggregatedStat, AnalyticsSession, DeletionRequest, ExportRequest, User
from app.services.dlq_recovery import DeadLetterRecovery
from app.services.event_queue import RedisEventQueue
from app.services.export_service import ExportOrchestrator
from app.services.session_stream import SessionStreamPublisher
from app.workers import analytics_worker, deletion_worker, export_worker
from tests.factories import create_analytics_session, create_full_profile, create_training_session, create_user


@pytest.fixture
def worker_session(db):
    with patch.object(export_worker, "SessionLocal", return_value=db), \
            patch.object(deletion_worker, "SessionLocal", return_value=db), \
            patch.object(analytics_worker, "SessionLocal", return_value=db):
        yield db


@pytest.fixture
def worker_storage(storage):
    with patch.object(export_worker, "get_export_storage", return_value=storage), \
            patch.object(deletion_worker, "get_export_storage", return_value=storage):
        yield storage


@pytest.fixture
def worker_redis(redis_client):
    with patch.object(analytics_worker, "get_redis", return_value=redis_client):
        yield redis_client


def scheduled_deletion(db, user, scheduled_at):
    request = DeletionRequest(
        request_id=f"deletion_{user.id}_1",
        user_id=user.id,
        type="hard",
        scope={"type": "all"},
        status="scheduled",
        requested_at=datetime(2020, 1, 1, tzinfo=timezone.utc),
        scheduled_at=scheduled_at,
        can_recover=False,
        completed_steps=[],
    )
    db.add(request)
    user.active_deletion_request_id = request.request_id
    db.commit()
    return request.request_id


class TestExportWorker:
    def test_process_data_export(self, db, worker_session, worker_storage, rate_limiter, scheduler, clock):
        user = create_user(db)
        create_full_profile(db, user)
        db.commit()
        request_id = ExportOrchestrator(
            db, rate_limiter=rate_limiter, scheduler=scheduler, storage=worker_storage, now=clock
        ).request_export(user.id)["requestId"]

        export_worker.process_data_export.fn(request_id)

        request = db.get(ExportRequest, request_id)
        assert request.status == "completed"
        assert worker_storage.read(request.download_ref)

    def test_unknown_request_is_acknowledged(self, worker_session, worker_storage):
        export_worker.process_data_export.fn("export_missing_1")

    def test_cleanup_expired_exports(self, worker_session, worker_storage):
        export_worker.cleanup_expired_exports.fn()


class TestDeletionWorker:
    def test_due_deletion_is_executed(self, db, worker_session, worker_storage, broker):
        user = create_user(db)
        user_id = user.id
        request_id = scheduled_deletion(db, user, datetime(2020, 1, 31, tzinfo=timezone.utc))

        deletion_worker.process_scheduled_deletion.fn(request_id)

        assert db.get(DeletionRequest, request_id).status == "completed"
        assert db.get(User, user_id) is None

    def test_early_delivery_is_rearmed(self, db, worker_session, worker_storage, broker):
        user = create_user(db)
        request_id = scheduled_deletion(db, user, datetime(2999, 1, 1, tzinfo=timezone.utc))

        deletion_worker.process_scheduled_deletion.fn(request_id)

        assert db.get(DeletionRequest, request_id).status == "scheduled"
        assert broker.queues["default.DQ"].qsize() == 1

    def test_dispatch_due_deletions(self, db, worker_session, worker_storage, broker):
        user = create_user(db)
        scheduled_deletion(db, user, datetime(2020, 1, 31, tzinfo=timezone.utc))

        deletion_worker.dispatch_due_deletions.fn()

        assert broker.queues["default"].qsize() == 1


class TestAnalyticsWorker:
    def test_consume_session_stream(self, db, worker_session, worker_redis, event_queue, clock):
        user = create_user(db)
        session = create_training_session(db, user, session_id="session_1")
        db.commit()
        SessionStreamPublisher(event_queue, now=clock).publish_completed(session, user)

        analytics_worker.consume_session_stream.fn()

        assert db.get(AnalyticsSession, "session_1") is not None

    def test_consume_reclaims_abandoned_in_flight_messages(
        self, db, worker_session, worker_redis, event_queue, clock
    ):
        user = create_user(db)
        session = create_training_session(db, user, session_id="session_1")
        db.commit()
        SessionStreamPublisher(event_queue, now=clock).publish_completed(session, user)
        long_ago = utcnow() - timedelta(seconds=settings.inflight_visibility_timeout_seconds + 60)
        RedisEventQueue(worker_redis, now=lambda: long_ago).pull(settings.session_stream_queue, 10)

        analytics_worker.consume_session_stream.fn()

        assert db.get(AnalyticsSession, "session_1") is not None
        assert worker_redis.llen(f"{settings.session_stream_queue}:inflight") == 0

    def test_overlapping_run_leaves_held_messages_alone(self, db, worker_session, worker_redis, clock):
        user = create_user(db)
        session = create_training_session(db, user, session_id="session_1")
        db.commit()
        queue = RedisEventQueue(worker_redis)
        SessionStreamPublisher(queue, now=clock).publish_completed(session, user)
        [held] = queue.pull(settings.session_stream_queue, 10)

        analytics_worker.consume_session_stream.fn()
        queue.dead_letter(held, settings.session_dlq_queue, {"error": "boom"})

        assert db.get(AnalyticsSession, "session_1") is None
        assert queue.length(settings.session_stream_queue) == 0
        assert queue.length(settings.session_dlq_queue) == 1

    def test_daily_aggregation_with_date(self, db, worker_session):
        create_analytics_session(db, created_at=datetime(2026, 2, 10, 9, 0, tzinfo=timezone.utc))
        db.commit()

        analytics_worker.run_daily_aggregation.fn("2026-02-10")

        assert db.query(AggregatedStat).filter_by(period="daily", stat_date=date(2026, 2, 10)).count() == 1

    def test_weekly_aggregation_with_date(self, db, worker_session):
        create_analytics_session(db, created_at=datetime(2026, 2, 10, 9, 0, tzinfo=timezone.utc))
        db.commit()

        analytics_worker.run_weekly_aggregation.fn("2026-02-09")

        assert db.query(AggregatedStat).filter_by(period="weekly", stat_date=date(2026, 2, 9)).count() == 1

    def test_sweep_session_dlq(self, worker_redis, event_queue):
        event_queue.publish(settings.session_dlq_queue, {"sessionId": "session_1", "error": "x"}, {})

        analytics_worker.sweep_session_dlq.fn()

        assert event_queue.length(settings.session_dlq_queue) == 0
        assert event_queue.length(settings.session_stream_queue) == 1

    def test_sweep_during_session_recovery_republishes_once(self, worker_redis):
        queue = RedisEventQueue(worker_redis)
        queue.publish(settings.session_dlq_queue, {"sessionId": "session_1", "error": "x"}, {})
        recovery = DeadLetterRecovery(queue)
        republish = recovery._republish

        def sweep_then_republish(message):
            analytics_worker.sweep_session_dlq.fn()
            republish(message)

        with patch.object(recovery, "_republish", side_effect=sweep_then_republish):
            report = recovery.recover_session("session_1")

        assert report["succeeded"] == 1
        assert queue.length(settings.session_stream_queue) == 1
        assert queue.length(settings.session_dlq_queue) == 0
        assert worker_redis.llen(RedisEventQueue.inflight_key(settings.session_dlq_queue)) == 0
