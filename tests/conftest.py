"""
Test configuration and fixtures for the data-lifecycle backend.

- SQLite in-memory engine per test (or TEST_DATABASE_URL for PostgreSQL)
- fakeredis for the rate limiter and the event queue
- Dramatiq StubBroker for scheduled jobs
- TestClient with database, Redis, scheduler and storage overrides
- A controllable clock for services that take ``now``
"""

import os

# Settings are read at import time; these must be in place before app imports
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DRAMATIQ_BROKER", "stub")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

from datetime import datetime, timedelta, timezone
from typing import Generator

import dramatiq
import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base, get_db
from app.main import app
from app.redis_client import get_redis
from app.services.event_queue import RedisEventQueue
from app.services.export_storage import LocalExportStorage, get_export_storage
from app.services.rate_limiter import RateLimiter
from app.services.task_scheduler import TaskScheduler, get_task_scheduler
from tests.factories import create_session, create_user


# =============================================================================
# Clock
# =============================================================================


class FakeClock:
    """Callable clock for services; advance it to move through grace periods."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current += timedelta(**delta)
        return self.current


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def test_engine():
    """Fresh schema per test."""
    database_url = os.environ.get("TEST_DATABASE_URL")
    if database_url:
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    """Stands in for ``SessionLocal`` in workers and CLI commands."""
    return sessionmaker(bind=test_engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Infrastructure Fixtures
# =============================================================================


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def rate_limiter(redis_client, clock) -> RateLimiter:
    return RateLimiter(redis_client, now=clock)


@pytest.fixture
def event_queue(redis_client, clock) -> RedisEventQueue:
    return RedisEventQueue(redis_client, now=clock)


@pytest.fixture
def storage(tmp_path) -> LocalExportStorage:
    return LocalExportStorage(
        base_dir=str(tmp_path / "exports"),
        secret="test-export-secret",
        base_url="http://testserver",
    )


@pytest.fixture
def broker():
    """The stub broker with every lifecycle actor declared, emptied per test."""
    get_task_scheduler()
    stub = dramatiq.get_broker()
    stub.flush_all()
    yield stub
    stub.flush_all()


@pytest.fixture
def scheduler(broker, clock) -> TaskScheduler:
    return TaskScheduler(broker, now=clock)


# =============================================================================
# TestClient Fixtures
# =============================================================================


@pytest.fixture
def client(db: Session, redis_client, storage, broker) -> Generator[TestClient, None, None]:
    """TestClient with database, Redis, broker and storage overrides."""

    def override_get_db():
        try:
            yield db
        finally:
            pass  # Don't close - managed by db fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: redis_client
    app.dependency_overrides[get_export_storage] = lambda: storage

    with TestClient(app) as test_client:
        # Set default Referer so CSRF Origin middleware allows requests
        test_client.headers["referer"] = "http://testserver/"
        yield test_client

    app.dependency_overrides.clear()


# =============================================================================
# Authentication Fixtures
# =============================================================================


@pytest.fixture
def test_user(db: Session):
    user = create_user(db, email="testuser@example.com", birth_year=1990)
    db.commit()
    return user


@pytest.fixture
def admin_user(db: Session):
    user = create_user(db, email="admin@example.com", is_admin=True)
    db.commit()
    return user


@pytest.fixture
def auth_headers(db: Session, test_user) -> dict:
    session = create_session(db, test_user)
    db.commit()
    return {"Authorization": f"Bearer {session.token}"}


@pytest.fixture
def admin_headers(db: Session, admin_user) -> dict:
    session = create_session(db, admin_user)
    db.commit()
    return {"Authorization": f"Bearer {session.token}"}
