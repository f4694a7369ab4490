"""CLI commands for operating the data-lifecycle pipeline."""

import argparse
import getpass
import json
import logging
import sys
from datetime import date

from sqlalchemy.orm import Session

from app.config import settings
from app.database import SessionLocal
from app.errors import NotFoundError
from app.models.user import User
from app.redis_client import get_redis
from app.services.analytics_aggregation import AnalyticsAggregator
from app.services.auth import get_identity_provider
from app.services.deletion_service import DeletionOrchestrator
from app.services.dlq_recovery import DeadLetterRecovery
from app.services.event_queue import RedisEventQueue
from app.services.export_storage import get_export_storage
from app.services.session_stream import SessionStreamConsumer
from app.services.task_scheduler import get_task_scheduler

logger = logging.getLogger(__name__)


def create_admin(email: str, password: str | None = None) -> None:
    """Create an admin user."""
    db: Session = SessionLocal()

    try:
        # Check if email already exists
        existing = db.query(User).filter(User.email == email.lower()).first()
        if existing:
            print(f"Error: User with email '{email}' already exists.")
            sys.exit(1)

        # Get password if not provided
        if not password:
            password = getpass.getpass("Password: ")
            password_confirm = getpass.getpass("Confirm password: ")
            if password != password_confirm:
                print("Error: Passwords do not match.")
                sys.exit(1)

        if len(password) < 8:
            print("Error: Password must be at least 8 characters.")
            sys.exit(1)

        get_identity_provider().create_user(db, email, password, is_admin=True)
        print(f"Admin user created successfully: {email}")

    finally:
        db.close()


def consume_sessions(max_messages: int) -> dict:
    """Drain one batch of the session stream into the analytics store."""
    queue = RedisEventQueue(get_redis())
    queue.restore_inflight(settings.session_stream_queue)
    db: Session = SessionLocal()
    try:
        return SessionStreamConsumer(db, queue).consume(max_messages)
    finally:
        db.close()


def sweep_dlq(max_messages: int) -> dict:
    return DeadLetterRecovery(RedisEventQueue(get_redis())).sweep(max_messages)


def recover_session(session_id: str) -> dict:
    return DeadLetterRecovery(RedisEventQueue(get_redis())).recover_session(session_id)


def aggregate(period: str, stat_date: date | None) -> int:
    db: Session = SessionLocal()
    try:
        aggregator = AnalyticsAggregator(db)
        if period == "weekly":
            return aggregator.run_weekly(stat_date)
        return aggregator.run_daily(stat_date)
    finally:
        db.close()


def dispatch_due_deletions() -> int:
    db: Session = SessionLocal()
    try:
        return DeletionOrchestrator(
            db,
            scheduler=get_task_scheduler(),
            storage=get_export_storage(),
            identity_provider=get_identity_provider(),
        ).dispatch_due_deletions()
    finally:
        db.close()


def main(argv=None):
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    parser = argparse.ArgumentParser(description="Fitness data-lifecycle CLI")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # create-admin command
    create_admin_parser = subparsers.add_parser(
        "create-admin", help="Create an admin user"
    )
    create_admin_parser.add_argument(
        "--email", required=True, help="Admin email address"
    )
    create_admin_parser.add_argument(
        "--password", help="Admin password (will prompt if not provided)"
    )

    consume_parser = subparsers.add_parser(
        "consume-sessions", help="Drain one batch of the session analytics stream"
    )
    consume_parser.add_argument("--max-messages", type=int, default=settings.stream_batch_size)

    sweep_parser = subparsers.add_parser(
        "sweep-dlq", help="Republish dead-lettered session events"
    )
    sweep_parser.add_argument("--max-messages", type=int, default=settings.dlq_max_messages_per_run)

    recover_parser = subparsers.add_parser(
        "recover-session", help="Republish the dead-lettered events of one session"
    )
    recover_parser.add_argument("session_id")

    aggregate_parser = subparsers.add_parser(
        "aggregate", help="Rebuild daily or weekly analytics aggregates"
    )
    aggregate_parser.add_argument("--period", choices=["daily", "weekly"], default="daily")
    aggregate_parser.add_argument(
        "--date", type=date.fromisoformat, help="Day (daily) or any day of the week (weekly), YYYY-MM-DD"
    )

    subparsers.add_parser(
        "dispatch-due-deletions", help="Re-send jobs for overdue and stalled deletions"
    )

    args = parser.parse_args(argv)

    if args.command == "create-admin":
        create_admin(args.email, args.password)
    elif args.command == "consume-sessions":
        print(json.dumps(consume_sessions(args.max_messages)))
    elif args.command == "sweep-dlq":
        print(json.dumps(sweep_dlq(args.max_messages)))
    elif args.command == "recover-session":
        try:
            print(json.dumps(recover_session(args.session_id)))
        except NotFoundError as e:
            print(f"Error: {e.message}")
            sys.exit(1)
    elif args.command == "aggregate":
        rows = aggregate(args.period, args.date)
        print(f"{args.period} aggregation wrote {rows} rows")
    elif args.command == "dispatch-due-deletions":
        print(f"Dispatched {dispatch_due_deletions()} deletion jobs")
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
