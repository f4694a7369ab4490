"""
Daily and weekly aggregation of the analytics store.

Each run rebuilds one partition, ``(period, stat_date)``, by deleting its rows
and re-inserting them from the raw session rows in the same transaction.
Reruns and backfills therefore produce the same rows as the first run.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.database import utcnow
from app.models import AggregatedStat, AnalyticsSession

logger = logging.getLogger(__name__)


def week_start_for(day: date) -> date:
    """Monday of the ISO week containing ``day``."""
    return day - timedelta(days=day.weekday())


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


class AnalyticsAggregator:
    def __init__(self, db: Session, now: Callable[[], datetime] = utcnow):
        self.db = db
        self.now = now

    def run_daily(self, stat_date: date | None = None) -> int:
        """Rebuild the daily partition; defaults to yesterday (UTC)."""
        stat_date = stat_date or (self.now().date() - timedelta(days=1))
        start = _day_start(stat_date)
        return self._rebuild("daily", stat_date, start, start + timedelta(days=1))

    def run_weekly(self, week_start: date | None = None) -> int:
        """Rebuild the weekly partition; defaults to the previous full week."""
        if week_start is None:
            week_start = week_start_for(self.now().date()) - timedelta(days=7)
        week_start = week_start_for(week_start)
        start = _day_start(week_start)
        return self._rebuild("weekly", week_start, start, start + timedelta(days=7))

    def _rebuild(self, period: str, stat_date: date, start: datetime, end: datetime) -> int:
        try:
            deleted = (
                self.db.query(AggregatedStat)
                .filter(AggregatedStat.period == period, AggregatedStat.stat_date == stat_date)
                .delete(synchronize_session=False)
            )

            rows = (
                self.db.query(
                    AnalyticsSession.exercise_id,
                    AnalyticsSession.age_group,
                    func.count(AnalyticsSession.session_id),
                    func.count(func.distinct(AnalyticsSession.user_id_hash)),
                    func.coalesce(func.sum(AnalyticsSession.duration_seconds), 0),
                    func.avg(AnalyticsSession.average_score),
                    func.avg(AnalyticsSession.rep_count),
                )
                .filter(
                    AnalyticsSession.created_at >= start,
                    AnalyticsSession.created_at < end,
                    AnalyticsSession.is_deleted.is_(False),
                )
                .group_by(AnalyticsSession.exercise_id, AnalyticsSession.age_group)
                .all()
            )

            created_at = self.now()
            for exercise_id, segment, sessions, users, duration, avg_score, avg_reps in rows:
                self.db.add(
                    AggregatedStat(
                        period=period,
                        stat_date=stat_date,
                        exercise_id=exercise_id,
                        segment=segment or "unknown",
                        total_sessions=sessions,
                        total_users=users,
                        total_duration_seconds=int(duration or 0),
                        average_score=round(float(avg_score), 4) if avg_score is not None else None,
                        average_rep_count=round(float(avg_reps), 4) if avg_reps is not None else None,
                        created_at=created_at,
                    )
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception("%s aggregation for %s failed", period, stat_date)
            raise

        logger.info(
            "%s aggregation for %s: replaced %d rows with %d", period, stat_date, deleted, len(rows)
        )
        return len(rows)

    def stats_for(self, period: str, stat_date: date) -> list[AggregatedStat]:
        return (
            self.db.query(AggregatedStat)
            .filter(AggregatedStat.period == period, AggregatedStat.stat_date == stat_date)
            .order_by(AggregatedStat.exercise_id, AggregatedStat.segment)
            .all()
        )
