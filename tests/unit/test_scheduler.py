"""Tests for the periodic job trigger."""
from datetime import datetime, timezone

from app.scheduler import build_scheduler, scheduled_jobs

START = datetime(2026, 3, 1, 0, 0, tzinfo=timezone.utc)  # Sunday


def next_fire(job_id):
    trigger = {job: trigger for job, _, trigger in scheduled_jobs()}[job_id]
    return trigger.get_next_fire_time(None, START)


class TestScheduledJobs:
    def test_every_periodic_job_is_registered(self):
        scheduler = build_scheduler()

        assert {job.id for job in scheduler.get_jobs()} == {
            "consume_session_stream",
            "daily_aggregation",
            "weekly_aggregation",
            "dlq_sweep",
            "due_deletion_sweep",
            "export_cleanup",
        }

    def test_jobs_do_not_overlap(self):
        for job in build_scheduler().get_jobs():
            assert job.max_instances == 1
            assert job.coalesce is True

    def test_daily_aggregation_runs_at_two_utc(self):
        assert next_fire("daily_aggregation") == datetime(2026, 3, 1, 2, 0, tzinfo=timezone.utc)

    def test_weekly_aggregation_runs_monday(self):
        assert next_fire("weekly_aggregation") == datetime(2026, 3, 2, 3, 0, tzinfo=timezone.utc)

    def test_due_deletion_sweep_is_hourly(self):
        assert next_fire("due_deletion_sweep") == datetime(2026, 3, 1, 0, 15, tzinfo=timezone.utc)

    def test_jobs_enqueue_actors(self):
        names = {job.name for job in build_scheduler().get_jobs()}
        assert "process_scheduled_deletion" not in names
        assert "dispatch_due_deletions" in names
