"""Tests for metric polling."""

from datetime import datetime, timedelta, timezone

import pytest

from app.config import settings
from app.models.metric_models import Metric, utc_now
from app.pipeline.tasks import supervisor
from app.scheduler import jobs
from factories import make_metric, reload


class TestCalculateNextPoll:
    def test_known_and_unknown_frequencies(self):
        now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert jobs.calculate_next_poll("frequent", now) == now + timedelta(minutes=15)
        assert jobs.calculate_next_poll("weekly", now) == now + timedelta(days=7)
        assert jobs.calculate_next_poll("sometimes", now) == now + timedelta(days=1)


class TestPollDueMetrics:
    @pytest.mark.asyncio
    async def test_starts_due_metrics_and_skips_busy_ones(self, session, nango):
        now = utc_now()
        make_metric(session, metric_id="due", poll_frequency="hourly", next_poll_at=now - timedelta(minutes=1))
        make_metric(
            session,
            metric_id="busy",
            next_poll_at=now - timedelta(minutes=5),
            refresh_status="fetching-api-data",
            refresh_run_id="someone-else",
            refresh_started_at=now,
        )
        make_metric(session, metric_id="later", next_poll_at=now + timedelta(hours=1))
        make_metric(session, metric_id="manual", poll_frequency="manual", next_poll_at=now - timedelta(hours=1))
        make_metric(session, metric_id="no-template", template_id=None, next_poll_at=now - timedelta(hours=1))

        results = jobs.poll_due_metrics(session, now=now)

        assert results == {"processed": 2, "started": 1, "skipped": 1}
        assert reload(session, Metric, "due").refresh_status == "fetching-api-data"
        assert reload(session, Metric, "due").next_poll_at == now + timedelta(hours=1)
        assert reload(session, Metric, "busy").refresh_run_id == "someone-else"
        assert reload(session, Metric, "later").refresh_status is None

        await supervisor.join()
        assert reload(session, Metric, "due").last_fetched_at is not None

    @pytest.mark.asyncio
    async def test_nothing_due(self, session):
        make_metric(session, next_poll_at=None)
        assert jobs.poll_due_metrics(session) == {"processed": 0, "started": 0, "skipped": 0}
        assert supervisor.active_count == 0


class TestSchedulerLifecycle:
    def test_disabled(self, monkeypatch):
        monkeypatch.setattr(settings, "scheduler_enabled", False)
        jobs.start_scheduler()
        assert jobs.scheduler.get_job("poll_metrics") is None

    @pytest.mark.asyncio
    async def test_registers_poll_job(self, monkeypatch):
        monkeypatch.setattr(settings, "scheduler_enabled", True)
        jobs.start_scheduler()
        try:
            job = jobs.scheduler.get_job("poll_metrics")
            assert job is not None
            assert job.trigger.interval == timedelta(minutes=settings.poll_interval_minutes)
        finally:
            jobs.scheduler.remove_all_jobs()
            jobs.stop_scheduler()
