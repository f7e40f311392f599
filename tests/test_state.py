"""Tests for the pipeline run state machine."""

from datetime import timedelta

import pytest
from sqlmodel import select

from app.config import settings
from app.core.pipeline_steps import PipelineStep
from app.models.log_models import MetricApiLog
from app.models.metric_models import Metric, utc_now
from app.pipeline import state
from factories import make_metric, reload


class TestCurrentState:
    def test_variants(self, session):
        metric = make_metric(session)
        assert state.current_state(metric) == state.Idle()

        metric.last_error = "boom"
        assert state.current_state(metric) == state.Failed("boom")

        metric.refresh_status = "fetching-api-data"
        assert isinstance(state.current_state(metric), state.Running)


class TestBeginRun:
    def test_claims_idle_metric(self, session):
        metric = make_metric(session, last_error="old failure")
        run_id = state.begin_run(session, metric, PipelineStep.FETCHING_API_DATA)

        metric = reload(session, Metric, "m1")
        assert metric.refresh_status == "fetching-api-data"
        assert metric.refresh_run_id == run_id
        assert metric.last_error is None
        assert metric.refresh_started_at.tzinfo is not None

        event = session.exec(select(MetricApiLog).where(MetricApiLog.run_id == run_id)).one()
        assert event.endpoint == "pipeline-step:fetching-api-data"

    def test_rejects_second_run(self, session):
        metric = make_metric(session)
        first = state.begin_run(session, metric, PipelineStep.FETCHING_API_DATA)

        with pytest.raises(state.RunConflictError):
            state.begin_run(session, metric, PipelineStep.DELETING_OLD_DATA)

        metric = reload(session, Metric, "m1")
        assert metric.refresh_status == "fetching-api-data"
        assert metric.refresh_run_id == first

    def test_stale_run_taken_over(self, session):
        metric = make_metric(
            session,
            refresh_status="executing-ingestion-transformer",
            refresh_run_id="crashed",
            refresh_started_at=utc_now() - timedelta(seconds=settings.pipeline_stale_after_seconds + 60),
        )
        run_id = state.begin_run(session, metric, PipelineStep.DELETING_OLD_DATA)

        metric = reload(session, Metric, "m1")
        assert metric.refresh_run_id == run_id
        assert metric.refresh_status == "deleting-old-data"

    def test_concurrent_runs_allowed_when_configured(self, session, monkeypatch):
        monkeypatch.setattr(settings, "pipeline_allow_concurrent_runs", True)
        metric = make_metric(session)
        state.begin_run(session, metric, PipelineStep.FETCHING_API_DATA)
        second = state.begin_run(session, metric, PipelineStep.DELETING_OLD_DATA)

        assert reload(session, Metric, "m1").refresh_run_id == second


class TestRunScoping:
    def test_superseded_run_cannot_write(self, session):
        metric = make_metric(
            session,
            refresh_status="fetching-api-data",
            refresh_run_id="old-run",
            refresh_started_at=utc_now() - timedelta(hours=1),
        )
        new_run = state.begin_run(session, metric, PipelineStep.FETCHING_API_DATA)

        assert state.advance(session, "m1", "old-run", PipelineStep.SAVING_TIMESERIES_DATA) is False
        assert state.finish(session, "m1", "old-run", error="late failure") is False

        metric = reload(session, Metric, "m1")
        assert metric.refresh_status == "fetching-api-data"
        assert metric.refresh_run_id == new_run
        assert metric.last_error is None

    def test_finish_success_sets_fetched_at(self, session):
        metric = make_metric(session)
        before = utc_now()
        run_id = state.begin_run(session, metric, PipelineStep.FETCHING_API_DATA)
        state.advance(session, "m1", run_id, PipelineStep.SAVING_TIMESERIES_DATA)
        assert state.finish(session, "m1", run_id, fetched=True) is True

        metric = reload(session, Metric, "m1")
        assert state.current_state(metric) == state.Idle()
        assert metric.last_fetched_at >= before
        assert metric.refresh_run_id is None

    def test_finish_with_error(self, session):
        metric = make_metric(session)
        run_id = state.begin_run(session, metric, PipelineStep.FETCHING_API_DATA)
        state.finish(session, "m1", run_id, error="Failed to fetch data: boom", fetched=True)

        metric = reload(session, Metric, "m1")
        assert state.current_state(metric) == state.Failed("Failed to fetch data: boom")
        assert metric.last_fetched_at is None

    def test_advance_on_idle_metric_is_rejected(self, session):
        make_metric(session)
        assert state.advance(session, "m1", "nope", PipelineStep.SAVING_CHART_CONFIG) is False
        assert reload(session, Metric, "m1").refresh_status is None
