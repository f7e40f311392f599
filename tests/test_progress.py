"""Tests for progress reconstruction and metric introspection queries."""

from datetime import datetime, timedelta

from app.models.log_models import MetricApiLog
from app.models.metric_models import utc_now
from app.models.pipeline_models import IngestionDefinition
from app.pipeline import progress
from app.transformation.store import upsert_ingestion_transformer
from factories import make_chart, make_metric, make_points


def add_step_event(session, metric_id, step, at, run_id=None, success=True):
    session.add(
        MetricApiLog(
            metric_id=metric_id,
            run_id=run_id,
            endpoint=f"pipeline-step:{step}",
            success=success,
            fetched_at=at,
        )
    )
    session.commit()


class TestGetProgress:
    def test_idle_reports_last_error(self, session):
        metric = make_metric(session, last_error="Failed to fetch data: 401")
        result = progress.get_progress(session, metric)

        assert result.is_processing is False
        assert result.current_step is None
        assert result.completed_steps == []
        assert result.error == "Failed to fetch data: 401"

    def test_active_step_excluded_and_durations_computed(self, session):
        metric = make_metric(session, refresh_status="saving-timeseries-data")
        t0 = utc_now() - timedelta(seconds=30)
        add_step_event(session, "m1", "fetching-api-data", t0)
        add_step_event(session, "m1", "saving-timeseries-data", t0 + timedelta(milliseconds=2000))

        result = progress.get_progress(session, metric)

        assert result.is_processing is True
        assert result.current_step == "saving-timeseries-data"
        assert result.current_step_display_name == "Saving metric data..."
        assert result.error is None
        assert [(s.step, s.duration_ms) for s in result.completed_steps] == [
            ("fetching-api-data", 2000)
        ]
        assert result.completed_steps[0].display_name == "Fetching data from API..."

    def test_events_outside_window_ignored(self, session):
        metric = make_metric(session, refresh_status="saving-timeseries-data")
        add_step_event(session, "m1", "deleting-old-data", utc_now() - timedelta(minutes=10))
        add_step_event(session, "m1", "saving-timeseries-data", utc_now())

        assert progress.get_progress(session, metric).completed_steps == []

    def test_scoped_to_current_run(self, session):
        metric = make_metric(
            session, refresh_status="executing-ingestion-transformer", refresh_run_id="run-2"
        )
        t0 = utc_now() - timedelta(seconds=20)
        add_step_event(session, "m1", "fetching-api-data", t0, run_id="run-1", success=False)
        add_step_event(session, "m1", "fetching-api-data", t0 + timedelta(seconds=5), run_id="run-2")
        add_step_event(
            session, "m1", "executing-ingestion-transformer", t0 + timedelta(seconds=6), run_id="run-2"
        )

        steps = progress.get_progress(session, metric).completed_steps
        assert [(s.step, s.duration_ms, s.status) for s in steps] == [
            ("fetching-api-data", 1000, "completed")
        ]

    def test_serializes_camel_case(self, session):
        metric = make_metric(session)
        dumped = progress.get_progress(session, metric).model_dump(by_alias=True)
        assert set(dumped) >= {"isProcessing", "currentStep", "completedSteps", "error"}


class TestAvailableDimensions:
    def test_no_dimensions(self, session):
        metric = make_metric(session)
        make_points(session, metric, 5)
        assert progress.get_available_dimensions(session, "m1") == []

    def test_union_of_sampled_keys(self, session):
        metric = make_metric(session)
        make_points(
            session,
            metric,
            100,
            dimensions=lambda i: {"region": "eu"} if i % 2 else {"region": "us", "device": "mobile"},
        )
        assert set(progress.get_available_dimensions(session, "m1")) == {"region", "device"}

    def test_points_without_dimensions_do_not_use_up_sample(self, session):
        metric = make_metric(session)
        make_points(session, metric, 150)
        make_points(session, metric, 1, start=datetime(2023, 6, 1), dimensions={"plan": "pro"})
        assert progress.get_available_dimensions(session, "m1") == ["plan"]


class TestTransformerInfo:
    def test_empty_metric(self, session):
        metric = make_metric(session)
        info = progress.get_transformer_info(session, metric)

        assert info.ingestion_transformer.exists is False
        assert info.chart_transformer.exists is False
        assert info.data_points.count == 0
        assert info.data_points.first_date is None

    def test_populated_metric(self, session):
        metric = make_metric(session)
        chart = make_chart(session, metric)
        make_points(session, metric, 3)
        upsert_ingestion_transformer(session, "m1", IngestionDefinition(value_field="total"), "heuristic")

        info = progress.get_transformer_info(session, metric, chart.id)

        assert info.ingestion_transformer.exists is True
        assert info.ingestion_transformer.created_at is not None
        assert info.data_points.count == 3
        assert info.data_points.first_date.day == 1
        assert info.data_points.last_date.day == 3
