"""Tests for the pipeline orchestrator — synchronous validation and background runs.

Background tasks are awaited through the supervisor before asserting on
their outcome.
"""

from datetime import datetime

import pytest
from fastapi import HTTPException
from sqlmodel import select

from app.connectors.nango.client import NangoAPIError
from app.core.cache import dashboard_cache
from app.models.log_models import MetricApiLog
from app.models.metric_models import DashboardChart, Metric, MetricDataPoint, utc_now
from app.models.pipeline_models import Cadence, ChartType, IngestionDefinition, RegenerateChartRequest
from app.models.transformer_models import ChartTransformer, DataIngestionTransformer
from app.pipeline import orchestrator
from app.pipeline.tasks import supervisor
from app.transformation.store import upsert_ingestion_transformer
from factories import make_chart, make_metric, make_points, reload


def events(session, metric_id, prefix):
    session.expire_all()
    return session.exec(
        select(MetricApiLog)
        .where(MetricApiLog.metric_id == metric_id, MetricApiLog.endpoint.startswith(prefix))
        .order_by(MetricApiLog.id)
    ).all()


def point_count(session, metric_id):
    session.expire_all()
    return len(
        session.exec(select(MetricDataPoint).where(MetricDataPoint.metric_id == metric_id)).all()
    )


class TestRefresh:
    """Soft refresh."""

    @pytest.mark.asyncio
    async def test_progress_reports_initial_step_immediately(self, session, nango):
        make_metric(session)
        result = orchestrator.refresh(session, "m1", "org1")

        assert result.success is True and result.started is True
        progress = orchestrator.get_progress(session, "m1", "org1")
        assert progress.is_processing is True
        assert progress.current_step == "fetching-api-data"

        await supervisor.join()

    @pytest.mark.asyncio
    async def test_success_clears_status_and_stamps_fetch(self, session, nango):
        make_metric(session)
        before = utc_now()
        orchestrator.refresh(session, "m1", "org1")
        await supervisor.join()

        metric = reload(session, Metric, "m1")
        progress = orchestrator.get_progress(session, "m1", "org1")
        assert progress.is_processing is False
        assert progress.error is None
        assert metric.last_fetched_at >= before
        assert point_count(session, "m1") == 3
        assert session.exec(select(DataIngestionTransformer)).one().template_id == "m1"
        assert len(events(session, "m1", "pipeline-run:complete")) == 1
        assert nango.calls[0]["params"] == {"OWNER": "acme", "REPO": "api"}

    @pytest.mark.asyncio
    async def test_generation_failure_surfaces_error(self, session, nango):
        nango.payload = {"message": "Not Found"}
        make_metric(session)
        orchestrator.refresh(session, "m1", "org1")
        await supervisor.join()

        progress = orchestrator.get_progress(session, "m1", "org1")
        assert progress.is_processing is False
        assert progress.error == "Could not find a numeric value in the API response"
        assert point_count(session, "m1") == 0
        assert len(events(session, "m1", "transformer:generate-ingestion:error")) == 1
        assert len(events(session, "m1", "pipeline-run:error")) == 1

    @pytest.mark.asyncio
    async def test_fetch_failure_surfaces_error(self, session, nango):
        nango.payload = NangoAPIError("Bad credentials", 401)
        make_metric(session)
        orchestrator.refresh(session, "m1", "org1")
        await supervisor.join()

        metric = reload(session, Metric, "m1")
        assert metric.refresh_status is None
        assert metric.last_error == "Failed to fetch data: Bad credentials"
        assert metric.last_fetched_at is None
        audit = events(session, "m1", "/repos/")
        assert len(audit) == 1 and audit[0].success is False

    @pytest.mark.asyncio
    async def test_reuses_stored_transformer(self, session, nango):
        make_metric(session)
        upsert_ingestion_transformer(
            session,
            "m1",
            IngestionDefinition(timestamp_field="week", timestamp_unit="unix", value_field="total"),
            "stored",
        )
        orchestrator.refresh(session, "m1", "org1")
        await supervisor.join()

        session.expire_all()
        assert session.exec(select(DataIngestionTransformer)).one().provider == "stored"
        assert events(session, "m1", "transformer:generate-ingestion") == []
        assert point_count(session, "m1") == 3

    @pytest.mark.asyncio
    async def test_second_refresh_while_running_conflicts(self, session, nango):
        make_metric(session)
        orchestrator.refresh(session, "m1", "org1")
        run_id = reload(session, Metric, "m1").refresh_run_id

        with pytest.raises(HTTPException) as exc:
            orchestrator.refresh(session, "m1", "org1")
        assert exc.value.status_code == 409

        metric = reload(session, Metric, "m1")
        assert metric.refresh_status == "fetching-api-data"
        assert metric.refresh_run_id == run_id
        await supervisor.join()

    @pytest.mark.asyncio
    async def test_other_organization_gets_not_found(self, session, nango):
        make_metric(session)
        with pytest.raises(HTTPException) as exc:
            orchestrator.refresh(session, "m1", "someone-else")
        assert exc.value.status_code == 404
        assert reload(session, Metric, "m1").refresh_status is None

    @pytest.mark.asyncio
    async def test_updates_existing_charts_and_invalidates_cache(self, session, nango):
        metric = make_metric(session)
        make_chart(session, metric)
        dashboard_cache.set("charts:org1:*", ["stale"], tags=["dashboard_org_org1"])

        orchestrator.refresh(session, "m1", "org1")
        await supervisor.join()

        chart = reload(session, DashboardChart, "c1")
        assert chart.chart_config["chartType"] == "line"
        assert len(chart.chart_config["chartData"]) == 3
        assert dashboard_cache.get("charts:org1:*") is None

    @pytest.mark.asyncio
    async def test_manual_metric_rebuilds_charts_without_fetching(self, session, nango):
        metric = make_metric(session, template_id=None)
        make_chart(session, metric, chart_type="kpi")
        make_points(session, metric, 4)

        orchestrator.refresh(session, "m1", "org1")
        await supervisor.join()

        assert nango.calls == []
        chart = reload(session, DashboardChart, "c1")
        assert chart.chart_config["chartData"][0]["value"] == 4.0
        assert reload(session, Metric, "m1").last_error is None


class TestRegenerate:
    """Hard refresh."""

    @pytest.mark.asyncio
    async def test_sets_initial_status(self, session, nango):
        make_metric(session)
        orchestrator.regenerate(session, "m1", "org1")
        assert orchestrator.get_progress(session, "m1", "org1").current_step == "deleting-old-data"
        await supervisor.join()

    @pytest.mark.asyncio
    async def test_wipes_data_and_bumps_chart_version(self, session, nango):
        metric = make_metric(session)
        make_chart(session, metric)
        make_points(session, metric, 10, start=datetime(2023, 3, 1))

        orchestrator.refresh(session, "m1", "org1")
        await supervisor.join()
        assert point_count(session, "m1") == 13
        assert session.exec(select(ChartTransformer)).one().version == 1

        orchestrator.regenerate(session, "m1", "org1")
        await supervisor.join()

        session.expire_all()
        assert point_count(session, "m1") == 3
        assert session.exec(select(ChartTransformer)).one().version == 2
        steps = [e.endpoint for e in events(session, "m1", "pipeline-step:")]
        assert "pipeline-step:deleting-old-transformer" in steps
        assert steps[-1] == "pipeline-step:saving-chart-config"
        assert reload(session, Metric, "m1").last_error is None


class TestRegenerateIngestionOnly:
    @pytest.mark.asyncio
    async def test_manual_metric_is_bad_request(self, session):
        make_metric(session, template_id=None)
        with pytest.raises(HTTPException) as exc:
            orchestrator.regenerate_ingestion_only(session, "m1", "org1")

        assert exc.value.status_code == 400
        assert reload(session, Metric, "m1").refresh_status is None
        assert supervisor.active_count == 0

    @pytest.mark.asyncio
    async def test_missing_integration_is_not_found(self, session):
        make_metric(session, with_integration=False)
        with pytest.raises(HTTPException) as exc:
            orchestrator.regenerate_ingestion_only(session, "m1", "org1")
        assert exc.value.status_code == 404

    @pytest.mark.asyncio
    async def test_twice_in_sequence(self, session, nango):
        make_metric(session)
        for _ in range(2):
            orchestrator.regenerate_ingestion_only(session, "m1", "org1")
            assert reload(session, Metric, "m1").refresh_status == "deleting-old-transformer"
            await supervisor.join()

            metric = reload(session, Metric, "m1")
            assert metric.refresh_status is None
            assert metric.last_error is None

        assert len(events(session, "m1", "transformer:regenerate-ingestion:complete")) == 2
        assert events(session, "m1", "transformer:regenerate-ingestion:error") == []
        assert session.exec(select(DataIngestionTransformer)).one() is not None


class TestRegenerateChartOnly:
    @pytest.mark.asyncio
    async def test_no_chart_is_not_found(self, session):
        metric = make_metric(session)
        make_points(session, metric, 5)
        with pytest.raises(HTTPException) as exc:
            orchestrator.regenerate_chart_only(session, "m1", "org1")
        assert exc.value.status_code == 404

    @pytest.mark.asyncio
    async def test_no_data_points_is_bad_request(self, session):
        metric = make_metric(session)
        make_chart(session, metric)
        with pytest.raises(HTTPException) as exc:
            orchestrator.regenerate_chart_only(
                session, "m1", "org1", RegenerateChartRequest(chart_type=ChartType.BAR)
            )

        assert exc.value.status_code == 400
        assert reload(session, Metric, "m1").refresh_status is None
        assert supervisor.active_count == 0

    @pytest.mark.asyncio
    async def test_rebuilds_chart_with_requested_type(self, session):
        metric = make_metric(session, metric_id="m2")
        make_chart(session, metric, chart_id="c1")
        make_points(session, metric, 5)

        orchestrator.regenerate_chart_only(
            session, "m2", "org1", RegenerateChartRequest(chart_type=ChartType.BAR)
        )
        assert reload(session, Metric, "m2").refresh_status == "deleting-old-transformer"
        await supervisor.join()

        assert reload(session, Metric, "m2").refresh_status is None
        transformer = session.exec(
            select(ChartTransformer).where(ChartTransformer.dashboard_chart_id == "c1")
        ).one()
        assert transformer.chart_type == "bar"
        chart = reload(session, DashboardChart, "c1")
        assert chart.chart_type == "bar"
        assert chart.chart_config["chartType"] == "bar"
        assert len(events(session, "m2", "transformer:regenerate-chart:complete")) == 1

    @pytest.mark.asyncio
    async def test_keeps_previous_settings_and_bumps_version(self, session):
        metric = make_metric(session)
        make_chart(session, metric)
        make_points(session, metric, 20, dimensions=lambda i: {"region": "eu" if i % 2 else "us"})

        orchestrator.regenerate_chart_only(
            session,
            "m1",
            "org1",
            RegenerateChartRequest(chart_type=ChartType.AREA, cadence=Cadence.WEEKLY, selected_dimension="region"),
        )
        await supervisor.join()
        orchestrator.regenerate_chart_only(session, "m1", "org1")
        await supervisor.join()

        session.expire_all()
        transformer = session.exec(select(ChartTransformer)).one()
        assert transformer.version == 2
        assert transformer.chart_type == "area"
        assert transformer.cadence == "WEEKLY"
        assert transformer.selected_dimension == "region"
        chart = reload(session, DashboardChart, "c1")
        assert set(chart.chart_config["dataKeys"]) == {"eu", "us"}

    @pytest.mark.asyncio
    async def test_explicit_null_dimension_clears_breakdown(self, session):
        metric = make_metric(session)
        make_chart(session, metric)
        make_points(session, metric, 10, dimensions=lambda i: {"region": "eu" if i % 2 else "us"})

        orchestrator.regenerate_chart_only(
            session, "m1", "org1", RegenerateChartRequest(selected_dimension="region")
        )
        await supervisor.join()
        orchestrator.regenerate_chart_only(
            session, "m1", "org1", RegenerateChartRequest(selected_dimension=None)
        )
        await supervisor.join()

        session.expire_all()
        transformer = session.exec(select(ChartTransformer)).one()
        assert transformer.selected_dimension is None
        assert reload(session, DashboardChart, "c1").chart_config["dataKeys"] == ["value"]

    @pytest.mark.asyncio
    async def test_unrecognised_stored_chart_type_falls_back_to_line(self, session):
        metric = make_metric(session)
        make_chart(session, metric, chart_type="sparkline")
        make_points(session, metric, 5)

        orchestrator.regenerate_chart_only(session, "m1", "org1")
        await supervisor.join()

        metric = reload(session, Metric, "m1")
        assert metric.last_error is None
        transformer = session.exec(select(ChartTransformer)).one()
        assert transformer.chart_type == "line"


class TestQueries:
    def test_dimensions(self, session):
        metric = make_metric(session)
        make_points(session, metric, 3, dimensions={"region": "eu"})
        assert orchestrator.get_available_dimensions(session, "m1", "org1") == ["region"]

    def test_transformer_info_uses_first_chart(self, session):
        metric = make_metric(session)
        make_chart(session, metric)
        info = orchestrator.get_transformer_info(session, "m1", "org1")
        assert info.chart_transformer.exists is False
        assert info.data_points.count == 0
