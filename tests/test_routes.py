"""Tests for the HTTP surface, driven through httpx against the ASGI app."""

import asyncio

import httpx
import pytest
import pytest_asyncio

from app.config import settings
from app.main import app
from app.models.metric_models import Metric
from app.pipeline.tasks import supervisor
from app.transformation.store import get_chart_transformer
from factories import make_chart, make_metric, make_points, reload

ORG = {"X-Organization-Id": "org1"}


@pytest_asyncio.fixture
async def client():
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    await supervisor.join()


class TestPipelineRoutes:
    @pytest.mark.asyncio
    async def test_refresh_then_poll_progress(self, client, session, nango):
        """Progress reports the in-flight step until the fetch is released."""
        make_metric(session)
        nango.gate = asyncio.Event()

        try:
            response = await client.post("/pipeline/m1/refresh", headers=ORG)
            assert response.status_code == 200
            assert response.json() == {"success": True, "started": True}

            progress = (await client.get("/pipeline/m1/progress", headers=ORG)).json()
            assert progress["isProcessing"] is True
            assert progress["currentStep"] == "fetching-api-data"
            assert progress["currentStepDisplayName"] == "Fetching data from API..."
        finally:
            nango.gate.set()

        await supervisor.join()
        progress = (await client.get("/pipeline/m1/progress", headers=ORG)).json()
        assert progress["isProcessing"] is False
        assert progress["error"] is None

    @pytest.mark.asyncio
    async def test_conflict_while_running(self, client, session, nango):
        make_metric(session)
        nango.gate = asyncio.Event()

        try:
            assert (await client.post("/pipeline/m1/refresh", headers=ORG)).status_code == 200
            response = await client.post("/pipeline/m1/regenerate", headers=ORG)
            assert response.status_code == 409
        finally:
            nango.gate.set()
        await supervisor.join()
        assert reload(session, Metric, "m1").last_error is None

    @pytest.mark.asyncio
    async def test_other_organization_sees_not_found(self, client, session):
        make_metric(session)
        response = await client.post("/pipeline/m1/refresh", headers={"X-Organization-Id": "org2"})
        assert response.status_code == 404
        assert response.json()["detail"] == "Metric not found"
        assert reload(session, Metric, "m1").refresh_status is None

    @pytest.mark.asyncio
    async def test_missing_organization_header(self, client, session):
        make_metric(session)
        response = await client.get("/pipeline/m1/progress")
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_regenerate_chart_accepts_camel_case_body(self, client, session):
        metric = make_metric(session)
        make_chart(session, metric)
        make_points(session, metric, 5, dimensions={"region": "eu"})

        response = await client.post(
            "/pipeline/m1/regenerate-chart",
            headers=ORG,
            json={"chartType": "bar", "selectedDimension": "region"},
        )
        assert response.status_code == 200
        await supervisor.join()

        info = (await client.get("/pipeline/m1/transformers", headers=ORG)).json()
        assert info["chartTransformer"]["exists"] is True
        assert info["chartTransformer"]["chartType"] == "bar"
        assert info["ingestionTransformer"]["exists"] is False
        assert info["dataPoints"]["count"] == 5

    @pytest.mark.asyncio
    async def test_regenerate_chart_explicit_null_clears_dimension(self, client, session):
        """An explicit null drops the breakdown; an omitted field keeps it."""
        metric = make_metric(session)
        make_chart(session, metric)
        make_points(session, metric, 5, dimensions={"region": "eu"})

        await client.post(
            "/pipeline/m1/regenerate-chart", headers=ORG, json={"selectedDimension": "region"}
        )
        await supervisor.join()
        await client.post("/pipeline/m1/regenerate-chart", headers=ORG, json={"chartType": "bar"})
        await supervisor.join()
        assert get_chart_transformer(session, "c1").selected_dimension == "region"

        await client.post(
            "/pipeline/m1/regenerate-chart", headers=ORG, json={"selectedDimension": None}
        )
        await supervisor.join()
        session.expire_all()
        assert get_chart_transformer(session, "c1").selected_dimension is None

    @pytest.mark.asyncio
    async def test_regenerate_chart_without_body(self, client, session):
        metric = make_metric(session)
        make_chart(session, metric)
        response = await client.post("/pipeline/m1/regenerate-chart", headers=ORG)
        assert response.status_code == 400
        assert response.json()["detail"] == "No data points to chart - run a data refresh first"

    @pytest.mark.asyncio
    async def test_dimensions(self, client, session):
        metric = make_metric(session)
        make_points(session, metric, 2, dimensions={"plan": "pro", "region": "eu"})
        response = await client.get("/pipeline/m1/dimensions", headers=ORG)
        assert response.json() == ["plan", "region"]


class TestDashboardRoutes:
    @pytest.mark.asyncio
    async def test_lists_org_charts_and_caches(self, client, session):
        m1 = make_metric(session)
        make_chart(session, m1)
        other = make_metric(session, metric_id="m9", organization_id="org2")
        make_chart(session, other, chart_id="c9")

        charts = (await client.get("/dashboard/charts", headers=ORG)).json()
        assert [c["id"] for c in charts] == ["c1"]
        assert charts[0]["metricName"] == "Weekly Commits"
        assert charts[0]["refreshStatus"] is None

        make_chart(session, m1, chart_id="c2", position=1)
        cached = (await client.get("/dashboard/charts", headers=ORG)).json()
        assert [c["id"] for c in cached] == ["c1"]

    @pytest.mark.asyncio
    async def test_pipeline_run_invalidates_cached_charts(self, client, session):
        metric = make_metric(session, template_id=None)
        make_chart(session, metric)
        make_points(session, metric, 3)

        before = (await client.get("/dashboard/charts", headers=ORG)).json()
        assert before[0]["chartConfig"] is None

        await client.post("/pipeline/m1/refresh", headers=ORG)
        await supervisor.join()

        after = (await client.get("/dashboard/charts", headers=ORG)).json()
        assert after[0]["chartConfig"]["chartType"] == "line"

    @pytest.mark.asyncio
    async def test_team_filter(self, client, session):
        m1 = make_metric(session)
        make_chart(session, m1)
        m2 = make_metric(session, metric_id="m2", team_id="team2")
        make_chart(session, m2, chart_id="c2")

        charts = (await client.get("/dashboard/charts", params={"teamId": "team2"}, headers=ORG)).json()
        assert [c["id"] for c in charts] == ["c2"]


class TestCronRoutes:
    @pytest.mark.asyncio
    async def test_requires_secret_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "cron_secret", "s3cret")
        assert (await client.post("/cron/poll-metrics")).status_code == 401
        response = await client.post(
            "/cron/poll-metrics", headers={"Authorization": "Bearer s3cret"}
        )
        assert response.status_code == 200
        assert response.json() == {"processed": 0, "started": 0, "skipped": 0}


class TestSystemRoutes:
    @pytest.mark.asyncio
    async def test_health(self, client):
        body = (await client.get("/health")).json()
        assert body["status"] == "healthy"
        assert body["active_pipeline_tasks"] == 0
