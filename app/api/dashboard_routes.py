"""Metricpipe — Dashboard API Routes."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session, select

from app.core.auth import Workspace, get_workspace
from app.core.cache import dashboard_cache, dashboard_tags
from app.database import get_session
from app.models.metric_models import DashboardChart, Metric
from app.models.pipeline_models import CamelModel
from app.core.logging import get_logger

logger = get_logger("api.dashboard")

router = APIRouter(prefix="/dashboard", tags=["Dashboard"])


# ── Response Models ──


class DashboardChartView(CamelModel):
    """A dashboard chart with the metric state the UI needs to render it."""

    id: str
    metric_id: str
    metric_name: str
    name: str
    chart_type: str
    chart_config: Optional[Dict[str, Any]] = None
    position: int = 0
    refresh_status: Optional[str] = None
    last_error: Optional[str] = None
    last_fetched_at: Optional[datetime] = None


# ── Endpoints ──


@router.get("/charts", response_model=List[DashboardChartView])
async def list_dashboard_charts(
    team_id: Optional[str] = Query(None, alias="teamId"),
    workspace: Workspace = Depends(get_workspace),
    session: Session = Depends(get_session),
):
    """Charts for the organization (optionally one team), served from the tag cache."""
    key = f"charts:{workspace.organization_id}:{team_id or '*'}"
    cached = dashboard_cache.get(key)
    if cached is not None:
        return cached

    query = (
        select(DashboardChart, Metric)
        .join(Metric, Metric.id == DashboardChart.metric_id)
        .where(DashboardChart.organization_id == workspace.organization_id)
        .order_by(DashboardChart.position, DashboardChart.created_at)
    )
    if team_id:
        query = query.where(DashboardChart.team_id == team_id)

    views = [
        DashboardChartView(
            id=chart.id,
            metric_id=metric.id,
            metric_name=metric.name,
            name=chart.name or metric.name,
            chart_type=chart.chart_type,
            chart_config=chart.chart_config,
            position=chart.position,
            refresh_status=metric.refresh_status,
            last_error=metric.last_error,
            last_fetched_at=metric.last_fetched_at,
        )
        for chart, metric in session.exec(query).all()
    ]
    dashboard_cache.set(key, views, tags=dashboard_tags(workspace.organization_id, team_id))
    return views
