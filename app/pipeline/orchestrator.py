"""Metricpipe — Pipeline Orchestrator.

Entry points behind the pipeline routes. Each one validates synchronously,
flips the metric into its first step, spawns the background task and
returns without waiting for it.
"""

from typing import Optional

from fastapi import HTTPException
from sqlalchemy import func
from sqlmodel import Session, select

from app.core.auth import get_metric_and_verify_access
from app.core.pipeline_steps import INITIAL_STEP
from app.models.metric_models import DashboardChart, Integration, Metric, MetricDataPoint
from app.models.pipeline_models import (
    ProgressResponse,
    RegenerateChartRequest,
    StartedResponse,
    TaskType,
    TransformerInfo,
)
from app.pipeline import progress, state
from app.pipeline.tasks import BackgroundTaskConfig, schedule_background_task
from app.core.logging import get_logger

logger = get_logger("pipeline.orchestrator")


def start_run(session: Session, metric: Metric, task_type: TaskType, **task_fields) -> str:
    """Claim the metric for a new run and spawn its task. Returns the run id.

    Raises RunConflictError when another run is in flight.
    """
    run_id = state.begin_run(session, metric, INITIAL_STEP[task_type])
    schedule_background_task(
        BackgroundTaskConfig(
            task_type=task_type,
            metric_id=metric.id,
            run_id=run_id,
            organization_id=metric.organization_id,
            team_id=metric.team_id,
            **task_fields,
        )
    )
    logger.info(
        f"Scheduled {task_type.value}",
        extra={"metric_id": metric.id, "run_id": run_id, "task_type": task_type.value},
    )
    return run_id


def _start(session: Session, metric: Metric, task_type: TaskType, **task_fields) -> StartedResponse:
    try:
        start_run(session, metric, task_type, **task_fields)
    except state.RunConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return StartedResponse()


def refresh(session: Session, metric_id: str, organization_id: str) -> StartedResponse:
    """Soft refresh: reuse stored transformers, refetch data."""
    metric = get_metric_and_verify_access(session, metric_id, organization_id)
    return _start(session, metric, TaskType.SOFT_REFRESH)


def regenerate(session: Session, metric_id: str, organization_id: str) -> StartedResponse:
    """Hard refresh: wipe data and transformers, then rebuild everything."""
    metric = get_metric_and_verify_access(session, metric_id, organization_id)
    return _start(session, metric, TaskType.HARD_REFRESH)


def regenerate_ingestion_only(
    session: Session, metric_id: str, organization_id: str
) -> StartedResponse:
    metric = get_metric_and_verify_access(session, metric_id, organization_id)
    if not metric.template_id:
        raise HTTPException(
            status_code=400, detail="Manual metrics don't have ingestion transformers"
        )
    integration = session.get(Integration, metric.integration_id) if metric.integration_id else None
    if integration is None:
        raise HTTPException(status_code=404, detail="Integration not found")
    return _start(session, metric, TaskType.INGESTION_ONLY)


def first_chart(session: Session, metric_id: str) -> Optional[DashboardChart]:
    return session.exec(
        select(DashboardChart)
        .where(DashboardChart.metric_id == metric_id)
        .order_by(DashboardChart.position, DashboardChart.created_at)
    ).first()


def regenerate_chart_only(
    session: Session,
    metric_id: str,
    organization_id: str,
    request: Optional[RegenerateChartRequest] = None,
) -> StartedResponse:
    request = request or RegenerateChartRequest()
    metric = get_metric_and_verify_access(session, metric_id, organization_id)
    chart = first_chart(session, metric.id)
    if chart is None:
        raise HTTPException(status_code=404, detail="Dashboard chart not found")
    count = session.exec(
        select(func.count(MetricDataPoint.id)).where(MetricDataPoint.metric_id == metric.id)
    ).one()
    if count == 0:
        raise HTTPException(
            status_code=400, detail="No data points to chart - run a data refresh first"
        )
    return _start(
        session,
        metric,
        TaskType.CHART_ONLY,
        dashboard_chart_id=chart.id,
        chart_type=request.chart_type,
        cadence=request.cadence,
        selected_dimension=request.selected_dimension,
        dimension_set="selected_dimension" in request.model_fields_set,
    )


def get_progress(session: Session, metric_id: str, organization_id: str) -> ProgressResponse:
    metric = get_metric_and_verify_access(session, metric_id, organization_id)
    return progress.get_progress(session, metric)


def get_available_dimensions(session: Session, metric_id: str, organization_id: str) -> list:
    metric = get_metric_and_verify_access(session, metric_id, organization_id)
    return progress.get_available_dimensions(session, metric.id)


def get_transformer_info(
    session: Session, metric_id: str, organization_id: str
) -> TransformerInfo:
    metric = get_metric_and_verify_access(session, metric_id, organization_id)
    chart = first_chart(session, metric.id)
    return progress.get_transformer_info(session, metric, chart.id if chart else None)
