"""Metricpipe — Progress & Introspection.

Polling queries the dashboard uses while a pipeline runs.
"""

from datetime import timedelta
from typing import List, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from app.config import settings
from app.core.pipeline_steps import STEP_EVENT_PREFIX, display_name
from app.models.log_models import MetricApiLog
from app.models.metric_models import Metric, MetricDataPoint, utc_now
from app.pipeline import state
from app.models.pipeline_models import (
    CompletedStep,
    DataPointSummary,
    ProgressResponse,
    TransformerInfo,
    TransformerStatus,
)
from app.transformation.store import get_chart_transformer, get_ingestion_transformer
from app.core.logging import get_logger

logger = get_logger("pipeline.progress")


def get_progress(session: Session, metric: Metric) -> ProgressResponse:
    """Rebuild the current run's step timeline from step events.

    Steps are read from the trailing progress window (scoped to the active
    run when known), the entry for the in-flight step is excluded, and each
    duration is the gap to the next logged step.
    """
    current = state.current_state(metric)
    if not isinstance(current, state.Running):
        error = current.message if isinstance(current, state.Failed) else None
        return ProgressResponse(is_processing=False, error=error)

    since = utc_now() - timedelta(seconds=settings.progress_window_seconds)
    query = select(MetricApiLog).where(
        MetricApiLog.metric_id == metric.id,
        MetricApiLog.endpoint.startswith(STEP_EVENT_PREFIX),
        MetricApiLog.fetched_at >= since,
    )
    if current.run_id:
        query = query.where(MetricApiLog.run_id == current.run_id)
    rows = session.exec(query.order_by(MetricApiLog.fetched_at, MetricApiLog.id)).all()

    completed: List[CompletedStep] = []
    for index, row in enumerate(rows):
        step = row.endpoint[len(STEP_EVENT_PREFIX):]
        if step == current.step:
            continue
        duration_ms = None
        if index + 1 < len(rows):
            delta = rows[index + 1].fetched_at - row.fetched_at
            duration_ms = int(delta.total_seconds() * 1000)
        completed.append(
            CompletedStep(
                step=step,
                display_name=display_name(step),
                status="completed" if row.success else "failed",
                duration_ms=duration_ms,
            )
        )

    return ProgressResponse(
        is_processing=True,
        current_step=current.step,
        current_step_display_name=display_name(current.step),
        completed_steps=completed,
        error=None,
    )


def get_available_dimensions(session: Session, metric_id: str) -> List[str]:
    """Union of dimension keys over a sample of points that carry dimensions."""
    rows = session.exec(
        select(MetricDataPoint.dimensions)
        .where(
            MetricDataPoint.metric_id == metric_id,
            MetricDataPoint.dimensions.is_not(None),
        )
        .order_by(MetricDataPoint.timestamp.desc())
        .limit(settings.dimension_sample_size)
    ).all()

    keys: List[str] = []
    for dimensions in rows:
        for key in dimensions or {}:
            if key not in keys:
                keys.append(key)
    return keys


def get_transformer_info(
    session: Session, metric: Metric, dashboard_chart_id: Optional[str] = None
) -> TransformerInfo:
    ingestion = get_ingestion_transformer(session, metric.id)
    chart = get_chart_transformer(session, dashboard_chart_id) if dashboard_chart_id else None

    count, first_date, last_date = session.exec(
        select(
            func.count(MetricDataPoint.id),
            func.min(MetricDataPoint.timestamp),
            func.max(MetricDataPoint.timestamp),
        ).where(MetricDataPoint.metric_id == metric.id)
    ).one()

    return TransformerInfo(
        ingestion_transformer=TransformerStatus(
            exists=ingestion is not None,
            created_at=ingestion.created_at if ingestion else None,
            updated_at=ingestion.updated_at if ingestion else None,
        ),
        chart_transformer=TransformerStatus(
            exists=chart is not None,
            created_at=chart.created_at if chart else None,
            updated_at=chart.updated_at if chart else None,
            chart_type=chart.chart_type if chart else None,
            cadence=chart.cadence if chart else None,
        ),
        data_points=DataPointSummary(count=count, first_date=first_date, last_date=last_date),
    )
