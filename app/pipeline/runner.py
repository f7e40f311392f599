"""Metricpipe — Pipeline Runner.

Combined ingestion → chart refresh for one metric. Soft refresh reuses
stored transformers; hard refresh wipes data and transformers first.
"""

from dataclasses import dataclass
from typing import List, Optional

from sqlmodel import Session, delete, select

from app.config import settings
from app.core.pipeline_steps import PipelineStep
from app.core.templates import get_template
from app.models.metric_models import DashboardChart, Integration, Metric, MetricDataPoint
from app.models.pipeline_models import ChartType
from app.pipeline import state
from app.transformation.charts import (
    ChartRequest,
    cadence_from_config,
    create_chart_transformer,
    execute_chart_transformer,
)
from app.transformation.ingestion import (
    IngestionRequest,
    ingest_metric_data,
    load_data_points,
)
from app.transformation.store import (
    delete_chart_transformer,
    delete_ingestion_transformer,
    get_chart_transformer,
)
from app.core.logging import get_logger

logger = get_logger("pipeline.runner")


@dataclass
class RefreshResult:
    success: bool
    error: Optional[str] = None
    fetched: bool = False


class PipelineRunner:
    """Advances a run's status, skipping repeats of the current step."""

    def __init__(self, session: Session, metric_id: str, run_id: str, current_step: Optional[str] = None):
        self.session = session
        self.metric_id = metric_id
        self.run_id = run_id
        self.current_step = current_step

    async def step(self, step: PipelineStep) -> None:
        if step.value == self.current_step:
            return
        state.advance(self.session, self.metric_id, self.run_id, step)
        self.current_step = step.value
        logger.info(
            f"Step → {step.value}",
            extra={"metric_id": self.metric_id, "run_id": self.run_id, "step": step.value},
        )


def metric_charts(session: Session, metric_id: str) -> List[DashboardChart]:
    return list(
        session.exec(
            select(DashboardChart)
            .where(DashboardChart.metric_id == metric_id)
            .order_by(DashboardChart.position, DashboardChart.created_at)
        ).all()
    )


def ingestion_request(metric: Metric, integration: Integration, run_id: str) -> IngestionRequest:
    return IngestionRequest(
        template_id=metric.template_id,
        integration_id=integration.provider_id,
        connection_id=integration.connection_id,
        metric_id=metric.id,
        endpoint_config=dict(metric.endpoint_config or {}),
        run_id=run_id,
    )


def chart_type_of(value: Optional[str]) -> ChartType:
    """Stored chart type, or line when it is missing or unrecognised."""
    known = {t.value for t in ChartType}
    return ChartType(value) if value in known else ChartType.LINE


def _chart_request(metric: Metric, chart: DashboardChart, base_version: int = 0) -> ChartRequest:
    return ChartRequest(
        dashboard_chart_id=chart.id,
        metric_name=metric.name,
        metric_description=metric.description or "",
        chart_type=chart_type_of(chart.chart_type),
        cadence=cadence_from_config(metric.endpoint_config),
        base_version=base_version,
    )


async def regenerate_charts(
    session: Session, runner: PipelineRunner, metric: Metric, charts: List[DashboardChart]
) -> List[str]:
    """Delete and regenerate every chart transformer. Returns per-chart errors."""
    errors: List[str] = []
    await runner.step(PipelineStep.GENERATING_CHART_TRANSFORMER)
    for chart in charts:
        previous = get_chart_transformer(session, chart.id)
        base_version = previous.version if previous else 0
        delete_chart_transformer(session, chart.id)
        try:
            await create_chart_transformer(session, _chart_request(metric, chart, base_version))
        except Exception as e:
            session.rollback()
            logger.error(
                f"Chart transformer generation failed for chart {chart.id}: {e}",
                extra={"metric_id": metric.id, "run_id": runner.run_id},
            )
            errors.append(str(e))
    return errors


async def execute_charts(
    session: Session, runner: PipelineRunner, metric: Metric, charts: List[DashboardChart]
) -> List[str]:
    """Re-apply stored chart transformers; generate for charts that have none."""
    errors: List[str] = []
    with_transformer = [c for c in charts if get_chart_transformer(session, c.id)]
    without_transformer = [c for c in charts if c not in with_transformer]

    if with_transformer:
        await runner.step(PipelineStep.EXECUTING_CHART_TRANSFORMER)
        points = load_data_points(session, metric.id, settings.chart_data_point_limit)
        for chart in with_transformer:
            try:
                execute_chart_transformer(session, chart.id, points)
            except Exception as e:
                session.rollback()
                logger.error(
                    f"Chart transformer execution failed for chart {chart.id}: {e}",
                    extra={"metric_id": metric.id, "run_id": runner.run_id},
                )
                errors.append(str(e))

    if without_transformer:
        errors += await regenerate_charts(session, runner, metric, without_transformer)
    return errors


async def refresh_metric_and_charts(
    session: Session,
    metric_id: str,
    run_id: str,
    force_regenerate: bool = False,
) -> RefreshResult:
    """Ingest fresh data (integration metrics) and bring every chart up to date.

    Manual metrics skip ingestion and only rebuild charts from stored points.
    """
    metric = session.get(Metric, metric_id)
    if metric is None:
        return RefreshResult(success=False, error="Metric not found")
    runner = PipelineRunner(session, metric.id, run_id, metric.refresh_status)
    charts = metric_charts(session, metric.id)

    fetched = False
    if metric.template_id:
        if get_template(metric.template_id) is None:
            return RefreshResult(success=False, error=f"Template not found: {metric.template_id}")
        integration = session.get(Integration, metric.integration_id) if metric.integration_id else None
        if integration is None:
            return RefreshResult(success=False, error="Metric not found or not configured")

        if force_regenerate:
            await runner.step(PipelineStep.DELETING_OLD_DATA)
            session.exec(delete(MetricDataPoint).where(MetricDataPoint.metric_id == metric.id))
            session.commit()
            await runner.step(PipelineStep.DELETING_OLD_TRANSFORMER)
            delete_ingestion_transformer(session, metric.id)

        result = await ingest_metric_data(
            session, ingestion_request(metric, integration, run_id), on_step=runner.step
        )
        if not result.success:
            return RefreshResult(success=False, error=result.error)
        fetched = True

    if charts:
        if force_regenerate:
            errors = await regenerate_charts(session, runner, metric, charts)
        else:
            errors = await execute_charts(session, runner, metric, charts)
        if errors and len(errors) == len(charts):
            return RefreshResult(success=False, error=errors[0], fetched=fetched)
        await runner.step(PipelineStep.SAVING_CHART_CONFIG)

    return RefreshResult(success=True, fetched=fetched)
