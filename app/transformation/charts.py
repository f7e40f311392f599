"""Metricpipe — Chart Generation Engine."""

from dataclasses import dataclass
from typing import List, Optional

from sqlmodel import Session, select

from app.ai.registry import get_generator
from app.config import settings
from app.models.metric_models import DashboardChart, MetricGoal, utc_now
from app.models.pipeline_models import (
    Cadence,
    ChartConfig,
    ChartContext,
    ChartType,
    DataPoint,
    GoalLine,
)
from app.transformation.executor import apply_chart_definition, calculate_data_stats
from app.transformation.ingestion import load_data_points
from app.transformation.store import (
    get_chart_transformer,
    load_chart_definition,
    replace_chart_transformer,
)
from app.core.logging import get_logger

logger = get_logger("transformation.charts")

SAMPLE_POINTS_FOR_GENERATOR = 50


class ChartGenerationError(Exception):
    """Chart precondition failure; status_code mirrors the HTTP error it maps to."""

    def __init__(self, message: str, status_code: int = 400):
        self.status_code = status_code
        super().__init__(message)


@dataclass
class ChartRequest:
    dashboard_chart_id: str
    metric_name: str
    metric_description: str = ""
    chart_type: ChartType = ChartType.LINE
    cadence: Cadence = Cadence.DAILY
    selected_dimension: Optional[str] = None
    base_version: int = 0


def cadence_from_config(endpoint_config: Optional[dict]) -> Cadence:
    raw = str((endpoint_config or {}).get("cadence") or "DAILY").upper()
    return Cadence(raw) if raw in Cadence.__members__ else Cadence.DAILY


def goal_line(session: Session, metric_id: str) -> Optional[GoalLine]:
    goal = session.exec(select(MetricGoal).where(MetricGoal.metric_id == metric_id)).first()
    if goal is None:
        return None
    return GoalLine(value=goal.target_value, label=goal.label or "Goal")


def _save_chart_config(session: Session, chart: DashboardChart, config: ChartConfig) -> None:
    chart.chart_config = config.model_dump(mode="json", by_alias=True)
    chart.chart_type = config.chart_type.value
    chart.updated_at = utc_now()
    session.add(chart)
    session.commit()


async def create_chart_transformer(session: Session, request: ChartRequest) -> ChartConfig:
    """Generate, test and store a chart transformer, then render the chart.

    The caller's chart type, cadence and dimension always win over whatever
    the generator proposes.
    """
    chart = session.get(DashboardChart, request.dashboard_chart_id)
    if chart is None:
        raise ChartGenerationError("Dashboard chart not found", 404)

    points = load_data_points(session, chart.metric_id, settings.chart_data_point_limit)
    if not points:
        raise ChartGenerationError("No data points available to chart", 400)

    generator = get_generator()
    definition = await generator.generate_chart_definition(
        ChartContext(
            metric_name=request.metric_name,
            metric_description=request.metric_description,
            chart_type=request.chart_type,
            cadence=request.cadence,
            selected_dimension=request.selected_dimension,
            sample_points=points[-SAMPLE_POINTS_FOR_GENERATOR:],
            data_stats=calculate_data_stats(points),
        )
    )
    definition.chart_type = request.chart_type
    definition.cadence = request.cadence
    definition.selected_dimension = request.selected_dimension

    config = apply_chart_definition(definition, points, goal_line(session, chart.metric_id))

    row = replace_chart_transformer(
        session,
        request.dashboard_chart_id,
        definition,
        generator.name,
        base_version=request.base_version,
    )
    _save_chart_config(session, chart, config)
    logger.info(
        f"Chart transformer v{row.version} created ({definition.chart_type.value}, "
        f"{definition.cadence.value}) for chart {chart.id}",
        extra={"metric_id": chart.metric_id},
    )
    return config


def execute_chart_transformer(
    session: Session, dashboard_chart_id: str, data_points: List[DataPoint]
) -> Optional[ChartConfig]:
    """Re-apply a stored chart transformer to fresh points.

    Returns None when the chart has no transformer yet.
    """
    chart = session.get(DashboardChart, dashboard_chart_id)
    row = get_chart_transformer(session, dashboard_chart_id)
    if chart is None or row is None:
        return None
    config = apply_chart_definition(
        load_chart_definition(row), data_points, goal_line(session, chart.metric_id)
    )
    _save_chart_config(session, chart, config)
    return config
