"""Metricpipe — Pipeline Schemas.

Transformer definitions produced by the generators, the data point /
chart config shapes they operate on, and the API response models.
API models serialize in camelCase for the polling frontend.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from app.models.metric_models import as_utc


class Cadence(str, Enum):
    """Time-bucketing granularity for chart series."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class ChartType(str, Enum):
    LINE = "line"
    BAR = "bar"
    AREA = "area"
    PIE = "pie"
    RADAR = "radar"
    RADIAL = "radial"
    KPI = "kpi"


class TaskType(str, Enum):
    """Background task kinds handled by the dispatcher."""

    SOFT_REFRESH = "soft-refresh"
    HARD_REFRESH = "hard-refresh"
    INGESTION_ONLY = "ingestion-only"
    CHART_ONLY = "chart-only"


# ─────────────────────────────────────────────
# DATA POINTS
# ─────────────────────────────────────────────


class DataPoint(BaseModel):
    """A normalized observation before/after persistence."""

    timestamp: datetime
    value: float
    dimensions: Optional[Dict[str, Any]] = None

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class DataStats(BaseModel):
    """Summary of a metric's points, handed to chart generators as context."""

    total_count: int = 0
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    days_covered: int = 0
    detected_granularity: Literal["daily", "weekly", "monthly"] = "daily"
    dimension_keys: List[str] = []


# ─────────────────────────────────────────────
# TRANSFORMER DEFINITIONS
# ─────────────────────────────────────────────


class IngestionDefinition(BaseModel):
    """Declarative mapping from a raw API response to data points.

    ``records_path`` is a dotted path to the list of records (empty for the
    root). When it resolves to a non-list the response is treated as a single
    snapshot record. Fields inside records are dotted paths too; for
    list-shaped rows (spreadsheets) they are column indices.
    """

    records_path: str = ""
    skip_rows: int = 0
    timestamp_field: Optional[str] = None
    timestamp_unit: Literal["iso", "unix", "unix_ms"] = "iso"
    value_field: Optional[str] = None
    value_mode: Literal["field", "count"] = "field"
    dimension_fields: List[str] = []
    truncate_to: Literal["day", "none"] = "day"
    duplicate_policy: Literal["last", "sum"] = "last"
    value_label: str = "Value"
    data_description: str = ""
    reasoning: str = ""


class ChartDefinition(BaseModel):
    """Declarative chart shaping applied to stored data points."""

    chart_type: ChartType = ChartType.LINE
    cadence: Cadence = Cadence.DAILY
    aggregation: Literal["sum", "avg", "last", "max", "min", "count"] = "sum"
    selected_dimension: Optional[str] = None
    date_range: Literal["all", "7d", "30d", "90d", "365d"] = "all"
    x_axis_key: str = "date"
    title: str = ""
    description: str = ""
    x_axis_label: str = "Date"
    y_axis_label: str = "Value"
    value_label: str = "Value"
    show_legend: bool = False
    show_tooltip: bool = True
    stacked: bool = False
    reasoning: str = ""


# ─────────────────────────────────────────────
# CHART OUTPUT (renderable)
# ─────────────────────────────────────────────


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SeriesStyle(CamelModel):
    label: str
    color: str


class CenterLabel(CamelModel):
    value: str
    label: str


class GoalLine(CamelModel):
    value: float
    label: str


class ChartConfig(CamelModel):
    """Renderable chart configuration stored on the dashboard chart."""

    chart_type: ChartType
    chart_data: List[Dict[str, Any]]
    chart_config: Dict[str, SeriesStyle]
    x_axis_key: str
    data_keys: List[str]
    title: str = ""
    description: str = ""
    x_axis_label: str = ""
    y_axis_label: str = ""
    show_legend: bool = False
    show_tooltip: bool = True
    stacked: Optional[bool] = None
    center_label: Optional[CenterLabel] = None
    goal_line: Optional[GoalLine] = None
    reasoning: str = ""


# ─────────────────────────────────────────────
# API MODELS
# ─────────────────────────────────────────────


class StartedResponse(CamelModel):
    success: bool = True
    started: bool = True


class RegenerateChartRequest(CamelModel):
    selected_dimension: Optional[str] = None
    chart_type: Optional[ChartType] = None
    cadence: Optional[Cadence] = None


class CompletedStep(CamelModel):
    step: str
    display_name: str
    status: Literal["completed", "failed"] = "completed"
    duration_ms: Optional[int] = None


class ProgressResponse(CamelModel):
    is_processing: bool
    current_step: Optional[str] = None
    current_step_display_name: Optional[str] = None
    completed_steps: List[CompletedStep] = Field(default_factory=list)
    error: Optional[str] = None


class TransformerStatus(CamelModel):
    exists: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    chart_type: Optional[str] = None
    cadence: Optional[str] = None


class DataPointSummary(CamelModel):
    count: int = 0
    first_date: Optional[datetime] = None
    last_date: Optional[datetime] = None


class TransformerInfo(CamelModel):
    ingestion_transformer: TransformerStatus
    chart_transformer: TransformerStatus
    data_points: DataPointSummary


# ─────────────────────────────────────────────
# GENERATOR CONTEXT
# ─────────────────────────────────────────────


class IngestionContext(BaseModel):
    """Everything a generator sees when designing an ingestion transformer."""

    template_id: str
    integration_id: str
    endpoint: str
    method: str = "GET"
    sample_api_response: Any = None
    metric_description: str = ""
    available_params: List[str] = []
    endpoint_config: Dict[str, Any] = {}
    extraction_prompt: Optional[str] = None
    data_path_hint: Optional[str] = None
    previous_definition: Optional[Dict[str, Any]] = None
    previous_error: Optional[str] = None


class ChartContext(BaseModel):
    """Everything a generator sees when designing a chart transformer."""

    metric_name: str
    metric_description: str = ""
    chart_type: ChartType = ChartType.LINE
    cadence: Cadence = Cadence.DAILY
    selected_dimension: Optional[str] = None
    sample_points: List[DataPoint] = []
    data_stats: DataStats = Field(default_factory=DataStats)
