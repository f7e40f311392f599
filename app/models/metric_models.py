"""Metricpipe — Metric, Integration & Dashboard Models.

Timestamps are timezone-aware UTC. ``UTCDateTime`` normalizes on write and
re-attaches UTC on read, since SQLite drops the offset.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import Column, DateTime, JSON
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field, UniqueConstraint


def as_utc(dt: datetime) -> datetime:
    """Aware UTC; naive values are taken to already be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime column that always hands back aware UTC values."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return as_utc(value) if value is not None else None

    def process_result_value(self, value, dialect):
        return as_utc(value) if value is not None else None


def new_id() -> str:
    return uuid4().hex


class Integration(SQLModel, table=True):
    """A Nango connection owned by an organization."""

    __tablename__ = "integrations"

    id: str = Field(default_factory=new_id, primary_key=True)
    organization_id: str = Field(index=True)
    provider_id: str = Field(description="Nango provider config key, e.g. github")
    connection_id: str = Field(description="Nango connection ID")
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)


class Metric(SQLModel, table=True):
    """A named data series belonging to an organization / team.

    ``refresh_status`` is the step of the in-flight pipeline run, or None
    when idle. ``refresh_run_id`` identifies the run that owns it.
    """

    __tablename__ = "metrics"

    id: str = Field(default_factory=new_id, primary_key=True)
    organization_id: str = Field(index=True)
    team_id: Optional[str] = Field(default=None, index=True)
    name: str
    description: Optional[str] = None
    template_id: Optional[str] = Field(
        default=None, description="Metric template; None for manual metrics"
    )
    integration_id: Optional[str] = Field(default=None, foreign_key="integrations.id")
    endpoint_config: Dict[str, Any] = Field(
        default_factory=dict, sa_column=Column(JSON, nullable=False)
    )

    # Pipeline state
    refresh_status: Optional[str] = None
    refresh_run_id: Optional[str] = None
    refresh_started_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    last_error: Optional[str] = None
    last_fetched_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    # Polling
    poll_frequency: str = Field(
        default="daily", description="frequent | hourly | daily | weekly | manual"
    )
    next_poll_at: Optional[datetime] = Field(default=None, index=True, sa_type=UTCDateTime)

    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)


class MetricGoal(SQLModel, table=True):
    """Target value rendered as a reference line on the metric's charts."""

    __tablename__ = "metric_goals"

    id: str = Field(default_factory=new_id, primary_key=True)
    metric_id: str = Field(foreign_key="metrics.id", unique=True)
    target_value: float
    label: Optional[str] = None


class DashboardChart(SQLModel, table=True):
    """A chart binding a metric to a team dashboard."""

    __tablename__ = "dashboard_charts"

    id: str = Field(default_factory=new_id, primary_key=True)
    metric_id: str = Field(foreign_key="metrics.id", index=True)
    organization_id: str = Field(index=True)
    team_id: Optional[str] = Field(default=None, index=True)
    name: str = ""
    chart_type: str = "line"
    chart_config: Optional[Dict[str, Any]] = Field(
        default=None, sa_column=Column(JSON(none_as_null=True), nullable=True)
    )
    position: int = 0
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)


class MetricDataPoint(SQLModel, table=True):
    """One normalized observation.

    Unique on (metric_id, timestamp): re-delivering a timestamp replaces
    the point instead of duplicating it.
    """

    __tablename__ = "metric_data_points"
    __table_args__ = (
        UniqueConstraint("metric_id", "timestamp", name="uq_metric_data_point"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    metric_id: str = Field(foreign_key="metrics.id", index=True)
    timestamp: datetime = Field(index=True, sa_type=UTCDateTime)
    value: float
    dimensions: Optional[Dict[str, Any]] = Field(
        default=None, sa_column=Column(JSON(none_as_null=True), nullable=True)
    )
