"""Metricpipe — Transformer Store Models.

Generated transformer definitions, cached by natural key. Rows are never
updated in place: regeneration deletes and recreates.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Column, JSON
from sqlmodel import SQLModel, Field

from app.models.metric_models import UTCDateTime, new_id, utc_now


class DataIngestionTransformer(SQLModel, table=True):
    """Raw API response → data points. Keyed by ``template_id = metric_id``."""

    __tablename__ = "data_ingestion_transformers"

    id: str = Field(default_factory=new_id, primary_key=True)
    template_id: str = Field(unique=True, index=True)
    definition: Dict[str, Any] = Field(sa_column=Column(JSON, nullable=False))
    value_label: str = ""
    data_description: str = ""
    provider: str = Field(default="", description="Generator that produced it")
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)


class ChartTransformer(SQLModel, table=True):
    """Data points → chart config. Keyed by dashboard chart."""

    __tablename__ = "chart_transformers"

    id: str = Field(default_factory=new_id, primary_key=True)
    dashboard_chart_id: str = Field(
        foreign_key="dashboard_charts.id", unique=True, index=True
    )
    definition: Dict[str, Any] = Field(sa_column=Column(JSON, nullable=False))
    chart_type: str = "line"
    cadence: str = "DAILY"
    selected_dimension: Optional[str] = None
    provider: str = ""
    version: int = 1
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)
