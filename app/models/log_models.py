"""Metricpipe — Metric API / Event Log (Append-only)."""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Column, JSON
from sqlmodel import SQLModel, Field

from app.models.metric_models import UTCDateTime, utc_now


class MetricApiLog(SQLModel, table=True):
    """Append-only audit and progress log.

    ``endpoint`` is either an API path (fetch audit rows) or an event tag:
    ``pipeline-step:<step>``, ``transformer:<action>:<phase>``,
    ``pipeline-run:<outcome>``. Never modify rows.
    """

    __tablename__ = "metric_api_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    metric_id: str = Field(foreign_key="metrics.id", index=True)
    run_id: Optional[str] = Field(default=None, index=True)
    endpoint: str = Field(index=True)
    success: bool = True
    raw_response: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    endpoint_config: Optional[Dict[str, Any]] = Field(
        default=None, sa_column=Column(JSON)
    )
    error: Optional[str] = None
    fetched_at: datetime = Field(default_factory=utc_now, index=True, sa_type=UTCDateTime)
