"""Metricpipe — Pipeline Event Log.

Append-only ``MetricApiLog`` rows: step transitions, transformer
start/complete/error markers and raw API fetches.
"""

from typing import Any, Optional

from sqlmodel import Session

from app.models.log_models import MetricApiLog


def log_event(
    session: Session,
    metric_id: str,
    endpoint: str,
    success: bool,
    payload: Any = None,
    run_id: Optional[str] = None,
) -> MetricApiLog:
    """Append one event row and commit it immediately."""
    row = MetricApiLog(
        metric_id=metric_id,
        run_id=run_id,
        endpoint=endpoint,
        success=success,
        raw_response=payload,
        error=(payload or {}).get("error") if isinstance(payload, dict) else None,
    )
    session.add(row)
    session.commit()
    return row
