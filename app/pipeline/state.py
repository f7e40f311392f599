"""Metricpipe — Pipeline Run State.

``Metric.refresh_status`` / ``Metric.last_error`` read as one of:

    Idle              status None, no error
    Running(step)     status set, owned by ``refresh_run_id``
    Failed(message)   status None, error set

This module owns every write to those columns. Starting a run is a
compare-and-swap on the metric row; later transitions only apply while
the row is still owned by the same run.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from sqlalchemy import true
from sqlmodel import Session, or_, update

from app.config import settings
from app.core.pipeline_steps import PipelineStep, step_event
from app.models.metric_models import Metric, new_id, utc_now
from app.pipeline.events import log_event
from app.core.logging import get_logger

logger = get_logger("pipeline.state")


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Running:
    step: str
    run_id: Optional[str]
    started_at: Optional[datetime]


@dataclass(frozen=True)
class Failed:
    message: str


PipelineState = Union[Idle, Running, Failed]


class RunConflictError(Exception):
    """Raised when a run is requested while another one is in flight."""

    def __init__(self, metric_id: str, step: str):
        self.metric_id = metric_id
        self.step = step
        super().__init__(f"Pipeline already running for metric {metric_id} (step: {step})")


def current_state(metric: Metric) -> PipelineState:
    if metric.refresh_status:
        return Running(metric.refresh_status, metric.refresh_run_id, metric.refresh_started_at)
    if metric.last_error:
        return Failed(metric.last_error)
    return Idle()


def _owned_by(run_id: str):
    """Row filter for transitions of an existing run."""
    if settings.pipeline_allow_concurrent_runs:
        return true()
    return Metric.refresh_run_id == run_id


def begin_run(session: Session, metric: Metric, step: PipelineStep) -> str:
    """Idle/Failed → Running(step). Returns the new run id.

    A run older than ``pipeline_stale_after_seconds`` is assumed crashed
    and may be taken over.
    """
    run_id = new_id()
    now = utc_now()
    statement = update(Metric).where(Metric.id == metric.id)
    if not settings.pipeline_allow_concurrent_runs:
        stale_before = now - timedelta(seconds=settings.pipeline_stale_after_seconds)
        statement = statement.where(
            or_(
                Metric.refresh_status.is_(None),
                Metric.refresh_started_at.is_(None),
                Metric.refresh_started_at < stale_before,
            )
        )
    result = session.exec(
        statement.values(
            refresh_status=step.value,
            refresh_run_id=run_id,
            refresh_started_at=now,
            last_error=None,
        )
    )
    session.commit()
    session.refresh(metric)

    if result.rowcount == 0:
        raise RunConflictError(metric.id, metric.refresh_status or "")

    log_event(session, metric.id, step_event(step.value), True, {"status": step.value}, run_id)
    logger.info(
        "Pipeline run started",
        extra={"metric_id": metric.id, "run_id": run_id, "step": step.value},
    )
    return run_id


def advance(session: Session, metric_id: str, run_id: str, step: PipelineStep) -> bool:
    """Running(a) → Running(step). No-op once the run no longer owns the metric."""
    result = session.exec(
        update(Metric)
        .where(Metric.id == metric_id, Metric.refresh_status.is_not(None), _owned_by(run_id))
        .values(refresh_status=step.value)
    )
    session.commit()
    if result.rowcount == 0:
        logger.warning(
            "Run no longer owns metric; step not recorded",
            extra={"metric_id": metric_id, "run_id": run_id, "step": step.value},
        )
        return False
    log_event(session, metric_id, step_event(step.value), True, {"status": step.value}, run_id)
    return True


def finish(
    session: Session,
    metric_id: str,
    run_id: str,
    error: Optional[str] = None,
    fetched: bool = False,
) -> bool:
    """Running → Idle (no error) or Failed(error)."""
    values = {
        "refresh_status": None,
        "refresh_run_id": None,
        "refresh_started_at": None,
        "last_error": error,
    }
    if fetched and error is None:
        values["last_fetched_at"] = utc_now()
    result = session.exec(
        update(Metric).where(Metric.id == metric_id, _owned_by(run_id)).values(**values)
    )
    session.commit()
    if result.rowcount == 0:
        logger.warning(
            "Run superseded before finishing; final state left to the newer run",
            extra={"metric_id": metric_id, "run_id": run_id},
        )
        return False
    return True
