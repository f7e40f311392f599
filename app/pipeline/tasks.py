"""Metricpipe — Background Tasks.

Pipeline work runs detached from the request that triggered it. Tasks are
spawned through a supervisor that keeps a strong reference to each one,
logs unexpected failures, and can be joined on shutdown or in tests.
"""

import asyncio
from dataclasses import dataclass
from typing import Coroutine, Optional, Set

from sqlmodel import Session

from app.config import settings
from app.core.cache import dashboard_tags, invalidate_cache_by_tags
from app.core.pipeline_steps import PipelineStep
from app.database import new_session
from app.models.metric_models import DashboardChart, Integration, Metric
from app.models.pipeline_models import Cadence, ChartType, TaskType
from app.pipeline import state
from app.pipeline.events import log_event
from app.pipeline.runner import (
    PipelineRunner,
    chart_type_of,
    execute_charts,
    ingestion_request,
    metric_charts,
    refresh_metric_and_charts,
)
from app.transformation.charts import ChartRequest, cadence_from_config, create_chart_transformer
from app.transformation.ingestion import ingest_metric_data
from app.transformation.store import (
    delete_chart_transformer,
    delete_ingestion_transformer,
    get_chart_transformer,
)
from app.core.logging import get_logger

logger = get_logger("pipeline.tasks")


class PipelineTaskError(Exception):
    """A background pipeline reported failure."""


@dataclass
class BackgroundTaskConfig:
    task_type: TaskType
    metric_id: str
    run_id: str
    organization_id: str
    team_id: Optional[str] = None
    # chart-only
    dashboard_chart_id: Optional[str] = None
    chart_type: Optional[ChartType] = None
    cadence: Optional[Cadence] = None
    selected_dimension: Optional[str] = None
    # True when the caller sent selected_dimension, even as null
    dimension_set: bool = False


class TaskSupervisor:
    """Owns detached asyncio tasks until they finish."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine, metric_id: Optional[str] = None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, metric_id))
        return task

    def _on_done(self, task: asyncio.Task, metric_id: Optional[str]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background task cancelled", extra={"metric_id": metric_id})
        elif task.exception() is not None:
            logger.error(
                f"Background task crashed: {task.exception()}",
                exc_info=task.exception(),
                extra={"metric_id": metric_id},
            )

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait for all tasks, including ones spawned while waiting."""
        while self._tasks:
            pending = list(self._tasks)
            done, not_done = await asyncio.wait(pending, timeout=timeout)
            if not_done:
                logger.warning(f"{len(not_done)} background task(s) still running after {timeout}s")
                return


supervisor = TaskSupervisor()


# ─────────────────────────────────────────────
# CACHE INVALIDATION
# ─────────────────────────────────────────────


async def _delayed_invalidation(tags: list, delay: float) -> None:
    await asyncio.sleep(delay)
    invalidate_cache_by_tags(tags)


def invalidate_dashboard_cache(organization_id: str, team_id: Optional[str]) -> None:
    tags = dashboard_tags(organization_id, team_id)
    invalidate_cache_by_tags(tags)
    if settings.cache_invalidation_delay_seconds > 0:
        supervisor.spawn(_delayed_invalidation(tags, settings.cache_invalidation_delay_seconds))


# ─────────────────────────────────────────────
# TASK BODIES
# ─────────────────────────────────────────────


async def _regenerate_ingestion(session: Session, config: BackgroundTaskConfig) -> None:
    metric = session.get(Metric, config.metric_id)
    integration = session.get(Integration, metric.integration_id) if metric.integration_id else None
    if integration is None:
        raise PipelineTaskError("Integration not found")
    runner = PipelineRunner(session, metric.id, config.run_id, metric.refresh_status)

    delete_ingestion_transformer(session, metric.id)
    await runner.step(PipelineStep.GENERATING_INGESTION_TRANSFORMER)

    result = await ingest_metric_data(
        session, ingestion_request(metric, integration, config.run_id), on_step=runner.step
    )
    if not result.success:
        raise PipelineTaskError(result.error or "Failed to regenerate ingestion")

    # Stored chart transformers still apply; feed them the fresh points
    charts = [c for c in metric_charts(session, metric.id) if get_chart_transformer(session, c.id)]
    if charts:
        await execute_charts(session, runner, metric, charts)


async def _regenerate_chart(session: Session, config: BackgroundTaskConfig) -> None:
    metric = session.get(Metric, config.metric_id)
    chart = session.get(DashboardChart, config.dashboard_chart_id)
    if chart is None:
        raise PipelineTaskError("Dashboard chart not found")
    runner = PipelineRunner(session, metric.id, config.run_id, metric.refresh_status)

    previous = get_chart_transformer(session, chart.id)
    request = ChartRequest(
        dashboard_chart_id=chart.id,
        metric_name=metric.name,
        metric_description=metric.description or "",
        chart_type=config.chart_type
        or chart_type_of(previous.chart_type if previous else chart.chart_type),
        cadence=config.cadence
        or (Cadence(previous.cadence) if previous else cadence_from_config(metric.endpoint_config)),
        selected_dimension=config.selected_dimension
        if config.dimension_set
        else (previous.selected_dimension if previous else None),
        base_version=previous.version if previous else 0,
    )

    delete_chart_transformer(session, chart.id)
    await runner.step(PipelineStep.GENERATING_CHART_TRANSFORMER)
    await create_chart_transformer(session, request)
    await runner.step(PipelineStep.SAVING_CHART_CONFIG)


TRANSFORMER_EVENTS = {
    TaskType.INGESTION_ONLY: "transformer:regenerate-ingestion",
    TaskType.CHART_ONLY: "transformer:regenerate-chart",
}


async def run_background_task(config: BackgroundTaskConfig) -> None:
    """Single dispatcher for every pipeline task type.

    Never raises: failures land in ``Metric.last_error`` and the event log,
    and dashboard caches are invalidated either way.
    """
    log_extra = {
        "metric_id": config.metric_id,
        "run_id": config.run_id,
        "task_type": config.task_type.value,
    }
    event = TRANSFORMER_EVENTS.get(config.task_type)
    loop = asyncio.get_running_loop()
    started = loop.time()

    with new_session() as session:
        try:
            if event:
                log_event(session, config.metric_id, f"{event}:start", True, None, config.run_id)

            fetched = False
            if config.task_type in (TaskType.SOFT_REFRESH, TaskType.HARD_REFRESH):
                result = await refresh_metric_and_charts(
                    session,
                    config.metric_id,
                    config.run_id,
                    force_regenerate=config.task_type == TaskType.HARD_REFRESH,
                )
                if not result.success:
                    raise PipelineTaskError(result.error or f"{config.task_type.value} failed")
                fetched = result.fetched
            elif config.task_type == TaskType.INGESTION_ONLY:
                await _regenerate_ingestion(session, config)
                fetched = True
            elif config.task_type == TaskType.CHART_ONLY:
                await _regenerate_chart(session, config)

            state.finish(session, config.metric_id, config.run_id, fetched=fetched)
            if event:
                log_event(session, config.metric_id, f"{event}:complete", True, None, config.run_id)
            log_event(
                session,
                config.metric_id,
                "pipeline-run:complete",
                True,
                {"taskType": config.task_type.value},
                config.run_id,
            )
            logger.info(
                "Pipeline run complete",
                extra={**log_extra, "duration_ms": int((loop.time() - started) * 1000)},
            )

        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"Pipeline run failed: {message}", exc_info=True, extra=log_extra)
            session.rollback()
            state.finish(session, config.metric_id, config.run_id, error=message)
            if event:
                log_event(session, config.metric_id, f"{event}:error", False, {"error": message}, config.run_id)
            log_event(
                session,
                config.metric_id,
                "pipeline-run:error",
                False,
                {"taskType": config.task_type.value, "error": message},
                config.run_id,
            )

        finally:
            invalidate_dashboard_cache(config.organization_id, config.team_id)


def schedule_background_task(config: BackgroundTaskConfig) -> asyncio.Task:
    return supervisor.spawn(run_background_task(config), metric_id=config.metric_id)
