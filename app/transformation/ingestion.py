"""Metricpipe — Ingestion Engine.

Fetch raw data through the connector → obtain or generate the metric's
ingestion transformer → apply it → persist data points.

Never raises for fetch or transform failures: the caller gets an
IngestionResult with ``success=False`` and no points are written.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlmodel import Session, delete, select

from app.ai.base_provider import TransformerGenerationError
from app.ai.registry import get_generator
from app.connectors.nango.client import NangoAPIError, NangoClient, resolve_endpoint
from app.core.pipeline_steps import PipelineStep
from app.core.templates import MetricTemplate, get_template
from app.models.log_models import MetricApiLog
from app.models.metric_models import MetricDataPoint, utc_now
from app.models.pipeline_models import DataPoint, IngestionContext, IngestionDefinition
from app.pipeline.events import log_event
from app.transformation.executor import (
    TransformerExecutionError,
    apply_ingestion_definition,
)
from app.transformation.store import (
    get_ingestion_transformer,
    load_ingestion_definition,
    upsert_ingestion_transformer,
)
from app.core.logging import get_logger

logger = get_logger("transformation.ingestion")

StepCallback = Callable[[PipelineStep], Awaitable[None]]


@dataclass
class IngestionRequest:
    template_id: str
    integration_id: str  # Nango provider config key
    connection_id: str
    metric_id: str
    endpoint_config: Dict[str, Any] = field(default_factory=dict)
    run_id: Optional[str] = None


@dataclass
class IngestionResult:
    success: bool
    data_points: List[DataPoint] = field(default_factory=list)
    transformer_created: bool = False
    error: Optional[str] = None


def _string_params(endpoint_config: Dict[str, Any]) -> Dict[str, str]:
    return {k: str(v) for k, v in endpoint_config.items() if v is not None}


# ─────────────────────────────────────────────
# FETCH
# ─────────────────────────────────────────────


async def fetch_raw_data(
    session: Session,
    request: IngestionRequest,
    template: MetricTemplate,
) -> Any:
    """Fetch through the connector and append an audit row either way."""
    params = _string_params(request.endpoint_config)
    endpoint = resolve_endpoint(template.metric_endpoint, params)
    client = NangoClient()
    try:
        result = await client.fetch_data(
            request.integration_id,
            request.connection_id,
            template.metric_endpoint,
            method=template.method,
            params=params,
            body=template.request_body,
        )
    except NangoAPIError as e:
        session.add(
            MetricApiLog(
                metric_id=request.metric_id,
                run_id=request.run_id,
                endpoint=endpoint,
                success=False,
                endpoint_config=request.endpoint_config,
                error=str(e),
            )
        )
        session.commit()
        raise
    finally:
        await client.close()

    session.add(
        MetricApiLog(
            metric_id=request.metric_id,
            run_id=request.run_id,
            endpoint=endpoint,
            success=True,
            raw_response=result.data,
            endpoint_config=request.endpoint_config,
        )
    )
    session.commit()
    return result.data


# ─────────────────────────────────────────────
# TRANSFORMER GENERATION
# ─────────────────────────────────────────────


def _ingestion_context(
    request: IngestionRequest,
    template: MetricTemplate,
    sample: Any,
    previous: Optional[IngestionDefinition] = None,
    previous_error: Optional[str] = None,
) -> IngestionContext:
    return IngestionContext(
        template_id=template.template_id,
        integration_id=request.integration_id,
        endpoint=template.metric_endpoint,
        method=template.method,
        sample_api_response=sample,
        metric_description=template.description,
        available_params=template.required_params,
        endpoint_config=request.endpoint_config,
        extraction_prompt=template.extraction_prompt,
        data_path_hint=template.data_path,
        previous_definition=previous.model_dump(mode="json") if previous else None,
        previous_error=previous_error,
    )


async def generate_ingestion_transformer(
    session: Session,
    request: IngestionRequest,
    template: MetricTemplate,
    sample: Any,
) -> IngestionDefinition:
    """Generate, test against the sample, regenerate once on failure, persist."""
    event = "transformer:generate-ingestion"
    log_event(session, request.metric_id, f"{event}:start", True, {"templateId": template.template_id}, request.run_id)

    snapshot = not template.is_time_series
    generator = get_generator()
    try:
        definition = await generator.generate_ingestion_definition(
            _ingestion_context(request, template, sample)
        )
        try:
            apply_ingestion_definition(definition, sample, snapshot=snapshot)
        except TransformerExecutionError as first_error:
            logger.warning(
                f"Generated ingestion transformer failed its test, regenerating: {first_error}",
                extra={"metric_id": request.metric_id},
            )
            definition = await generator.generate_ingestion_definition(
                _ingestion_context(request, template, sample, definition, str(first_error))
            )
            try:
                apply_ingestion_definition(definition, sample, snapshot=snapshot)
            except TransformerExecutionError as e:
                raise TransformerGenerationError(
                    f"Failed to generate working transformer: {e}"
                ) from e
    except Exception as e:
        log_event(session, request.metric_id, f"{event}:error", False, {"error": str(e)}, request.run_id)
        raise

    upsert_ingestion_transformer(session, request.metric_id, definition, generator.name)
    log_event(
        session,
        request.metric_id,
        f"{event}:complete",
        True,
        {"provider": generator.name, "reasoning": definition.reasoning},
        request.run_id,
    )
    return definition


async def get_or_create_ingestion_definition(
    session: Session,
    request: IngestionRequest,
    template: MetricTemplate,
    sample: Any,
    on_step: Optional[StepCallback] = None,
) -> Tuple[IngestionDefinition, bool]:
    """Reuse the stored definition, or generate one. Returns (definition, created)."""
    existing = get_ingestion_transformer(session, request.metric_id)
    if existing is not None:
        return load_ingestion_definition(existing), False

    if on_step:
        await on_step(PipelineStep.GENERATING_INGESTION_TRANSFORMER)
    definition = await generate_ingestion_transformer(session, request, template, sample)
    return definition, True


# ─────────────────────────────────────────────
# PERSISTENCE
# ─────────────────────────────────────────────


def save_data_points_batch(
    session: Session,
    metric_id: str,
    points: List[DataPoint],
    is_time_series: bool,
) -> None:
    """Persist in one transaction.

    Time-series: replace points whose timestamps are re-delivered.
    Snapshot: replace the metric's whole set; records are spaced one
    millisecond apart from the first timestamp to keep them distinct.
    """
    if not points:
        return
    if is_time_series:
        timestamps = [p.timestamp for p in points]
        session.exec(
            delete(MetricDataPoint).where(
                MetricDataPoint.metric_id == metric_id,
                MetricDataPoint.timestamp.in_(timestamps),
            )
        )
    else:
        base = points[0].timestamp
        timestamps = [base + timedelta(milliseconds=i) for i in range(len(points))]
        session.exec(delete(MetricDataPoint).where(MetricDataPoint.metric_id == metric_id))
    session.add_all(
        MetricDataPoint(
            metric_id=metric_id,
            timestamp=timestamp,
            value=p.value,
            dimensions=p.dimensions,
        )
        for p, timestamp in zip(points, timestamps)
    )
    session.commit()
    logger.info(
        f"Saved {len(points)} data points ({'time-series' if is_time_series else 'snapshot'})",
        extra={"metric_id": metric_id},
    )


def load_data_points(
    session: Session, metric_id: str, limit: Optional[int] = None
) -> List[DataPoint]:
    """Most recent points first when limited; returned in ascending time order."""
    query = (
        select(MetricDataPoint)
        .where(MetricDataPoint.metric_id == metric_id)
        .order_by(MetricDataPoint.timestamp.desc())
    )
    if limit:
        query = query.limit(limit)
    rows = session.exec(query).all()
    return [
        DataPoint(timestamp=r.timestamp, value=r.value, dimensions=r.dimensions)
        for r in reversed(rows)
    ]


# ─────────────────────────────────────────────
# ENTRY POINTS
# ─────────────────────────────────────────────


async def ingest_metric_data(
    session: Session,
    request: IngestionRequest,
    on_step: Optional[StepCallback] = None,
    now: Optional[datetime] = None,
) -> IngestionResult:
    """Full ingestion for one metric, reporting steps through ``on_step``."""
    template = get_template(request.template_id)
    if template is None:
        return IngestionResult(success=False, error=f"Template not found: {request.template_id}")

    if on_step:
        await on_step(PipelineStep.FETCHING_API_DATA)
    try:
        raw = await fetch_raw_data(session, request, template)
    except NangoAPIError as e:
        logger.error(f"Fetch failed: {e}", extra={"metric_id": request.metric_id})
        return IngestionResult(success=False, error=f"Failed to fetch data: {e}")

    try:
        definition, created = await get_or_create_ingestion_definition(
            session, request, template, raw, on_step
        )
    except TransformerGenerationError as e:
        return IngestionResult(success=False, error=str(e))

    if on_step:
        await on_step(PipelineStep.EXECUTING_INGESTION_TRANSFORMER)
    try:
        points = apply_ingestion_definition(
            definition, raw, now=now or utc_now(), snapshot=not template.is_time_series
        )
    except TransformerExecutionError as e:
        logger.error(f"Transform failed: {e}", extra={"metric_id": request.metric_id})
        return IngestionResult(success=False, error=f"Transform failed: {e}")

    if on_step:
        await on_step(PipelineStep.SAVING_TIMESERIES_DATA)
    save_data_points_batch(session, request.metric_id, points, template.is_time_series)

    return IngestionResult(success=True, data_points=points, transformer_created=created)
