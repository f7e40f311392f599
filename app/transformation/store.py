"""Metricpipe — Transformer Store.

Both transformer kinds are looked up by natural key before generation:
ingestion transformers by metric (``template_id = metric_id``), chart
transformers by dashboard chart. No TTL; rows live until replaced.
"""

from typing import Optional

from sqlmodel import Session, select

from app.models.pipeline_models import ChartDefinition, IngestionDefinition
from app.models.transformer_models import ChartTransformer, DataIngestionTransformer
from app.core.logging import get_logger

logger = get_logger("transformation.store")


# ─────────────────────────────────────────────
# INGESTION TRANSFORMERS
# ─────────────────────────────────────────────


def get_ingestion_transformer(
    session: Session, metric_id: str
) -> Optional[DataIngestionTransformer]:
    return session.exec(
        select(DataIngestionTransformer).where(
            DataIngestionTransformer.template_id == metric_id
        )
    ).first()


def delete_ingestion_transformer(session: Session, metric_id: str) -> bool:
    """Delete if present. Returns whether a row was removed; absence is not an error."""
    existing = get_ingestion_transformer(session, metric_id)
    if existing is None:
        return False
    session.delete(existing)
    session.commit()
    logger.info("Deleted ingestion transformer", extra={"metric_id": metric_id})
    return True


def upsert_ingestion_transformer(
    session: Session,
    metric_id: str,
    definition: IngestionDefinition,
    provider: str,
) -> DataIngestionTransformer:
    """Store the definition for a metric, replacing any concurrent winner's row.

    Rows are never edited: an existing one is deleted and a new one created.
    """
    existing = get_ingestion_transformer(session, metric_id)
    if existing is not None:
        session.delete(existing)
        session.flush()
    row = DataIngestionTransformer(
        template_id=metric_id,
        definition=definition.model_dump(mode="json"),
        value_label=definition.value_label,
        data_description=definition.data_description,
        provider=provider,
    )
    session.add(row)
    session.commit()
    session.refresh(row)
    return row


def load_ingestion_definition(row: DataIngestionTransformer) -> IngestionDefinition:
    return IngestionDefinition.model_validate(row.definition)


# ─────────────────────────────────────────────
# CHART TRANSFORMERS
# ─────────────────────────────────────────────


def get_chart_transformer(
    session: Session, dashboard_chart_id: str
) -> Optional[ChartTransformer]:
    return session.exec(
        select(ChartTransformer).where(
            ChartTransformer.dashboard_chart_id == dashboard_chart_id
        )
    ).first()


def delete_chart_transformer(session: Session, dashboard_chart_id: str) -> bool:
    """Delete if present. Returns whether a row was removed; absence is not an error."""
    existing = get_chart_transformer(session, dashboard_chart_id)
    if existing is None:
        return False
    session.delete(existing)
    session.commit()
    logger.info(f"Deleted chart transformer for chart {dashboard_chart_id}")
    return True


def replace_chart_transformer(
    session: Session,
    dashboard_chart_id: str,
    definition: ChartDefinition,
    provider: str,
    base_version: int = 0,
) -> ChartTransformer:
    """Delete-then-create, carrying the version forward from any prior row.

    ``base_version`` covers callers that already deleted the prior row.
    """
    previous = get_chart_transformer(session, dashboard_chart_id)
    version = base_version + 1
    if previous is not None:
        version = max(previous.version, base_version) + 1
        session.delete(previous)
        session.flush()

    row = ChartTransformer(
        dashboard_chart_id=dashboard_chart_id,
        definition=definition.model_dump(mode="json"),
        chart_type=definition.chart_type.value,
        cadence=definition.cadence.value,
        selected_dimension=definition.selected_dimension,
        provider=provider,
        version=version,
    )
    session.add(row)
    session.commit()
    session.refresh(row)
    return row


def load_chart_definition(row: ChartTransformer) -> ChartDefinition:
    return ChartDefinition.model_validate(row.definition)
