"""Metricpipe — Heuristic Provider.

Rule-based fallback that inspects the sample payload directly. Always
available, so metrics keep working without any AI key configured.
"""

import re
from collections import deque
from typing import Any, List, Optional, Tuple

from app.ai.base_provider import TransformerGenerationError, TransformerGenerator
from app.models.pipeline_models import (
    ChartContext,
    ChartDefinition,
    ChartType,
    IngestionContext,
    IngestionDefinition,
)
from app.transformation.executor import coerce_value, get_path, parse_timestamp
from app.core.logging import get_logger

logger = get_logger("ai.heuristic")

TIME_KEY = re.compile(r"(date|time|day|week|month|period|created|updated|_at$|^at$)", re.I)
VALUE_KEYS = ("total", "count", "value", "views", "amount", "sum")
ID_KEY = re.compile(r"(^id$|_id$|^uuid$)", re.I)
COUNT_HINT = re.compile(r"^\s*count\b", re.I)
MAX_SEARCH_DEPTH = 4
MAX_DIMENSIONS = 5


def _find_records(sample: Any) -> Tuple[str, Optional[list]]:
    """Breadth-first search for the first non-empty list of records."""
    queue: deque = deque([("", sample, 0)])
    while queue:
        path, node, depth = queue.popleft()
        if isinstance(node, list) and node and isinstance(node[0], (dict, list)):
            return path, node
        if isinstance(node, dict) and depth < MAX_SEARCH_DEPTH:
            for key, value in node.items():
                queue.append((f"{path}.{key}" if path else key, value, depth + 1))
    return "", None


def _first_numeric_path(sample: Any, prefix: str = "") -> Optional[str]:
    if isinstance(sample, dict):
        for key, value in sample.items():
            path = f"{prefix}.{key}" if prefix else key
            if ID_KEY.search(key):
                continue
            if coerce_value(value) is not None:
                return path
            nested = _first_numeric_path(value, path)
            if nested:
                return nested
    return None


def _timestamp_unit(raw: Any) -> str:
    number = coerce_value(raw)
    if number is None or isinstance(raw, str) and not raw.strip().isdigit():
        return "iso"
    return "unix_ms" if number > 1e11 else "unix"


def _is_time_value(key: str, raw: Any) -> bool:
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return bool(TIME_KEY.search(key)) and raw > 1e8
    return isinstance(raw, str) and parse_timestamp(raw) is not None and coerce_value(raw) is None


def _infer_from_rows(path: str, rows: List[list]) -> IngestionDefinition:
    header = rows[0]
    skip = 1 if len(rows) > 1 and all(
        isinstance(c, str) and coerce_value(c) is None and parse_timestamp(c) is None
        for c in header
    ) else 0
    row = rows[skip] if len(rows) > skip else header
    ts_index = next(
        (i for i, cell in enumerate(row) if _is_time_value("date", cell)), None
    )
    value_index = next(
        (
            i
            for i, cell in enumerate(row)
            if i != ts_index and coerce_value(cell) is not None
        ),
        None,
    )
    if value_index is None:
        raise TransformerGenerationError("No numeric column found in tabular response")
    label = str(header[value_index]) if skip else "Value"
    return IngestionDefinition(
        records_path=path,
        skip_rows=skip,
        timestamp_field=str(ts_index) if ts_index is not None else None,
        timestamp_unit=_timestamp_unit(row[ts_index]) if ts_index is not None else "iso",
        value_field=str(value_index),
        value_label=label,
        reasoning="Tabular rows: first date-like column is the timestamp, first numeric column the value.",
    )


def _infer_from_objects(
    path: str, records: List[dict], hint: Optional[str], count_records: bool = False
) -> IngestionDefinition:
    first = records[0]
    ts_field = next(
        (k for k, v in first.items() if TIME_KEY.search(k) and _is_time_value(k, v)),
        None,
    ) or next((k for k, v in first.items() if _is_time_value(k, v)), None)

    numeric = [
        k
        for k, v in first.items()
        if k != ts_field and not ID_KEY.search(k) and coerce_value(v) is not None
    ]
    hint_key = hint.rsplit(".", 1)[-1] if hint else None
    value_field = (
        hint_key
        if hint_key in numeric
        else next((k for k in numeric if k.lower() in VALUE_KEYS), None)
        or (numeric[0] if numeric else None)
    )
    if value_field is None or count_records:
        return IngestionDefinition(
            records_path=path,
            timestamp_field=ts_field,
            timestamp_unit=_timestamp_unit(first.get(ts_field)) if ts_field else "iso",
            value_mode="count",
            value_label="Count",
            reasoning="Counting records per day.",
        )
    return IngestionDefinition(
        records_path=path,
        timestamp_field=ts_field,
        timestamp_unit=_timestamp_unit(first.get(ts_field)) if ts_field else "iso",
        value_field=value_field,
        dimension_fields=[k for k in numeric if k != value_field][:MAX_DIMENSIONS],
        duplicate_policy="sum",
        value_label=value_field.replace("_", " ").title(),
        reasoning=f"Using '{value_field}' per record with '{ts_field or 'fetch time'}' as time.",
    )


def _looks_cumulative(values: List[float]) -> bool:
    return len(values) > 2 and all(b >= a for a, b in zip(values, values[1:]))


class HeuristicProvider(TransformerGenerator):
    """Deterministic generator based on payload shape."""

    name = "heuristic"

    def is_available(self) -> bool:
        return True

    async def generate_ingestion_definition(
        self, context: IngestionContext
    ) -> IngestionDefinition:
        sample = context.sample_api_response
        hint = context.data_path_hint

        if hint and coerce_value(get_path(sample, hint)) is not None:
            return IngestionDefinition(
                value_field=hint,
                value_label=hint.rsplit(".", 1)[-1].replace("_", " ").title(),
                data_description=context.metric_description,
                reasoning=f"Single value at '{hint}', timestamped at fetch time.",
            )

        path, records = _find_records(sample)
        if records is not None:
            definition = (
                _infer_from_rows(path, records)
                if isinstance(records[0], list)
                else _infer_from_objects(
                    path,
                    records,
                    hint,
                    count_records=bool(COUNT_HINT.match(context.extraction_prompt or "")),
                )
            )
            definition.data_description = context.metric_description
            return definition

        value_field = _first_numeric_path(sample)
        if value_field is None:
            raise TransformerGenerationError(
                "Could not find a numeric value in the API response"
            )
        return IngestionDefinition(
            value_field=value_field,
            value_label=value_field.rsplit(".", 1)[-1].replace("_", " ").title(),
            data_description=context.metric_description,
            reasoning=f"Single value at '{value_field}', timestamped at fetch time.",
        )

    async def generate_chart_definition(self, context: ChartContext) -> ChartDefinition:
        values = [p.value for p in sorted(context.sample_points, key=lambda p: p.timestamp)]
        cumulative = _looks_cumulative(values)
        stats = context.data_stats
        period = (
            f" from {stats.date_from} to {stats.date_to}" if stats.date_from else ""
        )
        return ChartDefinition(
            chart_type=context.chart_type,
            cadence=context.cadence,
            selected_dimension=context.selected_dimension,
            aggregation="last" if cumulative else "sum",
            title=context.metric_name,
            description=f"{context.metric_description or context.metric_name}{period}",
            value_label=context.selected_dimension or context.metric_name,
            y_axis_label=context.selected_dimension or context.metric_name,
            stacked=context.chart_type in (ChartType.BAR, ChartType.AREA),
            reasoning=(
                "Values only grow, so each bucket shows its latest total."
                if cumulative
                else "Values are per-period amounts, so buckets are summed."
            ),
        )
