"""Metricpipe — Transformer Executor.

Applies generated transformer definitions deterministically:
  raw API response → data points (ingestion)
  data points → renderable chart config (chart)

Definitions are declarative data, never code, so a generated transformer
cannot do anything beyond reshaping the payload it is given.
"""

import math
import re
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from app.models.metric_models import as_utc, utc_now
from app.models.pipeline_models import (
    Cadence,
    CenterLabel,
    ChartConfig,
    ChartDefinition,
    ChartType,
    DataPoint,
    DataStats,
    GoalLine,
    IngestionDefinition,
    SeriesStyle,
)
from app.core.logging import get_logger

logger = get_logger("transformation.executor")

DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%Y-%m-%d %H:%M:%S",
    "%m/%d/%Y",
    "%b %d, %Y",
    "%d %b %Y",
    "%Y-%m",
)
TIME_SERIES_TYPES = {ChartType.LINE, ChartType.BAR, ChartType.AREA, ChartType.RADAR}
GOAL_LINE_TYPES = {ChartType.LINE, ChartType.BAR, ChartType.AREA}
MAX_CATEGORY_SERIES = 5
MAX_PIE_SLICES = 12
DATE_RANGE_DAYS = {"7d": 7, "30d": 30, "90d": 90, "365d": 365}


class TransformerExecutionError(Exception):
    """Raised when a definition cannot be applied to the given data."""


# ─────────────────────────────────────────────
# PATH & VALUE HELPERS
# ─────────────────────────────────────────────


def get_path(obj: Any, path: Optional[str]) -> Any:
    """Resolve a dotted path; numeric segments index into lists."""
    if not path:
        return obj
    current = obj
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and re.fullmatch(r"-?\d+", part):
            index = int(part)
            current = current[index] if -len(current) <= index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def coerce_value(raw: Any) -> Optional[float]:
    """Convert a raw field into a finite float, or None."""
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    elif isinstance(raw, str):
        cleaned = raw.strip().replace(",", "").rstrip("%").lstrip("$€£")
        try:
            value = float(cleaned)
        except ValueError:
            return None
    else:
        return None
    return value if math.isfinite(value) else None


def parse_timestamp(raw: Any, unit: str = "iso") -> Optional[datetime]:
    """Parse ISO strings, common date formats and unix epochs to aware UTC."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, datetime):
        return as_utc(raw)
    if isinstance(raw, date):
        return datetime(raw.year, raw.month, raw.day, tzinfo=timezone.utc)
    if isinstance(raw, (int, float)) or (
        isinstance(raw, str) and re.fullmatch(r"\d{9,13}(\.\d+)?", raw.strip())
    ):
        number = float(raw)
        if unit == "unix_ms" or (unit == "iso" and number > 1e11):
            number /= 1000
        try:
            return datetime.fromtimestamp(number, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(raw, str):
        return None
    text = raw.strip()
    try:
        return as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return as_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue
    return None


def _field_name(field: str) -> str:
    return field.rsplit(".", 1)[-1]


def _merge_dimensions(
    existing: Optional[Dict[str, Any]], new: Optional[Dict[str, Any]], summing: bool
) -> Optional[Dict[str, Any]]:
    if not existing or not new or not summing:
        return new if new is not None else existing
    merged = dict(existing)
    for key, value in new.items():
        old = coerce_value(merged.get(key))
        incoming = coerce_value(value)
        if old is not None and incoming is not None and not isinstance(value, str):
            merged[key] = old + incoming
        else:
            merged[key] = value
    return merged


# ─────────────────────────────────────────────
# INGESTION
# ─────────────────────────────────────────────


def apply_ingestion_definition(
    definition: IngestionDefinition,
    api_response: Any,
    now: Optional[datetime] = None,
    snapshot: bool = False,
) -> List[DataPoint]:
    """Map a raw API response to data points.

    Raises TransformerExecutionError on the first malformed record so a bad
    definition never produces partial data. Time-series records are merged
    per timestamp; snapshot records are all kept, in response order.
    """
    now = as_utc(now) if now else utc_now()
    target = get_path(api_response, definition.records_path)
    if target is None:
        raise TransformerExecutionError(
            f"Records path '{definition.records_path}' not found in API response"
        )
    records = target[definition.skip_rows :] if isinstance(target, list) else [target]

    summing = definition.value_mode == "count" or definition.duplicate_policy == "sum"
    points: Dict[datetime, DataPoint] = {}
    snapshot_points: List[DataPoint] = []

    for index, record in enumerate(records):
        if definition.timestamp_field:
            raw_ts = get_path(record, definition.timestamp_field)
            timestamp = parse_timestamp(raw_ts, definition.timestamp_unit)
            if timestamp is None:
                raise TransformerExecutionError(
                    f"Record {index} has invalid timestamp: {raw_ts!r}"
                )
        else:
            timestamp = now
        if definition.truncate_to == "day":
            timestamp = timestamp.replace(hour=0, minute=0, second=0, microsecond=0)

        if definition.value_mode == "count":
            value = 1.0
        else:
            raw_value = (
                get_path(record, definition.value_field)
                if definition.value_field
                else record
            )
            value = coerce_value(raw_value)
            if value is None:
                raise TransformerExecutionError(
                    f"Record {index} has invalid value: {raw_value!r}"
                )

        dimensions = {
            _field_name(field): get_path(record, field)
            for field in definition.dimension_fields
            if get_path(record, field) is not None
        } or None
        point = DataPoint(timestamp=timestamp, value=value, dimensions=dimensions)

        if snapshot:
            snapshot_points.append(point)
            continue

        existing = points.get(timestamp)
        if existing is None:
            points[timestamp] = point
        elif summing:
            existing.value += value
            existing.dimensions = _merge_dimensions(
                existing.dimensions, dimensions, summing=True
            )
        elif not definition.timestamp_field:
            raise TransformerExecutionError(
                f"{len(records)} records but no timestamp field; "
                "set a timestamp field or duplicate_policy 'sum'"
            )
        elif existing.dimensions != dimensions:
            raise TransformerExecutionError(
                f"Records at {timestamp.isoformat()} carry different dimensions; "
                "use duplicate_policy 'sum' or a finer timestamp"
            )
        else:
            logger.debug(f"Duplicate timestamp {timestamp.isoformat()}; keeping last value")
            points[timestamp] = point

    if snapshot:
        if not snapshot_points:
            raise TransformerExecutionError("Transformer produced no data points")
        return snapshot_points
    if not points:
        raise TransformerExecutionError("Transformer produced no data points")
    return sorted(points.values(), key=lambda p: p.timestamp)


# ─────────────────────────────────────────────
# DATA STATS
# ─────────────────────────────────────────────


def calculate_data_stats(points: List[DataPoint]) -> DataStats:
    """Summarize points for generator context."""
    if not points:
        return DataStats()

    timestamps = sorted(p.timestamp for p in points)
    oldest, newest = timestamps[0], timestamps[-1]
    span_days = (newest - oldest).total_seconds() / 86400

    granularity = "daily"
    if len(points) > 1:
        avg_gap_days = span_days / (len(points) - 1)
        if avg_gap_days >= 25:
            granularity = "monthly"
        elif avg_gap_days >= 5:
            granularity = "weekly"

    keys: List[str] = []
    for p in points:
        for key in (p.dimensions or {}):
            if key not in keys:
                keys.append(key)

    return DataStats(
        total_count=len(points),
        date_from=oldest.date().isoformat(),
        date_to=newest.date().isoformat(),
        days_covered=math.ceil(span_days),
        detected_granularity=granularity,
        dimension_keys=keys,
    )


# ─────────────────────────────────────────────
# CHART
# ─────────────────────────────────────────────


def bucket_start(ts: datetime, cadence: Cadence) -> date:
    """First day of the bucket containing ``ts``."""
    day = ts.date()
    if cadence == Cadence.WEEKLY:
        return day - timedelta(days=day.weekday())
    if cadence == Cadence.MONTHLY:
        return day.replace(day=1)
    return day


def _aggregate(values: List[float], how: str) -> float:
    if how == "count":
        return float(len(values))
    if how == "avg":
        return sum(values) / len(values)
    if how == "last":
        return values[-1]
    if how == "max":
        return max(values)
    if how == "min":
        return min(values)
    return sum(values)


def _series_key(label: str) -> str:
    key = re.sub(r"[^0-9a-zA-Z]+", "_", label).strip("_").lower()
    return key or "unknown"


def _color(index: int) -> str:
    return f"var(--chart-{index % 5 + 1})"


def format_number(value: float) -> str:
    if float(value).is_integer():
        return f"{value:,.0f}"
    return f"{value:,.2f}"


def _collect_series(
    definition: ChartDefinition, points: List[DataPoint]
) -> Tuple[Dict[str, str], Dict[str, Dict[date, List[float]]]]:
    """Group point values into (series key → label) and per-bucket samples."""
    labels: Dict[str, str] = {}
    samples: Dict[str, Dict[date, List[float]]] = defaultdict(lambda: defaultdict(list))
    dimension = definition.selected_dimension

    if not dimension:
        labels["value"] = definition.value_label
        for p in points:
            samples["value"][bucket_start(p.timestamp, definition.cadence)].append(p.value)
        return labels, samples

    raw_values = [(p, (p.dimensions or {}).get(dimension)) for p in points]
    categorical = any(
        isinstance(v, str) and coerce_value(v) is None for _, v in raw_values
    )

    if not categorical:
        labels[dimension] = dimension
        for p, raw in raw_values:
            value = coerce_value(raw)
            if value is not None:
                samples[dimension][bucket_start(p.timestamp, definition.cadence)].append(value)
        return labels, samples

    totals: Dict[str, float] = defaultdict(float)
    for p, raw in raw_values:
        totals[str(raw) if raw is not None else "unknown"] += p.value
    ranked = sorted(totals, key=lambda c: totals[c], reverse=True)
    kept = set(ranked[:MAX_CATEGORY_SERIES])
    for p, raw in raw_values:
        category = str(raw) if raw is not None else "unknown"
        label = category if category in kept else "Other"
        key = _series_key(label)
        labels.setdefault(key, label)
        samples[key][bucket_start(p.timestamp, definition.cadence)].append(p.value)
    return labels, samples


def apply_chart_definition(
    definition: ChartDefinition,
    points: Iterable[DataPoint],
    goal: Optional[GoalLine] = None,
) -> ChartConfig:
    """Compute a renderable chart config from stored points."""
    ordered = sorted(points, key=lambda p: p.timestamp)
    if not ordered:
        raise TransformerExecutionError("No data points to chart")

    if definition.date_range in DATE_RANGE_DAYS:
        cutoff = ordered[-1].timestamp - timedelta(days=DATE_RANGE_DAYS[definition.date_range])
        ordered = [p for p in ordered if p.timestamp >= cutoff]

    labels, samples = _collect_series(definition, ordered)
    if not any(samples.values()):
        raise TransformerExecutionError(
            f"Dimension '{definition.selected_dimension}' has no values to chart"
        )

    aggregated: Dict[str, Dict[date, float]] = {
        key: {b: _aggregate(vals, definition.aggregation) for b, vals in buckets.items()}
        for key, buckets in samples.items()
    }
    buckets = sorted({b for series in aggregated.values() for b in series})
    data_keys = list(labels)
    chart_type = definition.chart_type
    x_key = definition.x_axis_key
    center_label = None

    if chart_type in TIME_SERIES_TYPES:
        chart_data = [
            {x_key: b.isoformat(), **{k: round(aggregated[k].get(b, 0.0), 4) for k in data_keys}}
            for b in buckets
        ]
        styles = {k: SeriesStyle(label=labels[k], color=_color(i)) for i, k in enumerate(data_keys)}
    elif chart_type == ChartType.PIE:
        x_key = "name"
        if len(data_keys) > 1:
            slices = [(labels[k], sum(aggregated[k].values())) for k in data_keys]
        else:
            series = aggregated[data_keys[0]]
            slices = [(b.isoformat(), series[b]) for b in buckets[-MAX_PIE_SLICES:]]
        chart_data = [
            {"name": name, "value": round(value, 4), "fill": _color(i)}
            for i, (name, value) in enumerate(slices)
        ]
        styles = {
            _series_key(name): SeriesStyle(label=name, color=_color(i))
            for i, (name, _) in enumerate(slices)
        }
        total = sum(value for _, value in slices)
        center_label = CenterLabel(value=format_number(total), label=definition.value_label)
        data_keys = ["value"]
    else:
        # Radial gauge and KPI tile show the latest bucket
        x_key = "name"
        latest = buckets[-1]
        key = data_keys[0]
        value = aggregated[key].get(latest, 0.0)
        chart_data = [
            {"name": labels[key], "value": round(value, 4), "fill": _color(0), "date": latest.isoformat()}
        ]
        styles = {"value": SeriesStyle(label=labels[key], color=_color(0))}
        center_label = CenterLabel(value=format_number(value), label=definition.value_label)
        data_keys = ["value"]

    multi_series = len(data_keys) > 1
    return ChartConfig(
        chart_type=chart_type,
        chart_data=chart_data,
        chart_config=styles,
        x_axis_key=x_key,
        data_keys=data_keys,
        title=definition.title,
        description=definition.description,
        x_axis_label=definition.x_axis_label,
        y_axis_label=definition.y_axis_label,
        show_legend=definition.show_legend or multi_series or chart_type == ChartType.PIE,
        show_tooltip=definition.show_tooltip,
        stacked=(definition.stacked and multi_series)
        if chart_type in (ChartType.BAR, ChartType.AREA)
        else None,
        center_label=center_label,
        goal_line=goal if goal is not None and chart_type in GOAL_LINE_TYPES else None,
        reasoning=definition.reasoning,
    )
