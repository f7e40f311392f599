"""Metricpipe — Transformer Generation Prompts.

Providers are asked for JSON definitions that validate against the
pydantic schemas in ``app.models.pipeline_models``.
"""

import json
from typing import Any

from app.models.pipeline_models import (
    ChartContext,
    ChartDefinition,
    IngestionContext,
    IngestionDefinition,
)

MAX_SAMPLE_ITEMS = 10
MAX_SAMPLE_CHARS = 12000
MAX_SAMPLE_POINTS = 50

INGESTION_SYSTEM_PROMPT = f"""You design data ingestion transformers for a metrics dashboard.

You MUST respond with valid JSON only. No markdown, no code blocks, no explanation outside the JSON.

=== CONTEXT ===
The transformer runs on a schedule. Each run fetches the API again and the
resulting data points accumulate in the database. The same definition must
handle the first (historical) fetch and every later fetch.

Given an API endpoint and its ACTUAL response, describe how to turn the
response into data points of the form
  {{"timestamp": <when it happened>, "value": <number>, "dimensions": <object or null>}}

The JSON must validate against this schema:
{json.dumps(IngestionDefinition.model_json_schema(), indent=2)}

RULES:
1. records_path is a dotted path to the list of records ("" for the root). Use "" and
   value_field for single-value responses; the fetch time becomes the timestamp.
2. Field paths are dotted paths inside one record. For rows that are arrays use column
   indices ("0", "1") and set skip_rows to skip header rows.
3. Put the PRIMARY metric in value_field. Use value_mode "count" when each record is one
   occurrence (e.g. one issue) and the metric is how many happened per day.
4. Put RELATED numeric values or breakdown keys in dimension_fields.
5. Keep truncate_to "day" unless the API returns intra-day data that matters.
6. Use timestamp_unit "unix" or "unix_ms" for epoch numbers.
7. value_label is a short human label for the value (e.g. "Stars", "Views").
"""

CHART_SYSTEM_PROMPT = f"""You design chart transformers for a metrics dashboard.

You MUST respond with valid JSON only. No markdown, no code blocks, no explanation outside the JSON.

=== CONTEXT ===
Data points accumulate over time; only the NUMBER of points grows. All timestamps
are normalized to midnight UTC. The chart is recomputed from the stored points
every time the data refreshes.

The JSON must validate against this schema:
{json.dumps(ChartDefinition.model_json_schema(), indent=2)}

CHART TYPE GUIDE:
- line/area: trends over time
- bar: discrete periods or fewer than 20 buckets
- pie: distribution of a whole (series become slices)
- radar: multi-dimensional comparison
- radial/kpi: single latest value, progress toward a goal

RULES:
1. Use aggregation "last" for cumulative totals (followers, stars) and "sum" for
   per-period counts (commits, views). Use "avg" for rates and percentages.
2. Keep the chart_type, cadence and selected_dimension the user asked for.
3. title is short; description says what is measured and over what period.
4. Explain the choice in one sentence in reasoning.
"""


def summarize_sample(obj: Any, depth: int = 0) -> Any:
    """Trim long lists so a sample response fits in a prompt."""
    if isinstance(obj, list):
        items = [summarize_sample(item, depth + 1) for item in obj[:MAX_SAMPLE_ITEMS]]
        if len(obj) > MAX_SAMPLE_ITEMS:
            items.append(f"... {len(obj) - MAX_SAMPLE_ITEMS} more items")
        return items
    if isinstance(obj, dict) and depth < 8:
        return {key: summarize_sample(value, depth + 1) for key, value in obj.items()}
    return obj


def _sample_block(sample: Any) -> str:
    text = json.dumps(summarize_sample(sample), indent=2, default=str)
    if len(text) > MAX_SAMPLE_CHARS:
        text = text[:MAX_SAMPLE_CHARS] + "\n... (truncated)"
    return text


def build_ingestion_prompt(context: IngestionContext) -> str:
    lines = [
        f"Integration: {context.integration_id}",
        f"Endpoint: {context.method} {context.endpoint}",
        f"Metric: {context.metric_description}",
        f"Available params: {', '.join(context.available_params) or 'none'}",
        f"Endpoint config: {json.dumps(context.endpoint_config, default=str)}",
    ]
    if context.data_path_hint:
        lines.append(f"The value most likely lives at: {context.data_path_hint}")
    if context.extraction_prompt:
        lines.append(f"Extraction notes: {context.extraction_prompt}")
    if context.previous_definition is not None:
        lines.append(
            "Your previous definition failed. Fix it.\n"
            f"Previous definition: {json.dumps(context.previous_definition)}\n"
            f"Error: {context.previous_error}"
        )
    lines.append(f"\nACTUAL API response:\n{_sample_block(context.sample_api_response)}")
    return "\n".join(lines)


def build_chart_prompt(context: ChartContext) -> str:
    stats = context.data_stats
    points = [
        p.model_dump(mode="json") for p in context.sample_points[:MAX_SAMPLE_POINTS]
    ]
    return "\n".join(
        [
            f"Metric: {context.metric_name}",
            f"Description: {context.metric_description or 'n/a'}",
            f"Requested chart type: {context.chart_type.value}",
            f"Requested cadence: {context.cadence.value}",
            f"Selected dimension: {context.selected_dimension or 'none'}",
            f"Data stats: {stats.model_dump_json()}",
            f"\nSample data points (most recent first):\n{json.dumps(points, indent=2)}",
        ]
    )
