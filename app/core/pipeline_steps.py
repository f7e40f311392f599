"""Metricpipe — Pipeline Step Registry.

Single source of truth for step names and their display labels. Used by
the runner when it advances ``refresh_status`` and by the progress reader
when it rebuilds the step timeline.
"""

from enum import Enum
from typing import Dict

from app.models.pipeline_models import TaskType

STEP_EVENT_PREFIX = "pipeline-step:"


class PipelineStep(str, Enum):
    """Values persisted in ``Metric.refresh_status``."""

    FETCHING_API_DATA = "fetching-api-data"
    DELETING_OLD_DATA = "deleting-old-data"
    DELETING_OLD_TRANSFORMER = "deleting-old-transformer"
    GENERATING_INGESTION_TRANSFORMER = "generating-ingestion-transformer"
    EXECUTING_INGESTION_TRANSFORMER = "executing-ingestion-transformer"
    SAVING_TIMESERIES_DATA = "saving-timeseries-data"
    GENERATING_CHART_TRANSFORMER = "generating-chart-transformer"
    EXECUTING_CHART_TRANSFORMER = "executing-chart-transformer"
    SAVING_CHART_CONFIG = "saving-chart-config"


class StepDefinition:
    """Describes a single pipeline step."""

    def __init__(self, step: PipelineStep, display_name: str):
        self.step = step
        self.display_name = display_name

    def __repr__(self) -> str:
        return f"<Step {self.step.value}>"


PIPELINE_STEPS: Dict[str, StepDefinition] = {
    s.step.value: s
    for s in (
        StepDefinition(PipelineStep.FETCHING_API_DATA, "Fetching data from API..."),
        StepDefinition(PipelineStep.DELETING_OLD_DATA, "Clearing old data points..."),
        StepDefinition(PipelineStep.DELETING_OLD_TRANSFORMER, "Removing old transformer..."),
        StepDefinition(PipelineStep.GENERATING_INGESTION_TRANSFORMER, "Generating data transformer..."),
        StepDefinition(PipelineStep.EXECUTING_INGESTION_TRANSFORMER, "Processing API response..."),
        StepDefinition(PipelineStep.SAVING_TIMESERIES_DATA, "Saving metric data..."),
        StepDefinition(PipelineStep.GENERATING_CHART_TRANSFORMER, "Generating chart configuration..."),
        StepDefinition(PipelineStep.EXECUTING_CHART_TRANSFORMER, "Creating visualization..."),
        StepDefinition(PipelineStep.SAVING_CHART_CONFIG, "Finalizing..."),
    )
}

# Status set synchronously by the RPC handler before the task is spawned
INITIAL_STEP: Dict[TaskType, PipelineStep] = {
    TaskType.SOFT_REFRESH: PipelineStep.FETCHING_API_DATA,
    TaskType.HARD_REFRESH: PipelineStep.DELETING_OLD_DATA,
    TaskType.INGESTION_ONLY: PipelineStep.DELETING_OLD_TRANSFORMER,
    TaskType.CHART_ONLY: PipelineStep.DELETING_OLD_TRANSFORMER,
}


def display_name(step: str) -> str:
    """Full display label for a step; unknown steps fall back to the raw name."""
    definition = PIPELINE_STEPS.get(step)
    return definition.display_name if definition else step


def step_event(step: str) -> str:
    """Log tag for a step transition."""
    return f"{STEP_EVENT_PREFIX}{step}"
