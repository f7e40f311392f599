"""Metricpipe — Abstract Transformer Generator."""

import json
from abc import ABC, abstractmethod
from typing import Any, Type, TypeVar

from pydantic import BaseModel, ValidationError

from app.ai.prompts import (
    CHART_SYSTEM_PROMPT,
    INGESTION_SYSTEM_PROMPT,
    build_chart_prompt,
    build_ingestion_prompt,
)
from app.models.pipeline_models import (
    ChartContext,
    ChartDefinition,
    IngestionContext,
    IngestionDefinition,
)
from app.core.logging import get_logger

logger = get_logger("ai.base")

T = TypeVar("T", bound=BaseModel)


class TransformerGenerationError(Exception):
    """Raised when a provider cannot produce a usable transformer definition."""


class TransformerGenerator(ABC):
    """Abstract base for transformer generation.

    Generators return declarative definitions; the executor applies them.
    The pipeline treats every generator as an opaque external call.
    """

    name: str = "base"

    @abstractmethod
    async def generate_ingestion_definition(
        self, context: IngestionContext
    ) -> IngestionDefinition:
        """Design a mapping from the sample API response to data points."""
        ...

    @abstractmethod
    async def generate_chart_definition(self, context: ChartContext) -> ChartDefinition:
        """Design a chart for the metric's stored data points."""
        ...

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is configured and ready."""
        ...


def parse_model_json(raw: str, model: Type[T]) -> T:
    """Parse a model reply into ``model``, tolerating markdown code fences."""
    clean = raw.strip()
    if clean.startswith("```"):
        clean = clean.split("\n", 1)[1] if "\n" in clean else clean[3:]
        if clean.endswith("```"):
            clean = clean[:-3]
    try:
        payload: Any = json.loads(clean)
        return model.model_validate(payload)
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning(f"Failed to parse generator JSON: {e}. Raw: {raw[:300]}")
        raise TransformerGenerationError(
            f"Generator returned an invalid {model.__name__}: {e}"
        ) from e


class LLMProvider(TransformerGenerator):
    """Shared prompt/parse flow for chat-completion style providers."""

    @abstractmethod
    async def _complete(self, system_prompt: str, user_prompt: str) -> str:
        """Send one system+user exchange and return the raw reply text."""
        ...

    async def generate_ingestion_definition(
        self, context: IngestionContext
    ) -> IngestionDefinition:
        if not self.is_available():
            raise TransformerGenerationError(f"{self.name} provider not configured")
        raw = await self._complete(INGESTION_SYSTEM_PROMPT, build_ingestion_prompt(context))
        return parse_model_json(raw, IngestionDefinition)

    async def generate_chart_definition(self, context: ChartContext) -> ChartDefinition:
        if not self.is_available():
            raise TransformerGenerationError(f"{self.name} provider not configured")
        raw = await self._complete(CHART_SYSTEM_PROMPT, build_chart_prompt(context))
        return parse_model_json(raw, ChartDefinition)
