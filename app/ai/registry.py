"""Metricpipe — Transformer Generator Selection."""

from typing import Dict, Tuple, Type

from app.ai.base_provider import TransformerGenerationError, TransformerGenerator
from app.ai.claude_provider import ClaudeProvider
from app.ai.heuristic_provider import HeuristicProvider
from app.ai.openai_provider import OpenAIProvider
from app.ai.sarvam_provider import SarvamProvider
from app.config import settings

PROVIDERS: Dict[str, Type[TransformerGenerator]] = {
    "claude": ClaudeProvider,
    "openai": OpenAIProvider,
    "sarvam": SarvamProvider,
    "heuristic": HeuristicProvider,
}


def select_provider(provider_name: str = "auto") -> Tuple[str, TransformerGenerator]:
    """Select and return an available generator.

    When provider_name is 'auto', tries DEFAULT_AI_PROVIDER first, then the
    remaining LLM providers, and finally the heuristic generator.
    """
    if provider_name == "auto":
        default = settings.default_ai_provider
        if default in PROVIDERS:
            p = PROVIDERS[default]()
            if p.is_available():
                return default, p
        for name, cls in PROVIDERS.items():
            if name == default:
                continue  # already tried
            provider = cls()
            if provider.is_available():
                return name, provider
        raise TransformerGenerationError("No transformer generator available")
    elif provider_name in PROVIDERS:
        provider = PROVIDERS[provider_name]()
        if not provider.is_available():
            raise TransformerGenerationError(f"{provider_name} provider not configured.")
        return provider_name, provider
    else:
        raise TransformerGenerationError(f"Unknown provider: {provider_name}.")


def get_generator() -> TransformerGenerator:
    """The generator used by the pipeline engines."""
    return select_provider("auto")[1]
