"""Metricpipe — Anthropic Claude Provider."""

from anthropic import AsyncAnthropic

from app.ai.base_provider import LLMProvider
from app.config import settings
from app.core.logging import get_logger

logger = get_logger("ai.claude")


class ClaudeProvider(LLMProvider):
    """Anthropic Claude provider for transformer generation."""

    name = "claude"

    def __init__(self):
        self.client = (
            AsyncAnthropic(api_key=settings.anthropic_api_key)
            if settings.anthropic_api_key
            else None
        )

    def is_available(self) -> bool:
        return self.client is not None and bool(settings.anthropic_api_key)

    async def _complete(self, system_prompt: str, user_prompt: str) -> str:
        try:
            response = await self.client.messages.create(
                model=settings.claude_model,
                max_tokens=2000,
                temperature=0.1,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
            )
            return response.content[0].text if response.content else ""
        except Exception as e:
            logger.error(f"Claude generation failed: {e}")
            raise
