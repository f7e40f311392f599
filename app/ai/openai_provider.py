"""Metricpipe — OpenAI Provider."""

from openai import AsyncOpenAI

from app.ai.base_provider import LLMProvider
from app.config import settings
from app.core.logging import get_logger

logger = get_logger("ai.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI chat-completions provider (JSON mode)."""

    name = "openai"

    def __init__(self):
        self.client = (
            AsyncOpenAI(api_key=settings.openai_api_key)
            if settings.openai_api_key
            else None
        )

    def is_available(self) -> bool:
        return self.client is not None and bool(settings.openai_api_key)

    async def _complete(self, system_prompt: str, user_prompt: str) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=settings.openai_model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=0.1,
                max_tokens=2000,
                response_format={"type": "json_object"},
            )
            return response.choices[0].message.content or ""
        except Exception as e:
            logger.error(f"OpenAI generation failed: {e}")
            raise
