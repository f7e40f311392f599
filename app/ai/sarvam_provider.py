"""Metricpipe — Sarvam AI Provider."""

from sarvamai import AsyncSarvamAI

from app.ai.base_provider import LLMProvider
from app.config import settings
from app.core.logging import get_logger

logger = get_logger("ai.sarvam")


class SarvamProvider(LLMProvider):
    """Sarvam AI provider for transformer generation (model: sarvam-m)."""

    name = "sarvam"

    def __init__(self):
        self.client = (
            AsyncSarvamAI(api_subscription_key=settings.sarvam_api_key)
            if settings.sarvam_api_key
            else None
        )

    def is_available(self) -> bool:
        return self.client is not None and bool(settings.sarvam_api_key)

    async def _complete(self, system_prompt: str, user_prompt: str) -> str:
        try:
            response = await self.client.chat.completions(
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=0.1,
                max_tokens=2000,
            )
            return response.choices[0].message.content or ""
        except Exception as e:
            logger.error(f"Sarvam generation failed: {e}")
            raise
