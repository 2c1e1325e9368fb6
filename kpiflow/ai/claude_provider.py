"""KPIFlow — Anthropic Claude Provider."""

from anthropic import AsyncAnthropic

from kpiflow.ai.base_provider import AIProvider
from kpiflow.config import settings
from kpiflow.core.logging import get_logger

logger = get_logger("ai.claude")


class ClaudeProvider(AIProvider):
    """Anthropic Claude provider for transformer code generation."""

    name = "claude"

    def __init__(self):
        self.client = (
            AsyncAnthropic(api_key=settings.anthropic_api_key)
            if settings.anthropic_api_key
            else None
        )

    def is_available(self) -> bool:
        return self.client is not None and bool(settings.anthropic_api_key)

    async def generate_code(
        self, system_prompt: str, user_prompt: str, temperature: float = 0.1
    ) -> str:
        if not self.is_available():
            raise RuntimeError("Claude provider not configured")

        try:
            response = await self.client.messages.create(
                model=settings.anthropic_model,
                max_tokens=settings.ai_max_tokens,
                temperature=temperature,
                system=system_prompt,
                messages=[
                    {"role": "user", "content": user_prompt},
                ],
            )
            return response.content[0].text if response.content else ""
        except Exception as e:
            logger.error(f"Claude generation failed: {e}")
            raise
