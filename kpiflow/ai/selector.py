"""KPIFlow — AI Provider Selection."""

from typing import Dict, Type

from kpiflow.ai.base_provider import AIProvider
from kpiflow.ai.claude_provider import ClaudeProvider
from kpiflow.ai.sarvam_provider import SarvamProvider
from kpiflow.config import settings
from kpiflow.core.exceptions import TransformerGenerationError

PROVIDERS: Dict[str, Type[AIProvider]] = {
    "claude": ClaudeProvider,
    "sarvam": SarvamProvider,
}


def select_provider(provider_name: str = "auto") -> AIProvider:
    """Select and return an available AI provider.

    When provider_name is 'auto', tries DEFAULT_AI_PROVIDER first,
    then falls through remaining providers.
    """
    if provider_name == "auto":
        default = settings.default_ai_provider
        if default in PROVIDERS:
            provider = PROVIDERS[default]()
            if provider.is_available():
                return provider
        for name, cls in PROVIDERS.items():
            if name == default:
                continue  # already tried
            provider = cls()
            if provider.is_available():
                return provider
        raise TransformerGenerationError(
            "No AI provider configured. Set ANTHROPIC_API_KEY or SARVAM_API_KEY in .env."
        )

    if provider_name not in PROVIDERS:
        raise TransformerGenerationError(f"Unknown AI provider: {provider_name}")
    provider = PROVIDERS[provider_name]()
    if not provider.is_available():
        raise TransformerGenerationError(f"{provider_name} provider not configured.")
    return provider
