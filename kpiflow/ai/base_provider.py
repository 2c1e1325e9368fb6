"""KPIFlow — Abstract AI Provider."""

from abc import ABC, abstractmethod


class AIProvider(ABC):
    """Abstract base for AI code generation.

    Providers receive a system prompt describing the transform contract and a
    user prompt carrying the data sample, and return Python source.
    """

    name: str = "base"

    @abstractmethod
    async def generate_code(
        self, system_prompt: str, user_prompt: str, temperature: float = 0.1
    ) -> str:
        """Generate transformer source code.

        Args:
            system_prompt: Contract the code must follow.
            user_prompt: Data sample and user preferences.
            temperature: Sampling temperature; kept low for deterministic code.

        Returns:
            Raw model output. Callers strip markdown fences with
            ``strip_code_fences``.
        """
        ...

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is configured and ready."""
        ...


def strip_code_fences(raw: str) -> str:
    """Remove a surrounding ```python fence if the model added one."""
    clean = raw.strip()
    if clean.startswith("```"):
        clean = clean.split("\n", 1)[1] if "\n" in clean else clean[3:]
        if clean.rstrip().endswith("```"):
            clean = clean.rstrip()[:-3]
    return clean.strip() + "\n"
