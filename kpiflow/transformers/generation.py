"""KPIFlow — Generate, Test, Repair Loop.

Shared by ingestion and chart transformers: one generation call, a sandboxed
test run, and at most one repair call that sees the failing code and error.
"""

from typing import Awaitable, Callable

from kpiflow.ai.base_provider import AIProvider, strip_code_fences
from kpiflow.ai.prompts import build_repair_prompt
from kpiflow.core.exceptions import PipelineError, TransformerExecutionError, TransformerGenerationError
from kpiflow.core.logging import get_logger

logger = get_logger("transformers.generation")

GENERATION_TEMPERATURE = 0.1
REPAIR_TEMPERATURE = 0.2

CodeTest = Callable[[str], Awaitable[object]]


async def _call_provider(
    provider: AIProvider, system_prompt: str, user_prompt: str, temperature: float
) -> str:
    try:
        raw = await provider.generate_code(system_prompt, user_prompt, temperature)
    except Exception as e:
        raise TransformerGenerationError(
            f"AI code generation failed ({provider.name}): {e}",
            context={"provider": provider.name},
        ) from e
    code = strip_code_fences(raw or "")
    if not code.strip():
        raise TransformerGenerationError(
            f"AI provider {provider.name} returned no code",
            context={"provider": provider.name},
        )
    return code


async def _run_test(test: CodeTest, code: str) -> None:
    """Run ``test``; any failure other than a pipeline error counts as bad output."""
    try:
        await test(code)
    except PipelineError:
        raise
    except Exception as e:
        raise TransformerExecutionError(
            f"Output validation failed: {type(e).__name__}: {e}",
            context={"error_type": type(e).__name__},
        ) from e


async def generate_with_repair(
    provider: AIProvider,
    system_prompt: str,
    user_prompt: str,
    test: CodeTest,
    label: str,
) -> str:
    """Return code that passed ``test``, or raise TransformerGenerationError."""
    code = await _call_provider(provider, system_prompt, user_prompt, GENERATION_TEMPERATURE)
    try:
        await _run_test(test, code)
        return code
    except TransformerExecutionError as e:
        first_error = e.message
        logger.warning(f"Generated {label} failed its test run, requesting a fix: {first_error}")

    repaired = await _call_provider(
        provider,
        system_prompt,
        build_repair_prompt(user_prompt, code, first_error),
        REPAIR_TEMPERATURE,
    )
    try:
        await _run_test(test, repaired)
    except TransformerExecutionError as e:
        raise TransformerGenerationError(
            f"Generated {label} failed after one repair attempt: {e.message}",
            context={"first_error": first_error},
        ) from e
    logger.info(f"Repaired {label} passed its test run")
    return repaired
