"""KPIFlow — Sandboxed Execution of Generated Transformers.

Generated code never runs in the service process. Each call spawns an
isolated interpreter (``python -I``, empty environment) that enforces memory,
CPU and file-size limits, and the parent kills it once the wall-clock budget
is spent.
"""

import asyncio
import json
import math
import sys
import time
from datetime import date, datetime
from pathlib import Path
from typing import Any, Optional

from kpiflow.config import settings
from kpiflow.core.exceptions import (
    SandboxTimeoutError,
    SandboxViolationError,
    TransformerExecutionError,
)
from kpiflow.core.logging import get_logger
from kpiflow.transformers.sandbox_runner import check_source

logger = get_logger("transformers.sandbox")

RUNNER_PATH = Path(__file__).resolve().parent / "sandbox_runner.py"
MAX_OUTPUT_BYTES = 20 * 1024 * 1024


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def validate_code(code: str) -> None:
    """Run the static safety check in-process before paying for a subprocess."""
    try:
        check_source(code)
    except ValueError as e:
        raise SandboxViolationError(f"Generated code rejected: {e}") from e


async def run_transform(
    code: str,
    *args: Any,
    timeout: Optional[float] = None,
    memory_mb: Optional[int] = None,
) -> Any:
    """Execute ``transform(*args)`` from ``code`` in a sandboxed subprocess.

    Raises:
        SandboxViolationError: Code failed the static check.
        SandboxTimeoutError: Wall-clock budget exceeded; the process was killed.
        TransformerExecutionError: Code raised, or produced unusable output.
    """
    validate_code(code)
    timeout = timeout or settings.sandbox_timeout_seconds
    memory_mb = memory_mb or settings.sandbox_memory_mb

    payload = json.dumps(
        {
            "code": code,
            "args": list(args),
            "memory_mb": memory_mb,
            "cpu_seconds": math.ceil(timeout) + 1,
        },
        default=_json_default,
    ).encode()

    started = time.monotonic()
    proc = await asyncio.create_subprocess_exec(
        sys.executable,
        "-I",
        str(RUNNER_PATH),
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env={},
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(payload), timeout)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass  # exited between the timeout and the kill
        await proc.wait()
        raise SandboxTimeoutError(
            f"Transformer exceeded the {timeout:g}s time limit",
            context={"timeout": timeout},
        )
    duration_ms = int((time.monotonic() - started) * 1000)

    if not stdout:
        tail = stderr.decode(errors="replace").strip().splitlines()[-1:] if stderr else []
        raise TransformerExecutionError(
            f"Transformer process exited with code {proc.returncode}"
            + (f": {tail[0]}" if tail else ""),
            context={"returncode": proc.returncode},
        )
    if len(stdout) > MAX_OUTPUT_BYTES:
        raise TransformerExecutionError("Transformer output exceeds size limit")

    try:
        response = json.loads(stdout)
    except ValueError as e:
        raise TransformerExecutionError("Transformer produced unreadable output") from e

    if not response.get("ok"):
        error_type = response.get("error_type", "Error")
        message = f"{error_type}: {response.get('error', 'unknown error')}"
        if error_type == "SandboxViolation":
            raise SandboxViolationError(message)
        raise TransformerExecutionError(message, context={"error_type": error_type})

    logger.debug("Transformer executed", extra={"duration_ms": duration_ms})
    return response.get("result")
