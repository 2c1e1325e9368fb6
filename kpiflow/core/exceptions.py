"""KPIFlow — Pipeline Exception Hierarchy.

Exception Hierarchy:
    PipelineError (base)
    ├── DataSourceError
    │   ├── AuthExpiredError
    │   └── RateLimitedError
    ├── TransformerGenerationError
    ├── TransformerExecutionError
    │   ├── SandboxTimeoutError
    │   └── SandboxViolationError
    ├── PersistenceError
    ├── MetricNotFoundError
    └── MetricBusyError

Every exception carries a human-readable ``message`` (what the orchestrator
mirrors onto ``Metric.last_error``) and a ``context`` dict for logs.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base exception for all refresh-pipeline errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }


# ─────────────────────────────────────────────
# UPSTREAM FETCH ERRORS
# ─────────────────────────────────────────────


class DataSourceError(PipelineError):
    """Integration fetch failed (network error or upstream HTTP error)."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.status_code = status_code
        super().__init__(message, context)


class AuthExpiredError(DataSourceError):
    """Integration credentials were rejected (401/403)."""


class RateLimitedError(DataSourceError):
    """Upstream returned 429. Retried by the next scheduled run, not within this one."""

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, status_code=429, context=context)


# ─────────────────────────────────────────────
# TRANSFORMER ERRORS
# ─────────────────────────────────────────────


class TransformerGenerationError(PipelineError):
    """AI call failed or returned code that never passed its test run."""


class TransformerExecutionError(PipelineError):
    """Generated code raised, or returned output of the wrong shape."""


class SandboxTimeoutError(TransformerExecutionError):
    """Generated code exceeded its wall-clock budget and was killed."""


class SandboxViolationError(TransformerExecutionError):
    """Generated code failed the static safety check (imports, dunders)."""


# ─────────────────────────────────────────────
# STATE ERRORS
# ─────────────────────────────────────────────


class PersistenceError(PipelineError):
    """Database write failed; the transaction was rolled back."""


class MetricNotFoundError(PipelineError):
    """Metric does not exist, or was deleted while a run was in flight."""


class MetricBusyError(PipelineError):
    """Another run holds the metric's refresh lock."""
