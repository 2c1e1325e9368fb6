"""KPIFlow — Structured JSON Logging.

Pipeline code attaches ``metric_id``, ``run_id``, ``step`` and friends as
top-level JSON keys, either through ``extra=`` or a bound ``ContextLogger``.
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Any, MutableMapping, Tuple

from kpiflow.config import settings

EXTRA_FIELDS = ("metric_id", "run_id", "step", "chart_id", "duration_ms", "status_code")


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update({key: getattr(record, key) for key in EXTRA_FIELDS if hasattr(record, key)})
        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ContextLogger(logging.LoggerAdapter):
    """Adapter that stamps every record with bound pipeline context.

    Per-call ``extra`` wins over bound values, so a single step can add its
    ``step`` or ``duration_ms`` without rebinding.
    """

    def bind(self, **context: Any) -> None:
        self.extra = {**self.extra, **context}

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> Tuple[str, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str) -> logging.Logger:
    """Return ``kpiflow.<name>`` with the JSON handler attached once."""
    logger = logging.getLogger(f"kpiflow.{name}")
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
        logger.propagate = False
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    return logger


def context_logger(name: str, **context: Any) -> ContextLogger:
    return ContextLogger(get_logger(name), context)
