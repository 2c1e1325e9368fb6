"""KPIFlow — Ingestion Transformer: Generate, Cache, Execute.

Maps an arbitrary provider payload to normalized data points. One live
transformer per metric, keyed by the metric and the payload's shape
fingerprint.
"""

from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from kpiflow.ai.base_provider import AIProvider
from kpiflow.ai.prompts import INGESTION_SYSTEM_PROMPT, build_ingestion_prompt
from kpiflow.ai.selector import select_provider
from kpiflow.core.exceptions import PersistenceError, TransformerExecutionError
from kpiflow.core.logging import get_logger
from kpiflow.core.metric_templates import get_template
from kpiflow.models.metric_models import Metric
from kpiflow.models.transformer_models import IngestionTransformer, NormalizedPoint
from kpiflow.transformers.fingerprint import fingerprint
from kpiflow.transformers.generation import generate_with_repair
from kpiflow.transformers.sandbox import run_transform

logger = get_logger("transformers.ingestion")


class TransformerHandle:
    """Code ready to execute, plus where it came from."""

    def __init__(self, code: str, input_fingerprint: str, generated: bool, reason: str = ""):
        self.code = code
        self.input_fingerprint = input_fingerprint
        self.generated = generated
        self.reason = reason

    def __repr__(self) -> str:
        source = f"generated: {self.reason}" if self.generated else "cached"
        return f"<TransformerHandle {self.input_fingerprint[:12]} ({source})>"


def _first_error(e: ValidationError) -> str:
    err = e.errors()[0]
    loc = ".".join(str(part) for part in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))


def validate_ingestion_output(result: Any) -> List[NormalizedPoint]:
    """Validate transformer output into points sorted by timestamp.

    Duplicate timestamps keep the last occurrence.
    """
    if not isinstance(result, list):
        raise TransformerExecutionError(
            f"Ingestion transformer must return a list, got {type(result).__name__}"
        )

    by_timestamp: Dict[Any, NormalizedPoint] = {}
    for index, item in enumerate(result):
        if not isinstance(item, dict):
            raise TransformerExecutionError(
                f"Point {index} must be an object, got {type(item).__name__}"
            )
        try:
            point = NormalizedPoint.model_validate(item)
        except ValidationError as e:
            raise TransformerExecutionError(f"Point {index} is invalid: {_first_error(e)}") from e
        by_timestamp[point.timestamp] = point

    return sorted(by_timestamp.values(), key=lambda p: p.timestamp)


async def execute_ingestion_transformer(
    code: str, raw_data: Any, endpoint: Dict[str, Any]
) -> List[NormalizedPoint]:
    """Run ingestion code in the sandbox and validate what it returns."""
    result = await run_transform(code, raw_data, endpoint)
    return validate_ingestion_output(result)


def get_cached_ingestion_transformer(
    session: Session, metric_id: int
) -> Optional[IngestionTransformer]:
    return session.exec(
        select(IngestionTransformer).where(IngestionTransformer.metric_id == metric_id)
    ).first()


def ingestion_cache_status(
    existing: Optional[IngestionTransformer], shape: str, regenerate: bool = False
) -> Optional[str]:
    """Why the cached transformer cannot be used, or None when it can."""
    if regenerate:
        return "forced regeneration"
    if existing is None:
        return "no cached transformer"
    if existing.input_fingerprint != shape:
        return "payload shape changed"
    return None


async def get_or_generate_ingestion_transformer(
    session: Session,
    metric: Metric,
    raw_data: Any,
    endpoint: Dict[str, Any],
    provider: Optional[AIProvider],
    regenerate: bool = False,
) -> TransformerHandle:
    """Return the cached transformer for this metric, generating a new one if needed.

    A new transformer replaces the old row (delete-then-insert in one
    transaction) only after it passes its test run, so a failed regeneration
    leaves the previous transformer in place.
    """
    shape = fingerprint(raw_data)
    existing = get_cached_ingestion_transformer(session, metric.id)
    reason = ingestion_cache_status(existing, shape, regenerate)
    if reason is None:
        return TransformerHandle(existing.code, shape, generated=False)

    if provider is None:
        provider = select_provider("auto")

    template = get_template(metric.template_id)
    logger.info(
        f"Generating ingestion transformer ({reason})",
        extra={"metric_id": metric.id},
    )
    user_prompt = build_ingestion_prompt(
        raw_data,
        endpoint,
        template_label=template.label if template else metric.name,
        template_description=template.description if template else None,
    )

    async def _test(candidate: str) -> None:
        await execute_ingestion_transformer(candidate, raw_data, endpoint)

    code = await generate_with_repair(
        provider, INGESTION_SYSTEM_PROMPT, user_prompt, _test, label="ingestion transformer"
    )

    try:
        if existing is not None:
            session.delete(existing)
            session.flush()
        session.add(
            IngestionTransformer(
                metric_id=metric.id,
                template_id=metric.template_id,
                code=code,
                input_fingerprint=shape,
            )
        )
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise PersistenceError(f"Could not save ingestion transformer: {e}") from e

    return TransformerHandle(code, shape, generated=True, reason=reason)
