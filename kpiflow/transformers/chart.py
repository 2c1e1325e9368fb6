"""KPIFlow — Chart Transformer: Generate, Cache, Execute.

Maps stored data points to a chart configuration for one dashboard chart.
Scoped per chart, not per metric: two dashboards showing the same metric can
use different chart types, cadences and dimensions.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from kpiflow.ai.base_provider import AIProvider
from kpiflow.ai.prompts import CHART_SYSTEM_PROMPT, MAX_SAMPLE_POINTS, build_chart_prompt
from kpiflow.ai.selector import select_provider
from kpiflow.core.exceptions import PersistenceError, TransformerExecutionError
from kpiflow.core.logging import get_logger
from kpiflow.core.timeutils import as_utc
from kpiflow.models.metric_models import DashboardChart, DataPoint
from kpiflow.models.transformer_models import ChartConfig, ChartTransformer
from kpiflow.transformers.fingerprint import data_points_fingerprint
from kpiflow.transformers.generation import generate_with_repair
from kpiflow.transformers.ingestion import TransformerHandle
from kpiflow.transformers.sandbox import run_transform

logger = get_logger("transformers.chart")


# ── Input preparation ──


def serialize_points(points: List[DataPoint]) -> List[Dict[str, Any]]:
    """Data points as the JSON the chart transformer receives, oldest first."""
    ordered = sorted(points, key=lambda p: as_utc(p.timestamp))
    return [
        {
            "timestamp": as_utc(p.timestamp).isoformat(),
            "value": p.value,
            "dimensions": p.dimensions,
            "value_label": p.value_label,
        }
        for p in ordered
    ]


def chart_preferences(chart: DashboardChart) -> Dict[str, Any]:
    cadence = chart.cadence.value if hasattr(chart.cadence, "value") else chart.cadence
    return {
        "chart_type": chart.chart_type,
        "cadence": cadence,
        "selected_dimension": chart.selected_dimension,
        "user_prompt": chart.user_prompt,
    }


def compute_data_stats(points: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Summary statistics included in the chart generation prompt."""
    if not points:
        return {
            "total_count": 0,
            "date_range": None,
            "days_covered": 0,
            "detected_granularity": "unknown",
            "dimension_keys": [],
        }

    timestamps = [datetime.fromisoformat(p["timestamp"]) for p in points]
    start, end = min(timestamps), max(timestamps)
    days_covered = (end - start).days + 1

    granularity = "daily"
    if len(timestamps) > 1:
        ordered = sorted(timestamps)
        gaps = [
            (b - a).total_seconds() / 86400 for a, b in zip(ordered, ordered[1:])
        ]
        avg_gap = sum(gaps) / len(gaps)
        if avg_gap >= 25:
            granularity = "monthly"
        elif avg_gap >= 5:
            granularity = "weekly"

    dimension_keys = sorted(
        {key for p in points for key in (p.get("dimensions") or {}).keys()}
    )
    return {
        "total_count": len(points),
        "date_range": {"start": start.isoformat(), "end": end.isoformat()},
        "days_covered": days_covered,
        "detected_granularity": granularity,
        "dimension_keys": dimension_keys,
    }


# ── Execution ──


def validate_chart_output(result: Any) -> ChartConfig:
    if not isinstance(result, dict):
        raise TransformerExecutionError(
            f"Chart transformer must return an object, got {type(result).__name__}"
        )
    try:
        config = ChartConfig.model_validate(result)
    except ValidationError as e:
        err = e.errors()[0]
        loc = ".".join(str(part) for part in err.get("loc", ()))
        raise TransformerExecutionError(f"Chart config invalid at {loc}: {err.get('msg')}") from e
    return config


async def execute_chart_transformer(
    code: str, points: List[Dict[str, Any]], preferences: Dict[str, Any]
) -> ChartConfig:
    """Run chart code in the sandbox; stamp the result with the chart's preferences."""
    result = await run_transform(code, points, preferences)
    config = validate_chart_output(result)
    config.cadence = preferences.get("cadence")
    config.selected_dimension = preferences.get("selected_dimension")
    return config


# ── Cache ──


def get_cached_chart_transformer(
    session: Session, dashboard_chart_id: int
) -> Optional[ChartTransformer]:
    return session.exec(
        select(ChartTransformer).where(
            ChartTransformer.dashboard_chart_id == dashboard_chart_id
        )
    ).first()


def chart_cache_status(
    existing: Optional[ChartTransformer],
    shape: str,
    preferences: Dict[str, Any],
    regenerate: bool = False,
) -> Optional[str]:
    """Why the cached chart transformer cannot be used, or None when it can."""
    if regenerate:
        return "forced regeneration"
    if existing is None:
        return "no cached transformer"
    if existing.input_fingerprint != shape:
        return "data shape changed"
    for key in ("chart_type", "cadence", "selected_dimension", "user_prompt"):
        if getattr(existing, key) != preferences.get(key):
            return f"{key} changed"
    return None


async def get_or_generate_chart_transformer(
    session: Session,
    chart: DashboardChart,
    points: List[Dict[str, Any]],
    provider: Optional[AIProvider],
    regenerate: bool = False,
) -> TransformerHandle:
    """Return the cached transformer for this chart, generating a new one if needed."""
    preferences = chart_preferences(chart)
    shape = data_points_fingerprint(points)
    existing = get_cached_chart_transformer(session, chart.id)
    reason = chart_cache_status(existing, shape, preferences, regenerate)
    if reason is None:
        return TransformerHandle(existing.code, shape, generated=False)

    if provider is None:
        provider = select_provider("auto")

    logger.info(
        f"Generating chart transformer ({reason})",
        extra={"chart_id": chart.id, "metric_id": chart.metric_id},
    )
    user_prompt = build_chart_prompt(
        compute_data_stats(points), points[:MAX_SAMPLE_POINTS], preferences
    )

    async def _test(candidate: str) -> None:
        await execute_chart_transformer(candidate, points, preferences)

    code = await generate_with_repair(
        provider, CHART_SYSTEM_PROMPT, user_prompt, _test, label="chart transformer"
    )

    try:
        if existing is not None:
            session.delete(existing)
            session.flush()
        session.add(
            ChartTransformer(
                dashboard_chart_id=chart.id,
                code=code,
                chart_type=preferences["chart_type"],
                cadence=preferences["cadence"],
                selected_dimension=preferences["selected_dimension"],
                user_prompt=preferences["user_prompt"],
                input_fingerprint=shape,
            )
        )
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise PersistenceError(f"Could not save chart transformer: {e}") from e

    return TransformerHandle(code, shape, generated=True, reason=reason)
