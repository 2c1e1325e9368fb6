"""KPIFlow — Pipeline Progress and Read-only Metric Queries.

Everything here is a pure read: safe to poll from many dashboard viewers at
once while a run is in flight.
"""

import json
from collections import defaultdict
from typing import Any, Dict, List, Optional

from sqlmodel import Session, select

from kpiflow.core.exceptions import MetricNotFoundError
from kpiflow.models.metric_models import DashboardChart, DataPoint, Metric
from kpiflow.models.pipeline_models import PipelineProgress, PipelineRun, PipelineStepLog
from kpiflow.pipeline.steps import step_label
from kpiflow.transformers.chart import get_cached_chart_transformer
from kpiflow.transformers.ingestion import get_cached_ingestion_transformer

MAX_DIMENSION_VALUES = 50


def _latest_run(session: Session, metric_id: int) -> Optional[PipelineRun]:
    return session.exec(
        select(PipelineRun)
        .where(PipelineRun.metric_id == metric_id)
        .order_by(PipelineRun.id.desc())  # type: ignore
        .limit(1)
    ).first()


def get_progress(session: Session, metric_id: int) -> PipelineProgress:
    """Current pipeline state for a metric.

    ``total_steps`` is the number of steps planned for the latest run, so the
    percentage reaches exactly 100 when the run completes.

    Raises:
        MetricNotFoundError: No such metric.
    """
    metric = session.get(Metric, metric_id)
    if metric is None:
        raise MetricNotFoundError(f"Metric {metric_id} not found")

    run = _latest_run(session, metric_id)
    completed: List[str] = []
    total = 0
    if run is not None:
        total = len(run.planned_steps)
        logs = session.exec(
            select(PipelineStepLog)
            .where(PipelineStepLog.run_id == run.id)
            .order_by(PipelineStepLog.id)  # type: ignore
        ).all()
        completed = [log.step for log in logs if log.status in ("completed", "skipped")]

    is_processing = metric.refresh_status is not None
    if run is not None and run.status == "completed":
        percent = 100.0
    else:
        percent = round(len(completed) / total * 100, 1) if total else 0.0

    return PipelineProgress(
        metric_id=metric_id,
        is_processing=is_processing,
        current_step=metric.refresh_status,
        current_step_label=step_label(metric.refresh_status) if metric.refresh_status else None,
        completed_steps=completed,
        total_steps=total,
        progress_percent=percent,
        error=None if is_processing else metric.last_error,
        run_status=run.status if run else None,
    )


def get_available_dimensions(session: Session, metric_id: int) -> Dict[str, List[Any]]:
    """Dimension keys found in a metric's stored points, with their distinct values."""
    rows = session.exec(
        select(DataPoint.dimensions_json).where(
            DataPoint.metric_id == metric_id,
            DataPoint.dimensions_json.is_not(None),  # type: ignore
        )
    ).all()

    values: Dict[str, set] = defaultdict(set)
    for raw in rows:
        for key, value in json.loads(raw).items():
            if len(values[key]) < MAX_DIMENSION_VALUES:
                values[key].add(value)
    return {key: sorted(vals, key=str) for key, vals in sorted(values.items())}


def get_transformer_info(session: Session, metric_id: int) -> Dict[str, Any]:
    """Describe the cached transformers for a metric and its charts."""
    ingestion = get_cached_ingestion_transformer(session, metric_id)
    charts = session.exec(
        select(DashboardChart).where(DashboardChart.metric_id == metric_id)
    ).all()

    chart_info = []
    for chart in charts:
        transformer = get_cached_chart_transformer(session, chart.id)
        chart_info.append(
            {
                "dashboard_chart_id": chart.id,
                "has_transformer": transformer is not None,
                "cadence": transformer.cadence if transformer else None,
                "chart_type": transformer.chart_type if transformer else None,
                "created_at": transformer.created_at.isoformat() if transformer else None,
            }
        )

    return {
        "metric_id": metric_id,
        "ingestion": {
            "exists": ingestion is not None,
            "template_id": ingestion.template_id if ingestion else None,
            "input_fingerprint": ingestion.input_fingerprint if ingestion else None,
            "created_at": ingestion.created_at.isoformat() if ingestion else None,
        },
        "charts": chart_info,
    }
