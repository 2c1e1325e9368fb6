"""KPIFlow — Metric Refresh & Pipeline Progress Routes."""

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException
from pydantic import BaseModel
from sqlmodel import Session

from kpiflow.core.exceptions import MetricBusyError, MetricNotFoundError
from kpiflow.core.logging import get_logger
from kpiflow.database import engine, get_session
from kpiflow.models.metric_models import Cadence, DashboardChart, Metric
from kpiflow.models.pipeline_models import PipelineProgress
from kpiflow.pipeline.orchestrator import refresh_metric_and_charts, regenerate_chart
from kpiflow.pipeline.progress import (
    get_available_dimensions,
    get_progress,
    get_transformer_info,
)
from kpiflow.pipeline.runner import ensure_idle

logger = get_logger("api.pipeline")

router = APIRouter(prefix="/api", tags=["Pipeline"])


# ── Request / Response Models ──


class RefreshRequest(BaseModel):
    """Request body for POST /api/metrics/{id}/refresh."""

    force_regenerate: bool = False
    """Full resync plus regeneration of every cached transformer."""


class ChartRegenerateRequest(BaseModel):
    """Preference overrides saved on the chart before regeneration."""

    chart_type: Optional[str] = None
    cadence: Optional[Cadence] = None
    selected_dimension: Optional[str] = None
    user_prompt: Optional[str] = None


class RefreshAccepted(BaseModel):
    status: str = "accepted"
    metric_id: int
    force_regenerate: bool = False
    dashboard_chart_id: Optional[int] = None


# ── Helpers ──


def get_org_metric(session: Session, metric_id: int, organization_id: str) -> Metric:
    """Load a metric visible to the organization, or 404."""
    metric = session.get(Metric, metric_id)
    if metric is None or metric.organization_id != organization_id:
        raise HTTPException(status_code=404, detail=f"Metric {metric_id} not found")
    return metric


def _ensure_idle(metric: Metric) -> None:
    try:
        ensure_idle(metric)
    except MetricBusyError as e:
        raise HTTPException(status_code=409, detail=e.message)


async def _refresh_in_background(metric_id: int, force_regenerate: bool) -> None:
    with Session(engine) as session:
        result = await refresh_metric_and_charts(session, metric_id, force_regenerate)
    if not result.success:
        logger.warning(f"Background refresh failed: {result.error}", extra={"metric_id": metric_id})


async def _regenerate_chart_in_background(chart_id: int, overrides: dict) -> None:
    with Session(engine) as session:
        result = await regenerate_chart(session, chart_id, **overrides)
    if not result.success:
        logger.warning(f"Chart regeneration failed: {result.error}", extra={"chart_id": chart_id})


# ── Endpoints ──


@router.post("/metrics/{metric_id}/refresh", response_model=RefreshAccepted, status_code=202)
async def trigger_refresh(
    metric_id: int,
    background_tasks: BackgroundTasks,
    request: Optional[RefreshRequest] = None,
    x_organization_id: str = Header(...),
    session: Session = Depends(get_session),
):
    """Schedule a refresh of the metric and all of its charts."""
    force = request.force_regenerate if request else False
    metric = get_org_metric(session, metric_id, x_organization_id)
    _ensure_idle(metric)
    background_tasks.add_task(_refresh_in_background, metric_id, force)
    logger.info(f"🔄 Refresh scheduled (force={force})", extra={"metric_id": metric_id})
    return RefreshAccepted(metric_id=metric_id, force_regenerate=force)


@router.post("/metrics/{metric_id}/regenerate", response_model=RefreshAccepted, status_code=202)
async def trigger_regenerate(
    metric_id: int,
    background_tasks: BackgroundTasks,
    x_organization_id: str = Header(...),
    session: Session = Depends(get_session),
):
    """Full resync with fresh ingestion and chart transformers."""
    metric = get_org_metric(session, metric_id, x_organization_id)
    _ensure_idle(metric)
    background_tasks.add_task(_refresh_in_background, metric_id, True)
    logger.info("🔄 Regeneration scheduled", extra={"metric_id": metric_id})
    return RefreshAccepted(metric_id=metric_id, force_regenerate=True)


@router.post("/charts/{chart_id}/regenerate", response_model=RefreshAccepted, status_code=202)
async def trigger_chart_regenerate(
    chart_id: int,
    background_tasks: BackgroundTasks,
    request: Optional[ChartRegenerateRequest] = None,
    x_organization_id: str = Header(...),
    session: Session = Depends(get_session),
):
    """Rebuild one chart from stored points with a new chart transformer."""
    chart = session.get(DashboardChart, chart_id)
    if chart is None or chart.organization_id != x_organization_id:
        raise HTTPException(status_code=404, detail=f"Chart {chart_id} not found")
    metric = get_org_metric(session, chart.metric_id, x_organization_id)
    _ensure_idle(metric)

    overrides = request.model_dump(exclude_none=True) if request else {}
    background_tasks.add_task(_regenerate_chart_in_background, chart_id, overrides)
    return RefreshAccepted(metric_id=metric.id, dashboard_chart_id=chart_id, force_regenerate=True)


@router.get("/metrics/{metric_id}/progress", response_model=PipelineProgress)
async def read_progress(
    metric_id: int,
    x_organization_id: str = Header(...),
    session: Session = Depends(get_session),
):
    """Current step and completion percentage of the latest run."""
    get_org_metric(session, metric_id, x_organization_id)
    try:
        return get_progress(session, metric_id)
    except MetricNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.get("/metrics/{metric_id}/dimensions")
async def read_dimensions(
    metric_id: int,
    x_organization_id: str = Header(...),
    session: Session = Depends(get_session),
):
    """Dimension keys and sample values found in stored points."""
    get_org_metric(session, metric_id, x_organization_id)
    dimensions = get_available_dimensions(session, metric_id)
    return {"metric_id": metric_id, "dimensions": dimensions}


@router.get("/metrics/{metric_id}/transformer")
async def read_transformer(
    metric_id: int,
    x_organization_id: str = Header(...),
    session: Session = Depends(get_session),
):
    """Cached ingestion and chart transformer info."""
    get_org_metric(session, metric_id, x_organization_id)
    return get_transformer_info(session, metric_id)
