"""KPIFlow — Metric Goal Routes."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field
from sqlmodel import Session, select

from kpiflow.api.pipeline_routes import get_org_metric
from kpiflow.core.logging import get_logger
from kpiflow.core.timeutils import utcnow
from kpiflow.database import get_session
from kpiflow.goals.progress import get_goal_progress
from kpiflow.models.goal_models import GoalType, MetricGoal

logger = get_logger("api.goals")

router = APIRouter(prefix="/api", tags=["Goals"])


class GoalRequest(BaseModel):
    """Request body for PUT /api/metrics/{id}/goal."""

    goal_type: GoalType = GoalType.ABSOLUTE
    target_value: float
    """ABSOLUTE: value to reach. RELATIVE: percent growth over baseline."""
    baseline_value: Optional[float] = None
    on_track_threshold: Optional[float] = Field(default=None, gt=0, le=1)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"goal_type": "ABSOLUTE", "target_value": 1000},
                {"goal_type": "RELATIVE", "target_value": 20, "baseline_value": 500},
            ]
        }
    }


def _goal_dict(goal: MetricGoal) -> dict:
    return {
        "metric_id": goal.metric_id,
        "goal_type": goal.goal_type,
        "target_value": goal.target_value,
        "baseline_value": goal.baseline_value,
        "on_track_threshold": goal.on_track_threshold,
        "updated_at": goal.updated_at.isoformat(),
    }


@router.get("/metrics/{metric_id}/goal-progress")
async def read_goal_progress(
    metric_id: int,
    dashboard_chart_id: Optional[int] = Query(None, description="Chart whose cadence to use"),
    x_organization_id: str = Header(...),
    session: Session = Depends(get_session),
):
    """Progress toward the metric's goal in the current period, recomputed on each read."""
    get_org_metric(session, metric_id, x_organization_id)
    progress = get_goal_progress(session, metric_id, dashboard_chart_id=dashboard_chart_id)
    if progress is None:
        return {"status": "no_goal", "metric_id": metric_id, "progress": None}
    return {"status": "success", "metric_id": metric_id, "progress": progress}


@router.put("/metrics/{metric_id}/goal")
async def upsert_goal(
    metric_id: int,
    request: GoalRequest,
    x_organization_id: str = Header(...),
    session: Session = Depends(get_session),
):
    """Create or replace the metric's goal."""
    get_org_metric(session, metric_id, x_organization_id)
    goal = session.exec(select(MetricGoal).where(MetricGoal.metric_id == metric_id)).first()
    if goal is None:
        goal = MetricGoal(metric_id=metric_id, target_value=request.target_value)

    goal.goal_type = request.goal_type
    goal.target_value = request.target_value
    goal.baseline_value = request.baseline_value
    goal.on_track_threshold = request.on_track_threshold
    goal.updated_at = utcnow()
    session.add(goal)
    session.commit()
    session.refresh(goal)
    logger.info(f"🎯 Goal saved ({request.goal_type.value}, target {goal.target_value})", extra={"metric_id": metric_id})
    return {"status": "success", "goal": _goal_dict(goal)}


@router.delete("/metrics/{metric_id}/goal")
async def delete_goal(
    metric_id: int,
    x_organization_id: str = Header(...),
    session: Session = Depends(get_session),
):
    """Remove the metric's goal."""
    get_org_metric(session, metric_id, x_organization_id)
    goal = session.exec(select(MetricGoal).where(MetricGoal.metric_id == metric_id)).first()
    if goal is None:
        raise HTTPException(status_code=404, detail="No goal set for this metric")
    session.delete(goal)
    session.commit()
    return {"status": "deleted", "metric_id": metric_id}
