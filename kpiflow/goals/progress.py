"""KPIFlow — Goal Progress Engine.

Pure functions: goal + cadence + data points in, GoalProgress out. Nothing is
cached or persisted; every read recomputes from the stored points.

Status policy (fixed, monotonic in progress at a fixed point in the period):

    progress >= 100                         → exceeded
    progress >= expected * on_track_threshold → on_track   (threshold default 0.8)
    progress >= expected * 0.5              → behind
    otherwise                               → at_risk

where ``expected`` is the percentage of the period already elapsed.
"""

import math
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlmodel import Session, select

from kpiflow.core.timeutils import as_utc, utcnow
from kpiflow.goals.period_bounds import get_period_bounds
from kpiflow.goals.trend import analyze_trend
from kpiflow.models.goal_models import (
    GoalProgress,
    GoalStatus,
    GoalType,
    MetricGoal,
)
from kpiflow.models.metric_models import Cadence, DashboardChart, DataPoint

DEFAULT_ON_TRACK_THRESHOLD = 0.8
BEHIND_THRESHOLD = 0.5


def calculate_target_display_value(
    goal_type: GoalType, target_value: float, baseline_value: float
) -> float:
    """Absolute value the goal line is drawn at."""
    if GoalType(goal_type) == GoalType.ABSOLUTE:
        return target_value
    return baseline_value * (1 + target_value / 100)


def determine_status(
    progress_percent: float,
    expected_progress_percent: float,
    on_track_threshold: Optional[float] = None,
) -> GoalStatus:
    threshold = DEFAULT_ON_TRACK_THRESHOLD if on_track_threshold is None else on_track_threshold
    if progress_percent >= 100:
        return GoalStatus.EXCEEDED
    if progress_percent >= expected_progress_percent * threshold:
        return GoalStatus.ON_TRACK
    if progress_percent >= expected_progress_percent * BEHIND_THRESHOLD:
        return GoalStatus.BEHIND
    return GoalStatus.AT_RISK


def _ordered(data_points: Iterable) -> List[Tuple[datetime, float]]:
    return sorted((as_utc(p.timestamp), float(p.value)) for p in data_points)


def extract_baseline_value(
    points: List[Tuple[datetime, float]],
    period_start: datetime,
    override: Optional[float] = None,
) -> float:
    """Manual override, else the latest value at or before period start, else 0."""
    if override is not None:
        return override
    before = [value for ts, value in points if ts <= period_start]
    return before[-1] if before else 0.0


def calculate_goal_progress(
    goal: MetricGoal,
    cadence: Cadence,
    data_points: Iterable,
    now: Optional[datetime] = None,
) -> GoalProgress:
    """Compute progress toward ``goal`` for the cadence period containing ``now``.

    ``data_points`` is any iterable of objects with ``timestamp`` and
    ``value`` (stored DataPoint rows or normalized points).
    """
    now = as_utc(now) if now else utcnow()
    bounds = get_period_bounds(cadence, now)
    points = [(ts, v) for ts, v in _ordered(data_points) if ts <= now]
    goal_type = GoalType(goal.goal_type)

    common = dict(
        **bounds.model_dump(),
        cadence=Cadence(cadence),
        goal_type=goal_type,
        target_value=goal.target_value,
    )

    if not points:
        return GoalProgress(
            **common,
            baseline_value=goal.baseline_value,
            status=GoalStatus.NO_DATA,
        )

    current = points[-1][1]
    baseline = extract_baseline_value(points, bounds.period_start, goal.baseline_value)
    target_display = calculate_target_display_value(goal_type, goal.target_value, baseline)
    expected = bounds.days_elapsed / bounds.days_total * 100 if bounds.days_total else 0.0

    if math.isclose(target_display, baseline, abs_tol=1e-9):
        return GoalProgress(
            **common,
            baseline_value=baseline,
            current_value=current,
            target_display_value=target_display,
            expected_progress_percent=expected,
            status=GoalStatus.INVALID_BASELINE,
        )

    progress = (current - baseline) / (target_display - baseline) * 100
    status = determine_status(progress, expected, goal.on_track_threshold)

    in_period = [v for ts, v in points if ts >= bounds.period_start]
    trend, is_decline = analyze_trend(in_period)

    projected: Optional[float] = None
    if bounds.days_elapsed > 0:
        rate = (current - baseline) / bounds.days_elapsed
        projected = baseline + rate * bounds.days_total

    growth: Optional[float] = None
    if goal_type == GoalType.RELATIVE and baseline != 0:
        growth = (current - baseline) / baseline * 100

    return GoalProgress(
        **common,
        baseline_value=baseline,
        current_value=current,
        target_display_value=target_display,
        progress_percent=progress,
        display_progress_percent=max(0.0, min(100.0, progress)),
        expected_progress_percent=expected,
        growth_percent=growth,
        status=status,
        trend=trend,
        projected_end_value=projected,
        is_decline=is_decline,
    )


def get_goal_progress(
    session: Session,
    metric_id: int,
    dashboard_chart_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Optional[GoalProgress]:
    """Load a metric's goal and points and compute progress. None if no goal is set.

    Cadence comes from the given chart, else the metric's first chart, else DAILY.
    """
    goal = session.exec(select(MetricGoal).where(MetricGoal.metric_id == metric_id)).first()
    if goal is None:
        return None

    query = select(DashboardChart).where(DashboardChart.metric_id == metric_id)
    if dashboard_chart_id is not None:
        query = query.where(DashboardChart.id == dashboard_chart_id)
    chart = session.exec(query.order_by(DashboardChart.id)).first()  # type: ignore
    cadence = Cadence(chart.cadence) if chart else Cadence.DAILY

    points = session.exec(select(DataPoint).where(DataPoint.metric_id == metric_id)).all()
    return calculate_goal_progress(goal, cadence, points, now=now)
