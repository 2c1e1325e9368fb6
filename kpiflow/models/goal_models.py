"""KPIFlow — Goal Models.

MetricGoal is persisted; GoalProgress is derived per request and never stored.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel
from sqlmodel import SQLModel, Field

from kpiflow.models.metric_models import Cadence


class GoalType(str, Enum):
    ABSOLUTE = "ABSOLUTE"  # Reach target_value
    RELATIVE = "RELATIVE"  # Grow target_value percent over baseline


class GoalStatus(str, Enum):
    EXCEEDED = "exceeded"
    ON_TRACK = "on_track"
    BEHIND = "behind"
    AT_RISK = "at_risk"
    INVALID_BASELINE = "invalid_baseline"
    NO_DATA = "no_data"


class Trend(str, Enum):
    ACCELERATING = "accelerating"
    STABLE = "stable"
    DECELERATING = "decelerating"
    UNKNOWN = "unknown"


class MetricGoal(SQLModel, table=True):
    """User-defined goal for a metric. Cadence comes from the metric's chart."""

    __tablename__ = "metric_goals"

    id: Optional[int] = Field(default=None, primary_key=True)
    metric_id: int = Field(unique=True, index=True, foreign_key="metrics.id")
    goal_type: GoalType = Field(default=GoalType.ABSOLUTE)
    target_value: float
    baseline_value: Optional[float] = Field(
        default=None, description="Manual override for the period-start value"
    )
    on_track_threshold: Optional[float] = Field(
        default=None, description="Fraction of expected progress counted as on track"
    )
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PeriodBounds(BaseModel):
    """The cadence period containing 'now'."""

    period_start: datetime
    period_end: datetime
    days_elapsed: float
    days_total: float
    days_remaining: float
    hours_remaining: float


class GoalProgress(PeriodBounds):
    """Derived progress report for one goal in the current period."""

    cadence: Cadence
    goal_type: GoalType
    target_value: float
    baseline_value: Optional[float] = None
    current_value: Optional[float] = None
    target_display_value: Optional[float] = None
    progress_percent: float = 0.0
    display_progress_percent: float = 0.0
    expected_progress_percent: float = 0.0
    growth_percent: Optional[float] = None
    status: GoalStatus
    trend: Trend = Trend.UNKNOWN
    projected_end_value: Optional[float] = None
    is_decline: bool = False
