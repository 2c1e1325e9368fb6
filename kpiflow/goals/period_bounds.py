"""KPIFlow — Cadence Period Bounds.

All periods are computed in UTC. ``period_end`` is exclusive: it is the
start of the next period.
"""

import calendar
from datetime import datetime, timedelta, timezone
from typing import Optional

from kpiflow.core.timeutils import as_utc, utcnow
from kpiflow.models.goal_models import PeriodBounds
from kpiflow.models.metric_models import Cadence

SECONDS_PER_DAY = 86400
SECONDS_PER_HOUR = 3600


def get_period_bounds(cadence: Cadence, now: Optional[datetime] = None) -> PeriodBounds:
    """Return the DAILY / WEEKLY (Monday start) / MONTHLY period containing ``now``."""
    now = as_utc(now) if now else utcnow()
    midnight = datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
    cadence = Cadence(cadence)

    if cadence == Cadence.DAILY:
        start = midnight
        end = start + timedelta(days=1)
        days_total = 1
    elif cadence == Cadence.WEEKLY:
        start = midnight - timedelta(days=now.weekday())
        end = start + timedelta(days=7)
        days_total = 7
    else:
        days_total = calendar.monthrange(now.year, now.month)[1]
        start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
        end = start + timedelta(days=days_total)

    return build_bounds(start, end, now, days_total)


def build_bounds(
    period_start: datetime, period_end: datetime, now: datetime, days_total: float
) -> PeriodBounds:
    elapsed = (now - period_start).total_seconds()
    remaining = max(0.0, (period_end - now).total_seconds())
    return PeriodBounds(
        period_start=period_start,
        period_end=period_end,
        days_elapsed=min(days_total, max(0.0, elapsed / SECONDS_PER_DAY)),
        days_total=days_total,
        days_remaining=remaining / SECONDS_PER_DAY,
        hours_remaining=remaining / SECONDS_PER_HOUR,
    )
