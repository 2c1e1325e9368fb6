"""KPIFlow — Goal Trend Analysis.

Compares the average step-to-step change in the early half of the period's
values with the recent half.
"""

from typing import List, Tuple

from kpiflow.models.goal_models import Trend

MIN_POINTS_FOR_TREND = 3
SIGNIFICANT_CHANGE = 0.1  # 10% difference between halves
FLAT_EPSILON = 0.001


def _avg_change(values: List[float]) -> float:
    if len(values) < 2:
        return 0.0
    return sum(b - a for a, b in zip(values, values[1:])) / (len(values) - 1)


def _classify(early_avg: float, recent_avg: float) -> Trend:
    if abs(early_avg) < FLAT_EPSILON and abs(recent_avg) < FLAT_EPSILON:
        return Trend.STABLE

    if early_avg != 0:
        ratio = (recent_avg - early_avg) / abs(early_avg)
    else:
        ratio = 1.0 if recent_avg > 0 else -1.0

    if ratio > SIGNIFICANT_CHANGE:
        return Trend.ACCELERATING
    if ratio < -SIGNIFICANT_CHANGE:
        return Trend.DECELERATING
    return Trend.STABLE


def analyze_trend(values: List[float]) -> Tuple[Trend, bool]:
    """Return (trend, is_decline) for values ordered oldest first."""
    if len(values) < MIN_POINTS_FOR_TREND:
        return Trend.UNKNOWN, False

    midpoint = len(values) // 2
    early_avg = _avg_change(values[:midpoint])
    recent_avg = _avg_change(values[midpoint:])
    return _classify(early_avg, recent_avg), recent_avg < 0
