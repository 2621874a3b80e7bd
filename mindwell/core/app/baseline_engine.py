from __future__ import annotations

import math
import statistics
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

from .database import utcnow

STD_EPSILON = 0.1
DEFAULT_WINDOW_DAYS = 21
CHANGE_POINT_THRESHOLD = 1.5
TREND_SLOPE_THRESHOLD = 0.1
NEUTRAL_MEAN = 3.0
NEUTRAL_STD = 1.0


@dataclass
class Baseline:
    rolling_mean: float = NEUTRAL_MEAN
    rolling_std: float = NEUTRAL_STD
    z_score: float = 0.0
    change_point_detected: bool = False
    confidence: float = 0.0
    sample_count: int = 0
    window_size_days: int = DEFAULT_WINDOW_DAYS
    computed_at: datetime = field(default_factory=utcnow)


@dataclass
class MoodTrend:
    trend: str = "stable"
    slope: float = 0.0
    correlation: float = 0.0
    sample_count: int = 0


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _as_float(value) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def normalize_history(history: Optional[Iterable]) -> List[Tuple[Optional[datetime], float]]:
    """Read ``(timestamp, intensity)`` pairs or bare numbers, dropping unreadable items.

    Pairs are sorted by timestamp; items without a timestamp keep their input
    order. The sort is stable, so equal timestamps keep their input order too.
    """
    points: List[Tuple[Optional[datetime], float]] = []
    if not history:
        return points
    for item in history:
        if isinstance(item, (tuple, list)) and len(item) == 2:
            timestamp, raw = item
        else:
            timestamp, raw = None, item
        value = _as_float(raw)
        if value is None:
            continue
        if not isinstance(timestamp, datetime):
            timestamp = None
        elif timestamp.tzinfo:
            timestamp = timestamp.astimezone(timezone.utc).replace(tzinfo=None)
        points.append((timestamp, value))
    if points and all(timestamp is not None for timestamp, _ in points):
        points.sort(key=lambda point: point[0])
    return points


def compute(
    history: Optional[Iterable],
    window_size_days: int = DEFAULT_WINDOW_DAYS,
    change_point_threshold: float = CHANGE_POINT_THRESHOLD,
    now: Optional[datetime] = None,
) -> Baseline:
    computed_at = now or utcnow()
    window_size = window_size_days if isinstance(window_size_days, int) and window_size_days > 0 else DEFAULT_WINDOW_DAYS
    points = normalize_history(history)
    if not points:
        return Baseline(window_size_days=window_size, computed_at=computed_at)

    window = [value for _, value in points[-window_size:]]
    rolling_mean = statistics.fmean(window)
    rolling_std = max(statistics.pstdev(window, rolling_mean), STD_EPSILON)
    z_score = (window[-1] - rolling_mean) / rolling_std
    return Baseline(
        rolling_mean=rolling_mean,
        rolling_std=rolling_std,
        z_score=z_score,
        change_point_detected=abs(z_score) > change_point_threshold,
        confidence=clamp(len(window) / window_size, 0.0, 1.0),
        sample_count=len(window),
        window_size_days=window_size,
        computed_at=computed_at,
    )


def against_neutral_prior(baseline: Baseline, change_point_threshold: float = CHANGE_POINT_THRESHOLD) -> Baseline:
    """Cold start: a one-point window says nothing about deviation.

    With a single observation the rolling z-score is always 0, so the lone
    value is scored against the neutral defaults instead. Larger windows are
    returned unchanged.
    """
    if baseline.sample_count != 1:
        return baseline
    z_score = (baseline.rolling_mean - NEUTRAL_MEAN) / NEUTRAL_STD
    return replace(
        baseline,
        z_score=z_score,
        change_point_detected=abs(z_score) > change_point_threshold,
    )


def compute_trend(
    history: Optional[Iterable],
    period_days: int = 7,
    now: Optional[datetime] = None,
) -> MoodTrend:
    points = normalize_history(history)
    reference = now or utcnow()
    if reference.tzinfo:
        reference = reference.astimezone(timezone.utc).replace(tzinfo=None)
    cutoff = reference - timedelta(days=max(period_days, 0))
    values = [value for timestamp, value in points if timestamp is None or timestamp >= cutoff]
    if len(values) < 2:
        return MoodTrend(sample_count=len(values))

    n = len(values)
    xs = range(n)
    sum_x = sum(xs)
    sum_y = sum(values)
    sum_xy = sum(x * y for x, y in zip(xs, values))
    sum_xx = sum(x * x for x in xs)
    sum_yy = sum(y * y for y in values)

    slope_denominator = n * sum_xx - sum_x * sum_x
    slope = (n * sum_xy - sum_x * sum_y) / slope_denominator if slope_denominator else 0.0
    correlation_denominator = math.sqrt(max(slope_denominator * (n * sum_yy - sum_y * sum_y), 0.0))
    correlation = (n * sum_xy - sum_x * sum_y) / correlation_denominator if correlation_denominator else 0.0

    trend = "stable"
    if abs(slope) > TREND_SLOPE_THRESHOLD:
        trend = "improving" if slope > 0 else "declining"
    return MoodTrend(trend=trend, slope=slope, correlation=correlation, sample_count=n)


def compute_current_streak(dates: Sequence[date], today: date) -> int:
    if not dates:
        return 0
    date_set = set(dates)
    streak = 0
    day = today
    while day in date_set:
        streak += 1
        day = day - timedelta(days=1)
    return streak


def compute_best_streak(dates: Sequence[date]) -> int:
    ordered = sorted(set(dates))
    if not ordered:
        return 0
    best = 1
    current = 1
    for prev, curr in zip(ordered, ordered[1:]):
        if curr == prev + timedelta(days=1):
            current += 1
            best = max(best, current)
        else:
            current = 1
    return best
