"""Derived analytics for a daily series.

`compute_insights` is a pure function: it normalises the series, then derives
the rounded average, trend, extrema, dominant factor and severity buckets.
Nothing here touches the network or the cache.
"""

from __future__ import annotations

import math
from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from aerosync.domain import (
    DEFAULT_SEVERITY_BANDS,
    DEFAULT_TRACKED_FACTORS,
    DailyPoint,
    DayValue,
    Insights,
    SeverityBand,
    Trend,
    normalize_series,
)

TREND_THRESHOLD_PCT = 10.0


def _round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative values (2.5 -> 3, not 2)."""
    return int(math.floor(value + 0.5))


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values)


def empty_insights(bands: Iterable[SeverityBand] = DEFAULT_SEVERITY_BANDS) -> Insights:
    """Insights for a series with no data."""
    return Insights(bucket_counts={band.label: 0 for band in bands})


def classify_value(value: float, bands: Sequence[SeverityBand] = DEFAULT_SEVERITY_BANDS) -> SeverityBand:
    """Return the first band whose inclusive upper bound holds `value`.

    Values above every bounded band fall into the last band.
    """
    if not bands:
        raise ValueError("at least one severity band is required")
    for band in bands:
        if band.upper is None or value <= band.upper:
            return band
    return bands[-1]


def trend_of(values: Sequence[float]) -> Tuple[Trend, int]:
    """Compare the mean of the first half with the mean of the second half.

    Halves are `ceil(n/2)` long, so for odd `n` the middle point belongs to
    both. Returns the trend and the rounded absolute percentage change.
    """
    n = len(values)
    if n < 2:
        return Trend.STABLE, 0
    half = math.ceil(n / 2)
    first = _mean(values[:half])
    second = _mean(values[n - half:])
    if first == 0:
        return Trend.STABLE, 0
    change = (second - first) / first * 100
    if change > TREND_THRESHOLD_PCT:
        trend = Trend.WORSENING
    elif change < -TREND_THRESHOLD_PCT:
        trend = Trend.IMPROVING
    else:
        trend = Trend.STABLE
    return trend, _round_half_up(abs(change))


def _day_dominant(breakdown: Dict[str, float], factors: Sequence[str]) -> Optional[str]:
    best = None
    best_value = 0.0
    for factor in factors:
        value = breakdown.get(factor)
        if value is not None and value > best_value:
            best, best_value = factor, value
    return best


def dominant_factor(series: Sequence[DailyPoint], factors: Sequence[str] = DEFAULT_TRACKED_FACTORS) -> Optional[str]:
    """Most frequent per-day dominant factor; ties go to the earlier tracked factor."""
    counts: Counter = Counter()
    for point in series:
        winner = _day_dominant(point.factor_breakdown, factors)
        if winner is not None:
            counts[winner] += 1
    if not counts:
        return None
    top = max(counts.values())
    return next(f for f in factors if counts.get(f) == top)


def compute_insights(
    series: Iterable[DailyPoint],
    bands: Sequence[SeverityBand] = DEFAULT_SEVERITY_BANDS,
    factors: Sequence[str] = DEFAULT_TRACKED_FACTORS,
) -> Insights:
    """Build Insights for a daily series; an empty series yields `empty_insights`."""
    points = normalize_series(series)
    if not points:
        return empty_insights(bands)

    values = [p.value for p in points]
    trend, magnitude = trend_of(values)

    # min/max keep the first match, and points are sorted by date
    best = min(points, key=lambda p: p.value)
    worst = max(points, key=lambda p: p.value)

    buckets = {band.label: 0 for band in bands}
    for value in values:
        buckets[classify_value(value, bands).label] += 1

    breakdown: Dict[str, List[float]] = {}
    for factor in factors:
        per_day = [p.factor_breakdown[factor] for p in points if p.factor_breakdown.get(factor, 0) > 0]
        if per_day:
            breakdown[factor] = per_day

    return Insights(
        weekly_average=_round_half_up(_mean(values)),
        trend=trend,
        trend_magnitude_pct=magnitude,
        best_day=DayValue(date=best.date, value=best.value),
        worst_day=DayValue(date=worst.date, value=worst.value),
        dominant_factor=dominant_factor(points, factors),
        bucket_counts=buckets,
        breakdown=breakdown,
        day_count=len(points),
    )
