"""Opt-in placeholder reports for demos and offline development.

Synthetic data is never substituted silently: `generate_report_with_fallback`
only builds one when the caller passes ``fallback="synthetic"``, and the
resulting report is labelled with ``source_name="synthetic"``.
"""
from __future__ import annotations

import datetime as dt
from typing import Sequence

from aerosync.domain import (
    DEFAULT_SEVERITY_BANDS,
    DEFAULT_TRACKED_FACTORS,
    Coordinates,
    DailyPoint,
    SeverityBand,
    WeeklyReport,
)
from aerosync.insights import compute_insights
from aerosync.report_service import ReportResult, WeeklyReportService
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="fallback")

SYNTHETIC_SOURCE = "synthetic"
BASE_VALUE = 65
MAX_VARIATION = 30
WEEKEND_ADJUSTMENT = -8
VALUE_FLOOR = 25
VALUE_CEILING = 130


def _date_seed(day: dt.date) -> int:
    return day.year + day.month + day.day


def synthetic_point(day: dt.date) -> DailyPoint:
    """Deterministic point for a date: the same day always yields the same values."""
    seed = _date_seed(day)
    weekend = WEEKEND_ADJUSTMENT if day.weekday() >= 5 else 0
    raw = BASE_VALUE + (seed % MAX_VARIATION) - MAX_VARIATION / 2 + weekend
    value = max(VALUE_FLOOR, min(VALUE_CEILING, round(raw)))
    breakdown = {
        "pm25": float(round(value * 0.6 + seed % 20)),
        "pm10": float(round(value * 0.8 + seed % 25)),
        "o3": float(round(value * 0.4 + seed % 15)),
        "no2": float(round(value * 0.3 + seed % 12)),
    }
    return DailyPoint(date=day, value=float(value), factor_breakdown=breakdown)


def synthetic_weekly_report(
    latitude: float,
    longitude: float,
    location_label: str | None = None,
    *,
    today: dt.date | None = None,
    window_days: int = 7,
    bands: Sequence[SeverityBand] = DEFAULT_SEVERITY_BANDS,
    factors: Sequence[str] = DEFAULT_TRACKED_FACTORS,
) -> WeeklyReport:
    """Build a labelled placeholder report for the trailing window ending `today`."""
    today = today or dt.date.today()
    start = today - dt.timedelta(days=window_days - 1)
    series = [synthetic_point(start + dt.timedelta(days=i)) for i in range(window_days)]
    return WeeklyReport(
        location_label=location_label or "Current Location",
        coordinates=Coordinates(latitude=latitude, longitude=longitude),
        period_start=start,
        period_end=today,
        series=series,
        insights=compute_insights(series, bands, factors),
        generated_at=dt.datetime.now(dt.timezone.utc),
        source_name=SYNTHETIC_SOURCE,
    )


def generate_report_with_fallback(
    service: WeeklyReportService,
    latitude: float,
    longitude: float,
    location_label: str | None = None,
    *,
    fallback: str = "none",
) -> ReportResult:
    """Run the report service; substitute a synthetic report only when asked to.

    With ``fallback="none"`` this is exactly `service.generate_report`. With
    ``fallback="synthetic"`` a missing report or an upstream error is replaced
    by a synthetic one; the original error is kept on the result.
    """
    result = service.generate_report(latitude, longitude, location_label)
    if fallback == "none" or result.report is not None:
        return result
    if fallback != SYNTHETIC_SOURCE:
        raise ValueError(f"Unknown report fallback '{fallback}'")

    logger.warning(
        "Serving synthetic report",
        extra={"latitude": latitude, "longitude": longitude, "error": str(result.error) if result.error else None},
    )
    report = synthetic_weekly_report(
        latitude,
        longitude,
        location_label,
        today=service.window()[1],
        window_days=service.window_days,
        bands=service.bands,
        factors=service.factors,
    )
    return ReportResult(report=report, error=result.error)
