"""Assemble and cache weekly reports for a location."""
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from aerosync import config
from aerosync.cache import TTLCache, make_key
from aerosync.data_sources.base import AirQualityDataSource
from aerosync.domain import (
    DEFAULT_COORDINATE_PRECISION,
    DEFAULT_SEVERITY_BANDS,
    DEFAULT_TRACKED_FACTORS,
    Coordinates,
    SeverityBand,
    WeeklyReport,
    normalize_series,
)
from aerosync.errors import FetchError, TransientFetchError
from aerosync.insights import compute_insights
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="report_service")

REPORT_KEY_PREFIX = "report"


def _local_now() -> dt.datetime:
    """Aware datetime in the server's local zone; report windows follow the local date."""
    return dt.datetime.now().astimezone()


@dataclass(frozen=True)
class ReportResult:
    """Outcome of a report request: a report, nothing (no data), or an error."""
    report: Optional[WeeklyReport] = None
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class WeeklyReportService:
    """Builds trailing-window reports and caches them per rounded location."""

    def __init__(
        self,
        data_source: AirQualityDataSource,
        cache: TTLCache,
        *,
        report_ttl_seconds: float = 7200.0,
        window_days: int = 7,
        precision: int = DEFAULT_COORDINATE_PRECISION,
        bands: Sequence[SeverityBand] = DEFAULT_SEVERITY_BANDS,
        factors: Sequence[str] = DEFAULT_TRACKED_FACTORS,
        now: Callable[[], dt.datetime] = _local_now,
    ) -> None:
        if window_days < 1:
            raise ValueError("window_days must be at least 1")
        if report_ttl_seconds < 0:
            raise ValueError("report_ttl_seconds must not be negative")
        self.data_source = data_source
        self.cache = cache
        self.report_ttl_seconds = report_ttl_seconds
        self.window_days = window_days
        self.precision = precision
        self.bands = tuple(bands)
        self.factors = tuple(factors)
        self._now = now

    @classmethod
    def from_settings(
        cls,
        data_source: AirQualityDataSource,
        cache: TTLCache,
        settings: config.Settings | None = None,
        **kwargs,
    ) -> "WeeklyReportService":
        settings = settings or config.settings
        return cls(
            data_source,
            cache,
            report_ttl_seconds=settings.report_ttl_seconds,
            window_days=settings.report_window_days,
            precision=settings.coordinate_precision,
            bands=settings.severity_bands,
            factors=settings.tracked_factors,
            **kwargs,
        )

    def cache_key(self, latitude: float, longitude: float) -> str:
        location = Coordinates(latitude=latitude, longitude=longitude)
        return make_key(REPORT_KEY_PREFIX, location.key(self.precision))

    def window(self) -> tuple[dt.date, dt.date]:
        """Inclusive (start, end) dates of the trailing window ending on the local date."""
        today = self._now().date()
        return today - dt.timedelta(days=self.window_days - 1), today

    def generate_report(
        self,
        latitude: float,
        longitude: float,
        location_label: str | None = None,
    ) -> ReportResult:
        """Return the weekly report for a location, from cache when still valid.

        Expected upstream failures come back in `ReportResult.error`; a
        location with no data in the window yields `ReportResult(report=None)`.
        """
        key = self.cache_key(latitude, longitude)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Report cache hit", extra={"key": key})
            return ReportResult(report=cached)

        start, end = self.window()
        try:
            current = self.data_source.fetch_current(latitude, longitude)
            station_key = current.station_key
            if not station_key:
                logger.info("No station resolved for location", extra={"key": key})
                return ReportResult()
            series = self.data_source.fetch_historical(station_key, start, end)
        except FetchError as exc:
            logger.warning(
                "Report generation failed",
                extra={"key": key, "kind": exc.kind.value, "error": str(exc)},
            )
            return ReportResult(error=exc)
        except Exception as exc:
            logger.exception("Unexpected error while generating report", extra={"key": key})
            error = TransientFetchError(f"Unexpected error while generating report: {exc}")
            error.__cause__ = exc
            return ReportResult(error=error)

        series = normalize_series(series)
        if not series:
            logger.info("No historical data in window", extra={"key": key, "station_key": station_key})
            return ReportResult()

        report = WeeklyReport(
            location_label=location_label or current.location_label,
            coordinates=Coordinates(latitude=latitude, longitude=longitude).rounded(self.precision),
            period_start=start,
            period_end=end,
            series=series,
            insights=compute_insights(series, self.bands, self.factors),
            generated_at=self._now(),
            source_name=current.source_name,
        )
        self.cache.set(key, report, self.report_ttl_seconds)
        logger.info(
            "Generated weekly report",
            extra={"key": key, "days": report.insights.day_count, "trend": report.insights.trend.value},
        )
        return ReportResult(report=report)

    def clear_cache(self) -> int:
        """Drop every cached report; returns how many were removed."""
        removed = self.cache.delete_prefix(f"{REPORT_KEY_PREFIX}:")
        logger.info("Cleared report cache", extra={"removed": removed})
        return removed
