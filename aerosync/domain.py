"""Domain vocabulary and strict schemas for readings, series and reports.

This module defines the stable contract between data sources, the poller,
the insights engine and the report service: enums, default policies and
Pydantic models for the payloads that flow through the engine. No fetching
or scoring logic lives here.
"""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Dict, Iterable, List, Tuple

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_COORDINATE_PRECISION = 4


class _StrictBaseModel(BaseModel):
    """Base model with strict extra handling."""

    model_config = ConfigDict(extra="forbid")


class _FrozenModel(BaseModel):
    """Immutable model; instances are safe to share between pollers."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class Trend(str, Enum):
    """Direction of the series over the reporting window."""
    IMPROVING = "improving"
    STABLE = "stable"
    WORSENING = "worsening"


class ConnectionState(str, Enum):
    """Connection state reported to poller subscribers."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class PollerPhase(str, Enum):
    """Position of a poller in its fetch/retry cycle."""
    IDLE = "idle"
    FETCHING = "fetching"
    BACKOFF = "backoff"
    GAVE_UP = "gave_up"
    BLOCKED = "blocked"


class Coordinates(_FrozenModel):
    """A latitude/longitude pair in decimal degrees."""
    latitude: float
    longitude: float

    def rounded(self, precision: int = DEFAULT_COORDINATE_PRECISION) -> "Coordinates":
        """Return the coordinates rounded to `precision` decimal places."""
        return Coordinates(latitude=round(self.latitude, precision), longitude=round(self.longitude, precision))

    def key(self, precision: int = DEFAULT_COORDINATE_PRECISION) -> str:
        """Canonical string fingerprint used for cache and registry keys."""
        return f"{self.latitude:.{precision}f},{self.longitude:.{precision}f}"

    def as_tuple(self) -> Tuple[float, float]:
        return self.latitude, self.longitude


class Reading(_FrozenModel):
    """A single point-in-time observation of the tracked metric."""
    value: float
    location_label: str
    coordinates: Coordinates
    source_name: str
    observed_at: dt.datetime
    factor_breakdown: Dict[str, float] = Field(default_factory=dict)
    station_key: str | None = None


class DailyPoint(_FrozenModel):
    """One calendar day of the historical series."""
    date: dt.date
    value: float
    factor_breakdown: Dict[str, float] = Field(default_factory=dict)


class DayValue(_FrozenModel):
    """A (date, value) pair used for best/worst day."""
    date: dt.date
    value: float


class StationSummary(_FrozenModel):
    """Search hit describing a monitoring station or place."""
    station_key: str
    name: str
    coordinates: Coordinates | None = None
    value: float | None = None
    observed_at: dt.datetime | None = None


class SeverityBand(_FrozenModel):
    """Ordered severity band; `upper` is inclusive and None means unbounded."""
    label: str
    upper: float | None = None


# US EPA AQI categories.
DEFAULT_SEVERITY_BANDS: Tuple[SeverityBand, ...] = (
    SeverityBand(label="good", upper=50),
    SeverityBand(label="moderate", upper=100),
    SeverityBand(label="unhealthy_for_sensitive_groups", upper=150),
    SeverityBand(label="unhealthy", upper=200),
    SeverityBand(label="very_unhealthy", upper=300),
    SeverityBand(label="hazardous", upper=None),
)

# Order doubles as the tie-break priority for the dominant factor.
DEFAULT_TRACKED_FACTORS: Tuple[str, ...] = ("pm25", "pm10", "o3", "no2", "so2", "co")


class Insights(_FrozenModel):
    """Derived analytics for a series. Always rebuilt, never patched."""
    weekly_average: int = 0
    trend: Trend = Trend.STABLE
    trend_magnitude_pct: int = 0
    best_day: DayValue | None = None
    worst_day: DayValue | None = None
    dominant_factor: str | None = None
    bucket_counts: Dict[str, int] = Field(default_factory=dict)
    breakdown: Dict[str, List[float]] = Field(default_factory=dict)
    day_count: int = 0


class WeeklyReport(_FrozenModel):
    """Cached weekly report for a location."""
    location_label: str
    coordinates: Coordinates
    period_start: dt.date
    period_end: dt.date
    series: List[DailyPoint]
    insights: Insights
    generated_at: dt.datetime
    source_name: str | None = None


class PollerState(_StrictBaseModel):
    """Snapshot of a poller's state; the live copy is owned by the poller."""
    is_active: bool = False
    last_reading: Reading | None = None
    retry_count: int = 0
    last_fetch_at: float | None = None
    connection: ConnectionState = ConnectionState.DISCONNECTED
    phase: PollerPhase = PollerPhase.IDLE
    last_error: str | None = None
    retry_delays: List[float] = Field(default_factory=list)
    location: Coordinates | None = None


class PollerStatus(_StrictBaseModel):
    """Compact status used by the API."""
    is_polling: bool
    last_update: dt.datetime | None = None
    retry_count: int = 0
    connection: ConnectionState = ConnectionState.DISCONNECTED
    phase: PollerPhase = PollerPhase.IDLE


def normalize_series(points: Iterable[DailyPoint]) -> List[DailyPoint]:
    """Sort a series ascending by date; a later point for the same date replaces the earlier one."""
    by_date: Dict[dt.date, DailyPoint] = {}
    for point in points:
        by_date[point.date] = point
    return [by_date[d] for d in sorted(by_date)]
