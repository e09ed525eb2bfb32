"""Interfaces and helpers for air-quality data sources."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional, Protocol

from aerosync.domain import DailyPoint, Reading, StationSummary
from aerosync.errors import ClientFetchError, DataValidationError

# Physically plausible bounds for an AQI-style value.
MIN_PLAUSIBLE_VALUE = 0.0
MAX_PLAUSIBLE_VALUE = 1000.0


class AirQualityDataSource(Protocol):
    """Interface for anything that can provide current, historical, search and forecast data.

    Implementations raise `aerosync.errors.FetchError` subclasses on failure.
    """

    def fetch_current(self, latitude: float, longitude: float) -> Reading:
        """Return the current reading nearest to the coordinates."""
        ...

    def fetch_historical(self, station_key: str, start_date: dt.date, end_date: dt.date) -> List[DailyPoint]:
        """Return one point per day in [start_date, end_date], ascending."""
        ...

    def search(self, keyword: str) -> List[StationSummary]:
        """Return stations or places matching `keyword`."""
        ...

    def fetch_forecast(self, latitude: float, longitude: float) -> List[DailyPoint]:
        """Return one point per upcoming day, starting with the local date, ascending."""
        ...


@dataclass
class CallableAirQualityDataSource(AirQualityDataSource):
    """Wrap plain callables so they can be swapped for different backends.

    `forecaster` is optional; without it `fetch_forecast` is a client error.
    """

    current: Callable[..., Reading]
    historical: Callable[..., List[DailyPoint]]
    searcher: Callable[..., List[StationSummary]]
    forecaster: Optional[Callable[..., List[DailyPoint]]] = None

    def fetch_current(self, latitude: float, longitude: float) -> Reading:
        """Delegate to the configured current-reading callable."""
        return self.current(latitude, longitude)

    def fetch_historical(self, station_key: str, start_date: dt.date, end_date: dt.date) -> List[DailyPoint]:
        """Delegate to the configured historical callable."""
        return self.historical(station_key, start_date, end_date)

    def search(self, keyword: str) -> List[StationSummary]:
        """Delegate to the configured search callable."""
        return self.searcher(keyword)

    def fetch_forecast(self, latitude: float, longitude: float) -> List[DailyPoint]:
        """Delegate to the configured forecast callable, if any."""
        if self.forecaster is None:
            raise ClientFetchError("This data source does not provide forecasts")
        return self.forecaster(latitude, longitude)


def validate_coordinates(latitude: float, longitude: float, *, source: str | None = None) -> None:
    """Raise ClientFetchError for coordinates outside the valid range."""
    try:
        lat, lng = float(latitude), float(longitude)
    except (TypeError, ValueError):
        raise ClientFetchError(f"Invalid coordinates: {latitude!r}, {longitude!r}", source=source) from None
    if not (-90.0 <= lat <= 90.0) or not (-180.0 <= lng <= 180.0):
        raise ClientFetchError(f"Coordinates out of range: {lat}, {lng}", source=source)


def validate_date_range(start_date: dt.date, end_date: dt.date, *, source: str | None = None) -> None:
    """Raise ClientFetchError when the range is inverted."""
    if start_date > end_date:
        raise ClientFetchError(f"start_date {start_date} is after end_date {end_date}", source=source)


def plausible_value(raw: Any, *, field: str, source: str | None = None) -> float:
    """Coerce an upstream value to float, rejecting missing or implausible values."""
    if raw is None or raw == "" or raw == "-":
        raise DataValidationError(f"Missing {field} in payload", source=source)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise DataValidationError(f"Non-numeric {field}: {raw!r}", source=source) from None
    if not MIN_PLAUSIBLE_VALUE <= value <= MAX_PLAUSIBLE_VALUE:
        raise DataValidationError(f"Implausible {field}: {value}", source=source)
    return value


def positive_breakdown(values: Mapping[str, Any]) -> dict[str, float]:
    """Keep numeric, positive factor values only."""
    out: dict[str, float] = {}
    for name, raw in values.items():
        if raw is None:
            continue
        try:
            value = float(raw)
        except (TypeError, ValueError):
            continue
        if value > 0:
            out[name] = value
    return out
