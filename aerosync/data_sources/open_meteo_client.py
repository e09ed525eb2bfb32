"""Data source backed by the Open-Meteo air-quality and geocoding APIs."""
from __future__ import annotations

import datetime as dt
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from aerosync.cache import coordinate_key
from aerosync.data_sources.base import (
    AirQualityDataSource,
    plausible_value,
    positive_breakdown,
    validate_coordinates,
    validate_date_range,
)
from aerosync.data_sources.http_client import request_json
from aerosync.domain import Coordinates, DailyPoint, Reading, StationSummary, normalize_series
from aerosync.errors import ClientFetchError, DataValidationError
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="open_meteo_client")

SOURCE_NAME = "open_meteo"

OPEN_METEO_AIR_URL = "https://air-quality-api.open-meteo.com/v1/air-quality"
OPEN_METEO_GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"

# Open-Meteo variable -> factor name used across the engine
FACTOR_VARIABLES = {
    "us_aqi_pm2_5": "pm25",
    "us_aqi_pm10": "pm10",
    "us_aqi_ozone": "o3",
    "us_aqi_nitrogen_dioxide": "no2",
    "us_aqi_sulphur_dioxide": "so2",
    "us_aqi_carbon_monoxide": "co",
}
AQI_VARIABLE = "us_aqi"
EXPECTED_AQI_UNIT = "USAQI"
ALLOWED_AQI_UNITS = {"USAQI", "US AQI", "aqi"}
DEFAULT_FORECAST_DAYS = 7


def _iso_to_dt_with_offset(s: str, utc_offset_seconds: int | None) -> dt.datetime:
    """Interpret Open-Meteo local time string using the response's UTC offset."""
    naive = dt.datetime.fromisoformat(s)
    return naive.replace(tzinfo=dt.timezone(dt.timedelta(seconds=utc_offset_seconds or 0)))


def _warn_on_unexpected_units(units: Optional[dict], *, context: str) -> None:
    """Log a warning if Open-Meteo returns an AQI unit we did not expect."""
    if not units:
        return
    actual = units.get(AQI_VARIABLE)
    if actual and actual not in ALLOWED_AQI_UNITS:
        logger.warning(
            "Unexpected Open-Meteo AQI unit",
            extra={"context": context, "unit": actual, "expected": EXPECTED_AQI_UNIT},
        )


def parse_station_key(station_key: str) -> tuple[float, float]:
    """Split a "lat,lng" station key back into coordinates."""
    try:
        lat_raw, lng_raw = station_key.split(",")
        return float(lat_raw), float(lng_raw)
    except (AttributeError, ValueError):
        raise ClientFetchError(f"Invalid Open-Meteo station key: {station_key!r}", source=SOURCE_NAME) from None


def parse_current(data: Dict[str, Any], latitude: float, longitude: float) -> Reading:
    """Convert the `current` block of an air-quality response into a Reading."""
    current = (data or {}).get("current")
    if not current or not current.get("time"):
        raise DataValidationError("Open-Meteo response has no current block", source=SOURCE_NAME)
    _warn_on_unexpected_units(data.get("current_units"), context="air_current")
    try:
        observed_at = _iso_to_dt_with_offset(current["time"], data.get("utc_offset_seconds"))
    except ValueError as exc:
        raise DataValidationError(f"Unparseable time {current['time']!r}", source=SOURCE_NAME) from exc
    return Reading(
        value=plausible_value(current.get(AQI_VARIABLE), field=AQI_VARIABLE, source=SOURCE_NAME),
        location_label=f"{latitude:.2f}, {longitude:.2f}",
        coordinates=Coordinates(latitude=latitude, longitude=longitude),
        source_name=SOURCE_NAME,
        observed_at=observed_at,
        factor_breakdown=positive_breakdown({name: current.get(var) for var, name in FACTOR_VARIABLES.items()}),
        station_key=coordinate_key(latitude, longitude),
    )


def parse_daily(data: Dict[str, Any]) -> List[DailyPoint]:
    """Aggregate hourly values into daily means; days with no AQI value are dropped."""
    hourly = (data or {}).get("hourly") or {}
    times = hourly.get("time") or []
    if not times:
        return []
    _warn_on_unexpected_units(data.get("hourly_units"), context="air_hourly")
    aqi = hourly.get(AQI_VARIABLE) or [None] * len(times)

    aqi_by_day: Dict[dt.date, List[float]] = defaultdict(list)
    factors_by_day: Dict[dt.date, Dict[str, List[float]]] = defaultdict(lambda: defaultdict(list))
    for i, t in enumerate(times):
        try:
            day = dt.date.fromisoformat(str(t)[:10])
        except ValueError as exc:
            raise DataValidationError(f"Unparseable hourly time {t!r}", source=SOURCE_NAME) from exc
        if i < len(aqi) and aqi[i] is not None:
            aqi_by_day[day].append(float(aqi[i]))
        for var, name in FACTOR_VARIABLES.items():
            column = hourly.get(var) or []
            if i < len(column) and column[i] is not None:
                factors_by_day[day][name].append(float(column[i]))

    points = []
    for day, values in aqi_by_day.items():
        mean = sum(values) / len(values)
        breakdown = {name: sum(vals) / len(vals) for name, vals in factors_by_day[day].items() if vals}
        points.append(
            DailyPoint(
                date=day,
                value=plausible_value(round(mean, 1), field="daily us_aqi", source=SOURCE_NAME),
                factor_breakdown=positive_breakdown(breakdown),
            )
        )
    return normalize_series(points)


def parse_geocoding(data: Dict[str, Any]) -> List[StationSummary]:
    """Convert geocoding results into StationSummary objects."""
    out: List[StationSummary] = []
    for item in (data or {}).get("results") or []:
        lat, lng = item.get("latitude"), item.get("longitude")
        if lat is None or lng is None:
            continue
        name_parts = [item.get("name"), item.get("admin1"), item.get("country")]
        out.append(
            StationSummary(
                station_key=coordinate_key(lat, lng),
                name=", ".join(p for p in name_parts if p),
                coordinates=Coordinates(latitude=lat, longitude=lng),
            )
        )
    return out


class OpenMeteoAirQualityDataSource(AirQualityDataSource):
    """Open-Meteo needs no stations: the station key is the rounded coordinate pair."""

    def __init__(
        self,
        *,
        air_url: str = OPEN_METEO_AIR_URL,
        geocoding_url: str = OPEN_METEO_GEOCODING_URL,
        timeout: float = 10.0,
        forecast_days: int = DEFAULT_FORECAST_DAYS,
        http: Any = None,
        today: Callable[[], dt.date] = dt.date.today,
    ) -> None:
        self.air_url = air_url
        self.geocoding_url = geocoding_url
        self.timeout = timeout
        self.forecast_days = forecast_days
        self.http = http
        self._today = today

    def fetch_current(self, latitude: float, longitude: float) -> Reading:
        """Fetch the latest hourly air-quality values for the coordinates."""
        validate_coordinates(latitude, longitude, source=SOURCE_NAME)
        params = {
            "latitude": latitude,
            "longitude": longitude,
            "current": ",".join([AQI_VARIABLE, *FACTOR_VARIABLES]),
            "timezone": "auto",
        }
        data = request_json(self.air_url, params=params, timeout=self.timeout, source=SOURCE_NAME, http=self.http)
        return parse_current(data, latitude, longitude)

    def fetch_historical(self, station_key: str, start_date: dt.date, end_date: dt.date) -> List[DailyPoint]:
        """Fetch hourly values for the date range and aggregate them per day."""
        validate_date_range(start_date, end_date, source=SOURCE_NAME)
        latitude, longitude = parse_station_key(station_key)
        validate_coordinates(latitude, longitude, source=SOURCE_NAME)
        params = {
            "latitude": latitude,
            "longitude": longitude,
            "hourly": ",".join([AQI_VARIABLE, *FACTOR_VARIABLES]),
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
            "timezone": "auto",
        }
        data = request_json(self.air_url, params=params, timeout=self.timeout, source=SOURCE_NAME, http=self.http)
        points = parse_daily(data)
        logger.info(
            "Fetched Open-Meteo daily series",
            extra={"station_key": station_key, "points": len(points)},
        )
        return points

    def search(self, keyword: str) -> List[StationSummary]:
        """Resolve a place name through the geocoding API."""
        if not keyword or not keyword.strip():
            raise ClientFetchError("Search keyword must not be empty", source=SOURCE_NAME)
        params = {"name": keyword.strip(), "count": 10, "language": "en", "format": "json"}
        data = request_json(self.geocoding_url, params=params, timeout=self.timeout, source=SOURCE_NAME, http=self.http)
        return parse_geocoding(data)

    def fetch_forecast(self, latitude: float, longitude: float) -> List[DailyPoint]:
        """Hourly forecast aggregated to daily means, from the location's local date onward."""
        validate_coordinates(latitude, longitude, source=SOURCE_NAME)
        params = {
            "latitude": latitude,
            "longitude": longitude,
            "hourly": ",".join([AQI_VARIABLE, *FACTOR_VARIABLES]),
            "forecast_days": self.forecast_days,
            "timezone": "auto",
        }
        data = request_json(self.air_url, params=params, timeout=self.timeout, source=SOURCE_NAME, http=self.http)
        today = self._today()
        return [p for p in parse_daily(data) if p.date >= today]
