"""Data source for the World Air Quality Index (WAQI / AQICN) API."""
from __future__ import annotations

import datetime as dt
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from aerosync.data_sources.base import (
    AirQualityDataSource,
    plausible_value,
    positive_breakdown,
    validate_coordinates,
    validate_date_range,
)
from aerosync.data_sources.http_client import request_json
from aerosync.domain import Coordinates, DailyPoint, Reading, StationSummary, normalize_series
from aerosync.errors import (
    ClientFetchError,
    DataValidationError,
    FetchError,
    RateLimitedError,
    TransientFetchError,
)
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="aqicn_client")

SOURCE_NAME = "aqicn"
DEMO_TOKEN = "demo"
DEFAULT_FORECAST_DAYS = 7

# iaqi keys that are pollutant sub-indices (t, h, p, w, wg are weather)
POLLUTANT_KEYS = ("pm25", "pm10", "o3", "no2", "so2", "co")
# daily forecast keys that carry AQI sub-indices (uvi is not one)
FORECAST_POLLUTANT_KEYS = ("pm25", "pm10", "o3")


def _raise_for_api_status(payload: Any) -> Dict[str, Any]:
    """Return `payload["data"]` or raise the matching FetchError for an error status."""
    if not isinstance(payload, dict):
        raise DataValidationError("Unexpected AQICN payload shape", source=SOURCE_NAME)
    status = payload.get("status")
    if status == "ok":
        return payload.get("data")
    detail = str(payload.get("data") or payload.get("message") or status)
    lowered = detail.lower()
    if "quota" in lowered or "limit" in lowered:
        raise RateLimitedError(f"AQICN rate limited: {detail}", source=SOURCE_NAME, status_code=None)
    if "can not connect" in lowered:
        raise TransientFetchError(f"AQICN backend unavailable: {detail}", source=SOURCE_NAME)
    if any(token in lowered for token in ("invalid", "unknown station", "unauthorized")):
        raise ClientFetchError(f"AQICN rejected request: {detail}", source=SOURCE_NAME)
    raise TransientFetchError(f"AQICN error status: {detail}", source=SOURCE_NAME)


def _parse_observed_at(time_block: Optional[Dict[str, Any]]) -> dt.datetime:
    """Parse the feed's `time` block into an aware datetime."""
    if not time_block:
        raise DataValidationError("Missing observation time", source=SOURCE_NAME)
    iso = time_block.get("iso")
    try:
        if iso:
            return dt.datetime.fromisoformat(iso)
        stamp = time_block.get("s")
        tz = time_block.get("tz") or "+00:00"
        if stamp:
            return dt.datetime.fromisoformat(f"{stamp.replace(' ', 'T')}{tz}")
        epoch = time_block.get("v")
        if epoch is not None:
            return dt.datetime.fromtimestamp(float(epoch), tz=dt.timezone.utc)
    except (TypeError, ValueError) as exc:
        raise DataValidationError(f"Unparseable observation time: {time_block!r}", source=SOURCE_NAME) from exc
    raise DataValidationError("Missing observation time", source=SOURCE_NAME)


def _iaqi_breakdown(iaqi: Optional[Dict[str, Any]]) -> Dict[str, float]:
    """Flatten `{"pm25": {"v": 12}}` into `{"pm25": 12.0}` for pollutant keys."""
    iaqi = iaqi or {}
    return positive_breakdown({k: (iaqi.get(k) or {}).get("v") for k in POLLUTANT_KEYS})


def parse_current(data: Dict[str, Any], latitude: float, longitude: float) -> Reading:
    """Convert a `feed` data block into a Reading."""
    if not isinstance(data, dict):
        raise DataValidationError("AQICN feed data is missing", source=SOURCE_NAME)
    value = plausible_value(data.get("aqi"), field="aqi", source=SOURCE_NAME)
    city = data.get("city") or {}
    idx = data.get("idx")
    return Reading(
        value=value,
        location_label=city.get("name") or "Current Location",
        coordinates=Coordinates(latitude=latitude, longitude=longitude),
        source_name=SOURCE_NAME,
        observed_at=_parse_observed_at(data.get("time")),
        factor_breakdown=_iaqi_breakdown(data.get("iaqi")),
        station_key=f"@{idx}" if idx is not None else None,
    )


def parse_daily_forecast(data: Dict[str, Any], start_date: dt.date, end_date: dt.date) -> List[DailyPoint]:
    """Build daily points from the feed's `forecast.daily` block.

    The block covers a few past days as well as upcoming ones; only days in
    [start_date, end_date] are kept. A day's value is its largest pollutant
    sub-index average.
    """
    daily = ((data or {}).get("forecast") or {}).get("daily") or {}
    per_day: Dict[dt.date, Dict[str, float]] = defaultdict(dict)
    for pollutant in FORECAST_POLLUTANT_KEYS:
        for entry in daily.get(pollutant) or []:
            try:
                day = dt.date.fromisoformat(entry["day"])
                avg = float(entry["avg"])
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed forecast entry", extra={"pollutant": pollutant, "entry": entry})
                continue
            if start_date <= day <= end_date and avg > 0:
                per_day[day][pollutant] = avg

    points = []
    for day, breakdown in per_day.items():
        value = plausible_value(max(breakdown.values()), field="daily aqi", source=SOURCE_NAME)
        points.append(DailyPoint(date=day, value=value, factor_breakdown=breakdown))
    return normalize_series(points)


def parse_search(data: Any) -> List[StationSummary]:
    """Convert `search` results into StationSummary objects."""
    out: List[StationSummary] = []
    for item in data or []:
        uid = item.get("uid")
        if uid is None:
            continue
        station = item.get("station") or {}
        geo = station.get("geo") or []
        coords = Coordinates(latitude=geo[0], longitude=geo[1]) if len(geo) == 2 else None
        try:
            value = float(item.get("aqi"))
        except (TypeError, ValueError):
            value = None
        time_block = item.get("time") or {}
        observed_at = None
        if time_block.get("stime"):
            try:
                observed_at = _parse_observed_at({"s": time_block["stime"], "tz": time_block.get("tz")})
            except DataValidationError:
                observed_at = None
        out.append(
            StationSummary(
                station_key=f"@{uid}",
                name=station.get("name") or f"Station {uid}",
                coordinates=coords,
                value=value,
                observed_at=observed_at,
            )
        )
    return out


class AqicnDataSource(AirQualityDataSource):
    """WAQI feed/search endpoints behind the data-source contract."""

    def __init__(
        self,
        *,
        base_url: str = "https://api.waqi.info",
        token: str = DEMO_TOKEN,
        timeout: float = 10.0,
        forecast_days: int = DEFAULT_FORECAST_DAYS,
        http: Any = None,
        today: Callable[[], dt.date] = dt.date.today,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.forecast_days = forecast_days
        self.http = http
        self._today = today

    def _get(self, path: str, **params: Any) -> Any:
        payload = request_json(
            f"{self.base_url}{path}",
            params={**params, "token": self.token},
            timeout=self.timeout,
            source=SOURCE_NAME,
            http=self.http,
        )
        return _raise_for_api_status(payload)

    def fetch_current(self, latitude: float, longitude: float) -> Reading:
        """Fetch the feed for the station nearest to the coordinates."""
        validate_coordinates(latitude, longitude, source=SOURCE_NAME)
        data = self._get(f"/feed/geo:{latitude};{longitude}/")
        reading = parse_current(data, latitude, longitude)
        logger.debug("Fetched AQICN reading", extra={"value": reading.value, "station_key": reading.station_key})
        return reading

    def fetch_historical(self, station_key: str, start_date: dt.date, end_date: dt.date) -> List[DailyPoint]:
        """Fetch daily values for a station from its feed's daily block."""
        validate_date_range(start_date, end_date, source=SOURCE_NAME)
        if not self.token or self.token == DEMO_TOKEN:
            raise ClientFetchError("AQICN historical data requires an API token", source=SOURCE_NAME)
        station = station_key if station_key.startswith("@") else f"@{station_key}"
        data = self._get(f"/feed/{station}/")
        points = parse_daily_forecast(data, start_date, end_date)
        logger.info(
            "Fetched AQICN daily series",
            extra={"station_key": station, "points": len(points), "start": start_date.isoformat(), "end": end_date.isoformat()},
        )
        return points

    def search(self, keyword: str) -> List[StationSummary]:
        """Search stations by keyword."""
        if not keyword or not keyword.strip():
            raise ClientFetchError("Search keyword must not be empty", source=SOURCE_NAME)
        try:
            data = self._get("/search/", keyword=keyword.strip())
        except FetchError:
            logger.warning("AQICN search failed", extra={"keyword": keyword})
            raise
        return parse_search(data)

    def fetch_forecast(self, latitude: float, longitude: float) -> List[DailyPoint]:
        """Upcoming days from the nearest station's `forecast.daily` block."""
        validate_coordinates(latitude, longitude, source=SOURCE_NAME)
        data = self._get(f"/feed/geo:{latitude};{longitude}/")
        today = self._today()
        points = parse_daily_forecast(data, today, today + dt.timedelta(days=self.forecast_days - 1))
        logger.debug("Fetched AQICN forecast", extra={"points": len(points)})
        return points
