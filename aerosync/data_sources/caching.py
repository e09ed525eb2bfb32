"""Read-through caching wrapper around any data source."""

from __future__ import annotations

import copy
import datetime as dt
from typing import List

from aerosync.cache import TTLCache, coordinate_key, make_key
from aerosync.data_sources.base import AirQualityDataSource
from aerosync.domain import DEFAULT_COORDINATE_PRECISION, DailyPoint, Reading, StationSummary
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="data_sources/caching")


class CachingDataSource(AirQualityDataSource):
    """Serve repeated requests from a TTLCache before calling the wrapped source.

    Failures are never cached; the next call goes upstream again. With
    `serve_cached_current=False` current readings always go upstream and the
    result is written back for other readers (see `live()`).
    """

    def __init__(
        self,
        inner: AirQualityDataSource,
        cache: TTLCache,
        *,
        current_ttl_seconds: float = 300.0,
        historical_ttl_seconds: float = 7200.0,
        search_ttl_seconds: float = 1800.0,
        forecast_ttl_seconds: float = 3600.0,
        precision: int = DEFAULT_COORDINATE_PRECISION,
        serve_cached_current: bool = True,
    ) -> None:
        self.inner = inner
        self.cache = cache
        self.current_ttl_seconds = current_ttl_seconds
        self.historical_ttl_seconds = historical_ttl_seconds
        self.search_ttl_seconds = search_ttl_seconds
        self.forecast_ttl_seconds = forecast_ttl_seconds
        self.precision = precision
        self.serve_cached_current = serve_cached_current

    def live(self) -> "CachingDataSource":
        """Same cache, but current readings bypass it on the way in.

        Pollers use this view: their own minimum interval already limits
        upstream calls, and a refresh has to reach the provider.
        """
        view = copy.copy(self)
        view.serve_cached_current = False
        return view

    def _current_key(self, latitude: float, longitude: float) -> str:
        return make_key("current", coordinate_key(latitude, longitude, self.precision))

    def fetch_current(self, latitude: float, longitude: float) -> Reading:
        key = self._current_key(latitude, longitude)
        if not self.serve_cached_current:
            reading = self.inner.fetch_current(latitude, longitude)
            self.cache.set(key, reading, self.current_ttl_seconds)
            return reading
        return self.cache.get_or_load(
            key,
            self.current_ttl_seconds,
            lambda: self.inner.fetch_current(latitude, longitude),
        )

    def fetch_historical(self, station_key: str, start_date: dt.date, end_date: dt.date) -> List[DailyPoint]:
        key = make_key("historical", station_key, start_date.isoformat(), end_date.isoformat())
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Using cached historical series", extra={"station_key": station_key})
            return cached
        points = self.inner.fetch_historical(station_key, start_date, end_date)
        # an empty series is not worth remembering; the upstream may fill in later
        if points:
            self.cache.set(key, points, self.historical_ttl_seconds)
        return points

    def search(self, keyword: str) -> List[StationSummary]:
        normalized = keyword.strip().lower()
        key = make_key("search", normalized)
        return self.cache.get_or_load(key, self.search_ttl_seconds, lambda: self.inner.search(keyword))

    def fetch_forecast(self, latitude: float, longitude: float) -> List[DailyPoint]:
        key = make_key("forecast", coordinate_key(latitude, longitude, self.precision))
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Using cached forecast", extra={"key": key})
            return cached
        points = self.inner.fetch_forecast(latitude, longitude)
        if points:
            self.cache.set(key, points, self.forecast_ttl_seconds)
        return points
