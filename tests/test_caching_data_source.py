import datetime as dt
import unittest

from aerosync.cache import TTLCache
from aerosync.data_sources import CachingDataSource, CallableAirQualityDataSource
from aerosync.errors import ClientFetchError, TransientFetchError
from tests.fakes import FakeClock, make_reading, make_series


class _Counting:
    def __init__(self):
        self.current_calls = 0
        self.historical_calls = 0
        self.search_calls = 0
        self.forecast_calls = 0
        self.fail_current = False
        self.series = make_series([40, 50])
        self.forecast = make_series([55, 60], start=dt.date(2024, 5, 8))

    def current(self, latitude, longitude):
        self.current_calls += 1
        if self.fail_current:
            raise TransientFetchError("timeout")
        return make_reading(65)

    def historical(self, station_key, start_date, end_date):
        self.historical_calls += 1
        return list(self.series)

    def searcher(self, keyword):
        self.search_calls += 1
        return []

    def forecaster(self, latitude, longitude):
        self.forecast_calls += 1
        return list(self.forecast)


class TestCachingDataSource(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.backend = _Counting()
        inner = CallableAirQualityDataSource(
            current=self.backend.current,
            historical=self.backend.historical,
            searcher=self.backend.searcher,
            forecaster=self.backend.forecaster,
        )
        self.cache = TTLCache(clock=self.clock)
        self.ds = CachingDataSource(inner, self.cache, current_ttl_seconds=300)

    def test_current_cached_per_rounded_coordinates(self):
        first = self.ds.fetch_current(6.92711, 79.8612)
        second = self.ds.fetch_current(6.92709, 79.8612)
        self.assertEqual(first, second)
        self.assertEqual(self.backend.current_calls, 1)
        self.assertIn("current:6.9271,79.8612", self.cache)

        self.clock.advance(300)
        self.ds.fetch_current(6.9271, 79.8612)
        self.assertEqual(self.backend.current_calls, 2)

    def test_failures_are_not_cached(self):
        self.backend.fail_current = True
        with self.assertRaises(TransientFetchError):
            self.ds.fetch_current(6.9271, 79.8612)
        self.backend.fail_current = False
        self.ds.fetch_current(6.9271, 79.8612)
        self.assertEqual(self.backend.current_calls, 2)

    def test_historical_cached_by_station_and_range(self):
        start, end = dt.date(2024, 5, 1), dt.date(2024, 5, 7)
        self.ds.fetch_historical("@1", start, end)
        self.ds.fetch_historical("@1", start, end)
        self.ds.fetch_historical("@2", start, end)
        self.assertEqual(self.backend.historical_calls, 2)

    def test_empty_historical_not_cached(self):
        self.backend.series = []
        start, end = dt.date(2024, 5, 1), dt.date(2024, 5, 7)
        self.assertEqual(self.ds.fetch_historical("@1", start, end), [])
        self.ds.fetch_historical("@1", start, end)
        self.assertEqual(self.backend.historical_calls, 2)

    def test_search_key_is_case_insensitive(self):
        self.ds.search("Colombo")
        self.ds.search("  colombo ")
        self.assertEqual(self.backend.search_calls, 1)


    def test_forecast_cached_per_rounded_coordinates(self):
        first = self.ds.fetch_forecast(6.92711, 79.8612)
        self.ds.fetch_forecast(6.92709, 79.8612)
        self.assertEqual([p.value for p in first], [55, 60])
        self.assertEqual(self.backend.forecast_calls, 1)
        self.assertIn("forecast:6.9271,79.8612", self.cache)

    def test_empty_forecast_not_cached(self):
        self.backend.forecast = []
        self.ds.fetch_forecast(6.9271, 79.8612)
        self.ds.fetch_forecast(6.9271, 79.8612)
        self.assertEqual(self.backend.forecast_calls, 2)

    def test_live_view_always_fetches_and_warms_the_cache(self):
        live = self.ds.live()
        live.fetch_current(6.9271, 79.8612)
        live.fetch_current(6.9271, 79.8612)
        self.assertEqual(self.backend.current_calls, 2)
        self.assertIs(live.cache, self.cache)
        self.assertTrue(self.ds.serve_cached_current)

        self.ds.fetch_current(6.9271, 79.8612)
        self.assertEqual(self.backend.current_calls, 2)

    def test_callable_source_without_forecaster(self):
        inner = CallableAirQualityDataSource(
            current=self.backend.current,
            historical=self.backend.historical,
            searcher=self.backend.searcher,
        )
        with self.assertRaises(ClientFetchError):
            inner.fetch_forecast(6.9271, 79.8612)

if __name__ == "__main__":
    unittest.main()
