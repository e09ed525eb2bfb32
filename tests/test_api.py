import datetime as dt
import unittest

from fastapi.testclient import TestClient

from aerosync.cache import TTLCache
from aerosync.config import Settings
from aerosync.data_sources import CachingDataSource, CallableAirQualityDataSource
from aerosync.errors import ClientFetchError, RateLimitedError, TransientFetchError
from aerosync.main import create_app
from tests.fakes import FakeClock, FakeScheduler, ScriptedSource, make_reading, make_series

LOCATION = {"latitude": 6.9271, "longitude": 79.8612}


class TestApi(unittest.TestCase):
    def _client(self, source, **settings_overrides):
        self.clock = FakeClock()
        self.scheduler = FakeScheduler(self.clock)
        self.source = source
        settings = Settings(**settings_overrides)
        app = create_app(settings, data_source=source.as_callable(), scheduler=self.scheduler, clock=self.clock)
        self.engine = app.state.engine
        return TestClient(app)

    def test_current_reading_starts_poller(self):
        client = self._client(ScriptedSource(make_reading(65)))

        resp = client.get("/v1/readings/current", params=LOCATION)

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["location"], "6.9271,79.8612")
        self.assertEqual(body["reading"]["value"], 65)
        self.assertTrue(body["status"]["is_polling"])
        self.assertEqual(body["status"]["connection"], "connected")

        client.get("/v1/readings/current", params=LOCATION)
        self.assertEqual(self.source.calls, 1)

    def test_current_reading_error_mapping(self):
        cases = [
            (ClientFetchError("bad token"), 400),
            (RateLimitedError("slow down", retry_after=30), 429),
            (TransientFetchError("timeout"), 502),
        ]
        for error, expected in cases:
            with self.subTest(error=type(error).__name__):
                client = self._client(ScriptedSource(error))
                resp = client.get("/v1/readings/current", params=LOCATION)
                self.assertEqual(resp.status_code, expected)
                if expected == 429:
                    self.assertEqual(resp.headers["retry-after"], "30")

    def test_invalid_coordinates_rejected(self):
        client = self._client(ScriptedSource(make_reading()))
        resp = client.get("/v1/readings/current", params={"latitude": 95, "longitude": 0})
        self.assertEqual(resp.status_code, 422)

    def test_refresh_honours_min_interval(self):
        client = self._client(ScriptedSource(make_reading(65), make_reading(70)))

        self.assertEqual(client.post("/v1/readings/refresh", params=LOCATION).status_code, 404)

        client.get("/v1/readings/current", params=LOCATION)
        resp = client.post("/v1/readings/refresh", params=LOCATION)
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["fetched"])

        self.clock.advance(60)
        resp = client.post("/v1/readings/refresh", params=LOCATION)
        self.assertTrue(resp.json()["fetched"])
        self.assertEqual(resp.json()["reading"]["value"], 70)

    def test_poller_status_and_dispose(self):
        client = self._client(ScriptedSource(make_reading(65)))
        client.get("/v1/readings/current", params=LOCATION)

        statuses = client.get("/v1/pollers/status").json()
        self.assertEqual([s["location"] for s in statuses], ["6.9271,79.8612"])

        self.assertEqual(client.delete("/v1/pollers", params=LOCATION).status_code, 204)
        self.assertEqual(client.delete("/v1/pollers", params=LOCATION).status_code, 404)
        self.assertEqual(client.get("/v1/pollers/status").json(), [])
        self.assertEqual(self.scheduler.pending_recurring(), [])

    def test_weekly_report(self):
        source = ScriptedSource(make_reading(65))
        source.series = make_series([40, 42, 41, 70, 72, 75, 78])
        client = self._client(source)

        resp = client.get("/v1/reports/weekly", params={**LOCATION, "location_label": "Home"})

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["report"]["location_label"], "Home")
        self.assertEqual(body["report"]["insights"]["trend"], "worsening")
        self.assertIsNone(body["warning"])
        self.assertEqual(client.get("/v1/cache/stats").json()["valid"], 1)

    def test_weekly_report_without_data_is_404(self):
        client = self._client(ScriptedSource(make_reading(65)))
        resp = client.get("/v1/reports/weekly", params=LOCATION)
        self.assertEqual(resp.status_code, 404)

    def test_weekly_report_upstream_error(self):
        client = self._client(ScriptedSource(ClientFetchError("token required")))
        resp = client.get("/v1/reports/weekly", params=LOCATION)
        self.assertEqual(resp.status_code, 400)

    def test_weekly_report_synthetic_fallback(self):
        client = self._client(ScriptedSource(TransientFetchError("timeout")), report_fallback="synthetic")
        resp = client.get("/v1/reports/weekly", params=LOCATION)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["report"]["source_name"], "synthetic")
        self.assertIn("timeout", resp.json()["warning"])

    def test_station_search(self):
        client = self._client(ScriptedSource(make_reading()))
        resp = client.get("/v1/stations/search", params={"keyword": "colombo"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), [])
        self.assertEqual(client.get("/v1/stations/search").status_code, 422)

    def test_daily_forecast(self):
        source = ScriptedSource(make_reading(65))
        source.forecast = make_series([55, 80], start=dt.date(2024, 5, 8))
        client = self._client(source)

        resp = client.get("/v1/forecast/daily", params=LOCATION)

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["location"], "6.9271,79.8612")
        self.assertEqual([d["date"] for d in body["days"]], ["2024-05-08", "2024-05-09"])
        self.assertEqual([d["value"] for d in body["days"]], [55, 80])

    def test_daily_forecast_unsupported_is_400(self):
        source = ScriptedSource(make_reading(65))
        no_forecast = CallableAirQualityDataSource(
            current=source.fetch_current,
            historical=source.fetch_historical,
            searcher=source.search,
        )
        app = create_app(Settings(), data_source=no_forecast, scheduler=FakeScheduler(FakeClock()))
        resp = TestClient(app).get("/v1/forecast/daily", params=LOCATION)
        self.assertEqual(resp.status_code, 400)

    def test_refresh_reaches_provider_through_the_cache(self):
        clock = FakeClock()
        source = ScriptedSource(make_reading(65), make_reading(70))
        cached = CachingDataSource(source.as_callable(), TTLCache(clock=clock), current_ttl_seconds=300)
        app = create_app(Settings(), data_source=cached, scheduler=FakeScheduler(clock), clock=clock)
        client = TestClient(app)

        client.get("/v1/readings/current", params=LOCATION)
        clock.advance(60)
        resp = client.post("/v1/readings/refresh", params=LOCATION)

        self.assertTrue(resp.json()["fetched"])
        self.assertEqual(resp.json()["reading"]["value"], 70)
        self.assertEqual(source.calls, 2)
        self.assertEqual(cached.fetch_current(**LOCATION).value, 70)
        self.assertEqual(source.calls, 2)

    def test_cache_stats_start_empty(self):
        client = self._client(ScriptedSource(make_reading()))
        self.assertEqual(client.get("/v1/cache/stats").json(), {"total": 0, "valid": 0, "expired": 0})

    def test_api_key_required_when_configured(self):
        client = self._client(ScriptedSource(make_reading(65)), api_key="secret")

        self.assertEqual(client.get("/v1/cache/stats").status_code, 401)
        self.assertEqual(client.get("/v1/cache/stats", headers={"X-API-Key": "wrong"}).status_code, 401)
        self.assertEqual(client.get("/v1/cache/stats", headers={"X-API-Key": "secret"}).status_code, 200)


if __name__ == "__main__":
    unittest.main()
