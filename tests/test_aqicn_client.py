import datetime as dt
import unittest

import requests

from aerosync.data_sources import aqicn_client
from aerosync.data_sources.aqicn_client import AqicnDataSource
from aerosync.errors import ClientFetchError, DataValidationError, RateLimitedError, TransientFetchError


class DummyResp:
    def __init__(self, payload, status_code=200, headers=None, url="https://api.waqi.info/x?token=t"):
        self._payload = payload
        self.status_code = status_code
        self.headers = headers or {}
        self.url = url

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class DummyHttp:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def get(self, url, params=None, timeout=None):
        self.requests.append((url, dict(params or {}), timeout))
        resp = self.responses.pop(0)
        if isinstance(resp, Exception):
            raise resp
        return resp


def _feed_payload(aqi=65):
    return {
        "status": "ok",
        "data": {
            "aqi": aqi,
            "idx": 1234,
            "city": {"name": "Colombo, Sri Lanka", "geo": [6.9271, 79.8612]},
            "time": {"s": "2024-05-01 12:00:00", "tz": "+05:30", "v": 1714564800, "iso": "2024-05-01T12:00:00+05:30"},
            "iaqi": {"pm25": {"v": 65}, "pm10": {"v": 30}, "t": {"v": 29.5}, "h": {"v": 80}},
            "forecast": {
                "daily": {
                    "pm25": [
                        {"avg": 60, "day": "2024-04-29", "max": 70, "min": 50},
                        {"avg": 62, "day": "2024-04-30", "max": 70, "min": 50},
                        {"avg": 70, "day": "2024-05-01", "max": 80, "min": 60},
                        {"avg": 55, "day": "2024-05-02", "max": 60, "min": 50},
                    ],
                    "pm10": [
                        {"avg": 80, "day": "2024-05-01", "max": 90, "min": 70},
                        {"avg": "bad", "day": "2024-05-02"},
                    ],
                    "uvi": [{"avg": 9, "day": "2024-05-01"}],
                }
            },
        },
    }


class TestAqicnParsing(unittest.TestCase):
    def test_parse_current(self):
        reading = aqicn_client.parse_current(_feed_payload()["data"], 6.9271, 79.8612)
        self.assertEqual(reading.value, 65)
        self.assertEqual(reading.location_label, "Colombo, Sri Lanka")
        self.assertEqual(reading.station_key, "@1234")
        self.assertEqual(reading.factor_breakdown, {"pm25": 65, "pm10": 30})
        self.assertEqual(reading.observed_at.utcoffset(), dt.timedelta(hours=5, minutes=30))

    def test_missing_aqi_is_validation_error(self):
        data = _feed_payload(aqi="-")["data"]
        with self.assertRaises(DataValidationError):
            aqicn_client.parse_current(data, 6.9, 79.8)

    def test_observed_at_falls_back_to_epoch(self):
        observed = aqicn_client._parse_observed_at({"v": 0})
        self.assertEqual(observed, dt.datetime(1970, 1, 1, tzinfo=dt.timezone.utc))

    def test_daily_forecast_keeps_window_and_takes_max_pollutant(self):
        points = aqicn_client.parse_daily_forecast(_feed_payload()["data"], dt.date(2024, 4, 30), dt.date(2024, 5, 2))
        self.assertEqual([p.date for p in points], [dt.date(2024, 4, 30), dt.date(2024, 5, 1), dt.date(2024, 5, 2)])
        self.assertEqual([p.value for p in points], [62, 80, 55])
        self.assertNotIn("uvi", points[1].factor_breakdown)

    def test_parse_search(self):
        results = aqicn_client.parse_search(
            [
                {
                    "uid": 42,
                    "aqi": "57",
                    "time": {"stime": "2024-05-01 10:00:00", "tz": "+05:30"},
                    "station": {"name": "Colombo US Embassy", "geo": [6.9, 79.85]},
                },
                {"uid": 43, "aqi": "-", "station": {"name": "Offline"}},
                {"station": {"name": "No uid"}},
            ]
        )
        self.assertEqual([r.station_key for r in results], ["@42", "@43"])
        self.assertEqual(results[0].value, 57)
        self.assertIsNone(results[1].value)
        self.assertIsNone(results[1].coordinates)

    def test_api_status_errors_are_classified(self):
        with self.assertRaises(RateLimitedError):
            aqicn_client._raise_for_api_status({"status": "error", "data": "Over quota"})
        with self.assertRaises(ClientFetchError):
            aqicn_client._raise_for_api_status({"status": "error", "data": "Invalid key"})
        with self.assertRaises(ClientFetchError):
            aqicn_client._raise_for_api_status({"status": "error", "data": "Unknown station"})
        with self.assertRaises(TransientFetchError):
            aqicn_client._raise_for_api_status({"status": "error", "data": "can not connect"})
        with self.assertRaises(DataValidationError):
            aqicn_client._raise_for_api_status(["not", "a", "dict"])


class TestAqicnDataSource(unittest.TestCase):
    def test_fetch_current_sends_token_and_geo_path(self):
        http = DummyHttp(DummyResp(_feed_payload()))
        ds = AqicnDataSource(base_url="https://api.waqi.info/", token="secret", timeout=3, http=http)

        reading = ds.fetch_current(6.9271, 79.8612)

        url, params, timeout = http.requests[0]
        self.assertEqual(url, "https://api.waqi.info/feed/geo:6.9271;79.8612/")
        self.assertEqual(params["token"], "secret")
        self.assertEqual(timeout, 3)
        self.assertEqual(reading.value, 65)

    def test_invalid_coordinates_never_hit_the_network(self):
        http = DummyHttp()
        ds = AqicnDataSource(http=http)
        with self.assertRaises(ClientFetchError):
            ds.fetch_current(123.0, 79.8)
        self.assertEqual(http.requests, [])

    def test_http_errors_are_classified(self):
        http = DummyHttp(
            DummyResp({}, status_code=503),
            DummyResp({}, status_code=429, headers={"Retry-After": "30"}),
            DummyResp({}, status_code=401),
        )
        ds = AqicnDataSource(token="secret", http=http)
        with self.assertRaises(TransientFetchError):
            ds.fetch_current(6.9, 79.8)
        with self.assertRaises(RateLimitedError) as ctx:
            ds.fetch_current(6.9, 79.8)
        self.assertEqual(ctx.exception.retry_after, 30)
        with self.assertRaises(ClientFetchError):
            ds.fetch_current(6.9, 79.8)

    def test_network_failures_are_transient(self):
        http = DummyHttp(requests.Timeout("slow"), requests.ConnectionError("down"))
        ds = AqicnDataSource(http=http)
        with self.assertRaises(TransientFetchError):
            ds.fetch_current(6.9, 79.8)
        with self.assertRaises(TransientFetchError):
            ds.fetch_current(6.9, 79.8)

    def test_bad_json_is_validation_error(self):
        http = DummyHttp(DummyResp(ValueError("no json")))
        ds = AqicnDataSource(http=http)
        with self.assertRaises(DataValidationError):
            ds.fetch_current(6.9, 79.8)

    def test_historical_requires_real_token(self):
        ds = AqicnDataSource(token="demo", http=DummyHttp())
        with self.assertRaises(ClientFetchError):
            ds.fetch_historical("@1234", dt.date(2024, 5, 1), dt.date(2024, 5, 2))

    def test_fetch_historical_uses_station_feed(self):
        http = DummyHttp(DummyResp(_feed_payload()))
        ds = AqicnDataSource(token="secret", http=http)

        points = ds.fetch_historical("1234", dt.date(2024, 5, 1), dt.date(2024, 5, 1))

        self.assertEqual(http.requests[0][0], "https://api.waqi.info/feed/@1234/")
        self.assertEqual([p.value for p in points], [80])

    def test_fetch_forecast_keeps_today_onward(self):
        http = DummyHttp(DummyResp(_feed_payload()))
        ds = AqicnDataSource(http=http, forecast_days=2, today=lambda: dt.date(2024, 5, 1))

        points = ds.fetch_forecast(6.9271, 79.8612)

        self.assertEqual(http.requests[0][0], "https://api.waqi.info/feed/geo:6.9271;79.8612/")
        self.assertEqual([p.date for p in points], [dt.date(2024, 5, 1), dt.date(2024, 5, 2)])
        self.assertEqual([p.value for p in points], [80, 55])

    def test_search_requires_keyword(self):
        ds = AqicnDataSource(http=DummyHttp())
        with self.assertRaises(ClientFetchError):
            ds.search("   ")

    def test_search_passes_keyword(self):
        http = DummyHttp(DummyResp({"status": "ok", "data": []}))
        ds = AqicnDataSource(http=http)
        self.assertEqual(ds.search(" colombo "), [])
        self.assertEqual(http.requests[0][1]["keyword"], "colombo")


if __name__ == "__main__":
    unittest.main()
