import unittest
from datetime import timedelta
from unittest import mock

import requests

from city_config import get_city_config
from engine_fixtures import JUNE_NOON, LAT, LON
from errors import ProviderUnavailableError
from models import WeatherMode, WeatherSlice
from weather import (
    MetNoProvider,
    MockWeatherProvider,
    OpenMeteoProvider,
    parse_met_no_payload,
    parse_open_meteo_payload,
)
from weather_router import WeatherIngestionService, WeatherRouter, WeatherService, WeatherStore

HOUR = JUNE_NOON.replace(minute=0)


def _slice(ts, cloud=0.5, fetched_at=None, is_forecast=False):
    return WeatherSlice(
        timestamp=ts,
        cloud_cover=cloud,
        certainty=0.9,
        source="mock",
        is_forecast=is_forecast,
        fetched_at=fetched_at or ts,
    )


def _met_no_payload():
    return {
        "properties": {
            "timeseries": [
                {"time": "2025-06-21T11:00:00Z", "data": {"instant": {"details": {"cloud_area_fraction": 25.0}}}},
                {"time": "2025-06-21T12:00:00Z", "data": {"instant": {"details": {"cloud_area_fraction": 80.0}}}},
                {"time": "2025-06-21T18:00:00Z", "data": {"instant": {"details": {"cloud_area_fraction": 100.0}}}},
                {"time": "2025-06-21T13:00:00Z", "data": {"instant": {"details": {}}}},
            ]
        }
    }


class ProviderParsingTests(unittest.TestCase):
    def test_met_no_payload(self):
        candidates = parse_met_no_payload(_met_no_payload())
        self.assertEqual(candidates[HOUR], 25.0)
        self.assertEqual(len(candidates), 3)

    def test_met_no_payload_without_cloud_is_unavailable(self):
        with self.assertRaises(ProviderUnavailableError):
            parse_met_no_payload({"properties": {"timeseries": []}})

    def test_open_meteo_payload(self):
        payload = {
            "hourly": {
                "time": ["2025-06-21T11:00", "2025-06-21T12:00", "2025-06-21T13:00"],
                "cloudcover": [10, None, 90],
            }
        }
        candidates = parse_open_meteo_payload(payload)
        self.assertEqual(candidates, {HOUR: 10.0, HOUR + timedelta(hours=2): 90.0})

    def test_met_no_provider_marks_nowcast_and_forecast(self):
        session = mock.MagicMock()
        session.get.return_value.json.return_value = _met_no_payload()
        provider = MetNoProvider(session=session)
        slices = provider.fetch(LAT, LON, HOUR, HOUR + timedelta(hours=12), JUNE_NOON)

        self.assertEqual([s.cloud_cover for s in slices], [0.25, 0.8, 1.0])
        self.assertEqual([s.is_forecast for s in slices], [False, False, True])
        self.assertTrue(all(s.certainty == 0.95 for s in slices))
        self.assertEqual(session.get.call_args.kwargs["params"], {"lat": "57.7089", "lon": "11.9746"})

    def test_http_failures_become_provider_errors(self):
        session = mock.MagicMock()
        session.get.side_effect = requests.ConnectionError("offline")
        with self.assertRaises(ProviderUnavailableError):
            OpenMeteoProvider(session=session).fetch(LAT, LON, HOUR, HOUR + timedelta(hours=3), JUNE_NOON)

    def test_out_of_range_slices_are_unavailable(self):
        session = mock.MagicMock()
        session.get.return_value.json.return_value = _met_no_payload()
        later = HOUR + timedelta(days=3)
        with self.assertRaises(ProviderUnavailableError):
            MetNoProvider(session=session).fetch(LAT, LON, later, later + timedelta(hours=2), JUNE_NOON)


class WeatherRouterTests(unittest.TestCase):
    def test_primary_wins_when_available(self):
        primary = MockWeatherProvider(name="primary", cloud_cover=0.2)
        secondary = MockWeatherProvider(name="secondary", cloud_cover=0.9)
        result = WeatherRouter([primary, secondary]).fetch(LAT, LON, HOUR, HOUR + timedelta(hours=2), JUNE_NOON)
        self.assertEqual(result.provider_used, "primary")
        self.assertFalse(result.fallback_used)
        self.assertEqual(secondary.calls, 0)

    def test_falls_back_to_secondary(self):
        primary = MockWeatherProvider(name="primary", fail=True)
        secondary = MockWeatherProvider(name="secondary", cloud_cover=0.9)
        result = WeatherRouter([primary, secondary]).fetch(LAT, LON, HOUR, HOUR + timedelta(hours=2), JUNE_NOON)
        self.assertEqual(result.provider_used, "secondary")
        self.assertTrue(result.fallback_used)
        self.assertIn("primary", result.provider_errors)

    def test_all_providers_failing_raises(self):
        router = WeatherRouter([MockWeatherProvider(name="a", fail=True), MockWeatherProvider(name="b", fail=True)])
        with self.assertRaises(ProviderUnavailableError):
            router.fetch(LAT, LON, HOUR, HOUR + timedelta(hours=2), JUNE_NOON)
        with self.assertRaises(ProviderUnavailableError):
            WeatherRouter([]).fetch(LAT, LON, HOUR, HOUR + timedelta(hours=2), JUNE_NOON)


class WeatherStoreTests(unittest.TestCase):
    def test_later_fetch_supersedes_in_windows(self):
        store = WeatherStore()
        store.append([_slice(HOUR, 0.2, fetched_at=HOUR)])
        store.append([_slice(HOUR, 0.7, fetched_at=HOUR + timedelta(minutes=10))])
        self.assertEqual(len(store), 2)

        window = WeatherService(store).window_for(HOUR, HOUR + timedelta(hours=1))
        self.assertEqual(len(window.slices), 1)
        self.assertEqual(window.slices[0].cloud_cover, 0.7)

    def test_prune_and_lookup(self):
        store = WeatherStore()
        store.append([_slice(HOUR - timedelta(hours=h)) for h in range(5)])
        self.assertEqual(store.prune(HOUR - timedelta(hours=2)), 2)
        self.assertEqual(store.latest_at_or_before(HOUR + timedelta(minutes=30)).timestamp, HOUR)
        self.assertIsNone(store.latest_at_or_before(HOUR + timedelta(hours=4), max_age=timedelta(hours=3)))
        self.assertIsNone(store.latest_at_or_before(HOUR - timedelta(hours=3)))


class WeatherWindowTests(unittest.TestCase):
    def setUp(self):
        store = WeatherStore()
        store.append([_slice(HOUR, 0.2), _slice(HOUR + timedelta(hours=1), 0.6, is_forecast=True)])
        self.window = WeatherService(store).window_for(HOUR, HOUR + timedelta(hours=2))

    def test_cloud_cover_interpolates_between_slices(self):
        self.assertAlmostEqual(self.window.cloud_cover_at(HOUR + timedelta(minutes=30)), 0.4)
        self.assertEqual(self.window.cloud_cover_at(HOUR + timedelta(hours=2)), 0.6)
        self.assertIsNone(self.window.cloud_cover_at(HOUR - timedelta(minutes=1)))

    def test_mode_reflects_forecast_slices(self):
        self.assertEqual(self.window.mode(), WeatherMode.FORECAST)

    def test_empty_store_gives_estimated_window(self):
        window = WeatherService(WeatherStore()).window_for(HOUR, HOUR + timedelta(hours=1))
        self.assertTrue(window.is_empty)
        self.assertEqual(window.mode(), WeatherMode.ESTIMATED)
        self.assertIn("estimated", window.note)


class IngestionTests(unittest.TestCase):
    def test_ingest_appends_slices(self):
        store = WeatherStore()
        service = WeatherIngestionService(
            WeatherRouter([MockWeatherProvider(cloud_cover=0.3)]),
            store,
            get_city_config("gothenburg"),
            clock=lambda: JUNE_NOON,
        )
        appended = service.ingest_once()
        self.assertEqual(appended, len(store))
        self.assertEqual(store.snapshot()[0].timestamp, HOUR - timedelta(hours=1))
        self.assertEqual(service.last_result.provider_used, "mock")

    def test_ingest_survives_total_provider_outage(self):
        store = WeatherStore()
        service = WeatherIngestionService(
            WeatherRouter([MockWeatherProvider(fail=True)]),
            store,
            get_city_config("gothenburg"),
            clock=lambda: JUNE_NOON,
        )
        self.assertEqual(service.ingest_once(), 0)
        self.assertEqual(len(store), 0)


if __name__ == "__main__":
    unittest.main()
