import unittest
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from models import ExposureState, Provenance, TimelinePoint, WindowQuality
from recommendations import (
    extract_windows,
    grade_window,
    merge_windows,
    priority_score,
    rank_recommendations,
    time_of_day,
)

TZ = ZoneInfo("Europe/Stockholm")
T0 = datetime(2030, 6, 21, 10, 0, tzinfo=timezone.utc)
NOW = T0 - timedelta(hours=2)


def _points(states, start=T0, step=10, exposure=90.0, confidence=80.0):
    points = []
    for i, state in enumerate(states):
        ts = start + timedelta(minutes=step * i)
        sunlit = state in (ExposureState.SUNNY, ExposureState.PARTIAL)
        points.append(
            TimelinePoint(
                timestamp=ts,
                local_time=ts.astimezone(TZ).isoformat(),
                exposure_percent=exposure if sunlit else 0.0,
                state=state,
                confidence=confidence,
                is_sun_visible=True,
                solar_elevation=40.0,
                solar_azimuth=180.0,
                provenance=Provenance.CALCULATED,
            )
        )
    return points


S, P, X = ExposureState.SUNNY, ExposureState.PARTIAL, ExposureState.SHADED


class RecommendationLogicTests(unittest.TestCase):
    def test_extract_windows_filters_short_blips(self):
        points = _points([P, S, S, X, S])
        windows = extract_windows("cafe-1", points, 10, T0 + timedelta(minutes=50), TZ, NOW, 30)
        self.assertEqual(len(windows), 1)
        self.assertEqual(windows[0].start, T0)
        self.assertEqual(windows[0].duration_min, 30)

    def test_window_end_is_clipped_to_range(self):
        points = _points([S, S, S, S])
        windows = extract_windows("cafe-1", points, 10, T0 + timedelta(minutes=35), TZ, NOW, 30)
        self.assertEqual(windows[0].end, T0 + timedelta(minutes=35))
        self.assertEqual(windows[0].local_end, "2030-06-21T12:35:00+02:00")

    def test_missing_ticks_split_windows(self):
        points = _points([S, S, S, S]) + _points([S, S, S, S], start=T0 + timedelta(minutes=60))
        windows = extract_windows("cafe-1", points, 10, T0 + timedelta(minutes=100), TZ, NOW, 30)
        self.assertEqual(len(windows), 2)

    def test_merge_is_idempotent(self):
        first = extract_windows("cafe-1", _points([S] * 6), 10, T0 + timedelta(hours=1), TZ, NOW)
        later = T0 + timedelta(minutes=30)
        second = extract_windows("cafe-1", _points([S] * 9, start=later), 10, later + timedelta(minutes=90), TZ, NOW)
        merged = merge_windows(first + second, 30, tz=TZ, now=NOW)
        self.assertEqual(len(merged), 1)
        self.assertEqual((merged[0].start, merged[0].end), (T0, T0 + timedelta(hours=2)))
        self.assertEqual(merge_windows(merged, 30, tz=TZ, now=NOW), merged)

    def test_grading_bands(self):
        self.assertEqual(grade_window(85, 75), WindowQuality.EXCELLENT)
        self.assertEqual(grade_window(85, 60), WindowQuality.GOOD)
        self.assertEqual(grade_window(45, 45), WindowQuality.FAIR)
        self.assertEqual(grade_window(30, 90), WindowQuality.POOR)

    def test_good_windows_are_recommended(self):
        (window,) = extract_windows("cafe-1", _points([S] * 12), 10, T0 + timedelta(hours=2), TZ, NOW)
        self.assertEqual(window.quality, WindowQuality.EXCELLENT)
        self.assertTrue(window.is_recommended)
        self.assertIn("long sun window", window.recommendation_reason)
        self.assertIn("midday sun", window.recommendation_reason)

    def test_priority_prefers_upcoming_windows(self):
        end = T0 + timedelta(hours=1)
        self.assertEqual(priority_score(60, 80, 80, T0, end, T0), 66.5)
        self.assertEqual(priority_score(60, 80, 80, T0, end, end), 51.5)

    def test_time_of_day(self):
        self.assertEqual(time_of_day(datetime(2030, 6, 21, 9, 0)), "morning")
        self.assertEqual(time_of_day(datetime(2030, 6, 21, 12, 0)), "midday")
        self.assertEqual(time_of_day(datetime(2030, 6, 21, 15, 0)), "afternoon")
        self.assertEqual(time_of_day(datetime(2030, 6, 21, 19, 0)), "evening")

    def test_rank_recommendations_is_deterministic(self):
        long_sunny = extract_windows("osm-1", _points([S] * 12), 10, T0 + timedelta(hours=2), TZ, NOW)
        short_partial = extract_windows(
            "osm-2", _points([P] * 6, exposure=55.0), 10, T0 + timedelta(hours=1), TZ, NOW
        )
        windows_by_patio = {"osm-2": short_partial, "osm-1": long_sunny}

        ranked = rank_recommendations(windows_by_patio, NOW)
        self.assertEqual([item["patio_id"] for item in ranked], ["osm-1", "osm-2"])
        self.assertGreater(ranked[0]["score"], ranked[1]["score"])
        self.assertEqual(ranked, rank_recommendations(dict(reversed(windows_by_patio.items())), NOW))

    def test_past_windows_are_not_recommended(self):
        windows = extract_windows("osm-1", _points([S] * 6), 10, T0 + timedelta(hours=1), TZ, NOW)
        self.assertEqual(rank_recommendations({"osm-1": windows}, T0 + timedelta(hours=3)), [])


if __name__ == "__main__":
    unittest.main()
