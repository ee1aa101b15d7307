import unittest
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from timeutils import (
    ensure_utc,
    floor_to_resolution,
    format_local,
    is_ambiguous_local_time,
    is_valid_local_time,
    local_date,
    local_day_bounds,
    local_to_utc,
    parse_iso,
)

STOCKHOLM = ZoneInfo("Europe/Stockholm")


class LocalTimeTests(unittest.TestCase):
    def test_spring_gap_moves_forward(self):
        skipped = datetime(2025, 3, 30, 2, 30)
        self.assertFalse(is_valid_local_time(skipped, STOCKHOLM))
        self.assertEqual(local_to_utc(skipped, STOCKHOLM), datetime(2025, 3, 30, 1, 30, tzinfo=timezone.utc))

    def test_autumn_repeat_resolves_to_first_occurrence(self):
        repeated = datetime(2025, 10, 26, 2, 30)
        self.assertTrue(is_ambiguous_local_time(repeated, STOCKHOLM))
        self.assertEqual(local_to_utc(repeated, STOCKHOLM), datetime(2025, 10, 26, 0, 30, tzinfo=timezone.utc))
        self.assertEqual(local_to_utc(repeated, STOCKHOLM, fold=1), datetime(2025, 10, 26, 1, 30, tzinfo=timezone.utc))
        self.assertFalse(is_ambiguous_local_time(datetime(2025, 10, 26, 4, 0), STOCKHOLM))

    def test_day_bounds_follow_dst(self):
        hours = {}
        for day in (date(2025, 3, 30), date(2025, 6, 21), date(2025, 10, 26)):
            start, end = local_day_bounds(day, STOCKHOLM)
            hours[day] = (end - start).total_seconds() / 3600
        self.assertEqual(hours, {date(2025, 3, 30): 23, date(2025, 6, 21): 24, date(2025, 10, 26): 25})
        self.assertEqual(local_day_bounds(date(2025, 6, 21), STOCKHOLM)[0], datetime(2025, 6, 20, 22, tzinfo=timezone.utc))

    def test_local_date_crosses_midnight(self):
        self.assertEqual(local_date(datetime(2025, 6, 21, 22, 30, tzinfo=timezone.utc), STOCKHOLM), date(2025, 6, 22))

    def test_format_local_uses_zone_abbreviation(self):
        self.assertEqual(
            format_local(datetime(2025, 6, 21, 11, 0, tzinfo=timezone.utc), STOCKHOLM), "2025-06-21 13:00 CEST"
        )
        self.assertEqual(
            format_local(datetime(2025, 12, 21, 11, 0, tzinfo=timezone.utc), STOCKHOLM), "2025-12-21 12:00 CET"
        )


class UtcHelperTests(unittest.TestCase):
    def test_parse_iso(self):
        self.assertEqual(parse_iso("2025-06-21T11:00:00Z"), datetime(2025, 6, 21, 11, tzinfo=timezone.utc))
        self.assertEqual(parse_iso("2025-06-21T13:00:00+02:00"), datetime(2025, 6, 21, 11, tzinfo=timezone.utc))
        self.assertIsNone(parse_iso("not a date"))
        self.assertIsNone(parse_iso(None))

    def test_naive_values_are_utc(self):
        self.assertEqual(ensure_utc(datetime(2025, 6, 21, 11)).tzinfo, timezone.utc)

    def test_floor_to_resolution(self):
        when = datetime(2025, 6, 21, 11, 14, 37, tzinfo=timezone.utc)
        self.assertEqual(floor_to_resolution(when, 10), datetime(2025, 6, 21, 11, 10, tzinfo=timezone.utc))
        self.assertEqual(floor_to_resolution(when, 60), datetime(2025, 6, 21, 11, 0, tzinfo=timezone.utc))
        self.assertEqual(floor_to_resolution(when, 7), datetime(2025, 6, 21, 11, 12, tzinfo=timezone.utc))


if __name__ == "__main__":
    unittest.main()
