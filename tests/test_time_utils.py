import unittest
from datetime import datetime, timedelta

import pytz

from app.utils.time_utils import (
    day_end,
    day_start,
    days_between,
    get_day_id,
    iter_day_ids,
    next_day_id,
    previous_day_id,
)
from tests.helpers import utc


class DayIdTests(unittest.TestCase):
    def test_boundary_is_ten_utc(self) -> None:
        self.assertEqual(get_day_id(utc(2026, 10, 17, 9, 59, 59)), "2026-10-16")
        self.assertEqual(get_day_id(utc(2026, 10, 17, 10, 0, 0)), "2026-10-17")

    def test_same_window_gives_same_id(self) -> None:
        start = utc(2026, 10, 17, 10, 0)
        ids = {get_day_id(start + timedelta(minutes=m)) for m in range(0, 24 * 60, 37)}
        self.assertEqual(ids, {"2026-10-17"})

    def test_crossing_boundary_changes_id_once(self) -> None:
        start = utc(2026, 10, 17, 9, 0)
        ids = [get_day_id(start + timedelta(minutes=m)) for m in range(0, 120)]
        changes = sum(1 for a, b in zip(ids, ids[1:]) if a != b)
        self.assertEqual(changes, 1)

    def test_naive_treated_as_utc(self) -> None:
        self.assertEqual(get_day_id(datetime(2026, 10, 17, 10, 0)), "2026-10-17")

    def test_other_timezones_are_converted(self) -> None:
        tokyo = pytz.timezone("Asia/Tokyo")
        # 19:00 JST = 10:00 UTC
        self.assertEqual(get_day_id(tokyo.localize(datetime(2026, 10, 17, 19, 0))), "2026-10-17")
        self.assertEqual(get_day_id(tokyo.localize(datetime(2026, 10, 17, 18, 59))), "2026-10-16")

    def test_day_window(self) -> None:
        self.assertEqual(day_start("2026-10-17"), utc(2026, 10, 17, 10, 0))
        self.assertEqual(day_end("2026-10-17"), utc(2026, 10, 18, 10, 0))
        self.assertEqual(get_day_id(day_end("2026-10-17") - timedelta(microseconds=1)), "2026-10-17")

    def test_day_arithmetic(self) -> None:
        self.assertEqual(next_day_id("2026-10-31"), "2026-11-01")
        self.assertEqual(previous_day_id("2026-01-01"), "2025-12-31")
        self.assertEqual(days_between("2026-10-14", "2026-10-17"), 3)
        self.assertEqual(iter_day_ids("2026-10-14", "2026-10-17"), ["2026-10-14", "2026-10-15", "2026-10-16"])
        self.assertEqual(iter_day_ids("2026-10-17", "2026-10-17"), [])


if __name__ == "__main__":
    unittest.main()
