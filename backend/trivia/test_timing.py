from datetime import datetime, timedelta, timezone
from unittest import TestCase

from backend.trivia.timing import validate_timing

START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _window(seconds: float):
    return START, START + timedelta(seconds=seconds)


class ValidateTimingTests(TestCase):
    def test_instant_answer_keeps_full_clock(self):
        result = validate_timing(*_window(0))
        self.assertTrue(result.is_valid)
        self.assertEqual(result.remaining_time, 15.0)

    def test_tolerance_is_subtracted_from_elapsed(self):
        result = validate_timing(*_window(5))
        self.assertTrue(result.is_valid)
        self.assertAlmostEqual(result.remaining_time, 10.5)
        self.assertAlmostEqual(result.elapsed, 5.0)

    def test_elapsed_inside_tolerance_counts_as_zero(self):
        result = validate_timing(*_window(0.3))
        self.assertEqual(result.remaining_time, 15.0)

    def test_upper_bound_includes_tolerance(self):
        result = validate_timing(*_window(15.5))
        self.assertTrue(result.is_valid)
        self.assertEqual(result.remaining_time, 0.0)

    def test_window_longer_than_round_is_invalid(self):
        result = validate_timing(*_window(15.6))
        self.assertFalse(result.is_valid)
        self.assertEqual(result.remaining_time, 0.0)

    def test_end_before_start_is_invalid(self):
        result = validate_timing(START, START - timedelta(seconds=1))
        self.assertFalse(result.is_valid)
        self.assertEqual(result.remaining_time, 15.0)

    def test_custom_duration_and_tolerance(self):
        result = validate_timing(*_window(9), duration=10, tolerance_ms=0)
        self.assertTrue(result.is_valid)
        self.assertAlmostEqual(result.remaining_time, 1.0)
