"""Tests for rate-limit tracking."""

import threading
import unittest

from testluy import RateLimitState, RateLimitTracker
from testluy._rate_limit import parse_int_header


class TestParseIntHeader(unittest.TestCase):
    """Tests for parse_int_header()."""

    def test_parses_integer(self):
        self.assertEqual(parse_int_header({"x-ratelimit-limit": "60"}, "x-ratelimit-limit"), 60)

    def test_lookup_is_case_insensitive(self):
        self.assertEqual(parse_int_header({"X-RateLimit-Limit": "60"}, "x-ratelimit-limit"), 60)

    def test_truncates_float_values(self):
        self.assertEqual(parse_int_header({"x-ratelimit-reset": "1700000000.7"}, "x-ratelimit-reset"), 1700000000)

    def test_missing_header_returns_none(self):
        self.assertIsNone(parse_int_header({}, "x-ratelimit-limit"))

    def test_malformed_value_returns_none(self):
        """Should drop malformed values instead of failing."""
        self.assertIsNone(parse_int_header({"x-ratelimit-limit": "sixty"}, "x-ratelimit-limit"))
        self.assertIsNone(parse_int_header({"x-ratelimit-limit": "  "}, "x-ratelimit-limit"))


class TestRateLimitState(unittest.TestCase):

    def test_is_exhausted(self):
        self.assertTrue(RateLimitState(limit=10, remaining=0).is_exhausted)
        self.assertFalse(RateLimitState(limit=10, remaining=1).is_exhausted)
        self.assertFalse(RateLimitState().is_exhausted)

    def test_to_dict(self):
        self.assertEqual(
            RateLimitState(limit=10, remaining=2, reset=99).to_dict(),
            {"limit": 10, "remaining": 2, "reset": 99},
        )


class TestRateLimitTracker(unittest.TestCase):
    """Tests for RateLimitTracker."""

    def test_snapshot_is_none_before_first_response(self):
        self.assertIsNone(RateLimitTracker().snapshot())

    def test_update_parses_all_headers(self):
        tracker = RateLimitTracker()

        tracker.update({
            "x-ratelimit-limit": "60",
            "x-ratelimit-remaining": "59",
            "x-ratelimit-reset": "1700000060",
        })

        self.assertEqual(tracker.snapshot(), RateLimitState(limit=60, remaining=59, reset=1700000060))

    def test_headers_without_rate_limit_keep_snapshot_none(self):
        tracker = RateLimitTracker()

        tracker.update({"content-type": "application/json"})

        self.assertIsNone(tracker.snapshot())

    def test_absent_headers_never_regress_state(self):
        """Should keep previous values for headers missing from a later response."""
        tracker = RateLimitTracker()
        tracker.update({"x-ratelimit-limit": "60", "x-ratelimit-remaining": "10", "x-ratelimit-reset": "500"})

        tracker.update({"x-ratelimit-remaining": "9"})
        tracker.update({})

        self.assertEqual(tracker.snapshot(), RateLimitState(limit=60, remaining=9, reset=500))

    def test_malformed_header_leaves_field_untouched(self):
        tracker = RateLimitTracker()
        tracker.update({"x-ratelimit-remaining": "5"})

        tracker.update({"x-ratelimit-remaining": "n/a"})

        self.assertEqual(tracker.snapshot().remaining, 5)

    def test_last_response_wins(self):
        tracker = RateLimitTracker()

        tracker.update({"x-ratelimit-remaining": "5"})
        tracker.update({"x-ratelimit-remaining": "7"})

        self.assertEqual(tracker.snapshot().remaining, 7)

    def test_concurrent_updates_keep_a_consistent_state(self):
        """Should stay usable when updated from many threads at once."""
        tracker = RateLimitTracker()

        def worker(n):
            tracker.update({"x-ratelimit-limit": "100", "x-ratelimit-remaining": str(n)})

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        state = tracker.snapshot()
        self.assertEqual(state.limit, 100)
        self.assertIn(state.remaining, range(20))


class TestPreemptiveDelay(unittest.TestCase):
    """Tests for RateLimitTracker.preemptive_delay()."""

    def test_zero_before_first_response(self):
        self.assertEqual(RateLimitTracker().preemptive_delay(now=0), 0.0)

    def test_zero_when_requests_remain(self):
        tracker = RateLimitTracker()
        tracker.update({"x-ratelimit-remaining": "3", "x-ratelimit-reset": "1000"})

        self.assertEqual(tracker.preemptive_delay(now=990), 0.0)

    def test_seconds_until_reset_when_exhausted(self):
        tracker = RateLimitTracker()
        tracker.update({"x-ratelimit-remaining": "0", "x-ratelimit-reset": "1000"})

        self.assertEqual(tracker.preemptive_delay(now=990), 10.0)

    def test_zero_when_reset_already_passed(self):
        tracker = RateLimitTracker()
        tracker.update({"x-ratelimit-remaining": "0", "x-ratelimit-reset": "1000"})

        self.assertEqual(tracker.preemptive_delay(now=1005), 0.0)
