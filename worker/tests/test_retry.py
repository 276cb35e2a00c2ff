import sys
import unittest
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from pathlib import Path
from unittest.mock import Mock


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from m365_crawler.errors import FailureKind, GraphError, MalformedEntityError, classify_failure
from m365_crawler.retry import RetryPolicy, parse_retry_after


class ParseRetryAfterTests(unittest.TestCase):
    def test_delta_seconds_are_clamped(self):
        self.assertEqual(parse_retry_after("5", min_wait=2, max_wait=15), 5.0)
        self.assertEqual(parse_retry_after("0", min_wait=2, max_wait=15), 2.0)
        self.assertEqual(parse_retry_after("120", min_wait=2, max_wait=15), 15.0)

    def test_http_date_is_relative_to_now(self):
        now = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        header = format_datetime(now + timedelta(seconds=7), usegmt=True)
        self.assertAlmostEqual(parse_retry_after(header, min_wait=2, max_wait=15, now=now), 7.0, places=3)

    def test_http_date_in_the_past_uses_minimum(self):
        now = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        header = format_datetime(now - timedelta(minutes=5), usegmt=True)
        self.assertEqual(parse_retry_after(header, min_wait=2, max_wait=15, now=now), 2.0)

    def test_missing_or_garbage_header_is_none(self):
        self.assertIsNone(parse_retry_after(None, min_wait=2, max_wait=15))
        self.assertIsNone(parse_retry_after("  ", min_wait=2, max_wait=15))
        self.assertIsNone(parse_retry_after("soon", min_wait=2, max_wait=15))


class RetryPolicyTests(unittest.TestCase):
    def setUp(self):
        self.sleep = Mock()
        self.policy = RetryPolicy(min_wait=2, max_wait=15, sleep=self.sleep)

    def test_success_is_returned_without_sleeping(self):
        self.assertEqual(self.policy.call(lambda: {"id": "1"}), {"id": "1"})
        self.sleep.assert_not_called()

    def test_transient_failure_is_retried_once_with_retry_after(self):
        fn = Mock(side_effect=[GraphError(429, "throttled", "u", retry_after="4"), "ok"])
        self.assertEqual(self.policy.call(fn), "ok")
        self.assertEqual(fn.call_count, 2)
        self.sleep.assert_called_once_with(4.0)

    def test_transient_failure_without_hint_waits_minimum(self):
        fn = Mock(side_effect=[GraphError(503, "unavailable", "u"), "ok"])
        self.assertEqual(self.policy.call(fn), "ok")
        self.sleep.assert_called_once_with(2.0)

    def test_second_transient_failure_propagates(self):
        fn = Mock(side_effect=[GraphError(429, "a", "u"), GraphError(429, "b", "u")])
        with self.assertRaises(GraphError) as ctx:
            self.policy.call(fn)
        self.assertEqual(ctx.exception.message, "b")
        self.assertEqual(fn.call_count, 2)

    def test_not_found_returns_none(self):
        fn = Mock(side_effect=GraphError(404, "gone", "u"))
        self.assertIsNone(self.policy.call(fn))
        self.assertEqual(fn.call_count, 1)
        self.sleep.assert_not_called()

    def test_permanent_failure_is_not_retried(self):
        fn = Mock(side_effect=GraphError(403, "denied", "u"))
        with self.assertRaises(GraphError):
            self.policy.call(fn)
        self.assertEqual(fn.call_count, 1)
        self.sleep.assert_not_called()

    def test_max_wait_below_min_wait_is_raised_to_min(self):
        policy = RetryPolicy(min_wait=5, max_wait=1, sleep=self.sleep)
        self.assertEqual(policy.max_wait, 5.0)


class ClassifyFailureTests(unittest.TestCase):
    def test_status_classes(self):
        self.assertIs(classify_failure(GraphError(429, "", "")), FailureKind.TRANSIENT)
        self.assertIs(classify_failure(GraphError(503, "", "")), FailureKind.TRANSIENT)
        self.assertIs(classify_failure(GraphError(404, "", "")), FailureKind.NOT_FOUND)
        self.assertIs(classify_failure(GraphError(401, "", "")), FailureKind.PERMISSION_DENIED)
        self.assertIs(classify_failure(GraphError(403, "", "")), FailureKind.PERMISSION_DENIED)
        self.assertIs(classify_failure(GraphError(500, "", "")), FailureKind.OTHER)

    def test_entity_errors_are_malformed(self):
        self.assertIs(classify_failure(MalformedEntityError("driveItem", "id")), FailureKind.MALFORMED)
        self.assertIs(classify_failure(KeyError("id")), FailureKind.MALFORMED)
        self.assertIs(classify_failure(RuntimeError("x")), FailureKind.OTHER)


if __name__ == "__main__":
    unittest.main()
