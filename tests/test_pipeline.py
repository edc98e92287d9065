"""Tests for the request pipeline."""

import itertools
import threading
import time
import unittest

import requests

from fakes import FIXED_EPOCH, FakeClock, FakeHttpClient, make_pipeline, make_response
from testluy import (
    CancellationToken,
    CancelledError,
    Credentials,
    FatalError,
    HmacAuthProvider,
    NotFoundError,
    PipelineState,
    ProtectionChallengeError,
    RateLimitedError,
    RateLimitState,
    RequestDescriptor,
    RequestPipeline,
    TransientError,
    sign,
)

VALIDATE = RequestDescriptor("POST", "validate-credentials", {})


class TestRequestDescriptor(unittest.TestCase):

    def test_rejects_unknown_method(self):
        with self.assertRaises(AssertionError):
            RequestDescriptor("DELETE", "x")

    def test_rejects_body_on_get(self):
        with self.assertRaises(AssertionError):
            RequestDescriptor("GET", "x", {"a": 1})

    def test_rejects_empty_path(self):
        with self.assertRaises(AssertionError):
            RequestDescriptor("GET", "/")


class TestPipelineState(unittest.TestCase):

    def test_terminal_states(self):
        self.assertEqual(
            {s for s in PipelineState if s.is_terminal},
            {PipelineState.SUCCESS, PipelineState.FAILED},
        )


class TestPathResolution(unittest.TestCase):
    """Tests for the single configurable path prefix."""

    def test_prefix_is_joined(self):
        pipeline = make_pipeline(FakeHttpClient())

        self.assertEqual(pipeline.resolve_path("validate-credentials"), "api/validate-credentials")
        self.assertEqual(pipeline.build_url("/validate-credentials"), "https://api.test/api/validate-credentials")

    def test_already_prefixed_path_is_not_doubled(self):
        pipeline = make_pipeline(FakeHttpClient())

        self.assertEqual(pipeline.resolve_path("api/validate-credentials"), "api/validate-credentials")

    def test_empty_prefix(self):
        pipeline = make_pipeline(FakeHttpClient(), path_prefix="")

        self.assertEqual(pipeline.resolve_path("payment-simulator/status/1"), "payment-simulator/status/1")

    def test_prefix_slashes_are_normalized(self):
        pipeline = make_pipeline(FakeHttpClient(), path_prefix="/v1/api/")

        self.assertEqual(pipeline.resolve_path("x"), "v1/api/x")


class TestPrepare(unittest.TestCase):
    """Tests for the BUILDING step."""

    def test_post_headers_and_signature(self):
        """Should sign the prefixed path and the canonical body actually sent."""
        pipeline = make_pipeline(FakeHttpClient())
        request = RequestDescriptor("POST", "payment-simulator/generate-url", {"b": 2, "a": 1})

        prepared = pipeline.prepare(request)

        self.assertEqual(prepared.url, "https://api.test/api/payment-simulator/generate-url")
        self.assertEqual(prepared.body, '{"a":1,"b":2}')
        self.assertEqual(prepared.headers["Content-Type"], "application/json")
        self.assertEqual(prepared.headers["Accept"], "application/json")
        self.assertEqual(prepared.headers["X-Client-ID"], "client-1234")
        self.assertEqual(prepared.headers["X-Timestamp"], str(FIXED_EPOCH))
        self.assertEqual(
            prepared.headers["X-Signature"],
            sign("POST", "api/payment-simulator/generate-url", str(FIXED_EPOCH), '{"a":1,"b":2}', "s3cr3t"),
        )

    def test_get_has_empty_body(self):
        pipeline = make_pipeline(FakeHttpClient())

        prepared = pipeline.prepare(RequestDescriptor("GET", "payment-simulator/status/abc"))

        self.assertEqual(prepared.body, "")
        self.assertEqual(
            prepared.headers["X-Signature"],
            sign("GET", "api/payment-simulator/status/abc", str(FIXED_EPOCH), "", "s3cr3t"),
        )

    def test_secret_never_in_headers(self):
        prepared = make_pipeline(FakeHttpClient()).prepare(VALIDATE)

        self.assertNotIn("s3cr3t", " ".join(prepared.headers.values()))


class TestExecuteSuccess(unittest.TestCase):
    """Tests for successful calls."""

    def test_returns_decoded_json(self):
        http = FakeHttpClient(make_response(200, {"valid": True}))

        result = make_pipeline(http).execute(VALIDATE)

        self.assertEqual(result, {"valid": True})
        self.assertEqual(http.call_count, 1)
        self.assertEqual(http.calls[0]["method"], "POST")
        self.assertEqual(http.calls[0]["body"], "{}")
        self.assertEqual(http.calls[0]["timeout"], 30.0)

    def test_get_is_sent_without_body(self):
        http = FakeHttpClient(make_response(200, {"id": "t1"}))

        make_pipeline(http).execute(RequestDescriptor("GET", "payment-simulator/status/t1"))

        self.assertEqual(http.calls[0]["method"], "GET")
        self.assertIsNone(http.calls[0]["body"])

    def test_empty_success_body_returns_empty_dict(self):
        http = FakeHttpClient(make_response(204, text=""))

        self.assertEqual(make_pipeline(http).execute(VALIDATE), {})

    def test_success_updates_rate_limit_tracker(self):
        http = FakeHttpClient(make_response(200, {}, headers={"x-ratelimit-limit": "60", "x-ratelimit-remaining": "41"}))
        pipeline = make_pipeline(http)

        pipeline.execute(VALIDATE)

        self.assertEqual(pipeline.rate_limit_tracker.snapshot(), RateLimitState(limit=60, remaining=41))

    def test_invalid_json_success_is_fatal(self):
        http = FakeHttpClient(make_response(200, text="not json"))

        with self.assertRaises(FatalError) as ctx:
            make_pipeline(http).execute(VALIDATE)

        self.assertIn("Invalid JSON", str(ctx.exception))
        self.assertEqual(http.call_count, 1)

    def test_html_challenge_with_success_status(self):
        """Should surface a challenge page served with 200 as ProtectionChallenge."""
        http = FakeHttpClient(make_response(200, text="<html><title>Just a moment...</title></html>"))

        with self.assertRaises(ProtectionChallengeError) as ctx:
            make_pipeline(http).execute(VALIDATE)

        self.assertEqual(ctx.exception.challenge_type, "js_challenge")
        self.assertEqual(ctx.exception.attempts, 1)


class TestExecuteRetries(unittest.TestCase):
    """Tests for the CLASSIFYING / RETRYING loop."""

    def test_exhaustion_makes_exactly_n_plus_one_attempts(self):
        """Should make max_retries + 1 attempts against a permanent transient failure."""
        for max_retries in (0, 1, 3):
            with self.subTest(max_retries=max_retries):
                http = FakeHttpClient(make_response(503, {"error": "Service Unavailable"}))
                clock = FakeClock()
                pipeline = make_pipeline(http, clock=clock, retry={"max_retries": max_retries})

                with self.assertRaises(TransientError) as ctx:
                    pipeline.execute(VALIDATE)

                self.assertEqual(http.call_count, max_retries + 1)
                self.assertEqual(len(clock.waits), max_retries)
                self.assertEqual(ctx.exception.attempts, max_retries + 1)

    def test_surfaced_error_carries_diagnostics(self):
        http = FakeHttpClient(make_response(500, {"error": "boom"}, headers={"x-ratelimit-remaining": "7"}))
        clock = FakeClock()
        pipeline = make_pipeline(http, clock=clock, retry={"max_retries": 2, "jitter_factor": 0.0})

        with self.assertRaises(TransientError) as ctx:
            pipeline.execute(VALIDATE)

        error = ctx.exception
        self.assertEqual(error.attempts, 3)
        self.assertEqual(clock.waits, [1.0, 2.0])
        self.assertAlmostEqual(error.elapsed, 3.0)
        self.assertEqual(error.rate_limit, RateLimitState(remaining=7))
        self.assertEqual(error.to_dict()["attempts"], 3)

    def test_retry_after_precedence(self):
        """Should wait at least the 5s the server asked instead of a 1s backoff."""
        http = FakeHttpClient(
            make_response(429, {"error": "Too many"}, headers={"retry-after": "5"}),
            make_response(200, {"valid": True}),
        )
        clock = FakeClock()
        pipeline = make_pipeline(http, clock=clock, retry={"base_delay": 1.0})

        pipeline.execute(VALIDATE)

        self.assertEqual(http.call_count, 2)
        self.assertEqual(len(clock.waits), 1)
        self.assertGreaterEqual(clock.waits[0], 5.0)

    def test_too_long_retry_after_surfaces_immediately(self):
        http = FakeHttpClient(make_response(429, {}, headers={"retry-after": "3600"}))
        clock = FakeClock()

        with self.assertRaises(RateLimitedError) as ctx:
            make_pipeline(http, clock=clock).execute(VALIDATE)

        self.assertEqual(http.call_count, 1)
        self.assertEqual(clock.waits, [])
        self.assertEqual(ctx.exception.retry_after, 3600.0)

    def test_not_found_is_not_retried(self):
        http = FakeHttpClient(make_response(404, {"error": "Transaction not found"}))
        clock = FakeClock()

        with self.assertRaises(NotFoundError) as ctx:
            make_pipeline(http, clock=clock).execute(RequestDescriptor("GET", "payment-simulator/status/x"))

        self.assertEqual(http.call_count, 1)
        self.assertEqual(clock.waits, [])
        self.assertEqual(ctx.exception.attempts, 1)

    def test_not_found_message_on_server_error_is_not_retried(self):
        http = FakeHttpClient(make_response(500, {"error": "Transaction not found"}))
        clock = FakeClock()

        with self.assertRaises(NotFoundError) as ctx:
            make_pipeline(http, clock=clock).execute(RequestDescriptor("GET", "payment-simulator/status/x"))

        self.assertEqual(http.call_count, 1)
        self.assertEqual(clock.waits, [])
        self.assertEqual(ctx.exception.status_code, 500)

    def test_fatal_is_not_retried(self):
        http = FakeHttpClient(make_response(400, {"error": "Bad request"}))

        with self.assertRaises(FatalError):
            make_pipeline(http).execute(VALIDATE)

        self.assertEqual(http.call_count, 1)

    def test_timeout_is_retried_then_succeeds(self):
        http = FakeHttpClient(
            requests.Timeout("read timed out"),
            requests.ConnectionError("connection reset"),
            make_response(200, {"ok": True}),
        )

        result = make_pipeline(http).execute(VALIDATE)

        self.assertEqual(result, {"ok": True})
        self.assertEqual(http.call_count, 3)

    def test_transport_error_is_chained(self):
        cause = requests.Timeout("read timed out")
        http = FakeHttpClient(cause)

        with self.assertRaises(TransientError) as ctx:
            make_pipeline(http, retry={"max_retries": 0}).execute(VALIDATE)

        self.assertIs(ctx.exception.__cause__, cause)

    def test_failed_responses_update_tracker(self):
        http = FakeHttpClient(
            make_response(429, {}, headers={"x-ratelimit-limit": "10", "x-ratelimit-remaining": "0", "retry-after": "1"}),
            make_response(200, {}, headers={"x-ratelimit-remaining": "9"}),
        )
        pipeline = make_pipeline(http)

        pipeline.execute(VALIDATE)

        self.assertEqual(pipeline.rate_limit_tracker.snapshot(), RateLimitState(limit=10, remaining=9))

    def test_each_attempt_is_signed_with_a_fresh_timestamp(self):
        """Should never reuse a timestamp across retries."""
        ticks = itertools.count(FIXED_EPOCH)
        http = FakeHttpClient(make_response(503, {}), make_response(200, {}))
        clock = FakeClock()
        pipeline = RequestPipeline(
            auth=HmacAuthProvider(Credentials("client-1234", "s3cr3t"), clock=lambda: next(ticks)),
            base_url="https://api.test",
            http_client=http,
            waiter=clock.wait,
            clock=clock.monotonic,
        )

        pipeline.execute(VALIDATE)

        timestamps = [call["headers"]["X-Timestamp"] for call in http.calls]
        signatures = [call["headers"]["X-Signature"] for call in http.calls]
        self.assertEqual(timestamps, [str(FIXED_EPOCH), str(FIXED_EPOCH + 1)])
        self.assertNotEqual(signatures[0], signatures[1])

    def test_retries_are_logged_as_warnings(self):
        http = FakeHttpClient(make_response(503, {"error": "down"}), make_response(200, {}))
        pipeline = make_pipeline(http, logger_prefix="Testluy(clie****)")

        with self.assertLogs("testluy._pipeline", level="WARNING") as logs:
            pipeline.execute(VALIDATE)

        self.assertIn("Testluy(clie****) | Attempt 1/4 failed: down", logs.output[0])
        self.assertIn("Retrying in", logs.output[1])

    def test_exhaustion_is_logged_as_error(self):
        http = FakeHttpClient(make_response(500, {"error": "boom"}))

        with self.assertLogs("testluy._pipeline", level="ERROR") as logs:
            with self.assertRaises(TransientError):
                make_pipeline(http, retry={"max_retries": 1}).execute(VALIDATE)

        self.assertIn("Max retries (1) exceeded. Last error: boom", logs.output[-1])


class TestCancellation(unittest.TestCase):
    """Tests for per-call cancellation."""

    def test_cancelled_before_start_sends_nothing(self):
        http = FakeHttpClient()
        token = CancellationToken()
        token.cancel()

        with self.assertRaises(CancelledError) as ctx:
            make_pipeline(http).execute(VALIDATE, cancel_token=token)

        self.assertEqual(http.call_count, 0)
        self.assertEqual(ctx.exception.attempts, 0)

    def test_cancel_during_retry_wait_schedules_no_retry(self):
        http = FakeHttpClient(make_response(503, {}))
        token = CancellationToken()

        def cancelling_waiter(delay, t):
            t.cancel()
            return t.is_cancelled

        pipeline = RequestPipeline(
            auth=HmacAuthProvider(Credentials("client-1234", "s3cr3t")),
            base_url="https://api.test",
            http_client=http,
            waiter=cancelling_waiter,
        )

        with self.assertRaises(CancelledError) as ctx:
            pipeline.execute(VALIDATE, cancel_token=token)

        self.assertEqual(http.call_count, 1)
        self.assertEqual(ctx.exception.attempts, 1)
        self.assertIsInstance(ctx.exception.__cause__, TransientError)

    def test_result_discarded_when_cancelled_in_flight(self):
        token = CancellationToken()

        class CancellingHttpClient(FakeHttpClient):
            def post(self, url, body=None, headers=None, timeout=30.0):
                token.cancel()
                return super().post(url, body=body, headers=headers, timeout=timeout)

        http = CancellingHttpClient(make_response(200, {"valid": True}))

        with self.assertRaises(CancelledError):
            make_pipeline(http).execute(VALIDATE, cancel_token=token)

        self.assertEqual(http.call_count, 1)

    def test_default_waiter_is_interrupted_by_cancel(self):
        """Should stop a real retry wait as soon as the token is cancelled."""
        http = FakeHttpClient(make_response(503, {}))
        token = CancellationToken()
        pipeline = RequestPipeline(
            auth=HmacAuthProvider(Credentials("client-1234", "s3cr3t")),
            base_url="https://api.test",
            http_client=http,
        )
        threading.Timer(0.1, token.cancel).start()

        started = time.monotonic()
        with self.assertRaises(CancelledError):
            pipeline.execute(VALIDATE, cancel_token=token)

        self.assertLess(time.monotonic() - started, 0.7)
        self.assertEqual(http.call_count, 1)


class TestPreemptiveBackoff(unittest.TestCase):

    def test_waits_for_window_reset_when_exhausted(self):
        reset = int(time.time()) + 30
        http = FakeHttpClient(
            make_response(200, {}, headers={"x-ratelimit-remaining": "0", "x-ratelimit-reset": str(reset)}),
        )
        clock = FakeClock()
        pipeline = make_pipeline(http, clock=clock, preemptive_backoff=True)

        pipeline.execute(VALIDATE)
        self.assertEqual(clock.waits, [])

        pipeline.execute(VALIDATE)
        self.assertEqual(len(clock.waits), 1)
        self.assertTrue(25 < clock.waits[0] <= 30)

    def test_disabled_by_default(self):
        reset = int(time.time()) + 30
        http = FakeHttpClient(
            make_response(200, {}, headers={"x-ratelimit-remaining": "0", "x-ratelimit-reset": str(reset)}),
        )
        clock = FakeClock()
        pipeline = make_pipeline(http, clock=clock)

        pipeline.execute(VALIDATE)
        pipeline.execute(VALIDATE)

        self.assertEqual(clock.waits, [])


class TestDescribe(unittest.TestCase):

    def test_report_contents(self):
        http = FakeHttpClient(make_response(200, {}, headers={"x-ratelimit-limit": "60"}))
        pipeline = make_pipeline(http)
        pipeline.execute(VALIDATE)

        report = pipeline.describe()

        self.assertEqual(report["base_url"], "https://api.test")
        self.assertEqual(report["path_prefix"], "api")
        self.assertEqual(report["client_id"], "clie****")
        self.assertEqual(report["signature_algorithm"], "HMAC-SHA256")
        self.assertEqual(report["retry"]["max_retries"], 3)
        self.assertEqual(report["rate_limit"], {"limit": 60, "remaining": None, "reset": None})
        self.assertNotIn("s3cr3t", repr(report))
