"""Tests for provider error classification and the transient-retry loop."""

import sys
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(BACKEND_DIR))

import unittest

import requests

from modules.errors import (
    ErrorClass,
    MalformedResponseError,
    ProviderError,
    ProviderTimeoutError,
    RetryPolicy,
    classify,
    is_transient,
    retry_transient,
)


class TestClassifyMessages(unittest.TestCase):

    def test_quota_markers_are_transient(self):
        for message in (
            "HTTP 429 Too Many Requests",
            "Quota exceeded for project",
            "QUOTA",
            "Resource has been exhausted (e.g. check quota).",
            "rate limit reached",
            "the call timed out",
        ):
            with self.subTest(message=message):
                self.assertTrue(classify(message).transient)

    def test_other_messages_are_permanent(self):
        for message in ("503 unavailable", "invalid argument", "", "bad schema"):
            with self.subTest(message=message):
                self.assertFalse(classify(message).transient)

    def test_idempotent_and_total(self):
        for message in ("429", "nope", "Quota", "☃ snowman", " " * 10):
            first = classify(message)
            self.assertIsInstance(first, ErrorClass)
            self.assertEqual(first, classify(message))
            self.assertNotEqual(first.transient, first.permanent)


class TestClassifyStructured(unittest.TestCase):

    def test_status_codes(self):
        self.assertTrue(classify(ProviderError("x", status_code=429)).transient)
        self.assertTrue(classify(ProviderError("x", status_code=504)).transient)
        self.assertFalse(classify(ProviderError("x", status_code=503)).transient)
        self.assertFalse(classify(ProviderError("x", status_code=401)).transient)

    def test_provider_status_beats_http_code(self):
        error = ProviderError("x", status_code=400, provider_status="RESOURCE_EXHAUSTED")
        self.assertTrue(classify(error).transient)

    def test_structured_signal_wins_over_message(self):
        # A 403 mentioning quota is an access problem, not throttling.
        error = ProviderError("quota project not configured", status_code=403)
        self.assertFalse(classify(error).transient)

    def test_timeouts_are_transient(self):
        self.assertTrue(classify(ProviderTimeoutError("slow")).transient)
        self.assertTrue(classify(TimeoutError()).transient)
        self.assertTrue(classify(requests.Timeout()).transient)

    def test_malformed_response_is_permanent(self):
        self.assertFalse(classify(MalformedResponseError("quota words inside")).transient)

    def test_exception_chain_is_inspected(self):
        try:
            try:
                raise ProviderTimeoutError("inner")
            except ProviderTimeoutError as inner:
                raise RuntimeError("wrapped") from inner
        except RuntimeError as outer:
            self.assertTrue(classify(outer).transient)

    def test_is_transient_matches_classify(self):
        for error in (ProviderError("x", status_code=429), ProviderError("x", status_code=500), "quota", "nope"):
            with self.subTest(error=error):
                self.assertEqual(is_transient(error), classify(error).transient)

    def test_unstructured_exception_falls_back_to_message(self):
        self.assertTrue(classify(RuntimeError("429 from upstream")).transient)
        self.assertFalse(classify(ValueError("boom")).transient)


class TestRetryPolicy(unittest.TestCase):

    def test_delay_doubles(self):
        policy = RetryPolicy(base_delay_seconds=2.0, max_attempts=5)
        self.assertEqual([policy.delay_for(n) for n in (1, 2, 3)], [2.0, 4.0, 8.0])

    def test_jitter_is_bounded(self):
        policy = RetryPolicy(base_delay_seconds=1.0, jitter_seconds=0.5)
        for _ in range(20):
            self.assertTrue(1.0 <= policy.delay_for(1) <= 1.5)


class TestRetryTransient(unittest.IsolatedAsyncioTestCase):

    async def test_retries_transient_then_succeeds(self):
        outcomes = [ProviderError("x", status_code=429), ProviderError("y", status_code=429), "ok"]
        waits = []

        async def call():
            outcome = outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome

        result = await retry_transient(
            call,
            policy=RetryPolicy(base_delay_seconds=0.0, max_attempts=5),
            on_wait=lambda exc, attempt, delay: waits.append(attempt),
        )
        self.assertEqual(result, "ok")
        self.assertEqual(waits, [1, 2])

    async def test_permanent_error_is_not_retried(self):
        calls = []

        async def call():
            calls.append(1)
            raise ProviderError("bad request", status_code=400)

        with self.assertRaises(ProviderError):
            await retry_transient(call, policy=RetryPolicy(base_delay_seconds=0.0, max_attempts=5))
        self.assertEqual(len(calls), 1)

    async def test_attempts_are_bounded(self):
        calls = []

        async def call():
            calls.append(1)
            raise ProviderError("slow down", status_code=429)

        with self.assertRaises(ProviderError):
            await retry_transient(call, policy=RetryPolicy(base_delay_seconds=0.0, max_attempts=3))
        self.assertEqual(len(calls), 3)

    async def test_non_provider_errors_propagate(self):
        async def call():
            raise KeyError("defect")

        with self.assertRaises(KeyError):
            await retry_transient(call, policy=RetryPolicy(base_delay_seconds=0.0))


if __name__ == "__main__":
    unittest.main()
