"""
Agent Runtime - Resilience Tests
"""

import os
import sqlite3
import sys
import unittest
from unittest import mock

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from engine.resilience import CircuitBreaker, CircuitOpenError, CircuitState, retry_transient


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestCircuitBreaker(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.breaker = CircuitBreaker("EXECUTE_TEST", threshold=3, reset_seconds=10,
                                      clock=self.clock)

    def test_starts_closed(self):
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)
        self.assertTrue(self.breaker.allow())

    def test_opens_at_threshold(self):
        for _ in range(2):
            self.breaker.record_failure()
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)
        self.breaker.record_failure()
        self.assertEqual(self.breaker.state, CircuitState.OPEN)
        self.assertFalse(self.breaker.allow())
        with self.assertRaises(CircuitOpenError):
            self.breaker.check()

    def test_success_resets_counter(self):
        self.breaker.record_failure()
        self.breaker.record_failure()
        self.breaker.record_success()
        self.breaker.record_failure()
        self.assertEqual(self.breaker.failures, 1)
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)

    def test_half_open_failure_reopens(self):
        for _ in range(3):
            self.breaker.record_failure()
        self.clock.now = 11
        self.assertEqual(self.breaker.state, CircuitState.HALF_OPEN)
        self.breaker.record_failure()
        self.assertEqual(self.breaker.state, CircuitState.OPEN)

    def test_reset(self):
        for _ in range(3):
            self.breaker.record_failure()
        self.breaker.reset()
        self.assertEqual(self.breaker.to_dict(), {
            "name": "EXECUTE_TEST", "state": "CLOSED", "failures": 0, "threshold": 3,
        })


class TestRetryTransient(unittest.TestCase):
    @mock.patch("engine.resilience.time.sleep")
    def test_retries_then_succeeds(self, sleep):
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise sqlite3.OperationalError("database is locked")
            return 42

        self.assertEqual(retry_transient(flaky, retry_on=(sqlite3.OperationalError,)), 42)
        self.assertEqual(len(attempts), 3)
        self.assertEqual(sleep.call_count, 2)

    @mock.patch("engine.resilience.time.sleep")
    def test_gives_up(self, sleep):
        def locked():
            raise sqlite3.OperationalError("database is locked")

        with self.assertRaises(sqlite3.OperationalError):
            retry_transient(locked, retry_on=(sqlite3.OperationalError,), max_attempts=2)
        self.assertEqual(sleep.call_count, 1)

    def test_other_errors_propagate_immediately(self):
        calls = []

        def bad():
            calls.append(1)
            raise KeyError("x")

        with self.assertRaises(KeyError):
            retry_transient(bad, retry_on=(sqlite3.OperationalError,))
        self.assertEqual(len(calls), 1)


if __name__ == "__main__":
    unittest.main()
