"""
Agent Runtime - Circuit Breaker & Transient Retry

Two small resilience primitives:

  - CircuitBreaker: per-tool breaker. N consecutive failures open the
    circuit; after reset_seconds one probe call is let through (half-open);
    the probe's outcome closes or re-opens it.
  - retry_transient: bounded exponential backoff for infrastructure writes
    (store commits). Tool calls are never retried here; retrying a tool is
    a planner decision and always produces a new ActionRecord.

Usage:
    breaker = CircuitBreaker(threshold=5, reset_seconds=60)
    if breaker.allow():
        ...
        breaker.record_success()

    row_id = retry_transient(lambda: db.execute(sql, params),
                             retry_on=(sqlite3.OperationalError,))
"""

from __future__ import annotations

import logging
import random
import threading
import time
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger("agent_runtime.resilience")


# ═══════════════════════════════════════════════════════════════════
# Circuit Breaker
# ═══════════════════════════════════════════════════════════════════

class CircuitOpenError(Exception):
    """Raised when a call is attempted while the circuit is open."""
    pass


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    States:
      CLOSED    normal operation, failures increment counter
      OPEN      calls rejected until reset_seconds elapse
      HALF_OPEN one probe allowed; success → CLOSED, failure → OPEN
    """

    def __init__(
        self,
        name: str = "",
        threshold: int = 5,
        reset_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.threshold = threshold
        self.reset_seconds = reset_seconds
        self._clock = clock
        self._failures = 0
        self._opened_at = 0.0
        self._state = CircuitState.CLOSED
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state()

    @property
    def failures(self) -> int:
        return self._failures

    def _current_state(self) -> CircuitState:
        if self._state == CircuitState.OPEN:
            if self._clock() - self._opened_at >= self.reset_seconds:
                self._state = CircuitState.HALF_OPEN
                logger.info("Circuit %s half-open, allowing probe", self.name)
        return self._state

    def allow(self) -> bool:
        with self._lock:
            return self._current_state() != CircuitState.OPEN

    def check(self):
        """Raise CircuitOpenError if the circuit is open."""
        if not self.allow():
            remaining = self.reset_seconds - (self._clock() - self._opened_at)
            raise CircuitOpenError(
                f"Circuit breaker open for {self.name}: {self._failures} "
                f"consecutive failures. Resets in {max(remaining, 0):.0f}s"
            )

    def record_success(self):
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info("Circuit %s closed after successful probe", self.name)
            self._failures = 0
            self._state = CircuitState.CLOSED

    def record_failure(self):
        with self._lock:
            self._failures += 1
            state = self._current_state()
            if state == CircuitState.HALF_OPEN or (
                state == CircuitState.CLOSED and self._failures >= self.threshold
            ):
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
                logger.warning(
                    "Circuit %s opened after %d consecutive failures",
                    self.name, self._failures,
                )

    def reset(self):
        with self._lock:
            self._failures = 0
            self._opened_at = 0.0
            self._state = CircuitState.CLOSED

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failures": self._failures,
            "threshold": self.threshold,
        }


# ═══════════════════════════════════════════════════════════════════
# Transient Retry
# ═══════════════════════════════════════════════════════════════════

def retry_transient(
    fn: Callable[[], Any],
    retry_on: tuple[type[BaseException], ...],
    max_attempts: int = 4,
    backoff_base: float = 0.05,
    backoff_max: float = 2.0,
    jitter: float = 0.2,
    label: str = "",
) -> Any:
    """
    Call fn, retrying on the given exception types with exponential backoff.

    The last exception is re-raised once attempts are exhausted.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except retry_on as e:
            attempt += 1
            if attempt >= max_attempts:
                logger.error(
                    "Giving up on %s after %d attempts: %s",
                    label or "operation", attempt, e,
                )
                raise
            delay = min(backoff_base * (2 ** (attempt - 1)), backoff_max)
            delay *= 1 + random.uniform(-jitter, jitter)
            logger.warning(
                "Transient failure in %s (attempt %d/%d), retrying in %.2fs: %s",
                label or "operation", attempt, max_attempts, delay, e,
            )
            time.sleep(delay)
