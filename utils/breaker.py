"""
Per-provider circuit breaker.

Implements three states:
- CLOSED: calls pass; consecutive failures are counted
- OPEN: after ``failure_threshold`` consecutive failures, calls are refused
  until ``cooldown_seconds`` have passed since the last failure
- HALF_OPEN: after the cooldown exactly one trial call is let through;
  success closes the circuit, failure reopens it and restarts the cooldown

The breaker is advisory: it only answers ``allow_request()`` and is told about
outcomes through ``record_success()`` / ``record_failure()``.

Usage:
    if breaker.allow_request():
        try:
            verdict = adapter.query(fp, timeout)
            breaker.record_success()
        except ProviderError:
            breaker.record_failure()
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from schemas import CircuitSnapshot, CircuitState

logger = logging.getLogger(__name__)


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 300.0,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.enabled = enabled
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def cooldown_remaining(self) -> float:
        with self._lock:
            return self._cooldown_remaining()

    def allow_request(self) -> bool:
        """True if a call may go out now. In HALF_OPEN this claims the single trial."""
        if not self.enabled:
            return True
        with self._lock:
            self._maybe_half_open()
            if self._state is CircuitState.CLOSED:
                return True
            if self._state is CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                logger.info(f"Circuit breaker HALF-OPEN for {self.name}, sending trial call")
                return True
            return False

    def release(self) -> None:
        """Give back a HALF_OPEN trial that was claimed but never used."""
        with self._lock:
            self._trial_in_flight = False

    def record_success(self) -> None:
        """Reset the failure count while CLOSED; close the circuit on a HALF_OPEN trial.

        A late success from a call admitted before the circuit opened leaves an
        OPEN circuit alone; only the trial may close it.
        """
        with self._lock:
            if self._state is CircuitState.CLOSED:
                self._failures = 0
                return
            if self._state is CircuitState.HALF_OPEN and self._trial_in_flight:
                logger.info(f"Circuit breaker CLOSED for {self.name}")
                self._state = CircuitState.CLOSED
                self._failures = 0
                self._trial_in_flight = False

    def record_failure(self) -> bool:
        """Record a failure. Returns True if this call opened the circuit."""
        with self._lock:
            self._failures += 1
            self._last_failure_at = self._clock()
            self._trial_in_flight = False
            if self._state is CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.warning(f"Circuit breaker re-OPENED for {self.name}: trial call failed")
                return True
            if self._state is CircuitState.CLOSED and self._failures >= self.failure_threshold:
                self._state = CircuitState.OPEN
                logger.warning(
                    f"Circuit breaker OPEN for {self.name} after {self._failures} failures"
                )
                return True
            return False

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._last_failure_at = None
            self._trial_in_flight = False

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            self._maybe_half_open()
            last = self._last_failure_at
            return CircuitSnapshot(
                state=self._state,
                consecutive_failures=self._failures,
                failure_threshold=self.failure_threshold,
                cooldown_seconds=self.cooldown_seconds,
                last_failure_at=datetime.fromtimestamp(last, tz=timezone.utc) if last else None,
                cooldown_remaining=self._cooldown_remaining(),
            )

    # must be called with _lock held
    def _maybe_half_open(self) -> None:
        if self._state is CircuitState.OPEN and self._cooldown_remaining() <= 0:
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False

    def _cooldown_remaining(self) -> float:
        if self._state is not CircuitState.OPEN or self._last_failure_at is None:
            return 0.0
        return max(0.0, self.cooldown_seconds - (self._clock() - self._last_failure_at))
