"""Sliding-window circuit breaker guarding the analytics endpoint.

States:
    CLOSED: Normal operation; outcomes go into a window of the last N calls
    OPEN: Calls are rejected without touching the network
    HALF_OPEN: One trial call decides between CLOSED and OPEN

The breaker opens once the window holds at least ``minimum_calls``
outcomes and the failure rate reaches ``failure_rate_threshold`` percent.
After ``wait_duration`` seconds in OPEN the next call is admitted as the
trial.

Example:
    >>> breaker = CircuitBreaker(name="report-api")
    >>> if breaker.allow_request():
    ...     try:
    ...         result = send()
    ...         breaker.record_success()
    ...     except Exception:
    ...         breaker.record_failure()
    ...         raise
    ... else:
    ...     raise CircuitOpenError(breaker.name)
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Optional
from core.exceptions import CircuitOpenError
import logging

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitStats:
    """Counters for monitoring and the end-of-run summary."""

    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    times_opened: int = 0


class CircuitBreaker:
    """Thread-safe circuit breaker shared by every table run.

    Attributes:
        name: Identifier used in logs
        failure_rate_threshold: Failure percentage that opens the circuit
        sliding_window_size: Number of most recent calls considered
        minimum_calls: Calls required before the rate is evaluated
        wait_duration: Seconds spent OPEN before the trial call
    """

    def __init__(
        self,
        name: str = "default",
        failure_rate_threshold: float = 50.0,
        sliding_window_size: int = 10,
        minimum_calls: int = 5,
        wait_duration: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_rate_threshold = failure_rate_threshold
        self.sliding_window_size = sliding_window_size
        self.minimum_calls = minimum_calls
        self.wait_duration = wait_duration
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._window: Deque[bool] = deque(maxlen=sliding_window_size)
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._lock = threading.RLock()
        self._stats = CircuitStats()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._check_cool_down()
            return self._state

    @property
    def stats(self) -> CircuitStats:
        return self._stats

    @property
    def failure_rate(self) -> float:
        """Failure percentage over the current window."""
        with self._lock:
            if not self._window:
                return 0.0
            return sum(self._window) * 100.0 / len(self._window)

    def allow_request(self) -> bool:
        """Admit or reject one call.

        Returns:
            True if the call may proceed. In HALF_OPEN only the first
            caller gets True until its outcome is recorded.
        """
        with self._lock:
            self._check_cool_down()

            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return True

            self._stats.rejected_calls += 1
            return False

    def acquire(self) -> None:
        """Admit one call or raise CircuitOpenError."""
        if not self.allow_request():
            raise CircuitOpenError(self.name)

    def record_success(self) -> None:
        with self._lock:
            self._stats.successful_calls += 1

            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._window.append(False)

    def record_failure(self) -> None:
        with self._lock:
            self._stats.failed_calls += 1

            if self._state == CircuitState.HALF_OPEN:
                # Failed trial restarts the cool-down
                self._transition_to(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED:
                self._window.append(True)
                if len(self._window) >= self.minimum_calls and self.failure_rate >= self.failure_rate_threshold:
                    self._transition_to(CircuitState.OPEN)

    def release_trial(self) -> None:
        """Give back an admitted trial whose call ended without an outcome."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN and self._trial_in_flight:
                self._trial_in_flight = False
                logger.info(f"Circuit breaker '{self.name}' trial abandoned, next call is the trial")

    def reset(self) -> None:
        """Force the circuit back to CLOSED with an empty window."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)

    def _check_cool_down(self) -> None:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.wait_duration:
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self._trial_in_flight = False

        if new_state == CircuitState.CLOSED:
            self._window.clear()
            self._opened_at = None
        elif new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
            self._stats.times_opened += 1

        if old_state != new_state:
            log = logger.warning if new_state == CircuitState.OPEN else logger.info
            log(f"Circuit breaker '{self.name}' {old_state.value} -> {new_state.value}")
