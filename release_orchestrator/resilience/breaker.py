"""Circuit breaker for calls to external dependencies.

States: CLOSED (normal) -> OPEN (failing fast) -> HALF_OPEN (one trial
call) -> CLOSED. Each call may also carry a timeout; an expired call counts
as a failure.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

EVENTS = ("state_change", "success", "failure", "timeout", "rejected")


class CircuitState(str, Enum):
    """State of a circuit breaker."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised when a call is refused because the circuit is open."""

    def __init__(self, name: str, code: str = "circuit_open") -> None:
        super().__init__(f"Circuit breaker '{name}' is open")
        self.name = name
        self.code = code


class CallTimeoutError(Exception):
    """Raised when a call exceeds the breaker's request timeout."""

    transient = True

    def __init__(self, name: str, timeout: float, code: str = "timeout") -> None:
        super().__init__(f"Call through '{name}' timed out after {timeout}s")
        self.name = name
        self.timeout = timeout
        self.code = code


@dataclass
class CircuitBreakerStats:
    """Snapshot of breaker counters."""

    state: CircuitState
    consecutive_failures: int
    consecutive_successes: int
    total_requests: int
    total_failures: int
    total_successes: int
    total_rejections: int
    last_failure_at: datetime | None
    last_success_at: datetime | None


def _always_failure(error: BaseException) -> bool:
    return True


class CircuitBreaker:
    """Fail-fast guard around an unhealthy dependency.

    Args:
        name: Name used in logs and errors.
        failure_threshold: Consecutive failures that open the circuit.
        reset_timeout: Seconds an open circuit waits before a trial call.
        success_threshold: Consecutive half-open successes that close it.
        request_timeout: Per-call timeout in seconds (None = no timeout).
        is_failure: Predicate deciding whether an error trips the breaker.
            Errors it rejects are re-raised without counting.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        success_threshold: int = 2,
        request_timeout: float | None = None,
        is_failure: Callable[[BaseException], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.success_threshold = success_threshold
        self.request_timeout = request_timeout
        self._is_failure = is_failure or _always_failure
        self._clock = clock

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

        self._total_requests = 0
        self._total_failures = 0
        self._total_successes = 0
        self._total_rejections = 0
        self._last_failure_at: datetime | None = None
        self._last_success_at: datetime | None = None

        self._listeners: dict[str, list[Callable[..., Any]]] = {e: [] for e in EVENTS}
        self._executor: ThreadPoolExecutor | None = None

    # Observers

    def on(self, event: str, listener: Callable[..., Any]) -> None:
        """Attach a listener to a breaker event."""
        if event not in self._listeners:
            raise ValueError(f"Unknown circuit breaker event: {event}")
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Callable[..., Any]) -> None:
        """Detach a previously attached listener."""
        if event in self._listeners and listener in self._listeners[event]:
            self._listeners[event].remove(listener)

    def _emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners[event]):
            try:
                listener(*args)
            except Exception:
                logger.exception(
                    "Listener for %s on breaker '%s' raised", event, self.name
                )

    # State

    @property
    def state(self) -> CircuitState:
        """Current state, without triggering a transition."""
        return self._state

    def stats(self) -> CircuitBreakerStats:
        """Return a snapshot of breaker counters."""
        with self._lock:
            return CircuitBreakerStats(
                state=self._state,
                consecutive_failures=self._failures,
                consecutive_successes=self._successes,
                total_requests=self._total_requests,
                total_failures=self._total_failures,
                total_successes=self._total_successes,
                total_rejections=self._total_rejections,
                last_failure_at=self._last_failure_at,
                last_success_at=self._last_success_at,
            )

    def reset(self) -> None:
        """Force the circuit closed."""
        with self._lock:
            change = self._transition(CircuitState.CLOSED)
        self._emit_change(change)

    def open(self) -> None:
        """Force the circuit open."""
        with self._lock:
            change = self._transition(CircuitState.OPEN)
        self._emit_change(change)

    def _transition(
        self, new_state: CircuitState
    ) -> tuple[CircuitState, CircuitState] | None:
        """Switch state and reset counters. Caller holds the lock."""
        if self._state == new_state:
            return None
        previous = self._state
        self._state = new_state
        self._successes = 0
        if new_state == CircuitState.CLOSED:
            self._failures = 0
        elif new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
        logger.info(
            "Circuit breaker '%s': %s -> %s", self.name, previous.value, new_state.value
        )
        return new_state, previous

    def _emit_change(self, change: tuple[CircuitState, CircuitState] | None) -> None:
        if change is not None:
            self._emit("state_change", *change)

    # Calls

    def _admit(self) -> bool:
        """Decide whether a call may proceed; returns True for a trial call."""
        with self._lock:
            self._total_requests += 1
            change = None
            if self._state == CircuitState.OPEN:
                if self._clock() - self._opened_at < self.reset_timeout:
                    self._total_rejections += 1
                    admitted = False
                else:
                    change = self._transition(CircuitState.HALF_OPEN)
                    self._trial_in_flight = True
                    admitted = True
            elif self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    self._total_rejections += 1
                    admitted = False
                else:
                    self._trial_in_flight = True
                    admitted = True
            else:
                admitted = True
            trial = admitted and self._state == CircuitState.HALF_OPEN
        self._emit_change(change)
        if not admitted:
            self._emit("rejected")
            raise CircuitOpenError(self.name)
        return trial

    def _on_success(self, duration: float, trial: bool) -> None:
        with self._lock:
            self._total_successes += 1
            self._last_success_at = datetime.now(timezone.utc)
            change = None
            if trial:
                self._trial_in_flight = False
            if self._state == CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.success_threshold:
                    change = self._transition(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._failures = 0
        self._emit("success", duration)
        self._emit_change(change)

    def _on_failure(self, error: BaseException, duration: float, trial: bool) -> None:
        with self._lock:
            self._total_failures += 1
            self._last_failure_at = datetime.now(timezone.utc)
            change = None
            if trial:
                self._trial_in_flight = False
            if self._state == CircuitState.HALF_OPEN:
                change = self._transition(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED:
                self._failures += 1
                if self._failures >= self.failure_threshold:
                    change = self._transition(CircuitState.OPEN)
        self._emit("failure", error, duration)
        self._emit_change(change)

    def _release_trial(self, trial: bool) -> None:
        if trial:
            with self._lock:
                self._trial_in_flight = False

    def _invoke(self, fn: Callable[[], T]) -> T:
        if self.request_timeout is None:
            return fn()
        if self._executor is None:
            with self._lock:
                if self._executor is None:
                    self._executor = ThreadPoolExecutor(
                        max_workers=8, thread_name_prefix=f"breaker-{self.name}"
                    )
        future = self._executor.submit(fn)
        try:
            return future.result(timeout=self.request_timeout)
        except FutureTimeoutError:
            future.cancel()
            raise CallTimeoutError(self.name, self.request_timeout) from None

    def call(self, fn: Callable[[], T]) -> T:
        """Execute ``fn`` through the breaker.

        Raises:
            CircuitOpenError: If the circuit refuses the call.
            CallTimeoutError: If the call exceeds ``request_timeout``.
        """
        trial = self._admit()
        started = self._clock()
        try:
            result = self._invoke(fn)
        except CallTimeoutError as e:
            duration = self._clock() - started
            self._emit("timeout", duration)
            self._on_failure(e, duration, trial)
            raise
        except Exception as e:
            duration = self._clock() - started
            if self._is_failure(e):
                self._on_failure(e, duration, trial)
            else:
                self._release_trial(trial)
            raise
        self._on_success(self._clock() - started, trial)
        return result

    def close(self) -> None:
        """Release the timeout executor."""
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None


__all__ = [
    "CallTimeoutError",
    "CircuitBreaker",
    "CircuitBreakerStats",
    "CircuitOpenError",
    "CircuitState",
]
