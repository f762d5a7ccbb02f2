"""Tests for the circuit breaker, retry and ResilientCaller."""

import threading
import time
from unittest.mock import MagicMock

import httpx
import pytest

from release_orchestrator.resilience import (
    CallTimeoutError,
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    ResilientCaller,
    RetryAbortedError,
    RetryPolicy,
    compute_backoff,
    is_transient_error,
    is_unsent_request_error,
    retry_call,
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def boom() -> None:
    raise ConnectionError("down")


@pytest.fixture
def clock():
    """Fake clock starting at zero."""
    return FakeClock()


@pytest.fixture
def breaker(clock):
    """Breaker opening after 3 failures, half-open after 10s."""
    return CircuitBreaker(
        "test", failure_threshold=3, reset_timeout=10.0, success_threshold=2, clock=clock
    )


class TestCircuitBreaker:
    """Tests for CircuitBreaker state transitions."""

    def test_starts_closed_and_passes_calls(self, breaker):
        """A closed breaker should return the call's value."""
        assert breaker.state == CircuitState.CLOSED
        assert breaker.call(lambda: 42) == 42

    def test_opens_after_threshold(self, breaker):
        """N consecutive failures should open the circuit."""
        for _ in range(3):
            with pytest.raises(ConnectionError):
                breaker.call(boom)
        assert breaker.state == CircuitState.OPEN

    def test_open_circuit_rejects_without_calling(self, breaker):
        """An open circuit should fail fast without invoking the function."""
        breaker.open()
        fn = MagicMock()

        with pytest.raises(CircuitOpenError):
            breaker.call(fn)

        fn.assert_not_called()
        assert breaker.stats().total_rejections == 1

    def test_success_resets_failure_count(self, breaker):
        """Non-consecutive failures should not open the circuit."""
        for _ in range(2):
            with pytest.raises(ConnectionError):
                breaker.call(boom)
        breaker.call(lambda: None)
        for _ in range(2):
            with pytest.raises(ConnectionError):
                breaker.call(boom)
        assert breaker.state == CircuitState.CLOSED

    def test_half_open_after_reset_timeout_then_closes(self, breaker, clock):
        """After the reset timeout, successes should close the circuit."""
        breaker.open()
        clock.advance(10.0)

        breaker.call(lambda: None)
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.call(lambda: None)
        assert breaker.state == CircuitState.CLOSED

    def test_half_open_failure_reopens(self, breaker, clock):
        """A failed trial call should reopen the circuit."""
        breaker.open()
        clock.advance(10.0)

        with pytest.raises(ConnectionError):
            breaker.call(boom)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            breaker.call(lambda: None)

    def test_ignored_errors_do_not_count(self, clock):
        """Errors rejected by is_failure should not trip the breaker."""
        breaker = CircuitBreaker(
            "strict",
            failure_threshold=1,
            is_failure=lambda e: not isinstance(e, KeyError),
            clock=clock,
        )
        with pytest.raises(KeyError):
            breaker.call(lambda: {}["missing"])
        assert breaker.state == CircuitState.CLOSED

    def test_request_timeout_counts_as_failure(self):
        """A call exceeding request_timeout should raise and count."""
        breaker = CircuitBreaker("slow", failure_threshold=1, request_timeout=0.05)
        release = threading.Event()
        try:
            with pytest.raises(CallTimeoutError):
                breaker.call(lambda: release.wait(2.0))
            assert breaker.state == CircuitState.OPEN
        finally:
            release.set()
            breaker.close()

    def test_state_change_listener(self, breaker):
        """Listeners should see (new, previous) on each transition."""
        changes = []
        breaker.on("state_change", lambda new, old: changes.append((new, old)))

        breaker.open()
        breaker.reset()

        assert changes == [
            (CircuitState.OPEN, CircuitState.CLOSED),
            (CircuitState.CLOSED, CircuitState.OPEN),
        ]

    def test_failing_listener_does_not_break_calls(self, breaker):
        """A raising listener should be logged, not propagated."""
        breaker.on("success", MagicMock(side_effect=RuntimeError("listener")))
        assert breaker.call(lambda: "ok") == "ok"

    def test_unknown_event_rejected(self, breaker):
        """Subscribing to an unknown event should raise ValueError."""
        with pytest.raises(ValueError):
            breaker.on("exploded", lambda: None)

    def test_stats_counts(self, breaker):
        """stats() should count requests, successes and failures."""
        breaker.call(lambda: None)
        with pytest.raises(ConnectionError):
            breaker.call(boom)

        stats = breaker.stats()
        assert stats.total_requests == 2
        assert stats.total_successes == 1
        assert stats.total_failures == 1
        assert stats.consecutive_failures == 1
        assert stats.last_failure_at is not None


class TestComputeBackoff:
    """Tests for compute_backoff."""

    def test_exponential_growth_without_jitter(self):
        """Delays should double per attempt."""
        policy = RetryPolicy(initial_delay=1.0, multiplier=2.0, jitter=0.0)
        assert [compute_backoff(n, policy) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        """Delays should not exceed max_delay."""
        policy = RetryPolicy(initial_delay=1.0, max_delay=5.0, jitter=0.0)
        assert compute_backoff(10, policy) == 5.0

    def test_jitter_bounds(self):
        """Jitter should spread the delay symmetrically."""
        policy = RetryPolicy(initial_delay=10.0, jitter=0.1)
        assert compute_backoff(1, policy, rng=lambda: 0.0) == pytest.approx(9.0)
        assert compute_backoff(1, policy, rng=lambda: 1.0) == pytest.approx(11.0)

    def test_policy_validation(self):
        """Invalid policies should be rejected."""
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(jitter=2.0)


class TestIsTransientError:
    """Tests for the default retry predicate."""

    def test_network_errors_are_transient(self):
        """Transport and connection errors should be retried."""
        assert is_transient_error(httpx.ConnectError("refused"))
        assert is_transient_error(ConnectionError())
        assert is_transient_error(TimeoutError())

    def test_status_codes(self):
        """5xx and 429 are transient; other 4xx are not."""

        class StatusError(Exception):
            def __init__(self, status_code):
                super().__init__(status_code)
                self.status_code = status_code

        assert is_transient_error(StatusError(503))
        assert is_transient_error(StatusError(429))
        assert not is_transient_error(StatusError(400))
        assert not is_transient_error(StatusError(404))

    def test_business_errors_are_not_transient(self):
        """Plain exceptions should not be retried."""
        assert not is_transient_error(ValueError("bad input"))


class TestIsUnsentRequestError:
    """Tests for the retry predicate of non-idempotent calls."""

    def test_connection_failures_are_retried(self):
        """Requests that never reached the server can be resent."""
        assert is_unsent_request_error(httpx.ConnectError("refused"))
        assert is_unsent_request_error(httpx.ConnectTimeout("slow connect"))
        assert is_unsent_request_error(ConnectionRefusedError())

    def test_possibly_applied_requests_are_not_retried(self):
        """Read timeouts, call timeouts and most 5xx may have been applied."""

        class StatusError(Exception):
            def __init__(self, status_code):
                super().__init__(status_code)
                self.status_code = status_code

        assert not is_unsent_request_error(httpx.ReadTimeout("no response"))
        assert not is_unsent_request_error(CallTimeoutError("provider", 5.0))
        assert not is_unsent_request_error(StatusError(500))
        assert not is_unsent_request_error(StatusError(502))
        assert is_unsent_request_error(StatusError(503))
        assert is_unsent_request_error(StatusError(429))


class TestRetryCall:
    """Tests for retry_call."""

    def test_retries_until_success(self):
        """Transient failures should be retried."""
        fn = MagicMock(side_effect=[ConnectionError(), ConnectionError(), "done"])
        sleeps = []

        result = retry_call(fn, RetryPolicy(max_attempts=3), sleep=sleeps.append)

        assert result == "done"
        assert fn.call_count == 3
        assert len(sleeps) == 2

    def test_gives_up_after_max_attempts(self):
        """The last error should propagate once attempts run out."""
        fn = MagicMock(side_effect=ConnectionError("still down"))

        with pytest.raises(ConnectionError):
            retry_call(fn, RetryPolicy(max_attempts=2), sleep=lambda s: None)

        assert fn.call_count == 2

    def test_non_retryable_raises_immediately(self):
        """Business errors should not be retried."""
        fn = MagicMock(side_effect=ValueError("bad"))

        with pytest.raises(ValueError):
            retry_call(fn, RetryPolicy(max_attempts=5), sleep=lambda s: None)

        assert fn.call_count == 1

    def test_abort_before_first_attempt(self):
        """A set abort event should stop the loop before calling."""
        abort = threading.Event()
        abort.set()
        fn = MagicMock()

        with pytest.raises(RetryAbortedError):
            retry_call(fn, abort=abort)

        fn.assert_not_called()

    def test_abort_during_wait(self):
        """Setting abort during a backoff wait should end the loop early."""
        abort = threading.Event()
        fn = MagicMock(side_effect=ConnectionError())
        timer = threading.Timer(0.05, abort.set)
        timer.start()
        started = time.monotonic()

        with pytest.raises(RetryAbortedError):
            retry_call(
                fn, RetryPolicy(max_attempts=5, initial_delay=5.0, jitter=0.0), abort=abort
            )

        assert time.monotonic() - started < 2.0
        assert fn.call_count == 1

    def test_on_retry_callback(self):
        """on_retry should receive the error, attempt and delay."""
        calls = []
        fn = MagicMock(side_effect=[ConnectionError("x"), "ok"])

        retry_call(
            fn,
            RetryPolicy(initial_delay=1.0, jitter=0.0),
            on_retry=lambda e, n, d: calls.append((type(e), n, d)),
            sleep=lambda s: None,
        )

        assert calls == [(ConnectionError, 1, 1.0)]


class TestResilientCaller:
    """Tests for retry around a breaker."""

    def test_open_circuit_is_not_retried(self, breaker):
        """CircuitOpenError should surface on the first attempt."""
        breaker.open()
        caller = ResilientCaller(breaker, RetryPolicy(max_attempts=5), sleep=lambda s: None)
        fn = MagicMock()

        with pytest.raises(CircuitOpenError):
            caller.call(fn)

        fn.assert_not_called()

    def test_retries_through_breaker(self, breaker):
        """Each attempt should pass through the breaker."""
        caller = ResilientCaller(breaker, RetryPolicy(max_attempts=3), sleep=lambda s: None)
        fn = MagicMock(side_effect=[ConnectionError(), "ok"])

        assert caller.call(fn) == "ok"
        stats = breaker.stats()
        assert stats.total_failures == 1
        assert stats.total_successes == 1

    def test_failures_open_circuit_then_fail_fast(self, breaker):
        """Once retries trip the breaker, later attempts are refused."""
        caller = ResilientCaller(breaker, RetryPolicy(max_attempts=5), sleep=lambda s: None)
        fn = MagicMock(side_effect=ConnectionError())

        with pytest.raises(CircuitOpenError):
            caller.call(fn)

        assert fn.call_count == 3
        assert breaker.state == CircuitState.OPEN

    def test_per_call_predicate_overrides_default(self, breaker):
        """A call-specific predicate replaces the caller's default."""
        caller = ResilientCaller(breaker, RetryPolicy(max_attempts=3), sleep=lambda s: None)
        fn = MagicMock(side_effect=[TimeoutError(), "ok"])

        with pytest.raises(TimeoutError):
            caller.call(fn, is_retryable=lambda e: False)

        assert fn.call_count == 1
