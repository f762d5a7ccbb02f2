"""Resilience primitives for outbound calls.

This module provides:
- CircuitBreaker: fail-fast guard with per-call timeout and observers
- retry_call: exponential backoff with jitter and abort support
- ResilientCaller: retry wrapped around a breaker, the single point of
  backpressure for provider and storage calls
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import TypeVar

from release_orchestrator.resilience.breaker import (
    CallTimeoutError,
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
)
from release_orchestrator.resilience.retry import (
    RetryAbortedError,
    RetryPolicy,
    compute_backoff,
    is_transient_error,
    is_unsent_request_error,
    retry_call,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ResilientCaller:
    """Retry policy applied around a circuit breaker.

    Each attempt passes through the breaker; an open circuit is not
    retried, so callers fail fast while the dependency is unhealthy.
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        policy: RetryPolicy | None = None,
        is_retryable: Callable[[BaseException], bool] = is_transient_error,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.breaker = breaker
        self.policy = policy or RetryPolicy()
        self.is_retryable = is_retryable
        self._sleep = sleep

    def call(
        self,
        fn: Callable[[], T],
        abort: threading.Event | None = None,
        is_retryable: Callable[[BaseException], bool] | None = None,
    ) -> T:
        """Execute ``fn`` with retry and circuit breaking.

        ``is_retryable`` overrides the caller's retry predicate for this call.
        """

        def attempt() -> T:
            return self.breaker.call(fn)

        def on_retry(error: BaseException, attempt_no: int, delay: float) -> None:
            logger.warning(
                "%s call failed (attempt %d): %s; retrying in %.1fs",
                self.breaker.name,
                attempt_no,
                error,
                delay,
            )

        return retry_call(
            attempt,
            self.policy,
            is_retryable=is_retryable or self.is_retryable,
            abort=abort,
            on_retry=on_retry,
            sleep=self._sleep,
        )


__all__ = [
    "CallTimeoutError",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "ResilientCaller",
    "RetryAbortedError",
    "RetryPolicy",
    "compute_backoff",
    "is_transient_error",
    "is_unsent_request_error",
    "retry_call",
]
