"""Retry with exponential backoff and jitter.

Delays grow as ``initial_delay * multiplier ** (attempt - 1)``, are capped
at ``max_delay`` and spread by a symmetric jitter fraction so that many
callers retrying the same dependency do not synchronise.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryAbortedError(Exception):
    """Raised when a retry loop is cancelled through its abort event."""

    def __init__(self, message: str = "Retry aborted", code: str = "aborted") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters for a retried call."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        """Validate policy values."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")


def compute_backoff(
    attempt: int,
    policy: RetryPolicy,
    rng: Callable[[], float] = random.random,
) -> float:
    """Compute the delay before the retry that follows ``attempt``.

    Args:
        attempt: 1-based number of the attempt that just failed.
        policy: Backoff parameters.
        rng: Source of uniform values in [0, 1).

    Returns:
        Delay in seconds, never negative.
    """
    base = policy.initial_delay * policy.multiplier ** (attempt - 1)
    capped = min(base, policy.max_delay)
    spread = capped * policy.jitter
    return max(0.0, capped + (rng() * 2 - 1) * spread)


def status_code_of(error: BaseException) -> int | None:
    """Return the HTTP status carried by an error, if any."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    status = getattr(error, "status_code", None)
    return status if isinstance(status, int) else None


def is_transient_error(error: BaseException) -> bool:
    """Default retry predicate: network errors, HTTP 5xx and 429."""
    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError)):
        return True
    status = status_code_of(error)
    if status is None:
        return bool(getattr(error, "transient", False))
    return status == 429 or 500 <= status < 600


def is_unsent_request_error(error: BaseException) -> bool:
    """Retry predicate for non-idempotent calls.

    Only failures where the server cannot have acted on the request are
    retried: connection failures, 429 and 503. Read timeouts and
    per-call timeouts are not, since the request may have been applied.
    """
    if isinstance(
        error,
        (
            httpx.ConnectError,
            httpx.ConnectTimeout,
            httpx.PoolTimeout,
            ConnectionRefusedError,
        ),
    ):
        return True
    return status_code_of(error) in (429, 503)


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy | None = None,
    is_retryable: Callable[[BaseException], bool] = is_transient_error,
    abort: threading.Event | None = None,
    on_retry: Callable[[BaseException, int, float], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    """Call ``fn`` until it succeeds, attempts run out, or it is aborted.

    Args:
        fn: Zero-argument callable to execute.
        policy: Backoff parameters (defaults to ``RetryPolicy()``).
        is_retryable: Decides per error whether another attempt is made.
        abort: Event that cancels the loop, including mid-wait.
        on_retry: Called with (error, attempt, delay) before each wait.
        sleep: Wait function used when no abort event is given.
        rng: Jitter source.

    Returns:
        The value returned by ``fn``.

    Raises:
        RetryAbortedError: If ``abort`` is set before or during a wait.
        Exception: The last error once attempts are exhausted or an error
            is not retryable.
    """
    if policy is None:
        policy = RetryPolicy()

    for attempt in range(1, policy.max_attempts + 1):
        if abort is not None and abort.is_set():
            raise RetryAbortedError()
        try:
            return fn()
        except Exception as e:
            if attempt >= policy.max_attempts or not is_retryable(e):
                raise
            delay = compute_backoff(attempt, policy, rng)
            logger.debug(
                "Attempt %d/%d failed (%s); retrying in %.2fs",
                attempt,
                policy.max_attempts,
                e,
                delay,
            )
            if on_retry is not None:
                on_retry(e, attempt, delay)
            if abort is not None:
                if abort.wait(delay):
                    raise RetryAbortedError() from e
            else:
                sleep(delay)

    raise AssertionError("unreachable")


__all__ = [
    "RetryAbortedError",
    "RetryPolicy",
    "compute_backoff",
    "is_transient_error",
    "is_unsent_request_error",
    "retry_call",
    "status_code_of",
]
