"""Status poller: fallback reconciliation for builds.

Webhook delivery is not guaranteed, so every accepted build gets a
background loop that periodically asks the provider for its status. A
terminal answer goes through the same transition rules as a webhook, so
whichever signal lands first decides the outcome.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from release_orchestrator.builds.state import BuildNotFoundError, TransitionResult
from release_orchestrator.provider.client import BuildProviderClient, ProviderBuild
from release_orchestrator.resilience import RetryAbortedError

logger = logging.getLogger(__name__)

UpdateHandler = Callable[[str, ProviderBuild], TransitionResult | None]


@dataclass
class _Poll:
    external_build_id: str
    stop: threading.Event
    thread: threading.Thread


class StatusPoller:
    """One polling thread per in-flight build.

    Args:
        provider: Build provider client.
        on_update: Applies a provider report to a build.
        on_timeout: Called with the build ID when polling gives up.
        interval: Seconds between polls.
        max_attempts: Polls per build before giving up.
        timeout: Seconds per build before giving up.
        clock: Monotonic clock.
    """

    def __init__(
        self,
        provider: BuildProviderClient,
        on_update: UpdateHandler,
        on_timeout: Callable[[str], None],
        interval: float = 30.0,
        max_attempts: int = 120,
        timeout: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.on_update = on_update
        self.on_timeout = on_timeout
        self.interval = interval
        self.max_attempts = max_attempts
        self.timeout = timeout
        self._clock = clock
        self._polls: dict[str, _Poll] = {}
        self._lock = threading.Lock()

    def start_polling(self, build_id: str, external_build_id: str) -> bool:
        """Start polling a build unless it is already polled.

        Returns:
            True if a new loop was started.
        """
        with self._lock:
            if build_id in self._polls:
                return False
            stop = threading.Event()
            thread = threading.Thread(
                target=self._loop,
                args=(build_id, external_build_id, stop),
                name=f"poll-{build_id[:8]}",
                daemon=True,
            )
            self._polls[build_id] = _Poll(external_build_id, stop, thread)
            thread.start()
        logger.info("Polling build %s (%s)", build_id, external_build_id)
        return True

    def stop_polling(self, build_id: str) -> bool:
        """Cancel the loop for one build.

        Returns:
            True if a loop was running.
        """
        with self._lock:
            poll = self._polls.pop(build_id, None)
        if poll is None:
            return False
        poll.stop.set()
        logger.debug("Stopped polling build %s", build_id)
        return True

    def stop_all(self, timeout: float = 5.0) -> None:
        """Cancel every loop and wait briefly for the threads to exit."""
        with self._lock:
            polls = list(self._polls.values())
            self._polls.clear()
        for poll in polls:
            poll.stop.set()
        current = threading.current_thread()
        for poll in polls:
            if poll.thread is not current:
                poll.thread.join(timeout)
        if polls:
            logger.info("Stopped %d status polls", len(polls))

    def active_polls(self) -> list[str]:
        """IDs of builds currently being polled."""
        with self._lock:
            return sorted(self._polls)

    def poll_once(self, build_id: str, external_build_id: str) -> TransitionResult | None:
        """Query the provider once and apply the result."""
        provider_build = self.provider.get_build_status(external_build_id)
        return self.on_update(build_id, provider_build)

    def _loop(self, build_id: str, external_build_id: str, stop: threading.Event) -> None:
        started = self._clock()
        attempts = 0
        try:
            while not stop.wait(self.interval):
                attempts += 1
                if self._poll(build_id, external_build_id, stop):
                    return
                if stop.is_set():
                    return
                elapsed = self._clock() - started
                if attempts >= self.max_attempts or elapsed >= self.timeout:
                    logger.warning(
                        "Giving up polling build %s after %d polls (%.0fs)",
                        build_id,
                        attempts,
                        elapsed,
                    )
                    self.on_timeout(build_id)
                    return
        except Exception:
            logger.exception("Polling loop for build %s crashed", build_id)
        finally:
            with self._lock:
                poll = self._polls.get(build_id)
                if poll is not None and poll.stop is stop:
                    del self._polls[build_id]

    def _poll(self, build_id: str, external_build_id: str, stop: threading.Event) -> bool:
        """One poll; returns True when the loop should end."""
        try:
            provider_build = self.provider.get_build_status(external_build_id, abort=stop)
        except RetryAbortedError:
            return True
        except Exception as e:
            logger.warning("Status poll for build %s failed: %s", build_id, e)
            return False
        try:
            result = self.on_update(build_id, provider_build)
        except BuildNotFoundError:
            logger.warning("Build %s disappeared; stopping poll", build_id)
            return True
        except Exception:
            logger.exception("Applying polled status for build %s failed", build_id)
            return False
        return result is not None and result.current.is_terminal


__all__ = ["StatusPoller", "UpdateHandler"]
