"""Worker pool consuming the job queue.

Each worker thread claims one job at a time and runs the processor for
its kind. Job starts are capped by a sliding-window rate limiter shared
by all workers, so bursts of enqueued builds do not overwhelm the build
provider.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable

from release_orchestrator.jobs.models import Job
from release_orchestrator.jobs.queue import JobQueue

logger = logging.getLogger(__name__)

Processor = Callable[[Job, threading.Event], None]


class RateLimiter:
    """Sliding-window limit on events per window.

    Args:
        max_events: Events allowed per window.
        window: Window length in seconds.
        clock: Monotonic clock.
    """

    def __init__(
        self,
        max_events: int,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_events = max_events
        self.window = window
        self._clock = clock
        self._timestamps: deque[float] = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window:
            self._timestamps.popleft()

    def try_acquire(self) -> float:
        """Take a slot if one is free.

        Returns:
            0.0 when a slot was taken, otherwise seconds until one frees up.
        """
        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._timestamps) < self.max_events:
                self._timestamps.append(now)
                return 0.0
            return self.window - (now - self._timestamps[0])

    def acquire(self, stop: threading.Event) -> bool:
        """Block until a slot is free; False if ``stop`` is set first."""
        while not stop.is_set():
            wait = self.try_acquire()
            if wait <= 0:
                return True
            stop.wait(min(wait, 1.0))
        return False

    def refund(self) -> None:
        """Give back the most recently taken slot."""
        with self._lock:
            if self._timestamps:
                self._timestamps.pop()

    def in_window(self) -> int:
        """Number of slots currently taken."""
        with self._lock:
            self._prune(self._clock())
            return len(self._timestamps)


class WorkerPool:
    """Fixed-size pool of worker threads.

    Args:
        queue: Job queue to consume.
        processors: Processor per job kind. A processor receives the job
            and an abort event that is set when shutdown runs out of grace.
        concurrency: Number of worker threads.
        rate_limiter: Shared cap on job starts.
        poll_interval: Idle wait between claims when the queue is empty.
        sweep_interval: Interval of the purge and stale-recovery sweep.
        job_timeout: Age after which an active job is considered abandoned.
        heartbeat_interval: Interval at which in-flight jobs refresh their
            lock. Defaults to a third of ``job_timeout``.
    """

    def __init__(
        self,
        queue: JobQueue,
        processors: dict[str, Processor],
        concurrency: int = 3,
        rate_limiter: RateLimiter | None = None,
        poll_interval: float = 1.0,
        sweep_interval: float = 600.0,
        job_timeout: float = 600.0,
        heartbeat_interval: float | None = None,
    ) -> None:
        self.queue = queue
        self.processors = processors
        self.concurrency = concurrency
        self.rate_limiter = rate_limiter or RateLimiter(10)
        self.poll_interval = poll_interval
        self.sweep_interval = sweep_interval
        self.job_timeout = job_timeout
        self.heartbeat_interval = heartbeat_interval or job_timeout / 3
        self.pool_id = uuid.uuid4().hex[:8]

        self._stop = threading.Event()
        self._abort = threading.Event()
        self._threads: list[threading.Thread] = []
        self._in_flight: dict[str, tuple[int, str]] = {}
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        """Whether workers have been started and not stopped."""
        return bool(self._threads) and not self._stop.is_set()

    def in_flight(self) -> list[str]:
        """Keys of jobs currently being processed."""
        with self._lock:
            return sorted(self._in_flight)

    def start(self) -> None:
        """Recover abandoned jobs and start the worker and background threads."""
        if self._threads:
            return
        self._stop.clear()
        self._abort.clear()
        self.queue.recover_stale(self.job_timeout)
        for i in range(self.concurrency):
            thread = threading.Thread(
                target=self._work,
                args=(f"worker-{i}-{self.pool_id}",),
                name=f"worker-{i}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        sweeper = threading.Thread(target=self._sweep, name="job-sweeper", daemon=True)
        sweeper.start()
        self._threads.append(sweeper)
        heart = threading.Thread(target=self._heartbeat, name="job-heartbeat", daemon=True)
        heart.start()
        self._threads.append(heart)
        logger.info("Started %d workers", self.concurrency)

    def stop(self, grace_period: float = 30.0) -> None:
        """Stop claiming jobs and wait for in-flight jobs.

        Jobs still running after ``grace_period`` see their abort event set
        so that pending retries end early.
        """
        if not self._threads:
            return
        self._stop.set()
        deadline = time.monotonic() + grace_period
        for thread in self._threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        stragglers = [t for t in self._threads if t.is_alive()]
        if stragglers:
            logger.warning(
                "%d workers still busy after %.0fs grace; aborting %s",
                len(stragglers),
                grace_period,
                self.in_flight(),
            )
            self._abort.set()
            for thread in stragglers:
                thread.join(5.0)
        self._threads = []
        logger.info("Worker pool stopped")

    def run_once(self, worker_id: str | None = None) -> Job | None:
        """Claim and process a single job on the calling thread.

        Returns:
            The processed job, or None if none was runnable or the rate
            limit is exhausted.
        """
        worker_id = worker_id or f"worker-inline-{self.pool_id}"
        if self.rate_limiter.try_acquire() > 0:
            return None
        job = self.queue.claim_next(worker_id)
        if job is None:
            self.rate_limiter.refund()
            return None
        self._process(job, worker_id)
        return job

    def _work(self, worker_id: str) -> None:
        while not self._stop.is_set():
            if not self.rate_limiter.acquire(self._stop):
                break
            try:
                job = self.queue.claim_next(worker_id)
            except Exception:
                logger.exception("Worker %s failed to claim a job", worker_id)
                job = None
            if job is None:
                self.rate_limiter.refund()
                self._stop.wait(self.poll_interval)
                continue
            self._process(job, worker_id)

    def _process(self, job: Job, worker_id: str) -> None:
        processor = self.processors.get(job.kind)
        if processor is None:
            self.queue.fail(job.id, f"No processor for job kind '{job.kind}'", worker_id)
            return
        with self._lock:
            self._in_flight[job.job_key] = (job.id, worker_id)
        try:
            processor(job, self._abort)
        except Exception as e:
            logger.exception("Job %s raised", job.job_key)
            self.queue.fail(job.id, str(e) or type(e).__name__, worker_id)
        else:
            self.queue.complete(job.id, worker_id)
        finally:
            with self._lock:
                self._in_flight.pop(job.job_key, None)

    def heartbeat(self) -> int:
        """Refresh the lock of every in-flight job.

        Returns:
            Number of jobs whose lock was refreshed.
        """
        with self._lock:
            held = list(self._in_flight.items())
        refreshed = 0
        for job_key, (job_id, worker_id) in held:
            if self.queue.heartbeat(job_id, worker_id):
                refreshed += 1
            else:
                logger.warning("Lost the lock on job %s", job_key)
        return refreshed

    def _heartbeat(self) -> None:
        while not self._stop.wait(self.heartbeat_interval):
            try:
                self.heartbeat()
            except Exception:
                logger.exception("Job heartbeat failed")

    def sweep(self) -> None:
        """Purge expired jobs and recover abandoned ones."""
        self.queue.purge()
        self.queue.recover_stale(self.job_timeout)

    def _sweep(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Job sweep failed")


__all__ = ["Processor", "RateLimiter", "WorkerPool"]
