"""Durable, prioritized job queue.

This module provides:
- Idempotent enqueue keyed by a caller-supplied job key
- Atomic claiming (waiting -> active) so a job runs on one worker at a time
- Exponential retry backoff and terminal failure
- Retention purge and recovery of jobs orphaned by a crashed worker
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from release_orchestrator.db import get_session, utc_now
from release_orchestrator.jobs.models import Job
from release_orchestrator.types import JobStatus

logger = logging.getLogger(__name__)

# Claim attempts per call when another worker wins the race for a row.
CLAIM_RETRIES = 5


def job_backoff(attempts: int, base: float) -> float:
    """Delay before the next attempt after ``attempts`` failures."""
    return base * 2 ** max(attempts - 1, 0)


class JobQueue:
    """Job queue backed by the ``jobs`` table.

    Args:
        session_factory: Factory for database sessions.
        max_attempts: Attempts before a job fails terminally.
        backoff_base: First retry delay in seconds; doubles per attempt.
        completed_retention: How long completed jobs are kept.
        failed_retention: How long failed jobs are kept.
        clock: Source of naive UTC timestamps.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        max_attempts: int = 3,
        backoff_base: float = 5.0,
        completed_retention: timedelta = timedelta(hours=24),
        failed_retention: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.completed_retention = completed_retention
        self.failed_retention = failed_retention
        self._clock = clock
        self._accepting = True

    @property
    def accepting(self) -> bool:
        """Whether new jobs are accepted."""
        return self._accepting

    def close(self) -> None:
        """Stop accepting new jobs."""
        self._accepting = False

    def enqueue(
        self,
        job_key: str,
        payload: dict[str, Any],
        priority: int = 0,
        kind: str = "build",
    ) -> Job:
        """Add a job unless one with the same key already exists.

        Args:
            job_key: Idempotency key.
            payload: JSON-serializable processor arguments.
            priority: Higher runs first.
            kind: Job type.

        Returns:
            The new job, or the existing job for ``job_key``.

        Raises:
            RuntimeError: If the queue has been closed.
        """
        if not self._accepting:
            raise RuntimeError("Job queue is closed")

        with get_session(self.session_factory) as session:
            existing = self._get(session, job_key)
            if existing is not None:
                logger.debug("Job %s already enqueued (%s)", job_key, existing.status)
                return existing
            job = Job(
                job_key=job_key,
                kind=kind,
                payload=payload,
                priority=priority,
                status=JobStatus.WAITING.value,
                attempts=0,
                max_attempts=self.max_attempts,
                run_after=self._clock(),
                created_at=self._clock(),
            )
            session.add(job)
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                existing = self._get(session, job_key)
                if existing is None:
                    raise
                return existing
            logger.info("Enqueued %s job %s (priority %d)", kind, job_key, priority)
            return job

    @staticmethod
    def _get(session: Session, job_key: str) -> Job | None:
        return session.execute(
            select(Job).where(Job.job_key == job_key)
        ).scalar_one_or_none()

    def get(self, job_key: str) -> Job | None:
        """Look up a job by key."""
        with get_session(self.session_factory) as session:
            return self._get(session, job_key)

    def claim_next(self, worker_id: str) -> Job | None:
        """Atomically claim the highest-priority runnable job.

        Returns:
            The claimed job in ``active`` status, or None if nothing is due.
        """
        for _ in range(CLAIM_RETRIES):
            with get_session(self.session_factory) as session:
                now = self._clock()
                candidate = session.execute(
                    select(Job.id)
                    .where(
                        Job.status == JobStatus.WAITING.value,
                        Job.run_after <= now,
                    )
                    .order_by(Job.priority.desc(), Job.created_at, Job.id)
                    .limit(1)
                ).scalar_one_or_none()
                if candidate is None:
                    return None
                result = session.execute(
                    update(Job)
                    .where(Job.id == candidate, Job.status == JobStatus.WAITING.value)
                    .values(
                        status=JobStatus.ACTIVE.value,
                        attempts=Job.attempts + 1,
                        locked_at=now,
                        locked_by=worker_id,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                job = session.get(Job, candidate, populate_existing=True)
                logger.debug("Worker %s claimed job %s", worker_id, job.job_key)
                return job
        return None

    @staticmethod
    def _owned(job_id: int, worker_id: str | None) -> list[Any]:
        conditions = [Job.id == job_id, Job.status == JobStatus.ACTIVE.value]
        if worker_id is not None:
            conditions.append(Job.locked_by == worker_id)
        return conditions

    def heartbeat(self, job_id: int, worker_id: str) -> bool:
        """Refresh the lock on a job the worker still holds.

        Returns:
            False if the job is no longer active under ``worker_id``.
        """
        with get_session(self.session_factory) as session:
            result = session.execute(
                update(Job)
                .where(*self._owned(job_id, worker_id))
                .values(locked_at=self._clock())
            )
            return result.rowcount == 1

    def complete(self, job_id: int, worker_id: str | None = None) -> bool:
        """Mark an active job completed.

        With ``worker_id``, only a job still locked by that worker is
        completed.

        Returns:
            True if the job was completed.
        """
        with get_session(self.session_factory) as session:
            result = session.execute(
                update(Job)
                .where(*self._owned(job_id, worker_id))
                .values(
                    status=JobStatus.COMPLETED.value,
                    completed_at=self._clock(),
                    locked_at=None,
                    locked_by=None,
                    last_error=None,
                )
            )
            completed = result.rowcount == 1
        if not completed and worker_id is not None:
            logger.warning("Worker %s no longer holds job %s", worker_id, job_id)
        return completed

    def fail(self, job_id: int, error: str, worker_id: str | None = None) -> JobStatus:
        """Record a failed attempt.

        The job goes back to ``waiting`` with an exponential delay, or to
        ``failed`` once its attempts are used up. With ``worker_id``, a job
        the worker no longer holds is left untouched.

        Returns:
            The job's new status.
        """
        with get_session(self.session_factory) as session:
            job = session.get(Job, job_id)
            if job is None:
                return JobStatus.FAILED
            if job.status != JobStatus.ACTIVE.value or (
                worker_id is not None and job.locked_by != worker_id
            ):
                if worker_id is not None:
                    logger.warning("Worker %s no longer holds job %s", worker_id, job_id)
                return JobStatus(job.status)
            now = self._clock()
            job.last_error = error[:2000]
            job.locked_at = None
            job.locked_by = None
            if job.attempts >= job.max_attempts:
                job.status = JobStatus.FAILED.value
                job.completed_at = now
                logger.error(
                    "Job %s failed after %d attempts: %s",
                    job.job_key,
                    job.attempts,
                    error,
                )
            else:
                delay = job_backoff(job.attempts, self.backoff_base)
                job.status = JobStatus.WAITING.value
                job.run_after = now + timedelta(seconds=delay)
                logger.warning(
                    "Job %s attempt %d failed: %s; retrying in %.0fs",
                    job.job_key,
                    job.attempts,
                    error,
                    delay,
                )
            return JobStatus(job.status)

    def cancel(self, job_key: str) -> bool:
        """Withdraw a job that has not started yet.

        Returns:
            True if a waiting job was cancelled.
        """
        with get_session(self.session_factory) as session:
            result = session.execute(
                update(Job)
                .where(Job.job_key == job_key, Job.status == JobStatus.WAITING.value)
                .values(
                    status=JobStatus.FAILED.value,
                    last_error="cancelled",
                    completed_at=self._clock(),
                )
            )
            cancelled = result.rowcount == 1
        if cancelled:
            logger.info("Cancelled waiting job %s", job_key)
        return cancelled

    def purge(self) -> int:
        """Delete completed and failed jobs past their retention window.

        Returns:
            Number of jobs deleted.
        """
        now = self._clock()
        with get_session(self.session_factory) as session:
            result = session.execute(
                delete(Job).where(
                    or_(
                        (Job.status == JobStatus.COMPLETED.value)
                        & (Job.completed_at < now - self.completed_retention),
                        (Job.status == JobStatus.FAILED.value)
                        & (Job.completed_at < now - self.failed_retention),
                    )
                )
            )
            purged = result.rowcount
        if purged:
            logger.info("Purged %d expired jobs", purged)
        return purged

    def recover_stale(self, timeout: float) -> int:
        """Return jobs locked longer than ``timeout`` seconds to waiting.

        Used at startup and by the sweep to pick up work abandoned by a
        worker that died mid-job.
        """
        cutoff = self._clock() - timedelta(seconds=timeout)
        with get_session(self.session_factory) as session:
            result = session.execute(
                update(Job)
                .where(Job.status == JobStatus.ACTIVE.value, Job.locked_at < cutoff)
                .values(status=JobStatus.WAITING.value, locked_at=None, locked_by=None)
            )
            recovered = result.rowcount
        if recovered:
            logger.warning("Recovered %d stale jobs", recovered)
        return recovered

    def stats(self) -> dict[str, int]:
        """Count jobs per status."""
        with get_session(self.session_factory) as session:
            rows = session.execute(
                select(Job.status, func.count()).group_by(Job.status)
            ).all()
        counts = {status.value: 0 for status in JobStatus}
        for status, count in rows:
            counts[status] = count
        return counts


__all__ = ["CLAIM_RETRIES", "JobQueue", "job_backoff"]
