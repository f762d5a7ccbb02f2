"""Durable job queue and worker pool."""

from release_orchestrator.jobs.models import Job
from release_orchestrator.jobs.queue import JobQueue, job_backoff
from release_orchestrator.jobs.worker import Processor, RateLimiter, WorkerPool

__all__ = [
    "Job",
    "JobQueue",
    "Processor",
    "RateLimiter",
    "WorkerPool",
    "job_backoff",
]
