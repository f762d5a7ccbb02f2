"""Job queue ORM model.

Jobs are durable rows so that queued work survives restarts. ``job_key``
is the caller's idempotency key (the Build id for build jobs).
"""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from release_orchestrator.db import Base, utc_now
from release_orchestrator.types import JobStatus


class Job(Base):
    """ORM model for a queued job.

    Attributes:
        id: Primary key.
        job_key: Unique idempotency key.
        kind: Job type, used to route to a processor.
        payload: JSON arguments for the processor.
        priority: Higher runs first.
        status: waiting, active, completed or failed.
        attempts: Number of times the job has been claimed.
        max_attempts: Attempts before the job fails terminally.
        run_after: Earliest time the job may be claimed (retry backoff).
        locked_at: When the current worker claimed the job.
        locked_by: Name of the worker holding the job.
        last_error: Message of the most recent failure.
        created_at: Enqueue timestamp.
        completed_at: When the job completed or failed terminally.
    """

    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False, default="build")
    payload: Mapped[dict[str, object]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.WAITING.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    run_after: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now
    )
    locked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    locked_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_jobs_claim", "status", "priority", "run_after"),
    )

    def __repr__(self) -> str:
        """Return string representation of Job."""
        return (
            f"<Job(id={self.id}, key='{self.job_key}', status='{self.status}', "
            f"attempts={self.attempts}/{self.max_attempts})>"
        )


__all__ = ["Job"]
