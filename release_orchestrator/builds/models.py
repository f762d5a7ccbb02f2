"""Build ORM model.

A Build is one compile attempt for one (project, platform, version),
executed remotely by the build provider. Status writes go through
``builds.state`` so that concurrent reconciliation paths stay consistent.
"""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from release_orchestrator.db import Base, utc_now
from release_orchestrator.projects.models import new_id
from release_orchestrator.types import BuildStatus

if TYPE_CHECKING:
    from release_orchestrator.projects.models import Project


class Build(Base):
    """ORM model for build records.

    Attributes:
        id: UUID primary key.
        project_id: Foreign key to Project.
        platform: Target platform (ios, android).
        version: Build number requested by the caller.
        profile: Provider build profile (development, preview, production).
        status: queued, building, success, failed or cancelled.
        external_build_id: Provider build ID, set once when accepted.
        artifact_ref: Storage locator of the binary.
        logs_ref: Storage key of the captured build logs.
        error_summary: Provider error, first validation error, or the reason
            an artifact is unavailable.
        started_at: When the provider accepted the build.
        completed_at: When a terminal status was recorded.
        created_at: When the build was requested.
    """

    __tablename__ = "builds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    project_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    profile: Mapped[str] = mapped_column(String(20), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.QUEUED.value, index=True
    )
    external_build_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )

    artifact_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)
    logs_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)
    error_summary: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now, index=True
    )

    project: Mapped["Project"] = relationship("Project", back_populates="builds")

    __table_args__ = (Index("ix_builds_project_status", "project_id", "status"),)

    def __repr__(self) -> str:
        """Return string representation of Build."""
        return (
            f"<Build(id='{self.id}', platform='{self.platform}', "
            f"version={self.version}, status='{self.status}')>"
        )

    @property
    def build_status(self) -> BuildStatus:
        """Status as an enum."""
        return BuildStatus(self.status)

    def is_terminal(self) -> bool:
        """Check if this build has reached a terminal status."""
        return self.build_status.is_terminal

    def to_dict(self) -> dict[str, object]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "platform": self.platform,
            "version": self.version,
            "profile": self.profile,
            "status": self.status,
            "external_build_id": self.external_build_id,
            "artifact_ref": self.artifact_ref,
            "logs_ref": self.logs_ref,
            "error_summary": self.error_summary,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


__all__ = ["Build"]
