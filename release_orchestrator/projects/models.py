"""Project ORM model.

A Project is the app whose builds and OTA channels this core manages.
"""

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from release_orchestrator.db import Base, utc_now

if TYPE_CHECKING:
    from release_orchestrator.builds.models import Build
    from release_orchestrator.ota.models import Channel


def new_id() -> str:
    """Return a fresh UUID string primary key."""
    return str(uuid.uuid4())


class Project(Base):
    """ORM model for an app project.

    Attributes:
        id: UUID primary key.
        name: Display name.
        slug: URL-safe identifier, unique.
        bundle_id_ios: iOS bundle identifier.
        bundle_id_android: Android application id.
        source_path: Source tree inspected by pre-build validation.
        provider_project_id: ID assigned by the build provider on first build.
        created_at: Creation timestamp.
    """

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    bundle_id_ios: Mapped[str | None] = mapped_column(String(255), nullable=True)
    bundle_id_android: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    provider_project_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now
    )

    builds: Mapped[list["Build"]] = relationship(
        "Build",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    channels: Mapped[list["Channel"]] = relationship(
        "Channel",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        """Return string representation of Project."""
        return f"<Project(id='{self.id}', slug='{self.slug}')>"

    def descriptor(self) -> dict[str, str | None]:
        """App descriptor sent to the build provider."""
        return {
            "name": self.name,
            "slug": self.slug,
            "bundleIdentifier": self.bundle_id_ios,
            "androidPackage": self.bundle_id_android,
        }


__all__ = ["Project", "new_id"]
