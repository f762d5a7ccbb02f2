"""OTA release ORM models.

This module defines Channel, OTAUpdate, UpdateEvent and UpdateMetric.
Channels belong to a Project; updates belong to a Channel and are removed
with it, together with their events and metrics.
"""

from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from release_orchestrator.db import Base, utc_now
from release_orchestrator.projects.models import new_id
from release_orchestrator.types import UpdateStatus

if TYPE_CHECKING:
    from release_orchestrator.projects.models import Project


class Channel(Base):
    """ORM model for a release channel.

    Attributes:
        id: UUID primary key.
        project_id: Foreign key to Project.
        name: Channel name, unique per project.
        description: Free-form description.
        is_default: At most one default channel per project.
        runtime_version: Native runtime the channel's updates target.
        branch_ref: Provider branch receiving the channel's updates.
        created_at: Creation timestamp.
    """

    __tablename__ = "channels"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    project_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    runtime_version: Mapped[str | None] = mapped_column(String(50), nullable=True)
    branch_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now
    )

    project: Mapped["Project"] = relationship("Project", back_populates="channels")
    updates: Mapped[list["OTAUpdate"]] = relationship(
        "OTAUpdate",
        back_populates="channel",
        cascade="all, delete-orphan",
        passive_deletes=True,
        foreign_keys="OTAUpdate.channel_id",
    )

    __table_args__ = (
        UniqueConstraint("project_id", "name", name="uq_channels_project_name"),
    )

    def __repr__(self) -> str:
        """Return string representation of Channel."""
        return (
            f"<Channel(id='{self.id}', name='{self.name}', "
            f"is_default={self.is_default})>"
        )

    def to_dict(self) -> dict[str, object]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "description": self.description,
            "is_default": self.is_default,
            "runtime_version": self.runtime_version,
            "branch_ref": self.branch_ref,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class OTAUpdate(Base):
    """ORM model for a published OTA update.

    Attributes:
        id: UUID primary key.
        channel_id: Foreign key to Channel.
        version: Per-channel version, assigned as max + 1 and never reused.
        external_update_id: Provider update ID.
        group_id: Provider update group ID.
        manifest_url: Manifest served to clients.
        runtime_version: Native runtime the update targets.
        platform: ios, android or all.
        message: Release note.
        change_type: feature, fix, content or config.
        status: pending, active, archived, rolled_back or failed.
        rollout_percent: Share of devices eligible (0-100).
        download_count: Reported download events.
        error_count: Reported error events.
        can_rollback: Whether rollback is allowed from this update.
        rolled_back_to_id: Update reactivated when this one was rolled back.
        rolled_back_at: When this update was rolled back.
        published_at: When the provider accepted the update.
        created_at: Creation timestamp.
    """

    __tablename__ = "ota_updates"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    channel_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("channels.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    external_update_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    group_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    manifest_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    runtime_version: Mapped[str | None] = mapped_column(String(50), nullable=True)

    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    change_type: Mapped[str] = mapped_column(String(20), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=UpdateStatus.PENDING.value
    )
    rollout_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    download_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    can_rollback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    rolled_back_to_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("ota_updates.id", ondelete="SET NULL"), nullable=True
    )
    rolled_back_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now
    )

    channel: Mapped["Channel"] = relationship(
        "Channel", back_populates="updates", foreign_keys=[channel_id]
    )
    rolled_back_to: Mapped["OTAUpdate | None"] = relationship(
        "OTAUpdate", remote_side="OTAUpdate.id", foreign_keys=[rolled_back_to_id]
    )
    events: Mapped[list["UpdateEvent"]] = relationship(
        "UpdateEvent", cascade="all, delete-orphan", passive_deletes=True
    )
    metrics: Mapped[list["UpdateMetric"]] = relationship(
        "UpdateMetric", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint("channel_id", "version", name="uq_ota_updates_channel_version"),
        Index("ix_ota_updates_channel_status", "channel_id", "status"),
    )

    def __repr__(self) -> str:
        """Return string representation of OTAUpdate."""
        return (
            f"<OTAUpdate(id='{self.id}', version={self.version}, "
            f"status='{self.status}', rollout={self.rollout_percent}%)>"
        )

    def to_dict(self) -> dict[str, object]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "version": self.version,
            "external_update_id": self.external_update_id,
            "group_id": self.group_id,
            "manifest_url": self.manifest_url,
            "runtime_version": self.runtime_version,
            "platform": self.platform,
            "message": self.message,
            "change_type": self.change_type,
            "status": self.status,
            "rollout_percent": self.rollout_percent,
            "download_count": self.download_count,
            "error_count": self.error_count,
            "can_rollback": self.can_rollback,
            "rolled_back_to_id": self.rolled_back_to_id,
            "rolled_back_at": (
                self.rolled_back_at.isoformat() if self.rolled_back_at else None
            ),
            "published_at": self.published_at.isoformat() if self.published_at else None,
        }


class UpdateEvent(Base):
    """ORM model for raw update telemetry. Append-only."""

    __tablename__ = "update_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    update_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("ota_updates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_type: Mapped[str] = mapped_column(String(30), nullable=False)
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    app_version: Mapped[str] = mapped_column(String(50), nullable=False)
    device_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now, index=True
    )


class UpdateMetric(Base):
    """ORM model for daily per-platform, per-app-version update metrics."""

    __tablename__ = "update_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    update_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("ota_updates.id", ondelete="CASCADE"),
        nullable=False,
    )
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    app_version: Mapped[str] = mapped_column(String(50), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rollback_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_download_time_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_apply_time_ms: Mapped[float | None] = mapped_column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "update_id",
            "platform",
            "app_version",
            "date",
            name="uq_update_metrics_key",
        ),
    )

    def to_dict(self) -> dict[str, object]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "update_id": self.update_id,
            "platform": self.platform,
            "app_version": self.app_version,
            "date": self.date.isoformat(),
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "rollback_count": self.rollback_count,
            "avg_download_time_ms": self.avg_download_time_ms,
            "avg_apply_time_ms": self.avg_apply_time_ms,
        }


__all__ = ["Channel", "OTAUpdate", "UpdateEvent", "UpdateMetric"]
