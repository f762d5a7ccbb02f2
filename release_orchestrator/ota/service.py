"""OTA release management.

This module provides the OTA API:
- Channel management (create, list, default, delete)
- publish_update(): version reservation, provider publish, activation
- set_rollout(): widen or narrow a staged rollout
- resolve_update(): which active update a given device receives
- rollback_update(): two-record swap in one transaction
- track_event(): telemetry ingestion and daily metric aggregation
- get_update_metrics() / get_update_status(): read-only diagnostics

Versions are reserved as ``pending`` rows before the provider is called,
so a version number is never handed out twice; a failed publish leaves
its reserved version behind in ``failed`` status.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from release_orchestrator.db import get_session, utc_now
from release_orchestrator.ota.models import Channel, OTAUpdate, UpdateEvent, UpdateMetric
from release_orchestrator.ota.rollout import select_update_for_device
from release_orchestrator.projects.service import get_project
from release_orchestrator.provider.client import BuildProviderClient
from release_orchestrator.types import (
    ChangeType,
    UpdateEventType,
    UpdatePlatform,
    UpdateStatus,
)

logger = logging.getLogger(__name__)

# Attempts to reserve a version when concurrent publishes collide.
VERSION_RETRIES = 5
TOP_ERRORS = 10
LIVE_STATUSES = (UpdateStatus.ACTIVE.value, UpdateStatus.ARCHIVED.value)


class ChannelNotFoundError(Exception):
    """Raised when a channel is not found."""

    def __init__(self, channel_id: str, code: str = "channel_not_found") -> None:
        super().__init__(f"Channel not found: {channel_id}")
        self.channel_id = channel_id
        self.code = code


class ChannelExistsError(Exception):
    """Raised when a project already has a channel with the same name."""

    def __init__(self, name: str, code: str = "channel_exists") -> None:
        super().__init__(f"Channel already exists: {name}")
        self.name = name
        self.code = code


class UpdateNotFoundError(Exception):
    """Raised when an OTA update is not found."""

    def __init__(self, update_id: str, code: str = "update_not_found") -> None:
        super().__init__(f"Update not found: {update_id}")
        self.update_id = update_id
        self.code = code


class NoPreviousVersionError(Exception):
    """Raised when a rollback has no earlier update to return to."""

    def __init__(self, update_id: str, code: str = "no_previous_version") -> None:
        super().__init__(f"No previous update to roll back to from {update_id}")
        self.update_id = update_id
        self.code = code


class NotRollbackableError(Exception):
    """Raised when an update is flagged as not rollbackable."""

    def __init__(self, update_id: str, code: str = "not_rollbackable") -> None:
        super().__init__(f"Update {update_id} cannot be rolled back")
        self.update_id = update_id
        self.code = code


class UpdateStateError(Exception):
    """Raised when an update is not in a status the operation needs."""

    def __init__(self, message: str, code: str = "invalid_state") -> None:
        super().__init__(message)
        self.code = code


class RuntimeVersionUnknownError(ValueError):
    """Raised when no runtime version can be determined for a publish."""

    def __init__(self, channel_id: str, code: str = "runtime_version_required") -> None:
        super().__init__(
            f"No runtime version for channel {channel_id}: pin one on the channel, "
            "pass one, or set expo.runtimeVersion in the project's app.json"
        )
        self.channel_id = channel_id
        self.code = code


@dataclass
class _Reservation:
    """Version reserved for an in-progress publish."""

    id: str
    version: int
    runtime_version: str | None
    channel_branch: str


def read_runtime_version(source_path: str | Path) -> str | None:
    """Read the runtime version from a project's ``app.json``.

    Uses ``expo.runtimeVersion`` when it is a string. When it is absent or
    uses the ``appVersion`` policy, the app version (``expo.version``) is
    the runtime version.

    Returns:
        The runtime version, or None if it cannot be determined.
    """
    app_json = Path(source_path) / "app.json"
    if not app_json.is_file():
        return None
    try:
        config = json.loads(app_json.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("Could not read %s: %s", app_json, e)
        return None
    if not isinstance(config, dict):
        return None
    expo = config.get("expo", config)
    if not isinstance(expo, dict):
        return None

    declared = expo.get("runtimeVersion")
    if isinstance(declared, str) and declared:
        return declared
    if declared is None or (
        isinstance(declared, dict) and declared.get("policy") == "appVersion"
    ):
        version = expo.get("version")
        if isinstance(version, str) and version:
            return version
    return None


def branch_name(project_id: str, channel_name: str) -> str:
    """Provider branch for a channel: project ID prefix plus slugified name."""
    slug = re.sub(r"[^a-z0-9]", "-", channel_name.lower())
    return f"{project_id[:8]}-{slug}"


def _validate_rollout(rollout_percent: int) -> None:
    if not 0 <= rollout_percent <= 100:
        raise ValueError("rollout_percent must be between 0 and 100")


def _archive_other_actives(session: Session, channel_id: str, keep_id: str) -> int:
    result = session.execute(
        update(OTAUpdate)
        .where(
            OTAUpdate.channel_id == channel_id,
            OTAUpdate.status == UpdateStatus.ACTIVE.value,
            OTAUpdate.id != keep_id,
        )
        .values(status=UpdateStatus.ARCHIVED.value)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount


def _get_channel(session: Session, channel_id: str) -> Channel:
    channel = session.get(Channel, channel_id)
    if channel is None:
        raise ChannelNotFoundError(channel_id)
    return channel


def _get_update(session: Session, update_id: str) -> OTAUpdate:
    ota_update = session.get(OTAUpdate, update_id)
    if ota_update is None:
        raise UpdateNotFoundError(update_id)
    return ota_update


def compute_daily_metrics(events: Sequence[UpdateEvent]) -> dict[str, Any]:
    """Aggregate one day of events for one (update, platform, app version).

    Successes are applied updates, failures are error events, and average
    timings cover completed downloads and applies that reported a duration.
    """
    downloads = [
        e.duration_ms
        for e in events
        if e.event_type == UpdateEventType.DOWNLOAD_COMPLETE.value and e.duration_ms
    ]
    applies = [
        e.duration_ms
        for e in events
        if e.event_type == UpdateEventType.APPLY_COMPLETE.value and e.duration_ms
    ]
    return {
        "success_count": sum(
            1 for e in events if e.event_type == UpdateEventType.APPLY_COMPLETE.value
        ),
        "failure_count": sum(1 for e in events if "error" in e.event_type),
        "rollback_count": sum(
            1 for e in events if e.event_type == UpdateEventType.ROLLBACK.value
        ),
        "avg_download_time_ms": round(sum(downloads) / len(downloads)) if downloads else None,
        "avg_apply_time_ms": round(sum(applies) / len(applies)) if applies else None,
    }


class OTAReleaseManager:
    """Owns Channel and OTAUpdate lifecycles.

    Args:
        session_factory: Factory for database sessions.
        provider: Build provider client used to publish updates.
    """

    def __init__(
        self, session_factory: sessionmaker[Session], provider: BuildProviderClient
    ) -> None:
        self.session_factory = session_factory
        self.provider = provider

    # Channels

    def create_channel(
        self,
        project_id: str,
        name: str,
        description: str | None = None,
        is_default: bool = False,
        runtime_version: str | None = None,
    ) -> Channel:
        """Create a channel, clearing any previous default if requested.

        Raises:
            ProjectNotFoundError: If the project is unknown.
            ChannelExistsError: If the name is taken in this project.
        """
        try:
            with get_session(self.session_factory) as session:
                get_project(session, project_id)
                if is_default:
                    session.execute(
                        update(Channel)
                        .where(Channel.project_id == project_id, Channel.is_default.is_(True))
                        .values(is_default=False)
                    )
                channel = Channel(
                    project_id=project_id,
                    name=name,
                    description=description,
                    is_default=is_default,
                    runtime_version=runtime_version,
                    branch_ref=branch_name(project_id, name),
                )
                session.add(channel)
                session.flush()
        except IntegrityError as e:
            raise ChannelExistsError(name) from e
        logger.info("Created channel %s (%s) for project %s", name, channel.id, project_id)
        return channel

    def list_channels(self, project_id: str) -> list[Channel]:
        """Channels of a project, default first."""
        with get_session(self.session_factory) as session:
            return list(
                session.execute(
                    select(Channel)
                    .where(Channel.project_id == project_id)
                    .order_by(Channel.is_default.desc(), Channel.name)
                ).scalars()
            )

    def get_channel(self, channel_id: str) -> Channel:
        """Get a channel by ID.

        Raises:
            ChannelNotFoundError: If not found.
        """
        with get_session(self.session_factory) as session:
            return _get_channel(session, channel_id)

    def get_default_channel(self, project_id: str) -> Channel | None:
        """The project's default channel, if any."""
        with get_session(self.session_factory) as session:
            return session.execute(
                select(Channel).where(
                    Channel.project_id == project_id, Channel.is_default.is_(True)
                )
            ).scalar_one_or_none()

    def delete_channel(self, channel_id: str) -> None:
        """Delete a channel and everything published on it."""
        with get_session(self.session_factory) as session:
            channel = _get_channel(session, channel_id)
            session.delete(channel)
        logger.info("Deleted channel %s", channel_id)

    # Updates

    def publish_update(
        self,
        channel_id: str,
        message: str,
        change_type: ChangeType,
        platform: UpdatePlatform = UpdatePlatform.ALL,
        rollout_percent: int = 100,
        runtime_version: str | None = None,
        can_rollback: bool = True,
    ) -> OTAUpdate:
        """Publish OTA content to a channel.

        Args:
            channel_id: Target channel.
            message: Release note.
            change_type: Kind of change.
            platform: Targeted platform(s).
            rollout_percent: Share of devices receiving the update.
            runtime_version: Used when the channel does not pin one. When
                neither supplies it, it is read from the project's app.json.
            can_rollback: Whether the update may later be rolled back.

        Returns:
            The active OTAUpdate.

        Raises:
            ChannelNotFoundError: If the channel is unknown.
            RuntimeVersionUnknownError: If no runtime version can be found.
            ProviderUnavailableError: If the provider cannot be reached.
        """
        _validate_rollout(rollout_percent)
        runtime_version = self._resolve_runtime_version(channel_id, runtime_version)
        reserved = self._reserve_version(
            channel_id,
            message=message,
            change_type=change_type,
            platform=platform,
            rollout_percent=rollout_percent,
            runtime_version=runtime_version,
            can_rollback=can_rollback,
        )
        branch = reserved.channel_branch
        try:
            self.provider.ensure_branch(branch, reserved.runtime_version)
            published = self.provider.publish_update(
                branch=branch,
                message=message,
                platform=platform.value,
                runtime_version=reserved.runtime_version,
            )
        except Exception:
            with get_session(self.session_factory) as session:
                session.execute(
                    update(OTAUpdate)
                    .where(OTAUpdate.id == reserved.id)
                    .values(status=UpdateStatus.FAILED.value)
                )
            logger.error(
                "Publishing v%d on channel %s failed", reserved.version, channel_id
            )
            raise

        with get_session(self.session_factory) as session:
            ota_update = _get_update(session, reserved.id)
            ota_update.external_update_id = published.id
            ota_update.group_id = published.group_id
            ota_update.manifest_url = published.manifest_url
            ota_update.published_at = utc_now()
            ota_update.status = UpdateStatus.ACTIVE.value
            archived = 0
            if rollout_percent == 100:
                archived = _archive_other_actives(session, channel_id, ota_update.id)
            session.flush()
        logger.info(
            "Published v%d on channel %s at %d%% (archived %d)",
            ota_update.version,
            channel_id,
            rollout_percent,
            archived,
        )
        return ota_update

    def _resolve_runtime_version(
        self, channel_id: str, runtime_version: str | None
    ) -> str:
        """Pick the channel's pinned version, then the caller's, then app.json."""
        with get_session(self.session_factory) as session:
            channel = _get_channel(session, channel_id)
            if channel.runtime_version:
                return channel.runtime_version
            if runtime_version:
                return runtime_version
            source_path = get_project(session, channel.project_id).source_path
        resolved = read_runtime_version(source_path) if source_path else None
        if resolved is None:
            raise RuntimeVersionUnknownError(channel_id)
        logger.debug("Runtime version %s read from %s", resolved, source_path)
        return resolved

    def _reserve_version(
        self,
        channel_id: str,
        message: str,
        change_type: ChangeType,
        platform: UpdatePlatform,
        rollout_percent: int,
        runtime_version: str | None,
        can_rollback: bool,
    ) -> _Reservation:
        """Insert a pending update holding the next version number."""
        for attempt in range(1, VERSION_RETRIES + 1):
            try:
                with get_session(self.session_factory) as session:
                    channel = _get_channel(session, channel_id)
                    current = session.execute(
                        select(func.max(OTAUpdate.version)).where(
                            OTAUpdate.channel_id == channel_id
                        )
                    ).scalar_one()
                    ota_update = OTAUpdate(
                        channel_id=channel_id,
                        version=(current or 0) + 1,
                        runtime_version=channel.runtime_version or runtime_version,
                        platform=platform.value,
                        message=message,
                        change_type=change_type.value,
                        status=UpdateStatus.PENDING.value,
                        rollout_percent=rollout_percent,
                        can_rollback=can_rollback,
                    )
                    session.add(ota_update)
                    session.flush()
                    return _Reservation(
                        id=ota_update.id,
                        version=ota_update.version,
                        runtime_version=ota_update.runtime_version,
                        channel_branch=channel.branch_ref,
                    )
            except IntegrityError:
                logger.debug(
                    "Version collision on channel %s (attempt %d); retrying",
                    channel_id,
                    attempt,
                )
        raise RuntimeError(f"Could not reserve a version on channel {channel_id}")

    def set_rollout(self, update_id: str, rollout_percent: int) -> OTAUpdate:
        """Change an active update's rollout percentage.

        The status is left as is; reaching 100% archives the channel's
        other active updates.

        Raises:
            UpdateNotFoundError: If not found.
            UpdateStateError: If the update is not active.
        """
        _validate_rollout(rollout_percent)
        with get_session(self.session_factory) as session:
            ota_update = _get_update(session, update_id)
            if ota_update.status != UpdateStatus.ACTIVE.value:
                raise UpdateStateError(
                    f"Update {update_id} is {ota_update.status}; only active "
                    "updates can change rollout"
                )
            ota_update.rollout_percent = rollout_percent
            if rollout_percent == 100:
                _archive_other_actives(session, ota_update.channel_id, update_id)
            session.flush()
        logger.info("Update %s rollout set to %d%%", update_id, rollout_percent)
        return ota_update

    def list_updates(
        self,
        channel_id: str,
        status: UpdateStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[OTAUpdate]:
        """Updates of a channel, newest version first."""
        stmt = select(OTAUpdate).where(OTAUpdate.channel_id == channel_id)
        if status is not None:
            stmt = stmt.where(OTAUpdate.status == status.value)
        stmt = stmt.order_by(OTAUpdate.version.desc()).limit(limit).offset(offset)
        with get_session(self.session_factory) as session:
            return list(session.execute(stmt).scalars())

    def get_update(self, update_id: str) -> OTAUpdate:
        """Get an update by ID.

        Raises:
            UpdateNotFoundError: If not found.
        """
        with get_session(self.session_factory) as session:
            return _get_update(session, update_id)

    def resolve_update(
        self, channel_id: str, device_id: str, platform: str | None = None
    ) -> OTAUpdate | None:
        """The update a device on ``channel_id`` should run, if any.

        Raises:
            ChannelNotFoundError: If the channel is unknown.
        """
        with get_session(self.session_factory) as session:
            _get_channel(session, channel_id)
            active = session.execute(
                select(OTAUpdate).where(
                    OTAUpdate.channel_id == channel_id,
                    OTAUpdate.status == UpdateStatus.ACTIVE.value,
                )
            ).scalars().all()
        return select_update_for_device(active, device_id, platform)

    def rollback_update(
        self, update_id: str, target_update_id: str | None = None
    ) -> OTAUpdate:
        """Roll a channel back from ``update_id``.

        The source becomes ``rolled_back`` and the target ``active`` in one
        transaction. If the source was fully rolled out, the target takes
        over at 100% and any other active update is archived.

        Args:
            update_id: Update to roll back.
            target_update_id: Update to reactivate; defaults to the nearest
                lower version that is active or archived.

        Returns:
            The reactivated update.

        Raises:
            UpdateNotFoundError: If either update is unknown.
            NotRollbackableError: If the source forbids rollback.
            NoPreviousVersionError: If no target exists.
            UpdateStateError: If the source is not live or the target is
                unsuitable.
        """
        with get_session(self.session_factory) as session:
            source = _get_update(session, update_id)
            if not source.can_rollback:
                raise NotRollbackableError(update_id)
            if source.status not in LIVE_STATUSES:
                raise UpdateStateError(
                    f"Update {update_id} is {source.status} and cannot be rolled back"
                )

            if target_update_id is not None:
                target = _get_update(session, target_update_id)
                if target.id == source.id or target.channel_id != source.channel_id:
                    raise UpdateStateError(
                        f"Update {target_update_id} is not a rollback target for {update_id}"
                    )
                if target.status not in LIVE_STATUSES:
                    raise UpdateStateError(
                        f"Update {target_update_id} is {target.status} and cannot be reactivated"
                    )
            else:
                target = session.execute(
                    select(OTAUpdate)
                    .where(
                        OTAUpdate.channel_id == source.channel_id,
                        OTAUpdate.version < source.version,
                        OTAUpdate.status.in_(LIVE_STATUSES),
                    )
                    .order_by(OTAUpdate.version.desc())
                    .limit(1)
                ).scalar_one_or_none()
                if target is None:
                    raise NoPreviousVersionError(update_id)

            now = utc_now()
            source.status = UpdateStatus.ROLLED_BACK.value
            source.rolled_back_to_id = target.id
            source.rolled_back_at = now
            target.status = UpdateStatus.ACTIVE.value
            if source.rollout_percent == 100:
                target.rollout_percent = 100
                session.flush()
                _archive_other_actives(session, source.channel_id, target.id)
            session.flush()
        logger.info(
            "Rolled back update %s (v%d) to %s (v%d)",
            source.id,
            source.version,
            target.id,
            target.version,
        )
        return target

    # Telemetry

    def track_event(
        self,
        update_id: str,
        event_type: UpdateEventType,
        platform: str,
        app_version: str,
        device_id: str | None = None,
        duration_ms: int | None = None,
        error: str | None = None,
    ) -> UpdateEvent:
        """Record a telemetry event and refresh the day's metrics.

        Metric aggregation failures are logged and do not fail the call;
        the event itself is always kept.

        Raises:
            UpdateNotFoundError: If the update is unknown.
        """
        with get_session(self.session_factory) as session:
            _get_update(session, update_id)
            event = UpdateEvent(
                update_id=update_id,
                event_type=event_type.value,
                platform=platform,
                app_version=app_version,
                device_id=device_id,
                duration_ms=duration_ms,
                error_message=error,
            )
            session.add(event)
            if event_type == UpdateEventType.DOWNLOAD_COMPLETE:
                session.execute(
                    update(OTAUpdate)
                    .where(OTAUpdate.id == update_id)
                    .values(download_count=OTAUpdate.download_count + 1)
                    .execution_options(synchronize_session=False)
                )
            elif event_type.is_error:
                session.execute(
                    update(OTAUpdate)
                    .where(OTAUpdate.id == update_id)
                    .values(error_count=OTAUpdate.error_count + 1)
                    .execution_options(synchronize_session=False)
                )
            session.flush()

        try:
            self.aggregate_metrics(update_id, platform, app_version, event.created_at.date())
        except Exception:
            logger.exception(
                "Metric aggregation for update %s (%s %s) failed",
                update_id,
                platform,
                app_version,
            )
        return event

    def aggregate_metrics(
        self, update_id: str, platform: str, app_version: str, day: date
    ) -> UpdateMetric:
        """Recompute and upsert one day's metric row.

        Recomputing from events makes the upsert idempotent: running it
        twice yields the same row.
        """
        start = datetime.combine(day, time.min)
        end = start + timedelta(days=1)
        for attempt in (1, 2):
            try:
                with get_session(self.session_factory) as session:
                    events = session.execute(
                        select(UpdateEvent).where(
                            UpdateEvent.update_id == update_id,
                            UpdateEvent.platform == platform,
                            UpdateEvent.app_version == app_version,
                            UpdateEvent.created_at >= start,
                            UpdateEvent.created_at < end,
                        )
                    ).scalars().all()
                    values = compute_daily_metrics(events)
                    metric = session.execute(
                        select(UpdateMetric).where(
                            UpdateMetric.update_id == update_id,
                            UpdateMetric.platform == platform,
                            UpdateMetric.app_version == app_version,
                            UpdateMetric.date == day,
                        )
                    ).scalar_one_or_none()
                    if metric is None:
                        metric = UpdateMetric(
                            update_id=update_id,
                            platform=platform,
                            app_version=app_version,
                            date=day,
                        )
                        session.add(metric)
                    for key, value in values.items():
                        setattr(metric, key, value)
                    session.flush()
                    return metric
            except IntegrityError:
                # A concurrent first insert for the same key won; merge into it.
                if attempt == 2:
                    raise
        raise AssertionError("unreachable")

    def get_update_metrics(self, update_id: str) -> list[dict[str, Any]]:
        """Daily metric rows of an update, newest first, with success rate."""
        with get_session(self.session_factory) as session:
            _get_update(session, update_id)
            metrics = session.execute(
                select(UpdateMetric)
                .where(UpdateMetric.update_id == update_id)
                .order_by(UpdateMetric.date.desc(), UpdateMetric.platform)
            ).scalars().all()
        rows = []
        for metric in metrics:
            row = metric.to_dict()
            attempts = metric.success_count + metric.failure_count
            row["success_rate"] = metric.success_count / attempts if attempts else 0.0
            rows.append(row)
        return rows

    def get_update_status(self, update_id: str) -> dict[str, Any]:
        """Update, its metrics and its most frequent error messages."""
        with get_session(self.session_factory) as session:
            ota_update = _get_update(session, update_id)
            count = func.count(UpdateEvent.id)
            recent_errors = session.execute(
                select(UpdateEvent.error_message, count)
                .where(
                    UpdateEvent.update_id == update_id,
                    UpdateEvent.event_type.contains("error"),
                    UpdateEvent.error_message.is_not(None),
                )
                .group_by(UpdateEvent.error_message)
                .order_by(count.desc(), UpdateEvent.error_message)
                .limit(TOP_ERRORS)
            ).all()
        return {
            "update": ota_update.to_dict(),
            "metrics": self.get_update_metrics(update_id),
            "recent_errors": [
                {"message": message or "Unknown error", "count": n}
                for message, n in recent_errors
            ],
        }


__all__ = [
    "ChannelExistsError",
    "ChannelNotFoundError",
    "NoPreviousVersionError",
    "NotRollbackableError",
    "OTAReleaseManager",
    "RuntimeVersionUnknownError",
    "UpdateNotFoundError",
    "UpdateStateError",
    "branch_name",
    "compute_daily_metrics",
    "read_runtime_version",
]
