"""Build state machine.

States advance ``queued -> building -> {success | failed | cancelled}``,
and ``queued | building -> cancelled`` on operator request. Webhooks, the
status poller and workers race to report the same build, so every status
write is a conditional UPDATE guarded on the persisted status: the first
writer wins and later writers observe a no-op.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from release_orchestrator.builds.models import Build
from release_orchestrator.db import utc_now
from release_orchestrator.types import BuildStatus, ProviderBuildStatus

logger = logging.getLogger(__name__)


class BuildNotFoundError(Exception):
    """Raised when a build is not found."""

    def __init__(self, build_id: str, code: str = "build_not_found") -> None:
        super().__init__(f"Build not found: {build_id}")
        self.build_id = build_id
        self.code = code


class InvalidStateError(Exception):
    """Raised when a requested transition is not reachable."""

    def __init__(
        self, build_id: str, status: str, action: str, code: str = "invalid_state"
    ) -> None:
        super().__init__(f"Cannot {action} build {build_id} in status '{status}'")
        self.build_id = build_id
        self.status = status
        self.action = action
        self.code = code


# Statuses from which each target status is reachable.
REACHABLE_FROM: dict[BuildStatus, frozenset[BuildStatus]] = {
    BuildStatus.QUEUED: frozenset(),
    BuildStatus.BUILDING: frozenset({BuildStatus.QUEUED}),
    BuildStatus.SUCCESS: frozenset({BuildStatus.QUEUED, BuildStatus.BUILDING}),
    BuildStatus.FAILED: frozenset({BuildStatus.QUEUED, BuildStatus.BUILDING}),
    BuildStatus.CANCELLED: frozenset({BuildStatus.QUEUED, BuildStatus.BUILDING}),
}

PROVIDER_STATUS_MAP: dict[ProviderBuildStatus, BuildStatus] = {
    ProviderBuildStatus.IN_QUEUE: BuildStatus.QUEUED,
    ProviderBuildStatus.IN_PROGRESS: BuildStatus.BUILDING,
    ProviderBuildStatus.FINISHED: BuildStatus.SUCCESS,
    ProviderBuildStatus.ERRORED: BuildStatus.FAILED,
    ProviderBuildStatus.CANCELED: BuildStatus.CANCELLED,
}


class TransitionOutcome(str, Enum):
    """Result of a conditional status write."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"
    STALE = "stale"


@dataclass
class TransitionResult:
    """Outcome of ``apply_status``."""

    outcome: TransitionOutcome
    previous: BuildStatus
    current: BuildStatus

    @property
    def applied(self) -> bool:
        """Whether this call changed the persisted status."""
        return self.outcome == TransitionOutcome.APPLIED


def map_provider_status(value: str | None) -> BuildStatus | None:
    """Translate the provider's status vocabulary.

    Unrecognised values are logged and mapped to None, which callers
    treat as "status unchanged".
    """
    try:
        provider_status = ProviderBuildStatus(value)
    except ValueError:
        logger.warning("Unrecognised provider build status %r; ignoring", value)
        return None
    return PROVIDER_STATUS_MAP[provider_status]


def _current_status(session: Session, build_id: str) -> BuildStatus:
    status = session.execute(
        select(Build.status).where(Build.id == build_id)
    ).scalar_one_or_none()
    if status is None:
        raise BuildNotFoundError(build_id)
    return BuildStatus(status)


def apply_status(
    session: Session,
    build_id: str,
    target: BuildStatus,
    error_summary: str | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    """Move a build to ``target`` if reachable from its persisted status.

    Args:
        session: Database session.
        build_id: Build ID.
        target: Desired status.
        error_summary: Stored alongside a successful write, if given.
        now: Timestamp for started_at/completed_at.

    Returns:
        TransitionResult describing what happened. Duplicate terminal
        notifications are DUPLICATE; a different terminal status on an
        already-terminal build is CONFLICT and logged; any other
        unreachable transition is STALE.

    Raises:
        BuildNotFoundError: If the build does not exist.
    """
    now = now or utc_now()
    sources = REACHABLE_FROM[target]
    values: dict[str, object] = {"status": target.value}
    if target == BuildStatus.BUILDING:
        values["started_at"] = now
    if target.is_terminal:
        values["completed_at"] = now
    if error_summary is not None:
        values["error_summary"] = error_summary

    current = _current_status(session, build_id)
    if current in sources:
        stmt = (
            update(Build)
            .where(Build.id == build_id, Build.status == current.value)
            .values(**values)
        )
        if session.execute(stmt).rowcount == 1:
            logger.info("Build %s: %s -> %s", build_id, current.value, target.value)
            return TransitionResult(TransitionOutcome.APPLIED, current, target)
        current = _current_status(session, build_id)

    if current == target:
        logger.debug("Build %s already %s; duplicate ignored", build_id, target.value)
        return TransitionResult(TransitionOutcome.DUPLICATE, current, current)
    if current.is_terminal and target.is_terminal:
        logger.warning(
            "Inconsistent status for build %s: recorded %s, received %s; keeping %s",
            build_id,
            current.value,
            target.value,
            current.value,
        )
        return TransitionResult(TransitionOutcome.CONFLICT, current, current)
    logger.debug(
        "Build %s: %s -> %s not reachable; ignored",
        build_id,
        current.value,
        target.value,
    )
    return TransitionResult(TransitionOutcome.STALE, current, current)


def mark_accepted(
    session: Session, build_id: str, external_build_id: str, now: datetime | None = None
) -> TransitionResult:
    """Record the provider's build ID and move ``queued -> building``.

    The external ID is written only while it is still unset and the build
    is still queued, so it can never be overwritten.
    """
    now = now or utc_now()
    stmt = (
        update(Build)
        .where(
            Build.id == build_id,
            Build.external_build_id.is_(None),
            Build.status == BuildStatus.QUEUED.value,
        )
        .values(
            external_build_id=external_build_id,
            status=BuildStatus.BUILDING.value,
            started_at=now,
        )
    )
    if session.execute(stmt).rowcount == 1:
        logger.info(
            "Build %s accepted by provider as %s", build_id, external_build_id
        )
        return TransitionResult(
            TransitionOutcome.APPLIED, BuildStatus.QUEUED, BuildStatus.BUILDING
        )
    current = _current_status(session, build_id)
    return TransitionResult(TransitionOutcome.STALE, current, current)


def set_build_fields(session: Session, build_id: str, **values: object) -> None:
    """Write non-status columns (artifact_ref, logs_ref, error_summary)."""
    allowed = {"artifact_ref", "logs_ref", "error_summary"}
    unknown = set(values) - allowed
    if unknown:
        raise ValueError(f"Not writable through set_build_fields: {sorted(unknown)}")
    session.execute(update(Build).where(Build.id == build_id).values(**values))


__all__ = [
    "BuildNotFoundError",
    "InvalidStateError",
    "PROVIDER_STATUS_MAP",
    "REACHABLE_FROM",
    "TransitionOutcome",
    "TransitionResult",
    "apply_status",
    "map_provider_status",
    "mark_accepted",
    "set_build_fields",
]
