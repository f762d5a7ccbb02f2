"""Build orchestration service.

This module provides the build API:
- trigger_build(): validate, persist a queued Build, enqueue its job
- process_build(): worker entry point that hands the build to the provider
- cancel_build(): operator cancel with best-effort provider cancel
- handle_provider_update(): shared reconciliation path for webhooks and
  the status poller
- Artifact and log transfer after a build finishes
- Queries: get_build, list_builds, get_build_status
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from release_orchestrator.builds.models import Build
from release_orchestrator.builds.state import (
    BuildNotFoundError,
    InvalidStateError,
    TransitionOutcome,
    TransitionResult,
    apply_status,
    map_provider_status,
    mark_accepted,
    set_build_fields,
)
from release_orchestrator.db import get_session
from release_orchestrator.jobs.models import Job
from release_orchestrator.jobs.queue import JobQueue
from release_orchestrator.projects.models import Project
from release_orchestrator.projects.service import get_project
from release_orchestrator.provider.client import (
    BuildProviderClient,
    ProviderBuild,
    ProviderError,
    ProviderUnavailableError,
)
from release_orchestrator.storage.artifacts import (
    MAX_ERROR_SUMMARY,
    ArtifactStore,
    extract_error_summary,
    key_from_locator,
)
from release_orchestrator.storage.backend import StorageFailureError
from release_orchestrator.types import (
    PROFILE_PRIORITY,
    BuildProfile,
    BuildStatus,
    OperationResult,
    Platform,
    ValidationIssue,
    ValidationTier,
)
from release_orchestrator.validation.pipeline import ValidationPipeline

if TYPE_CHECKING:
    from release_orchestrator.builds.poller import StatusPoller

logger = logging.getLogger(__name__)

BUILD_JOB_KIND = "build"
POLL_TIMEOUT_MESSAGE = "Build status polling timed out"


class ValidationFailedError(Exception):
    """Raised when pre-build validation rejects a project."""

    def __init__(
        self, errors: Sequence[ValidationIssue], code: str = "validation_failed"
    ) -> None:
        super().__init__(f"Validation failed with {len(errors)} error(s)")
        self.errors = list(errors)
        self.code = code


def get_build(session: Session, build_id: str) -> Build:
    """Get a build by ID.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = session.get(Build, build_id)
    if build is None:
        raise BuildNotFoundError(build_id)
    return build


def find_build_by_external_id(session: Session, external_build_id: str) -> Build | None:
    """Look up a build by the provider's build ID."""
    return session.execute(
        select(Build).where(Build.external_build_id == external_build_id)
    ).scalar_one_or_none()


def list_builds(
    session: Session,
    project_id: str | None = None,
    platform: Platform | None = None,
    status: BuildStatus | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[Build], int]:
    """List builds, newest first.

    Args:
        session: Database session.
        project_id: Filter by project.
        platform: Filter by platform.
        status: Filter by status.
        limit: Page size.
        offset: Rows to skip.

    Returns:
        Tuple of (page of builds, total matching builds).
    """
    stmt = select(Build)
    if project_id is not None:
        stmt = stmt.where(Build.project_id == project_id)
    if platform is not None:
        stmt = stmt.where(Build.platform == platform.value)
    if status is not None:
        stmt = stmt.where(Build.status == status.value)

    total = session.execute(
        select(func.count()).select_from(stmt.subquery())
    ).scalar_one()
    page = session.execute(
        stmt.order_by(Build.created_at.desc(), Build.id).limit(limit).offset(offset)
    ).scalars()
    return list(page), total


def get_build_status(session: Session, build_id: str) -> dict[str, Any]:
    """Compact status view of a build."""
    build = get_build(session, build_id)
    return {
        "id": build.id,
        "status": build.status,
        "external_build_id": build.external_build_id,
        "error_summary": build.error_summary,
        "artifact_available": build.artifact_ref is not None,
        "started_at": build.started_at.isoformat() if build.started_at else None,
        "completed_at": (
            build.completed_at.isoformat() if build.completed_at else None
        ),
    }


class BuildOrchestrator:
    """Owns the Build lifecycle.

    Args:
        session_factory: Factory for database sessions.
        provider: Build provider client.
        artifacts: Artifact store for binaries and logs.
        queue: Job queue the builds are enqueued on.
        validator: Pre-build validation pipeline.
        skip_validation: Bypass validation (emergency builds).
        validation_tier: Tier run before each build.
        executor: Runs artifact and log transfers off the request path.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        provider: BuildProviderClient,
        artifacts: ArtifactStore,
        queue: JobQueue,
        validator: ValidationPipeline | None = None,
        skip_validation: bool = False,
        validation_tier: ValidationTier = ValidationTier.FULL,
        executor: Executor | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.provider = provider
        self.artifacts = artifacts
        self.queue = queue
        self.validator = validator
        self.skip_validation = skip_validation
        self.validation_tier = validation_tier
        self.poller: StatusPoller | None = None

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="build-transfer"
        )
        self._pending: set[Future[Any]] = set()
        self._pending_lock = threading.Lock()

    # Requests

    def trigger_build(
        self,
        project_id: str,
        platform: Platform,
        version: int,
        profile: BuildProfile,
    ) -> Build:
        """Validate a project and queue a build.

        Args:
            project_id: Project to build.
            platform: Target platform.
            version: Build number.
            profile: Provider build profile.

        Returns:
            The new Build in ``queued`` status.

        Raises:
            ProjectNotFoundError: If the project is unknown.
            ValidationFailedError: If validation rejects the project; no
                Build is created.
        """
        if version < 1:
            raise ValueError("version must be a positive integer")

        with get_session(self.session_factory) as session:
            project = get_project(session, project_id)
            source_path = project.source_path

        self._validate(project_id, source_path)

        with get_session(self.session_factory) as session:
            build = Build(
                project_id=project_id,
                platform=platform.value,
                version=version,
                profile=profile.value,
                status=BuildStatus.QUEUED.value,
            )
            session.add(build)
            session.flush()
            logger.info(
                "Created %s %s build %s (v%d) for project %s",
                profile.value,
                platform.value,
                build.id,
                version,
                project_id,
            )

        try:
            self.queue.enqueue(
                build.id,
                {"build_id": build.id},
                priority=PROFILE_PRIORITY[profile],
                kind=BUILD_JOB_KIND,
            )
        except Exception as e:
            with get_session(self.session_factory) as session:
                apply_status(
                    session, build.id, BuildStatus.FAILED, error_summary=f"Enqueue failed: {e}"
                )
            raise
        return build

    def _validate(self, project_id: str, source_path: str | None) -> None:
        if self.skip_validation:
            logger.warning("Validation skipped for project %s", project_id)
            return
        if self.validator is None or not source_path:
            logger.info("No validation configured for project %s", project_id)
            return
        result = self.validator.run_tier(source_path, self.validation_tier)
        if not result.passed:
            raise ValidationFailedError(result.errors)

    def process_build(
        self, build_id: str, abort: threading.Event | None = None
    ) -> Build:
        """Hand a queued build to the provider.

        Idempotent: a build that already has an external ID is not
        triggered again, and a build cancelled meanwhile makes no
        provider calls.

        Raises:
            ProviderUnavailableError: On exhausted transient failures, so
                the job is retried.
        """
        project_id = self._checkpoint(build_id)
        if project_id is None:
            return self._load(build_id)

        provider_project_id = self._ensure_provider_project(project_id, abort)
        if self._checkpoint(build_id) is None:
            return self._load(build_id)

        build = self._load(build_id)
        try:
            accepted = self.provider.trigger_build(
                provider_project_id, build.platform, build.profile, abort=abort
            )
        except ProviderError as e:
            # Provider rejections fail the build without retrying.
            logger.error("Provider rejected build %s: %s", build_id, e)
            with get_session(self.session_factory) as session:
                apply_status(
                    session,
                    build_id,
                    BuildStatus.FAILED,
                    error_summary=str(e)[:MAX_ERROR_SUMMARY],
                )
            return self._load(build_id)

        with get_session(self.session_factory) as session:
            result = mark_accepted(session, build_id, accepted.id)

        if not result.applied:
            current = self._load(build_id)
            # Any remote build other than the recorded one is orphaned.
            if current.external_build_id != accepted.id:
                logger.info(
                    "Build %s is %s with external build %s; cancelling duplicate %s",
                    build_id,
                    result.current.value,
                    current.external_build_id,
                    accepted.id,
                )
                self._best_effort_cancel(accepted.id)
            return current

        if self.poller is not None:
            self.poller.start_polling(build_id, accepted.id)
        return self._load(build_id)

    def _checkpoint(self, build_id: str) -> str | None:
        """Return the project ID if the build still needs a provider trigger."""
        with get_session(self.session_factory) as session:
            build = get_build(session, build_id)
            if build.is_terminal():
                logger.info("Build %s is %s; nothing to process", build_id, build.status)
                return None
            if build.external_build_id is not None:
                logger.info(
                    "Build %s already accepted as %s; not re-triggering",
                    build_id,
                    build.external_build_id,
                )
                if self.poller is not None:
                    self.poller.start_polling(build_id, build.external_build_id)
                return None
            return build.project_id

    def _ensure_provider_project(
        self, project_id: str, abort: threading.Event | None = None
    ) -> str:
        with get_session(self.session_factory) as session:
            project = get_project(session, project_id)
            if project.provider_project_id:
                return project.provider_project_id
            descriptor = project.descriptor()

        created = self.provider.create_project(descriptor, abort=abort)
        with get_session(self.session_factory) as session:
            session.execute(
                update(Project)
                .where(Project.id == project_id, Project.provider_project_id.is_(None))
                .values(provider_project_id=created)
            )
            return get_project(session, project_id).provider_project_id or created

    def process_job(self, job: Job, abort: threading.Event) -> None:
        """Worker processor for build jobs.

        When the final attempt fails the build is marked failed with the
        error, so no build is left queued forever.
        """
        build_id = str(job.payload["build_id"])
        try:
            self.process_build(build_id, abort=abort)
        except Exception as e:
            if job.attempts >= job.max_attempts:
                message = (
                    e.hint if isinstance(e, ProviderUnavailableError) else str(e)
                ) or type(e).__name__
                with get_session(self.session_factory) as session:
                    apply_status(
                        session,
                        build_id,
                        BuildStatus.FAILED,
                        error_summary=message[:MAX_ERROR_SUMMARY],
                    )
            raise

    def cancel_build(self, build_id: str) -> Build:
        """Cancel a queued or building build.

        Raises:
            BuildNotFoundError: If build not found.
            InvalidStateError: If the build is already terminal.
        """
        with get_session(self.session_factory) as session:
            build = get_build(session, build_id)
            if build.is_terminal():
                raise InvalidStateError(build_id, build.status, "cancel")
            external_build_id = build.external_build_id

        if external_build_id:
            self._best_effort_cancel(external_build_id)

        with get_session(self.session_factory) as session:
            result = apply_status(session, build_id, BuildStatus.CANCELLED)
        if result.outcome not in (TransitionOutcome.APPLIED, TransitionOutcome.DUPLICATE):
            raise InvalidStateError(build_id, result.current.value, "cancel")

        self.queue.cancel(build_id)
        if self.poller is not None:
            self.poller.stop_polling(build_id)
        return self._load(build_id)

    def _best_effort_cancel(self, external_build_id: str) -> None:
        try:
            self.provider.cancel_build(external_build_id)
        except Exception as e:
            logger.warning(
                "Provider cancel for %s failed (continuing): %s", external_build_id, e
            )

    # Reconciliation

    def handle_provider_update(
        self, build_id: str, provider_build: ProviderBuild
    ) -> TransitionResult | None:
        """Apply a provider status report to a build.

        Webhooks and the status poller both come through here, so they
        follow identical transition rules.

        Returns:
            The transition result, or None if the provider status was not
            recognised.
        """
        target = map_provider_status(provider_build.status)
        if target is None:
            return None

        error_summary = None
        if target == BuildStatus.FAILED and provider_build.error_message:
            error_summary = provider_build.error_message[:MAX_ERROR_SUMMARY]

        with get_session(self.session_factory) as session:
            result = apply_status(session, build_id, target, error_summary=error_summary)

        if result.applied and target.is_terminal:
            if self.poller is not None:
                self.poller.stop_polling(build_id)
            if target == BuildStatus.SUCCESS and provider_build.artifact_url:
                self.schedule(self.transfer_artifact, build_id, provider_build.artifact_url)
            if target != BuildStatus.CANCELLED:
                self.schedule(self.capture_logs, build_id)
        return result

    def expire_polling(self, build_id: str) -> TransitionResult:
        """Fail a build whose status polling gave up, if still non-terminal."""
        with get_session(self.session_factory) as session:
            return apply_status(
                session,
                build_id,
                BuildStatus.FAILED,
                error_summary=POLL_TIMEOUT_MESSAGE,
            )

    def schedule(self, fn: Callable[..., Any], *args: Any) -> Future[Any]:
        """Run ``fn`` in the background, logging any failure."""

        def run() -> Any:
            try:
                return fn(*args)
            except Exception:
                logger.exception("Background task %s failed", getattr(fn, "__name__", fn))
                return None

        future = self._executor.submit(run)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._discard_pending)
        return future

    def _discard_pending(self, future: Future[Any]) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def wait_for_background(self, timeout: float | None = None) -> bool:
        """Wait for scheduled transfers; True if all finished."""
        with self._pending_lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    def transfer_artifact(self, build_id: str, artifact_url: str) -> OperationResult:
        """Copy a finished build's binary into artifact storage.

        Failures degrade to "build succeeded, artifact unavailable": the
        status stays ``success`` and the reason is kept in error_summary.
        """
        build = self._load(build_id)
        try:
            data = self.provider.download_artifact(artifact_url)
            locator = self.artifacts.store_artifact(
                build.project_id, build.id, build.platform, data
            )
        except (ProviderError, ProviderUnavailableError, StorageFailureError) as e:
            logger.error("Artifact transfer for build %s failed: %s", build_id, e)
            message = f"Artifact unavailable: {e}"[:MAX_ERROR_SUMMARY]
            with get_session(self.session_factory) as session:
                set_build_fields(session, build_id, error_summary=message)
            return OperationResult(
                success=False, message=message, code="storage_failure"
            )

        with get_session(self.session_factory) as session:
            set_build_fields(session, build_id, artifact_ref=locator)
        return OperationResult(
            success=True,
            message=f"Stored artifact at {locator}",
            details={"artifact_ref": locator, "size_bytes": len(data)},
        )

    def capture_logs(self, build_id: str) -> OperationResult:
        """Fetch and store provider logs for a finished build.

        For failed builds without an error summary, one is extracted from
        the logs.
        """
        build = self._load(build_id)
        if not build.external_build_id:
            return OperationResult(False, "Build has no provider ID", code="invalid_state")
        try:
            logs = self.provider.get_build_logs(build.external_build_id)
            key = self.artifacts.store_logs(build.project_id, build.id, logs)
        except (ProviderError, ProviderUnavailableError, StorageFailureError) as e:
            logger.warning("Log capture for build %s failed: %s", build_id, e)
            return OperationResult(False, str(e), code=getattr(e, "code", None))

        fields: dict[str, object] = {"logs_ref": key}
        if build.status == BuildStatus.FAILED.value and not build.error_summary:
            summary = extract_error_summary(logs)
            if summary:
                fields["error_summary"] = summary
        with get_session(self.session_factory) as session:
            set_build_fields(session, build_id, **fields)
        return OperationResult(True, f"Stored logs at {key}", details={"logs_ref": key})

    # Reads

    def _load(self, build_id: str) -> Build:
        with get_session(self.session_factory) as session:
            return get_build(session, build_id)

    def get_build_logs(self, build_id: str) -> str:
        """Return build logs from storage, falling back to the provider.

        Raises:
            InvalidStateError: If the build was never accepted by the provider.
        """
        build = self._load(build_id)
        if build.logs_ref:
            return self.artifacts.read_logs(build.logs_ref)
        if not build.external_build_id:
            raise InvalidStateError(build_id, build.status, "fetch logs for")
        return self.provider.get_build_logs(build.external_build_id)

    def get_download_url(self, build_id: str, ttl: int) -> str:
        """Signed URL for a successful build's artifact.

        Raises:
            InvalidStateError: If the build has not succeeded or has no artifact.
        """
        build = self._load(build_id)
        if build.status != BuildStatus.SUCCESS.value or not build.artifact_ref:
            raise InvalidStateError(build_id, build.status, "download artifact of")
        return self.artifacts.signed_url(key_from_locator(build.artifact_ref), ttl)

    def close(self) -> None:
        """Wait for background transfers and release the executor."""
        if self._owns_executor:
            self._executor.shutdown(wait=True)


__all__ = [
    "BUILD_JOB_KIND",
    "BuildNotFoundError",
    "BuildOrchestrator",
    "InvalidStateError",
    "ValidationFailedError",
    "find_build_by_external_id",
    "get_build",
    "get_build_status",
    "list_builds",
]
