"""Build management endpoints.

- GET /builds - List builds (paginated, filter by project/platform/status)
- POST /builds - Validate and queue a build
- GET /builds/{id} - Get build by ID
- GET /builds/{id}/status - Compact status view
- POST /builds/{id}/cancel - Cancel a queued or building build
- GET /builds/{id}/logs - Build logs (text or JSON)
- GET /builds/{id}/download - Signed artifact download URL
"""

from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi import status as http_status
from fastapi.responses import PlainTextResponse, Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from release_orchestrator.builds.service import (
    BuildNotFoundError,
    InvalidStateError,
    ValidationFailedError,
    get_build,
    get_build_status,
    list_builds,
)
from release_orchestrator.db import utc_now
from release_orchestrator.projects.service import ProjectNotFoundError
from release_orchestrator.provider.client import (
    ProviderError,
    ProviderUnavailableError,
)
from release_orchestrator.runtime import Orchestrator
from release_orchestrator.storage.backend import StorageFailureError
from release_orchestrator.types import BuildProfile, BuildStatus, Platform
from web.deps import get_db, get_runtime, http_error

router = APIRouter()


class TriggerBuildRequest(BaseModel):
    """Request body for triggering a build."""

    project_id: str
    platform: Platform
    version: int = Field(ge=1)
    profile: BuildProfile = BuildProfile.PRODUCTION


def _parse_enum(enum_cls: Any, value: str | None, code: str) -> Any:
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        valid = ", ".join(member.value for member in enum_cls)
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail={
                "code": code,
                "message": f"Invalid value: {value}. Valid values: {valid}",
            },
        ) from None


@router.get("")
def list_builds_endpoint(
    project_id: str | None = Query(None, description="Filter by project ID"),
    platform: str | None = Query(None, description="Filter by platform"),
    status: str | None = Query(None, description="Filter by status"),
    limit: int = Query(20, ge=1, le=100, description="Page size"),
    offset: int = Query(0, ge=0, description="Rows to skip"),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """List builds, newest first."""
    platform_filter = _parse_enum(Platform, platform, "invalid_platform")
    status_filter = _parse_enum(BuildStatus, status, "invalid_status")
    builds, total = list_builds(
        db,
        project_id=project_id,
        platform=platform_filter,
        status=status_filter,
        limit=limit,
        offset=offset,
    )
    return {
        "items": [b.to_dict() for b in builds],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.post("", status_code=http_status.HTTP_202_ACCEPTED)
def trigger_build_endpoint(
    request: TriggerBuildRequest,
    runtime: Orchestrator = Depends(get_runtime),
) -> dict[str, Any]:
    """Validate a project and queue a build.

    Raises:
        HTTPException: 404 for an unknown project, 422 when validation
            fails, 503 when the queue no longer accepts work.
    """
    try:
        build = runtime.builds.trigger_build(
            request.project_id, request.platform, request.version, request.profile
        )
    except ProjectNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None
    except ValidationFailedError as e:
        raise http_error(
            http_status.HTTP_422_UNPROCESSABLE_ENTITY,
            e,
            errors=[issue.to_dict() for issue in e.errors],
        ) from None
    except ValueError as e:
        raise http_error(http_status.HTTP_400_BAD_REQUEST, e) from None
    except RuntimeError as e:
        raise HTTPException(
            status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "shutting_down", "message": str(e)},
        ) from None
    return build.to_dict()


@router.get("/{build_id}")
def get_build_endpoint(
    build_id: str,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get a build by ID."""
    try:
        return get_build(db, build_id).to_dict()
    except BuildNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None


@router.get("/{build_id}/status")
def get_build_status_endpoint(
    build_id: str,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Compact status view of a build."""
    try:
        return get_build_status(db, build_id)
    except BuildNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None


@router.post("/{build_id}/cancel")
def cancel_build_endpoint(
    build_id: str,
    runtime: Orchestrator = Depends(get_runtime),
) -> dict[str, Any]:
    """Cancel a queued or building build."""
    try:
        return runtime.builds.cancel_build(build_id).to_dict()
    except BuildNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None
    except InvalidStateError as e:
        raise http_error(http_status.HTTP_409_CONFLICT, e) from None


@router.get("/{build_id}/logs", response_model=None)
def get_build_logs_endpoint(
    build_id: str,
    request: Request,
    runtime: Orchestrator = Depends(get_runtime),
) -> Response | dict[str, Any]:
    """Build logs, as plain text unless the client asks for JSON."""
    try:
        logs = runtime.builds.get_build_logs(build_id)
    except BuildNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None
    except InvalidStateError as e:
        raise http_error(http_status.HTTP_409_CONFLICT, e) from None
    except (ProviderUnavailableError, StorageFailureError) as e:
        raise http_error(http_status.HTTP_503_SERVICE_UNAVAILABLE, e) from None
    except ProviderError as e:
        raise http_error(http_status.HTTP_502_BAD_GATEWAY, e) from None

    if "application/json" in request.headers.get("accept", ""):
        return {"build_id": build_id, "logs": logs}
    return PlainTextResponse(logs)


@router.get("/{build_id}/download")
def get_download_url_endpoint(
    build_id: str,
    expires_in: int | None = Query(
        None, ge=60, le=7 * 24 * 3600, description="URL lifetime in seconds"
    ),
    runtime: Orchestrator = Depends(get_runtime),
) -> dict[str, Any]:
    """Signed download URL for a successful build's artifact."""
    ttl = expires_in or runtime.settings.signed_url_ttl
    try:
        url = runtime.builds.get_download_url(build_id, ttl)
    except BuildNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None
    except InvalidStateError as e:
        raise http_error(http_status.HTTP_400_BAD_REQUEST, e) from None
    except StorageFailureError as e:
        raise http_error(http_status.HTTP_503_SERVICE_UNAVAILABLE, e) from None
    return {
        "build_id": build_id,
        "download_url": url,
        "expires_in": ttl,
        "expires_at": (utc_now() + timedelta(seconds=ttl)).isoformat(),
    }
