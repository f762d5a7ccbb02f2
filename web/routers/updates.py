"""OTA update endpoints.

- GET /updates/{id} - Get update by ID
- PUT /updates/{id}/rollout - Change rollout percentage
- POST /updates/{id}/rollback - Roll the channel back from this update
- POST /updates/{id}/events - Ingest a telemetry event
- GET /updates/{id}/metrics - Daily metrics with success rate
- GET /updates/{id}/status - Update, metrics and frequent errors
"""

from typing import Any

from fastapi import APIRouter, Depends
from fastapi import status as http_status
from pydantic import BaseModel, Field

from release_orchestrator.ota.service import (
    NoPreviousVersionError,
    NotRollbackableError,
    UpdateNotFoundError,
    UpdateStateError,
)
from release_orchestrator.runtime import Orchestrator
from release_orchestrator.types import UpdateEventType
from web.deps import get_runtime, http_error

router = APIRouter()


class RolloutRequest(BaseModel):
    """Request body for changing a rollout."""

    rollout_percent: int = Field(ge=0, le=100)


class RollbackRequest(BaseModel):
    """Request body for a rollback."""

    target_update_id: str | None = None


class TrackEventRequest(BaseModel):
    """Telemetry event reported by an app instance."""

    event_type: UpdateEventType
    platform: str = Field(min_length=1, max_length=20)
    app_version: str = Field(min_length=1, max_length=50)
    device_id: str | None = None
    duration_ms: int | None = Field(None, ge=0)
    error: str | None = None


@router.get("/{update_id}")
def get_update_endpoint(
    update_id: str,
    runtime: Orchestrator = Depends(get_runtime),
) -> dict[str, Any]:
    """Get an update by ID."""
    try:
        return runtime.ota.get_update(update_id).to_dict()
    except UpdateNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None


@router.put("/{update_id}/rollout")
def set_rollout_endpoint(
    update_id: str,
    request: RolloutRequest,
    runtime: Orchestrator = Depends(get_runtime),
) -> dict[str, Any]:
    """Widen or narrow an active update's rollout."""
    try:
        return runtime.ota.set_rollout(update_id, request.rollout_percent).to_dict()
    except UpdateNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None
    except UpdateStateError as e:
        raise http_error(http_status.HTTP_409_CONFLICT, e) from None


@router.post("/{update_id}/rollback")
def rollback_update_endpoint(
    update_id: str,
    request: RollbackRequest | None = None,
    runtime: Orchestrator = Depends(get_runtime),
) -> dict[str, Any]:
    """Roll back from an update; returns the reactivated update."""
    target_update_id = request.target_update_id if request is not None else None
    try:
        target = runtime.ota.rollback_update(update_id, target_update_id)
    except UpdateNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None
    except (NotRollbackableError, NoPreviousVersionError, UpdateStateError) as e:
        raise http_error(http_status.HTTP_409_CONFLICT, e) from None
    return target.to_dict()


@router.post("/{update_id}/events", status_code=http_status.HTTP_201_CREATED)
def track_event_endpoint(
    update_id: str,
    request: TrackEventRequest,
    runtime: Orchestrator = Depends(get_runtime),
) -> dict[str, Any]:
    """Record a telemetry event."""
    try:
        event = runtime.ota.track_event(
            update_id,
            request.event_type,
            platform=request.platform,
            app_version=request.app_version,
            device_id=request.device_id,
            duration_ms=request.duration_ms,
            error=request.error,
        )
    except UpdateNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None
    return {"id": event.id, "update_id": update_id, "event_type": event.event_type}


@router.get("/{update_id}/metrics")
def get_update_metrics_endpoint(
    update_id: str,
    runtime: Orchestrator = Depends(get_runtime),
) -> list[dict[str, Any]]:
    """Daily metrics of an update, newest first."""
    try:
        return runtime.ota.get_update_metrics(update_id)
    except UpdateNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None


@router.get("/{update_id}/status")
def get_update_status_endpoint(
    update_id: str,
    runtime: Orchestrator = Depends(get_runtime),
) -> dict[str, Any]:
    """Update, its metrics and its most frequent error messages."""
    try:
        return runtime.ota.get_update_status(update_id)
    except UpdateNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None
