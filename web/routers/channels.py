"""OTA channel endpoints.

- GET /channels?project_id= - List a project's channels
- POST /channels - Create a channel
- GET /channels/{id} - Get channel by ID
- DELETE /channels/{id} - Delete a channel and its updates
- GET /channels/{id}/updates - List updates, newest version first
- POST /channels/{id}/updates - Publish an update
- GET /channels/{id}/resolve - Update a given device should run
"""

from typing import Any

from fastapi import APIRouter, Depends, Query, Response
from fastapi import status as http_status
from pydantic import BaseModel, Field

from release_orchestrator.ota.service import (
    ChannelExistsError,
    ChannelNotFoundError,
    RuntimeVersionUnknownError,
)
from release_orchestrator.projects.service import ProjectNotFoundError
from release_orchestrator.provider.client import (
    ProviderError,
    ProviderUnavailableError,
)
from release_orchestrator.runtime import Orchestrator
from release_orchestrator.types import ChangeType, UpdatePlatform, UpdateStatus
from web.deps import get_runtime, http_error

router = APIRouter()


class CreateChannelRequest(BaseModel):
    """Request body for creating a channel."""

    project_id: str
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    is_default: bool = False
    runtime_version: str | None = None


class PublishUpdateRequest(BaseModel):
    """Request body for publishing an OTA update."""

    message: str = Field(min_length=1)
    change_type: ChangeType
    platform: UpdatePlatform = UpdatePlatform.ALL
    rollout_percent: int = Field(100, ge=0, le=100)
    runtime_version: str | None = None
    can_rollback: bool = True


@router.get("")
def list_channels_endpoint(
    project_id: str = Query(..., description="Project whose channels to list"),
    runtime: Orchestrator = Depends(get_runtime),
) -> list[dict[str, Any]]:
    """List a project's channels, default first."""
    return [c.to_dict() for c in runtime.ota.list_channels(project_id)]


@router.post("", status_code=http_status.HTTP_201_CREATED)
def create_channel_endpoint(
    request: CreateChannelRequest,
    runtime: Orchestrator = Depends(get_runtime),
) -> dict[str, Any]:
    """Create a channel."""
    try:
        channel = runtime.ota.create_channel(
            request.project_id,
            request.name,
            description=request.description,
            is_default=request.is_default,
            runtime_version=request.runtime_version,
        )
    except ProjectNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None
    except ChannelExistsError as e:
        raise http_error(http_status.HTTP_409_CONFLICT, e) from None
    return channel.to_dict()


@router.get("/{channel_id}")
def get_channel_endpoint(
    channel_id: str,
    runtime: Orchestrator = Depends(get_runtime),
) -> dict[str, Any]:
    """Get a channel by ID."""
    try:
        return runtime.ota.get_channel(channel_id).to_dict()
    except ChannelNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None


@router.delete("/{channel_id}", status_code=http_status.HTTP_204_NO_CONTENT)
def delete_channel_endpoint(
    channel_id: str,
    runtime: Orchestrator = Depends(get_runtime),
) -> Response:
    """Delete a channel and everything published on it."""
    try:
        runtime.ota.delete_channel(channel_id)
    except ChannelNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None
    return Response(status_code=http_status.HTTP_204_NO_CONTENT)


@router.get("/{channel_id}/updates")
def list_updates_endpoint(
    channel_id: str,
    status: UpdateStatus | None = Query(None, description="Filter by status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    runtime: Orchestrator = Depends(get_runtime),
) -> list[dict[str, Any]]:
    """List a channel's updates, newest version first."""
    try:
        runtime.ota.get_channel(channel_id)
    except ChannelNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None
    updates = runtime.ota.list_updates(
        channel_id, status=status, limit=limit, offset=offset
    )
    return [u.to_dict() for u in updates]


@router.post("/{channel_id}/updates", status_code=http_status.HTTP_201_CREATED)
def publish_update_endpoint(
    channel_id: str,
    request: PublishUpdateRequest,
    runtime: Orchestrator = Depends(get_runtime),
) -> dict[str, Any]:
    """Publish an OTA update to a channel.

    Raises:
        HTTPException: 404 for an unknown channel, 400 when no runtime
            version is known, 503 when the provider cannot be reached, 502
            when it rejects the publish.
    """
    try:
        ota_update = runtime.ota.publish_update(
            channel_id,
            request.message,
            request.change_type,
            platform=request.platform,
            rollout_percent=request.rollout_percent,
            runtime_version=request.runtime_version,
            can_rollback=request.can_rollback,
        )
    except ChannelNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None
    except RuntimeVersionUnknownError as e:
        raise http_error(http_status.HTTP_400_BAD_REQUEST, e) from None
    except ProviderUnavailableError as e:
        raise http_error(
            http_status.HTTP_503_SERVICE_UNAVAILABLE, e, hint=e.hint
        ) from None
    except ProviderError as e:
        raise http_error(http_status.HTTP_502_BAD_GATEWAY, e) from None
    return ota_update.to_dict()


@router.get("/{channel_id}/resolve")
def resolve_update_endpoint(
    channel_id: str,
    device_id: str = Query(..., min_length=1, description="Stable device identifier"),
    platform: str | None = Query(None, description="Device platform"),
    runtime: Orchestrator = Depends(get_runtime),
) -> dict[str, Any]:
    """Update a device on this channel should run, if any."""
    try:
        ota_update = runtime.ota.resolve_update(channel_id, device_id, platform)
    except ChannelNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None
    return {
        "channel_id": channel_id,
        "device_id": device_id,
        "update": ota_update.to_dict() if ota_update is not None else None,
    }
