"""OTA release management: channels, updates, rollout and telemetry."""

from release_orchestrator.ota.models import Channel, OTAUpdate, UpdateEvent, UpdateMetric
from release_orchestrator.ota.rollout import (
    is_device_eligible,
    rollout_bucket,
    select_update_for_device,
)
from release_orchestrator.ota.service import (
    ChannelExistsError,
    ChannelNotFoundError,
    NoPreviousVersionError,
    NotRollbackableError,
    OTAReleaseManager,
    RuntimeVersionUnknownError,
    UpdateNotFoundError,
    UpdateStateError,
    branch_name,
)

__all__ = [
    "Channel",
    "ChannelExistsError",
    "ChannelNotFoundError",
    "NoPreviousVersionError",
    "NotRollbackableError",
    "OTAReleaseManager",
    "OTAUpdate",
    "RuntimeVersionUnknownError",
    "UpdateEvent",
    "UpdateMetric",
    "UpdateNotFoundError",
    "UpdateStateError",
    "branch_name",
    "is_device_eligible",
    "rollout_bucket",
    "select_update_for_device",
]
