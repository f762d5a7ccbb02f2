"""Deterministic rollout bucketing.

Each (update, device) pair hashes to a bucket in [0, 100). A device is
eligible for an update when its bucket is below the update's rollout
percentage, so raising the percentage only ever adds devices and a
device checking repeatedly always gets the same answer.
"""

import hashlib
from collections.abc import Iterable

from release_orchestrator.ota.models import OTAUpdate
from release_orchestrator.types import UpdatePlatform, UpdateStatus


def rollout_bucket(update_id: str, device_id: str) -> int:
    """Stable bucket in [0, 100) for a device and update."""
    digest = hashlib.sha256(f"{update_id}:{device_id}".encode()).hexdigest()
    return int(digest[:8], 16) % 100


def is_device_eligible(update_id: str, device_id: str, rollout_percent: int) -> bool:
    """Whether a device falls inside an update's rollout."""
    if rollout_percent >= 100:
        return True
    if rollout_percent <= 0:
        return False
    return rollout_bucket(update_id, device_id) < rollout_percent


def select_update_for_device(
    updates: Iterable[OTAUpdate], device_id: str, platform: str | None = None
) -> OTAUpdate | None:
    """Pick the update a device should run among co-active updates.

    Args:
        updates: Candidate updates, typically the active ones of a channel.
        device_id: Stable device identifier.
        platform: Device platform; updates for other platforms are skipped.

    Returns:
        The highest-version active update the device is eligible for.
    """
    eligible = [
        update
        for update in updates
        if update.status == UpdateStatus.ACTIVE.value
        and (
            platform is None
            or update.platform in (UpdatePlatform.ALL.value, platform)
        )
        and is_device_eligible(update.id, device_id, update.rollout_percent)
    ]
    if not eligible:
        return None
    return max(eligible, key=lambda update: update.version)


__all__ = ["is_device_eligible", "rollout_bucket", "select_update_for_device"]
