"""Artifact storage for build binaries and logs."""

from release_orchestrator.storage.artifacts import (
    ArtifactStore,
    artifact_key,
    extract_error_summary,
    key_from_locator,
    logs_key,
)
from release_orchestrator.storage.backend import (
    LocalStorageBackend,
    StorageBackend,
    StorageFailureError,
)

__all__ = [
    "ArtifactStore",
    "LocalStorageBackend",
    "StorageBackend",
    "StorageFailureError",
    "artifact_key",
    "extract_error_summary",
    "key_from_locator",
    "logs_key",
]
