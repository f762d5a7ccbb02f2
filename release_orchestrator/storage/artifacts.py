"""Build artifact and log storage.

This module handles:
- Key layout for build binaries and logs
- Guarded uploads through the storage circuit breaker
- Signed download URLs
- Extracting an error summary from provider build logs
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import TypeVar

from release_orchestrator.resilience import (
    CircuitOpenError,
    ResilientCaller,
    RetryAbortedError,
)
from release_orchestrator.storage.backend import StorageBackend, StorageFailureError
from release_orchestrator.types import Platform

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONTENT_TYPES = {
    Platform.IOS: "application/octet-stream",
    Platform.ANDROID: "application/vnd.android.package-archive",
}
EXTENSIONS = {Platform.IOS: "ipa", Platform.ANDROID: "apk"}

ERROR_LINE_RE = re.compile(r"(error|failed|exception|fatal):", re.IGNORECASE)
MAX_ERROR_SUMMARY = 500


def artifact_key(project_id: str, build_id: str, platform: Platform | str) -> str:
    """Return the storage key of a build binary."""
    return f"builds/{project_id}/{build_id}.{EXTENSIONS[Platform(platform)]}"


def logs_key(project_id: str, build_id: str) -> str:
    """Return the storage key of a build log."""
    return f"builds/{project_id}/{build_id}/logs.txt"


def extract_error_summary(logs: str, limit: int = MAX_ERROR_SUMMARY) -> str | None:
    """Pick the most relevant error line from build logs.

    The last line mentioning ``error:``, ``failed:``, ``exception:`` or
    ``fatal:`` wins, since the final failure is usually the root cause.

    Args:
        logs: Raw log text.
        limit: Maximum length of the summary.

    Returns:
        Trimmed summary, or None if no error line is found.
    """
    matches = [
        line.strip() for line in logs.splitlines() if ERROR_LINE_RE.search(line)
    ]
    if not matches:
        return None
    return matches[-1][:limit]


class ArtifactStore:
    """Storage operations for builds, guarded by breaker and retry.

    Every backend failure, including a refused call while the storage
    circuit is open, is raised as StorageFailureError.
    """

    def __init__(self, backend: StorageBackend, caller: ResilientCaller) -> None:
        self.backend = backend
        self.caller = caller

    def _guarded(self, operation: str, key: str, fn: Callable[[], T]) -> T:
        try:
            return self.caller.call(fn)
        except StorageFailureError:
            raise
        except (CircuitOpenError, RetryAbortedError) as e:
            raise StorageFailureError(f"Storage unavailable during {operation}", key=key) from e
        except Exception as e:
            raise StorageFailureError(f"Storage {operation} failed for {key}: {e}", key=key) from e

    def store_artifact(
        self, project_id: str, build_id: str, platform: Platform | str, data: bytes
    ) -> str:
        """Upload a build binary and return its locator."""
        key = artifact_key(project_id, build_id, platform)
        metadata = {
            "content_type": CONTENT_TYPES[Platform(platform)],
            "build_id": build_id,
            "project_id": project_id,
        }
        locator = self._guarded(
            "upload", key, lambda: self.backend.upload(key, data, metadata)
        )
        logger.info("Stored artifact for build %s at %s", build_id, locator)
        return locator

    def store_logs(self, project_id: str, build_id: str, logs: str) -> str:
        """Upload build logs and return their key."""
        key = logs_key(project_id, build_id)
        self._guarded(
            "upload",
            key,
            lambda: self.backend.upload(
                key, logs.encode("utf-8"), {"content_type": "text/plain"}
            ),
        )
        return key

    def read_logs(self, key: str) -> str:
        """Read stored logs back as text."""
        data = self._guarded("download", key, lambda: self.backend.download(key))
        return data.decode("utf-8", errors="replace")

    def signed_url(self, key: str, ttl: int) -> str:
        """Mint a time-limited download URL."""
        return self._guarded("sign", key, lambda: self.backend.signed_url(key, ttl))

    def delete(self, key: str) -> None:
        """Remove a stored object."""
        self._guarded("delete", key, lambda: self.backend.delete(key))


def key_from_locator(locator: str) -> str:
    """Strip the scheme from a locator returned by a backend."""
    _, sep, rest = locator.partition("://")
    return rest if sep else locator


__all__ = [
    "ArtifactStore",
    "artifact_key",
    "extract_error_summary",
    "key_from_locator",
    "logs_key",
]
