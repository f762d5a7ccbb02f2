"""External build provider client.

This module wraps the remote build-farm REST API:
- Project registration
- Build trigger, status, logs, cancel
- Artifact download
- Update branch management and OTA publishing

Every request goes through a ResilientCaller (retry around a circuit
breaker). Transient failures that survive retrying, and calls refused by
an open circuit, surface as ProviderUnavailableError.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import httpx

from release_orchestrator.resilience import (
    CircuitOpenError,
    ResilientCaller,
    RetryAbortedError,
    is_transient_error,
    is_unsent_request_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProviderError(Exception):
    """Raised when the provider rejects a request."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str = "provider_error",
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class ProviderUnavailableError(Exception):
    """Raised when the provider cannot be reached; retry later."""

    def __init__(
        self, message: str, code: str = "provider_unavailable"
    ) -> None:
        super().__init__(message)
        self.code = code
        self.hint = "The build provider is unavailable; retry later."


@dataclass
class ProviderBuild:
    """Build state as reported by the provider."""

    id: str
    status: str
    platform: str | None = None
    artifact_url: str | None = None
    logs_url: str | None = None
    error_message: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ProviderBuild:
        """Build from a provider JSON document (API response or webhook)."""
        artifacts = payload.get("artifacts")
        if not isinstance(artifacts, dict):
            artifacts = {}
        error = payload.get("error") or {}
        return cls(
            id=str(payload.get("id", "")),
            status=str(payload.get("status", "")),
            platform=payload.get("platform"),
            artifact_url=artifacts.get("buildUrl"),
            logs_url=artifacts.get("logsUrl") or payload.get("logsUrl"),
            error_message=error.get("message") if isinstance(error, dict) else None,
            raw=payload,
        )


@dataclass
class PublishedUpdate:
    """Result of publishing an OTA update."""

    id: str
    group_id: str | None
    manifest_url: str | None


def is_breaker_failure(error: BaseException) -> bool:
    """Client errors other than 429 do not indicate an unhealthy provider."""
    if isinstance(error, ProviderError) and error.status_code is not None:
        return error.status_code == 429 or error.status_code >= 500
    return True


class BuildProviderClient:
    """HTTP client for the external build provider.

    Args:
        base_url: Provider API base URL.
        token: Bearer token.
        caller: ResilientCaller guarding every request.
        timeout: httpx request timeout in seconds.
        http_client: Optional preconfigured httpx client (for tests).
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        caller: ResilientCaller,
        timeout: float = 120.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.caller = caller
        self._owns_client = http_client is None
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = http_client or httpx.Client(
            base_url=self.base_url, headers=headers, timeout=timeout
        )

    def close(self) -> None:
        """Close the underlying HTTP client if owned."""
        if self._owns_client:
            self._client.close()

    def _guarded(
        self,
        operation: str,
        fn: Callable[[], T],
        abort: threading.Event | None = None,
        is_retryable: Callable[[BaseException], bool] | None = None,
    ) -> T:
        try:
            return self.caller.call(fn, abort=abort, is_retryable=is_retryable)
        except CircuitOpenError as e:
            raise ProviderUnavailableError(
                f"Provider circuit open during {operation}"
            ) from e
        except RetryAbortedError:
            raise
        except Exception as e:
            if is_transient_error(e):
                raise ProviderUnavailableError(
                    f"Provider unavailable during {operation}: {e}"
                ) from e
            raise

    def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        response = self._client.request(method, path, json=json)
        if response.is_error:
            message = response.text[:200] if response.text else response.reason_phrase
            raise ProviderError(
                f"{method} {path} failed: {response.status_code} {message}",
                status_code=response.status_code,
            )
        return response

    # Projects

    def create_project(
        self, descriptor: dict[str, Any], abort: threading.Event | None = None
    ) -> str:
        """Register an app with the provider.

        Args:
            descriptor: App descriptor (name, slug, bundle identifiers).

        Returns:
            Provider project ID.
        """

        def do() -> str:
            response = self._request("POST", "/projects", json=descriptor)
            return str(response.json()["id"])

        project_id = self._guarded("create_project", do, abort=abort)
        logger.info("Registered provider project %s", project_id)
        return project_id

    # Builds

    def trigger_build(
        self,
        provider_project_id: str,
        platform: str,
        profile: str,
        abort: threading.Event | None = None,
    ) -> ProviderBuild:
        """Start a build on the provider."""

        def do() -> ProviderBuild:
            response = self._request(
                "POST",
                f"/projects/{provider_project_id}/builds",
                json={"platform": platform, "profile": profile},
            )
            return ProviderBuild.from_payload(response.json())

        # Creates a build per request, so only unsent requests are retried.
        build = self._guarded(
            "trigger_build", do, abort=abort, is_retryable=is_unsent_request_error
        )
        logger.info(
            "Provider accepted %s/%s build %s", platform, profile, build.id
        )
        return build

    def get_build_status(
        self, external_build_id: str, abort: threading.Event | None = None
    ) -> ProviderBuild:
        """Fetch the provider's view of a build."""

        def do() -> ProviderBuild:
            response = self._request("GET", f"/builds/{external_build_id}")
            return ProviderBuild.from_payload(response.json())

        return self._guarded("get_build_status", do, abort=abort)

    def get_build_logs(self, external_build_id: str) -> str:
        """Fetch the build log text."""

        def do() -> str:
            response = self._request("GET", f"/builds/{external_build_id}/logs")
            return response.text

        return self._guarded("get_build_logs", do)

    def cancel_build(self, external_build_id: str) -> None:
        """Ask the provider to cancel a build."""

        def do() -> None:
            self._request("POST", f"/builds/{external_build_id}/cancel")

        self._guarded("cancel_build", do)
        logger.info("Requested provider cancel for build %s", external_build_id)

    def download_artifact(self, url: str) -> bytes:
        """Download a build artifact by absolute URL."""

        def do() -> bytes:
            response = self._client.get(url, follow_redirects=True)
            if response.is_error:
                raise ProviderError(
                    f"Artifact download failed: {response.status_code}",
                    status_code=response.status_code,
                )
            return response.content

        data = self._guarded("download_artifact", do)
        logger.info("Downloaded artifact (%d bytes)", len(data))
        return data

    # OTA updates

    def ensure_branch(self, name: str, runtime_version: str | None) -> None:
        """Create the update branch if the provider does not have it."""

        def do() -> None:
            existing = self._client.get(f"/branches/{name}")
            if existing.status_code != 404:
                if existing.is_error:
                    raise ProviderError(
                        f"Branch lookup failed: {existing.status_code}",
                        status_code=existing.status_code,
                    )
                return
            self._request(
                "POST",
                "/branches",
                json={"name": name, "runtimeVersion": runtime_version},
            )
            logger.info("Created provider branch %s", name)

        self._guarded("ensure_branch", do)

    def publish_update(
        self,
        branch: str,
        message: str,
        platform: str,
        runtime_version: str | None,
    ) -> PublishedUpdate:
        """Publish OTA content to a branch."""

        def do() -> PublishedUpdate:
            response = self._request(
                "POST",
                "/updates",
                json={
                    "branch": branch,
                    "message": message,
                    "platform": platform,
                    "runtimeVersion": runtime_version,
                },
            )
            payload = response.json()
            return PublishedUpdate(
                id=str(payload["id"]),
                group_id=payload.get("groupId"),
                manifest_url=payload.get("manifestUrl"),
            )

        update = self._guarded(
            "publish_update", do, is_retryable=is_unsent_request_error
        )
        logger.info("Published update %s to branch %s", update.id, branch)
        return update


__all__ = [
    "BuildProviderClient",
    "ProviderBuild",
    "ProviderError",
    "ProviderUnavailableError",
    "PublishedUpdate",
    "is_breaker_failure",
]
