"""External build provider integration.

This module provides the REST client for the remote build farm and the
error types it raises.
"""

from release_orchestrator.provider.client import (
    BuildProviderClient,
    ProviderBuild,
    ProviderError,
    ProviderUnavailableError,
    PublishedUpdate,
    is_breaker_failure,
)

__all__ = [
    "BuildProviderClient",
    "ProviderBuild",
    "ProviderError",
    "ProviderUnavailableError",
    "PublishedUpdate",
    "is_breaker_failure",
]
