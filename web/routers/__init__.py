"""Router modules for FastAPI web API."""

from web.routers import (
    artifacts,
    builds,
    channels,
    config,
    health,
    projects,
    updates,
    webhooks,
)

__all__ = [
    "artifacts",
    "builds",
    "channels",
    "config",
    "health",
    "projects",
    "updates",
    "webhooks",
]
