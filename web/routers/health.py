"""Health check endpoints."""

from typing import Any

from fastapi import APIRouter, Depends

from release_orchestrator import __version__
from release_orchestrator.runtime import Orchestrator
from web.deps import get_runtime

router = APIRouter()


@router.get("/health")
def health(runtime: Orchestrator = Depends(get_runtime)) -> dict[str, Any]:
    """Health check endpoint.

    Returns:
        Health status with version, circuit states and queue counts.
    """
    return {
        "status": "ok",
        "version": __version__,
        "circuits": {
            name: breaker.state.value for name, breaker in runtime.breakers.items()
        },
        "jobs": runtime.queue.stats(),
        "active_polls": len(runtime.poller.active_polls()),
    }


@router.get("/")
def root() -> dict[str, str]:
    """Root endpoint.

    Returns:
        API name and version.
    """
    return {"name": "Release Orchestrator API", "version": __version__}
