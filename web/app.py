"""FastAPI application factory and main app.

This module creates the FastAPI application with all routers and
dependency injection configured. Web routes are thin proxies to the
services owned by the Orchestrator runtime.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from release_orchestrator import __version__
from release_orchestrator.config import get_settings
from release_orchestrator.db import create_all_tables, get_engine, get_session_factory
from release_orchestrator.runtime import Orchestrator
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


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Initializes database tables and the orchestration runtime on startup
    and drains it on shutdown.
    """
    settings = get_settings()
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    session_factory = get_session_factory(engine)
    runtime = Orchestrator(settings, session_factory)
    runtime.start(workers=settings.embedded_workers)
    app.state.session_factory = session_factory
    app.state.runtime = runtime
    try:
        yield
    finally:
        runtime.close()
        engine.dispose()


def include_routers(application: FastAPI) -> None:
    """Mount every API router on ``application``."""
    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(projects.router, prefix="/projects", tags=["projects"])
    application.include_router(builds.router, prefix="/builds", tags=["builds"])
    application.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
    application.include_router(channels.router, prefix="/channels", tags=["channels"])
    application.include_router(updates.router, prefix="/updates", tags=["updates"])
    application.include_router(artifacts.router, prefix="/artifacts", tags=["artifacts"])


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application.
    """
    application = FastAPI(
        title="Release Orchestrator API",
        description="HTTP API for native builds, provider webhooks and "
        "staged OTA releases",
        version=__version__,
        lifespan=lifespan,
    )
    include_routers(application)
    return application


# Create the default application instance
app = create_app()
