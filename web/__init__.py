"""FastAPI web application for Release Orchestrator.

This module provides the HTTP API over the orchestration services:
builds, provider webhooks, OTA channels and updates.

All business logic is delegated to core modules in release_orchestrator/.
"""

from web.app import app, create_app

__all__ = ["app", "create_app"]
