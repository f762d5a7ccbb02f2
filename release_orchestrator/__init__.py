"""Release Orchestrator - build and OTA release orchestration core.

This package turns build requests into tracked, retried jobs against an
external build provider, reconciles their status from webhooks and polling,
and manages staged rollout and rollback of over-the-air content updates.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
