"""Process-level wiring of the orchestration core.

The Orchestrator constructs every collaborator explicitly (breakers,
resilient callers, provider client, storage, queue, workers, poller,
webhook receiver and OTA manager) and owns their lifecycle. Nothing is
held in module-level singletons.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from concurrent.futures import Executor
from datetime import timedelta
from types import TracebackType

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from release_orchestrator.builds.models import Build
from release_orchestrator.builds.poller import StatusPoller
from release_orchestrator.builds.service import BUILD_JOB_KIND, BuildOrchestrator
from release_orchestrator.builds.webhooks import WebhookReceiver
from release_orchestrator.config import Settings
from release_orchestrator.db import get_session
from release_orchestrator.jobs.queue import JobQueue
from release_orchestrator.jobs.worker import RateLimiter, WorkerPool
from release_orchestrator.ota.service import OTAReleaseManager
from release_orchestrator.provider.client import BuildProviderClient, is_breaker_failure
from release_orchestrator.resilience import (
    CircuitBreaker,
    CircuitState,
    ResilientCaller,
    RetryPolicy,
)
from release_orchestrator.storage.artifacts import ArtifactStore
from release_orchestrator.storage.backend import LocalStorageBackend, StorageBackend
from release_orchestrator.types import BuildStatus
from release_orchestrator.validation.pipeline import ValidationPipeline

logger = logging.getLogger(__name__)


def _log_state_change(name: str) -> Callable[[CircuitState, CircuitState], None]:
    def listener(new_state: CircuitState, previous: CircuitState) -> None:
        level = logging.WARNING if new_state == CircuitState.OPEN else logging.INFO
        logger.log(
            level, "Circuit '%s' changed %s -> %s", name, previous.value, new_state.value
        )

    return listener


class Orchestrator:
    """All orchestration services for one process.

    Args:
        settings: Application settings.
        session_factory: Factory for database sessions.
        http_client: Optional httpx client for the provider (tests).
        storage_backend: Optional storage backend; defaults to the
            filesystem store under ``settings.artifacts_dir``.
        validator: Optional validation pipeline.
        executor: Optional executor for artifact and log transfers.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        http_client: httpx.Client | None = None,
        storage_backend: StorageBackend | None = None,
        validator: ValidationPipeline | None = None,
        executor: Executor | None = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory

        policy = RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            multiplier=settings.retry_multiplier,
            jitter=settings.retry_jitter,
        )
        self.provider_breaker = CircuitBreaker(
            "provider",
            failure_threshold=settings.breaker_failure_threshold,
            reset_timeout=settings.breaker_reset_timeout,
            success_threshold=settings.breaker_success_threshold,
            request_timeout=settings.provider_timeout,
            is_failure=is_breaker_failure,
        )
        self.storage_breaker = CircuitBreaker(
            "storage",
            failure_threshold=settings.breaker_failure_threshold,
            reset_timeout=settings.breaker_reset_timeout,
            success_threshold=settings.breaker_success_threshold,
            request_timeout=settings.storage_timeout,
        )
        for breaker in self.breakers.values():
            breaker.on("state_change", _log_state_change(breaker.name))

        self.provider = BuildProviderClient(
            settings.provider_base_url,
            settings.provider_token,
            ResilientCaller(self.provider_breaker, policy),
            timeout=settings.provider_timeout,
            http_client=http_client,
        )

        if storage_backend is None:
            signing_key = settings.storage_signing_key
            if not signing_key:
                logger.warning(
                    "No storage signing key configured; download URLs will not "
                    "survive a restart"
                )
                signing_key = secrets.token_hex(32)
            storage_backend = LocalStorageBackend(settings.artifacts_dir, signing_key)
        self.artifacts = ArtifactStore(
            storage_backend, ResilientCaller(self.storage_breaker, policy)
        )

        self.queue = JobQueue(
            session_factory,
            max_attempts=settings.job_max_attempts,
            backoff_base=settings.job_backoff_base,
            completed_retention=timedelta(hours=settings.completed_job_retention_hours),
            failed_retention=timedelta(days=settings.failed_job_retention_days),
        )

        self.builds = BuildOrchestrator(
            session_factory,
            self.provider,
            self.artifacts,
            self.queue,
            validator=validator
            or ValidationPipeline(
                timeout=settings.validation_timeout,
                output_limit=settings.validation_output_limit,
            ),
            skip_validation=settings.skip_validation,
            executor=executor,
        )
        self.poller = StatusPoller(
            self.provider,
            on_update=self.builds.handle_provider_update,
            on_timeout=self.builds.expire_polling,
            interval=settings.poll_interval,
            max_attempts=settings.poll_max_attempts,
            timeout=settings.poll_timeout,
        )
        self.builds.poller = self.poller

        self.webhooks = WebhookReceiver(
            settings.webhook_secret, session_factory, self.builds
        )
        self.workers = WorkerPool(
            self.queue,
            {BUILD_JOB_KIND: self.builds.process_job},
            concurrency=settings.worker_concurrency,
            rate_limiter=RateLimiter(settings.worker_rate_limit_per_minute),
            poll_interval=settings.worker_poll_interval,
            sweep_interval=settings.sweep_interval,
            job_timeout=settings.job_timeout,
        )
        self.ota = OTAReleaseManager(session_factory, self.provider)
        self._closed = False

    @property
    def breakers(self) -> dict[str, CircuitBreaker]:
        """Circuit breakers by name."""
        return {
            self.provider_breaker.name: self.provider_breaker,
            self.storage_breaker.name: self.storage_breaker,
        }

    def resume_polling(self) -> int:
        """Restart polling for builds the provider is still working on.

        Poll loops live in memory, so after a restart they are rebuilt
        from the database.
        """
        with get_session(self.session_factory) as session:
            rows = session.execute(
                select(Build.id, Build.external_build_id).where(
                    Build.status == BuildStatus.BUILDING.value,
                    Build.external_build_id.is_not(None),
                )
            ).all()
        started = sum(
            1 for build_id, external_id in rows if self.poller.start_polling(build_id, external_id)
        )
        if started:
            logger.info("Resumed polling for %d builds", started)
        return started

    def start(self, workers: bool = True) -> None:
        """Resume polling and optionally start the worker pool."""
        self.resume_polling()
        if workers:
            self.workers.start()

    def close(self) -> None:
        """Drain and release everything, in shutdown order."""
        if self._closed:
            return
        self._closed = True
        self.queue.close()
        self.workers.stop(self.settings.shutdown_grace_period)
        self.poller.stop_all()
        self.builds.close()
        self.provider.close()
        for breaker in self.breakers.values():
            breaker.close()
        logger.info("Orchestrator closed")

    def __enter__(self) -> Orchestrator:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


__all__ = ["Orchestrator"]
