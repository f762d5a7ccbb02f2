"""Shared fixtures: a file-backed SQLite database, provider mock and orchestrator."""

from collections.abc import Iterator
from unittest.mock import MagicMock

import pytest
from sqlalchemy.orm import Session, sessionmaker

from release_orchestrator.builds.models import Build
from release_orchestrator.builds.service import BuildOrchestrator
from release_orchestrator.db import (
    create_all_tables,
    get_engine,
    get_session,
    get_session_factory,
)
from release_orchestrator.jobs.queue import JobQueue
from release_orchestrator.projects.models import Project
from release_orchestrator.provider.client import BuildProviderClient
from release_orchestrator.resilience import CircuitBreaker, ResilientCaller, RetryPolicy
from release_orchestrator.storage.artifacts import ArtifactStore
from release_orchestrator.storage.backend import LocalStorageBackend
from release_orchestrator.types import BuildStatus


@pytest.fixture
def engine(tmp_path):
    """Engine on a fresh SQLite file, shared by worker and poller threads."""
    engine = get_engine(f"sqlite:///{tmp_path / 'test.db'}")
    create_all_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    """Session factory bound to the test engine."""
    return get_session_factory(engine)


@pytest.fixture
def session(session_factory) -> Iterator[Session]:
    """A session for direct setup and assertions."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def project(session_factory) -> Project:
    """A registered project without a provider ID yet."""
    with get_session(session_factory) as session:
        p = Project(
            name="Field Notes",
            slug="field-notes",
            bundle_id_ios="com.example.fieldnotes",
            bundle_id_android="com.example.fieldnotes",
        )
        session.add(p)
        session.flush()
    return p


@pytest.fixture
def make_build(session_factory, project):
    """Factory inserting a Build row directly."""

    def _make(
        status: BuildStatus = BuildStatus.QUEUED,
        platform: str = "ios",
        external_build_id: str | None = None,
        version: int = 1,
    ) -> Build:
        with get_session(session_factory) as session:
            build = Build(
                project_id=project.id,
                platform=platform,
                version=version,
                profile="production",
                status=status.value,
                external_build_id=external_build_id,
            )
            session.add(build)
            session.flush()
        return build

    return _make


@pytest.fixture
def provider():
    """Mock build provider client."""
    return MagicMock(spec=BuildProviderClient)


@pytest.fixture
def storage_backend(tmp_path):
    """Filesystem storage under tmp_path."""
    return LocalStorageBackend(tmp_path / "artifacts", secret="test-signing-key")


@pytest.fixture
def artifact_store(storage_backend):
    """Artifact store whose retries never sleep."""
    caller = ResilientCaller(
        CircuitBreaker("storage"),
        RetryPolicy(max_attempts=1),
        sleep=lambda s: None,
    )
    return ArtifactStore(storage_backend, caller)


@pytest.fixture
def job_queue(session_factory):
    """Job queue on the test database."""
    return JobQueue(session_factory)


@pytest.fixture
def orchestrator(session_factory, provider, artifact_store, job_queue):
    """BuildOrchestrator without validation or a poller."""
    orchestrator = BuildOrchestrator(session_factory, provider, artifact_store, job_queue)
    yield orchestrator
    orchestrator.close()
