"""Database engine and session management for release_orchestrator.

This module provides SQLAlchemy engine creation, session factory,
and base model class for all ORM models.
"""

from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from release_orchestrator.config import get_settings


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Return the current UTC time as a naive datetime.

    All persisted timestamps are naive UTC so that SQLite and PostgreSQL
    round-trip them identically.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enable_sqlite_immediate_transactions(engine: Any) -> None:
    """Make every SQLite transaction take the write lock up front.

    Read-then-write units (version assignment, status compare-and-set)
    would otherwise race to upgrade a shared lock and fail with
    "database is locked" instead of waiting.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def get_engine(db_url: str | None = None) -> Any:
    """Create and return a SQLAlchemy engine.

    Args:
        db_url: Database URL. If not provided, uses settings default.

    Returns:
        SQLAlchemy Engine instance.
    """
    if db_url is None:
        settings = get_settings()
        db_url = settings.db_url

    # SQLite-specific connect args for worker and poller threads
    connect_args: dict[str, Any] = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30

    engine = create_engine(
        db_url,
        connect_args=connect_args,
        echo=False,
    )
    if db_url.startswith("sqlite"):
        _enable_sqlite_immediate_transactions(engine)
    return engine


def import_models() -> None:
    """Import all ORM models so string relationships resolve."""
    from release_orchestrator.builds import models as builds_models  # noqa: F401
    from release_orchestrator.jobs import models as jobs_models  # noqa: F401
    from release_orchestrator.ota import models as ota_models  # noqa: F401
    from release_orchestrator.projects import models as projects_models  # noqa: F401


def get_session_factory(engine: Any | None = None) -> sessionmaker[Session]:
    """Create and return a session factory.

    Args:
        engine: SQLAlchemy engine. If not provided, creates one from settings.

    Returns:
        Session factory (sessionmaker).
    """
    import_models()
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations.

    Args:
        session_factory: Optional session factory. Creates one if not provided.

    Yields:
        SQLAlchemy Session instance.
    """
    if session_factory is None:
        session_factory = get_session_factory()

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Any | None = None) -> None:
    """Create all tables defined by ORM models.

    This is primarily for testing and development. Production deployments
    should use migrations.

    Args:
        engine: SQLAlchemy engine. If not provided, creates one from settings.
    """
    import_models()
    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(bind=engine)


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "import_models",
    "utc_now",
]
