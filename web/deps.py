"""Request dependencies for FastAPI.

Provides a database session and the orchestration runtime to route
handlers via FastAPI dependency injection.

Transaction boundaries for ``get_db`` are managed here:
- Session is created at request start
- On success (no exception): session is committed automatically
- On exception: session is rolled back automatically
- Session is closed after request completes
"""

from __future__ import annotations

from collections.abc import Generator
from typing import Any

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session, sessionmaker

from release_orchestrator.runtime import Orchestrator


def get_session_factory(request: Request) -> sessionmaker[Session]:
    """Get session factory from app state."""
    factory: Any = request.app.state.session_factory
    return factory  # type: ignore[no-any-return]


def get_runtime(request: Request) -> Orchestrator:
    """Get the Orchestrator runtime from app state."""
    runtime: Any = request.app.state.runtime
    return runtime  # type: ignore[no-any-return]


def get_db(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    """Provide a database session for a request.

    Yields:
        Database session.
    """
    session = session_factory()
    try:
        yield session
        # Commit on success - only reached if no exception was raised
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def http_error(status_code: int, error: Exception, **extra: Any) -> HTTPException:
    """Build an HTTPException carrying the error's code and message."""
    detail: dict[str, Any] = {
        "code": getattr(error, "code", "error"),
        "message": str(error),
    }
    detail.update(extra)
    return HTTPException(status_code=status_code, detail=detail)
