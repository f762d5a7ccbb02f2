"""Project lookup and registration."""

from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from release_orchestrator.projects.models import Project


class ProjectNotFoundError(Exception):
    """Raised when a project is not found."""

    def __init__(self, project_id: str, code: str = "project_not_found") -> None:
        super().__init__(f"Project not found: {project_id}")
        self.project_id = project_id
        self.code = code


def create_project(
    session: Session,
    name: str,
    slug: str,
    bundle_id_ios: str | None = None,
    bundle_id_android: str | None = None,
    source_path: str | None = None,
) -> Project:
    """Register a new project.

    Args:
        session: Database session.
        name: Display name.
        slug: Unique URL-safe identifier.
        bundle_id_ios: iOS bundle identifier.
        bundle_id_android: Android application id.
        source_path: Source tree used by validation.

    Returns:
        The created Project.
    """
    project = Project(
        name=name,
        slug=slug,
        bundle_id_ios=bundle_id_ios,
        bundle_id_android=bundle_id_android,
        source_path=source_path,
    )
    session.add(project)
    session.flush()
    return project


def get_project(session: Session, project_id: str) -> Project:
    """Get a project by ID.

    Raises:
        ProjectNotFoundError: If the project does not exist.
    """
    project = session.get(Project, project_id)
    if project is None:
        raise ProjectNotFoundError(project_id)
    return project


def list_projects(session: Session) -> Sequence[Project]:
    """List all projects by name."""
    return session.execute(select(Project).order_by(Project.name)).scalars().all()


__all__ = [
    "ProjectNotFoundError",
    "create_project",
    "get_project",
    "list_projects",
]
