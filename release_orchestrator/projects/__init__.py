"""Projects whose builds and releases are orchestrated."""

from release_orchestrator.projects.models import Project
from release_orchestrator.projects.service import (
    ProjectNotFoundError,
    create_project,
    get_project,
    list_projects,
)

__all__ = [
    "Project",
    "ProjectNotFoundError",
    "create_project",
    "get_project",
    "list_projects",
]
