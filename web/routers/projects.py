"""Project registration endpoints.

- GET /projects - List projects
- POST /projects - Register a project
- GET /projects/{id} - Get project by ID
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from fastapi import status as http_status
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from release_orchestrator.projects.models import Project
from release_orchestrator.projects.service import (
    ProjectNotFoundError,
    create_project,
    get_project,
    list_projects,
)
from web.deps import get_db, http_error

router = APIRouter()


class CreateProjectRequest(BaseModel):
    """Request body for registering a project."""

    name: str = Field(min_length=1, max_length=255)
    slug: str = Field(min_length=1, max_length=100, pattern=r"^[a-z0-9][a-z0-9-]*$")
    bundle_id_ios: str | None = None
    bundle_id_android: str | None = None
    source_path: str | None = None


def _project_to_dict(project: Project) -> dict[str, Any]:
    return {
        "id": project.id,
        "name": project.name,
        "slug": project.slug,
        "bundle_id_ios": project.bundle_id_ios,
        "bundle_id_android": project.bundle_id_android,
        "source_path": project.source_path,
        "provider_project_id": project.provider_project_id,
        "created_at": project.created_at.isoformat() if project.created_at else None,
    }


@router.get("")
def list_projects_endpoint(db: Session = Depends(get_db)) -> list[dict[str, Any]]:
    """List registered projects by name."""
    return [_project_to_dict(p) for p in list_projects(db)]


@router.post("", status_code=http_status.HTTP_201_CREATED)
def create_project_endpoint(
    request: CreateProjectRequest,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Register a project.

    Raises:
        HTTPException: 409 if the slug is already taken.
    """
    try:
        project = create_project(
            db,
            name=request.name,
            slug=request.slug,
            bundle_id_ios=request.bundle_id_ios,
            bundle_id_android=request.bundle_id_android,
            source_path=request.source_path,
        )
    except IntegrityError:
        raise HTTPException(
            status_code=http_status.HTTP_409_CONFLICT,
            detail={
                "code": "project_exists",
                "message": f"Project slug already taken: {request.slug}",
            },
        ) from None
    return _project_to_dict(project)


@router.get("/{project_id}")
def get_project_endpoint(
    project_id: str,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get a project by ID."""
    try:
        return _project_to_dict(get_project(db, project_id))
    except ProjectNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None
