"""Signed artifact download endpoint.

- GET /artifacts/{key}?expires=&signature= - Serve a blob from the
  filesystem store when the URL signature is valid and unexpired
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi import status as http_status

from release_orchestrator.runtime import Orchestrator
from release_orchestrator.storage.backend import LocalStorageBackend, StorageFailureError
from web.deps import get_runtime

router = APIRouter()


@router.get("/{key:path}")
def download_artifact_endpoint(
    key: str,
    expires: int = Query(..., description="Expiry as a Unix timestamp"),
    signature: str = Query(..., description="URL signature"),
    runtime: Orchestrator = Depends(get_runtime),
) -> Response:
    """Serve a stored artifact for a valid signed URL."""
    backend = runtime.artifacts.backend
    if not isinstance(backend, LocalStorageBackend):
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail={"code": "not_found", "message": "Artifacts are not served here"},
        )
    if not backend.verify_signed_url(key, expires, signature):
        raise HTTPException(
            status_code=http_status.HTTP_403_FORBIDDEN,
            detail={"code": "signature_invalid", "message": "Invalid or expired URL"},
        )
    try:
        data = backend.download(key)
        metadata = backend.metadata(key)
    except StorageFailureError as e:
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail={"code": e.code, "message": str(e)},
        ) from None
    filename = key.rsplit("/", 1)[-1]
    return Response(
        content=data,
        media_type=metadata.get("content_type", "application/octet-stream"),
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
