"""Provider webhook endpoint.

- POST /webhooks/builds - Signed build status callback

The signature covers the raw body, so the body is read before parsing.
"""

from typing import Any

from fastapi import APIRouter, Depends, Header, Request
from fastapi import status as http_status
from fastapi.concurrency import run_in_threadpool

from release_orchestrator.builds.webhooks import (
    InvalidPayloadError,
    SignatureInvalidError,
)
from release_orchestrator.runtime import Orchestrator
from web.deps import get_runtime, http_error

router = APIRouter()


@router.post("/builds")
async def build_webhook_endpoint(
    request: Request,
    expo_signature: str | None = Header(None, alias="expo-signature"),
    runtime: Orchestrator = Depends(get_runtime),
) -> dict[str, Any]:
    """Verify and apply a build status callback.

    Raises:
        HTTPException: 401 for a missing or wrong signature, 400 for a
            body that is not a build report.
    """
    body = await request.body()
    try:
        ack = await run_in_threadpool(runtime.webhooks.handle, body, expo_signature)
    except SignatureInvalidError as e:
        raise http_error(http_status.HTTP_401_UNAUTHORIZED, e) from None
    except InvalidPayloadError as e:
        raise http_error(http_status.HTTP_400_BAD_REQUEST, e) from None
    return ack.to_dict()
