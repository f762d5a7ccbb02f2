"""Configuration endpoints."""

import json
from typing import Any

from fastapi import APIRouter, Depends

from release_orchestrator.config import print_settings_json
from release_orchestrator.runtime import Orchestrator
from web.deps import get_runtime

router = APIRouter()


@router.get("")
def get_config(runtime: Orchestrator = Depends(get_runtime)) -> dict[str, Any]:
    """Get effective configuration with secrets masked."""
    data: dict[str, Any] = json.loads(print_settings_json(runtime.settings))
    return data
