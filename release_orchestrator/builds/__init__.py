"""Build orchestration: state machine, service, poller and webhooks."""

from release_orchestrator.builds.models import Build
from release_orchestrator.builds.poller import StatusPoller
from release_orchestrator.builds.service import (
    BuildOrchestrator,
    ValidationFailedError,
    find_build_by_external_id,
    get_build,
    get_build_status,
    list_builds,
)
from release_orchestrator.builds.state import (
    BuildNotFoundError,
    InvalidStateError,
    TransitionOutcome,
    apply_status,
    map_provider_status,
)
from release_orchestrator.builds.webhooks import (
    InvalidPayloadError,
    SignatureInvalidError,
    WebhookAck,
    WebhookReceiver,
    sign_payload,
    verify_signature,
)

__all__ = [
    "Build",
    "BuildNotFoundError",
    "BuildOrchestrator",
    "InvalidPayloadError",
    "InvalidStateError",
    "SignatureInvalidError",
    "StatusPoller",
    "TransitionOutcome",
    "ValidationFailedError",
    "WebhookAck",
    "WebhookReceiver",
    "apply_status",
    "find_build_by_external_id",
    "get_build",
    "get_build_status",
    "list_builds",
    "map_provider_status",
    "sign_payload",
    "verify_signature",
]
