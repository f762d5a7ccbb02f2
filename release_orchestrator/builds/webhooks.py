"""Webhook receiver for provider build callbacks.

Callbacks are authenticated with an HMAC-SHA256 signature over the raw
request body. Verified payloads are matched to a Build by the provider's
build ID and applied through the orchestrator's reconciliation path.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session, sessionmaker

from release_orchestrator.builds.service import (
    BuildOrchestrator,
    find_build_by_external_id,
)
from release_orchestrator.db import get_session
from release_orchestrator.provider.client import ProviderBuild

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


class SignatureInvalidError(Exception):
    """Raised when a webhook signature is missing or wrong."""

    def __init__(self, message: str = "Invalid webhook signature", code: str = "signature_invalid") -> None:
        super().__init__(message)
        self.code = code


class InvalidPayloadError(Exception):
    """Raised when a signed webhook body cannot be interpreted."""

    def __init__(self, message: str, code: str = "invalid_payload") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class WebhookAck:
    """Acknowledgement returned to the provider."""

    received: bool
    outcome: str
    build_id: str | None = None
    status: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "received": self.received,
            "outcome": self.outcome,
            "build_id": self.build_id,
            "status": self.status,
        }


def sign_payload(payload: bytes, secret: str) -> str:
    """Compute the signature header value for ``payload``."""
    digest = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(payload: bytes, signature_header: str | None, secret: str) -> bool:
    """Check a signature header in constant time.

    Accepts ``sha256=<hex>`` or bare hex.
    """
    if not signature_header or not secret:
        return False
    provided = signature_header.strip()
    if provided.startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX) :]
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(
        expected.encode(), provided.lower().encode("utf-8", "replace")
    )


class WebhookReceiver:
    """Verifies and applies provider build callbacks.

    Args:
        secret: Shared HMAC secret.
        session_factory: Factory for database sessions.
        orchestrator: Build orchestrator applying status changes.
    """

    def __init__(
        self,
        secret: str,
        session_factory: sessionmaker[Session],
        orchestrator: BuildOrchestrator,
    ) -> None:
        self.secret = secret
        self.session_factory = session_factory
        self.orchestrator = orchestrator

    def handle(self, raw_payload: bytes, signature_header: str | None) -> WebhookAck:
        """Verify and apply one callback.

        Unknown builds are acknowledged without effect so the provider
        does not retry them forever.

        Raises:
            SignatureInvalidError: If the signature is missing or wrong.
            InvalidPayloadError: If the verified body is not a build report.
        """
        if not self.secret:
            logger.error("Webhook received but no webhook secret is configured")
            raise SignatureInvalidError("Webhook secret not configured")
        if not verify_signature(raw_payload, signature_header, self.secret):
            logger.warning(
                "Rejected webhook with %s signature (%d bytes)",
                "missing" if not signature_header else "invalid",
                len(raw_payload),
            )
            raise SignatureInvalidError()

        try:
            payload = json.loads(raw_payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidPayloadError(f"Webhook body is not JSON: {e}") from e
        if not isinstance(payload, dict) or not payload.get("id"):
            raise InvalidPayloadError("Webhook body has no build id")

        provider_build = ProviderBuild.from_payload(payload)
        with get_session(self.session_factory) as session:
            build = find_build_by_external_id(session, provider_build.id)
            build_id = build.id if build is not None else None

        if build_id is None:
            logger.info("Webhook for unknown provider build %s ignored", provider_build.id)
            return WebhookAck(received=True, outcome="ignored")

        result = self.orchestrator.handle_provider_update(build_id, provider_build)
        if result is None:
            return WebhookAck(
                received=True, outcome="unrecognised_status", build_id=build_id
            )
        return WebhookAck(
            received=True,
            outcome=result.outcome.value,
            build_id=build_id,
            status=result.current.value,
        )


__all__ = [
    "InvalidPayloadError",
    "SignatureInvalidError",
    "WebhookAck",
    "WebhookReceiver",
    "sign_payload",
    "verify_signature",
]
