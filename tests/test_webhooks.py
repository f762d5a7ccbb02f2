"""Tests for webhook signature checks and callback handling."""

import json

import pytest

from release_orchestrator.builds.service import get_build
from release_orchestrator.builds.webhooks import (
    InvalidPayloadError,
    SignatureInvalidError,
    WebhookReceiver,
    sign_payload,
    verify_signature,
)
from release_orchestrator.db import get_session
from release_orchestrator.types import BuildStatus

SECRET = "whsec-test"


@pytest.fixture
def receiver(session_factory, orchestrator):
    """Receiver sharing the test orchestrator."""
    return WebhookReceiver(SECRET, session_factory, orchestrator)


def signed(payload: dict) -> tuple[bytes, str]:
    body = json.dumps(payload).encode()
    return body, sign_payload(body, SECRET)


class TestVerifySignature:
    """Tests for verify_signature."""

    def test_accepts_prefixed_and_bare(self):
        """Both sha256=<hex> and bare hex are accepted."""
        body = b'{"id": "ext-1"}'
        header = sign_payload(body, SECRET)

        assert header.startswith("sha256=")
        assert verify_signature(body, header, SECRET)
        assert verify_signature(body, header[len("sha256=") :], SECRET)
        assert verify_signature(body, header.upper().replace("SHA256=", "sha256="), SECRET)

    def test_rejects_tampering(self):
        """A changed body or wrong secret fails."""
        header = sign_payload(b"original", SECRET)

        assert not verify_signature(b"tampered", header, SECRET)
        assert not verify_signature(b"original", header, "other-secret")
        assert not verify_signature(b"original", None, SECRET)
        assert not verify_signature(b"original", header, "")

    def test_rejects_non_ascii_header(self):
        """Non-hex characters in the header fail verification instead of raising."""
        assert not verify_signature(b"original", "sha256=éé", SECRET)
        assert not verify_signature(b"original", "☃" * 64, SECRET)


class TestWebhookReceiver:
    """Tests for WebhookReceiver.handle."""

    def test_applies_terminal_status(self, receiver, make_build, provider, session_factory):
        """A signed failure report fails the matching build."""
        provider.get_build_logs.return_value = ""
        build = make_build(status=BuildStatus.BUILDING, external_build_id="ext-1")
        body, header = signed(
            {"id": "ext-1", "status": "errored", "error": {"message": "Xcode exited 65"}}
        )

        ack = receiver.handle(body, header)
        receiver.orchestrator.wait_for_background(10)

        assert ack.to_dict() == {
            "received": True,
            "outcome": "applied",
            "build_id": build.id,
            "status": "failed",
        }
        with get_session(session_factory) as session:
            assert get_build(session, build.id).error_summary == "Xcode exited 65"

    def test_duplicate_delivery(self, receiver, make_build, provider):
        """A repeated delivery is acknowledged as a duplicate."""
        provider.get_build_logs.return_value = ""
        make_build(status=BuildStatus.BUILDING, external_build_id="ext-1")
        body, header = signed({"id": "ext-1", "status": "canceled"})

        receiver.handle(body, header)
        ack = receiver.handle(body, header)

        assert ack.outcome == "duplicate"
        assert ack.status == "cancelled"

    def test_conflicting_delivery_keeps_first(self, receiver, make_build, session_factory):
        """A different terminal report after completion is a conflict."""
        build = make_build(status=BuildStatus.SUCCESS, external_build_id="ext-1")
        body, header = signed({"id": "ext-1", "status": "errored"})

        ack = receiver.handle(body, header)

        assert ack.outcome == "conflict"
        with get_session(session_factory) as session:
            assert get_build(session, build.id).status == "success"

    def test_unknown_build_ignored(self, receiver):
        """Reports for unknown builds are acknowledged without effect."""
        body, header = signed({"id": "ext-unknown", "status": "finished"})

        ack = receiver.handle(body, header)

        assert ack.received
        assert ack.outcome == "ignored"
        assert ack.build_id is None

    def test_unrecognised_status(self, receiver, make_build):
        """Unknown provider statuses are acknowledged."""
        make_build(status=BuildStatus.BUILDING, external_build_id="ext-1")
        body, header = signed({"id": "ext-1", "status": "uploading"})

        assert receiver.handle(body, header).outcome == "unrecognised_status"

    def test_bad_signature(self, receiver, make_build, session_factory):
        """An invalid signature changes nothing."""
        build = make_build(status=BuildStatus.BUILDING, external_build_id="ext-1")
        body, _ = signed({"id": "ext-1", "status": "finished"})

        with pytest.raises(SignatureInvalidError) as exc_info:
            receiver.handle(body, "sha256=" + "0" * 64)
        with pytest.raises(SignatureInvalidError):
            receiver.handle(body, None)

        assert exc_info.value.code == "signature_invalid"
        with get_session(session_factory) as session:
            assert get_build(session, build.id).status == "building"

    def test_no_secret_configured(self, session_factory, orchestrator):
        """Without a secret every delivery is rejected."""
        receiver = WebhookReceiver("", session_factory, orchestrator)
        body = b'{"id": "ext-1"}'

        with pytest.raises(SignatureInvalidError):
            receiver.handle(body, sign_payload(body, ""))

    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]", b'{"status": "finished"}'])
    def test_invalid_payload(self, receiver, body):
        """Signed bodies that are not build reports are rejected."""
        with pytest.raises(InvalidPayloadError):
            receiver.handle(body, sign_payload(body, SECRET))
