"""Tests for artifact storage backends and the ArtifactStore."""

from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest

from release_orchestrator.resilience import CircuitBreaker, ResilientCaller, RetryPolicy
from release_orchestrator.storage.artifacts import (
    ArtifactStore,
    artifact_key,
    extract_error_summary,
    key_from_locator,
    logs_key,
)
from release_orchestrator.storage.backend import LocalStorageBackend, StorageFailureError


@pytest.fixture
def backend(tmp_path):
    """Filesystem backend under tmp_path."""
    return LocalStorageBackend(tmp_path / "store", secret="signing-key")


@pytest.fixture
def caller():
    """Resilient caller that never sleeps."""
    return ResilientCaller(
        CircuitBreaker("storage", failure_threshold=2),
        RetryPolicy(max_attempts=2, initial_delay=0.0, jitter=0.0),
        sleep=lambda s: None,
    )


class TestKeys:
    """Tests for storage key layout."""

    def test_artifact_key_extension_per_platform(self):
        """iOS binaries are .ipa and Android binaries .apk."""
        assert artifact_key("p1", "b1", "ios") == "builds/p1/b1.ipa"
        assert artifact_key("p1", "b1", "android") == "builds/p1/b1.apk"

    def test_logs_key(self):
        """Logs live beside the build's binary."""
        assert logs_key("p1", "b1") == "builds/p1/b1/logs.txt"

    def test_key_from_locator(self):
        """The scheme should be stripped from locators."""
        assert key_from_locator("local://builds/p1/b1.ipa") == "builds/p1/b1.ipa"
        assert key_from_locator("builds/p1/b1.ipa") == "builds/p1/b1.ipa"


class TestExtractErrorSummary:
    """Tests for extract_error_summary."""

    def test_last_error_line_wins(self):
        """The final matching line is the summary."""
        logs = "\n".join(
            [
                "Installing pods",
                "warning: deprecated API",
                "Error: first failure",
                "Retrying",
                "FATAL: Xcode build failed",
            ]
        )
        assert extract_error_summary(logs) == "FATAL: Xcode build failed"

    def test_no_error_lines(self):
        """Clean logs yield no summary."""
        assert extract_error_summary("all good\nDone.") is None

    def test_truncated(self):
        """Summaries are capped."""
        summary = extract_error_summary("error: " + "x" * 1000)
        assert summary is not None
        assert len(summary) == 500


class TestLocalStorageBackend:
    """Tests for LocalStorageBackend."""

    def test_upload_and_download(self, backend):
        """Uploaded bytes should round-trip with metadata."""
        locator = backend.upload("builds/p/b.apk", b"APK", {"content_type": "x"})

        assert locator == "local://builds/p/b.apk"
        assert backend.download("builds/p/b.apk") == b"APK"
        meta = backend.metadata("builds/p/b.apk")
        assert meta["content_type"] == "x"
        assert meta["size_bytes"] == "3"
        assert len(meta["sha256"]) == 64

    def test_download_missing(self, backend):
        """Missing keys raise StorageFailureError."""
        with pytest.raises(StorageFailureError) as exc_info:
            backend.download("builds/none.apk")
        assert exc_info.value.code == "storage_failure"

    def test_rejects_escaping_keys(self, backend):
        """Keys may not leave the storage root."""
        with pytest.raises(StorageFailureError):
            backend.upload("../outside.txt", b"x")

    def test_delete_is_idempotent(self, backend):
        """Deleting twice should not raise."""
        backend.upload("a/b.txt", b"x")
        backend.delete("a/b.txt")
        backend.delete("a/b.txt")
        with pytest.raises(StorageFailureError):
            backend.download("a/b.txt")

    def test_signed_url_verifies(self, backend):
        """A freshly signed URL should verify until it expires."""
        url = backend.signed_url("builds/p/b.ipa", ttl=60)
        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        expires = int(query["expires"][0])
        signature = query["signature"][0]

        assert parsed.path == "/artifacts/builds/p/b.ipa"
        assert backend.verify_signed_url("builds/p/b.ipa", expires, signature)
        assert not backend.verify_signed_url("builds/p/other.ipa", expires, signature)
        assert not backend.verify_signed_url(
            "builds/p/b.ipa", expires, signature, now=expires + 1
        )


class TestArtifactStore:
    """Tests for ArtifactStore."""

    def test_store_artifact_sets_content_type(self, backend, caller):
        """Android artifacts carry the APK content type."""
        store = ArtifactStore(backend, caller)

        locator = store.store_artifact("p1", "b1", "android", b"APK")

        assert locator == "local://builds/p1/b1.apk"
        meta = backend.metadata("builds/p1/b1.apk")
        assert meta["content_type"] == "application/vnd.android.package-archive"
        assert meta["build_id"] == "b1"

    def test_store_and_read_logs(self, backend, caller):
        """Logs should be stored as text and read back."""
        store = ArtifactStore(backend, caller)

        key = store.store_logs("p1", "b1", "line\nerror: x")

        assert key == "builds/p1/b1/logs.txt"
        assert store.read_logs(key) == "line\nerror: x"

    def test_backend_errors_wrapped(self, caller):
        """Unexpected backend errors surface as StorageFailureError."""
        backend = MagicMock()
        backend.upload.side_effect = PermissionError("read-only")
        store = ArtifactStore(backend, caller)

        with pytest.raises(StorageFailureError):
            store.store_logs("p1", "b1", "logs")

    def test_open_circuit_wrapped(self, backend, caller):
        """A refused call while the circuit is open is a storage failure."""
        caller.breaker.open()
        store = ArtifactStore(backend, caller)

        with pytest.raises(StorageFailureError) as exc_info:
            store.store_artifact("p1", "b1", "ios", b"IPA")
        assert "unavailable" in str(exc_info.value)

    def test_signed_url_and_delete(self, backend, caller):
        """signed_url and delete pass through to the backend."""
        store = ArtifactStore(backend, caller)
        store.store_artifact("p1", "b1", "ios", b"IPA")

        assert store.signed_url("builds/p1/b1.ipa", 300).startswith("/artifacts/")
        store.delete("builds/p1/b1.ipa")
        assert not (backend.root / "builds/p1/b1.ipa").exists()
