"""Artifact storage backends.

A backend stores opaque blobs under slash-separated keys and can mint
time-limited download URLs. The bundled LocalStorageBackend keeps blobs
under a directory tree and signs URLs with HMAC-SHA256.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from pathlib import Path
from typing import Protocol
from urllib.parse import quote

logger = logging.getLogger(__name__)

META_SUFFIX = ".meta.json"


class StorageFailureError(Exception):
    """Raised when an artifact storage operation fails."""

    def __init__(self, message: str, key: str | None = None, code: str = "storage_failure") -> None:
        super().__init__(message)
        self.key = key
        self.code = code


class StorageBackend(Protocol):
    """Blob store used for build artifacts and logs."""

    def upload(self, key: str, data: bytes, metadata: dict[str, str] | None = None) -> str:
        """Store ``data`` under ``key`` and return a locator."""
        ...

    def download(self, key: str) -> bytes:
        """Return the blob stored under ``key``."""
        ...

    def signed_url(self, key: str, ttl: int) -> str:
        """Return a URL granting read access to ``key`` for ``ttl`` seconds."""
        ...

    def delete(self, key: str) -> None:
        """Remove ``key``; missing keys are ignored."""
        ...


class LocalStorageBackend:
    """Filesystem storage rooted at a directory.

    Args:
        root: Directory holding stored blobs.
        secret: Key for signing download URLs.
        base_url: Public prefix of the download route.
    """

    def __init__(self, root: Path, secret: str, base_url: str = "/artifacts") -> None:
        self.root = root
        self.secret = secret
        self.base_url = base_url.rstrip("/")

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        root = self.root.resolve()
        if root not in path.parents:
            raise StorageFailureError(f"Key escapes storage root: {key}", key=key)
        return path

    def upload(self, key: str, data: bytes, metadata: dict[str, str] | None = None) -> str:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_bytes(data)
            tmp.replace(path)
            meta = dict(metadata or {})
            meta["sha256"] = hashlib.sha256(data).hexdigest()
            meta["size_bytes"] = str(len(data))
            path.with_name(path.name + META_SUFFIX).write_text(
                json.dumps(meta, indent=2, sort_keys=True)
            )
        except OSError as e:
            raise StorageFailureError(f"Failed to store {key}: {e}", key=key) from e
        logger.debug("Stored %s (%d bytes)", key, len(data))
        return f"local://{key}"

    def download(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise StorageFailureError(f"Object not found: {key}", key=key) from e
        except OSError as e:
            raise StorageFailureError(f"Failed to read {key}: {e}", key=key) from e

    def metadata(self, key: str) -> dict[str, str]:
        """Return metadata recorded at upload time."""
        path = self._path(key)
        meta_path = path.with_name(path.name + META_SUFFIX)
        if not meta_path.exists():
            return {}
        return json.loads(meta_path.read_text())

    def _signature(self, key: str, expires: int) -> str:
        message = f"{key}:{expires}".encode()
        return hmac.new(self.secret.encode(), message, hashlib.sha256).hexdigest()

    def signed_url(self, key: str, ttl: int) -> str:
        expires = int(time.time()) + ttl
        signature = self._signature(key, expires)
        return f"{self.base_url}/{quote(key)}?expires={expires}&signature={signature}"

    def verify_signed_url(
        self, key: str, expires: int, signature: str, now: float | None = None
    ) -> bool:
        """Check a signature produced by ``signed_url``."""
        if (now if now is not None else time.time()) > expires:
            return False
        return hmac.compare_digest(self._signature(key, expires), signature)

    def delete(self, key: str) -> None:
        path = self._path(key)
        for target in (path, path.with_name(path.name + META_SUFFIX)):
            try:
                target.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise StorageFailureError(f"Failed to delete {key}: {e}", key=key) from e
        logger.debug("Deleted %s", key)


__all__ = [
    "LocalStorageBackend",
    "StorageBackend",
    "StorageFailureError",
]
