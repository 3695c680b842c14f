"""Storage of attestations in memory or in a directory of files."""

from __future__ import annotations

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import unquote, urlsplit

__all__ = [
    "StorageError",
    "AttestationStorage",
    "MemoryBlobStorage",
    "FileBlobStorage",
    "open_attestation_storage",
]

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when storage cannot be opened or a key is invalid."""


def _key_parts(key: str) -> tuple[str, ...]:
    if not key:
        raise StorageError("storage key must not be empty")
    path = PurePosixPath(key)
    if path.is_absolute() or any(part in ("..", ".") for part in key.split("/")):
        raise StorageError(f"invalid storage key {key!r}")
    return path.parts


class AttestationStorage(ABC):
    """A place to keep attestations by key."""

    @abstractmethod
    def store_attestation(self, key: str, attestation: bytes) -> None:
        """Store an attestation under a key, replacing any earlier one."""

    @abstractmethod
    def fetch_attestation(self, key: str) -> Optional[bytes]:
        """Return the attestation stored under a key, or None if there is none."""


class MemoryBlobStorage(AttestationStorage):
    """Attestations held in a dictionary."""

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}

    def store_attestation(self, key: str, attestation: bytes) -> None:
        _key_parts(key)
        logger.info("storing attestation at %s", key)
        self._blobs[key] = bytes(attestation)

    def fetch_attestation(self, key: str) -> Optional[bytes]:
        _key_parts(key)
        logger.info("fetching attestation %s", key)
        return self._blobs.get(key)


class FileBlobStorage(AttestationStorage):
    """Attestations kept as files below a root directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        if not self.root.is_dir():
            raise StorageError(f"storage directory {self.root} does not exist")

    def _path(self, key: str) -> Path:
        return self.root.joinpath(*_key_parts(key))

    def store_attestation(self, key: str, attestation: bytes) -> None:
        path = self._path(key)
        logger.info("storing attestation at %s", key)
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=path.parent, delete=False) as handle:
            handle.write(bytes(attestation))
            temp_name = handle.name
        try:
            os.replace(temp_name, path)
        except OSError:
            os.unlink(temp_name)
            raise

    def fetch_attestation(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        logger.info("fetching attestation %s", key)
        if not path.is_file():
            return None
        return path.read_bytes()


def open_attestation_storage(url: str) -> AttestationStorage:
    """Open attestation storage from a ``mem://`` or ``file:///dir`` URL."""
    if not url:
        raise StorageError("no storage configured")
    logger.info("Configuring attestation storage at %s", url)
    parts = urlsplit(url)
    if parts.scheme == "mem":
        return MemoryBlobStorage()
    if parts.scheme == "file":
        if parts.netloc not in ("", "localhost"):
            raise StorageError(f"file storage URL must not name a host: {url}")
        return FileBlobStorage(unquote(parts.path))
    raise StorageError(f"unsupported storage URL scheme {parts.scheme!r}")