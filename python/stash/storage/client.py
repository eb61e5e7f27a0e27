"""File blob storage abstraction.

Provides a small interface for storing uploaded file contents:
- put_object: write bytes under a key
- get_object: read bytes back
- delete_object: best-effort removal

Implementations:
- LocalStorageClient: one file per key under STORAGE_DIR
- FakeStorageClient: in-memory, used when STORAGE_DIR is unset and in tests

Keys are opaque ("files/<uuid>") and never contain user identifiers.
"""

import hashlib
import os
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from pathlib import Path
from typing import BinaryIO
from uuid import uuid4

from stash.logging import get_logger

logger = get_logger(__name__)

STORAGE_KEY_PREFIX = "files"


class StorageError(Exception):
    """Storage operation error."""

    def __init__(self, message: str, code: str = "E_STORAGE_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


def build_storage_key() -> str:
    """Generate a fresh opaque storage key."""
    return f"{STORAGE_KEY_PREFIX}/{uuid4().hex}"


class StorageClientBase(ABC):
    """Abstract base class for storage client implementations."""

    @abstractmethod
    def put_object(self, key: str, content: bytes, content_type: str) -> None:
        """Store content under key.

        Raises:
            StorageError: If the write fails.
        """
        ...

    @abstractmethod
    def get_object(self, key: str) -> bytes:
        """Return the content stored under key.

        Raises:
            StorageError: If the object is missing or unreadable.
        """
        ...

    @abstractmethod
    def delete_object(self, key: str) -> None:
        """Delete an object from storage.

        Best-effort operation - logs errors but doesn't raise.
        """
        ...


class LocalStorageClient(StorageClientBase):
    """Filesystem-backed storage rooted at a directory."""

    def __init__(self, root: str | os.PathLike[str]):
        self.root = Path(root)

    def _path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        # Keys are generated server-side, but never let one escape the root
        if self.root.resolve() not in path.parents:
            raise StorageError(f"Invalid storage key: {key}")
        return path

    def put_object(self, key: str, content: bytes, content_type: str) -> None:
        path = self._path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_bytes(content)
            tmp_path.replace(path)
        except OSError as e:
            raise StorageError(f"Failed to write object: {e}") from e

    def get_object(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise StorageError(f"Object not found: {key}", code="E_STORAGE_MISSING") from e
        except OSError as e:
            raise StorageError(f"Failed to read object: {e}") from e

    def delete_object(self, key: str) -> None:
        try:
            self._path_for(key).unlink(missing_ok=True)
        except (OSError, StorageError) as e:
            logger.warning("storage_delete_failed", storage_key=key, error=str(e))


class FakeStorageClient(StorageClientBase):
    """In-memory storage for local development and tests."""

    def __init__(self):
        self._objects: dict[str, tuple[bytes, str]] = {}
        self._lock = threading.Lock()

    def put_object(self, key: str, content: bytes, content_type: str) -> None:
        with self._lock:
            self._objects[key] = (content, content_type)

    def get_object(self, key: str) -> bytes:
        with self._lock:
            if key not in self._objects:
                raise StorageError(f"Object not found: {key}", code="E_STORAGE_MISSING")
            return self._objects[key][0]

    def delete_object(self, key: str) -> None:
        with self._lock:
            self._objects.pop(key, None)

    # Test helper methods

    def has_object(self, key: str) -> bool:
        with self._lock:
            return key in self._objects

    def clear(self) -> None:
        with self._lock:
            self._objects.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)


def get_storage_client(storage_dir: str | None) -> StorageClientBase:
    """Get the configured storage client.

    Returns:
        LocalStorageClient if storage_dir is set, FakeStorageClient otherwise.
    """
    if storage_dir:
        return LocalStorageClient(storage_dir)

    logger.warning("storage_in_memory", detail="STORAGE_DIR unset; uploads are not persisted")
    return FakeStorageClient()


def compute_sha256(data: bytes | BinaryIO | Iterator[bytes]) -> str:
    """Compute SHA-256 hash of data.

    Args:
        data: Bytes, file-like object, or iterator of bytes.

    Returns:
        Hex-encoded SHA-256 hash.
    """
    hasher = hashlib.sha256()

    if isinstance(data, bytes):
        hasher.update(data)
    elif hasattr(data, "read"):
        while chunk := data.read(1024 * 1024):
            hasher.update(chunk)
    else:
        for chunk in data:
            hasher.update(chunk)

    return hasher.hexdigest()
