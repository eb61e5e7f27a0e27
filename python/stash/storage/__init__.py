"""Storage module for uploaded file contents."""

from stash.storage.client import (
    FakeStorageClient,
    LocalStorageClient,
    StorageClientBase,
    StorageError,
    build_storage_key,
    compute_sha256,
    get_storage_client,
)

__all__ = [
    "StorageClientBase",
    "LocalStorageClient",
    "FakeStorageClient",
    "StorageError",
    "build_storage_key",
    "compute_sha256",
    "get_storage_client",
]
