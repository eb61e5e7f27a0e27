"""Pydantic schemas for request/response models.

All schemas are re-exported here for convenient imports.
"""

from stash.schemas.account import (
    BindingOut,
    DirectMergeRequest,
    MeOut,
    MergeResultOut,
)
from stash.schemas.bookmark import BookmarkOut, CreateBookmarkRequest, UpdateBookmarkRequest
from stash.schemas.file import FileOut

__all__ = [
    "BindingOut",
    "DirectMergeRequest",
    "MeOut",
    "MergeResultOut",
    "BookmarkOut",
    "CreateBookmarkRequest",
    "UpdateBookmarkRequest",
    "FileOut",
]
