"""Bookmark Pydantic schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from stash.db.models import ReadStatus


class BookmarkOut(BaseModel):
    """Response schema for a bookmark."""

    id: int
    url: str
    title: str
    description: str | None = None
    category: str | None = None
    is_starred: bool
    read_status: ReadStatus
    is_archived: bool
    display_order: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CreateBookmarkRequest(BaseModel):
    """Request schema for saving a URL."""

    url: str = Field(..., min_length=1, max_length=2048)
    title: str | None = Field(default=None, max_length=500)
    description: str | None = Field(default=None, max_length=2000)

    @field_validator("title", "description")
    @classmethod
    def strip_optional_text(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None


class UpdateBookmarkRequest(BaseModel):
    """Partial update of a bookmark's flags and ordering."""

    title: str | None = Field(default=None, min_length=1, max_length=500)
    is_starred: bool | None = None
    is_archived: bool | None = None
    read_status: ReadStatus | None = None
    display_order: int | None = Field(default=None, ge=0)
