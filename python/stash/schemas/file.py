"""File Pydantic schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class FileOut(BaseModel):
    """Response schema for an uploaded file.

    storage_key is internal and not exposed.
    """

    id: int
    original_filename: str
    sanitized_filename: str
    mime_type: str
    file_size: int
    sha256_hash: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
