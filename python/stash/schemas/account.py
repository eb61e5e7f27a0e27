"""Account and identity Pydantic schemas.

SECURITY: provider tokens (access/refresh/id) are never part of any
response model.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

MergeStatus = Literal["merged", "already_linked"]


class BindingOut(BaseModel):
    """A linked sign-in method as shown on the settings page."""

    id: str
    provider: str
    provider_account_id: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MeOut(BaseModel):
    """The signed-in user."""

    user_id: str
    name: str
    email: str | None = None
    role: str
    provider: str | None = None


class DirectMergeRequest(BaseModel):
    """Form body of POST /api/account/merge."""

    provider: str = Field(..., min_length=1, max_length=32)
    account_id: str = Field(..., min_length=1, max_length=255)


class MergeResultOut(BaseModel):
    """Outcome of a direct merge."""

    status: MergeStatus
    message: str
