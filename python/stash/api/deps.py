"""FastAPI dependencies for route handlers.

Process-wide components are created once in the app lifespan and stored
on app.state; these accessors hand them to handlers.
"""

import httpx
from fastapi import Request

from stash.auth.merge_ticket import MergeTicketCodec
from stash.config import get_settings
from stash.db.session import get_db, get_session_factory
from stash.services.rate_limit import RateLimiters
from stash.storage import StorageClientBase

__all__ = [
    "get_db",
    "get_session_factory",
    "get_settings",
    "get_rate_limiters",
    "get_storage",
    "get_http_client",
    "get_merge_ticket_codec",
]


def get_rate_limiters(request: Request) -> RateLimiters:
    """Get the shared rate limiter set from app state."""
    return request.app.state.rate_limiters


def get_storage(request: Request) -> StorageClientBase:
    """Get the shared file storage client from app state."""
    return request.app.state.storage


def get_http_client(request: Request) -> httpx.AsyncClient:
    """Get the shared outbound HTTP client (connection pooling) from app state."""
    return request.app.state.httpx_client


def get_merge_ticket_codec(request: Request) -> MergeTicketCodec:
    """Get the merge ticket codec bound to AUTH_SECRET from app state."""
    return request.app.state.merge_ticket_codec
