"""API route definitions.

Uses a factory pattern to avoid import-time settings loading.
This allows tests to import modules without requiring all environment
variables to be configured upfront.
"""

from fastapi import APIRouter

from stash.api.routes.account import router as account_router
from stash.api.routes.auth import router as auth_router
from stash.api.routes.bookmarks import router as bookmarks_router
from stash.api.routes.files import router as files_router
from stash.api.routes.health import router as health_router


def create_api_router() -> APIRouter:
    """Create and configure the API router.

    Returns:
        Configured APIRouter with all routes registered.
    """
    api_router = APIRouter()
    api_router.include_router(health_router, tags=["health"])
    api_router.include_router(auth_router, tags=["auth"])
    api_router.include_router(account_router, tags=["account"])
    api_router.include_router(bookmarks_router, tags=["bookmarks"])
    api_router.include_router(files_router, tags=["files"])
    return api_router


__all__ = ["create_api_router"]
