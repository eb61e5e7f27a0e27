"""Bookmark routes.

Routes are transport-only:
- Extract the viewer from request.state
- Call exactly one service function
- Return success(...) or raise ApiError
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from stash.api.deps import get_db, get_rate_limiters
from stash.auth.middleware import Viewer, get_viewer
from stash.responses import success_response
from stash.schemas.bookmark import CreateBookmarkRequest, UpdateBookmarkRequest
from stash.services import bookmarks as bookmarks_service
from stash.services.rate_limit import RateLimiters

router = APIRouter()


@router.get("/api/bookmarks")
def list_bookmarks(
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    include_archived: Annotated[bool, Query()] = False,
    starred: Annotated[bool, Query()] = False,
) -> dict:
    """List the viewer's bookmarks in display order."""
    result = bookmarks_service.list_bookmarks(
        db, viewer.user_id, include_archived=include_archived, starred_only=starred
    )
    return success_response([b.model_dump(mode="json") for b in result])


@router.post("/api/bookmarks", status_code=201)
def create_bookmark(
    body: CreateBookmarkRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    limiters: Annotated[RateLimiters, Depends(get_rate_limiters)],
) -> dict:
    """Save a URL."""
    limiters.bookmark.enforce(f"bookmark:{viewer.user_id}")
    result = bookmarks_service.create_bookmark(db, viewer.user_id, body)
    return success_response(result.model_dump(mode="json"))


@router.patch("/api/bookmarks/{bookmark_id}")
def update_bookmark(
    bookmark_id: int,
    body: UpdateBookmarkRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """Update title, flags or position of a bookmark."""
    result = bookmarks_service.update_bookmark(db, viewer.user_id, bookmark_id, body)
    return success_response(result.model_dump(mode="json"))


@router.delete("/api/bookmarks/{bookmark_id}", status_code=204)
def delete_bookmark(
    bookmark_id: int,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> Response:
    """Delete a bookmark."""
    bookmarks_service.delete_bookmark(db, viewer.user_id, bookmark_id)
    return Response(status_code=204)
