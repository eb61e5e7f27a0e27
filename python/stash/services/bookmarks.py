"""Bookmark service layer.

Every query is scoped by user_id. A bookmark owned by someone else is
reported as not found, never as forbidden.
"""

from urllib.parse import urlparse

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stash.db.models import Bookmark
from stash.db.session import transaction
from stash.errors import ApiErrorCode, NotFoundError
from stash.logging import get_logger
from stash.schemas.bookmark import BookmarkOut, CreateBookmarkRequest, UpdateBookmarkRequest
from stash.services.url_normalize import normalize_url_for_display, validate_bookmark_url

logger = get_logger(__name__)


def _get_owned(db: Session, user_id: str, bookmark_id: int) -> Bookmark:
    bookmark = db.execute(
        select(Bookmark).where(Bookmark.id == bookmark_id, Bookmark.user_id == user_id)
    ).scalar_one_or_none()
    if bookmark is None:
        raise NotFoundError(ApiErrorCode.E_BOOKMARK_NOT_FOUND, "Bookmark not found")
    return bookmark


def list_bookmarks(
    db: Session,
    user_id: str,
    *,
    include_archived: bool = False,
    starred_only: bool = False,
) -> list[BookmarkOut]:
    """List a user's bookmarks in display order."""
    query = select(Bookmark).where(Bookmark.user_id == user_id)
    if not include_archived:
        query = query.where(Bookmark.is_archived.is_(False))
    if starred_only:
        query = query.where(Bookmark.is_starred.is_(True))
    query = query.order_by(Bookmark.display_order, Bookmark.id)

    return [BookmarkOut.model_validate(b) for b in db.execute(query).scalars().all()]


def create_bookmark(db: Session, user_id: str, request: CreateBookmarkRequest) -> BookmarkOut:
    """Save a URL for a user.

    New bookmarks go to the end of the user's list.

    Raises:
        InvalidRequestError(E_INVALID_URL): If the URL is rejected.
    """
    raw_url = request.url.strip()
    validate_bookmark_url(raw_url)
    url = normalize_url_for_display(raw_url)

    with transaction(db):
        next_order = db.execute(
            select(func.coalesce(func.max(Bookmark.display_order) + 1, 0)).where(
                Bookmark.user_id == user_id
            )
        ).scalar_one()
        bookmark = Bookmark(
            user_id=user_id,
            url=url,
            title=request.title or urlparse(url).hostname or url,
            description=request.description,
            display_order=next_order,
        )
        db.add(bookmark)
        db.flush()
        out = BookmarkOut.model_validate(bookmark)

    logger.info("bookmark.created", bookmark_id=out.id)
    return out


def update_bookmark(
    db: Session, user_id: str, bookmark_id: int, request: UpdateBookmarkRequest
) -> BookmarkOut:
    """Apply a partial update.

    Raises:
        NotFoundError(E_BOOKMARK_NOT_FOUND): If the user owns no such bookmark.
    """
    changes = request.model_dump(exclude_unset=True, exclude_none=True)

    with transaction(db):
        bookmark = _get_owned(db, user_id, bookmark_id)
        for field, value in changes.items():
            setattr(bookmark, field, value)
        db.flush()
        out = BookmarkOut.model_validate(bookmark)

    return out


def delete_bookmark(db: Session, user_id: str, bookmark_id: int) -> None:
    """Delete a bookmark.

    Raises:
        NotFoundError(E_BOOKMARK_NOT_FOUND): If the user owns no such bookmark.
    """
    with transaction(db):
        bookmark = _get_owned(db, user_id, bookmark_id)
        db.delete(bookmark)

    logger.info("bookmark.deleted", bookmark_id=bookmark_id)
