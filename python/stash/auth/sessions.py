"""Signed-in browser sessions.

A session is a database row holding an opaque random token. The token is
the only thing the browser holds (cookie stash_session); everything else
is looked up server-side on each request.

Expiry is compared in SQL so the comparison is made by the database clock
format rather than by Python datetime arithmetic on driver-returned values.
"""

import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from fastapi import Request, Response
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from stash.config import Settings
from stash.db.models import Session as UserSession
from stash.db.models import User, UserRole
from stash.db.session import transaction
from stash.logging import get_logger
from stash.services.redact import hash_text, safe_kv

logger = get_logger(__name__)

SESSION_COOKIE = "stash_session"

# 32 random bytes, urlsafe-encoded
SESSION_TOKEN_BYTES = 32

# Headers are stored for the session list; cap what we keep
MAX_USER_AGENT_LENGTH = 512


@dataclass(frozen=True)
class ResolvedSession:
    """A live session joined with its user."""

    session_id: str
    user_id: str
    provider: str | None
    role: UserRole


def create_session(
    db: Session,
    user_id: str,
    *,
    provider: str | None,
    ttl_seconds: int,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> str:
    """Create a session for a user and return its token."""
    token = secrets.token_urlsafe(SESSION_TOKEN_BYTES)
    expires_at = datetime.now(UTC) + timedelta(seconds=ttl_seconds)

    with transaction(db):
        db.add(
            UserSession(
                user_id=user_id,
                token=token,
                provider=provider,
                expires_at=expires_at,
                ip_address=ip_address,
                user_agent=user_agent[:MAX_USER_AGENT_LENGTH] if user_agent else None,
            )
        )

    logger.info(
        "session.created",
        **safe_kv(user_id=user_id, provider=provider, token_sha256=hash_text(token)[:16]),
    )
    return token


def resolve_session(db: Session, token: str | None) -> ResolvedSession | None:
    """Look up a non-expired session by token.

    Returns:
        The session and its user's role, or None if missing or expired.
    """
    if not token:
        return None

    row = db.execute(
        select(UserSession.id, UserSession.user_id, UserSession.provider, User.role)
        .join(User, User.id == UserSession.user_id)
        .where(
            UserSession.token == token,
            UserSession.expires_at > datetime.now(UTC),
        )
    ).one_or_none()
    if row is None:
        return None

    return ResolvedSession(
        session_id=row.id,
        user_id=row.user_id,
        provider=row.provider,
        role=row.role,
    )


def revoke_session(db: Session, session_id: str) -> bool:
    """Delete one session. Returns True if it existed."""
    with transaction(db):
        result = db.execute(delete(UserSession).where(UserSession.id == session_id))
    return result.rowcount == 1


def purge_expired_sessions(db: Session) -> int:
    """Delete every expired session. Returns the number removed."""
    with transaction(db):
        result = db.execute(delete(UserSession).where(UserSession.expires_at <= datetime.now(UTC)))
    return result.rowcount


def get_session_token(request: Request) -> str | None:
    return request.cookies.get(SESSION_COOKIE)


def set_session_cookie(response: Response, token: str, settings: Settings) -> None:
    """Attach the session cookie to a response."""
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=settings.session_ttl_s,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.cookies_secure,
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        SESSION_COOKIE,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.cookies_secure,
    )
