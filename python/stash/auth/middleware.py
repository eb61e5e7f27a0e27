"""Session authentication middleware for FastAPI.

Provides:
- SessionAuthMiddleware: resolves the session cookie to a Viewer on every request
- get_viewer: Dependency for JSON routes (401 when anonymous)
- get_optional_viewer: Dependency for routes that behave differently when anonymous
- require_browser_viewer: Dependency for browser routes (redirect to login when anonymous)

Unlike a bearer-token API, anonymous requests are not rejected here.
Public pages, the OAuth callback and the merge callback all run without a
session; each route decides through its dependency what anonymous means.
"""

from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Depends, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from stash.auth.sessions import SESSION_COOKIE, ResolvedSession
from stash.db.models import UserRole
from stash.errors import ApiError, ApiErrorCode, LoginRequired
from stash.logging import get_logger

logger = get_logger(__name__)

# Paths that never need a session lookup
PUBLIC_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}


@dataclass(frozen=True)
class Viewer:
    """Authenticated viewer identity.

    Attributes:
        user_id: The signed-in user.
        session_id: The session row backing this request.
        provider: OAuth provider that created the session, if any.
        role: Application role of the user.
    """

    user_id: str
    session_id: str
    provider: str | None
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.admin


SessionResolver = Callable[[str], ResolvedSession | None]


class SessionAuthMiddleware(BaseHTTPMiddleware):
    """Attach request.state.viewer when the session cookie is valid.

    Invalid, expired and missing sessions all leave viewer as None.
    """

    def __init__(self, app: ASGIApp, resolver: SessionResolver):
        """Initialize the auth middleware.

        Args:
            app: The ASGI application.
            resolver: Function(token) -> ResolvedSession | None. Called once per
                request that carries a session cookie.
        """
        super().__init__(app)
        self.resolver = resolver

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request.state.viewer = None

        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        token = request.cookies.get(SESSION_COOKIE)
        if token:
            resolved = self.resolver(token)
            if resolved is None:
                logger.info("auth.session_invalid")
            else:
                request.state.viewer = Viewer(
                    user_id=resolved.user_id,
                    session_id=resolved.session_id,
                    provider=resolved.provider,
                    role=resolved.role,
                )

        return await call_next(request)


def get_optional_viewer(request: Request) -> Viewer | None:
    return getattr(request.state, "viewer", None)


def get_viewer(request: Request) -> Viewer:
    """FastAPI dependency to get the authenticated viewer.

    Raises:
        ApiError: E_UNAUTHENTICATED if there is no valid session.
    """
    viewer = get_optional_viewer(request)
    if viewer is None:
        raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Authentication required")
    return viewer


def require_browser_viewer(request: Request) -> Viewer:
    """Like get_viewer, but sends the browser to the login page instead.

    Raises:
        LoginRequired: If there is no valid session.
    """
    viewer = get_optional_viewer(request)
    if viewer is None:
        raise LoginRequired(next_path=request.url.path)
    return viewer


# Type aliases for dependency injection
ViewerDep = Depends(get_viewer)
BrowserViewerDep = Depends(require_browser_viewer)
