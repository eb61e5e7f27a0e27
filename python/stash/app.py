"""FastAPI application creation and configuration.

This module creates and configures the FastAPI application instance.
It registers exception handlers, session middleware, request-id middleware, and routes.

Middleware Ordering (Critical):
- Middleware runs in reverse order of registration
- RequestIDMiddleware is added LAST so it runs FIRST (outermost)
- This ensures all requests (including login redirects) get X-Request-ID

Order of registration:
1. SessionAuthMiddleware (runs second - after request-id)
2. RequestIDMiddleware (runs first - outermost)

Process-wide components (app.state):
- rate_limiters: one RateLimiters set per process
- storage: file blob storage client
- merge_ticket_codec: codec bound to AUTH_SECRET
- httpx_client: shared outbound client for OAuth calls, created in lifespan

Lifespan:
- Creates the httpx.AsyncClient and closes it at shutdown
- Runs a periodic sweep evicting expired rate-limit windows and purging
  expired sessions
"""

import asyncio
import contextlib
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from stash.api.routes import create_api_router
from stash.auth.merge_ticket import MergeTicketCodec
from stash.auth.middleware import SessionAuthMiddleware
from stash.auth.sessions import ResolvedSession, purge_expired_sessions, resolve_session
from stash.config import get_settings
from stash.db.session import session_scope
from stash.errors import ApiError, ApiErrorCode, LoginRequired
from stash.logging import configure_logging, get_logger
from stash.middleware.request_id import RequestIDMiddleware
from stash.responses import (
    api_error_handler,
    error_response,
    http_exception_handler,
    login_required_handler,
    unhandled_exception_handler,
)
from stash.services.rate_limit import RateLimiters, build_rate_limiters
from stash.storage import StorageClientBase, get_storage_client

# Configure structured logging at import time
configure_logging()

logger = get_logger(__name__)

# Expired rate-limit windows and sessions are dropped this often
SWEEP_INTERVAL_S = 300.0


def create_session_resolver():
    """Create a session resolver that creates its own database session.

    The resolver is called by the session middleware for each request that
    carries a session cookie. It opens a fresh database session, resolves
    the token, and closes it.
    """

    def resolve(token: str) -> ResolvedSession | None:
        with session_scope() as db:
            return resolve_session(db, token)

    return resolve


def _purge_sessions() -> int:
    with session_scope() as db:
        return purge_expired_sessions(db)


async def _sweep(limiters: RateLimiters, interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        evicted = limiters.evict_expired()
        if evicted:
            logger.info("rate_limit.evicted", entries=evicted)
        try:
            purged = await asyncio.to_thread(_purge_sessions)
        except SQLAlchemyError:
            # Retried on the next tick
            logger.exception("session.purge_failed")
            continue
        if purged:
            logger.info("session.purged", sessions=purged)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle resources."""
    settings = get_settings()

    # Shared HTTP client for OAuth token exchange and profile calls
    app.state.httpx_client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.oauth_http_timeout_s, connect=5.0),
        limits=httpx.Limits(max_connections=50, max_keepalive_connections=10),
    )

    sweep = asyncio.create_task(_sweep(app.state.rate_limiters, SWEEP_INTERVAL_S))
    logger.info("app_started", env=settings.stash_env.value)

    yield

    sweep.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweep
    await app.state.httpx_client.aclose()
    logger.info("httpx_client_closed")


def create_app(
    skip_auth_middleware: bool = False,
    *,
    rate_limiters: RateLimiters | None = None,
    storage: StorageClientBase | None = None,
    merge_ticket_codec: MergeTicketCodec | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        skip_auth_middleware: If True, skip adding session middleware (for testing).
        rate_limiters: Override the limiter set (for testing with a fake clock).
        storage: Override the storage client (for testing).
        merge_ticket_codec: Override the ticket codec (for testing with a fake clock).

    Returns:
        Configured FastAPI application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="Stash API",
        description="Backend API for Stash - a personal bookmark and file manager",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    if rate_limiters is None:
        rate_limiters = build_rate_limiters(settings)
    if storage is None:
        storage = get_storage_client(settings.storage_dir)
    if merge_ticket_codec is None:
        merge_ticket_codec = MergeTicketCodec(settings.effective_auth_secret)
    app.state.rate_limiters = rate_limiters
    app.state.storage = storage
    app.state.merge_ticket_codec = merge_ticket_codec

    # Register exception handlers
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(LoginRequired, login_required_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Handle request validation errors (including malformed JSON)."""
        return JSONResponse(
            status_code=400,
            content=error_response(ApiErrorCode.E_INVALID_REQUEST, "Invalid request"),
        )

    app.include_router(create_api_router())

    if not skip_auth_middleware:
        app.add_middleware(SessionAuthMiddleware, resolver=create_session_resolver())
        logger.info("session_middleware_enabled", env=settings.stash_env.value)

    return app


def add_request_id_middleware(app: FastAPI, log_requests: bool = True) -> None:
    """Add request-id middleware to the app.

    This should be called AFTER all other middleware is added, so it runs FIRST.

    Args:
        app: The FastAPI application.
        log_requests: Whether to log access entries for each request.
    """
    app.add_middleware(RequestIDMiddleware, log_requests=log_requests)
    logger.info("request_id_middleware_enabled")
