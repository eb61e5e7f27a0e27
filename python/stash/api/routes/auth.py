"""Sign-in, sign-out and current-user routes.

The OAuth routes are browser-facing: they answer with redirects, and a
failed callback lands on the login page with an error indicator rather
than a JSON body.
"""

from typing import Annotated

import httpx
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from stash.api.deps import get_db, get_http_client
from stash.auth import oauth
from stash.auth.middleware import Viewer, get_optional_viewer, get_viewer
from stash.auth.sessions import (
    clear_session_cookie,
    create_session,
    revoke_session,
    set_session_cookie,
)
from stash.config import Settings, get_settings
from stash.errors import ApiError
from stash.logging import get_logger
from stash.responses import redirect_with_params, success_response
from stash.services import accounts as accounts_service
from stash.services.bootstrap import ensure_user_for_identity
from stash.services.rate_limit import get_client_ip

logger = get_logger(__name__)

router = APIRouter()


@router.get("/api/auth/sign-in/{provider}")
def sign_in(
    provider: str,
    settings: Annotated[Settings, Depends(get_settings)],
    callback_url: Annotated[str | None, Query(alias="callbackURL")] = None,
) -> RedirectResponse:
    """Start the OAuth flow for a provider.

    callbackURL must be a same-origin path; anything else falls back to "/".
    """
    oauth_provider, client_id, _ = oauth.get_provider(provider, settings)
    target = callback_url
    if not oauth.is_safe_callback_path(target):
        target = oauth.DEFAULT_CALLBACK_PATH

    state, nonce = oauth.issue_state(provider, target, settings.effective_auth_secret)
    response = RedirectResponse(
        oauth.build_authorization_url(
            oauth_provider, client_id, oauth.redirect_uri_for(provider, settings), state
        ),
        status_code=302,
    )
    oauth.set_state_cookie(response, nonce, settings)
    return response


def _complete_sign_in(
    db: Session,
    identity: oauth.ExternalIdentity,
    previous: Viewer | None,
    settings: Settings,
    ip_address: str,
    user_agent: str | None,
) -> str:
    user_id = ensure_user_for_identity(db, identity)
    if previous is not None:
        revoke_session(db, previous.session_id)
    return create_session(
        db,
        user_id,
        provider=identity.provider,
        ttl_seconds=settings.session_ttl_s,
        ip_address=ip_address,
        user_agent=user_agent,
    )


@router.get("/api/auth/callback/{provider}")
async def oauth_callback(
    request: Request,
    provider: str,
    db: Annotated[Session, Depends(get_db)],
    settings: Annotated[Settings, Depends(get_settings)],
    client: Annotated[httpx.AsyncClient, Depends(get_http_client)],
    viewer: Annotated[Viewer | None, Depends(get_optional_viewer)],
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
) -> RedirectResponse:
    """Finish the OAuth flow: verify state, exchange the code, start a session."""
    if error:
        logger.info("oauth.callback_denied", provider=provider, provider_error=error[:64])
        response = redirect_with_params(settings.login_path, error="sign_in_cancelled")
        oauth.clear_state_cookie(response, settings)
        return response

    try:
        oauth_provider, client_id, client_secret = oauth.get_provider(provider, settings)
        verified = oauth.verify_state(
            state,
            request.cookies.get(oauth.OAUTH_STATE_COOKIE),
            provider,
            settings.effective_auth_secret,
        )
        if not code:
            raise oauth.OAuthProviderError("Sign-in provider returned no code")

        redirect_uri = oauth.redirect_uri_for(provider, settings)
        tokens = await oauth.exchange_code(
            client,
            oauth_provider,
            code=code,
            redirect_uri=redirect_uri,
            client_id=client_id,
            client_secret=client_secret,
            timeout=settings.oauth_http_timeout_s,
        )
        identity = await oauth.fetch_identity(
            client, oauth_provider, tokens, timeout=settings.oauth_http_timeout_s
        )
    except ApiError as e:
        logger.warning("oauth.callback_failed", provider=provider, error_code=e.code.value)
        response = redirect_with_params(settings.login_path, error="sign_in_failed")
        oauth.clear_state_cookie(response, settings)
        return response

    session_token = await run_in_threadpool(
        _complete_sign_in,
        db,
        identity,
        viewer,
        settings,
        get_client_ip(request),
        request.headers.get("user-agent"),
    )

    response = RedirectResponse(verified.callback_url, status_code=302)
    set_session_cookie(response, session_token, settings)
    oauth.clear_state_cookie(response, settings)
    return response


@router.post("/api/auth/sign-out")
def sign_out(
    db: Annotated[Session, Depends(get_db)],
    settings: Annotated[Settings, Depends(get_settings)],
    viewer: Annotated[Viewer | None, Depends(get_optional_viewer)],
) -> RedirectResponse:
    """End the current session. Safe to call without one."""
    if viewer is not None:
        revoke_session(db, viewer.session_id)
        logger.info("session.signed_out")
    response = redirect_with_params("/", status_code=303)
    clear_session_cookie(response, settings)
    return response


@router.get("/api/me")
def get_me(
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """Get current user information."""
    me = accounts_service.get_me(db, viewer.user_id, viewer.provider)
    return success_response(me.model_dump(mode="json"))
