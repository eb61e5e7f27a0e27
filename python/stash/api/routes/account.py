"""Account settings routes: linked providers, merge, unlink, delete.

Routes are transport-only:
- Resolve the viewer through a dependency
- Enforce the account rate limit
- Call exactly one service function
- Return success(...), a redirect, or raise ApiError

Browser form posts (unlink, delete) answer with 303 redirects; the merge
start/callback pair answers with 302 redirects; direct merge and the
bindings list answer with JSON envelopes.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Form, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from stash.api.deps import get_db, get_merge_ticket_codec, get_rate_limiters, get_storage
from stash.auth import oauth
from stash.auth.merge_ticket import (
    MERGE_TICKET_COOKIE,
    MergeTicketCodec,
    clear_merge_ticket_cookie,
    set_merge_ticket_cookie,
)
from stash.auth.middleware import Viewer, get_optional_viewer, get_viewer, require_browser_viewer
from stash.auth.sessions import clear_session_cookie
from stash.config import Settings, get_settings
from stash.responses import redirect_with_params, success_response
from stash.services import accounts as accounts_service
from stash.services import merge as merge_service
from stash.services.rate_limit import RateLimiters, get_client_ip
from stash.storage import StorageClientBase

router = APIRouter()


@router.get("/api/account/bindings")
def list_bindings(
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """List the viewer's linked sign-in methods."""
    bindings = accounts_service.list_user_bindings(db, viewer.user_id)
    return success_response([b.model_dump(mode="json") for b in bindings])


# =============================================================================
# Merge
# =============================================================================


@router.get("/api/account/merge/start")
def start_merge(
    viewer: Annotated[Viewer, Depends(require_browser_viewer)],
    settings: Annotated[Settings, Depends(get_settings)],
    limiters: Annotated[RateLimiters, Depends(get_rate_limiters)],
    codec: Annotated[MergeTicketCodec, Depends(get_merge_ticket_codec)],
    provider: Annotated[str, Query()] = "",
) -> RedirectResponse:
    """Issue a merge ticket and send the browser to the provider."""
    limiters.account.enforce(f"merge:{viewer.user_id}")

    start = merge_service.start_merge(viewer, provider, settings, codec)

    response = RedirectResponse(start.authorization_url, status_code=302)
    set_merge_ticket_cookie(response, start.ticket, settings)
    oauth.set_state_cookie(response, start.state_nonce, settings)
    return response


@router.get("/api/account/merge/callback")
def merge_callback(
    request: Request,
    viewer: Annotated[Viewer | None, Depends(get_optional_viewer)],
    db: Annotated[Session, Depends(get_db)],
    settings: Annotated[Settings, Depends(get_settings)],
    limiters: Annotated[RateLimiters, Depends(get_rate_limiters)],
    codec: Annotated[MergeTicketCodec, Depends(get_merge_ticket_codec)],
    token: str | None = None,
) -> RedirectResponse:
    """Complete a ticket-based merge after the provider round-trip.

    The ticket is read from the merge_token cookie only. A token query
    parameter, if present, must match that cookie.
    """
    limiters.account.enforce(f"merge_callback:{get_client_ip(request)}")

    result = merge_service.complete_merge(
        db,
        ticket_value=request.cookies.get(MERGE_TICKET_COOKIE),
        viewer=viewer,
        codec=codec,
        echoed_ticket=token,
    )

    if result.outcome is None:
        response = redirect_with_params(settings.settings_path)
    elif result.outcome.is_error:
        response = redirect_with_params(settings.settings_path, error=result.outcome.value)
    else:
        response = redirect_with_params(settings.settings_path, message=result.outcome.value)

    clear_merge_ticket_cookie(response, settings)
    if result.sign_out:
        # The merge already deleted the superseded user's sessions
        clear_session_cookie(response, settings)
    return response


@router.post("/api/account/merge")
def direct_merge(
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    settings: Annotated[Settings, Depends(get_settings)],
    limiters: Annotated[RateLimiters, Depends(get_rate_limiters)],
    provider: Annotated[str | None, Form()] = None,
    account_id: Annotated[str | None, Form(alias="accountId")] = None,
) -> dict:
    """Merge the owner of an existing binding into the current user."""
    limiters.account.enforce(f"merge:{viewer.user_id}")

    result = merge_service.direct_merge(
        db,
        viewer=viewer,
        provider=provider,
        account_id=account_id,
        settings=settings,
    )
    return success_response(result.model_dump(mode="json"))


# =============================================================================
# Unlink / delete
# =============================================================================


@router.post("/api/account/unlink")
def unlink_account(
    viewer: Annotated[Viewer, Depends(require_browser_viewer)],
    db: Annotated[Session, Depends(get_db)],
    settings: Annotated[Settings, Depends(get_settings)],
    limiters: Annotated[RateLimiters, Depends(get_rate_limiters)],
    account_id: Annotated[str | None, Form(alias="accountId")] = None,
) -> RedirectResponse:
    """Remove one linked sign-in method. Never the last one."""
    limiters.account.enforce(f"unlink:{viewer.user_id}")

    accounts_service.unlink_binding(db, viewer.user_id, account_id)
    return redirect_with_params(settings.settings_path, status_code=303, message="account_unlinked")


@router.post("/api/account/delete")
def delete_account(
    viewer: Annotated[Viewer, Depends(require_browser_viewer)],
    db: Annotated[Session, Depends(get_db)],
    settings: Annotated[Settings, Depends(get_settings)],
    limiters: Annotated[RateLimiters, Depends(get_rate_limiters)],
    storage: Annotated[StorageClientBase, Depends(get_storage)],
) -> RedirectResponse:
    """Delete the viewer's account and everything it owns."""
    limiters.account.enforce(f"delete:{viewer.user_id}")

    accounts_service.delete_account(db, viewer.user_id, storage)

    response = redirect_with_params("/", status_code=303, message="account_deleted")
    clear_session_cookie(response, settings)
    return response
