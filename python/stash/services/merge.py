"""Account merge orchestration.

Two entry protocols fold one internal user into another:

A. Ticket-based (re-authentication):
       Idle -> TicketIssued -> AwaitingExternalAuth -> CallbackReceived -> Merged | Rejected

   start_merge() issues a merge ticket for the current user and sends the
   browser to the provider. The provider round-trip ends with a fresh session
   for whichever user that external account resolves to (possibly a brand-new
   one). complete_merge() then verifies the ticket and folds the session's
   user into the ticket's target.

   No state is kept in-process between the two steps. Everything the
   callback needs is in the signed ticket and the post-OAuth session, so the
   two requests may land on different workers.

B. Direct (settings form): direct_merge() looks up an existing binding by
   (provider, account id) and folds its owner into the current user.

Surviving identity:
    The survivor is always the identity that authorized the merge: the
    ticket's target in A, the current user in B. The most recently
    authenticated account never displaces an established one.
"""

import hmac
from dataclasses import dataclass
from enum import Enum

from sqlalchemy.orm import Session

from stash.auth.merge_ticket import MergeTicketCodec
from stash.auth.middleware import Viewer
from stash.auth.oauth import (
    build_authorization_url,
    get_provider,
    issue_state,
    redirect_uri_for,
)
from stash.config import ALLOWED_PROVIDERS, Settings
from stash.errors import ApiError, ApiErrorCode, ForbiddenError, InvalidRequestError, NotFoundError
from stash.logging import get_logger
from stash.schemas.account import MergeResultOut
from stash.services import identity_store
from stash.services.identity_store import IdentityMergeError, MergeCounts
from stash.services.redact import hash_text, safe_kv

logger = get_logger(__name__)

MERGE_CALLBACK_PATH = "/api/account/merge/callback"


class MergeState(str, Enum):
    """States of the ticket-based merge protocol."""

    IDLE = "idle"
    TICKET_ISSUED = "ticket_issued"
    AWAITING_EXTERNAL_AUTH = "awaiting_external_auth"
    CALLBACK_RECEIVED = "callback_received"
    MERGED = "merged"
    ALREADY_LINKED = "already_linked"
    REJECTED = "rejected"


class MergeOutcome(str, Enum):
    """Indicator shown on the settings page after the callback."""

    SUCCESS = "merge_success"
    ALREADY_LINKED = "already_linked"
    TOKEN_INVALID = "merge_token_invalid"
    SESSION_INVALID = "merge_session_invalid"
    FAILED = "merge_failed"

    @property
    def is_error(self) -> bool:
        return self in (
            MergeOutcome.TOKEN_INVALID,
            MergeOutcome.SESSION_INVALID,
            MergeOutcome.FAILED,
        )


@dataclass(frozen=True)
class MergeStart:
    """What the start route needs to set cookies and redirect."""

    ticket: str
    state_nonce: str
    authorization_url: str


@dataclass(frozen=True)
class MergeCallbackResult:
    """Terminal state of a callback.

    Attributes:
        state: Final protocol state.
        outcome: Settings-page indicator, or None to redirect unmodified.
        sign_out: Whether the caller's session cookie must be cleared.
        counts: Rows moved, when a merge ran.
    """

    state: MergeState
    outcome: MergeOutcome | None
    sign_out: bool = False
    counts: MergeCounts | None = None


def _transition(state: MergeState, **fields) -> None:
    logger.info("merge.state", state=state.value, **safe_kv(**fields))


def start_merge(
    viewer: Viewer, provider: str, settings: Settings, codec: MergeTicketCodec
) -> MergeStart:
    """Issue a ticket for the viewer and build the provider redirect.

    Raises:
        InvalidRequestError(E_INVALID_PROVIDER): Unknown or unconfigured provider.
    """
    oauth_provider, client_id, _ = get_provider(provider, settings)

    ticket = codec.issue(viewer.user_id, provider)
    _transition(MergeState.TICKET_ISSUED, provider=provider, ticket_sha256=hash_text(ticket)[:16])

    state, nonce = issue_state(provider, MERGE_CALLBACK_PATH, settings.effective_auth_secret)
    url = build_authorization_url(
        oauth_provider,
        client_id,
        redirect_uri_for(provider, settings),
        state,
    )
    _transition(MergeState.AWAITING_EXTERNAL_AUTH, provider=provider)
    return MergeStart(ticket=ticket, state_nonce=nonce, authorization_url=url)


def complete_merge(
    db: Session,
    *,
    ticket_value: str | None,
    viewer: Viewer | None,
    codec: MergeTicketCodec,
    echoed_ticket: str | None = None,
) -> MergeCallbackResult:
    """Finish a ticket-based merge.

    Only ticket_value, the HttpOnly cookie set on this browser by start,
    is ever verified. echoed_ticket (the token query parameter) must equal
    it exactly; on its own it proves nothing, since anyone can mint a
    ticket for their own account and hand the link to someone else.

    Never raises for expected failures. Every outcome maps to a redirect
    indicator; the caller clears the ticket cookie regardless.
    """
    if not ticket_value:
        if echoed_ticket:
            _transition(MergeState.REJECTED, reason="ticket_not_bound_to_browser")
            return MergeCallbackResult(
                state=MergeState.REJECTED, outcome=MergeOutcome.TOKEN_INVALID
            )
        return MergeCallbackResult(state=MergeState.IDLE, outcome=None)

    _transition(MergeState.CALLBACK_RECEIVED)

    if echoed_ticket is not None and not hmac.compare_digest(
        echoed_ticket.encode("utf-8"), ticket_value.encode("utf-8")
    ):
        _transition(MergeState.REJECTED, reason="ticket_mismatch")
        return MergeCallbackResult(state=MergeState.REJECTED, outcome=MergeOutcome.TOKEN_INVALID)

    ticket = codec.verify(ticket_value)
    if ticket is None:
        _transition(MergeState.REJECTED, reason="ticket_invalid")
        return MergeCallbackResult(state=MergeState.REJECTED, outcome=MergeOutcome.TOKEN_INVALID)

    if viewer is None:
        _transition(MergeState.REJECTED, reason="no_session")
        return MergeCallbackResult(state=MergeState.REJECTED, outcome=MergeOutcome.SESSION_INVALID)

    # The re-authentication must have used the provider the ticket was issued for.
    # Reported exactly like a bad ticket.
    if viewer.provider != ticket.provider:
        _transition(MergeState.REJECTED, reason="provider_mismatch")
        return MergeCallbackResult(state=MergeState.REJECTED, outcome=MergeOutcome.TOKEN_INVALID)

    if viewer.user_id == ticket.target_user_id:
        _transition(MergeState.ALREADY_LINKED, provider=ticket.provider)
        return MergeCallbackResult(
            state=MergeState.ALREADY_LINKED, outcome=MergeOutcome.ALREADY_LINKED
        )

    try:
        counts = identity_store.merge_into(
            db,
            surviving_user_id=ticket.target_user_id,
            superseded_user_id=viewer.user_id,
        )
    except IdentityMergeError as e:
        _transition(MergeState.REJECTED, reason=e.reason)
        return MergeCallbackResult(state=MergeState.REJECTED, outcome=MergeOutcome.FAILED)

    _transition(MergeState.MERGED, provider=ticket.provider)
    logger.info("merge.completed", protocol="ticket", provider=ticket.provider)
    return MergeCallbackResult(
        state=MergeState.MERGED,
        outcome=MergeOutcome.SUCCESS,
        sign_out=True,
        counts=counts,
    )


def direct_merge(
    db: Session,
    *,
    viewer: Viewer,
    provider: str | None,
    account_id: str | None,
    settings: Settings,
) -> MergeResultOut:
    """Fold the owner of (provider, account_id) into the current user.

    Raises:
        ForbiddenError(E_DIRECT_MERGE_DISABLED): The direct path is switched off.
        InvalidRequestError: Missing or unknown provider, or missing account id.
        NotFoundError(E_ACCOUNT_NOT_FOUND): No such binding.
        ApiError(E_MERGE_FAILED): The merge could not be applied.
    """
    if not settings.direct_merge_enabled:
        raise ForbiddenError(
            ApiErrorCode.E_DIRECT_MERGE_DISABLED, "Direct account merge is disabled"
        )

    provider = (provider or "").strip()
    account_id = (account_id or "").strip()
    if not provider or not account_id:
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_REQUEST, "provider and accountId are required"
        )
    if provider not in ALLOWED_PROVIDERS:
        raise InvalidRequestError(ApiErrorCode.E_INVALID_PROVIDER, "Unsupported provider")

    binding = identity_store.find_binding(db, provider, account_id)
    if binding is None:
        logger.info("merge.rejected", protocol="direct", reason="binding_not_found")
        raise NotFoundError(ApiErrorCode.E_ACCOUNT_NOT_FOUND, "Account not found")

    owner_id = binding.user_id

    if owner_id == viewer.user_id:
        return MergeResultOut(status="already_linked", message="Account is already linked")

    try:
        identity_store.merge_into(
            db,
            surviving_user_id=viewer.user_id,
            superseded_user_id=owner_id,
        )
    except IdentityMergeError as e:
        logger.warning("merge.rejected", protocol="direct", reason=e.reason)
        raise ApiError(ApiErrorCode.E_MERGE_FAILED, "Account merge failed") from e

    logger.info("merge.completed", protocol="direct", provider=provider)
    return MergeResultOut(status="merged", message="Accounts merged")
