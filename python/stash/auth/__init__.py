"""Authentication: sessions, OAuth sign-in and merge tickets."""

from stash.auth.merge_ticket import (
    MERGE_TICKET_COOKIE,
    MERGE_TICKET_TTL_SECONDS,
    MergeTicket,
    MergeTicketCodec,
    issue_merge_ticket,
    verify_merge_ticket,
)
from stash.auth.middleware import (
    SessionAuthMiddleware,
    Viewer,
    get_optional_viewer,
    get_viewer,
    require_browser_viewer,
)
from stash.auth.sessions import SESSION_COOKIE

__all__ = [
    "MERGE_TICKET_COOKIE",
    "MERGE_TICKET_TTL_SECONDS",
    "MergeTicket",
    "MergeTicketCodec",
    "issue_merge_ticket",
    "verify_merge_ticket",
    "SessionAuthMiddleware",
    "Viewer",
    "get_optional_viewer",
    "get_viewer",
    "require_browser_viewer",
    "SESSION_COOKIE",
]
