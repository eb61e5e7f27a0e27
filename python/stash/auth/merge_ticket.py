"""Merge tickets: signed, short-lived bearer tokens authorizing one account merge.

A ticket binds {target user, OAuth provider, issuance time} and travels in
the merge_token cookie across the external OAuth round-trip, where no
server-side state can be threaded through.

Wire format:
    base64url(payload_json) "." base64url(HMAC-SHA256(secret, base64url(payload_json)))

    payload_json is serialized with sorted keys and no whitespace, so the
    same logical payload always produces the same bytes. Padding is stripped.

Validity:
- The tag verifies under the shared secret (constant-time comparison)
- now - issued_at <= 300 seconds
- issued_at is not in the future beyond a small clock-skew allowance

verify() returns None for every failure. Callers only ever learn
"invalid"; the specific reason is logged server-side.
"""

import base64
import binascii
import hashlib
import hmac
import json
import time
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Response

from stash.config import ALLOWED_PROVIDERS, Settings
from stash.logging import get_logger

logger = get_logger(__name__)

MERGE_TICKET_TTL_SECONDS = 300
MERGE_TICKET_COOKIE = "merge_token"

# Allowance for clocks of different workers disagreeing
CLOCK_SKEW_SECONDS = 60


@dataclass(frozen=True)
class MergeTicket:
    """Verified ticket payload.

    Attributes:
        target_user_id: The user that survives the merge.
        provider: The OAuth provider the re-authentication must use.
        issued_at: Issuance time, epoch seconds.
    """

    target_user_id: str
    provider: str
    issued_at: int


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("ascii"))


def _sign(payload_b64: str, secret: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).digest()


def issue_merge_ticket(
    target_user_id: str,
    provider: str,
    secret: str,
    *,
    now: float | None = None,
) -> str:
    """Create a signed merge ticket.

    Args:
        target_user_id: The user that will survive the merge.
        provider: OAuth provider the user must re-authenticate with.
        secret: Shared signing secret.
        now: Issuance time override (epoch seconds), for tests.

    Returns:
        Cookie-safe ticket string.

    Raises:
        ValueError: If the target is empty or the provider is not allowed.
    """
    if not target_user_id:
        raise ValueError("target_user_id is required")
    if provider not in ALLOWED_PROVIDERS:
        raise ValueError(f"Unsupported provider: {provider}")
    if not secret:
        raise ValueError("secret is required")

    issued_at = int(now if now is not None else time.time())
    payload = {
        "iat": issued_at,
        "provider": provider,
        "target_user_id": target_user_id,
    }
    payload_b64 = _b64encode(
        json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    )
    return f"{payload_b64}.{_b64encode(_sign(payload_b64, secret))}"


def _reject(reason: str) -> None:
    logger.info("merge_ticket.rejected", reason=reason)


def verify_merge_ticket(
    token: str | None,
    secret: str,
    *,
    now: float | None = None,
) -> MergeTicket | None:
    """Verify a merge ticket.

    Args:
        token: Ticket string as read from the cookie or query string.
        secret: Shared signing secret.
        now: Verification time override (epoch seconds), for tests.

    Returns:
        The payload on full success, None otherwise.
    """
    if not token or not secret:
        _reject("missing")
        return None

    parts = token.split(".")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        _reject("malformed")
        return None
    payload_b64, tag_b64 = parts

    try:
        expected_b64 = _b64encode(_sign(payload_b64, secret))
    except UnicodeEncodeError:
        _reject("malformed")
        return None

    # Compare the canonical encoding so non-canonical base64 variants of a
    # valid tag are rejected too
    if not hmac.compare_digest(tag_b64.encode("utf-8"), expected_b64.encode("ascii")):
        _reject("signature")
        return None

    try:
        payload = json.loads(_b64decode(payload_b64))
    except (binascii.Error, ValueError, UnicodeDecodeError):
        _reject("payload")
        return None

    if not isinstance(payload, dict):
        _reject("payload")
        return None

    target_user_id = payload.get("target_user_id")
    provider = payload.get("provider")
    issued_at = payload.get("iat")
    if (
        not isinstance(target_user_id, str)
        or not target_user_id
        or provider not in ALLOWED_PROVIDERS
        or not isinstance(issued_at, int)
        or isinstance(issued_at, bool)
    ):
        _reject("payload")
        return None

    current = now if now is not None else time.time()
    elapsed = current - issued_at
    if elapsed > MERGE_TICKET_TTL_SECONDS:
        _reject("expired")
        return None
    if elapsed < -CLOCK_SKEW_SECONDS:
        _reject("issued_in_future")
        return None

    return MergeTicket(target_user_id=target_user_id, provider=provider, issued_at=issued_at)


class MergeTicketCodec:
    """Ticket codec bound to a secret and a clock.

    Thin convenience wrapper so callers do not thread the secret around.
    """

    def __init__(self, secret: str, clock: Callable[[], float] | None = None):
        self._secret = secret
        self._clock = clock or time.time

    def issue(self, target_user_id: str, provider: str) -> str:
        return issue_merge_ticket(target_user_id, provider, self._secret, now=self._clock())

    def verify(self, token: str | None) -> MergeTicket | None:
        return verify_merge_ticket(token, self._secret, now=self._clock())


def set_merge_ticket_cookie(response: Response, ticket: str, settings: Settings) -> None:
    """Carry the ticket across the provider round-trip.

    HttpOnly, SameSite=Lax (sent on the top-level redirect back from the
    provider), Max-Age bounded by the ticket lifetime.
    """
    response.set_cookie(
        MERGE_TICKET_COOKIE,
        ticket,
        max_age=MERGE_TICKET_TTL_SECONDS,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.cookies_secure,
    )


def clear_merge_ticket_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        MERGE_TICKET_COOKIE,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.cookies_secure,
    )
