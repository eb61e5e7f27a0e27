"""OAuth 2 authorization-code flow for the supported sign-in providers.

Flow:
1. build_authorization_url() sends the browser to the provider with a
   signed state JWT (HS256) naming the provider, the post-login path and a
   nonce. The nonce is also pinned in the oauth_state cookie, so a state
   value lifted from one browser is useless in another.
2. On the callback, verify_state() checks signature, expiry, provider and
   nonce.
3. exchange_code() trades the code for provider tokens and
   fetch_identity() reads the external profile.

All HTTP calls go through a shared httpx.AsyncClient owned by the app.
"""

import hmac
import secrets
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx
import jwt
from fastapi import Response

from stash.config import ALLOWED_PROVIDERS, Settings
from stash.errors import ApiError, ApiErrorCode, InvalidRequestError
from stash.logging import get_logger

logger = get_logger(__name__)

OAUTH_STATE_COOKIE = "oauth_state"
OAUTH_STATE_TTL_SECONDS = 600
OAUTH_STATE_AUDIENCE = "stash-oauth-state"

DEFAULT_CALLBACK_PATH = "/"
OAUTH_CALLBACK_PREFIX = "/api/auth/callback"


@dataclass(frozen=True)
class OAuthProvider:
    """Static endpoints and scopes for one provider."""

    name: str
    authorize_url: str
    token_url: str
    userinfo_url: str
    scope: str
    emails_url: str | None = None


PROVIDERS: dict[str, OAuthProvider] = {
    "google": OAuthProvider(
        name="google",
        authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        userinfo_url="https://openidconnect.googleapis.com/v1/userinfo",
        scope="openid email profile",
    ),
    "github": OAuthProvider(
        name="github",
        authorize_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",
        userinfo_url="https://api.github.com/user",
        scope="read:user user:email",
        emails_url="https://api.github.com/user/emails",
    ),
}


@dataclass(frozen=True)
class ExternalIdentity:
    """Profile and tokens for an authenticated external account."""

    provider: str
    provider_account_id: str
    email: str | None
    email_verified: bool
    name: str
    image: str | None
    access_token: str | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    expires_in: int | None = None
    scope: str | None = None


@dataclass(frozen=True)
class OAuthState:
    provider: str
    callback_url: str


class OAuthProviderError(ApiError):
    """The provider rejected a request or returned something unusable."""

    def __init__(self, message: str = "Sign-in provider request failed"):
        super().__init__(ApiErrorCode.E_OAUTH_PROVIDER_ERROR, message)


def get_provider(name: str, settings: Settings) -> tuple[OAuthProvider, str, str]:
    """Resolve a provider name to its endpoints and credentials.

    Raises:
        InvalidRequestError(E_INVALID_PROVIDER): If the provider is not in the
            allow-list or has no credentials configured.
    """
    if name not in ALLOWED_PROVIDERS or name not in PROVIDERS:
        raise InvalidRequestError(ApiErrorCode.E_INVALID_PROVIDER, "Unsupported provider")
    credentials = settings.provider_credentials(name)
    if credentials is None:
        raise InvalidRequestError(ApiErrorCode.E_INVALID_PROVIDER, "Provider is not configured")
    client_id, client_secret = credentials
    return PROVIDERS[name], client_id, client_secret


def is_safe_callback_path(value: str | None) -> bool:
    """Only same-origin absolute paths are allowed as post-login targets."""
    if not value or not value.startswith("/"):
        return False
    if value.startswith("//") or "\\" in value:
        return False
    return not any(ch in value for ch in "\r\n\t")


def redirect_uri_for(provider: str, settings: Settings) -> str:
    return f"{settings.base_url.rstrip('/')}{OAUTH_CALLBACK_PREFIX}/{provider}"


def issue_state(
    provider: str,
    callback_url: str,
    secret: str,
    *,
    now: float | None = None,
) -> tuple[str, str]:
    """Create a state token.

    Returns:
        (state_jwt, nonce). The nonce goes in the oauth_state cookie.
    """
    issued_at = int(now if now is not None else time.time())
    nonce = secrets.token_urlsafe(16)
    payload = {
        "aud": OAUTH_STATE_AUDIENCE,
        "provider": provider,
        "callback_url": callback_url,
        "nonce": nonce,
        "iat": issued_at,
        "exp": issued_at + OAUTH_STATE_TTL_SECONDS,
    }
    return jwt.encode(payload, secret, algorithm="HS256"), nonce


def verify_state(
    state: str | None,
    nonce_cookie: str | None,
    provider: str,
    secret: str,
) -> OAuthState:
    """Verify a returned state token against the cookie nonce.

    Raises:
        InvalidRequestError(E_OAUTH_STATE_INVALID): On any failure.
    """
    invalid = InvalidRequestError(ApiErrorCode.E_OAUTH_STATE_INVALID, "Invalid sign-in state")
    if not state or not nonce_cookie:
        raise invalid

    try:
        payload = jwt.decode(
            state,
            secret,
            algorithms=["HS256"],
            audience=OAUTH_STATE_AUDIENCE,
            options={"require": ["exp", "aud", "provider", "callback_url", "nonce"]},
        )
    except jwt.InvalidTokenError as e:
        logger.warning("oauth.state_invalid", reason=type(e).__name__)
        raise invalid from e

    if payload["provider"] != provider:
        logger.warning("oauth.state_invalid", reason="provider_mismatch")
        raise invalid
    if not hmac.compare_digest(str(payload["nonce"]).encode(), nonce_cookie.encode()):
        logger.warning("oauth.state_invalid", reason="nonce_mismatch")
        raise invalid

    callback_url = payload["callback_url"]
    if not is_safe_callback_path(callback_url):
        callback_url = DEFAULT_CALLBACK_PATH
    return OAuthState(provider=provider, callback_url=callback_url)


def build_authorization_url(
    provider: OAuthProvider,
    client_id: str,
    redirect_uri: str,
    state: str,
) -> str:
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": provider.scope,
        "state": state,
    }
    if provider.name == "google":
        # Always show the account chooser so a second account can be picked
        params["prompt"] = "select_account"
    return f"{provider.authorize_url}?{urlencode(params)}"


async def exchange_code(
    client: httpx.AsyncClient,
    provider: OAuthProvider,
    *,
    code: str,
    redirect_uri: str,
    client_id: str,
    client_secret: str,
    timeout: float,
) -> dict[str, Any]:
    """Trade an authorization code for provider tokens.

    Raises:
        OAuthProviderError: On transport failure, non-2xx, or an error body.
    """
    try:
        response = await client.post(
            provider.token_url,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": client_id,
                "client_secret": client_secret,
            },
            headers={"Accept": "application/json"},
            timeout=timeout,
        )
    except httpx.HTTPError as e:
        logger.warning(
            "oauth.token_exchange_failed", provider=provider.name, error=type(e).__name__
        )
        raise OAuthProviderError() from e

    if response.status_code != 200:
        logger.warning(
            "oauth.token_exchange_failed", provider=provider.name, status_code=response.status_code
        )
        raise OAuthProviderError()

    try:
        body = response.json()
    except ValueError as e:
        raise OAuthProviderError() from e

    # GitHub reports errors with a 200 and an "error" field
    if not isinstance(body, dict) or "error" in body or not body.get("access_token"):
        logger.warning(
            "oauth.token_exchange_failed",
            provider=provider.name,
            error=body.get("error") if isinstance(body, dict) else "invalid_body",
        )
        raise OAuthProviderError()

    return body


async def _get_json(client: httpx.AsyncClient, url: str, access_token: str, timeout: float) -> Any:
    try:
        response = await client.get(
            url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            },
            timeout=timeout,
        )
    except httpx.HTTPError as e:
        logger.warning("oauth.profile_fetch_failed", error=type(e).__name__)
        raise OAuthProviderError() from e

    if response.status_code != 200:
        logger.warning("oauth.profile_fetch_failed", status_code=response.status_code)
        raise OAuthProviderError()

    try:
        return response.json()
    except ValueError as e:
        raise OAuthProviderError() from e


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


async def fetch_identity(
    client: httpx.AsyncClient,
    provider: OAuthProvider,
    tokens: dict[str, Any],
    *,
    timeout: float,
) -> ExternalIdentity:
    """Read the external profile for freshly issued tokens."""
    access_token = tokens["access_token"]
    profile = await _get_json(client, provider.userinfo_url, access_token, timeout)
    if not isinstance(profile, dict):
        raise OAuthProviderError()

    common = {
        "provider": provider.name,
        "access_token": access_token,
        "refresh_token": tokens.get("refresh_token"),
        "id_token": tokens.get("id_token"),
        "expires_in": _as_int(tokens.get("expires_in")),
        "scope": tokens.get("scope"),
    }

    if provider.name == "google":
        subject = profile.get("sub")
        if not subject:
            raise OAuthProviderError("Sign-in provider returned no account id")
        email = profile.get("email")
        return ExternalIdentity(
            provider_account_id=str(subject),
            email=email,
            email_verified=bool(profile.get("email_verified")) and bool(email),
            name=profile.get("name") or email or "",
            image=profile.get("picture"),
            **common,
        )

    # github
    account_id = profile.get("id")
    if account_id is None:
        raise OAuthProviderError("Sign-in provider returned no account id")
    email = profile.get("email")
    email_verified = False
    if provider.emails_url:
        emails = await _get_json(client, provider.emails_url, access_token, timeout)
        if isinstance(emails, list):
            primary = next(
                (e for e in emails if isinstance(e, dict) and e.get("primary")),
                None,
            )
            if primary is not None:
                email = primary.get("email") or email
                email_verified = bool(primary.get("verified"))
    return ExternalIdentity(
        provider_account_id=str(account_id),
        email=email,
        email_verified=email_verified,
        name=profile.get("name") or profile.get("login") or "",
        image=profile.get("avatar_url"),
        **common,
    )


def set_state_cookie(response: Response, nonce: str, settings: Settings) -> None:
    """Pin the state nonce to this browser for the callback."""
    response.set_cookie(
        OAUTH_STATE_COOKIE,
        nonce,
        max_age=OAUTH_STATE_TTL_SECONDS,
        path=OAUTH_CALLBACK_PREFIX,
        httponly=True,
        samesite="lax",
        secure=settings.cookies_secure,
    )


def clear_state_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        OAUTH_STATE_COOKIE,
        path=OAUTH_CALLBACK_PREFIX,
        httponly=True,
        samesite="lax",
        secure=settings.cookies_secure,
    )
