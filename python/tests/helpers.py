"""Test helpers for authentication and common test operations.

Provides:
- FakeClock for rate limiters and merge tickets
- Session cookie login for the test client
- Redirect and Set-Cookie inspection
- respx stubs for the OAuth providers
"""

from urllib.parse import parse_qs, urlparse

import httpx
import respx
from fastapi.testclient import TestClient

from stash.auth.oauth import PROVIDERS
from stash.auth.sessions import SESSION_COOKIE

# Arbitrary fixed epoch seconds; tickets and windows only care about deltas
DEFAULT_START_TIME = 1_760_000_000.0


class FakeClock:
    """Callable time source that only moves when told to."""

    def __init__(self, start: float = DEFAULT_START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def login(client: TestClient, session_token: str) -> None:
    """Attach a session cookie to every following request of this client.

    Any session cookie the app set earlier is dropped first so exactly one is sent.
    """
    client.cookies.delete(SESSION_COOKIE)
    client.cookies.set(SESSION_COOKIE, session_token)


def logout(client: TestClient) -> None:
    client.cookies.delete(SESSION_COOKIE)


def redirect_target(response: httpx.Response) -> tuple[str, dict[str, str]]:
    """Split a redirect's Location into (path, single-valued query params)."""
    location = urlparse(response.headers["location"])
    params = {key: values[0] for key, values in parse_qs(location.query).items()}
    return location.path, params


def set_cookie_headers(response: httpx.Response, name: str) -> list[str]:
    """All Set-Cookie header values for one cookie name."""
    return [
        header
        for header in response.headers.get_list("set-cookie")
        if header.startswith(f"{name}=")
    ]


def cookie_cleared(response: httpx.Response, name: str) -> bool:
    """Whether the response expires the named cookie."""
    return any(
        "max-age=0" in header.lower() or header.startswith(f'{name}="";')
        for header in set_cookie_headers(response, name)
    )


def mock_google_identity(
    router: respx.MockRouter,
    *,
    sub: str,
    email: str | None = None,
    name: str = "Test User",
    email_verified: bool = True,
) -> None:
    """Stub Google's token and userinfo endpoints for one identity."""
    google = PROVIDERS["google"]
    router.post(google.token_url).mock(
        return_value=httpx.Response(
            200,
            json={
                "access_token": f"google-access-{sub}",
                "expires_in": 3599,
                "scope": "openid email profile",
                "id_token": f"google-id-{sub}",
                "token_type": "Bearer",
            },
        )
    )
    router.get(google.userinfo_url).mock(
        return_value=httpx.Response(
            200,
            json={
                "sub": sub,
                "email": email,
                "email_verified": email_verified,
                "name": name,
                "picture": "https://example.com/avatar.png",
            },
        )
    )


def mock_github_identity(
    router: respx.MockRouter,
    *,
    account_id: int,
    login_name: str,
    primary_email: str | None = None,
    verified: bool = True,
) -> None:
    """Stub GitHub's token, user and emails endpoints for one identity."""
    github = PROVIDERS["github"]
    router.post(github.token_url).mock(
        return_value=httpx.Response(
            200, json={"access_token": f"github-access-{account_id}", "scope": "read:user"}
        )
    )
    router.get(github.userinfo_url).mock(
        return_value=httpx.Response(
            200,
            json={
                "id": account_id,
                "login": login_name,
                "name": None,
                "email": None,
                "avatar_url": "https://example.com/gh.png",
            },
        )
    )
    emails = []
    if primary_email:
        emails.append({"email": primary_email, "primary": True, "verified": verified})
    router.get(github.emails_url).mock(return_value=httpx.Response(200, json=emails))


def sign_in_via_oauth(
    client: TestClient,
    provider: str,
    *,
    callback_url: str | None = None,
    code: str = "auth-code",
) -> httpx.Response:
    """Drive sign-in start and callback; provider endpoints must already be stubbed.

    Returns:
        The callback response (a redirect).
    """
    params = {"callbackURL": callback_url} if callback_url else {}
    start = client.get(f"/api/auth/sign-in/{provider}", params=params)
    assert start.status_code == 302, start.text
    state = parse_qs(urlparse(start.headers["location"]).query)["state"][0]

    return client.get(
        f"/api/auth/callback/{provider}",
        params={"code": code, "state": state},
    )
