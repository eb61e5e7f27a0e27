"""Tests for OAuth sign-in.

Tests cover:
- State token issue/verify (signature, expiry, provider, nonce binding)
- Callback path safety
- Token exchange and profile fetch against stubbed providers
- The sign-in routes end to end: user bootstrap, session cookie, failures
"""

import time
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import respx
from sqlalchemy import func, select

from stash.auth import oauth
from stash.auth.oauth import PROVIDERS, OAuthProviderError
from stash.auth.sessions import SESSION_COOKIE
from stash.config import DEV_AUTH_SECRET, Settings, get_settings
from stash.db.models import ProviderBinding, User
from stash.db.models import Session as UserSession
from stash.errors import ApiError, ApiErrorCode
from stash.services import identity_store
from tests.factories import create_test_session, create_test_user, create_test_user_with_binding
from tests.helpers import (
    cookie_cleared,
    login,
    mock_github_identity,
    mock_google_identity,
    redirect_target,
    set_cookie_headers,
    sign_in_via_oauth,
)

SECRET = DEV_AUTH_SECRET


# =============================================================================
# State token
# =============================================================================


class TestStateToken:
    def test_round_trip(self):
        state, nonce = oauth.issue_state("google", "/bookmarks", SECRET)

        verified = oauth.verify_state(state, nonce, "google", SECRET)

        assert verified.provider == "google"
        assert verified.callback_url == "/bookmarks"

    def test_nonce_must_match_cookie(self):
        state, _ = oauth.issue_state("google", "/", SECRET)

        with pytest.raises(ApiError) as exc_info:
            oauth.verify_state(state, "some-other-nonce", "google", SECRET)

        assert exc_info.value.code == ApiErrorCode.E_OAUTH_STATE_INVALID

    def test_provider_must_match(self):
        state, nonce = oauth.issue_state("google", "/", SECRET)

        with pytest.raises(ApiError):
            oauth.verify_state(state, nonce, "github", SECRET)

    def test_expired_state_rejected(self):
        issued = time.time() - oauth.OAUTH_STATE_TTL_SECONDS - 5
        state, nonce = oauth.issue_state("google", "/", SECRET, now=issued)

        with pytest.raises(ApiError):
            oauth.verify_state(state, nonce, "google", SECRET)

    def test_wrong_secret_rejected(self):
        state, nonce = oauth.issue_state("google", "/", "z" * 32)

        with pytest.raises(ApiError):
            oauth.verify_state(state, nonce, "google", SECRET)

    @pytest.mark.parametrize("state,nonce", [(None, "n"), ("s", None), ("garbage", "n")])
    def test_missing_or_garbage_rejected(self, state, nonce):
        with pytest.raises(ApiError):
            oauth.verify_state(state, nonce, "google", SECRET)

    def test_unsafe_callback_in_state_falls_back_to_root(self):
        state, nonce = oauth.issue_state("google", "//evil.example/", SECRET)

        assert oauth.verify_state(state, nonce, "google", SECRET).callback_url == "/"


class TestCallbackPathSafety:
    @pytest.mark.parametrize("path", ["/", "/settings", "/bookmarks?tab=starred"])
    def test_same_origin_paths_allowed(self, path):
        assert oauth.is_safe_callback_path(path)

    @pytest.mark.parametrize(
        "path",
        [
            None,
            "",
            "settings",
            "https://evil.example/",
            "//evil.example/",
            "/\\evil.example",
            "/ok\r\nSet-Cookie: x=y",
        ],
    )
    def test_everything_else_rejected(self, path):
        assert not oauth.is_safe_callback_path(path)


class TestProviderResolution:
    def test_unknown_provider(self):
        with pytest.raises(ApiError) as exc_info:
            oauth.get_provider("myspace", get_settings())
        assert exc_info.value.code == ApiErrorCode.E_INVALID_PROVIDER

    def test_unconfigured_provider(self, monkeypatch):
        monkeypatch.delenv("GITHUB_CLIENT_SECRET")
        settings = Settings()

        assert settings.configured_providers == ["google"]
        with pytest.raises(ApiError) as exc_info:
            oauth.get_provider("github", settings)
        assert exc_info.value.code == ApiErrorCode.E_INVALID_PROVIDER


# =============================================================================
# Provider HTTP calls
# =============================================================================


class TestExchangeCode:
    @pytest.mark.asyncio
    @respx.mock
    async def test_success_returns_token_body(self):
        respx.post(PROVIDERS["github"].token_url).mock(
            return_value=httpx.Response(200, json={"access_token": "at", "scope": "read:user"})
        )

        async with httpx.AsyncClient() as client:
            tokens = await oauth.exchange_code(
                client,
                PROVIDERS["github"],
                code="c",
                redirect_uri="http://testserver/api/auth/callback/github",
                client_id="id",
                client_secret="secret",
                timeout=5,
            )

        assert tokens["access_token"] == "at"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(401, json={"error": "invalid_client"}),
            httpx.Response(200, json={"error": "bad_verification_code"}),
            httpx.Response(200, json={"token_type": "bearer"}),
            httpx.Response(200, content=b"not json"),
        ],
    )
    @respx.mock
    async def test_provider_failures_raise(self, response):
        respx.post(PROVIDERS["github"].token_url).mock(return_value=response)

        async with httpx.AsyncClient() as client:
            with pytest.raises(OAuthProviderError):
                await oauth.exchange_code(
                    client,
                    PROVIDERS["github"],
                    code="c",
                    redirect_uri="http://testserver/cb",
                    client_id="id",
                    client_secret="secret",
                    timeout=5,
                )

    @pytest.mark.asyncio
    @respx.mock
    async def test_transport_error_raises(self):
        respx.post(PROVIDERS["google"].token_url).mock(side_effect=httpx.ConnectTimeout)

        async with httpx.AsyncClient() as client:
            with pytest.raises(OAuthProviderError) as exc_info:
                await oauth.exchange_code(
                    client,
                    PROVIDERS["google"],
                    code="c",
                    redirect_uri="http://testserver/cb",
                    client_id="id",
                    client_secret="secret",
                    timeout=5,
                )

        assert exc_info.value.status_code == 502


class TestFetchIdentity:
    @pytest.mark.asyncio
    async def test_github_uses_primary_verified_email(self):
        async with respx.mock(assert_all_called=True) as router:
            mock_github_identity(
                router, account_id=4242, login_name="octo", primary_email="octo@example.com"
            )
            async with httpx.AsyncClient() as client:
                identity = await oauth.fetch_identity(
                    client, PROVIDERS["github"], {"access_token": "at"}, timeout=5
                )

        assert identity.provider == "github"
        assert identity.provider_account_id == "4242"
        assert identity.name == "octo"
        assert identity.email == "octo@example.com"
        assert identity.email_verified is True

    @pytest.mark.asyncio
    @respx.mock
    async def test_google_without_subject_raises(self):
        respx.get(PROVIDERS["google"].userinfo_url).mock(
            return_value=httpx.Response(200, json={"email": "a@example.com"})
        )

        async with httpx.AsyncClient() as client:
            with pytest.raises(OAuthProviderError):
                await oauth.fetch_identity(
                    client, PROVIDERS["google"], {"access_token": "at"}, timeout=5
                )


# =============================================================================
# Routes
# =============================================================================


class TestSignInStart:
    """GET /api/auth/sign-in/{provider}"""

    def test_redirects_to_provider_with_state_cookie(self, client):
        response = client.get("/api/auth/sign-in/github", params={"callbackURL": "/bookmarks"})

        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        assert f"{location.scheme}://{location.netloc}{location.path}" == (
            PROVIDERS["github"].authorize_url
        )
        query = parse_qs(location.query)
        assert query["client_id"] == ["github-client-id"]
        assert query["response_type"] == ["code"]
        assert "prompt" not in query

        [state_cookie] = set_cookie_headers(response, oauth.OAUTH_STATE_COOKIE)
        assert "path=/api/auth/callback" in state_cookie.lower()
        assert "httponly" in state_cookie.lower()

    def test_unknown_provider_is_400(self, client):
        response = client.get("/api/auth/sign-in/myspace")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_INVALID_PROVIDER"


class TestSignInCallback:
    """GET /api/auth/callback/{provider}"""

    def test_first_sign_in_creates_user_binding_and_session(self, client, db_session):
        with respx.mock(assert_all_called=False) as router:
            mock_google_identity(router, sub="g-100", email="ada@example.com", name="Ada")
            response = sign_in_via_oauth(client, "google", callback_url="/bookmarks")

        assert response.status_code == 302
        assert response.headers["location"] == "/bookmarks"
        assert set_cookie_headers(response, SESSION_COOKIE)
        assert cookie_cleared(response, oauth.OAUTH_STATE_COOKIE)

        binding = identity_store.find_binding(db_session, "google", "g-100")
        assert binding is not None
        assert binding.access_token == "google-access-g-100"
        assert binding.access_token_expires_at is not None

        me = client.get("/api/me").json()["data"]
        assert me["user_id"] == binding.user_id
        assert me["name"] == "Ada"
        assert me["email"] == "ada@example.com"
        assert me["provider"] == "google"

    def test_repeat_sign_in_reuses_user(self, client, db_session):
        with respx.mock(assert_all_called=False) as router:
            mock_github_identity(router, account_id=7, login_name="seven")
            sign_in_via_oauth(client, "github")
            sign_in_via_oauth(client, "github")

        users = db_session.execute(select(func.count()).select_from(User)).scalar_one()
        bindings = db_session.execute(
            select(func.count()).select_from(ProviderBinding)
        ).scalar_one()
        assert users == 1
        assert bindings == 1

    def test_new_sign_in_revokes_previous_session(self, client, db_session):
        user_id, _ = create_test_user_with_binding(db_session)
        old_token = create_test_session(db_session, user_id)
        login(client, old_token)

        with respx.mock(assert_all_called=False) as router:
            mock_google_identity(router, sub="g-new")
            sign_in_via_oauth(client, "google")

        db_session.expire_all()
        old = db_session.execute(
            select(UserSession).where(UserSession.token == old_token)
        ).scalar_one_or_none()
        assert old is None

    def test_matching_email_does_not_link_accounts(self, client, db_session):
        existing = create_test_user(db_session, email="same@example.com")

        with respx.mock(assert_all_called=False) as router:
            mock_google_identity(router, sub="g-200", email="same@example.com")
            sign_in_via_oauth(client, "google")

        binding = identity_store.find_binding(db_session, "google", "g-200")
        assert binding.user_id != existing

    def test_unsafe_callback_url_falls_back_to_root(self, client):
        with respx.mock(assert_all_called=False) as router:
            mock_google_identity(router, sub="g-300")
            response = sign_in_via_oauth(client, "google", callback_url="https://evil.example/")

        assert response.headers["location"] == "/"

    def test_forged_state_goes_to_login_with_error(self, client, db_session):
        client.get("/api/auth/sign-in/google")
        forged, _ = oauth.issue_state("google", "/", SECRET)

        response = client.get(
            "/api/auth/callback/google", params={"code": "c", "state": forged}
        )

        assert response.status_code == 302
        assert redirect_target(response) == ("/login", {"error": "sign_in_failed"})
        assert not set_cookie_headers(response, SESSION_COOKIE)
        assert db_session.execute(select(func.count()).select_from(User)).scalar_one() == 0

    def test_provider_denial_goes_to_login(self, client):
        response = client.get(
            "/api/auth/callback/google", params={"error": "access_denied", "state": "x"}
        )

        assert redirect_target(response) == ("/login", {"error": "sign_in_cancelled"})

    def test_token_exchange_failure_goes_to_login(self, client):
        with respx.mock(assert_all_called=False) as router:
            router.post(PROVIDERS["google"].token_url).mock(
                return_value=httpx.Response(400, json={"error": "invalid_grant"})
            )
            response = sign_in_via_oauth(client, "google")

        assert redirect_target(response) == ("/login", {"error": "sign_in_failed"})

    def test_missing_code_goes_to_login(self, client):
        start = client.get("/api/auth/sign-in/google")
        state = parse_qs(urlparse(start.headers["location"]).query)["state"][0]

        response = client.get("/api/auth/callback/google", params={"state": state})

        assert redirect_target(response) == ("/login", {"error": "sign_in_failed"})
