"""Tests for user bootstrap on sign-in.

Tests cover:
- First sign-in creates a user and a binding
- Repeat sign-in adopts the existing binding and refreshes its tokens
- Losing the insert race adopts the winner's binding
- Email never links identities implicitly
"""

from sqlalchemy import func, select

from stash.auth.oauth import ExternalIdentity
from stash.db.models import ProviderBinding, User
from stash.services import bootstrap
from stash.services.bootstrap import ensure_user_for_identity
from stash.services.identity_store import find_binding
from tests.factories import create_test_user, create_test_user_with_binding


def _identity(account_id: str = "g-1", **overrides) -> ExternalIdentity:
    values = {
        "provider": "google",
        "provider_account_id": account_id,
        "email": "ada@example.com",
        "email_verified": True,
        "name": "Ada",
        "image": None,
        "access_token": "at-1",
        "refresh_token": "rt-1",
        "expires_in": 3600,
    }
    values.update(overrides)
    return ExternalIdentity(**values)


def _count(db, model) -> int:
    return db.execute(select(func.count()).select_from(model)).scalar_one()


class TestEnsureUserForIdentity:
    def test_first_sign_in_creates_user_and_binding(self, db_session):
        user_id = ensure_user_for_identity(db_session, _identity())

        user = db_session.get(User, user_id)
        assert user.name == "Ada"
        assert user.email == "ada@example.com"
        assert user.email_verified is True
        binding = find_binding(db_session, "google", "g-1")
        assert binding.user_id == user_id
        assert binding.refresh_token == "rt-1"

    def test_repeat_sign_in_refreshes_tokens(self, db_session):
        first = ensure_user_for_identity(db_session, _identity())

        second = ensure_user_for_identity(
            db_session, _identity(access_token="at-2", refresh_token=None, expires_in=None)
        )

        assert second == first
        db_session.expire_all()
        binding = find_binding(db_session, "google", "g-1")
        assert binding.access_token == "at-2"
        # A missing refresh token keeps the stored one
        assert binding.refresh_token == "rt-1"
        assert binding.access_token_expires_at is None
        assert _count(db_session, User) == 1

    def test_email_match_creates_separate_user(self, db_session):
        existing = create_test_user(db_session, email="ada@example.com")

        user_id = ensure_user_for_identity(db_session, _identity())

        assert user_id != existing
        assert _count(db_session, User) == 2

    def test_lost_insert_race_adopts_winner(self, db_session, monkeypatch):
        winner, _ = create_test_user_with_binding(db_session, provider_account_id="g-1")
        real_find_binding = bootstrap.find_binding
        calls = []

        def find_binding_missing_once(db, provider, account_id):
            calls.append(account_id)
            if len(calls) == 1:
                # The other request's binding is not visible yet
                return None
            return real_find_binding(db, provider, account_id)

        monkeypatch.setattr(bootstrap, "find_binding", find_binding_missing_once)

        user_id = ensure_user_for_identity(db_session, _identity())

        assert user_id == winner
        assert len(calls) == 2
        # The loser's half-created user was rolled back
        assert _count(db_session, User) == 1
        assert _count(db_session, ProviderBinding) == 1
