"""User and provider-binding bootstrap on sign-in.

Provides race-safe user creation on first sign-in with an external account.

(provider, provider_account_id) is unique, so two concurrent first sign-ins
with the same external account race on the binding insert; the loser rolls
back its user row and adopts the winner's binding.
"""

from datetime import UTC, datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stash.auth.oauth import ExternalIdentity
from stash.db.models import ProviderBinding, User
from stash.db.session import transaction
from stash.logging import get_logger
from stash.services.identity_store import find_binding

logger = get_logger(__name__)


def _apply_tokens(binding: ProviderBinding, identity: ExternalIdentity) -> None:
    binding.access_token = identity.access_token
    if identity.refresh_token:
        binding.refresh_token = identity.refresh_token
    binding.id_token = identity.id_token
    binding.scope = identity.scope
    binding.access_token_expires_at = (
        datetime.now(UTC) + timedelta(seconds=identity.expires_in)
        if identity.expires_in is not None
        else None
    )


def _adopt_existing(db: Session, identity: ExternalIdentity) -> str | None:
    binding = find_binding(db, identity.provider, identity.provider_account_id)
    if binding is None:
        return None
    _apply_tokens(binding, identity)
    return binding.user_id


def ensure_user_for_identity(db: Session, identity: ExternalIdentity) -> str:
    """Return the internal user bound to an external identity, creating it if new.

    A first-time external identity always gets a brand-new user, even when
    its email matches an existing user. Joining the two is an explicit
    account merge, never an implicit email match.

    Args:
        db: Database session.
        identity: Verified external identity from the OAuth callback.

    Returns:
        The internal user id.

    Raises:
        RuntimeError: If the binding cannot be found after losing an insert race.
    """
    try:
        with transaction(db):
            user_id = _adopt_existing(db, identity)
            if user_id is not None:
                return user_id

            user = User(
                name=identity.name,
                email=identity.email,
                email_verified=identity.email_verified,
                image=identity.image,
            )
            db.add(user)
            db.flush()

            binding = ProviderBinding(
                user_id=user.id,
                provider=identity.provider,
                provider_account_id=identity.provider_account_id,
            )
            _apply_tokens(binding, identity)
            db.add(binding)
            db.flush()

        logger.info("sign_in.user_created", user_id=user.id, provider=identity.provider)
        return user.id
    except IntegrityError:
        # Lost the race: another request bound this identity first
        logger.info("sign_in.binding_race", provider=identity.provider)

    with transaction(db):
        user_id = _adopt_existing(db, identity)

    if user_id is None:
        logger.error("sign_in.binding_missing_after_race", provider=identity.provider)
        raise RuntimeError("Failed to resolve provider binding after insert race")
    return user_id
