"""Account settings service: linked sign-in methods and account deletion.

Unlink guard:
    A user must always keep at least one provider binding, otherwise they can
    no longer sign in. The count check and the delete run in one transaction
    behind a row lock on the user, so two concurrent unlinks cannot both see
    "2 bindings" and jointly remove the last one.
"""

from sqlalchemy.orm import Session

from stash.db.models import User
from stash.db.session import transaction
from stash.errors import ApiErrorCode, ForbiddenError, InvalidRequestError, NotFoundError
from stash.logging import get_logger
from stash.schemas.account import BindingOut, MeOut
from stash.services import identity_store
from stash.storage import StorageClientBase

logger = get_logger(__name__)

LAST_SIGN_IN_METHOD_MESSAGE = (
    "This is your last sign-in method. Link another provider before removing it."
)


def get_me(db: Session, user_id: str, provider: str | None) -> MeOut:
    """Profile of the signed-in user.

    Raises:
        NotFoundError: If the user row is gone (merged away mid-session).
    """
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError(ApiErrorCode.E_NOT_FOUND, "User not found")
    return MeOut(
        user_id=user.id,
        name=user.name,
        email=user.email,
        role=user.role.value,
        provider=provider,
    )


def list_user_bindings(db: Session, user_id: str) -> list[BindingOut]:
    """List a user's linked providers (safe fields only, never tokens)."""
    return [BindingOut.model_validate(b) for b in identity_store.list_bindings(db, user_id)]


def unlink_binding(db: Session, user_id: str, binding_id: str | None) -> None:
    """Remove one of the user's provider bindings.

    Args:
        db: Database session.
        user_id: The acting user.
        binding_id: The binding row id (accounts.id) to remove.

    Raises:
        InvalidRequestError: If binding_id is missing.
        ForbiddenError(E_LAST_SIGN_IN_METHOD): If it is the user's last binding.
        NotFoundError(E_ACCOUNT_NOT_FOUND): If the user owns no such binding.
    """
    if not binding_id or not binding_id.strip():
        raise InvalidRequestError(ApiErrorCode.E_INVALID_REQUEST, "accountId is required")
    binding_id = binding_id.strip()

    with transaction(db):
        if identity_store.lock_user(db, user_id) is None:
            raise NotFoundError(ApiErrorCode.E_ACCOUNT_NOT_FOUND, "Account not found")

        remaining = identity_store.count_bindings(db, user_id)
        if remaining <= 1:
            logger.warning("unlink.rejected_last_binding", bindings=remaining)
            raise ForbiddenError(ApiErrorCode.E_LAST_SIGN_IN_METHOD, LAST_SIGN_IN_METHOD_MESSAGE)

        # Owner check is part of the DELETE predicate
        if not identity_store.delete_binding(db, user_id, binding_id):
            raise NotFoundError(ApiErrorCode.E_ACCOUNT_NOT_FOUND, "Account not found")

    logger.info("unlink.completed", binding_id=binding_id, remaining=remaining - 1)


def delete_account(db: Session, user_id: str, storage: StorageClientBase) -> None:
    """Delete a user and all owned data, then remove their stored file blobs.

    Blob removal happens after the database commit and is best-effort: a
    leftover blob is unreachable once its row is gone.
    """
    storage_keys = identity_store.delete_user(db, user_id)

    for key in storage_keys:
        storage.delete_object(key)

    logger.info("account.deleted", files_removed=len(storage_keys))
