"""Identity store adapter.

The narrow set of relational operations account consolidation needs.

Atomic units (each opens and commits its own transaction):
- merge_into(): re-parent everything a superseded user owns, then delete it
- delete_user(): explicit ordered deletion of a user and everything it owns

Primitives (no commit; run them inside the caller's transaction):
- find_binding(), list_bindings(), count_bindings()
- lock_user(), lock_users_query(): row locks serializing binding changes
  for a user
- delete_binding()

Merge direction is always expressed as the named pair
(surviving_user_id, superseded_user_id). Nothing in this module infers
direction from "current session" or "most recent sign-in".

Deletes and re-parents are issued explicitly and in order, so the outcome
is the same whether or not the database enforces ON DELETE CASCADE.
"""

from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy import Select, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stash.db.models import Bookmark, File, ProviderBinding, User
from stash.db.models import Session as UserSession
from stash.db.session import transaction
from stash.logging import get_logger

logger = get_logger(__name__)


class IdentityMergeError(Exception):
    """A merge could not be applied. Nothing was written."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Account merge failed: {reason}")


@dataclass(frozen=True)
class MergeCounts:
    """Rows touched by a merge."""

    bookmarks: int = 0
    files: int = 0
    bindings: int = 0
    sessions_deleted: int = 0


# =============================================================================
# Primitives
# =============================================================================


def find_binding(db: Session, provider: str, provider_account_id: str) -> ProviderBinding | None:
    """Look up the binding anchored at (provider, provider_account_id)."""
    return db.execute(
        select(ProviderBinding).where(
            ProviderBinding.provider == provider,
            ProviderBinding.provider_account_id == provider_account_id,
        )
    ).scalar_one_or_none()


def list_bindings(db: Session, user_id: str) -> Sequence[ProviderBinding]:
    """All bindings owned by a user, oldest first."""
    return (
        db.execute(
            select(ProviderBinding)
            .where(ProviderBinding.user_id == user_id)
            .order_by(ProviderBinding.created_at, ProviderBinding.id)
        )
        .scalars()
        .all()
    )


def count_bindings(db: Session, user_id: str) -> int:
    """Number of bindings owned by a user."""
    return db.execute(
        select(func.count()).select_from(ProviderBinding).where(ProviderBinding.user_id == user_id)
    ).scalar_one()


def lock_users_query(*user_ids: str) -> Select:
    """SELECT ... FOR UPDATE over user rows, in id order.

    A stable order means two transactions locking the same pair of users
    cannot deadlock. SQLite has no row locks and drops the clause.
    """
    return select(User).where(User.id.in_(user_ids)).order_by(User.id).with_for_update()


def lock_user(db: Session, user_id: str) -> User | None:
    """Row lock on one user.

    Concurrent merges and unlinks touching the same user queue behind this
    lock until the holder's transaction ends.
    """
    return db.execute(lock_users_query(user_id)).scalar_one_or_none()


def delete_binding(db: Session, user_id: str, binding_id: str) -> bool:
    """Delete one binding if (and only if) user_id owns it.

    Returns:
        True if a row was deleted.
    """
    result = db.execute(
        delete(ProviderBinding).where(
            ProviderBinding.id == binding_id,
            ProviderBinding.user_id == user_id,
        )
    )
    return result.rowcount == 1


# =============================================================================
# Atomic units
# =============================================================================


def merge_into(db: Session, *, surviving_user_id: str, superseded_user_id: str) -> MergeCounts:
    """Fold superseded_user_id into surviving_user_id.

    In one transaction: re-point every Bookmark, File and ProviderBinding of
    the superseded user to the surviving user, delete the superseded user's
    sessions, then delete the superseded user row.

    A merge of a user into itself is a no-op.

    Raises:
        IdentityMergeError: If either user is missing or any write fails.
            The transaction is rolled back, so no binding ever points at a
            deleted user.
    """
    if surviving_user_id == superseded_user_id:
        return MergeCounts()

    try:
        with transaction(db):
            locked = (
                db.execute(lock_users_query(surviving_user_id, superseded_user_id))
                .scalars()
                .all()
            )
            found = {user.id for user in locked}
            if surviving_user_id not in found:
                raise IdentityMergeError("surviving_user_missing")
            if superseded_user_id not in found:
                raise IdentityMergeError("superseded_user_missing")

            bookmarks = db.execute(
                update(Bookmark)
                .where(Bookmark.user_id == superseded_user_id)
                .values(user_id=surviving_user_id)
            ).rowcount
            files = db.execute(
                update(File)
                .where(File.user_id == superseded_user_id)
                .values(user_id=surviving_user_id)
            ).rowcount
            bindings = db.execute(
                update(ProviderBinding)
                .where(ProviderBinding.user_id == superseded_user_id)
                .values(user_id=surviving_user_id)
            ).rowcount
            sessions_deleted = db.execute(
                delete(UserSession).where(UserSession.user_id == superseded_user_id)
            ).rowcount

            deleted = db.execute(delete(User).where(User.id == superseded_user_id)).rowcount
            if deleted != 1:
                raise IdentityMergeError("superseded_user_not_deleted")
    except IdentityMergeError:
        raise
    except SQLAlchemyError as e:
        logger.exception("identity_merge_db_error", error_type=type(e).__name__)
        raise IdentityMergeError("database_error") from e

    counts = MergeCounts(
        bookmarks=bookmarks,
        files=files,
        bindings=bindings,
        sessions_deleted=sessions_deleted,
    )
    logger.info(
        "identity.merged",
        surviving_user_id=surviving_user_id,
        superseded_user_id=superseded_user_id,
        bookmarks=counts.bookmarks,
        files=counts.files,
        bindings=counts.bindings,
        sessions_deleted=counts.sessions_deleted,
    )
    return counts


def delete_user(db: Session, user_id: str) -> list[str]:
    """Delete a user and everything it owns.

    Order: bookmarks, files, bindings, sessions, user.

    Returns:
        Storage keys of the deleted files, for blob cleanup after commit.
        Empty if the user did not exist.
    """
    with transaction(db):
        if lock_user(db, user_id) is None:
            return []

        storage_keys = list(
            db.execute(select(File.storage_key).where(File.user_id == user_id)).scalars().all()
        )
        db.execute(delete(Bookmark).where(Bookmark.user_id == user_id))
        db.execute(delete(File).where(File.user_id == user_id))
        db.execute(delete(ProviderBinding).where(ProviderBinding.user_id == user_id))
        db.execute(delete(UserSession).where(UserSession.user_id == user_id))
        db.execute(delete(User).where(User.id == user_id))

    logger.info("identity.user_deleted", deleted_user_id=user_id, files=len(storage_keys))
    return storage_keys
