"""ORM sessions and the transaction boundary used by every service.

Three ways to get a session:
- get_db(): FastAPI dependency, one session per request
- session_scope(): for work outside a request (session middleware,
  lifespan sweep)
- create_session_factory(engine): tests bind their own engine

Services never commit on their own. Each mutation that must land as one
unit runs inside transaction(db).
"""

from collections.abc import Generator
from contextlib import contextmanager
from functools import lru_cache

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from stash.db.engine import get_engine


def create_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    # expire_on_commit=False: services build response models from rows
    # after their transaction has committed
    return sessionmaker(
        bind=engine if engine is not None else get_engine(),
        autoflush=False,
        expire_on_commit=False,
    )


@lru_cache
def get_session_factory() -> sessionmaker[Session]:
    return create_session_factory()


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session, closed when the response is sent."""
    with session_scope() as db:
        yield db


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """A session from the application factory, always closed on exit.

    Does not commit. Writes still go through transaction().
    """
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Generator[None, None, None]:
    """One atomic unit of work.

    Everything executed inside the block commits together or not at all.
    On any exception the session is rolled back and the exception re-raised
    unchanged, so callers such as identity_store.merge_into can translate
    it without a half-applied merge or unlink left behind.

    Row locks taken inside the block (SELECT ... FOR UPDATE) are held until
    the commit or rollback at its end.
    """
    try:
        yield
        db.commit()
    except Exception:
        db.rollback()
        raise
