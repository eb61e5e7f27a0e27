"""Pytest configuration and fixtures for Stash tests.

Test isolation strategy:
- Every test gets its own SQLite database file, created from the ORM metadata
- The app under test shares that database through get_db and the session resolver
- Rate limiters and the merge ticket codec run on a controllable FakeClock
- File blobs live in an in-memory FakeStorageClient
- OAuth provider HTTP calls are stubbed with respx
"""

import os
import sys
from collections.abc import Generator
from pathlib import Path

# Add repo root to sys.path for importing top-level packages (e.g., apps)
_repo_root = Path(__file__).parent.parent.parent
if str(_repo_root) not in sys.path:
    sys.path.insert(0, str(_repo_root))

# Settings are read lazily from the environment; pin the test values before
# anything calls get_settings()
os.environ["STASH_ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["BASE_URL"] = "http://testserver"
os.environ["GOOGLE_CLIENT_ID"] = "google-client-id"
os.environ["GOOGLE_CLIENT_SECRET"] = "google-client-secret"
os.environ["GITHUB_CLIENT_ID"] = "github-client-id"
os.environ["GITHUB_CLIENT_SECRET"] = "github-client-secret"
os.environ.pop("AUTH_SECRET", None)
os.environ.pop("STORAGE_DIR", None)
os.environ.pop("DIRECT_MERGE_ENABLED", None)

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from stash.app import add_request_id_middleware, create_app
from stash.auth.merge_ticket import MergeTicketCodec
from stash.auth.middleware import SessionAuthMiddleware
from stash.auth.sessions import ResolvedSession, resolve_session
from stash.config import DEV_AUTH_SECRET, clear_settings_cache, get_settings
from stash.db.engine import enable_sqlite_foreign_keys
from stash.db.models import Base
from stash.db.session import create_session_factory, get_db
from stash.services.rate_limit import RateLimiters, build_rate_limiters
from stash.storage import FakeStorageClient
from tests.helpers import FakeClock


@pytest.fixture
def engine(tmp_path: Path) -> Generator[Engine, None, None]:
    """Create a fresh SQLite database for one test.

    A file (not :memory:) so that every session gets its own connection,
    the same way separate requests do against Postgres.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'stash_test.db'}",
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return create_session_factory(engine)


@pytest.fixture
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Provide a database session for arranging and inspecting test data.

    Route handlers use their own sessions; call db_session.expire_all()
    before re-reading rows a request may have changed.
    """
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> FakeClock:
    """Controllable time source for rate limiters and merge tickets."""
    return FakeClock()


@pytest.fixture
def storage() -> FakeStorageClient:
    return FakeStorageClient()


@pytest.fixture
def rate_limiters(clock: FakeClock) -> RateLimiters:
    return build_rate_limiters(get_settings(), clock=clock)


@pytest.fixture
def merge_codec(clock: FakeClock) -> MergeTicketCodec:
    return MergeTicketCodec(DEV_AUTH_SECRET, clock=clock)


@pytest.fixture
def app(
    session_factory: sessionmaker[Session],
    storage: FakeStorageClient,
    rate_limiters: RateLimiters,
    merge_codec: MergeTicketCodec,
) -> FastAPI:
    """Provide the FastAPI app wired to the per-test database.

    Session middleware resolves cookies against the test database; the
    request-id middleware is added last so it runs first, as in production.
    """
    app = create_app(
        skip_auth_middleware=True,
        rate_limiters=rate_limiters,
        storage=storage,
        merge_ticket_codec=merge_codec,
    )

    def resolve(token: str) -> ResolvedSession | None:
        db = session_factory()
        try:
            return resolve_session(db, token)
        finally:
            db.close()

    def override_get_db() -> Generator[Session, None, None]:
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.add_middleware(SessionAuthMiddleware, resolver=resolve)
    add_request_id_middleware(app, log_requests=False)
    app.dependency_overrides[get_db] = override_get_db
    return app


@pytest.fixture
def client(app: FastAPI) -> Generator[TestClient, None, None]:
    """Provide a test client that does not follow redirects.

    Entered as a context manager so the lifespan (shared httpx client,
    rate-limit sweep) runs.
    """
    with TestClient(app, follow_redirects=False) as client:
        yield client


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset the settings cache before each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()
