"""Database module for Stash.

Provides engine creation, session management, transaction helpers, and ORM models.
"""

from stash.db.engine import create_db_engine, get_engine
from stash.db.models import (
    Base,
    Bookmark,
    File,
    ProviderBinding,
    ReadStatus,
    Session,
    User,
    UserRole,
)
from stash.db.session import get_db, transaction

__all__ = [
    # Engine and session
    "create_db_engine",
    "get_engine",
    "get_db",
    "transaction",
    # Base
    "Base",
    # Enums
    "UserRole",
    "ReadStatus",
    # Models
    "User",
    "ProviderBinding",
    "Session",
    "Bookmark",
    "File",
]
