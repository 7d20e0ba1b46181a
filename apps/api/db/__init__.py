"""
DB engine, session, and models. Re-exports from session.py and models.
"""
from apps.api.db.models import (
    Base,
    Connection,
    ConnectionMigration,
    Conversation,
    Department,
)
from apps.api.db.session import (
    check_db,
    get_engine,
    get_sessionmaker,
    init_db,
)

__all__ = [
    "Base",
    "Connection",
    "ConnectionMigration",
    "Conversation",
    "Department",
    "check_db",
    "get_engine",
    "get_sessionmaker",
    "init_db",
]
