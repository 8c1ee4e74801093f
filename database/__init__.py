"""
Database Package.

============================================================
TRADE STORE
============================================================

Async engine, declarative base and session helpers backing
the trade queue. Writes commit explicitly; failures raise.

============================================================
"""

from .engine import (
    Base,
    DEFAULT_DATABASE_URL,
    get_database_url,
    create_database_engine,
    get_engine,
    get_session_factory,
    get_db_session,
    create_all_tables,
    dispose_engine,
    DatabaseInitializationError,
)


__all__ = [
    "Base",
    "DEFAULT_DATABASE_URL",
    "get_database_url",
    "create_database_engine",
    "get_engine",
    "get_session_factory",
    "get_db_session",
    "create_all_tables",
    "dispose_engine",
    "DatabaseInitializationError",
]
