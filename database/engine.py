"""
Database - Async Engine and Sessions.

============================================================
PURPOSE
============================================================
One async engine per process, the declarative base the
trade pipeline's tables hang off, and the session context
manager every repository call runs inside.

DATABASE_URL selects the store:
- postgresql://...  promoted to the asyncpg driver
- sqlite+aiosqlite:///...  local runs and tests
- unset             ./trade_queue.db

============================================================
"""

import os
import logging
from datetime import datetime
from typing import Optional, AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import DateTime
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./trade_queue.db"


class Base(DeclarativeBase):
    """Base for the pipeline tables. Datetime columns store UTC with tz."""

    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


class DatabaseInitializationError(Exception):
    """Schema could not be created."""
    pass


# =============================================================
# ENGINE
# =============================================================

_engine: Optional[AsyncEngine] = None
_SessionFactory: Optional[async_sessionmaker] = None


def get_database_url() -> str:
    """DATABASE_URL with the async driver filled in."""
    url = os.getenv("DATABASE_URL")
    if not url:
        logger.warning(f"DATABASE_URL not set, falling back to {DEFAULT_DATABASE_URL}")
        return DEFAULT_DATABASE_URL

    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def create_database_engine(
    url: Optional[str] = None,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_recycle: int = 1800,
    echo: bool = False,
) -> AsyncEngine:
    """
    Build an async engine.

    Without a url this is the process engine, built once from
    DATABASE_URL. An explicit url always gets a fresh engine
    that the caller owns and disposes.

    Args:
        url: Explicit database URL
        pool_size: Pooled connections (server databases only)
        max_overflow: Connections allowed past pool_size
        pool_recycle: Seconds before a pooled connection is replaced
        echo: Echo SQL to the log
    """
    global _engine

    if url is None and _engine is not None:
        return _engine

    database_url = url or get_database_url()
    logger.info(f"Opening trade store at {database_url.split('@')[-1]}")

    options = {"echo": echo}
    if not database_url.startswith("sqlite"):
        options.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_recycle=pool_recycle,
            pool_pre_ping=True,
        )

    engine = create_async_engine(database_url, **options)
    if url is None:
        _engine = engine
    return engine


def get_engine() -> AsyncEngine:
    """The process engine."""
    return create_database_engine()


def get_session_factory(engine: Optional[AsyncEngine] = None) -> async_sessionmaker:
    """
    Session factory bound to engine, or to the process engine.

    Sessions keep loaded objects usable after commit; every
    repository write commits explicitly.
    """
    global _SessionFactory

    if engine is not None:
        return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)

    if _SessionFactory is None:
        _SessionFactory = async_sessionmaker(get_engine(), expire_on_commit=False, autoflush=False)
    return _SessionFactory


# =============================================================
# SESSIONS
# =============================================================

@asynccontextmanager
async def get_db_session(
    factory: Optional[async_sessionmaker] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Open a session for one unit of work.

    Usage:
        async with get_db_session() as session:
            repo = TradeQueueRepository(session)

    Uncommitted work is rolled back when the block raises.
    """
    session = (factory or get_session_factory())()
    try:
        yield session
    except SQLAlchemyError as e:
        logger.error(f"Rolling back trade store session: {e}")
        await session.rollback()
        raise
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


# =============================================================
# SCHEMA / SHUTDOWN
# =============================================================

async def create_all_tables(engine: Optional[AsyncEngine] = None) -> None:
    """
    Create missing tables.

    The model modules must be imported first so their tables
    are registered on Base.metadata.
    """
    engine = engine or get_engine()
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except SQLAlchemyError as e:
        logger.error(f"Schema creation failed: {e}")
        raise DatabaseInitializationError(f"Could not create trade store tables: {e}") from e
    logger.info(f"Trade store schema ready ({len(Base.metadata.tables)} tables)")


async def dispose_engine() -> None:
    """Close the process engine and forget its session factory."""
    global _engine, _SessionFactory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _SessionFactory = None
