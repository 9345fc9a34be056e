"""
Database Connection Module

Handles the SQLAlchemy async engine, the session factory and the
transaction scope every lifecycle transition runs in.

PostgreSQL (psycopg async) is the production target. SQLite (aiosqlite)
is supported for local runs and tests; there every transaction starts with
BEGIN IMMEDIATE so concurrent writers serialize instead of deadlocking.
"""

import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator

from sqlalchemy import event, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.orm.exc import StaleDataError

from backend.core.config import get_settings
from backend.core.errors import ConcurrencyConflict

logger = logging.getLogger(__name__)

# SQLSTATEs that mean "another transaction holds or changed this row"
LOCK_SQLSTATES = {
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "55P03",  # lock_not_available
}


# Base class for all our models
class Base(DeclarativeBase):
    pass


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    Args:
        database_url: SQLAlchemy async URL (postgresql+psycopg / sqlite+aiosqlite)
        echo: Log all SQL statements
    """
    settings = get_settings()

    if database_url.startswith("sqlite"):
        engine = create_async_engine(
            database_url,
            echo=echo,
            connect_args={"timeout": settings.lock_timeout_seconds},
        )

        @event.listens_for(engine.sync_engine, "connect")
        def _disable_driver_begin(dbapi_connection, connection_record):
            # Let the "begin" hook below emit BEGIN itself
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
    )


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Objects remain accessible after commit
    )


@lru_cache()
def get_engine() -> AsyncEngine:
    """Process-wide engine built from settings."""
    settings = get_settings()
    return build_engine(settings.database_url, echo=settings.db_echo)


@lru_cache()
def get_session_maker() -> async_sessionmaker[AsyncSession]:
    return build_session_maker(get_engine())


def _is_lock_failure(exc: DBAPIError) -> bool:
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in LOCK_SQLSTATES:
        return True
    return "database is locked" in str(orig)


@asynccontextmanager
async def transaction(
    session_maker: async_sessionmaker[AsyncSession],
    lock_timeout: float | None = None,
) -> AsyncIterator[AsyncSession]:
    """
    Run a block as one unit of work.

    Commits when the block exits normally; any exception rolls back every
    write made in the block. Lost races and lock timeouts are re-raised as
    ConcurrencyConflict so callers can re-read and retry.

    Usage:
        async with transaction(session_maker) as session:
            order = await session.get(Order, order_id)
    """
    if lock_timeout is None:
        lock_timeout = get_settings().lock_timeout_seconds

    try:
        async with session_maker() as session:
            async with session.begin():
                if session.bind is not None and session.bind.dialect.name == "postgresql":
                    await session.execute(
                        text(f"SET LOCAL lock_timeout = '{int(lock_timeout * 1000)}ms'")
                    )
                yield session
    except StaleDataError as e:
        logger.warning(f"Stale row detected, rolling back: {e}")
        raise ConcurrencyConflict(
            "A concurrent update changed this record, re-read and retry"
        ) from e
    except DBAPIError as e:
        if not _is_lock_failure(e):
            raise
        logger.warning(f"Lock wait failed, rolling back: {e.orig}")
        raise ConcurrencyConflict(
            "Timed out waiting for a locked record, re-read and retry",
            {"lock_timeout_seconds": lock_timeout},
        ) from e


async def get_db() -> AsyncIterator[AsyncSession]:
    """
    Dependency injection for FastAPI routes.
    Yields a database session and ensures cleanup.
    """
    async with get_session_maker()() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(engine: AsyncEngine | None = None) -> None:
    """
    Create all tables in database.
    Called once at application startup.
    """
    # Register the mappers on Base.metadata
    import backend.models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")
