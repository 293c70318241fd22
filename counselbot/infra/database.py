"""
Async SQLAlchemy engine and units of work.

Every write goes through ``get_db_context()`` (or ``get_db()`` inside a
request): the session commits when the block exits cleanly and rolls
back otherwise, so a failed reservation never leaves partial rows.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from counselbot.config import settings
from counselbot.models.database import Base


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    SQLite has no row locks, so every transaction is opened with
    BEGIN IMMEDIATE instead. That takes the write lock up front and
    serializes reservations the same way SELECT ... FOR UPDATE does on
    PostgreSQL.
    """
    is_sqlite = database_url.startswith("sqlite")
    new_engine = create_async_engine(
        database_url,
        echo=echo,
        poolclass=NullPool,
        connect_args={"timeout": 30} if is_sqlite else {},
    )

    if is_sqlite:
        @event.listens_for(new_engine.sync_engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            # Let SQLAlchemy emit BEGIN itself
            dbapi_connection.isolation_level = None

        @event.listens_for(new_engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return new_engine


engine = build_engine(settings.database_url, echo=settings.debug)

async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """
    One unit of work outside a request.

    Usage:
        async with get_db_context() as db:
            db.add(SupportTicket(...))
    """
    session = async_session_factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one unit of work per request."""
    async with get_db_context() as session:
        yield session


async def init_db() -> None:
    """
    Create all database tables.

    Development only. Production schemas are managed by migrations.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close all database connections."""
    await engine.dispose()


async def check_db_health() -> bool:
    """
    Check database connectivity for health checks.

    Returns:
        bool: True if database is accessible, False otherwise
    """
    try:
        async with get_db_context() as db:
            await db.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
