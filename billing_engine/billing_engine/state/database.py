"""Engines, session factories and the unit-of-work helper.

A ``postgresql+asyncpg://`` URL gets a pooled PostgreSQL engine with
statement and lock timeouts; a ``sqlite...`` URL is handed to
:mod:`billing_engine.state.sqlite_adapter`.

Every engine operation that mutates state (a checkout, one renewal, one
webhook step) runs inside exactly one :func:`transaction`, which commits on
success and rolls back on any exception, cancellation included.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

logger = logging.getLogger(__name__)

# id(engine) -> (engine, factory)
_factories: dict[int, tuple[AsyncEngine, async_sessionmaker[AsyncSession]]] = {}

_PG_SERVER_SETTINGS = {
    # Milliseconds.
    "statement_timeout": "30000",
    "lock_timeout": "10000",
}


def get_engine(database_url: str, pool_size: int = 10, max_overflow: int = 20) -> AsyncEngine:
    """Create the engine for *database_url*.

    Parameters
    ----------
    database_url:
        PostgreSQL (asyncpg) or SQLite (aiosqlite) URL.
    pool_size, max_overflow:
        PostgreSQL pool sizing; SQLite ignores both.
    """
    if database_url.startswith("sqlite"):
        from billing_engine.state.sqlite_adapter import get_local_engine, sqlite_path_from_url

        return get_local_engine(sqlite_path_from_url(database_url))

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        connect_args={"server_settings": _PG_SERVER_SETTINGS},
    )
    logger.info("Created PostgreSQL engine pool_size=%d max_overflow=%d", pool_size, max_overflow)
    return engine


_SYNC_DRIVERS = (
    ("postgresql+asyncpg://", "postgresql+psycopg://"),
    ("postgresql://", "postgresql+psycopg://"),
    ("sqlite+aiosqlite://", "sqlite://"),
)


def sync_database_url(database_url: str) -> str:
    """Rewrite an async URL for a synchronous driver (Alembic).

    asyncpg's ``ssl=require`` query flag becomes psycopg's ``sslmode=require``.
    """
    for prefix, replacement in _SYNC_DRIVERS:
        if database_url.startswith(prefix):
            database_url = replacement + database_url[len(prefix) :]
            break
    return database_url.replace("ssl=require", "sslmode=require")


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return the session factory for *engine*, creating it on first use.

    Sessions keep attributes loaded after commit so results built from ORM
    rows stay readable once the transaction has closed.
    """
    cached = _factories.get(id(engine))
    if cached is not None and cached[0] is engine:
        return cached[1]
    factory = async_sessionmaker(engine, expire_on_commit=False)
    _factories[id(engine)] = (engine, factory)
    return factory


@asynccontextmanager
async def transaction(factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """Run the body as one unit of work on a fresh session from *factory*."""
    session = factory()
    try:
        yield session
        await session.commit()
    except BaseException:
        await session.rollback()
        raise
    finally:
        await session.close()


def dialect_name(session: AsyncSession) -> str:
    """``postgresql`` or ``sqlite``, for the few statements that differ."""
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))
