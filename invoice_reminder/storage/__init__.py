"""Database connection and session management.

Provides async SQLAlchemy engine, session factory, and connection utilities.
Uses asyncpg for PostgreSQL; aiosqlite URLs are accepted for local runs.

Thread-safety: All singleton access is protected by threading.RLock to prevent
race conditions during concurrent initialization. RLock (reentrant) is
required because get_session_factory() calls get_engine() while holding
the lock.
"""

import threading
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from invoice_reminder.settings import Settings, get_settings

# Module-level engine and session factory (initialized lazily)
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_init_lock = threading.RLock()


def _engine_options(settings: Settings) -> dict[str, Any]:
    """Pool options for the configured backend.

    SQLite keeps the dialect default pool, which may reject sizing options.
    """
    if settings.is_sqlite:
        return {"echo": settings.debug}
    return {
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_timeout": settings.database_pool_timeout,
        "pool_recycle": settings.database_pool_recycle,
        "pool_pre_ping": True,
        "echo": settings.debug,
    }


def get_engine(settings: Settings | None = None) -> AsyncEngine:
    """Get or create the async database engine.

    Thread-safe: Uses double-checked locking to prevent concurrent
    engine creation.

    Args:
        settings: Optional settings override. Uses get_settings() if not provided.

    Returns:
        Configured AsyncEngine instance.
    """
    global _engine

    if _engine is None:
        with _init_lock:
            if _engine is None:
                settings = settings or get_settings()
                _engine = create_async_engine(settings.database_url, **_engine_options(settings))

    return _engine


def get_session_factory(settings: Settings | None = None) -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory.

    Sessions never expire attributes on commit so that entities stay readable
    after the unit of work has released its connection.

    Args:
        settings: Optional settings override. Uses get_settings() if not provided.

    Returns:
        Configured async_sessionmaker instance.
    """
    global _session_factory

    if _session_factory is None:
        with _init_lock:
            if _session_factory is None:
                engine = get_engine(settings)
                _session_factory = async_sessionmaker(
                    bind=engine,
                    class_=AsyncSession,
                    expire_on_commit=False,
                    autoflush=False,
                )

    return _session_factory


async def init_db(settings: Settings | None = None) -> None:
    """Initialize the connection pool and verify connectivity.

    Call this at application startup to fail fast on a bad DATABASE_URL.
    """
    engine = get_engine(settings)
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


async def create_schema(settings: Settings | None = None) -> None:
    """Create all tables directly from the ORM metadata.

    Intended for SQLite development databases; PostgreSQL deployments run
    the Alembic migrations instead.
    """
    from invoice_reminder.storage.models import Base

    # Register mappers on Base.metadata
    import invoice_reminder.storage.entities  # noqa: F401

    engine = get_engine(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections.

    Call this at application shutdown to cleanly close all connections.
    Thread-safe: Acquires lock before modifying singletons.
    """
    global _engine, _session_factory

    with _init_lock:
        if _engine is not None:
            await _engine.dispose()
            _engine = None
            _session_factory = None


__all__ = [
    "close_db",
    "create_schema",
    "get_engine",
    "get_session_factory",
    "init_db",
]
