"""
Database connection and session management.

Provides the async SQLAlchemy engine, session factory, and dependency
injection for FastAPI endpoints.
"""

import logging
from collections.abc import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tracechain.core.config import settings
from tracechain.db.models import Base

logger = logging.getLogger(__name__)

_async_engine: AsyncEngine | None = None
_async_sessionmaker: async_sessionmaker | None = None
_telemetry_instrumented: bool = False


def _on_sqlite_connect(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
    # The driver's implicit BEGIN is replaced by _on_sqlite_begin
    dbapi_connection.isolation_level = None


def _on_sqlite_begin(conn) -> None:
    # Take the write lock up front so concurrent sessions queue on the busy
    # timeout instead of failing a read-to-write lock upgrade
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_fresh_async_engine(url: str | None = None, *, echo: bool | None = None) -> AsyncEngine:
    """Create a fresh async engine without caching.

    Used for tests to ensure each test gets its own engine bound to its event loop.
    """
    url = url or settings.async_url
    if not url:
        raise RuntimeError("DATABASE_URL_APP is required")

    echo = settings.database_echo if echo is None else echo

    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=echo, connect_args={"timeout": 30})
        event.listen(engine.sync_engine, "connect", _on_sqlite_connect)
        event.listen(engine.sync_engine, "begin", _on_sqlite_begin)
        return engine

    return create_async_engine(
        url,
        pool_size=20,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
        echo=echo,
        connect_args={
            "server_settings": {"timezone": "UTC"},
            "timeout": 30,
        },
    )


def _instrument_sqlalchemy(engine: AsyncEngine) -> None:
    """
    Instrument the engine with OpenTelemetry.

    Args:
        engine: Async SQLAlchemy engine instance
    """
    global _telemetry_instrumented

    if _telemetry_instrumented or not settings.otel_enabled:
        return

    try:
        from tracechain.core.telemetry import instrument_sqlalchemy

        instrument_sqlalchemy(engine.sync_engine)
        _telemetry_instrumented = True
    except Exception as e:
        logger.warning(f"Failed to instrument SQLAlchemy with OpenTelemetry: {e}")


def get_async_engine() -> AsyncEngine:
    """
    Create and configure the async SQLAlchemy engine.

    Uses asyncpg for PostgreSQL and aiosqlite for SQLite.

    Returns:
        Configured async SQLAlchemy engine
    """
    global _async_engine

    if _async_engine is not None:
        return _async_engine

    _async_engine = create_fresh_async_engine()
    _instrument_sqlalchemy(_async_engine)
    return _async_engine


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory with the settings every registry session uses."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


def get_async_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """
    Get or create the async sessionmaker.

    Returns:
        Async sessionmaker factory
    """
    global _async_sessionmaker
    if _async_sessionmaker is not None:
        return _async_sessionmaker

    _async_sessionmaker = build_sessionmaker(get_async_engine())
    return _async_sessionmaker


async def init_models(engine: AsyncEngine | None = None) -> None:
    """Create all tables that do not exist yet."""
    engine = engine or get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


async def reset_async_engine() -> None:
    """Reset the async database engine and sessionmaker.

    Useful for tests to ensure fresh connections on new event loops.
    """
    global _async_engine, _async_sessionmaker

    if _async_engine is not None:
        await _async_engine.dispose()
    _async_engine = None
    _async_sessionmaker = None


async def get_async_db_session() -> AsyncIterator[AsyncSession]:
    """Async database session dependency for FastAPI read endpoints.

    Mutations go through RegistryService, which manages its own sessions.

    Yields:
        Async database session

    Ensures:
        Session is properly closed after request completion
    """
    session_maker = get_async_sessionmaker()
    async with session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
