"""Async database engine and session management.

Provides:
    - create_engine: Build the SQLAlchemy async engine from Settings.
    - create_session_factory: A sessionmaker bound to the engine.
    - session_scope: One unit of work (commit on success, rollback on error).
    - create_all / dispose: Lifecycle hooks for entry points and tests.

Nothing here is a module-level singleton: entry points build the engine
once and pass the session factory to each component.

Usage:
    engine = create_engine(settings)
    factory = create_session_factory(engine)
    async with session_scope(factory) as session:
        ...
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from gigflow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from gigflow.config import Settings

logger = get_logger(__name__)


def create_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine for the configured database."""
    if settings.is_sqlite:
        engine = create_async_engine(
            settings.database_url,
            echo=settings.db_echo_sql,
            connect_args={"timeout": settings.db_pool_timeout},
        )

        @event.listens_for(engine.sync_engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):  # noqa: ANN001
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    else:
        engine = create_async_engine(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_pre_ping=True,
            echo=settings.db_echo_sql,
        )

    logger.info(
        "database.engine_created",
        dialect=engine.dialect.name,
        pool_size=None if settings.is_sqlite else settings.db_pool_size,
    )
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build the session factory every service receives."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Yield a session that is committed on success or rolled back on error."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_all(engine: AsyncEngine) -> None:
    """Create all tables. Production deployments use Alembic migrations instead."""
    from gigflow.infrastructure.database.orm_models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database.tables_created", dialect=engine.dialect.name)


async def dispose(engine: AsyncEngine) -> None:
    """Dispose of the engine's connection pool."""
    await engine.dispose()
    logger.info("database.engine_disposed")
