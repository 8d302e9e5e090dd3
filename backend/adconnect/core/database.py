"""
Database configuration and session management.

Uses SQLAlchemy 2.0 async with the asyncpg driver in production.
Services receive an ``async_sessionmaker`` and open one session per
operation, so concurrent pipelines never share a session.
"""

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from adconnect.config import settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


@lru_cache
def get_engine() -> AsyncEngine:
    """Create the process-wide async engine on first use."""
    return create_async_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_timeout=settings.database_pool_timeout,
        pool_pre_ping=True,  # Enable connection health checks
        echo=settings.debug,  # Log SQL queries in debug mode
    )


def create_session_factory(
    engine: Optional[AsyncEngine] = None,
) -> async_sessionmaker[AsyncSession]:
    """Build a session factory bound to ``engine`` (default: the global engine)."""
    return async_sessionmaker(
        engine or get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Transactional scope around a series of operations.

    Usage:
        async with session_scope(factory) as db:
            ...
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """
    Initialize database tables.

    In production, run migrations instead.
    This is primarily for testing and initial setup.
    """
    # Register every model on the metadata before create_all
    import adconnect.models  # noqa: F401

    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections."""
    if get_engine.cache_info().currsize:
        await get_engine().dispose()
        get_engine.cache_clear()
