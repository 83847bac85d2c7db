"""Database connection management for the Oraya control plane.

This module provides the async engine and session factories for the
platform database (PostgreSQL).

Environment Variables:
    POSTGRES_URI: PostgreSQL connection string
    DATABASE_URI / DATABASE_URL: Fallbacks when POSTGRES_URI is unset
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)


_engine: AsyncEngine | None = None
_sessionmaker: async_sessionmaker[AsyncSession] | None = None


def get_database_uri() -> str | None:
    """Get the database connection URI with fallback chain."""
    uri = os.getenv("POSTGRES_URI")
    if uri:
        return _ensure_async_postgres(uri)

    fallback = os.getenv("DATABASE_URI") or os.getenv("DATABASE_URL")
    if fallback:
        return _ensure_async_postgres(fallback)

    return None


def _ensure_async_postgres(uri: str) -> str:
    """Ensure PostgreSQL URI uses asyncpg driver."""
    if uri.startswith("postgresql://"):
        return uri.replace("postgresql://", "postgresql+asyncpg://", 1)
    if uri.startswith("postgres://"):
        return uri.replace("postgres://", "postgresql+asyncpg://", 1)
    return uri


def get_engine() -> AsyncEngine:
    """Get or create the async engine."""
    global _engine
    if _engine is None:
        uri = get_database_uri()
        if not uri:
            raise RuntimeError(
                "Database URI not configured. Set POSTGRES_URI environment variable."
            )
        if uri.startswith("sqlite"):
            _engine = create_async_engine(uri)
        else:
            _engine = create_async_engine(
                uri,
                pool_pre_ping=True,
                pool_size=5,
                max_overflow=10,
            )
    return _engine


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    global _sessionmaker
    if _sessionmaker is None:
        _sessionmaker = async_sessionmaker(
            get_engine(), class_=AsyncSession, expire_on_commit=False
        )
    return _sessionmaker


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Async context manager for database sessions.

    Commits when the block exits cleanly, rolls back and re-raises otherwise.
    """
    maker = get_sessionmaker()
    async with maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def close_engine() -> None:
    """Close the database engine. Call on application shutdown."""
    global _engine, _sessionmaker
    if _engine:
        await _engine.dispose()
        _engine = None
    _sessionmaker = None


def is_unique_violation(exc: Exception) -> bool:
    """True when an IntegrityError was caused by a unique constraint."""
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code == "23505":
        return True
    return "unique" in str(orig if orig is not None else exc).lower()
