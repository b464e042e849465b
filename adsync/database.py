"""Database session configuration.

WHAT:
    Builds the async SQLAlchemy engine and session factory used by every
    sync unit of work.

WHY:
    - The engine is single-process cooperative async: every store write is a
      suspension point, never a blocking call
    - Built lazily so importing the package (tests, tooling) never needs a
      reachable database

ARCHITECTURE:
    ┌──────────────────┐
    │  Async Engine    │  postgresql+asyncpg://
    └────────┬─────────┘
             │
    ┌────────▼──────────┐
    │ async_sessionmaker│  get_session_factory()
    └────────┬──────────┘
             │
    ┌────────▼──────────┐
    │ get_async_session │  one session per (account, unit of work)
    └───────────────────┘

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/extensions/asyncio.html
    - adsync/engine.py (composition root, opens sessions per unit of work)
"""

import os
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        # Attempt to load from local .env for developer convenience
        from adsync.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure .env is loaded or the env var is exported."
        )

    return database_url


def get_async_database_url(sync_url: str) -> str:
    """Convert a plain PostgreSQL URL to the asyncpg driver form.

    Args:
        sync_url: Standard PostgreSQL URL (postgresql:// or postgres://)

    Returns:
        Async-compatible URL (postgresql+asyncpg://)
    """
    if sync_url.startswith("postgresql://"):
        return sync_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif sync_url.startswith("postgres://"):
        # Heroku-style URL
        return sync_url.replace("postgres://", "postgresql+asyncpg://", 1)
    return sync_url


# =============================================================================
# ASYNC ENGINE
# =============================================================================

@lru_cache()
def get_async_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create (once) the async engine for the configured database."""
    url = get_async_database_url(database_url or _get_database_url())
    return create_async_engine(
        url,
        pool_size=10,           # Base pool size
        max_overflow=20,        # Allow up to 30 total connections under load
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
        echo=False,             # Set True for SQL debugging
    )


def get_session_factory(engine: Optional[AsyncEngine] = None) -> async_sessionmaker:
    """Session factory bound to the given (or default) engine."""
    return async_sessionmaker(
        bind=engine or get_async_engine(),
        class_=AsyncSession,
        expire_on_commit=False,  # Rows are read after commit by the services
        autoflush=False,
    )


# =============================================================================
# BASE MODEL (imported from models for single registry)
# =============================================================================

from .models import Base  # noqa: E402,F401


# =============================================================================
# CONTEXT MANAGERS
# =============================================================================

@asynccontextmanager
async def get_async_session(
    factory: Optional[async_sessionmaker] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Context manager for async sessions outside a request scope.

    Yields:
        AsyncSession instance

    Example:
        async with get_async_session() as db:
            result = await db.execute(select(PlatformAccount))
            accounts = result.scalars().all()
    """
    factory = factory or get_session_factory()
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()
