"""Database configuration and session management.

This module constructs an asynchronous SQLAlchemy engine and session
factory for the API process.  The connection string comes from
``settings.DATABASE_URL`` and is normalised for async drivers: plain
``sqlite`` URLs are upgraded to ``sqlite+aiosqlite`` and every Postgres
flavour is routed through ``postgresql+psycopg``.

Worker processes do not share this engine.  Each dramatiq message runs
its pipeline inside a fresh event loop, and pooled connections cannot
cross loops, so the worker builds a throwaway ``NullPool`` engine per
run via :func:`worker_session_factory`.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Optional

from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from receipt_extraction.core.config import settings

logger = logging.getLogger(__name__)

_POSTGRES_DRIVERS = {
    "postgres",
    "postgresql",
    "postgresql+psycopg",
    "postgresql+psycopg2",
    "postgresql+asyncpg",
}


def normalize_database_url(url: str) -> str:
    """Return ``url`` rewritten to use an async driver."""
    url_obj = make_url(url)
    driver = url_obj.drivername or ""
    if driver == "sqlite":
        url_obj = url_obj.set(drivername="sqlite+aiosqlite")
    elif driver in _POSTGRES_DRIVERS:
        q = dict(url_obj.query or {})
        # Ensure channel binding doesn't block authentication
        if "channel_binding" not in q or q.get("channel_binding") == "require":
            q["channel_binding"] = "disable"
        url_obj = url_obj.set(drivername="postgresql+psycopg", query=q)
    return url_obj.render_as_string(hide_password=False)


def build_engine(url: Optional[str] = None, *, pooled: bool = True) -> AsyncEngine:
    db_url = normalize_database_url(url or settings.DATABASE_URL)
    engine_kwargs: dict[str, Any] = dict(echo=False)
    if pooled:
        engine_kwargs["pool_pre_ping"] = True
    else:
        engine_kwargs["poolclass"] = NullPool
    logger.info("Creating async engine for %s", make_url(db_url).render_as_string(hide_password=True))
    return create_async_engine(db_url, **engine_kwargs)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine()

# Create session factory
AsyncSessionLocal = make_session_factory(engine)

# Declarative base
Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that yields a database session.

    This function is intended for FastAPI dependency injection.  Each
    session is scoped to the request and closed after use.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """Create all tables defined on the declarative ``Base``.

    Called during application startup.  Tables that already exist are left
    untouched.
    """
    target = bind or engine
    async with target.begin() as conn:
        # Import all models to ensure metadata is populated
        from receipt_extraction.models import tables  # noqa: F401

        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def worker_session_factory(url: Optional[str] = None) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Yield a session factory bound to a per-run ``NullPool`` engine.

    The engine is disposed when the context exits, so nothing outlives the
    event loop that created it.
    """
    run_engine = build_engine(url, pooled=False)
    try:
        yield make_session_factory(run_engine)
    finally:
        await run_engine.dispose()
