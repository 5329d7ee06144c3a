"""Engine and session management for the calendar cache store.

One async engine per process. The API lifespan and the CLI call
`init_db()` before building the reconciler and dispatcher, which take the
session factory from `get_session_factory()` and open short-lived sessions
per sync step. Request handlers get a session through `get_db_session`.

Settings used: `DATABASE_URL`, `DATABASE_POOL_SIZE`,
`DATABASE_MAX_OVERFLOW`, `DATABASE_ECHO`. SQLite URLs (tests, local
experiments) skip the pool options, which SQLite's pool does not accept.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from roomcast.config import get_settings

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory shared by the reconciler, dispatcher and routes.

    Objects stay readable after commit; the reconciler reads the claimed
    calendar row after its claiming session is gone.
    """
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def init_db(database_url: str | None = None) -> None:
    """Create the process engine. Call once at startup."""
    global _engine, _session_factory

    settings = get_settings()
    url = database_url or settings.database_url

    options: dict[str, Any] = {"pool_pre_ping": True, "echo": settings.database_echo}
    if not url.startswith("sqlite"):
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )

    _engine = create_async_engine(url, **options)
    _session_factory = create_session_factory(_engine)
    logger.info("Cache store engine ready (%s)", _engine.url.render_as_string(hide_password=True))


async def close_db() -> None:
    """Dispose of the engine and its pooled connections."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        logger.info("Cache store engine disposed")
    _engine = None
    _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one session per request.

    Handlers commit explicitly; anything left uncommitted when the request
    fails is rolled back.
    """
    async with get_session_factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
