"""
Engine and session lifecycle for the joke store.

One AsyncEngine per process. Sync-style URLs from settings are rewritten to
their asyncio drivers:
  postgresql:// | postgres://  → postgresql+asyncpg://
  sqlite://                    → sqlite+aiosqlite://

    await init_db()                    # once at startup, creates tables
    async with get_session() as db:    # one transaction per store call
        ...
    await close_db()                   # at shutdown
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}

_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None


def _to_async_url(db_url: str) -> str:
    """Swap a bare dialect for its async driver; explicit drivers are left alone."""
    url = make_url(db_url)
    driver = _ASYNC_DRIVERS.get(url.drivername)
    if driver:
        url = url.set(drivername=driver)
    return url.render_as_string(hide_password=False)


def _safe_url(url: URL) -> str:
    return url.render_as_string(hide_password=True)


def _engine_kwargs(url: URL) -> dict:
    settings = get_settings()
    kwargs = {"echo": settings.app.debug}
    if url.get_backend_name() == "sqlite":
        return kwargs
    # Pool size caps concurrent database work across all consumers
    kwargs.update(
        pool_size=settings.database.pool_size,
        max_overflow=settings.database.max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
    )
    return kwargs


def _ensure_sqlite_dir(url: URL) -> None:
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)


def get_engine(db_url: Optional[str] = None) -> AsyncEngine:
    """Return the process engine, creating it from `db_url` or settings on first use."""
    global _engine
    if _engine is None:
        url = make_url(_to_async_url(db_url or get_settings().database.url))
        _ensure_sqlite_dir(url)
        _engine = create_async_engine(url, **_engine_kwargs(url))
        logger.info("database_engine_created", dialect=_engine.dialect.name, url=_safe_url(url))
    return _engine


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Commit on clean exit, roll back and re-raise on error."""
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(get_engine(), expire_on_commit=False)
    async with _sessions() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(db_url: Optional[str] = None) -> None:
    """Create missing tables. Safe to call on every startup."""
    engine = get_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    """Dispose the pool. The next get_engine() starts fresh."""
    global _engine, _sessions
    if _engine is not None:
        await _engine.dispose()
        logger.info("database_closed")
    _engine = None
    _sessions = None
