"""
Engine and transaction scope for the SQL job store.

SqlJobStore opens one session per store call, and each session is one
transaction: a counter bump and its snapshot row mark commit together or
not at all. The engine is built lazily from settings.database.url, with
plain URLs mapped onto async drivers (asyncpg, aiomysql, aiosqlite).

Table lifecycle (init_db / drop_db) is driven by the API lifespan and by
scripts/migrate_db.py.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

_ASYNC_DRIVERS = [
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("mysql+pymysql://", "mysql+aiomysql://"),
    ("mysql://", "mysql+aiomysql://"),
    ("sqlite://", "sqlite+aiosqlite://"),
]


def _to_async_url(db_url: str) -> str:
    """Map a plain database URL onto its async driver; async URLs pass through."""
    for sync_prefix, async_prefix in _ASYNC_DRIVERS:
        if db_url.startswith(sync_prefix):
            return db_url.replace(sync_prefix, async_prefix, 1)
    return db_url


def _engine_kwargs(db_url: str) -> dict:
    settings = get_settings()
    base = {"echo": settings.debug}

    if db_url.startswith("sqlite"):
        # overlapping sweeper passes write the same file; wait on its lock
        return {**base, "connect_args": {"check_same_thread": False, "timeout": 15}}

    return {
        **base,
        "pool_size": settings.database.pool_size,
        "max_overflow": settings.database.max_overflow,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def _redacted(url: str) -> str:
    return url.split("@")[-1] if "@" in url else url


def get_engine() -> AsyncEngine:
    """Process-wide engine, created on first use from the configured URL."""
    global _engine
    if _engine is None:
        db_url = _to_async_url(get_settings().database.url)
        _engine = create_async_engine(db_url, **_engine_kwargs(db_url))
        logger.info("database_engine_created",
                    dialect=_engine.dialect.name, url=_redacted(str(_engine.url)))
    return _engine


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One transaction: commit when the block exits cleanly, roll back otherwise."""
    factory = _get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create dispatch_jobs, dispatch_recipients and dispatch_errors where missing."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=list(Base.metadata.tables.keys()))


async def drop_db() -> None:
    """Drop every dispatch table. Used by migrate_db.py --reset."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    logger.warning("database_dropped", dialect=engine.dialect.name)


async def close_db() -> None:
    """Dispose the pool so the next get_engine() reads settings again."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("database_closed")
