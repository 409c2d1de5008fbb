"""
database.py — Async SQLAlchemy engine, session factory, and helpers.

Monitoring state (relations, reviews, alerts, defenses, run logs and the
persisted Ethos credential) lives in a single local SQLite file by default.
A PostgreSQL URL switches the engine to asyncpg with a connection pool.
"""

import logging
from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from config import settings

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────

def to_async_url(url: str) -> str:
    """Rewrite plain postgres URLs to the asyncpg driver notation."""
    for prefix in ("postgresql://", "postgres://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


def _engine_options(url: str) -> dict:
    options: dict = {"echo": settings.debug, "future": True}
    if url.startswith("sqlite"):
        return options  # no pool sizing for SQLite
    options.update(
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
        pool_pre_ping=True,
    )
    return options


_db_url = to_async_url(settings.database_url)
engine = create_async_engine(_db_url, **_engine_options(_db_url))


# ─────────────────────────────────────────────
# Session Factory
# ─────────────────────────────────────────────

def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Sessions keep loaded attributes after commit so services can return ORM rows."""
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


AsyncSessionLocal = make_session_factory(engine)


class Base(DeclarativeBase):
    pass


# ─────────────────────────────────────────────
# Lifecycle
# ─────────────────────────────────────────────

async def create_tables(bind: AsyncEngine | None = None) -> None:
    """Create any missing monitor tables. Existing tables are left intact."""
    import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables initialised (%s)", "sqlite" if _db_url.startswith("sqlite") else "postgres")


async def dispose_engine() -> None:
    await engine.dispose()
    logger.info("Database engine disposed")


# ─────────────────────────────────────────────
# Dependency Injection
# ─────────────────────────────────────────────

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield one session per request; commit on success, roll back on error."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
