# src/Attributable/db.py
from __future__ import annotations

import contextlib
import os
from collections.abc import AsyncIterator

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from Attributable.config import load_settings

settings = load_settings()
log = structlog.get_logger()


def _normalize_url(url: str) -> str:
    # Upgrade to async drivers if user supplies sync URLs
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://") and not url.startswith("sqlite+aiosqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


DATABASE_URL = _normalize_url(settings.database_url)


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_sessionmaker: async_sessionmaker[AsyncSession] | None = None
_schema_initialized: bool = False


def get_engine() -> AsyncEngine:
    global _engine, _sessionmaker
    if _engine is None:
        kwargs: dict[str, object] = {}
        if DATABASE_URL.startswith("sqlite+aiosqlite://"):
            connect_args = {"timeout": 30}
            kwargs.update(connect_args=connect_args)
            # In-memory DBs must share a single connection so the schema persists
            if ":memory:" in DATABASE_URL:
                kwargs.update(poolclass=StaticPool)
            # Force one shared connection for file-backed SQLite to serialize writers
            if os.environ.get("ATTRIBUTABLE_SQLITE_STATIC_POOL") == "1":
                kwargs.update(poolclass=StaticPool)
        elif DATABASE_URL.startswith("postgresql+asyncpg://"):
            kwargs.update(
                pool_pre_ping=True,
                pool_size=5,
                max_overflow=10,
                pool_timeout=30,
            )

        _engine = create_async_engine(DATABASE_URL, **kwargs)
        _sessionmaker = async_sessionmaker(_engine, expire_on_commit=False)
        # One-time sanitized connection config log (no password)
        from sqlalchemy.engine import make_url

        url = make_url(DATABASE_URL)
        backend = "postgres" if DATABASE_URL.startswith("postgresql") else (
            "sqlite" if DATABASE_URL.startswith("sqlite") else "other"
        )
        log.info(
            "db.connection.config",
            backend=backend,
            host=url.host or "",
            database=url.database or "",
            driver=url.drivername,
        )
    return _engine


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    if _sessionmaker is None:
        get_engine()
    return _sessionmaker  # type: ignore[return-value]


def shares_one_connection(bind: object) -> bool:
    """True when every session on ``bind`` borrows the same DBAPI connection.

    Concurrent sessions on such a pool interleave their transactions, so
    callers that fan work out must run it one session at a time.
    """
    engine = getattr(bind, "engine", bind)
    return isinstance(getattr(engine, "pool", None), StaticPool)


async def dispose_engine() -> None:
    """Dispose the engine and forget it so the next call builds a fresh one.

    Each CLI invocation runs in its own event loop; pooled connections must not
    outlive the loop that opened them.
    """
    global _engine, _sessionmaker, _schema_initialized
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessionmaker = None
    _schema_initialized = False


async def create_schema() -> None:
    from Attributable import models as _models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def _ensure_schema_created_if_needed() -> None:
    """Ensure tables exist for in-memory SQLite.

    Creating the schema here is idempotent and fast for SQLite; real
    databases are managed through Alembic.
    """
    global _schema_initialized
    if _schema_initialized:
        return
    if DATABASE_URL.startswith("sqlite+aiosqlite://") and ":memory:" in DATABASE_URL:
        await create_schema()
    _schema_initialized = True


@contextlib.asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    await _ensure_schema_created_if_needed()
    sm = get_sessionmaker()
    async with sm() as s:
        try:
            yield s
            await s.commit()
        except Exception:
            log.error("db.session.error", exc_info=True)
            await s.rollback()
            raise
