# src/Contentporter/db.py
from __future__ import annotations

import contextlib
import os
from collections.abc import AsyncIterator
from pathlib import Path

import structlog
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from Contentporter.config import load_settings

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


def configure(database_url: str) -> None:
    """Point the module at another database and drop any cached engine."""
    global DATABASE_URL, _engine, _sessionmaker, _schema_initialized
    DATABASE_URL = _normalize_url(database_url)
    _engine = None
    _sessionmaker = None
    _schema_initialized = False


def get_engine() -> AsyncEngine:
    global _engine, _sessionmaker
    if _engine is None:
        kwargs: dict[str, object] = {}
        if DATABASE_URL.startswith("sqlite+aiosqlite://"):
            kwargs.update(connect_args={"timeout": 30})
            # Critical for in-memory DBs: share a single connection so schema persists
            if ":memory:" in DATABASE_URL:
                kwargs.update(poolclass=StaticPool)
            if os.environ.get("CONTENTPORTER_SQLITE_STATIC_POOL") == "1":
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
        # Emit a one-time sanitized connection config log (no password)
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


async def ensure_schema() -> None:
    """Create the store tables if they do not exist yet.

    Alembic owns schema changes for real databases; this covers fresh SQLite
    files and in-memory databases used by tests and one-off runs.
    """
    global _schema_initialized
    if _schema_initialized:
        return
    from Contentporter import models as _models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    _schema_initialized = True


class DatabaseNotFoundError(FileNotFoundError):
    """Raised when a SQLite store file must already exist but does not."""


def sqlite_file_path(url: str) -> Path | None:
    """Filesystem path of a file-backed SQLite URL; None for other URLs."""
    if not url.startswith("sqlite"):
        return None
    database = make_url(url).database
    if not database or database == ":memory:":
        return None
    return Path(database)


@contextlib.asynccontextmanager
async def session_scope(*, create_schema: bool = True) -> AsyncIterator[AsyncSession]:
    """Session that commits on success and rolls back on error.

    With ``create_schema=False`` (dry runs) a SQLite store is only opened if
    its file already exists, so nothing is created or written on disk.
    """
    if DATABASE_URL.startswith("sqlite+aiosqlite://"):
        if create_schema:
            await ensure_schema()
        else:
            path = sqlite_file_path(DATABASE_URL)
            if path is not None and not path.is_file():
                raise DatabaseNotFoundError(f"SQLite database not found: {path}")
    sm = get_sessionmaker()
    async with sm() as s:
        try:
            yield s
            await s.commit()
        except BaseException:
            log.error("db.session.error", exc_info=True)
            await s.rollback()
            raise


async def dispose_engine() -> None:
    global _engine, _sessionmaker, _schema_initialized
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessionmaker = None
    _schema_initialized = False
