from __future__ import annotations

import logging
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import anyio
from sqlalchemy import event
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from cookie_lb.core.config.settings import Settings, get_settings

logger = logging.getLogger(__name__)

_SQLITE_BUSY_TIMEOUT_MS = 5_000


def _sqlite_file(url: URL) -> Path | None:
    """Database file behind a SQLite URL, or None for in-memory and non-SQLite URLs."""
    if url.get_backend_name() != "sqlite":
        return None
    if not url.database or url.database == ":memory:":
        return None
    return Path(url.database).expanduser()


def _enable_sqlite_pragmas(sync_engine: Engine) -> None:
    @event.listens_for(sync_engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _: object) -> None:
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute(f"PRAGMA busy_timeout={_SQLITE_BUSY_TIMEOUT_MS}")
        finally:
            cursor.close()


def _build_engine(settings: Settings) -> AsyncEngine:
    url = make_url(settings.database_url)
    options: dict[str, Any] = {"echo": False}
    is_sqlite = url.get_backend_name() == "sqlite"
    sqlite_file = _sqlite_file(url)
    # In-memory SQLite runs on a single static connection; pool sizing does not apply.
    if not is_sqlite or sqlite_file is not None:
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout_seconds,
        )
    if is_sqlite:
        options["connect_args"] = {"timeout": _SQLITE_BUSY_TIMEOUT_MS / 1000}
    built = create_async_engine(url, **options)
    if sqlite_file is not None:
        _enable_sqlite_pragmas(built.sync_engine)
    return built


engine = _build_engine(get_settings())
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def _safe_rollback(session: AsyncSession) -> None:
    if not session.in_transaction():
        return
    try:
        with anyio.CancelScope(shield=True):
            await session.rollback()
    except Exception:
        logger.warning("Session rollback failed", exc_info=True)


async def _safe_close(session: AsyncSession) -> None:
    try:
        with anyio.CancelScope(shield=True):
            await session.close()
    except Exception:
        logger.warning("Session close failed", exc_info=True)


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """One short-lived session; uncommitted work is rolled back on exit, also on cancellation."""
    session = SessionLocal()
    try:
        yield session
    finally:
        await _safe_rollback(session)
        await _safe_close(session)


async def init_db() -> None:
    from cookie_lb.db.models import Base

    sqlite_file = _sqlite_file(engine.url)
    if sqlite_file is not None:
        sqlite_file.parent.mkdir(parents=True, exist_ok=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database ready url=%s", engine.url.render_as_string(hide_password=True))


async def close_db() -> None:
    await engine.dispose()
