from __future__ import annotations

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from fieldsync.config import settings
from fieldsync.db_urls import (
    ensure_sqlite_parent_dir,
    is_sqlite_url,
    normalize_database_url_for_async,
)
from fieldsync.models import SERVER_TABLES


def _engine_options(database_url: str) -> dict[str, Any]:
    if is_sqlite_url(database_url):
        # Concurrent ingests of one key queue on the write lock instead of failing fast.
        return {"connect_args": {"timeout": settings.database_busy_timeout_seconds}}
    return {"pool_pre_ping": True}


@lru_cache(maxsize=4)
def get_engine() -> AsyncEngine:
    # Tests/deployments may override settings.database_url and rebuild the engine.
    database_url = settings.database_url
    ensure_sqlite_parent_dir(database_url)
    return create_async_engine(
        normalize_database_url_for_async(database_url), echo=False, **_engine_options(database_url)
    )


@lru_cache(maxsize=4)
def _session_factory() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)


def reset_engine_cache() -> None:
    _session_factory.cache_clear()
    get_engine.cache_clear()


async def dispose_engine() -> None:
    # Shut down aiosqlite worker threads while the event loop is still alive.
    if get_engine.cache_info().currsize:
        await get_engine().dispose()
    reset_engine_cache()


async def init_db() -> None:
    # Local/test fallback only; production schema is managed by Alembic.
    async with get_engine().begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all, tables=SERVER_TABLES)


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    async with _session_factory()() as session:
        yield session


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one session per ingest request."""
    async with session_scope() as session:
        yield session
