from __future__ import annotations

from collections.abc import AsyncGenerator, Iterator
from pathlib import Path

import pytest

from fieldsync.client.operation_store import LocalOperationStore
from fieldsync.config import settings
from fieldsync.db import dispose_engine, init_db, reset_engine_cache


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
async def _dispose_engine_per_test(  # pyright: ignore[reportUnusedFunction]
    anyio_backend: object,  # noqa: ARG001
) -> AsyncGenerator[None, None]:
    # Dispose the cached AsyncEngine (aiosqlite worker thread) while the
    # per-test event loop is still alive.
    _ = anyio_backend
    yield
    await dispose_engine()


@pytest.fixture
async def server_db(tmp_path: Path) -> AsyncGenerator[str, None]:
    # Per-test sqlite DB keeps ingestion tests isolated and deterministic.
    old_db = settings.database_url
    settings.database_url = f"sqlite:///{tmp_path / 'server.db'}"
    reset_engine_cache()
    await init_db()
    try:
        yield settings.database_url
    finally:
        await dispose_engine()
        settings.database_url = old_db


@pytest.fixture
def store(tmp_path: Path) -> Iterator[LocalOperationStore]:
    with LocalOperationStore(f"sqlite:///{tmp_path / 'outbox.db'}") as s:
        yield s
