"""Driver selection for the two sides of fieldsync.

The ingestion server talks to its database through an async driver; the device
queue and Alembic need a blocking one. Both accept the same DATABASE_URL
spellings (`sqlite:///./x.db`, `postgres://...`, `postgresql+psycopg2://...`).
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy.engine import URL, make_url

_ASYNC_DRIVERS = {"sqlite": "sqlite+aiosqlite", "postgresql": "postgresql+psycopg"}
_SYNC_DRIVERS = {"sqlite": "sqlite", "postgresql": "postgresql+psycopg"}


def _parse(database_url: str) -> URL | None:
    raw = (database_url or "").strip()
    if not raw:
        return None
    if raw.startswith("postgres://"):
        raw = "postgresql://" + raw[len("postgres://") :]
    return make_url(raw)


def _with_driver(database_url: str, drivers: dict[str, str]) -> str:
    url = _parse(database_url)
    if url is None:
        return ""
    driver = drivers.get(url.get_backend_name())
    if driver is None:
        return url.render_as_string(hide_password=False)
    return url.set(drivername=driver).render_as_string(hide_password=False)


def normalize_database_url_for_async(database_url: str) -> str:
    """Server runtime: aiosqlite for SQLite, psycopg 3 for PostgreSQL."""
    return _with_driver(database_url, _ASYNC_DRIVERS)


def normalize_database_url_for_sync(database_url: str) -> str:
    """Device queue and Alembic: pysqlite for SQLite, psycopg 3 for PostgreSQL."""
    return _with_driver(database_url, _SYNC_DRIVERS)


def is_sqlite_url(database_url: str) -> bool:
    url = _parse(database_url)
    return url is not None and url.get_backend_name() == "sqlite"


def ensure_sqlite_parent_dir(database_url: str) -> None:
    # A fresh device has no `.data/` yet; sqlite will not create it.
    url = _parse(database_url)
    if url is None or url.get_backend_name() != "sqlite":
        return
    if not url.database or url.database == ":memory:":
        return
    Path(url.database).parent.mkdir(parents=True, exist_ok=True)
