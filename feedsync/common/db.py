"""SQLAlchemy engine construction."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

from feedsync.common.fs import ensure_dir

SQLITE_PREFIX = "sqlite:///"


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_sql_engine(url: str) -> Engine:
    if url.startswith(SQLITE_PREFIX) and not url.endswith(":memory:"):
        ensure_dir(Path(url[len(SQLITE_PREFIX) :]).parent)
    engine = create_engine(url)
    if engine.url.get_backend_name() == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine
