from __future__ import annotations

import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Sequence

from .migrations import apply_migrations

_MIGRATED_PATHS: set[str] = set()
_MIGRATION_LOCK = threading.Lock()

_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
    "PRAGMA foreign_keys=ON",
)


class DBConn:
    """sqlite3 connection plus the path it was opened from.

    Rows come back as ``sqlite3.Row``; anything not defined here is
    forwarded to the underlying connection.
    """

    def __init__(self, conn: sqlite3.Connection, path: str) -> None:
        self._conn = conn
        self.path = path

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        return self._conn.execute(sql, tuple(params))

    def executemany(self, sql: str, rows: Iterable[Sequence[Any]]) -> sqlite3.Cursor:
        return self._conn.executemany(sql, rows)

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    @contextmanager
    def transaction(self) -> Iterator["DBConn"]:
        try:
            yield self
        except Exception:
            self._conn.rollback()
            raise
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._conn, name)


def connect_db(path: str) -> DBConn:
    in_memory = path == ":memory:"
    if not in_memory:
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    raw = sqlite3.connect(path, check_same_thread=False)
    raw.row_factory = sqlite3.Row
    for pragma in _PRAGMAS:
        raw.execute(pragma)
    key = None if in_memory else os.path.abspath(path)
    with _MIGRATION_LOCK:
        if key is None or key not in _MIGRATED_PATHS or not _has_schema(raw):
            apply_migrations(raw)
            if key is not None:
                _MIGRATED_PATHS.add(key)
    return DBConn(raw, path)


def _has_schema(conn: sqlite3.Connection) -> bool:
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'schema_migrations'"
    ).fetchone()
    return row is not None
