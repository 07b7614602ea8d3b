"""PostgreSQL compatibility layer — wraps psycopg2 to match the sqlite3 API.

When DATABASE starts with postgresql://, the store talks to this wrapper
instead of sqlite3. It translates:
  - ? placeholders → %s
  - INSERT OR IGNORE → INSERT ... ON CONFLICT DO NOTHING
  - BEGIN IMMEDIATE → BEGIN (row locks do the serializing on PostgreSQL)
  - executescript() → split and execute
  - Row factory → dict-like Row objects

The connection runs in autocommit mode; the store opens explicit
transactions with BEGIN/COMMIT/ROLLBACK, same as on SQLite.
"""

from __future__ import annotations

import logging
import re
from typing import Any

logger = logging.getLogger(__name__)


class PgRow:
    """Dict-like row that mimics sqlite3.Row."""

    def __init__(self, columns: list[str], values: tuple):
        self._data = dict(zip(columns, values))

    def __getitem__(self, key: str | int) -> Any:
        if isinstance(key, int):
            return list(self._data.values())[key]
        return self._data[key]

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def keys(self) -> list[str]:
        return list(self._data.keys())

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def __repr__(self) -> str:
        return f"PgRow({self._data})"


def _translate_sql(sql: str) -> str:
    """Translate SQLite SQL to PostgreSQL SQL."""
    translated = sql.replace("?", "%s")

    if re.match(r"\s*BEGIN\s+IMMEDIATE", translated, flags=re.IGNORECASE):
        return "BEGIN"

    if re.search(r"INSERT\s+OR\s+IGNORE\s+INTO", translated, flags=re.IGNORECASE):
        translated = re.sub(
            r"INSERT\s+OR\s+IGNORE\s+INTO",
            "INSERT INTO",
            translated,
            flags=re.IGNORECASE,
        )
        if "ON CONFLICT" not in translated.upper():
            translated = translated.rstrip().rstrip(";") + " ON CONFLICT DO NOTHING"

    return translated


def _translate_schema(sql: str) -> str:
    """Translate SQLite schema DDL to PostgreSQL DDL."""
    translated = re.sub(
        r"(\w+)\s+INTEGER\s+PRIMARY\s+KEY\s+AUTOINCREMENT",
        r"\1 SERIAL PRIMARY KEY",
        sql,
        flags=re.IGNORECASE,
    )
    translated = re.sub(r"PRAGMA\s+\w+\s*=\s*\w+\s*;?", "", translated, flags=re.IGNORECASE)
    return translated


class PgCursorWrapper:
    """Wraps a psycopg2 cursor to match the sqlite3.Cursor interface."""

    def __init__(self, cursor):
        self._cursor = cursor

    @property
    def rowcount(self) -> int:
        return self._cursor.rowcount

    @property
    def description(self):
        return self._cursor.description

    def execute(self, sql: str, params: tuple = ()) -> "PgCursorWrapper":
        self._cursor.execute(_translate_sql(sql), params)
        return self

    def _columns(self) -> list[str]:
        return [desc[0] for desc in self._cursor.description or ()]

    def fetchone(self) -> PgRow | None:
        row = self._cursor.fetchone()
        if row is None:
            return None
        return PgRow(self._columns(), row)

    def fetchall(self) -> list[PgRow]:
        if not self._cursor.description:
            return []
        columns = self._columns()
        return [PgRow(columns, row) for row in self._cursor.fetchall()]

    def close(self):
        self._cursor.close()


class PgConnectionWrapper:
    """Wraps a psycopg2 connection to match the sqlite3.Connection interface."""

    def __init__(self, conn):
        self._conn = conn
        self._conn.autocommit = True
        self.row_factory = None  # Compatibility with sqlite3

    def execute(self, sql: str, params: tuple = ()) -> PgCursorWrapper:
        cursor = PgCursorWrapper(self._conn.cursor())
        cursor.execute(sql, params)
        return cursor

    def executescript(self, sql: str) -> None:
        """Execute multiple DDL statements, skipping objects that already exist."""
        statements = [s.strip() for s in _translate_schema(sql).split(";") if s.strip()]
        cursor = self._conn.cursor()
        for stmt in statements:
            try:
                cursor.execute(stmt)
            except Exception as e:
                err_msg = str(e).lower()
                if "already exists" in err_msg or "duplicate column" in err_msg:
                    logger.debug("Skipping schema statement: %s", e)
                else:
                    raise
        cursor.close()

    def close(self):
        self._conn.close()


def connect_pg(database_url: str) -> PgConnectionWrapper:
    """Create a PostgreSQL connection with a sqlite3-compatible interface."""
    import psycopg2

    return PgConnectionWrapper(psycopg2.connect(database_url))


def is_postgres_url(url: str) -> bool:
    """Check if a database URL is a PostgreSQL URL."""
    return url.startswith("postgresql://") or url.startswith("postgres://")
