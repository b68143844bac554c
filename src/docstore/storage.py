"""SQLite repository shared by the engine, entities and query builders."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any

from docstore.config import DocstoreConfig
from docstore.errors import InternalError, StorageBackendError, ValidationError

logger = logging.getLogger(__name__)


def quote_ident(name: str) -> str:
    """Quote an SQL identifier (table, column, index or alias name)."""
    return '"' + name.replace('"', '""') + '"'


class Repository:
    """SQLite-backed store.

    The connection runs in autocommit mode; multi-statement writes go
    through transaction(), which takes the database write lock up front
    (BEGIN IMMEDIATE) so a read-compare-write sequence can't interleave
    with another writer.
    """

    def __init__(self, db_path: str, config: DocstoreConfig | None = None) -> None:
        self.db_path = db_path
        self.config = config or DocstoreConfig()
        try:
            self._conn = sqlite3.connect(
                db_path,
                isolation_level=None,
                timeout=self.config.busy_timeout_ms / 1000,
            )
        except sqlite3.Error as exc:
            raise StorageBackendError("connect", str(exc)) from exc
        self._conn.row_factory = sqlite3.Row
        if db_path != ":memory:":
            self._conn.execute(f"PRAGMA journal_mode={self.config.journal_mode}")
        self._tx_depth = 0

    def close(self) -> None:
        self._conn.close()

    # --- Statement execution ---

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        logger.debug("SQL: %s %r", sql, list(params))
        try:
            return self._conn.execute(sql, tuple(params))
        except sqlite3.IntegrityError as exc:
            raise ValidationError([f"Constraint violated: {exc}"]) from exc
        except sqlite3.Error as exc:
            raise StorageBackendError("execute", f"{exc} [{sql}]") from exc

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        return [dict(row) for row in self.execute(sql, params).fetchall()]

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        row = self.execute(sql, params).fetchone()
        return dict(row) if row is not None else None

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        row = self.execute(sql, params).fetchone()
        return row[0] if row is not None else None

    # --- Transactions ---

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    def begin_transaction(self) -> None:
        if self._tx_depth == 0:
            self.execute("BEGIN IMMEDIATE")
        self._tx_depth += 1

    def commit_transaction(self) -> None:
        if self._tx_depth == 0:
            raise InternalError("commit_transaction() called outside of a transaction")
        self._tx_depth -= 1
        if self._tx_depth == 0:
            self.execute("COMMIT")

    def rollback_transaction(self) -> None:
        # Rolls back the whole outermost transaction; enclosing levels see
        # depth 0 and do nothing.
        if self._tx_depth == 0:
            return
        self._tx_depth = 0
        self.execute("ROLLBACK")

    @contextmanager
    def transaction(self) -> Iterator[None]:
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback_transaction()
            raise
        else:
            self.commit_transaction()

    # --- Tables ---

    def table_exists(self, name: str) -> bool:
        row = self.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (name,)
        ).fetchone()
        return row is not None

    def drop_table(self, name: str) -> None:
        self.execute(f"DROP TABLE IF EXISTS {quote_ident(name)}")

    # --- Schema description blob ---

    def ensure_desc_table(self, table: str) -> None:
        self.execute(
            f"CREATE TABLE IF NOT EXISTS {quote_ident(table)} ("
            "id INTEGER PRIMARY KEY CHECK (id = 1), "
            "version INTEGER NOT NULL, "
            "json TEXT NOT NULL)"
        )

    def read_desc(self, table: str) -> tuple[int, str] | None:
        row = self.execute(
            f"SELECT version, json FROM {quote_ident(table)} WHERE id = 1"
        ).fetchone()
        if row is None:
            return None
        return int(row[0]), str(row[1])

    def read_desc_version(self, table: str) -> int | None:
        version = self.scalar(f"SELECT version FROM {quote_ident(table)} WHERE id = 1")
        return int(version) if version is not None else None

    def write_desc(self, table: str, version: int, desc_json: str) -> None:
        self.execute(
            f"INSERT INTO {quote_ident(table)} (id, version, json) VALUES (1, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET version = excluded.version, json = excluded.json",
            (version, desc_json),
        )

