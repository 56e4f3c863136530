"""
Physical store backends for TableDB.

A backend is one physical store instance ("shard") hosting zero or more
tables. It exposes two capabilities to the rest of the system:
- QueryRunner: parameterized select / insert / update against a named table
- TableDefiner: create a table from a column-definition list

Invariants:
    - Requests are validated before the engine is touched
    - Identifiers are validated and quoted; values are always bound parameters
    - A backend serializes its own operations (one open connection)
    - Engine failures surface as BackendError, never as sqlite3 exceptions

How to change safely:
    - New backends must implement StoreBackend and keep the same validation
    - Keep the single-connection model unless the engine supports concurrent writers
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path

from ..errors import BackendError, ConstraintViolationError, FactoryError
from .types import (
    CREATED_BY_COLUMN,
    CreateTableOptions,
    ExecOptions,
    ExecResult,
    ExecType,
    QueryOptions,
    QueryResult,
    quote_identifier,
)

logger = logging.getLogger(__name__)

MEMORY_DATA_SOURCE = ":memory:"


class StoreBackend(ABC):
    """One physical store instance."""

    @property
    @abstractmethod
    def id(self) -> int:
        """Shard id assigned at creation time."""

    @abstractmethod
    def query(self, opts: QueryOptions) -> QueryResult:
        """Run a select and return the matching records."""

    @abstractmethod
    def exec(self, opts: ExecOptions) -> ExecResult:
        """Run an insert or update."""

    @abstractmethod
    def create_table(self, opts: CreateTableOptions) -> None:
        """Create a table from column definitions."""

    def close(self) -> None:
        """Release the backend's resources."""


class SQLiteBackend(StoreBackend):
    """SQLite store backend.

    One connection per backend, opened at construction. Every operation
    holds the backend lock for its full duration, so concurrent callers
    queue at the connection.

    Example:
        >>> backend = SQLiteBackend(":memory:", backend_id=1)
        >>> backend.create_table(CreateTableOptions("foo", (("id", "integer", "primary key"),)))
        >>> backend.exec(ExecOptions(ExecType.INSERT, "foo", (FieldValue("id", 7),)))
        ExecResult(last_insert_id=7, rows_affected=1)
    """

    def __init__(
        self,
        data_source: str,
        backend_id: int,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Open the backend connection.

        Args:
            data_source: SQLite file path, or ":memory:"
            backend_id: Shard id for this backend
            busy_timeout_ms: SQLite busy timeout

        Raises:
            FactoryError: If the connection cannot be opened
        """
        self._id = backend_id
        self.data_source = data_source
        self._lock = threading.Lock()

        try:
            if data_source != MEMORY_DATA_SOURCE and not data_source.startswith("file:"):
                Path(data_source).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                data_source,
                timeout=busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit
                check_same_thread=False,
                uri=data_source.startswith("file:"),
            )
            self._conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
        except (OSError, sqlite3.Error) as e:
            raise FactoryError(
                f"unable to open store '{data_source}': {e}", shard_id=backend_id
            ) from e

        logger.debug(f"Opened SQLite backend {backend_id} at {data_source}")

    @property
    def id(self) -> int:
        return self._id

    def _execute(self, sql: str, params: list) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.IntegrityError as e:
            raise ConstraintViolationError(str(e), backend_id=self._id) from e
        except sqlite3.Error as e:
            logger.error(f"SQLite backend {self._id} failed: {e}")
            raise BackendError(str(e), backend_id=self._id) from e

    def query(self, opts: QueryOptions) -> QueryResult:
        opts.validate()

        columns = ", ".join(quote_identifier(c) for c in opts.include_columns) or "*"
        sql = f"SELECT {columns} FROM {quote_identifier(opts.table_name)}"
        params = []
        if opts.where:
            sql += " WHERE " + " AND ".join(p.to_sql() for p in opts.where)
            params.extend(p.value for p in opts.where)
        if opts.limit > 0:
            sql += " LIMIT ?"
            params.append(opts.limit)

        with self._lock:
            cursor = self._execute(sql, params)
            names = [d[0] for d in cursor.description]
            rows = cursor.fetchall()

        # created_by is only returned when asked for by name
        hidden = set() if opts.include_columns else {CREATED_BY_COLUMN}
        return [
            {name: value for name, value in zip(names, row) if name not in hidden}
            for row in rows
        ]

    def exec(self, opts: ExecOptions) -> ExecResult:
        opts.validate()

        table = quote_identifier(opts.table_name)
        params = [fv.value for fv in opts.values]

        if opts.type is ExecType.INSERT:
            cols = ", ".join(quote_identifier(fv.name) for fv in opts.values)
            marks = ", ".join("?" for _ in opts.values)
            sql = f"INSERT INTO {table} ({cols}) VALUES ({marks})"
        else:
            assigns = ", ".join(f"{quote_identifier(fv.name)} = ?" for fv in opts.values)
            sql = f"UPDATE {table} SET {assigns} WHERE " + " AND ".join(
                p.to_sql() for p in opts.where
            )
            params.extend(p.value for p in opts.where)

        with self._lock:
            cursor = self._execute(sql, params)
            if opts.type is ExecType.INSERT:
                return ExecResult(
                    last_insert_id=cursor.lastrowid or 0,
                    rows_affected=cursor.rowcount,
                )
            return ExecResult(rows_affected=cursor.rowcount)

    def create_table(self, opts: CreateTableOptions) -> None:
        opts.validate()

        body = ", ".join(" ".join(definition) for definition in opts.definitions)
        if_not_exists = "IF NOT EXISTS " if opts.if_not_exists else ""
        sql = f"CREATE TABLE {if_not_exists}{quote_identifier(opts.table_name)} ({body})"

        with self._lock:
            self._execute(sql, [])
        logger.debug(f"Created table {opts.table_name} in backend {self._id}")

    def table_exists(self, table_name: str) -> bool:
        """Check whether a physical table exists in this backend."""
        with self._lock:
            cursor = self._execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", [table_name]
            )
            return cursor.fetchone() is not None

    def close(self) -> None:
        with self._lock:
            self._conn.close()
        logger.debug(f"Closed SQLite backend {self._id}")
