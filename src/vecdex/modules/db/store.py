"""SQLite-backed store connections used by the connection pool."""

from __future__ import annotations

import asyncio
import re
import sqlite3
from collections.abc import Awaitable, Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from vecdex.core.errors import (
    DatastoreError,
    DuplicateIdError,
    InvalidDataError,
    StoreConnectionError,
)
from vecdex.core.logging import get_logger

__all__ = [
    "COLLECTIONS_TABLE",
    "INDEXES_TABLE",
    "StoreConnection",
    "open_connection",
    "is_memory_database",
    "quote_identifier",
    "raise_duplicate",
    "sqlite_connector",
    "translate_error",
    "utc_timestamp",
]

COLLECTIONS_TABLE = "vecdex_collections"
INDEXES_TABLE = "vecdex_indexes"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_TRANSIENT_MARKERS = ("database is locked", "database table is locked", "busy")

_logger = get_logger(__name__)

_BOOKKEEPING_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {COLLECTIONS_TABLE} (
    name TEXT PRIMARY KEY,
    embedding_property TEXT NOT NULL,
    generation INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS {INDEXES_TABLE} (
    index_name TEXT PRIMARY KEY,
    collection TEXT NOT NULL,
    config TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def quote_identifier(name: str, *, field: str = "table") -> str:
    """Return ``name`` quoted for SQL after validating it as an identifier.

    Raises:
        InvalidDataError: If ``name`` is empty or not a plain identifier.
    """

    if not isinstance(name, str) or not name.strip():
        raise InvalidDataError(f"{field} cannot be empty", field=field)
    if not _IDENTIFIER.match(name):
        raise InvalidDataError(
            f"{field} must be a plain identifier (got {name!r})",
            field=field,
        )
    return f'"{name}"'


def translate_error(
    exc: sqlite3.Error,
    *,
    operation: str,
) -> DatastoreError:
    """Wrap a sqlite error, flagging lock contention as transient."""

    message = str(exc) or exc.__class__.__name__
    transient = isinstance(exc, sqlite3.OperationalError) and any(
        marker in message.lower() for marker in _TRANSIENT_MARKERS
    )
    return DatastoreError(
        f"{operation} failed: {message}",
        operation=operation,
        transient=transient,
    )


class StoreConnection:
    """A single SQLite connection with transaction and function helpers.

    A connection is owned by exactly one pool lease at a time, so it may be
    used from worker threads other than the one that opened it.
    """

    def __init__(self, raw: sqlite3.Connection, *, database: str) -> None:
        self._raw = raw
        self._database = database
        self._closed = False
        self._raw.row_factory = sqlite3.Row

    @property
    def database(self) -> str:
        return self._database

    @property
    def closed(self) -> bool:
        return self._closed

    def execute(
        self,
        sql: str,
        params: Sequence[Any] | Mapping[str, Any] = (),
        *,
        operation: str = "execute",
    ) -> sqlite3.Cursor:
        try:
            return self._raw.execute(sql, params)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            raise translate_error(exc, operation=operation) from exc

    def executemany(
        self,
        sql: str,
        rows: Sequence[Sequence[Any]],
        *,
        operation: str = "executemany",
    ) -> sqlite3.Cursor:
        try:
            return self._raw.executemany(sql, rows)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            raise translate_error(exc, operation=operation) from exc

    def fetch_all(
        self,
        sql: str,
        params: Sequence[Any] | Mapping[str, Any] = (),
        *,
        operation: str = "query",
    ) -> list[sqlite3.Row]:
        return self.execute(sql, params, operation=operation).fetchall()

    def fetch_one(
        self,
        sql: str,
        params: Sequence[Any] | Mapping[str, Any] = (),
        *,
        operation: str = "query",
    ) -> sqlite3.Row | None:
        return self.execute(sql, params, operation=operation).fetchone()

    @contextmanager
    def transaction(self, *, operation: str = "transaction") -> Iterator[None]:
        """Run the enclosed statements atomically.

        Any exception raised inside the block rolls the transaction back and
        propagates unchanged.
        """

        self.execute("BEGIN IMMEDIATE", operation=operation)
        try:
            yield
        except BaseException:
            self._raw.rollback()
            raise
        try:
            self._raw.commit()
        except sqlite3.Error as exc:
            self._raw.rollback()
            raise translate_error(exc, operation=operation) from exc

    @contextmanager
    def functions(
        self,
        functions: Mapping[str, tuple[int, Callable[..., Any]]],
    ) -> Iterator[None]:
        """Register scalar SQL functions for the duration of the block."""

        for name, (arity, func) in functions.items():
            self._raw.create_function(name, arity, func, deterministic=True)
        try:
            yield
        finally:
            for name, (arity, _) in functions.items():
                self._raw.create_function(name, arity, None)

    def table_exists(self, table: str) -> bool:
        row = self.fetch_one(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
            (table,),
            operation="table-exists",
        )
        return row is not None

    def ensure_collection(self, table: str, *, embedding_property: str) -> None:
        """Create the collection table and its bookkeeping row if missing."""

        quoted = quote_identifier(table)
        column = quote_identifier(embedding_property, field="embedding_property")
        self.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {quoted} (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                {column} TEXT NOT NULL,
                metadata TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            operation="ensure-collection",
        )
        self.execute(
            f"INSERT OR IGNORE INTO {COLLECTIONS_TABLE} "
            "(name, embedding_property, generation) VALUES (?, ?, 0)",
            (table, embedding_property),
            operation="ensure-collection",
        )

    def generation(self, table: str) -> int:
        row = self.fetch_one(
            f"SELECT generation FROM {COLLECTIONS_TABLE} WHERE name = ?",
            (table,),
            operation="collection-generation",
        )
        return int(row["generation"]) if row is not None else 0

    def bump_generation(self, table: str) -> None:
        self.execute(
            f"UPDATE {COLLECTIONS_TABLE} SET generation = generation + 1 "
            "WHERE name = ?",
            (table,),
            operation="collection-generation",
        )

    def ping(self) -> bool:
        if self._closed:
            return False
        try:
            self._raw.execute("SELECT 1").fetchone()
        except sqlite3.Error:
            return False
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._raw.close()


def is_memory_database(database: str) -> bool:
    return database == ":memory:" or "mode=memory" in database


def open_connection(
    database: str | Path,
    *,
    busy_timeout: float = 5.0,
) -> StoreConnection:
    """Open a store connection and make sure bookkeeping tables exist.

    Raises:
        StoreConnectionError: If SQLite cannot open ``database``.
    """

    target = str(database)
    uri = target.startswith("file:")
    try:
        raw = sqlite3.connect(
            target,
            timeout=busy_timeout,
            isolation_level=None,
            check_same_thread=False,
            uri=uri,
        )
        if not is_memory_database(target):
            raw.execute("PRAGMA journal_mode=WAL")
        raw.execute("PRAGMA foreign_keys=ON")
        raw.executescript(_BOOKKEEPING_SCHEMA)
    except sqlite3.Error as exc:
        raise StoreConnectionError(
            f"Failed to open store at {target!r}: {exc}",
            database=target,
        ) from exc
    _logger.debug("store-connection-opened", database=target)
    return StoreConnection(raw, database=target)


def sqlite_connector(
    database: str | Path,
    *,
    busy_timeout: float = 5.0,
) -> Callable[[], Awaitable[StoreConnection]]:
    """Return an async factory opening connections to ``database``."""

    async def _connect() -> StoreConnection:
        return await asyncio.to_thread(
            open_connection,
            database,
            busy_timeout=busy_timeout,
        )

    return _connect


def raise_duplicate(
    exc: sqlite3.IntegrityError,
    *,
    record_id: str,
    table: str,
) -> None:
    """Re-raise a unique violation on ``id`` as :class:`DuplicateIdError`."""

    if "UNIQUE" in str(exc) and ".id" in str(exc):
        raise DuplicateIdError(
            f"Record {record_id!r} already exists in {table!r}",
            id=record_id,
            table=table,
        ) from exc
    raise translate_error(exc, operation="insert") from exc
