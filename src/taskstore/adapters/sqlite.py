"""SQLite database adapter."""

from __future__ import annotations

import sqlite3
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

from taskstore.dialect import Dialect, SQLiteDialect, TranslatedStatement
from taskstore.errors import ConnectFailed, PoolExhausted
from taskstore.logging import get_logger

from .base import DatabaseAdapter, StatementResult
from .types import DatabaseConfig, DatabaseType

if TYPE_CHECKING:
    from taskstore.cancellation import CancelToken

logger = get_logger(__name__)

# How often a caller waiting on the writer lock re-checks its cancel token.
CANCEL_POLL_INTERVAL = 0.02


class SQLiteAdapter(DatabaseAdapter):
    """
    SQLite database adapter.

    One ``sqlite3`` connection per process, shared by every caller and
    serialized through a single writer lock. The connection runs in
    autocommit mode (``isolation_level=None``); transactions are explicit
    ``BEGIN IMMEDIATE`` / ``COMMIT`` / ``ROLLBACK`` issued by the store.
    """

    driver_error = sqlite3.Error

    def __init__(self, config: DatabaseConfig | None = None, **kwargs: Any):
        if config is None:
            config = DatabaseConfig(backend=DatabaseType.SQLITE, **kwargs)
        super().__init__(config)
        self._dialect = SQLiteDialect()
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._in_use = 0
        self._waiting = 0
        self._exhausted = 0

    @property
    def dialect(self) -> Dialect:
        return self._dialect

    @property
    def path(self) -> str:
        return self._config.path

    def connect(self) -> None:
        """Open the database file, creating parent directories as needed."""
        self._ensure_open()
        if self._conn is not None:
            return

        path = self._config.path
        memory = path == ":memory:" or path.startswith("file::memory:")
        if not memory:
            Path(path).expanduser().parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(
                path,
                timeout=self._config.connect_timeout,
                check_same_thread=False,
                isolation_level=None,
                uri=path.startswith("file:"),
            )
            conn.execute("PRAGMA foreign_keys = ON")
            if not memory:
                conn.execute("PRAGMA journal_mode = WAL")
        except sqlite3.Error as e:
            raise ConnectFailed(
                f"Failed to open SQLite database {path!r}: {e}",
                cause=e,
            ).with_context(backend="sqlite") from e

        self._conn = conn
        self._connected = True
        logger.info("pool.opened", backend="sqlite", path=path, max_size=1)

    def disconnect(self) -> None:
        """Close the connection; waits briefly for an in-flight caller."""
        if self._closed:
            return
        self._closed = True
        acquired = self._lock.acquire(timeout=self._config.acquire_timeout)
        try:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            self._connected = False
        finally:
            if acquired:
                self._lock.release()

    def _acquire(self, timeout: float, cancel: CancelToken | None = None) -> sqlite3.Connection:
        with self._state_lock:
            self._waiting += 1
        try:
            acquired = self._wait_for_lock(timeout, cancel)
        finally:
            with self._state_lock:
                self._waiting -= 1
        if not acquired:
            with self._state_lock:
                self._exhausted += 1
            logger.warning("pool.exhausted", backend="sqlite", timeout=timeout, max_size=1)
            raise PoolExhausted(
                f"SQLite writer lock not available within {timeout}s",
                timeout=timeout,
            )
        if self._conn is None:
            self._lock.release()
            self._ensure_open()
            raise ConnectFailed("SQLite connection is not open")
        with self._state_lock:
            self._in_use += 1
        return self._conn

    def _wait_for_lock(self, timeout: float, cancel: CancelToken | None) -> bool:
        if cancel is None:
            return self._lock.acquire(timeout=timeout)
        deadline = time.monotonic() + timeout
        while True:
            cancel.raise_if_cancelled("acquire")
            remaining = max(0.0, deadline - time.monotonic())
            if self._lock.acquire(timeout=min(remaining, CANCEL_POLL_INTERVAL)):
                return True
            if time.monotonic() >= deadline:
                return False

    def _release(self, conn: sqlite3.Connection) -> None:
        try:
            if conn is self._conn and conn.in_transaction:
                conn.execute("ROLLBACK")
        finally:
            with self._state_lock:
                self._in_use -= 1
            self._lock.release()

    def interrupt(self, conn: sqlite3.Connection) -> None:
        conn.interrupt()

    def run(self, conn: sqlite3.Connection, statement: TranslatedStatement) -> StatementResult:
        cursor = conn.execute(statement.sql, statement.args)
        try:
            if cursor.description is None:
                return StatementResult(rowcount=cursor.rowcount)
            columns = [d[0] for d in cursor.description]
            return StatementResult(
                columns=columns,
                rows=cursor.fetchall(),
                rowcount=cursor.rowcount,
            )
        finally:
            cursor.close()

    def stats(self) -> dict[str, Any]:
        with self._state_lock:
            in_use = self._in_use
            return {
                "backend": "sqlite",
                "connected": self._connected,
                "size": 1 if self._conn is not None else 0,
                "idle": 1 if self._conn is not None and not in_use else 0,
                "in_use": in_use,
                "waiting": self._waiting,
                "max_size": 1,
                "exhausted": self._exhausted,
            }


__all__ = [
    "SQLiteAdapter",
]
