"""Tests for ``taskstore.adapters.sqlite`` — SQLite adapter."""

from __future__ import annotations

import sqlite3
import threading
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from taskstore.adapters import DatabaseConfig, SQLiteAdapter, create_adapter
from taskstore.cancellation import CancelToken
from taskstore.dialect import SQLiteDialect, TranslatedStatement
from taskstore.errors import AdapterClosed, Cancelled, ConnectFailed, PoolExhausted


def _stmt(sql: str, *args) -> TranslatedStatement:
    return TranslatedStatement(sql, tuple(args), len(args))


class TestSQLiteAdapterInit:
    def test_defaults(self) -> None:
        adapter = SQLiteAdapter()
        assert adapter.db_type.value == "sqlite"
        assert adapter.path == "database.sqlite"
        assert adapter.is_connected is False
        assert isinstance(adapter.dialect, SQLiteDialect)

    def test_from_registry(self, sqlite_config: DatabaseConfig) -> None:
        assert isinstance(create_adapter(sqlite_config), SQLiteAdapter)


class TestSQLiteAdapterConnect:
    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "dir" / "tasks.sqlite"
        adapter = SQLiteAdapter(path=str(path))
        adapter.connect()
        assert path.parent.is_dir()
        assert adapter.is_connected
        adapter.disconnect()

    def test_pragmas(self, sqlite_config: DatabaseConfig) -> None:
        adapter = SQLiteAdapter(sqlite_config)
        with adapter.connection() as conn:
            assert adapter.run(conn, _stmt("PRAGMA foreign_keys")).rows == [(1,)]
            assert adapter.run(conn, _stmt("PRAGMA journal_mode")).rows == [("wal",)]
        adapter.disconnect()

    def test_memory_database(self) -> None:
        adapter = SQLiteAdapter(path=":memory:")
        with adapter.connection() as conn:
            assert adapter.run(conn, _stmt("SELECT 1 AS one")).rows == [(1,)]
        adapter.disconnect()

    @patch("sqlite3.connect", side_effect=sqlite3.OperationalError("unable to open database file"))
    def test_connect_failure(self, _mock_connect) -> None:
        adapter = SQLiteAdapter(path="tasks.sqlite")
        with pytest.raises(ConnectFailed) as exc_info:
            adapter.connect()
        assert "unable to open database file" in str(exc_info.value)
        assert isinstance(exc_info.value.cause, sqlite3.OperationalError)


class TestSQLiteAdapterRun:
    def test_rows_and_rowcount(self, sqlite_config: DatabaseConfig) -> None:
        adapter = SQLiteAdapter(sqlite_config)
        with adapter.connection() as conn:
            adapter.run(conn, _stmt("CREATE TABLE t (id INTEGER, name TEXT)"))
            inserted = adapter.run(conn, _stmt("INSERT INTO t VALUES (?, ?), (?, ?)", 1, "a", 2, "b"))
            assert inserted.rowcount == 2
            result = adapter.run(conn, _stmt("SELECT name, id FROM t ORDER BY id"))
            assert result.columns == ["name", "id"]
            assert result.rows == [("a", 1), ("b", 2)]
        adapter.disconnect()

    def test_autocommit(self, sqlite_config: DatabaseConfig, db_path: str) -> None:
        adapter = SQLiteAdapter(sqlite_config)
        with adapter.connection() as conn:
            adapter.run(conn, _stmt("CREATE TABLE t (id INTEGER)"))
            adapter.run(conn, _stmt("INSERT INTO t VALUES (1)"))
        other = sqlite3.connect(db_path)
        assert other.execute("SELECT COUNT(*) FROM t").fetchone() == (1,)
        other.close()
        adapter.disconnect()

    def test_release_rolls_back_open_transaction(self, sqlite_config: DatabaseConfig) -> None:
        adapter = SQLiteAdapter(sqlite_config)
        with adapter.connection() as conn:
            adapter.run(conn, _stmt("CREATE TABLE t (id INTEGER)"))
        with adapter.connection() as conn:
            adapter.run(conn, _stmt("BEGIN IMMEDIATE"))
            adapter.run(conn, _stmt("INSERT INTO t VALUES (1)"))
        with adapter.connection() as conn:
            assert conn.in_transaction is False
            assert adapter.run(conn, _stmt("SELECT COUNT(*) FROM t")).rows == [(0,)]
        adapter.disconnect()


class TestSQLiteWriterLock:
    def test_second_caller_times_out(self, sqlite_config: DatabaseConfig) -> None:
        adapter = SQLiteAdapter(sqlite_config)
        adapter.connect()
        holding = threading.Event()
        done = threading.Event()

        def hold() -> None:
            with adapter.connection():
                holding.set()
                done.wait(5)

        t = threading.Thread(target=hold)
        t.start()
        holding.wait(5)
        try:
            with pytest.raises(PoolExhausted):
                with adapter.connection(timeout=0.1):
                    pass
            stats = adapter.stats()
            assert stats["in_use"] == 1
            assert stats["exhausted"] == 1
        finally:
            done.set()
            t.join(5)

        with adapter.connection(timeout=0.5):
            assert adapter.stats()["in_use"] == 1
        assert adapter.stats()["in_use"] == 0
        adapter.disconnect()

    def test_cancel_stops_waiting_for_lock(self, db_path: str) -> None:
        adapter = SQLiteAdapter(DatabaseConfig(path=db_path, acquire_timeout=5.0))
        adapter.connect()
        token = CancelToken()
        timer = threading.Timer(0.1, token.cancel, kwargs={"reason": "client gone"})

        with adapter.connection():
            timer.start()
            started = time.monotonic()
            with pytest.raises(Cancelled, match="client gone"):
                with adapter.connection(cancel=token):
                    pass
            assert time.monotonic() - started < 1.0

        stats = adapter.stats()
        assert (stats["in_use"], stats["waiting"], stats["exhausted"]) == (0, 0, 0)
        adapter.disconnect()

    def test_deadline_bounds_the_wait(self, db_path: str) -> None:
        adapter = SQLiteAdapter(DatabaseConfig(path=db_path, acquire_timeout=5.0))
        adapter.connect()
        with adapter.connection():
            started = time.monotonic()
            with pytest.raises(Cancelled):
                with adapter.connection(cancel=CancelToken.with_timeout(0.1)):
                    pass
            assert time.monotonic() - started < 1.0
        adapter.disconnect()

    def test_interrupt_aborts_running_statement(self, sqlite_config: DatabaseConfig) -> None:
        adapter = SQLiteAdapter(sqlite_config)
        with adapter.connection() as conn:
            timer = threading.Timer(0.1, adapter.interrupt, args=(conn,))
            timer.start()
            started = time.monotonic()
            with pytest.raises(sqlite3.OperationalError):
                adapter.run(
                    conn,
                    _stmt("WITH RECURSIVE c(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM c) SELECT max(x) FROM c"),
                )
            assert time.monotonic() - started < 5
        adapter.disconnect()


class TestSQLiteAdapterDisconnect:
    def test_disconnect_is_final(self, sqlite_config: DatabaseConfig) -> None:
        adapter = SQLiteAdapter(sqlite_config)
        adapter.connect()
        adapter.disconnect()
        adapter.disconnect()
        assert adapter.is_connected is False
        assert adapter.is_closed is True
        with pytest.raises(AdapterClosed):
            adapter.connect()
        with pytest.raises(AdapterClosed):
            with adapter.connection():
                pass

    def test_context_manager(self, sqlite_config: DatabaseConfig) -> None:
        with SQLiteAdapter(sqlite_config) as adapter:
            assert adapter.is_connected
        assert adapter.is_closed
