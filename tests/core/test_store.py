"""Tests for ``taskstore.store`` — lifecycle, queries, transactions, cancellation."""

from __future__ import annotations

import sqlite3
import threading
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable

import pytest
from structlog.testing import capture_logs

from taskstore.adapters import DatabaseConfig, create_adapter
from taskstore.cancellation import CancelToken
from taskstore.errors import (
    AdapterClosed,
    Cancelled,
    ConfigInvalid,
    NotInitialized,
    PlaceholderCountMismatch,
    PoolExhausted,
    QueryFailed,
    TransactionAborted,
)
from taskstore.schema import ColumnDescriptor, SemanticType, TableDescriptor
from taskstore.settings import load_settings
from taskstore.store import RowNormalizer, Store, convert_value
from taskstore.tables import TASKBOARD_TABLES

SLOW_QUERY = "WITH RECURSIVE c(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM c) SELECT max(x) AS n FROM c"


@contextmanager
def _writer_held(store: Store) -> Iterator[None]:
    """Hold the store's only connection in a background transaction."""
    inside = threading.Event()
    release = threading.Event()

    def hold(tx) -> None:
        inside.set()
        release.wait(5)

    t = threading.Thread(target=store.transaction, args=(hold,))
    t.start()
    assert inside.wait(5)
    try:
        yield
    finally:
        release.set()
        t.join(5)


class TestLifecycle:
    def test_operations_before_initialize(self, sqlite_config: DatabaseConfig) -> None:
        store = Store(sqlite_config)
        with pytest.raises(NotInitialized) as exc_info:
            store.query("SELECT 1 AS ok")
        assert exc_info.value.context.operation == "query"
        with pytest.raises(NotInitialized):
            store.transaction(lambda tx: None)
        assert store.stats()["state"] == "new"

    def test_initialize_is_idempotent(self, sqlite_config: DatabaseConfig) -> None:
        built: list[DatabaseConfig] = []

        def factory(config: DatabaseConfig):
            built.append(config)
            return create_adapter(config)

        store = Store(sqlite_config, adapter_factory=factory)
        first = store.initialize()
        second = store.initialize(sqlite_config)
        assert first.changed
        assert second.statements == []
        assert len(built) == 1
        store.close()

    def test_initialize_with_other_config_when_ready(self, store: Store, tmp_path) -> None:
        with pytest.raises(ConfigInvalid) as exc_info:
            store.initialize(DatabaseConfig(path=str(tmp_path / "other.sqlite")))
        assert exc_info.value.key == "config"
        assert store.is_ready

    def test_initialize_with_config_before_ready(self, sqlite_config: DatabaseConfig, tmp_path) -> None:
        other = DatabaseConfig(path=str(tmp_path / "other.sqlite"))
        store = Store(sqlite_config)
        store.initialize(other)
        assert store.config == other
        assert (tmp_path / "other.sqlite").exists()
        store.close()

    def test_close_is_final(self, store: Store) -> None:
        store.close()
        store.close()
        assert store.is_closed
        with pytest.raises(AdapterClosed):
            store.query("SELECT 1 AS ok")
        with pytest.raises(AdapterClosed):
            store.execute("DELETE FROM tags")
        with pytest.raises(AdapterClosed):
            store.initialize()
        assert store.stats() == {"state": "closed", "backend": "sqlite"}

    def test_context_manager(self, sqlite_config: DatabaseConfig) -> None:
        with Store(sqlite_config) as store:
            assert store.is_ready
            assert store.ping()
        assert store.is_closed

    def test_from_settings(self, db_path: str) -> None:
        store = Store.from_settings(load_settings(path=db_path, backend="sqlite"))
        assert store.backend == "sqlite"
        assert store.config.path == db_path
        assert store.tables == TASKBOARD_TABLES

    def test_logs_initialized(self, sqlite_config: DatabaseConfig) -> None:
        store = Store(sqlite_config)
        with capture_logs() as logs:
            store.initialize()
        store.close()
        event = next(e for e in logs if e["event"] == "store.initialized")
        assert event["backend"] == "sqlite"
        assert event["tables"] == len(TASKBOARD_TABLES) + 1

    def test_repr(self, store: Store) -> None:
        assert repr(store) == "Store(backend='sqlite', state='ready')"


class TestQueries:
    def test_query_returns_dicts_in_column_order(self, store: Store, insert_user) -> None:
        user_id = insert_user()
        rows = store.query("SELECT name, email, id FROM users WHERE id = ?", [user_id])
        assert rows == [{"name": "Ada", "email": "ada@example.com", "id": user_id}]
        assert list(rows[0]) == ["name", "email", "id"]

    def test_query_one(self, store: Store, insert_user) -> None:
        insert_user()
        assert store.query_one("SELECT email FROM users") == {"email": "ada@example.com"}
        assert store.query_one("SELECT email FROM users WHERE id = ?", ["missing"]) is None

    def test_execute_returns_rowcount(self, store: Store, insert_user) -> None:
        insert_user("a@example.com")
        insert_user("b@example.com")
        assert store.execute("UPDATE users SET role = ?", ["admin"]) == 2
        assert store.execute("DELETE FROM users WHERE email = ?", ["nobody@example.com"]) == 0

    def test_placeholder_inside_literal_is_not_bound(self, store: Store, insert_user) -> None:
        insert_user(name="Who?")
        rows = store.query("SELECT name FROM users WHERE name = 'Who?' AND email = ?", ["ada@example.com"])
        assert rows == [{"name": "Who?"}]

    def test_placeholder_mismatch_before_any_connection(
        self, store: Store, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def boom(*args: Any, **kwargs: Any):
            raise AssertionError("connection acquired")

        monkeypatch.setattr(store._adapter, "connection", boom)
        with pytest.raises(PlaceholderCountMismatch) as exc_info:
            store.query("SELECT * FROM users WHERE id = ? AND email = ?", ["only-one"])
        err = exc_info.value
        assert (err.expected, err.received) == (2, 1)
        assert err.context.operation == "query"
        assert err.context.backend == "sqlite"

    def test_query_failed_wraps_driver_error(self, store: Store) -> None:
        with pytest.raises(QueryFailed) as exc_info:
            store.query("SELECT * FROM no_such_table")
        err = exc_info.value
        assert isinstance(err.cause, sqlite3.OperationalError)
        assert err.context.statement == "SELECT * FROM no_such_table"
        assert err.retryable is False
        assert store.ping()

    def test_constraint_violation(self, store: Store, insert_user) -> None:
        insert_user()
        with pytest.raises(QueryFailed) as exc_info:
            insert_user()
        assert isinstance(exc_info.value.cause, sqlite3.IntegrityError)

    def test_foreign_keys_enforced(self, store: Store) -> None:
        with pytest.raises(QueryFailed):
            store.execute(
                "INSERT INTO sessions (id, user_id, token, expires_at) VALUES (?, ?, ?, ?)",
                [str(uuid.uuid4()), "ghost", "tok", datetime(2030, 1, 1)],
            )


class TestNormalisation:
    def test_semantic_types_from_sqlite(self, store: Store, insert_user) -> None:
        user_id = insert_user()
        store.execute(
            "UPDATE users SET is_active = ?, last_login_at = ?, notification_settings = ? WHERE id = ?",
            [False, datetime(2024, 5, 1, 9, 30), {"email": False}, user_id],
        )
        row = store.query_one(
            "SELECT is_active, last_login_at, notification_settings, created_at FROM users WHERE id = ?",
            [user_id],
        )
        assert row is not None
        assert row["is_active"] is False
        assert row["last_login_at"] == datetime(2024, 5, 1, 9, 30)
        assert row["notification_settings"] == {"email": False}
        assert isinstance(row["created_at"], datetime)

    def test_unknown_columns_pass_through(self, store: Store) -> None:
        assert store.query("SELECT 1 AS flag, 'x' AS label") == [{"flag": 1, "label": "x"}]

    def test_ambiguous_names_pass_through(self) -> None:
        a = TableDescriptor("a", (ColumnDescriptor("value", SemanticType.TEXT),))
        b = TableDescriptor("b", (ColumnDescriptor("value", SemanticType.INTEGER),))
        normalizer = RowNormalizer([a, b, *TASKBOARD_TABLES])
        assert normalizer.type_of("value") is None
        assert normalizer.type_of("settings") is SemanticType.JSON
        assert normalizer.normalize(["value", "is_active"], [("7", 1)]) == [{"value": "7", "is_active": True}]

    @pytest.mark.parametrize(
        ("semantic", "value", "expected"),
        [
            (SemanticType.BOOLEAN, 1, True),
            (SemanticType.BOOLEAN, "f", False),
            (SemanticType.BOOLEAN, "maybe", "maybe"),
            (SemanticType.INTEGER, 3.0, 3),
            (SemanticType.TIMESTAMP, "2024-05-01T09:30:00Z", datetime.fromisoformat("2024-05-01T09:30:00+00:00")),
            (SemanticType.TIMESTAMP, "not a date", "not a date"),
            (SemanticType.JSON, '{"a": [1, 2]}', {"a": [1, 2]}),
            (SemanticType.JSON, b"[]", []),
            (SemanticType.JSON, "{broken", "{broken"),
            (SemanticType.UUID, uuid.UUID(int=1), "00000000-0000-0000-0000-000000000001"),
            (SemanticType.TEXT, None, None),
        ],
    )
    def test_convert_value(self, semantic: SemanticType, value: Any, expected: Any) -> None:
        assert convert_value(semantic, value) == expected


class TestTransactions:
    def test_commit(self, store: Store, insert_user, count_rows: Callable[[str], int]) -> None:
        def work(tx):
            insert_user("a@example.com", target=tx)
            insert_user("b@example.com", target=tx)
            return "done"

        assert store.transaction(work) == "done"
        assert count_rows("users") == 2

    def test_rollback_on_error(self, store: Store, insert_user, count_rows: Callable[[str], int]) -> None:
        insert_user("keep@example.com")

        def work(tx):
            insert_user("gone@example.com", target=tx)
            raise RuntimeError("boom")

        with capture_logs() as logs:
            with pytest.raises(RuntimeError, match="boom"):
                store.transaction(work)
        assert count_rows("users") == 1
        assert any(e["event"] == "transaction.rolled_back" and e["reason"] == "RuntimeError" for e in logs)

    def test_failed_statement_rolls_back_everything(
        self, store: Store, insert_user, count_rows: Callable[[str], int]
    ) -> None:
        def work(tx):
            insert_user("a@example.com", target=tx)
            insert_user("a@example.com", target=tx)

        with pytest.raises(QueryFailed):
            store.transaction(work)
        assert count_rows("users") == 0

    def test_abort(self, store: Store, insert_user, count_rows: Callable[[str], int]) -> None:
        def work(tx):
            insert_user(target=tx)
            tx.abort("changed my mind")

        with pytest.raises(TransactionAborted, match="changed my mind"):
            store.transaction(work)
        assert count_rows("users") == 0

    def test_nested_calls_join_outer_transaction(
        self, store: Store, insert_user, count_rows: Callable[[str], int]
    ) -> None:
        seen: list[Any] = []

        def inner(tx):
            seen.append(tx)
            insert_user("inner@example.com", target=tx)

        def outer(tx):
            insert_user("outer@example.com", target=tx)
            store.transaction(inner)
            tx.transaction(inner_again)
            # plain store calls on this thread run inside the transaction too
            assert store.query_one("SELECT COUNT(*) AS n FROM users")["n"] == 3
            seen.append(tx)
            raise RuntimeError("undo all")

        def inner_again(tx):
            seen.append(tx)
            insert_user("again@example.com", target=tx)

        with pytest.raises(RuntimeError):
            store.transaction(outer)
        assert count_rows("users") == 0
        assert len(seen) == 3
        assert all(tx is seen[0] for tx in seen)

    def test_transaction_query_helpers(self, store: Store, insert_user) -> None:
        insert_user()

        def work(tx):
            assert tx.in_transaction
            assert tx.query_one("SELECT email FROM users WHERE email = ?", ["missing"]) is None
            return tx.query("SELECT email FROM users")

        assert store.transaction(work) == [{"email": "ada@example.com"}]

    def test_writer_lock_blocks_other_threads(self, store: Store, insert_user) -> None:
        inside = threading.Event()
        release = threading.Event()

        def hold(tx):
            insert_user("held@example.com", target=tx)
            inside.set()
            release.wait(5)

        t = threading.Thread(target=store.transaction, args=(hold,))
        t.start()
        assert inside.wait(5)
        try:
            with pytest.raises(PoolExhausted):
                store.query("SELECT COUNT(*) AS n FROM users")
        finally:
            release.set()
            t.join(5)
        assert store.query_one("SELECT COUNT(*) AS n FROM users") == {"n": 1}


class TestCancellation:
    def test_precancelled_token_never_acquires(self, store: Store, monkeypatch: pytest.MonkeyPatch) -> None:
        def boom(*args: Any, **kwargs: Any):
            raise AssertionError("connection acquired")

        monkeypatch.setattr(store._adapter, "connection", boom)
        token = CancelToken()
        token.cancel("request closed")
        with pytest.raises(Cancelled, match="request closed"):
            store.query("SELECT 1 AS ok", cancel=token)
        with pytest.raises(Cancelled):
            store.transaction(lambda tx: None, cancel=token)

    def test_deadline_interrupts_running_query(self, store: Store) -> None:
        token = CancelToken.with_timeout(0.1)
        with capture_logs() as logs:
            with pytest.raises(Cancelled) as exc_info:
                store.query(SLOW_QUERY, cancel=token)
        assert isinstance(exc_info.value.cause, sqlite3.OperationalError)
        assert exc_info.value.context.operation == "query"
        assert any(e["event"] == "query.cancelled" for e in logs)
        assert store.ping()
        assert store.stats()["in_use"] == 0

    def test_cancel_inside_transaction_rolls_back(
        self, store: Store, insert_user, count_rows: Callable[[str], int]
    ) -> None:
        token = CancelToken()

        def work(tx):
            insert_user(target=tx)
            token.cancel("client gone")
            insert_user("second@example.com", target=tx)

        with pytest.raises(Cancelled):
            store.transaction(work, cancel=token)
        assert count_rows("users") == 0

    @pytest.fixture
    def patient_store(self, db_path: str) -> Iterator[Store]:
        s = Store(DatabaseConfig(path=db_path, acquire_timeout=3.0))
        s.initialize()
        yield s
        s.close()

    def test_cancel_while_waiting_for_connection(self, patient_store: Store) -> None:
        token = CancelToken()
        timer = threading.Timer(0.1, token.cancel, kwargs={"reason": "client gone"})
        with _writer_held(patient_store):
            timer.start()
            started = time.monotonic()
            with pytest.raises(Cancelled, match="client gone"):
                patient_store.query("SELECT 1 AS ok", cancel=token)
            elapsed = time.monotonic() - started
        assert elapsed < 1.0
        assert patient_store.stats()["waiting"] == 0
        assert patient_store.ping()

    def test_deadline_while_waiting_for_connection(self, patient_store: Store) -> None:
        with _writer_held(patient_store):
            started = time.monotonic()
            with pytest.raises(Cancelled):
                patient_store.query("SELECT 1 AS ok", cancel=CancelToken.with_timeout(0.1))
            with pytest.raises(Cancelled):
                patient_store.transaction(lambda tx: None, cancel=CancelToken.with_timeout(0.1))
            elapsed = time.monotonic() - started
        assert elapsed < 2.0

    def test_cancel_after_statement_finished_still_raises(
        self, store: Store, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        token = CancelToken()
        run = store._adapter.run

        def run_then_cancel(conn, statement):
            result = run(conn, statement)
            token.cancel("client gone")
            return result

        monkeypatch.setattr(store._adapter, "run", run_then_cancel)
        with pytest.raises(Cancelled, match="client gone"):
            store.query("SELECT 1 AS ok", cancel=token)
        monkeypatch.undo()
        assert store.query("SELECT 1 AS ok") == [{"ok": 1}]

    def test_unused_token_is_harmless(self, store: Store) -> None:
        token = CancelToken()
        assert store.query("SELECT 1 AS ok", cancel=token) == [{"ok": 1}]
        assert not token.cancelled


class TestIntrospection:
    def test_list_tables(self, store: Store) -> None:
        tables = store.list_tables()
        assert tables == sorted(tables)
        assert {"_schema_history", "users", "tasks", "task_assignees"} <= set(tables)

    def test_describe_table(self, store: Store) -> None:
        columns = {c.name: c for c in store.describe_table("tasks")}
        assert columns["id"].primary_key
        assert columns["title"].nullable is False
        assert columns["board_id"].nullable is True
        assert store.describe_table("no_such_table") == []

    def test_history(self, store: Store) -> None:
        rows = store.history()
        assert rows
        assert set(rows[0]) == {"table_name", "column_name", "action", "applied_at"}
        assert isinstance(rows[0]["applied_at"], datetime)

    def test_stats(self, store: Store) -> None:
        stats = store.stats()
        assert stats["state"] == "ready"
        assert stats["backend"] == "sqlite"
        assert stats["connected"] is True
        assert stats["in_use"] == 0
