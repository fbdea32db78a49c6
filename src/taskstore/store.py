"""Query façade: the one object the application talks to.

``Store`` wraps one adapter (SQLite or PostgreSQL) and its dialect. Callers
write backend-neutral statements with ``?`` placeholders and get back lists
of dicts whose values are already normalised to Python types, whichever
backend answered.

Manifesto:
    Route handlers should never branch on the database engine. The store
    owns the lifecycle (initialize → ready → closed), reconciles the schema
    before the first query, and turns every driver failure into a typed
    ``StoreError``.

    - **Reconcile first:** no caller statement runs before ``initialize``
    - **Fail before I/O:** placeholder mismatches never touch a connection
    - **One connection per transaction:** nested calls on the same thread
      reuse it, they never open a second one
    - **Typed results:** timestamps are ``datetime``, booleans are ``bool``,
      JSON columns are decoded

Architecture:
    ::

        store.query("SELECT * FROM tasks WHERE id = ?", [task_id])
            │
            ├── lifecycle check        NotInitialized / AdapterClosed
            ├── cancel.raise_if_cancelled()
            ├── dialect.translate()    PlaceholderCountMismatch
            ├── adapter.connection()   PoolExhausted
            ├── adapter.run()          QueryFailed / Cancelled
            └── RowNormalizer          list[dict]

Examples:
    >>> with Store(DatabaseConfig(path="data/tasks.sqlite")) as store:
    ...     store.execute("INSERT INTO tags (id, name) VALUES (?, ?)", [tag_id, "bug"])
    ...     store.query("SELECT name FROM tags")
    [{'name': 'bug'}]

Guardrails:
    ❌ DON'T: ``if store.backend == "sqlite": sql = ...``
    ✅ DO: Write one ``?`` statement and let the dialect translate it

Tags:
    facade, store, transactions, cancellation, taskstore

Doc-Types:
    - API Reference
    - Architecture Documentation
"""

from __future__ import annotations

import json
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, TypeVar
from uuid import UUID

from taskstore.adapters import DatabaseAdapter, DatabaseConfig, StatementResult, create_adapter
from taskstore.cancellation import CancelToken
from taskstore.dialect import Dialect, TranslatedStatement
from taskstore.errors import (
    AdapterClosed,
    Cancelled,
    ConfigInvalid,
    NotInitialized,
    QueryFailed,
    StoreError,
    TransactionAborted,
)
from taskstore.logging import get_logger
from taskstore.reconciler import HISTORY_TABLE, ReconcilePlan, ReconcileReport, SchemaReconciler
from taskstore.schema import ExistingColumn, SemanticType, TableDescriptor
from taskstore.tables import TASKBOARD_TABLES

logger = get_logger(__name__)

T = TypeVar("T")


# =============================================================================
# Result normalisation
# =============================================================================


class RowNormalizer:
    """Convert driver values to semantic Python types by column name.

    A column name is normalised only when every declared table that has a
    column of that name agrees on its type; ambiguous names pass through.
    """

    def __init__(self, tables: Sequence[TableDescriptor]):
        types: dict[str, SemanticType | None] = {}
        for table in tables:
            for column in table.columns:
                if column.name in types and types[column.name] != column.type:
                    types[column.name] = None
                else:
                    types.setdefault(column.name, column.type)
        self._types = {name: t for name, t in types.items() if t is not None}

    def type_of(self, column: str) -> SemanticType | None:
        return self._types.get(column)

    def normalize(self, columns: list[str], rows: list[tuple[Any, ...]]) -> list[dict[str, Any]]:
        converters = [self._types.get(name) for name in columns]
        result = []
        for row in rows:
            result.append(
                {
                    name: value if semantic is None else convert_value(semantic, value)
                    for name, semantic, value in zip(columns, converters, row)
                }
            )
        return result


def convert_value(semantic: SemanticType, value: Any) -> Any:
    """Normalise one driver value; ``None`` stays ``None``.

    Values that cannot be interpreted (legacy rows with free-form text in a
    typed column) are returned unchanged.
    """
    if value is None:
        return None
    if semantic is SemanticType.TEXT:
        return value if isinstance(value, str) else str(value)
    if semantic is SemanticType.UUID:
        return str(value) if isinstance(value, UUID) else value
    if semantic is SemanticType.INTEGER:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (float, Decimal)):
            return int(value)
        return value
    if semantic is SemanticType.BOOLEAN:
        if isinstance(value, (int, Decimal)):
            return bool(value)
        if isinstance(value, str) and value.lower() in ("true", "false", "t", "f", "1", "0"):
            return value.lower() in ("true", "t", "1")
        return value
    if semantic is SemanticType.TIMESTAMP:
        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day)
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                return value
        return value
    if semantic is SemanticType.JSON:
        if isinstance(value, (bytes, bytearray)):
            value = value.decode("utf-8")
        if isinstance(value, str):
            try:
                return json.loads(value)
            except ValueError:
                return value
        return value
    return value


# =============================================================================
# Transaction handle
# =============================================================================


class Transaction:
    """
    Connection-bound handle passed to ``Store.transaction`` callbacks.

    Every statement issued through the handle runs on the same connection
    inside the same ``BEGIN``/``COMMIT``. Calling ``transaction`` on an active
    handle simply runs the callback inside the current transaction.
    """

    def __init__(self, store: Store, conn: Any, cancel: CancelToken | None = None):
        self._store = store
        self._conn = conn
        self._cancel = cancel
        self._active = False

    @property
    def in_transaction(self) -> bool:
        return self._active

    def query(
        self,
        statement: str,
        args: Sequence[Any] = (),
        *,
        cancel: CancelToken | None = None,
    ) -> list[dict[str, Any]]:
        result = self._run("query", statement, args, cancel)
        return self._store._normalizer.normalize(result.columns, result.rows)

    def query_one(
        self,
        statement: str,
        args: Sequence[Any] = (),
        *,
        cancel: CancelToken | None = None,
    ) -> dict[str, Any] | None:
        rows = self.query(statement, args, cancel=cancel)
        return rows[0] if rows else None

    def execute(
        self,
        statement: str,
        args: Sequence[Any] = (),
        *,
        cancel: CancelToken | None = None,
    ) -> int:
        result = self._run("execute", statement, args, cancel)
        return max(result.rowcount, 0)

    def transaction(self, fn: Callable[[Transaction], T]) -> T:
        if self._active:
            return fn(self)
        return self._store._run_transaction(self, fn)

    def abort(self, reason: str = "transaction aborted by caller") -> None:
        """Roll the enclosing transaction back; raises ``TransactionAborted``."""
        raise TransactionAborted(reason).with_context(operation="transaction")

    def _run(
        self,
        operation: str,
        statement: str,
        args: Sequence[Any],
        cancel: CancelToken | None,
    ) -> StatementResult:
        token = cancel or self._cancel
        if token is not None:
            token.raise_if_cancelled(operation)
        translated = self._store._translate(operation, statement, args)
        return self._store._execute(self._conn, translated, statement, operation, token)


# =============================================================================
# Store
# =============================================================================


class _State(str, Enum):
    NEW = "new"
    READY = "ready"
    FAILED = "failed"
    CLOSED = "closed"


class Store:
    """
    Backend-neutral storage façade.

    Args:
        config: Connection configuration; validated on construction.
        tables: Declared tables reconciled by ``initialize``.
        adapter_factory: Builds the adapter for a config (tests inject fakes).
    """

    def __init__(
        self,
        config: DatabaseConfig,
        tables: Sequence[TableDescriptor] = TASKBOARD_TABLES,
        *,
        adapter_factory: Callable[[DatabaseConfig], DatabaseAdapter] = create_adapter,
    ):
        self._config = config.validate()
        self._tables = tuple(tables)
        self._adapter_factory = adapter_factory
        self._adapter: DatabaseAdapter | None = None
        self._reconciler: SchemaReconciler | None = None
        self._normalizer = RowNormalizer([HISTORY_TABLE, *self._tables])
        self._state = _State.NEW
        self._lock = threading.RLock()
        self._local = threading.local()

    @classmethod
    def from_settings(cls, settings: Any = None, tables: Sequence[TableDescriptor] = TASKBOARD_TABLES) -> Store:
        """Build a store from ``StoreSettings`` (read from the environment if omitted)."""
        from taskstore.settings import load_settings

        settings = settings or load_settings()
        return cls(settings.to_config(), tables)

    # -- Properties ------------------------------------------------------

    @property
    def config(self) -> DatabaseConfig:
        return self._config

    @property
    def backend(self) -> str:
        return self._config.backend.value

    @property
    def tables(self) -> tuple[TableDescriptor, ...]:
        return self._tables

    @property
    def dialect(self) -> Dialect:
        if self._state is _State.CLOSED:
            raise AdapterClosed("Store has been closed")
        return self._ensure_adapter().dialect

    @property
    def is_ready(self) -> bool:
        return self._state is _State.READY

    @property
    def is_closed(self) -> bool:
        return self._state is _State.CLOSED

    # -- Lifecycle -------------------------------------------------------

    def initialize(self, config: DatabaseConfig | None = None) -> ReconcileReport:
        """Connect and reconcile the schema. A no-op on a ready store.

        Raises:
            ConfigInvalid: ``config`` differs from the one the ready store
                was built with.
            AdapterClosed: The store was closed or a previous reconcile
                failed.
            SchemaReconcileError: Reconciliation failed; the store is
                unusable afterwards.
        """
        with self._lock:
            if config is not None and config != self._config:
                if self._state is not _State.NEW:
                    raise ConfigInvalid(
                        "Store is already initialized with a different configuration; "
                        "close it and build a new one",
                        key="config",
                    )
                self._config = config.validate()
                if self._adapter is not None:
                    self._adapter.disconnect()
                    self._adapter = None

            if self._state is _State.READY:
                return ReconcileReport()
            if self._state in (_State.CLOSED, _State.FAILED):
                raise AdapterClosed(f"Store is {self._state.value}; build a new one")

            adapter = self._ensure_adapter()
            try:
                adapter.connect()
            except StoreError:
                adapter.disconnect()
                self._adapter = None
                raise

            reconciler = SchemaReconciler(adapter.dialect, self._tables)
            try:
                with adapter.connection() as conn:
                    report = reconciler.apply(Transaction(self, conn))
            except BaseException:
                self._state = _State.FAILED
                adapter.disconnect()
                raise

            self._reconciler = reconciler
            self._state = _State.READY
            logger.info(
                "store.initialized",
                backend=self.backend,
                tables=len(reconciler.tables),
                statements=len(report.statements),
            )
            return report

    def plan(self) -> ReconcilePlan:
        """Dry run of ``initialize``'s reconciliation; writes nothing."""
        with self._lock:
            if self._state in (_State.CLOSED, _State.FAILED):
                raise AdapterClosed(f"Store is {self._state.value}")
            adapter = self._ensure_adapter()
            adapter.connect()
            reconciler = self._reconciler or SchemaReconciler(adapter.dialect, self._tables)
        with adapter.connection() as conn:
            return reconciler.plan(Transaction(self, conn))

    def close(self) -> None:
        """Disconnect. Idempotent; afterwards every operation raises ``AdapterClosed``."""
        with self._lock:
            if self._state is _State.CLOSED:
                return
            self._state = _State.CLOSED
            adapter, self._adapter = self._adapter, None
        if adapter is not None:
            adapter.disconnect()
        logger.info("store.closed", backend=self.backend)

    def __enter__(self) -> Store:
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Store(backend={self.backend!r}, state={self._state.value!r})"

    # -- Public operations -----------------------------------------------

    def query(
        self,
        statement: str,
        args: Sequence[Any] = (),
        *,
        cancel: CancelToken | None = None,
    ) -> list[dict[str, Any]]:
        """Run a statement and return its rows as dicts, column order preserved."""
        result = self._perform("query", statement, args, cancel)
        return self._normalizer.normalize(result.columns, result.rows)

    def query_one(
        self,
        statement: str,
        args: Sequence[Any] = (),
        *,
        cancel: CancelToken | None = None,
    ) -> dict[str, Any] | None:
        """First row of ``query`` or ``None``."""
        rows = self.query(statement, args, cancel=cancel)
        return rows[0] if rows else None

    def execute(
        self,
        statement: str,
        args: Sequence[Any] = (),
        *,
        cancel: CancelToken | None = None,
    ) -> int:
        """Run a statement and return the number of affected rows."""
        result = self._perform("execute", statement, args, cancel)
        return max(result.rowcount, 0)

    def transaction(self, fn: Callable[[Transaction], T], *, cancel: CancelToken | None = None) -> T:
        """Run ``fn(tx)`` inside one transaction on one connection.

        Commits when ``fn`` returns, rolls back and re-raises when it raises
        (including ``tx.abort()``). Called again from inside ``fn`` on the
        same thread, it joins the open transaction.
        """
        self._require_ready("transaction")
        if cancel is not None:
            cancel.raise_if_cancelled("transaction")
        active = self._active_transaction()
        if active is not None:
            return fn(active)
        adapter = self._require_adapter()
        with adapter.connection(cancel=cancel) as conn:
            return self._run_transaction(Transaction(self, conn, cancel), fn)

    def list_tables(self) -> list[str]:
        with self._session("list_tables") as session:
            rows = session.query(self.dialect.list_tables_query())
        return [row["name"] for row in rows]

    def describe_table(self, name: str) -> list[ExistingColumn]:
        """Introspected columns of ``name``; empty when the table does not exist."""
        with self._session("describe_table") as session:
            assert self._reconciler is not None
            return self._reconciler.inspect(session, name).columns

    def history(self) -> list[dict[str, Any]]:
        """Schema changes recorded by reconciliation, oldest first."""
        with self._session("history") as session:
            assert self._reconciler is not None
            return self._reconciler.history(session)

    def ping(self) -> bool:
        with self._session("ping") as session:
            return bool(session.query("SELECT 1 AS ok"))

    def stats(self) -> dict[str, Any]:
        data: dict[str, Any] = {"state": self._state.value, "backend": self.backend}
        if self._adapter is not None:
            data.update(self._adapter.stats())
        return data

    # -- Internals -------------------------------------------------------

    def _ensure_adapter(self) -> DatabaseAdapter:
        if self._adapter is None:
            self._adapter = self._adapter_factory(self._config)
        return self._adapter

    def _require_ready(self, operation: str) -> None:
        if self._state is _State.CLOSED:
            raise AdapterClosed("Store has been closed").with_context(operation=operation)
        if self._state is not _State.READY:
            raise NotInitialized(
                "Store is not initialized; call initialize() first"
            ).with_context(operation=operation)

    def _require_adapter(self) -> DatabaseAdapter:
        adapter = self._adapter
        if adapter is None:
            raise AdapterClosed("Store has been closed")
        return adapter

    def _active_transaction(self) -> Transaction | None:
        tx = getattr(self._local, "tx", None)
        if tx is not None and tx.in_transaction:
            return tx
        return None

    @contextmanager
    def _session(self, operation: str) -> Iterator[Transaction]:
        self._require_ready(operation)
        active = self._active_transaction()
        if active is not None:
            yield active
            return
        with self._require_adapter().connection() as conn:
            yield Transaction(self, conn)

    def _translate(self, operation: str, statement: str, args: Sequence[Any]) -> TranslatedStatement:
        try:
            return self.dialect.translate(statement, args)
        except StoreError as e:
            raise e.with_context(operation=operation, backend=self.backend)

    def _perform(
        self,
        operation: str,
        statement: str,
        args: Sequence[Any],
        cancel: CancelToken | None,
    ) -> StatementResult:
        self._require_ready(operation)
        if cancel is not None:
            cancel.raise_if_cancelled(operation)
        translated = self._translate(operation, statement, args)
        active = self._active_transaction()
        if active is not None:
            return self._execute(active._conn, translated, statement, operation, cancel or active._cancel)
        with self._require_adapter().connection(cancel=cancel) as conn:
            return self._execute(conn, translated, statement, operation, cancel)

    def _execute(
        self,
        conn: Any,
        translated: TranslatedStatement,
        statement: str,
        operation: str,
        cancel: CancelToken | None,
    ) -> StatementResult:
        adapter = self._require_adapter()
        try:
            if cancel is None:
                return adapter.run(conn, translated)
            with cancel.watch(lambda: adapter.interrupt(conn)):
                cancel.raise_if_cancelled(operation)
                result = adapter.run(conn, translated)
        except adapter.driver_error as e:
            if cancel is not None and cancel.cancelled:
                raise self._cancelled(operation, statement, cancel, cause=e) from e
            raise QueryFailed(
                f"{operation} failed: {e}",
                cause=e,
            ).with_context(operation=operation, statement=statement, backend=self.backend) from e
        # interrupt() is a no-op when it lands before the statement starts
        if cancel.cancelled:
            raise self._cancelled(operation, statement, cancel)
        return result

    def _cancelled(
        self,
        operation: str,
        statement: str,
        cancel: CancelToken,
        cause: Exception | None = None,
    ) -> Cancelled:
        logger.info(
            "query.cancelled",
            operation=operation,
            backend=self.backend,
            reason=cancel.reason,
        )
        return Cancelled(
            f"{operation} cancelled: {cancel.reason}",
            cause=cause,
        ).with_context(operation=operation, statement=statement, backend=self.backend)

    def _run_transaction(self, tx: Transaction, fn: Callable[[Transaction], T]) -> T:
        begin = TranslatedStatement(self.dialect.begin_statement(), (), 0)
        commit = TranslatedStatement("COMMIT", (), 0)
        self._execute(tx._conn, begin, begin.sql, "transaction", tx._cancel)

        previous = getattr(self._local, "tx", None)
        self._local.tx = tx
        tx._active = True
        try:
            result = fn(tx)
            self._execute(tx._conn, commit, commit.sql, "transaction", None)
        except BaseException as exc:
            self._rollback(tx, exc)
            raise
        finally:
            tx._active = False
            self._local.tx = previous
        return result

    def _rollback(self, tx: Transaction, exc: BaseException) -> None:
        adapter = self._require_adapter()
        try:
            adapter.rollback(tx._conn)
        except adapter.driver_error as e:
            logger.warning(
                "transaction.rollback_failed",
                backend=self.backend,
                error=str(e),
                original=type(exc).__name__,
            )
            return
        logger.info(
            "transaction.rolled_back",
            backend=self.backend,
            reason=type(exc).__name__,
        )


__all__ = [
    "RowNormalizer",
    "convert_value",
    "Transaction",
    "Store",
]
