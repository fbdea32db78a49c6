"""Additive, idempotent schema reconciliation.

Compares the declared ``TableDescriptor`` set with what the database actually
has and issues only the DDL needed to close the gap: missing tables are
created, missing columns and indexes are added. Nothing is ever dropped,
renamed or narrowed.

Manifesto:
    Databases in the field were created by different versions of the
    application and patched by hand. Startup must bring any of them up to
    the declared shape without losing a row, and running it twice must be a
    no-op.

    - **Additive only:** ``CREATE TABLE``, ``ADD COLUMN``, ``CREATE INDEX``
    - **Idempotent:** a second run emits zero DDL
    - **Per-table transactions:** one bad table never half-applies
    - **Auditable:** every change lands in ``_schema_history``

Architecture:
    ::

        SchemaReconciler(dialect, tables)
              │
              ├── order_tables()        referenced tables first
              │
              ├── plan(session)         introspect, diff, no writes
              │     └── TablePlan       steps + deferred + warnings
              │
              └── apply(session)        one transaction per table
                    ├── CREATE TABLE / ALTER TABLE / CREATE INDEX
                    ├── INSERT INTO _schema_history
                    └── ReconcileReport

Examples:
    >>> reconciler = SchemaReconciler(get_dialect("sqlite"), TASKBOARD_TABLES)
    >>> report = reconciler.apply(session)
    >>> report.created_tables
    ['_schema_history', 'users', 'sessions', ...]

Tags:
    schema, migrations, reconciliation, ddl, taskstore

Doc-Types:
    - API Reference
    - Architecture Documentation
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, TypeVar

from taskstore.dialect import Dialect
from taskstore.errors import SchemaReconcileError, StoreError
from taskstore.logging import get_logger
from taskstore.schema import (
    ColumnDescriptor,
    MigrationRecord,
    SemanticType,
    TableDescriptor,
    TableInfo,
)

logger = get_logger(__name__)

T = TypeVar("T")

HISTORY_TABLE = TableDescriptor(
    "_schema_history",
    (
        ColumnDescriptor("id", SemanticType.UUID, nullable=False, primary_key=True),
        ColumnDescriptor("table_name", SemanticType.TEXT, nullable=False),
        ColumnDescriptor("column_name", SemanticType.TEXT),
        ColumnDescriptor("action", SemanticType.TEXT, nullable=False),
        ColumnDescriptor("applied_at", SemanticType.TIMESTAMP, nullable=False),
    ),
)


class Executor(Protocol):
    """What the reconciler needs from a connection-bound session."""

    def query(self, statement: str, args: Sequence[Any] = ()) -> list[dict[str, Any]]: ...

    def execute(self, statement: str, args: Sequence[Any] = ()) -> int: ...

    def transaction(self, fn: Callable[[Any], T]) -> T: ...


@dataclass
class Step:
    """One DDL statement and the history entry it produces."""

    statement: str
    action: str
    column: str | None = None


@dataclass
class TablePlan:
    """Everything the reconciler would do to one table."""

    table: str
    create: bool = False
    steps: list[Step] = field(default_factory=list)
    migrations: list[MigrationRecord] = field(default_factory=list)
    indexes: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    mismatches: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def statements(self) -> list[str]:
        return [s.statement for s in self.steps]


@dataclass
class ReconcilePlan:
    """Dry-run result: the per-table plans in execution order."""

    tables: list[TablePlan] = field(default_factory=list)

    @property
    def statements(self) -> list[str]:
        return [stmt for plan in self.tables for stmt in plan.statements]

    @property
    def is_empty(self) -> bool:
        return not self.statements

    def to_dict(self) -> dict[str, Any]:
        return {
            "tables": [
                {
                    "table": p.table,
                    "create": p.create,
                    "add_columns": [m.column_name for m in p.migrations],
                    "indexes": p.indexes,
                    "deferred": p.deferred,
                    "warnings": p.mismatches + p.warnings,
                    "statements": p.statements,
                }
                for p in self.tables
                if p.steps or p.mismatches or p.warnings
            ],
        }


@dataclass
class ReconcileReport:
    """Result of ``SchemaReconciler.apply``."""

    created_tables: list[str] = field(default_factory=list)
    added_columns: list[MigrationRecord] = field(default_factory=list)
    created_indexes: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    statements: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.statements)

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_tables": list(self.created_tables),
            "added_columns": [f"{m.table}.{m.column_name}" for m in self.added_columns],
            "created_indexes": list(self.created_indexes),
            "deferred": list(self.deferred),
            "warnings": list(self.warnings),
            "statements": list(self.statements),
        }


def order_tables(tables: Sequence[TableDescriptor]) -> list[TableDescriptor]:
    """Order tables so every referenced table comes before its referrers.

    References to tables outside ``tables`` are ignored. Declaration order
    is kept wherever dependencies allow.

    Raises:
        SchemaReconcileError: The references form a cycle.
    """
    by_name = {t.name: t for t in tables}
    ordered: list[TableDescriptor] = []
    placed: set[str] = set()
    remaining = list(tables)
    while remaining:
        for table in remaining:
            deps = {name for name in table.references if name in by_name}
            if deps <= placed:
                ordered.append(table)
                placed.add(table.name)
                remaining.remove(table)
                break
        else:
            names = ", ".join(t.name for t in remaining)
            raise SchemaReconcileError(
                f"Foreign-key cycle between tables: {names}",
                table=remaining[0].name,
            )
    return ordered


class SchemaReconciler:
    """Brings a database up to a declared set of tables.

    Args:
        dialect: Dialect of the target backend.
        tables: Declared tables; ``_schema_history`` is always added.
    """

    def __init__(self, dialect: Dialect, tables: Sequence[TableDescriptor]):
        self._dialect = dialect
        declared = [t for t in tables if t.name != HISTORY_TABLE.name]
        self._tables = order_tables([HISTORY_TABLE, *declared])

    @property
    def tables(self) -> list[TableDescriptor]:
        return list(self._tables)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def inspect(self, session: Executor, name: str) -> TableInfo:
        """Introspect one table: existence, columns, index names."""
        d = self._dialect
        if not session.query(d.table_exists_query(), [name]):
            return TableInfo(name=name, exists=False)
        sql, args = d.columns_query(name)
        columns = d.parse_columns(session.query(sql, args))
        indexes = {row["name"] for row in session.query(d.indexes_query(), [name])}
        return TableInfo(name=name, exists=True, columns=columns, indexes=indexes)

    def _may_have_rows(self, session: Executor, name: str) -> bool:
        rows = session.query(f"SELECT 1 AS present FROM {self._dialect.quote_identifier(name)} LIMIT 1")
        return bool(rows)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan_table(self, session: Executor, table: TableDescriptor) -> TablePlan:
        """Diff one declared table against the database."""
        d = self._dialect
        info = self.inspect(session, table.name)
        plan = TablePlan(table=table.name)

        if not info.exists:
            plan.create = True
            plan.steps.append(Step(d.create_table_ddl(table), "create_table"))
            for index in table.indexes:
                plan.steps.append(Step(d.create_index_ddl(table.name, index), "create_index", index.name))
                plan.indexes.append(index.name)
            return plan

        existing = {c.name: c for c in info.columns}
        missing: list[ColumnDescriptor] = []
        for column in table.columns:
            found = existing.get(column.name)
            if found is None:
                missing.append(column)
            elif not d.native_matches(column.type, found.native_type):
                plan.mismatches.append(
                    f"{table.name}.{column.name}: declared {column.type.value}, "
                    f"found {found.native_type}"
                )

        if missing:
            alter = d.add_columns_ddl(table.name, missing, self._may_have_rows(session, table.name))
            plan.migrations = [MigrationRecord(table.name, c) for c in missing]
            if len(alter.statements) == 1 and len(missing) > 1:
                plan.steps.append(Step(alter.statements[0], "add_columns", ",".join(c.name for c in missing)))
            else:
                names = iter(c.name for c in missing)
                current: str | None = None
                for stmt in alter.statements:
                    if "ADD COLUMN" in stmt:
                        current = next(names)
                        plan.steps.append(Step(stmt, "add_column", current))
                    else:
                        plan.steps.append(Step(stmt, "create_index", current))
            plan.deferred = [f"{table.name}.{name}" for name in alter.deferred_not_null]
            for name in alter.dropped_defaults:
                plan.warnings.append(f"{table.name}.{name}: default not applied to existing rows")
            for item in alter.dropped_constraints:
                plan.warnings.append(f"{table.name}.{item} not added to existing table")

        for index in table.indexes:
            if index.name not in info.indexes:
                plan.steps.append(Step(d.create_index_ddl(table.name, index), "create_index", index.name))
                plan.indexes.append(index.name)

        return plan

    def plan(self, session: Executor) -> ReconcilePlan:
        """Dry run: what ``apply`` would do right now."""
        result = ReconcilePlan()
        for table in self._tables:
            try:
                result.tables.append(self.plan_table(session, table))
            except StoreError as e:
                raise SchemaReconcileError(
                    f"Inspecting table {table.name!r} failed: {e}",
                    table=table.name,
                    cause=e,
                ) from e
        return result

    # ------------------------------------------------------------------
    # Applying
    # ------------------------------------------------------------------

    def apply(self, session: Executor) -> ReconcileReport:
        """Reconcile every declared table, one transaction per table.

        Raises:
            SchemaReconcileError: DDL for a table failed; that table's
                transaction is rolled back and later tables are not touched.
        """
        report = ReconcileReport()
        for table in self._tables:
            try:
                plan = self.plan_table(session, table)
            except StoreError as e:
                raise SchemaReconcileError(
                    f"Inspecting table {table.name!r} failed: {e}",
                    table=table.name,
                    cause=e,
                ) from e

            for mismatch in plan.mismatches:
                logger.warning("schema.type_mismatch", table=table.name, detail=mismatch)
            for warning in plan.warnings:
                logger.warning("schema.relaxed", table=table.name, detail=warning)
            report.warnings.extend(plan.mismatches + plan.warnings)

            if not plan.steps:
                continue

            failed: list[Step] = []
            try:
                session.transaction(lambda tx: self._apply_steps(tx, plan, failed))
            except StoreError as e:
                step = failed[-1] if failed else None
                column = step.column if step is not None and step.action != "create_index" else None
                logger.error(
                    "schema.reconcile_failed",
                    table=table.name,
                    column=column,
                    statement=step.statement if step else None,
                    error=str(e.cause or e),
                )
                raise SchemaReconcileError(
                    f"Reconciling table {table.name!r} failed: {e.cause or e}",
                    table=table.name,
                    column=column,
                    cause=e,
                ) from e

            self._record(report, plan)

        logger.info(
            "schema.reconciled",
            tables=len(self._tables),
            created=len(report.created_tables),
            added_columns=len(report.added_columns),
            statements=len(report.statements),
        )
        return report

    def _apply_steps(self, tx: Executor, plan: TablePlan, failed: list[Step]) -> None:
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        insert = (
            f"INSERT INTO {self._dialect.quote_identifier(HISTORY_TABLE.name)} "
            "(id, table_name, column_name, action, applied_at) VALUES (?, ?, ?, ?, ?)"
        )
        for step in plan.steps:
            failed.append(step)
            tx.execute(step.statement)
            failed.pop()
            if step.action == "add_columns":
                for name in (step.column or "").split(","):
                    tx.execute(insert, [str(uuid.uuid4()), plan.table, name, "add_column", now])
            else:
                tx.execute(insert, [str(uuid.uuid4()), plan.table, step.column, step.action, now])
        for qualified in plan.deferred:
            column = qualified.split(".", 1)[1]
            tx.execute(insert, [str(uuid.uuid4()), plan.table, column, "defer_not_null", now])

    def _record(self, report: ReconcileReport, plan: TablePlan) -> None:
        report.statements.extend(plan.statements)
        report.created_indexes.extend(plan.indexes)
        report.deferred.extend(plan.deferred)
        if plan.create:
            report.created_tables.append(plan.table)
            logger.info("schema.table_created", table=plan.table, indexes=len(plan.indexes))
        for record in plan.migrations:
            report.added_columns.append(record)
            logger.info(
                "schema.column_added",
                table=record.table,
                column=record.column_name,
                type=record.column.type.value,
            )
        for qualified in plan.deferred:
            table, column = qualified.split(".", 1)
            logger.warning("schema.not_null_deferred", table=table, column=column)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def history(self, session: Executor) -> list[dict[str, Any]]:
        """Applied changes, oldest first."""
        if not session.query(self._dialect.table_exists_query(), [HISTORY_TABLE.name]):
            return []
        return session.query(
            "SELECT table_name, column_name, action, applied_at "
            f"FROM {self._dialect.quote_identifier(HISTORY_TABLE.name)} "
            "ORDER BY applied_at, table_name"
        )


__all__ = [
    "HISTORY_TABLE",
    "Executor",
    "Step",
    "TablePlan",
    "ReconcilePlan",
    "ReconcileReport",
    "order_tables",
    "SchemaReconciler",
]
