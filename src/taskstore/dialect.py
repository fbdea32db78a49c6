"""SQL dialect abstraction: placeholders, argument adaptation, DDL, introspection.

Callers write one statement with positional ``?`` placeholders. The dialect
rewrites it for the backend and adapts the bound arguments, and it renders
table descriptors to DDL and introspection queries.

Manifesto:
    Domain code must run unchanged on the embedded SQLite file and on a
    PostgreSQL server. Without a dialect layer, SQL fragments are littered
    with backend-specific syntax that breaks when switching backends.

    - **One statement:** ``?`` everywhere, rewritten per backend
    - **Lexically aware:** ``?`` inside string literals, quoted identifiers
      and comments is left alone
    - **Fail before I/O:** placeholder/argument count mismatch is detected
      before a connection is touched
    - **Zero coupling:** no driver import here; the psycopg2 adapter hands
      in its ``Json`` wrapper

Architecture::

    ┌──────────────────────────────────────────────────────────────────┐
    │  "SELECT * FROM tasks WHERE id = ? AND title <> 'why?'"          │
    └──────────────────────────────────────────────────────────────────┘
                              │ translate(statement, args)
               ┌──────────────┴───────────────┬───────────────────┐
               ▼                              ▼                   ▼
    ┌────────────────────┐  ┌────────────────────────┐  ┌────────────────────┐
    │ SQLite (qmark)     │  │ PostgreSQL (numeric)   │  │ PostgreSQL (format)│
    │ ... id = ?         │  │ ... id = $1            │  │ ... id = %s        │
    │ bool→0/1, dt→ISO   │  │ dict/list→JSON         │  │ dict/list→Json()   │
    └────────────────────┘  └────────────────────────┘  └────────────────────┘

    Type mapping (DDL):

        semantic    SQLite      PostgreSQL
        text        TEXT        TEXT
        integer     INTEGER     INTEGER
        boolean     INTEGER     BOOLEAN
        timestamp   TEXT        TIMESTAMP
        uuid        TEXT        UUID
        json        TEXT        JSONB

Examples:
    >>> from taskstore.dialect import get_dialect
    >>> d = get_dialect("postgresql")
    >>> d.translate("SELECT * FROM tasks WHERE id = ? AND board_id = ?", ["t1", "b1"]).sql
    'SELECT * FROM tasks WHERE id = $1 AND board_id = $2'
    >>> get_dialect("sqlite").native_type(SemanticType.BOOLEAN)
    'INTEGER'

Guardrails:
    ❌ DON'T: Build ``$1``/``%s`` placeholders by hand in domain code
    ✅ DO: Write ``?`` and let ``translate`` rewrite it

Tags:
    dialect, sql, placeholders, ddl, introspection, portability, taskstore

Doc-Types:
    - API Reference
    - Architecture Documentation
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from taskstore.errors import PlaceholderCountMismatch
from taskstore.schema import (
    NOW,
    ColumnDescriptor,
    ExistingColumn,
    IndexDescriptor,
    SemanticType,
    TableDescriptor,
)


class Paramstyle(str, Enum):
    """DB-API paramstyles a dialect can emit."""

    QMARK = "qmark"  # ?
    NUMERIC = "numeric"  # $1, $2
    FORMAT = "format"  # %s


@dataclass(frozen=True)
class TranslatedStatement:
    """A statement rewritten for one backend, with its adapted arguments."""

    sql: str
    args: tuple[Any, ...]
    placeholder_count: int


@dataclass
class AlterPlan:
    """DDL for adding columns to an existing table, plus what had to be relaxed."""

    statements: list[str] = field(default_factory=list)
    deferred_not_null: list[str] = field(default_factory=list)
    dropped_defaults: list[str] = field(default_factory=list)
    dropped_constraints: list[str] = field(default_factory=list)


# =========================================================================
# Lexical scanner
# =========================================================================

_DOLLAR_TAG = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)?\$")


def _scan(sql: str) -> Iterator[tuple[str, str]]:
    """Split ``sql`` into ``("code" | "quoted" | "param", text)`` segments.

    Quoted segments cover string literals (``'...'`` with ``''`` escapes),
    quoted identifiers (``"..."``), ``--`` and ``/* */`` comments and
    PostgreSQL dollar-quoted bodies. An unterminated quote or comment runs to
    the end of the statement.
    """
    i = 0
    start = 0
    n = len(sql)
    while i < n:
        ch = sql[i]
        end = -1
        if ch in ("'", '"'):
            j = i + 1
            while j < n:
                if sql[j] == ch:
                    if j + 1 < n and sql[j + 1] == ch:
                        j += 2
                        continue
                    break
                j += 1
            end = min(j + 1, n)
        elif ch == "-" and sql.startswith("--", i):
            j = sql.find("\n", i)
            end = n if j == -1 else j + 1
        elif ch == "/" and sql.startswith("/*", i):
            j = sql.find("*/", i + 2)
            end = n if j == -1 else j + 2
        elif ch == "$":
            match = _DOLLAR_TAG.match(sql, i)
            if match:
                tag = match.group(0)
                j = sql.find(tag, match.end())
                end = n if j == -1 else j + len(tag)
        elif ch == "?":
            if start < i:
                yield "code", sql[start:i]
            yield "param", "?"
            i += 1
            start = i
            continue

        if end == -1:
            i += 1
            continue
        if start < i:
            yield "code", sql[start:i]
        yield "quoted", sql[i:end]
        i = end
        start = i

    if start < n:
        yield "code", sql[start:]


def count_placeholders(sql: str) -> int:
    """Number of ``?`` placeholders outside literals, identifiers and comments."""
    return sum(1 for kind, _ in _scan(sql) if kind == "param")


def _sql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


# =========================================================================
# Protocol
# =========================================================================


@runtime_checkable
class Dialect(Protocol):
    """SQL dialect contract.

    Every method returns a SQL fragment, a full statement, or adapted
    values for one backend.
    """

    @property
    def name(self) -> str: ...

    @property
    def paramstyle(self) -> Paramstyle: ...

    def placeholder(self, index: int) -> str: ...

    def placeholders(self, count: int) -> str: ...

    def translate(self, statement: str, args: Sequence[Any] = ()) -> TranslatedStatement: ...

    def adapt_arg(self, value: Any) -> Any: ...

    def now(self) -> str: ...

    def begin_statement(self) -> str: ...

    def quote_identifier(self, name: str) -> str: ...

    def native_type(self, semantic: SemanticType) -> str: ...

    def native_matches(self, semantic: SemanticType, native: str) -> bool: ...

    def create_table_ddl(self, table: TableDescriptor) -> str: ...

    def create_index_ddl(self, table: str, index: IndexDescriptor) -> str: ...

    def add_columns_ddl(
        self,
        table: str,
        columns: Sequence[ColumnDescriptor],
        table_may_have_rows: bool,
    ) -> AlterPlan: ...

    def table_exists_query(self) -> str: ...

    def list_tables_query(self) -> str: ...

    def columns_query(self, table: str) -> tuple[str, tuple[Any, ...]]: ...

    def parse_columns(self, rows: Sequence[dict[str, Any]]) -> list[ExistingColumn]: ...

    def indexes_query(self) -> str: ...


# =========================================================================
# Shared implementation
# =========================================================================


class _SqlDialect:
    """Rendering and translation logic common to both backends."""

    _name = ""
    _types: dict[SemanticType, str] = {}
    _aliases: dict[SemanticType, frozenset[str]] = {}

    def __init__(self, paramstyle: Paramstyle):
        self._paramstyle = paramstyle

    @property
    def name(self) -> str:
        return self._name

    @property
    def paramstyle(self) -> Paramstyle:
        return self._paramstyle

    def __repr__(self) -> str:
        return f"{type(self).__name__}(paramstyle={self._paramstyle.value!r})"

    # -- Placeholders ------------------------------------------------------

    def placeholder(self, index: int) -> str:
        """Placeholder for the 0-based ``index``-th argument."""
        if self._paramstyle is Paramstyle.NUMERIC:
            return f"${index + 1}"
        if self._paramstyle is Paramstyle.FORMAT:
            return "%s"
        return "?"

    def placeholders(self, count: int) -> str:
        return ", ".join(self.placeholder(i) for i in range(count))

    def translate(self, statement: str, args: Sequence[Any] = ()) -> TranslatedStatement:
        """Rewrite ``?`` placeholders and adapt ``args`` for this backend.

        Raises:
            PlaceholderCountMismatch: ``len(args)`` differs from the number of
                placeholders in ``statement``.
        """
        if isinstance(args, (str, bytes)):
            raise TypeError("args must be a sequence of values, not a string")
        args = tuple(args)
        segments = list(_scan(statement))
        expected = sum(1 for kind, _ in segments if kind == "param")
        if expected != len(args):
            raise PlaceholderCountMismatch(expected, len(args), statement=statement)

        escape_percent = self._paramstyle is Paramstyle.FORMAT and expected > 0
        parts: list[str] = []
        index = 0
        for kind, text in segments:
            if kind == "param":
                parts.append(self.placeholder(index))
                index += 1
            elif escape_percent:
                parts.append(text.replace("%", "%%"))
            else:
                parts.append(text)

        return TranslatedStatement(
            sql="".join(parts),
            args=tuple(self.adapt_arg(a) for a in args),
            placeholder_count=expected,
        )

    def adapt_arg(self, value: Any) -> Any:
        if isinstance(value, UUID):
            return str(value)
        return value

    # -- Fragments ---------------------------------------------------------

    def now(self) -> str:
        raise NotImplementedError

    def begin_statement(self) -> str:
        return "BEGIN"

    def quote_identifier(self, name: str) -> str:
        return '"' + name.replace('"', '""') + '"'

    # -- Types -------------------------------------------------------------

    def native_type(self, semantic: SemanticType) -> str:
        return self._types[semantic]

    def native_matches(self, semantic: SemanticType, native: str) -> bool:
        """True when an introspected native type is acceptable for ``semantic``."""
        normalised = re.sub(r"\(.*\)", "", native or "").strip().lower()
        if not normalised:
            return True
        accepted = self._aliases.get(semantic, frozenset()) | {self._types[semantic].lower()}
        return normalised in accepted

    # -- DDL ---------------------------------------------------------------

    def render_default(self, column: ColumnDescriptor) -> str | None:
        """SQL text of the column default, or None when there is none."""
        value = column.default
        if value is None:
            return None
        if value is NOW:
            return self.timestamp_default_now()
        if isinstance(value, bool):
            return self.boolean_literal(value)
        if isinstance(value, (int, float)):
            return str(value)
        if isinstance(value, (dict, list)):
            return self.json_literal(value)
        return _sql_literal(str(value))

    def timestamp_default_now(self) -> str:
        raise NotImplementedError

    def boolean_literal(self, value: bool) -> str:
        raise NotImplementedError

    def json_literal(self, value: Any) -> str:
        return _sql_literal(json.dumps(value))

    def column_definition(
        self,
        column: ColumnDescriptor,
        *,
        not_null: bool | None = None,
        default: str | None = None,
        include_default: bool = True,
        unique: bool | None = None,
        primary_key: bool | None = None,
    ) -> str:
        """Render ``"name" TYPE [PRIMARY KEY] [NOT NULL] [DEFAULT ..] [UNIQUE] [REFERENCES ..]``."""
        primary_key = column.primary_key if primary_key is None else primary_key
        not_null = (not column.nullable) if not_null is None else not_null
        unique = column.unique if unique is None else unique

        parts = [self.quote_identifier(column.name), self.native_type(column.type)]
        if primary_key:
            parts.append("PRIMARY KEY")
        if not_null and not primary_key:
            parts.append("NOT NULL")
        if include_default:
            rendered = default if default is not None else self.render_default(column)
            if rendered is not None:
                parts.append(f"DEFAULT {rendered}")
        if unique and not primary_key:
            parts.append("UNIQUE")
        if column.references is not None:
            fk = column.references
            ref = f"REFERENCES {self.quote_identifier(fk.table)}({self.quote_identifier(fk.column)})"
            if fk.on_delete:
                ref += f" ON DELETE {fk.on_delete}"
            parts.append(ref)
        return " ".join(parts)

    def create_table_ddl(self, table: TableDescriptor) -> str:
        lines = [self.column_definition(c) for c in table.columns]
        for group in table.unique_together:
            cols = ", ".join(self.quote_identifier(c) for c in group)
            lines.append(f"UNIQUE ({cols})")
        body = ",\n    ".join(lines)
        return f"CREATE TABLE IF NOT EXISTS {self.quote_identifier(table.name)} (\n    {body}\n)"

    def create_index_ddl(self, table: str, index: IndexDescriptor) -> str:
        kind = "UNIQUE INDEX" if index.unique else "INDEX"
        cols = ", ".join(self.quote_identifier(c) for c in index.columns)
        return (
            f"CREATE {kind} IF NOT EXISTS {self.quote_identifier(index.name)} "
            f"ON {self.quote_identifier(table)} ({cols})"
        )

    def add_columns_ddl(
        self,
        table: str,
        columns: Sequence[ColumnDescriptor],
        table_may_have_rows: bool,
    ) -> AlterPlan:
        raise NotImplementedError

    def _must_defer_not_null(self, column: ColumnDescriptor, table_may_have_rows: bool) -> bool:
        return column.required and table_may_have_rows and not column.has_constant_default

    # -- Introspection -----------------------------------------------------

    def table_exists_query(self) -> str:
        raise NotImplementedError

    def list_tables_query(self) -> str:
        raise NotImplementedError

    def columns_query(self, table: str) -> tuple[str, tuple[Any, ...]]:
        raise NotImplementedError

    def parse_columns(self, rows: Sequence[dict[str, Any]]) -> list[ExistingColumn]:
        raise NotImplementedError

    def indexes_query(self) -> str:
        raise NotImplementedError


# =========================================================================
# Concrete Dialect Implementations
# =========================================================================


class SQLiteDialect(_SqlDialect):
    """SQLite dialect: ``?`` placeholders, ``datetime('now')``, ISO-8601 text timestamps."""

    _name = "sqlite"
    _types = {
        SemanticType.TEXT: "TEXT",
        SemanticType.INTEGER: "INTEGER",
        SemanticType.BOOLEAN: "INTEGER",
        SemanticType.TIMESTAMP: "TEXT",
        SemanticType.UUID: "TEXT",
        SemanticType.JSON: "TEXT",
    }
    _aliases = {
        SemanticType.TEXT: frozenset({"varchar", "char", "clob", "character varying", "string"}),
        SemanticType.INTEGER: frozenset({"int", "bigint", "smallint"}),
        SemanticType.BOOLEAN: frozenset({"boolean", "bool", "int"}),
        SemanticType.TIMESTAMP: frozenset({"datetime", "timestamp", "date"}),
        SemanticType.UUID: frozenset({"varchar", "uuid", "char"}),
        SemanticType.JSON: frozenset({"json", "jsonb", "varchar"}),
    }

    def __init__(self, paramstyle: Paramstyle = Paramstyle.QMARK):
        super().__init__(paramstyle)

    def adapt_arg(self, value: Any) -> Any:
        if isinstance(value, bool):
            return 1 if value else 0
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return super().adapt_arg(value)

    def now(self) -> str:
        return "datetime('now')"

    def begin_statement(self) -> str:
        return "BEGIN IMMEDIATE"

    def timestamp_default_now(self) -> str:
        return "(datetime('now'))"

    def boolean_literal(self, value: bool) -> str:
        return "1" if value else "0"

    def add_columns_ddl(
        self,
        table: str,
        columns: Sequence[ColumnDescriptor],
        table_may_have_rows: bool,
    ) -> AlterPlan:
        """One ``ALTER TABLE ... ADD COLUMN`` per column.

        SQLite refuses non-constant defaults, ``PRIMARY KEY`` and ``UNIQUE`` on
        ``ADD COLUMN``, and refuses ``NOT NULL`` without a non-null default
        even on an empty table. Those parts are relaxed and reported; a unique
        column gets a unique index instead.
        """
        plan = AlterPlan()
        quoted_table = self.quote_identifier(table)
        for column in columns:
            include_default = True
            if column.default is NOW:
                include_default = False
                plan.dropped_defaults.append(column.name)
            # SQLite needs a constant default for NOT NULL regardless of row count.
            not_null = column.required and column.has_constant_default
            if column.required and not not_null:
                plan.deferred_not_null.append(column.name)
            if column.primary_key:
                plan.dropped_constraints.append(f"{column.name}: PRIMARY KEY")
            definition = self.column_definition(
                column,
                not_null=not_null,
                include_default=include_default,
                unique=False,
                primary_key=False,
            )
            plan.statements.append(f"ALTER TABLE {quoted_table} ADD COLUMN {definition}")
            if column.unique and not column.primary_key:
                plan.statements.append(
                    self.create_index_ddl(
                        table,
                        IndexDescriptor(f"ux_{table}_{column.name}", (column.name,), unique=True),
                    )
                )
        return plan

    def table_exists_query(self) -> str:
        return "SELECT name FROM sqlite_master WHERE type='table' AND name = ?"

    def list_tables_query(self) -> str:
        return (
            "SELECT name FROM sqlite_master "
            "WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )

    def columns_query(self, table: str) -> tuple[str, tuple[Any, ...]]:
        # PRAGMA arguments cannot be bound
        return f"PRAGMA table_info({self.quote_identifier(table)})", ()

    def parse_columns(self, rows: Sequence[dict[str, Any]]) -> list[ExistingColumn]:
        return [
            ExistingColumn(
                name=row["name"],
                native_type=row["type"] or "",
                nullable=not row["notnull"],
                default=row["dflt_value"],
                primary_key=bool(row["pk"]),
            )
            for row in rows
        ]

    def indexes_query(self) -> str:
        return "SELECT name FROM sqlite_master WHERE type='index' AND tbl_name = ?"


class PostgreSQLDialect(_SqlDialect):
    """PostgreSQL dialect: ``$n`` placeholders by default, ``NOW()``, JSONB.

    The psycopg2 adapter builds this dialect with ``Paramstyle.FORMAT`` and
    its ``Json`` wrapper, because psycopg2 binds ``%s`` and adapts JSON
    through ``psycopg2.extras.Json``.
    """

    _name = "postgresql"
    _types = {
        SemanticType.TEXT: "TEXT",
        SemanticType.INTEGER: "INTEGER",
        SemanticType.BOOLEAN: "BOOLEAN",
        SemanticType.TIMESTAMP: "TIMESTAMP",
        SemanticType.UUID: "UUID",
        SemanticType.JSON: "JSONB",
    }
    _aliases = {
        SemanticType.TEXT: frozenset({"character varying", "varchar", "character", "char"}),
        SemanticType.INTEGER: frozenset({"int", "int4", "bigint", "int8", "smallint", "int2"}),
        SemanticType.BOOLEAN: frozenset({"bool"}),
        SemanticType.TIMESTAMP: frozenset(
            {
                "timestamp without time zone",
                "timestamp with time zone",
                "timestamptz",
            }
        ),
        SemanticType.UUID: frozenset(),
        SemanticType.JSON: frozenset({"json"}),
    }

    def __init__(
        self,
        paramstyle: Paramstyle = Paramstyle.NUMERIC,
        json_wrapper: Callable[[Any], Any] | None = None,
    ):
        super().__init__(paramstyle)
        self._json_wrapper = json_wrapper

    def adapt_arg(self, value: Any) -> Any:
        if isinstance(value, (dict, list)):
            if self._json_wrapper is not None:
                return self._json_wrapper(value)
            return json.dumps(value)
        return super().adapt_arg(value)

    def now(self) -> str:
        return "NOW()"

    def timestamp_default_now(self) -> str:
        return "NOW()"

    def boolean_literal(self, value: bool) -> str:
        return "TRUE" if value else "FALSE"

    def json_literal(self, value: Any) -> str:
        return _sql_literal(json.dumps(value)) + "::jsonb"

    def add_columns_ddl(
        self,
        table: str,
        columns: Sequence[ColumnDescriptor],
        table_may_have_rows: bool,
    ) -> AlterPlan:
        """One multi-clause ``ALTER TABLE`` adding every column."""
        plan = AlterPlan()
        if not columns:
            return plan
        clauses = []
        for column in columns:
            not_null = column.required
            if self._must_defer_not_null(column, table_may_have_rows):
                not_null = False
                plan.deferred_not_null.append(column.name)
            if column.primary_key:
                plan.dropped_constraints.append(f"{column.name}: PRIMARY KEY")
            definition = self.column_definition(column, not_null=not_null, primary_key=False)
            clauses.append(f"ADD COLUMN IF NOT EXISTS {definition}")
        plan.statements.append(
            f"ALTER TABLE {self.quote_identifier(table)} " + ", ".join(clauses)
        )
        return plan

    def table_exists_query(self) -> str:
        return (
            "SELECT table_name AS name FROM information_schema.tables "
            "WHERE table_schema = current_schema() AND table_name = ?"
        )

    def list_tables_query(self) -> str:
        return (
            "SELECT table_name AS name FROM information_schema.tables "
            "WHERE table_schema = current_schema() AND table_type = 'BASE TABLE' "
            "ORDER BY table_name"
        )

    def columns_query(self, table: str) -> tuple[str, tuple[Any, ...]]:
        return (
            "SELECT column_name, data_type, is_nullable, column_default "
            "FROM information_schema.columns "
            "WHERE table_schema = current_schema() AND table_name = ? "
            "ORDER BY ordinal_position",
            (table,),
        )

    def parse_columns(self, rows: Sequence[dict[str, Any]]) -> list[ExistingColumn]:
        return [
            ExistingColumn(
                name=row["column_name"],
                native_type=row["data_type"] or "",
                nullable=str(row["is_nullable"]).upper() == "YES",
                default=row["column_default"],
            )
            for row in rows
        ]

    def indexes_query(self) -> str:
        return (
            "SELECT indexname AS name FROM pg_indexes "
            "WHERE schemaname = current_schema() AND tablename = ?"
        )


# =========================================================================
# Registry / Factory
# =========================================================================

_DIALECTS: dict[str, Dialect] = {
    "sqlite": SQLiteDialect(),
    "postgresql": PostgreSQLDialect(),
    "postgres": PostgreSQLDialect(),  # alias
}


def get_dialect(db_type: str) -> Dialect:
    """Get a dialect by database type name.

    Args:
        db_type: ``'sqlite'``, ``'postgresql'`` or ``'postgres'`` (or a
            ``DatabaseType`` member).

    Raises:
        ValueError: If ``db_type`` is not recognised.
    """
    key = db_type.lower() if isinstance(db_type, str) else db_type.value
    if key not in _DIALECTS:
        raise ValueError(
            f"Unknown dialect '{db_type}'. "
            f"Supported: {sorted(set(_DIALECTS) - {'postgres'})}"
        )
    return _DIALECTS[key]


def register_dialect(name: str, dialect: Dialect) -> None:
    """Register a custom dialect implementation (test doubles, other drivers)."""
    _DIALECTS[name.lower()] = dialect


__all__ = [
    "Paramstyle",
    "TranslatedStatement",
    "AlterPlan",
    "Dialect",
    "SQLiteDialect",
    "PostgreSQLDialect",
    "count_placeholders",
    "get_dialect",
    "register_dialect",
]
