"""Table descriptors: the declared shape of every table the store manages.

Descriptors are plain frozen dataclasses. They say nothing about a backend;
``taskstore.dialect`` renders them to DDL and ``taskstore.reconciler``
compares them with what the database actually has.

Examples:
    >>> sessions = TableDescriptor(
    ...     "sessions",
    ...     (
    ...         ColumnDescriptor("id", SemanticType.UUID, nullable=False, primary_key=True),
    ...         ColumnDescriptor("token", SemanticType.TEXT),
    ...         ColumnDescriptor("created_at", SemanticType.TIMESTAMP, default=NOW),
    ...     ),
    ... )
    >>> sessions.column_names
    ('id', 'token', 'created_at')

Tags:
    schema, descriptors, ddl, taskstore

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SemanticType(str, Enum):
    """Backend-independent column types."""

    TEXT = "text"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    TIMESTAMP = "timestamp"
    UUID = "uuid"
    JSON = "json"


class _CurrentTimestamp:
    """Sentinel default meaning "the current timestamp at insert time"."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "NOW"

    def __reduce__(self) -> str:
        return "NOW"


NOW: Any = _CurrentTimestamp()


@dataclass(frozen=True)
class ForeignKey:
    """``REFERENCES table(column) ON DELETE ...``"""

    table: str
    column: str = "id"
    on_delete: str | None = None  # CASCADE, SET NULL, RESTRICT, ...


@dataclass(frozen=True)
class ColumnDescriptor:
    """One declared column.

    ``default`` is ``None`` for "no default", ``NOW`` for the current
    timestamp, or a constant (str, int, float, bool, dict, list).
    """

    name: str
    type: SemanticType
    nullable: bool = True
    default: Any = None
    primary_key: bool = False
    unique: bool = False
    references: ForeignKey | None = None

    @property
    def has_default(self) -> bool:
        return self.default is not None

    @property
    def has_constant_default(self) -> bool:
        return self.default is not None and self.default is not NOW

    @property
    def required(self) -> bool:
        """NOT NULL in the declared schema (primary keys included)."""
        return not self.nullable or self.primary_key


@dataclass(frozen=True)
class IndexDescriptor:
    name: str
    columns: tuple[str, ...]
    unique: bool = False


@dataclass(frozen=True)
class TableDescriptor:
    """Declared table: ordered columns, table-level unique groups, indexes."""

    name: str
    columns: tuple[ColumnDescriptor, ...]
    unique_together: tuple[tuple[str, ...], ...] = ()
    indexes: tuple[IndexDescriptor, ...] = ()

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for column in self.columns:
            if column.name in seen:
                raise ValueError(f"Duplicate column {column.name!r} in table {self.name!r}")
            seen.add(column.name)
        for group in self.unique_together:
            for name in group:
                if name not in seen:
                    raise ValueError(f"Unique group on {self.name!r} names unknown column {name!r}")
        for index in self.indexes:
            for name in index.columns:
                if name not in seen:
                    raise ValueError(f"Index {index.name!r} names unknown column {name!r}")

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.columns)

    @property
    def references(self) -> set[str]:
        """Other tables this table points at."""
        return {
            c.references.table
            for c in self.columns
            if c.references is not None and c.references.table != self.name
        }

    def column(self, name: str) -> ColumnDescriptor:
        for column in self.columns:
            if column.name == name:
                return column
        raise KeyError(f"{self.name}.{name}")


@dataclass(frozen=True)
class MigrationRecord:
    """A declared column the reconciler must ensure exists."""

    table: str
    column: ColumnDescriptor

    @property
    def column_name(self) -> str:
        return self.column.name


@dataclass(frozen=True)
class ExistingColumn:
    """A column as reported by backend introspection."""

    name: str
    native_type: str
    nullable: bool = True
    default: str | None = None
    primary_key: bool = False


@dataclass
class TableInfo:
    """Introspected state of one table."""

    name: str
    exists: bool
    columns: list[ExistingColumn] = field(default_factory=list)
    indexes: set[str] = field(default_factory=set)

    @property
    def column_names(self) -> set[str]:
        return {c.name for c in self.columns}


__all__ = [
    "NOW",
    "SemanticType",
    "ForeignKey",
    "ColumnDescriptor",
    "IndexDescriptor",
    "TableDescriptor",
    "MigrationRecord",
    "ExistingColumn",
    "TableInfo",
]
