"""
Structured error types for the task-board storage layer.

Every failure the store can surface is a subclass of ``StoreError`` carrying
enough metadata for callers to branch on it and for operators to log it:

- **Category:** What kind of failure (config, connection, pool, schema, ...)
- **Retryable:** Whether repeating the operation can succeed
- **Context:** The operation, statement, table and column that produced it
- **Cause:** The original driver exception, chained as ``__cause__``

Manifesto:
    - **Typed taxonomy:** Callers branch on the class, never on message text
    - **Nothing swallowed:** Driver errors are wrapped, never replaced
    - **Backend text preserved:** ``str(error.cause)`` is the driver's message

Architecture:
    ::

        ┌───────────────────────────────────────────────────────────────┐
        │                          StoreError                            │
        │        (category, retryable, context, cause)                   │
        ├───────────────────────────────────────────────────────────────┤
        │  ConfigInvalid          ConnectFailed       PoolExhausted      │
        │  (CONFIG)               (CONNECTION, retry) (POOL, retry)      │
        │                                                                │
        │  PlaceholderCountMismatch   QueryFailed    TransactionAborted  │
        │  (STATEMENT)                (QUERY)        (QUERY)             │
        │                                                                │
        │  SchemaReconcileError   NotInitialized     AdapterClosed       │
        │  (SCHEMA)               (LIFECYCLE)        (LIFECYCLE)         │
        │                                                                │
        │  Cancelled                                                     │
        │  (CANCELLED)                                                   │
        └───────────────────────────────────────────────────────────────┘

Examples:
    >>> err = PoolExhausted("no connection within 2.0s")
    >>> err.retryable
    True
    >>> err.with_context(operation="query").context.operation
    'query'

Guardrails:
    ❌ DON'T: ``raise RuntimeError(str(driver_error))``
    ✅ DO: ``raise QueryFailed("...", cause=driver_error)``

Tags:
    error-handling, exception-hierarchy, taskstore, database

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    CONFIG = "CONFIG"             # Missing or invalid settings
    CONNECTION = "CONNECTION"     # Driver could not connect
    POOL = "POOL"                 # No connection available in time
    STATEMENT = "STATEMENT"       # Statement/argument shape errors
    SCHEMA = "SCHEMA"             # Reconciliation failures
    LIFECYCLE = "LIFECYCLE"       # Not initialized / already closed
    CANCELLED = "CANCELLED"       # Caller cancellation or deadline
    QUERY = "QUERY"               # Backend-reported execution error


@dataclass
class ErrorContext:
    """
    Structured metadata attached to a ``StoreError``.

    Only fields that are set end up in ``to_dict()``; anything that does not
    have a dedicated field goes into ``metadata``.

    Attributes:
        operation: Façade operation (``query``, ``execute``, ``initialize`` ...)
        statement: SQL statement as issued by the caller
        table: Table involved, if any
        column: Column involved, if any
        backend: ``sqlite`` or ``postgresql``
        metadata: Additional key-value pairs
    """

    operation: str | None = None
    statement: str | None = None
    table: str | None = None
    column: str | None = None
    backend: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["operation", "statement", "table", "column", "backend"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class StoreError(Exception):
    """
    Base exception for all storage-layer errors.

    Subclasses set ``default_category`` and ``default_retryable``; both can be
    overridden per instance.
    """

    default_category: ErrorCategory = ErrorCategory.QUERY
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> StoreError:
        """
        Add context to this error (fluent API).

        Usage:
            raise QueryFailed("insert failed").with_context(
                operation="execute", table="tasks"
            )
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION / CONNECTION
# =============================================================================


class ConfigInvalid(StoreError):
    """Configuration is missing or inconsistent. Never retryable."""

    default_category = ErrorCategory.CONFIG

    def __init__(self, message: str, *, key: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.key = key


class ConnectFailed(StoreError):
    """The driver could not open a connection."""

    default_category = ErrorCategory.CONNECTION
    default_retryable = True


class PoolExhausted(StoreError):
    """No connection became available within the acquire timeout."""

    default_category = ErrorCategory.POOL
    default_retryable = True

    def __init__(self, message: str, *, timeout: float | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.timeout = timeout


# =============================================================================
# STATEMENTS / QUERIES
# =============================================================================


class PlaceholderCountMismatch(StoreError):
    """Bound-argument count differs from the statement's placeholder count."""

    default_category = ErrorCategory.STATEMENT

    def __init__(self, expected: int, received: int, *, statement: str | None = None):
        self.expected = expected
        self.received = received
        super().__init__(
            f"Statement has {expected} placeholder(s) but {received} argument(s) were bound",
            context=ErrorContext(statement=statement),
        )


class QueryFailed(StoreError):
    """The backend reported an execution error; its text is kept in ``cause``."""

    default_category = ErrorCategory.QUERY


class TransactionAborted(StoreError):
    """The transaction body asked for a rollback via ``Transaction.abort()``."""

    default_category = ErrorCategory.QUERY


class Cancelled(StoreError):
    """The caller's cancel token fired or its deadline passed."""

    default_category = ErrorCategory.CANCELLED


# =============================================================================
# SCHEMA / LIFECYCLE
# =============================================================================


class SchemaReconcileError(StoreError):
    """Reconciliation failed for a table (and possibly a column)."""

    default_category = ErrorCategory.SCHEMA

    def __init__(
        self,
        message: str,
        *,
        table: str,
        column: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.table = table
        self.column = column
        self.context.table = table
        self.context.column = column


class NotInitialized(StoreError):
    """An operation ran before ``initialize`` completed."""

    default_category = ErrorCategory.LIFECYCLE


class AdapterClosed(StoreError):
    """An operation ran after the store or adapter was torn down."""

    default_category = ErrorCategory.LIFECYCLE


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, StoreError):
        return error.retryable
    return False


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "StoreError",
    "ConfigInvalid",
    "ConnectFailed",
    "PoolExhausted",
    "PlaceholderCountMismatch",
    "QueryFailed",
    "TransactionAborted",
    "Cancelled",
    "SchemaReconcileError",
    "NotInitialized",
    "AdapterClosed",
    "is_retryable",
]
