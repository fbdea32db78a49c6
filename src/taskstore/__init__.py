"""
taskstore — storage layer for the task board.

One façade over an embedded SQLite file and a pooled PostgreSQL server:
backend-neutral ``?`` statements, additive schema reconciliation at
startup, typed errors and structured logs.

Quick start::

    from taskstore import DatabaseConfig, Store

    with Store(DatabaseConfig(path="data/tasks.sqlite")) as store:
        store.query("SELECT id, title FROM tasks WHERE status = ?", ["todo"])
"""

__version__ = "0.1.0"

from taskstore.errors import (
    AdapterClosed,
    Cancelled,
    ConfigInvalid,
    ConnectFailed,
    ErrorCategory,
    NotInitialized,
    PlaceholderCountMismatch,
    PoolExhausted,
    QueryFailed,
    SchemaReconcileError,
    StoreError,
    TransactionAborted,
    is_retryable,
)
from taskstore.logging import configure_logging, get_logger
from taskstore.schema import (
    NOW,
    ColumnDescriptor,
    ForeignKey,
    IndexDescriptor,
    MigrationRecord,
    SemanticType,
    TableDescriptor,
)
from taskstore.dialect import Dialect, Paramstyle, TranslatedStatement, get_dialect
from taskstore.adapters import DatabaseConfig, DatabaseType, create_adapter
from taskstore.cancellation import CancelToken
from taskstore.reconciler import ReconcilePlan, ReconcileReport, SchemaReconciler
from taskstore.store import Store, Transaction
from taskstore.registry import StoreRegistry
from taskstore.settings import StoreSettings, load_settings
from taskstore.tables import TASKBOARD_TABLES

__all__ = [
    "__version__",
    # Errors
    "StoreError",
    "ErrorCategory",
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
    # Logging
    "configure_logging",
    "get_logger",
    # Schema
    "NOW",
    "SemanticType",
    "ForeignKey",
    "ColumnDescriptor",
    "IndexDescriptor",
    "TableDescriptor",
    "MigrationRecord",
    "TASKBOARD_TABLES",
    # Dialect / adapters
    "Dialect",
    "Paramstyle",
    "TranslatedStatement",
    "get_dialect",
    "DatabaseConfig",
    "DatabaseType",
    "create_adapter",
    # Store
    "CancelToken",
    "SchemaReconciler",
    "ReconcilePlan",
    "ReconcileReport",
    "Store",
    "Transaction",
    "StoreRegistry",
    "StoreSettings",
    "load_settings",
]
