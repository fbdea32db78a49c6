"""Database adapters -- one interface over the embedded and networked backends.

Manifesto:
    The task board must run identically on a local SQLite file (single
    user, development) and on a PostgreSQL server (shared deployment).
    Without a common adapter interface, every query embeds backend-specific
    connection handling, locking and pooling.

Architecture::

    DatabaseAdapter (base.py)        Abstract base: connect / acquire / run
        |-- SQLiteAdapter            stdlib sqlite3, one handle + writer lock
        |-- PostgreSQLAdapter        psycopg2, bounded ConnectionPool

    ConnectionPool (pool.py)         Blocking bounded pool with backoff
    AdapterRegistry (registry.py)    Backend name -> adapter class
    DatabaseConfig (types.py)        Frozen connection configuration
    DatabaseType (types.py)          Enum of supported backends

Guardrails:
    ❌ ``conn.execute("SELECT * FROM tasks WHERE id=" + task_id)``
    ✅ ``store.query("SELECT * FROM tasks WHERE id = ?", [task_id])``
    ❌ ``adapter = PostgreSQLAdapter(...)`` in application code
    ✅ ``adapter = create_adapter(config)``

Tags:
    taskstore, database, adapters, sqlite, postgresql, pool, registry-pattern

Doc-Types:
    package-overview, architecture-map, module-index
"""

from taskstore.dialect import Dialect, get_dialect

from .base import DatabaseAdapter, StatementResult
from .pool import ConnectionPool, ExponentialBackoff, PoolStats
from .postgresql import PostgreSQLAdapter
from .registry import AdapterRegistry, adapter_registry, create_adapter
from .sqlite import SQLiteAdapter
from .types import DEFAULT_SQLITE_PATH, DatabaseConfig, DatabaseType

__all__ = [
    # Types
    "DEFAULT_SQLITE_PATH",
    "DatabaseType",
    "DatabaseConfig",
    # Dialects
    "Dialect",
    "get_dialect",
    # Base class
    "DatabaseAdapter",
    "StatementResult",
    # Pool
    "ConnectionPool",
    "ExponentialBackoff",
    "PoolStats",
    # Implementations
    "SQLiteAdapter",
    "PostgreSQLAdapter",
    # Registry
    "AdapterRegistry",
    "adapter_registry",
    "create_adapter",
]
