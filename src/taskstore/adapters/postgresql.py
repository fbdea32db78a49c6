"""PostgreSQL database adapter."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Any

import psycopg2
import psycopg2.extensions
import psycopg2.extras

from taskstore.dialect import Dialect, Paramstyle, PostgreSQLDialect, TranslatedStatement
from taskstore.errors import ConnectFailed
from taskstore.logging import get_logger

from .base import DatabaseAdapter, StatementResult
from .pool import ConnectionPool, ExponentialBackoff
from .types import DatabaseConfig, DatabaseType

if TYPE_CHECKING:
    from taskstore.cancellation import CancelToken

logger = get_logger(__name__)


class PostgreSQLAdapter(DatabaseAdapter):
    """
    PostgreSQL database adapter.

    A bounded ``ConnectionPool`` of psycopg2 connections in autocommit mode;
    transactions are explicit ``BEGIN`` / ``COMMIT`` / ``ROLLBACK`` issued by
    the store. Statements use the ``%s`` paramstyle psycopg2 binds, and JSON
    arguments are wrapped in ``psycopg2.extras.Json``.
    """

    driver_error = psycopg2.Error

    def __init__(self, config: DatabaseConfig | None = None, **kwargs: Any):
        if config is None:
            config = DatabaseConfig(backend=DatabaseType.POSTGRESQL, **kwargs)
        super().__init__(config)
        self._dialect = PostgreSQLDialect(
            paramstyle=Paramstyle.FORMAT,
            json_wrapper=psycopg2.extras.Json,
        )
        self._pool: ConnectionPool | None = None

    @property
    def dialect(self) -> Dialect:
        return self._dialect

    def _connect_kwargs(self) -> dict[str, Any]:
        config = self._config
        kwargs: dict[str, Any] = {
            "host": config.host,
            "port": config.port,
            "dbname": config.database,
            "connect_timeout": max(1, math.ceil(config.connect_timeout)),
            "sslmode": config.sslmode,
        }
        if config.username:
            kwargs["user"] = config.username
        if config.password:
            kwargs["password"] = config.password
        return kwargs

    def _open_connection(self) -> Any:
        try:
            conn = psycopg2.connect(**self._connect_kwargs())
        except psycopg2.Error as e:
            raise ConnectFailed(
                f"Failed to connect to PostgreSQL at {self._config.host}:{self._config.port}: {e}",
                cause=e,
            ).with_context(backend="postgresql") from e
        conn.autocommit = True
        return conn

    def connect(self) -> None:
        """Create the pool and open ``pool_min`` connections."""
        self._ensure_open()
        if self._pool is not None:
            return
        pool = ConnectionPool(
            self._open_connection,
            min_size=self._config.pool_min,
            max_size=self._config.pool_max,
            acquire_retries=self._config.acquire_retries,
            is_broken=self._is_broken,
            backoff=ExponentialBackoff(
                base_delay=0.05,
                max_delay=max(0.05, self._config.acquire_timeout / 4),
            ),
            name="postgresql",
        )
        pool.open()
        self._pool = pool
        self._connected = True
        logger.debug("adapter.connected", **self._config.redacted())

    def disconnect(self) -> None:
        """Close the pool. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self._pool is not None:
            self._pool.close()
        self._connected = False

    @staticmethod
    def _is_broken(conn: Any) -> bool:
        if conn.closed:
            return True
        status = conn.get_transaction_status()
        return status == psycopg2.extensions.TRANSACTION_STATUS_UNKNOWN

    def _acquire(self, timeout: float, cancel: CancelToken | None = None) -> Any:
        self._ensure_open()
        assert self._pool is not None
        return self._pool.acquire(timeout, cancel)

    def _release(self, conn: Any) -> None:
        discard = False
        if not self._is_broken(conn):
            status = conn.get_transaction_status()
            if status != psycopg2.extensions.TRANSACTION_STATUS_IDLE:
                try:
                    with conn.cursor() as cursor:
                        cursor.execute("ROLLBACK")
                except psycopg2.Error as e:
                    logger.warning("pool.reset_failed", backend="postgresql", error=str(e))
                    discard = True
        assert self._pool is not None
        self._pool.release(conn, discard=discard)

    def interrupt(self, conn: Any) -> None:
        conn.cancel()

    def run(self, conn: Any, statement: TranslatedStatement) -> StatementResult:
        with conn.cursor() as cursor:
            cursor.execute(statement.sql, statement.args or None)
            if cursor.description is None:
                return StatementResult(rowcount=cursor.rowcount)
            columns = [d[0] for d in cursor.description]
            return StatementResult(
                columns=columns,
                rows=[tuple(row) for row in cursor.fetchall()],
                rowcount=cursor.rowcount,
            )

    def stats(self) -> dict[str, Any]:
        base: dict[str, Any] = {"backend": "postgresql", "connected": self._connected}
        if self._pool is not None:
            base.update(self._pool.stats().to_dict())
        return base


__all__ = [
    "PostgreSQLAdapter",
]
