"""Database adapter base class.

Manifesto:
    Both backends share one lifecycle (connect, acquire, release, disconnect)
    and one way of running a translated statement. The abstract base class
    defines that contract so the ``Store`` never depends on a specific
    driver.

Features:
    - Abstract ``connect()``, ``disconnect()``, ``_acquire()``, ``_release()``
    - ``connection()`` context manager: acquire with timeout, guaranteed release
    - ``interrupt()`` hook used by cancellation
    - ``run()`` returns a driver-neutral ``StatementResult``
    - Context-manager protocol for adapter lifecycle

Tags:
    taskstore, database, abstract-base, adapter-pattern

Doc-Types:
    api-reference
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from taskstore.dialect import Dialect, TranslatedStatement
from taskstore.errors import AdapterClosed, Cancelled, PoolExhausted
from taskstore.logging import get_logger

from .types import DatabaseConfig, DatabaseType

if TYPE_CHECKING:
    from taskstore.cancellation import CancelToken

logger = get_logger(__name__)


@dataclass
class StatementResult:
    """Rows and affected-row count from one statement."""

    columns: list[str] = field(default_factory=list)
    rows: list[tuple[Any, ...]] = field(default_factory=list)
    rowcount: int = -1


class DatabaseAdapter(ABC):
    """
    Abstract base class for database adapters.

    Subclasses provide the driver specifics; the base class owns the
    open/closed state and the acquire/release discipline.
    """

    #: Exception base class raised by the driver for statement failures.
    driver_error: type[Exception] = Exception

    def __init__(self, config: DatabaseConfig):
        self._config = config
        self._connected = False
        self._closed = False

    @property
    @abstractmethod
    def dialect(self) -> Dialect:
        """SQL dialect for this adapter's database type."""
        ...

    @property
    def config(self) -> DatabaseConfig:
        return self._config

    @property
    def db_type(self) -> DatabaseType:
        """Database type."""
        return self._config.backend

    @property
    def is_connected(self) -> bool:
        """Whether adapter is connected."""
        return self._connected

    @property
    def is_closed(self) -> bool:
        """True once ``disconnect()`` has run; a closed adapter never reopens."""
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise AdapterClosed(f"{self.db_type.value} adapter has been closed")

    @abstractmethod
    def connect(self) -> None:
        """Open the connection or pool. Idempotent while open."""
        ...

    @abstractmethod
    def disconnect(self) -> None:
        """Close every connection. Idempotent."""
        ...

    @abstractmethod
    def _acquire(self, timeout: float, cancel: CancelToken | None = None) -> Any:
        """Check out a connection, waiting at most ``timeout`` seconds.

        Implementations stop waiting and raise ``Cancelled`` once ``cancel``
        fires.
        """
        ...

    @abstractmethod
    def _release(self, conn: Any) -> None:
        """Return a connection; broken connections are dropped here."""
        ...

    @abstractmethod
    def interrupt(self, conn: Any) -> None:
        """Abort the statement currently running on ``conn`` (thread-safe)."""
        ...

    @abstractmethod
    def run(self, conn: Any, statement: TranslatedStatement) -> StatementResult:
        """Execute one translated statement on ``conn``."""
        ...

    @contextmanager
    def connection(
        self,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> Iterator[Any]:
        """Acquire a connection for the duration of the block.

        The wait is bounded by ``timeout`` (defaults to
        ``config.acquire_timeout``) and by the deadline of ``cancel``.

        Raises:
            AdapterClosed: the adapter was disconnected.
            Cancelled: ``cancel`` fired while waiting.
            PoolExhausted: nothing became available in time.
        """
        self._ensure_open()
        if not self._connected:
            self.connect()
        if timeout is None:
            timeout = self._config.acquire_timeout
        if cancel is not None:
            remaining = cancel.remaining()
            if remaining is not None:
                timeout = min(timeout, remaining)
        try:
            conn = self._acquire(timeout, cancel)
        except PoolExhausted as e:
            if cancel is None or not (cancel.cancelled or cancel.remaining() == 0):
                raise
            raise Cancelled(
                f"Cancelled while waiting for a connection: {cancel.reason or 'deadline exceeded'}",
                cause=e,
            ).with_context(operation="acquire", backend=self.db_type.value) from e
        try:
            yield conn
        finally:
            self._release(conn)

    def rollback(self, conn: Any) -> None:
        """Issue ``ROLLBACK`` on ``conn``."""
        self.run(conn, TranslatedStatement("ROLLBACK", (), 0))

    def stats(self) -> dict[str, Any]:
        """Pool counters (size, idle, in_use, waiting, max_size)."""
        return {"backend": self.db_type.value, "connected": self._connected}

    def __enter__(self) -> DatabaseAdapter:
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit."""
        self.disconnect()

    def __repr__(self) -> str:
        state = "closed" if self._closed else ("connected" if self._connected else "idle")
        return f"{type(self).__name__}({state})"


__all__ = [
    "DatabaseAdapter",
    "StatementResult",
]
