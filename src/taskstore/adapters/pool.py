"""Bounded, blocking connection pool.

``psycopg2.pool.ThreadedConnectionPool`` raises immediately when every slot
is taken. The store needs the opposite: wait up to ``acquire_timeout`` for a
slot, then fail with ``PoolExhausted`` without leaking anything. This pool
is driver-agnostic; the PostgreSQL adapter supplies the connection factory
and the broken-connection check.

Manifesto:
    - **Bounded:** never more than ``max_size`` live connections
    - **Blocking with a budget:** waiters sleep on one condition variable,
      re-checking on release and on a backoff schedule
    - **Bounded retries:** transient connect failures are retried with
      exponential backoff, inside the same timeout budget
    - **Self-healing:** broken connections are closed on checkin and their
      slot freed

Architecture:
    ::

        acquire(timeout)
            │
            ├── idle connection? ─────────────► hand out
            ├── size < max_size? ── reserve ──► factory() ──► hand out
            │                                     │ ConnectFailed
            │                                     ▼
            │                         release slot, backoff, retry
            │                         (at most acquire_retries times)
            └── wait(min(remaining, backoff)) ─► re-check
                                          │ deadline passed
                                          ▼
                                    PoolExhausted

Tags:
    pool, connections, concurrency, backoff, taskstore

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import random
import threading
import time
from collections.abc import Callable
from contextlib import nullcontext
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from taskstore.errors import AdapterClosed, ConnectFailed, PoolExhausted
from taskstore.logging import get_logger

if TYPE_CHECKING:
    from taskstore.cancellation import CancelToken

logger = get_logger(__name__)


@dataclass
class ExponentialBackoff:
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) ± jitter

    Attributes:
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier
        jitter: Add randomness to prevent thundering herd
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
    """

    base_delay: float = 0.05
    max_delay: float = 1.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25

    def next_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        delay = min(self.base_delay * (self.multiplier ** min(attempt, 32)), self.max_delay)
        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0.0, delay)
        return delay


@dataclass
class PoolStats:
    size: int
    idle: int
    in_use: int
    waiting: int
    max_size: int
    discarded: int
    exhausted: int

    def to_dict(self) -> dict[str, int]:
        return dict(self.__dict__)


class ConnectionPool:
    """
    Thread-safe bounded pool.

    All bookkeeping (idle list, checked-out set, slot count, waiter count) is
    guarded by a single ``threading.Condition``. Connections are opened and
    closed outside the lock.

    Args:
        factory: Opens one connection; raises ``ConnectFailed`` on failure.
        min_size: Connections opened by ``open()``.
        max_size: Hard cap on live connections.
        acquire_retries: Connect attempts retried per ``acquire`` call.
        is_broken: Predicate run on checkin; True drops the connection.
        closer: Closes one connection.
        backoff: Spacing for re-checks and connect retries.
        name: Label used in log events.
    """

    def __init__(
        self,
        factory: Callable[[], Any],
        *,
        min_size: int = 1,
        max_size: int = 10,
        acquire_retries: int = 3,
        is_broken: Callable[[Any], bool] | None = None,
        closer: Callable[[Any], None] | None = None,
        backoff: ExponentialBackoff | None = None,
        name: str = "pool",
    ):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        if not 0 <= min_size <= max_size:
            raise ValueError("min_size must be between 0 and max_size")
        self._factory = factory
        self._min_size = min_size
        self._max_size = max_size
        self._acquire_retries = acquire_retries
        self._is_broken = is_broken or (lambda conn: False)
        self._closer = closer or (lambda conn: conn.close())
        self._backoff = backoff or ExponentialBackoff()
        self._name = name

        self._cond = threading.Condition(threading.Lock())
        self._idle: list[Any] = []
        self._in_use: dict[int, Any] = {}
        self._size = 0
        self._waiting = 0
        self._discarded = 0
        self._exhausted = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self) -> None:
        """Open ``min_size`` connections up front."""
        opened = []
        try:
            for _ in range(self._min_size):
                opened.append(self._factory())
        except ConnectFailed:
            for conn in opened:
                self._close_quietly(conn)
            raise
        with self._cond:
            self._idle.extend(opened)
            self._size += len(opened)
        logger.info(
            "pool.opened",
            pool=self._name,
            min_size=self._min_size,
            max_size=self._max_size,
        )

    def acquire(self, timeout: float, cancel: CancelToken | None = None) -> Any:
        """Check out a connection, waiting at most ``timeout`` seconds.

        A waiter is woken as soon as ``cancel`` fires.

        Raises:
            Cancelled: ``cancel`` fired before a connection was handed out.
            PoolExhausted: No connection became available in time.
            ConnectFailed: Opening a connection kept failing after
                ``acquire_retries`` retries.
            AdapterClosed: The pool was closed.
        """
        deadline = time.monotonic() + timeout
        recheck = 0
        connect_failures = 0

        with self._cond:
            self._check_open()
            self._waiting += 1
        watching = cancel.watch(self._wake_waiters) if cancel is not None else nullcontext()
        try:
            with watching:
                while True:
                    with self._cond:
                        self._check_open()
                        if cancel is not None:
                            cancel.raise_if_cancelled("acquire")
                        if self._idle:
                            conn = self._idle.pop()
                            self._in_use[id(conn)] = conn
                            return conn
                        if self._size < self._max_size:
                            self._size += 1  # reserve the slot before connecting
                        else:
                            remaining = deadline - time.monotonic()
                            if remaining <= 0:
                                self._exhausted += 1
                                in_use = len(self._in_use)
                                break
                            self._cond.wait(timeout=min(remaining, self._backoff.next_delay(recheck) or remaining))
                            recheck += 1
                            continue

                    try:
                        conn = self._factory()
                    except ConnectFailed:
                        with self._cond:
                            self._size -= 1
                            self._cond.notify()
                        connect_failures += 1
                        remaining = deadline - time.monotonic()
                        if connect_failures > self._acquire_retries or remaining <= 0:
                            raise
                        delay = min(remaining, self._backoff.next_delay(connect_failures - 1))
                        if cancel is not None:
                            cancel.wait(delay)
                        else:
                            time.sleep(delay)
                        continue

                    with self._cond:
                        if self._closed:
                            self._size -= 1
                            closed_late = True
                        else:
                            self._in_use[id(conn)] = conn
                            closed_late = False
                    if closed_late:
                        self._close_quietly(conn)
                        raise AdapterClosed(f"{self._name} pool closed while connecting")
                    return conn
        finally:
            with self._cond:
                self._waiting -= 1

        logger.warning(
            "pool.exhausted",
            pool=self._name,
            timeout=timeout,
            max_size=self._max_size,
            in_use=in_use,
        )
        raise PoolExhausted(
            f"No connection available within {timeout}s (pool_max={self._max_size})",
            timeout=timeout,
        )

    def release(self, conn: Any, *, discard: bool = False) -> None:
        """Return ``conn``; broken or discarded connections free their slot."""
        broken = discard or self._closed or self._is_broken(conn)
        with self._cond:
            if self._in_use.pop(id(conn), None) is None:
                raise ValueError("Connection does not belong to this pool")
            if broken:
                self._size -= 1
                if not self._closed:
                    self._discarded += 1
            else:
                self._idle.append(conn)
            self._cond.notify()
        if broken:
            if not self._closed:
                logger.warning("pool.connection_discarded", pool=self._name)
            self._close_quietly(conn)

    def close(self) -> None:
        """Close idle connections now; checked-out ones are closed on release."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            idle, self._idle = self._idle, []
            self._size -= len(idle)
            self._cond.notify_all()
        for conn in idle:
            self._close_quietly(conn)

    def stats(self) -> PoolStats:
        with self._cond:
            return PoolStats(
                size=self._size,
                idle=len(self._idle),
                in_use=len(self._in_use),
                waiting=self._waiting,
                max_size=self._max_size,
                discarded=self._discarded,
                exhausted=self._exhausted,
            )

    def _wake_waiters(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def _check_open(self) -> None:
        if self._closed:
            raise AdapterClosed(f"{self._name} pool is closed")

    def _close_quietly(self, conn: Any) -> None:
        try:
            self._closer(conn)
        except Exception as e:  # connection already unusable
            logger.debug("pool.close_failed", pool=self._name, error=str(e))


__all__ = [
    "ExponentialBackoff",
    "PoolStats",
    "ConnectionPool",
]
