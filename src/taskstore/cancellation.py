"""Cooperative cancellation for store operations.

A ``CancelToken`` is handed to ``Store.query``/``execute``/``transaction``.
Cancelling it (explicitly or when its deadline passes) interrupts the
statement currently running on the caller's connection; the store then rolls
the connection back, releases it and raises ``Cancelled``. A token that is
already cancelled when an operation starts fails before any connection is
acquired.

Manifesto:
    Operations without an exit are a reliability anti-pattern. A caller that
    gives up on a slow query must get its pool slot back, and must never see
    half a result.

Architecture:
    ::

        token = CancelToken.with_timeout(5.0)
                │
                │ threading.Timer fires cancel() at the deadline
                ▼
        ┌────────────────────────────────────────────┐
        │ CancelToken                                 │
        │   _event    set once, never cleared         │
        │   _watchers callbacks run on cancel()       │
        └────────────────────────────────────────────┘
                │
                │ with token.watch(lambda: adapter.interrupt(conn)):
                ▼
        sqlite3.Connection.interrupt() / psycopg2 connection.cancel()

Examples:
    >>> token = CancelToken()
    >>> token.cancelled
    False
    >>> token.cancel()
    >>> token.cancelled
    True

Tags:
    cancellation, deadline, timeout, threading, taskstore

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from taskstore.errors import Cancelled


class CancelToken:
    """Thread-safe, one-shot cancellation signal with an optional deadline."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._watchers: list[Callable[[], None]] = []
        self._timer: threading.Timer | None = None
        self._deadline: float | None = None
        self.reason: str | None = None

    @classmethod
    def with_timeout(cls, seconds: float) -> CancelToken:
        """Token that cancels itself ``seconds`` from now."""
        token = cls()
        token._deadline = time.monotonic() + seconds
        timer = threading.Timer(seconds, token.cancel, kwargs={"reason": f"deadline of {seconds}s exceeded"})
        timer.daemon = True
        token._timer = timer
        timer.start()
        return token

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None when there is none."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Signal cancellation and run every registered watcher once."""
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            watchers = list(self._watchers)
            if self._timer is not None:
                self._timer.cancel()
        for watcher in watchers:
            watcher()

    def dispose(self) -> None:
        """Stop the deadline timer without cancelling."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self, operation: str | None = None) -> None:
        if self._event.is_set():
            raise Cancelled(
                f"Operation cancelled: {self.reason}"
            ).with_context(operation=operation)

    @contextmanager
    def watch(self, callback: Callable[[], None]) -> Iterator[None]:
        """Run ``callback`` if the token is cancelled while the block is active.

        If the token is already cancelled on entry the callback runs
        immediately.
        """
        with self._lock:
            already = self._event.is_set()
            if not already:
                self._watchers.append(callback)
        if already:
            callback()
        try:
            yield
        finally:
            with self._lock:
                if callback in self._watchers:
                    self._watchers.remove(callback)

    def __repr__(self) -> str:
        state = f"cancelled, reason={self.reason!r}" if self.cancelled else "active"
        return f"CancelToken({state})"


__all__ = ["CancelToken"]
