"""Cooperative cancellation for in-flight engine operations.

A ``CancellationToken`` is a thread-safe flag plus a set of abort callbacks.
Adapters register a driver-specific abort (``connection.cancel()``,
``KILL QUERY``, ``client.close()``) while they hold a connection, so a
cancel from another thread interrupts the blocking driver call instead of
waiting for it to finish.

Tokens form a tree: a child created with ``token.child()`` is cancelled
when its parent is, which is how the per-call deadline wraps a caller's
token.

Example:
    >>> token = CancellationToken()
    >>> release = token.on_cancel(lambda: print("aborting"))
    >>> token.cancel()
    aborting
    >>> token.is_cancelled()
    True
"""

from __future__ import annotations

import threading
from collections.abc import Callable

from omnistore.core.errors import ConnectionTimeoutError, OperationCancelledError
from omnistore.core.logging import get_logger

logger = get_logger(__name__)

CANCELLED = "cancelled"
TIMED_OUT = "timeout"


class CancellationToken:
    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: dict[int, Callable[[], None]] = {}
        self._next_id = 0
        self.reason: str | None = None
        self._detach_parent: Callable[[], None] | None = None
        if parent is not None:
            self._detach_parent = parent.on_cancel(lambda: self.cancel(parent.reason or CANCELLED))

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    def detach(self) -> None:
        """Stop following the parent token."""
        if self._detach_parent is not None:
            self._detach_parent()
            self._detach_parent = None

    def cancel(self, reason: str = CANCELLED) -> None:
        """Set the flag and run abort callbacks. Idempotent."""
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception as e:  # noqa: BLE001
                # a failing abort must not stop the remaining ones
                logger.warning("cancel_callback_failed", error=str(e), reason=reason)

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register an abort callback; returns a function that unregisters it.

        If the token is already cancelled the callback runs immediately.
        """
        with self._lock:
            if not self._event.is_set():
                handle = self._next_id
                self._next_id += 1
                self._callbacks[handle] = callback

                def unregister() -> None:
                    with self._lock:
                        self._callbacks.pop(handle, None)

                return unregister
        callback()
        return lambda: None

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def timed_out(self) -> bool:
        return self.reason == TIMED_OUT

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self, operation: str = "operation") -> None:
        if not self._event.is_set():
            return
        if self.timed_out:
            raise ConnectionTimeoutError(f"{operation} exceeded its deadline")
        raise OperationCancelledError(f"{operation} was cancelled")


__all__ = ["CancellationToken", "CANCELLED", "TIMED_OUT"]
