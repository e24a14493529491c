"""Per-call deadlines for engine operations.

``operation_deadline(seconds, token)`` bounds one Engine dispatch. It arms
a timer that cancels a child of the caller's token when the deadline
passes; the adapter's registered abort callbacks then interrupt the driver.
The context manager turns the aborted call into ``ConnectionTimeoutError``
(deadline) or ``OperationCancelledError`` (caller).

Nested deadlines are tracked on a thread-local stack so adapters can size
driver-level timeouts from ``get_remaining_deadline()``; the inner deadline
never outlives the outer one.

Architecture:
    ::

        caller token ──child──▶ operation token ◀── threading.Timer(seconds)
                                      │
                                      ▼ on_cancel
                         driver abort (cancel / KILL QUERY / close)

Examples:
    >>> with operation_deadline(5.0, operation="browse_rows") as ctx:
    ...     adapter.browse_rows(credential, "users", cancel=ctx.token)

Guardrails:
    - Adapters must poll ``ctx.token`` (or register an abort) in any loop
      that can run longer than one driver call
    - A body that completes before noticing the timer still returns its
      result; only an aborted body is reported as a timeout

Tags:
    timeout, deadline, cancellation, resilience, omnistore

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from omnistore.core.errors import (
    ConnectionTimeoutError,
    OperationCancelledError,
)
from omnistore.execution.cancellation import TIMED_OUT, CancellationToken


@dataclass
class DeadlineContext:
    """Deadline state for one operation.

    Attributes:
        deadline: Absolute deadline timestamp (monotonic clock)
        timeout_seconds: Effective timeout in seconds
        token: Token cancelled when the deadline passes
        operation: Name of the operation
        start_time: When the deadline context started
    """

    deadline: float
    timeout_seconds: float
    token: CancellationToken
    operation: str = "operation"
    start_time: float = field(default_factory=time.monotonic)

    def remaining(self) -> float:
        """Seconds until the deadline; negative once expired."""
        return self.deadline - time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.start_time

    def is_expired(self) -> bool:
        return time.monotonic() >= self.deadline

    def check(self) -> None:
        """Raise if the deadline passed or the caller cancelled."""
        if self.is_expired() and not self.token.is_cancelled():
            self.token.cancel(TIMED_OUT)
        self.token.raise_if_cancelled(self.operation)


_deadline_stack: threading.local = threading.local()


def _get_deadline_stack() -> list[DeadlineContext]:
    if not hasattr(_deadline_stack, "stack"):
        _deadline_stack.stack = []
    return _deadline_stack.stack


def get_current_deadline() -> DeadlineContext | None:
    stack = _get_deadline_stack()
    return stack[-1] if stack else None


def get_effective_timeout(requested: float) -> float:
    """Minimum of ``requested`` and the time left on the enclosing deadline."""
    current = get_current_deadline()
    if current is None:
        return requested
    return max(0.0, min(requested, current.remaining()))


def get_remaining_deadline(default: float | None = None) -> float | None:
    """Seconds left on the current deadline, or ``default`` outside one."""
    ctx = get_current_deadline()
    if ctx is None:
        return default
    return max(ctx.remaining(), 0.001)


def check_deadline() -> None:
    """Raise if the current deadline expired. No-op outside a deadline."""
    ctx = get_current_deadline()
    if ctx is not None:
        ctx.check()


@contextmanager
def operation_deadline(
    seconds: float,
    token: CancellationToken | None = None,
    operation: str = "operation",
) -> Iterator[DeadlineContext]:
    """Bound an operation to ``seconds`` and link it to the caller's token.

    Raises:
        ConnectionTimeoutError: the deadline passed and aborted the body
        OperationCancelledError: the caller's token was cancelled
        ValueError: If seconds <= 0
    """
    if seconds <= 0:
        raise ValueError(f"Timeout must be positive, got {seconds}")

    effective = get_effective_timeout(seconds)
    child = token.child() if token is not None else CancellationToken()
    now = time.monotonic()
    ctx = DeadlineContext(
        deadline=now + effective,
        timeout_seconds=effective,
        token=child,
        operation=operation,
        start_time=now,
    )
    # caller may have cancelled before we started
    if child.is_cancelled():
        child.detach()
        child.raise_if_cancelled(operation)

    timer = threading.Timer(effective, child.cancel, args=(TIMED_OUT,))
    timer.daemon = True
    stack = _get_deadline_stack()
    stack.append(ctx)
    timer.start()
    try:
        yield ctx
    except (ConnectionTimeoutError, OperationCancelledError):
        raise
    except Exception as e:
        if not child.is_cancelled():
            raise
        if child.timed_out:
            raise ConnectionTimeoutError(
                f"{operation} timed out after {effective:.2f}s",
                cause=e,
            ) from e
        raise OperationCancelledError(f"{operation} was cancelled", cause=e) from e
    finally:
        timer.cancel()
        child.detach()
        stack.pop()


__all__ = [
    "DeadlineContext",
    "operation_deadline",
    "get_current_deadline",
    "get_effective_timeout",
    "get_remaining_deadline",
    "check_deadline",
]
