"""Omnistore Execution -- cancellation, per-call deadlines and read retry.

::

    Engine.dispatch
      ├── operation_deadline  ─ timer cancels a child token on expiry
      │     └── CancellationToken ─ abort callbacks reach the driver
      └── RetryContext        ─ read-only calls, ConnectionTimeout only
"""

from omnistore.execution.cancellation import CancellationToken
from omnistore.execution.retry import ExponentialBackoff, NoRetry, RetryContext, RetryStrategy
from omnistore.execution.timeout import DeadlineContext, operation_deadline

__all__ = [
    "CancellationToken",
    "DeadlineContext",
    "operation_deadline",
    "RetryStrategy",
    "ExponentialBackoff",
    "NoRetry",
    "RetryContext",
]
