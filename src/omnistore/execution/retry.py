"""Retry strategies for read-only engine operations.

The Engine retries a read only when the adapter declares idempotent reads
and only on ``ConnectionTimeoutError``. Mutations are never passed through
here.

Example:
    >>> strategy = read_retry_strategy(attempts=3, base_delay=0.1)
    >>> RetryContext(strategy).run(adapter.list_storage_units, credential)
"""

from __future__ import annotations

import random
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from omnistore.core.errors import ConnectionTimeoutError

T = TypeVar("T")


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Delay in seconds before the next attempt (0 = first retry)."""

    @abstractmethod
    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        """Whether attempt number ``attempt`` failing with ``error`` may retry."""


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) + jitter

    Attributes:
        max_retries: Total attempts allowed
        retryable_errors: Exception types that may be retried (None = all)
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25
    retryable_errors: tuple[type[BaseException], ...] | None = None

    def next_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))
        return delay

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        if attempt >= self.max_retries:
            return False
        if error is not None and self.retryable_errors is not None:
            return isinstance(error, self.retryable_errors)
        return True


@dataclass
class NoRetry(RetryStrategy):
    """Fail immediately."""

    def next_delay(self, attempt: int) -> float:
        return 0.0

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        return False


@dataclass
class RetryContext:
    """Runs a callable under a strategy and records each failure."""

    strategy: RetryStrategy
    on_retry: Callable[[int, BaseException, float], None] | None = None
    sleep: Callable[[float], None] = time.sleep
    attempt: int = field(default=0, init=False)
    errors: list[BaseException] = field(default_factory=list, init=False)

    @property
    def attempts(self) -> int:
        return self.attempt

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call ``func`` until it succeeds or the strategy gives up.

        Raises:
            The last exception once retries are exhausted
        """
        while True:
            self.attempt += 1
            try:
                return func(*args, **kwargs)
            except Exception as e:
                self.errors.append(e)
                if not self.strategy.should_retry(self.attempt, e):
                    raise
                delay = self.strategy.next_delay(self.attempt - 1)
                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)
                self.sleep(delay)


def read_retry_strategy(attempts: int, base_delay: float) -> RetryStrategy:
    """Strategy for idempotent reads: retry only on connection timeouts."""
    if attempts <= 1:
        return NoRetry()
    return ExponentialBackoff(
        max_retries=attempts,
        base_delay=base_delay,
        max_delay=max(base_delay * 8, base_delay),
        retryable_errors=(ConnectionTimeoutError,),
    )


__all__ = [
    "RetryStrategy",
    "ExponentialBackoff",
    "NoRetry",
    "RetryContext",
    "read_retry_strategy",
]
