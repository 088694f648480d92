"""Retry strategies for page fetches and packet downloads.

The rendering application and the replication endpoint both fail
transiently; both are retried a fixed number of times with a fixed delay.

Example:
    >>> from sitemapspine.execution.retry import ConstantBackoff, RetryContext
    >>>
    >>> strategy = ConstantBackoff(max_retries=3, delay=10.0)
    >>> ctx = RetryContext(strategy)
    >>> result = ctx.run(fetch_page, url)   # up to 4 attempts in total
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

T = TypeVar("T")


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, retries: int) -> float:
        """Delay in seconds before the next attempt.

        Args:
            retries: Number of retries already performed (0 before the first retry)
        """
        ...

    @abstractmethod
    def should_retry(self, retries: int, error: Exception | None = None) -> bool:
        """Whether another attempt is allowed after *retries* retries."""
        ...


@dataclass
class ConstantBackoff(RetryStrategy):
    """Constant delay between retries.

    Attributes:
        max_retries: Retries allowed after the first attempt
        delay: Seconds to wait before each retry
        retryable_errors: Exception types worth retrying (None = all)
    """

    max_retries: int = 3
    delay: float = 10.0
    retryable_errors: tuple[type[Exception], ...] | None = None

    def next_delay(self, retries: int) -> float:
        """Return constant delay."""
        return self.delay

    def should_retry(self, retries: int, error: Exception | None = None) -> bool:
        """Check if retry should be attempted."""
        if retries >= self.max_retries:
            return False
        if error is not None and self.retryable_errors is not None:
            return isinstance(error, self.retryable_errors)
        return True


@dataclass
class RetryContext:
    """Runs a callable under a retry strategy and records each failure.

    Example:
        >>> ctx = RetryContext(ConstantBackoff(max_retries=3), sleep=lambda s: None)
        >>> result = ctx.run(lambda: call_api())
    """

    strategy: RetryStrategy
    on_retry: Callable[[int, Exception, float], None] | None = None
    sleep: Callable[[float], None] = time.sleep
    attempt: int = field(default=0, init=False)
    last_error: Exception | None = field(default=None, init=False)
    errors: list[tuple[int, Exception, datetime]] = field(default_factory=list, init=False)

    @property
    def retries(self) -> int:
        """Retries performed so far."""
        return max(self.attempt - 1, 0)

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute *func* with retry logic.

        Returns:
            Result from the first successful call

        Raises:
            The last exception once the strategy declines another attempt
        """
        while True:
            self.attempt += 1
            try:
                return func(*args, **kwargs)
            except Exception as e:
                self.last_error = e
                self.errors.append((self.attempt, e, utcnow()))

                retries = self.attempt - 1
                if not self.strategy.should_retry(retries, e):
                    raise

                delay = self.strategy.next_delay(retries)
                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)
                self.sleep(delay)
