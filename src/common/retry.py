from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

from .errors import TransientError


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff: `base * 2**(attempt-1)`, capped at `cap` (seconds)."""

    base: float = 0.5
    cap: float = 2.0

    def __post_init__(self) -> None:
        if self.base < 0:
            raise ValueError("base must be >= 0")
        if self.cap < self.base:
            raise ValueError("cap must be >= base")

    def delay(self, attempt: int) -> float:
        """Delay to wait after failed attempt number `attempt` (1-based)."""
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        return min(self.base * (2 ** (attempt - 1)), self.cap)


DEFAULT_BACKOFF = BackoffPolicy()


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, (TransientError, TimeoutError, ConnectionError))


@dataclass
class RetryResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def retryable(self) -> bool:
        """True when the final error was retryable (i.e. attempts were exhausted)."""
        return self.error is not None and is_retryable(self.error)

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


class RetryExecutor:
    """
    Bounded retry with exponential backoff for network operations.

    - Runs `operation` up to `max_attempts` times in total.
    - Only retryable failures (see `is_retryable`) consume further attempts;
      any other exception is returned immediately after its first occurrence.
    - Never raises on behalf of the operation: the outcome, including the last
      error when attempts are exhausted, is returned as a `RetryResult`.
    """

    def __init__(
        self,
        *,
        sleep: Callable[[float], None] = time.sleep,
        classify: Callable[[BaseException], bool] = is_retryable,
    ) -> None:
        self._sleep = sleep
        self._classify = classify

    def run(
        self,
        operation: Callable[[], T],
        max_attempts: int = 3,
        backoff: Optional[BackoffPolicy] = None,
    ) -> RetryResult[T]:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        policy = backoff or DEFAULT_BACKOFF

        attempt = 0
        last_exc: Optional[BaseException] = None
        while attempt < max_attempts:
            attempt += 1
            try:
                value = operation()
            except Exception as exc:
                last_exc = exc
                if not self._classify(exc):
                    logger.debug("Terminal failure on attempt %d: %s", attempt, exc)
                    return RetryResult(error=exc, attempts=attempt)
                logger.debug("Retryable failure on attempt %d/%d: %s", attempt, max_attempts, exc)
            else:
                return RetryResult(value=value, attempts=attempt)

            if attempt < max_attempts:
                self._sleep(policy.delay(attempt))

        return RetryResult(error=last_exc, attempts=attempt)


__all__ = [
    "BackoffPolicy",
    "DEFAULT_BACKOFF",
    "RetryExecutor",
    "RetryResult",
    "is_retryable",
]
