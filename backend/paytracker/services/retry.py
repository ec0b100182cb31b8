"""Retry policy and request spacing shared by the upstream adapters."""

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog

from paytracker.services.errors import RateLimitedError, UpstreamError, UpstreamUnavailableError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def is_transient(exc: Exception) -> bool:
    return isinstance(exc, UpstreamError)


@dataclass
class RetryPolicy:
    """Bounded attempts with exponential backoff.

    Delay before attempt ``n + 1`` is ``backoff_base * 2 ** (n - 1)`` capped at
    ``backoff_max``; a ``RateLimitedError`` carrying ``retry_after`` waits at
    least that long. Non-retryable errors propagate immediately.
    """

    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 60.0
    retryable: Callable[[Exception], bool] = is_transient
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int, exc: Exception | None = None) -> float:
        delay = min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)
        retry_after = getattr(exc, "retry_after", None)
        if isinstance(exc, RateLimitedError) and retry_after:
            delay = max(delay, float(retry_after))
        return delay

    def call(self, func: Callable[..., T], *args: Any, operation: str = "", **kwargs: Any) -> T:
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if not self.retryable(e):
                    raise
                last_error = e
                logger.warning(
                    "Upstream call failed",
                    operation=operation or getattr(func, "__name__", "call"),
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error=str(e)[:200],
                )
                if attempt < self.max_attempts:
                    self.sleep(self.delay_for(attempt, e))
        raise UpstreamUnavailableError(
            f"{operation or 'upstream call'} failed after {self.max_attempts} attempts: {last_error}"
        ) from last_error


class RateLimiter:
    """One permit per ``min_interval`` seconds; ``acquire`` blocks until granted."""

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = max(0.0, min_interval)
        self._clock = clock
        self._sleep = sleep
        self._next_allowed: float | None = None

    def acquire(self) -> float:
        """Wait for the next permit. Returns the seconds spent waiting."""
        now = self._clock()
        waited = 0.0
        if self._next_allowed is not None and now < self._next_allowed:
            waited = self._next_allowed - now
            self._sleep(waited)
            now = self._next_allowed
        self._next_allowed = now + self.min_interval
        return waited
