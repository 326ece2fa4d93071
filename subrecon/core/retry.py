"""
Retry Policy
============

Small value object describing how an operation is retried: how many
attempts, how long to wait between them and which errors qualify.

The delay grows linearly with the attempt number (``base_delay * attempt``)
and is applied only between attempts, never after the last one.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from subrecon.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded backoff applied uniformly by the pipeline and the sweeps."""

    max_attempts: int = 3
    base_delay: float = 2.0
    retryable: Callable[[BaseException], bool] = _is_retryable
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        return self.base_delay * attempt

    async def run(self, operation: Callable[[], Awaitable[T]], *, label: str = "operation") -> T:
        """
        Run ``operation`` until it succeeds, fails terminally or runs out of attempts.

        Non-retryable errors propagate immediately. The last retryable
        error propagates once ``max_attempts`` is exhausted.
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as exc:
                if not self.retryable(exc) or attempt >= self.max_attempts:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                    label,
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                await self.sleep(delay)
                attempt += 1
