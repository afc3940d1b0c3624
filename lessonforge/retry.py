"""
retry.py - Transient-failure classification and exponential backoff.

A failure is retried only when it is transient: rate limiting, quota
exhaustion, HTTP 429, "too many requests", or a request timeout. The
delay before retry n (0-based) is

    base_delay * 2**n + uniform(0, max_jitter)

The jitter desynchronizes workers that were throttled at the same
moment. Anything else (bad input, unparseable output, programming
errors) propagates on the first failure.
"""

import asyncio
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

from lessonforge.providers.base import RateLimitError
from lessonforge.utils import log_message

T = TypeVar("T")

TRANSIENT_MARKERS = (
    "rate limit",
    "rate-limit",
    "429",
    "too many requests",
    "quota",
    "resource exhausted",
    "resource_exhausted",
    "free credits temporarily",
    "timed out",
    "timeout",
)


def is_transient_error(error: BaseException) -> bool:
    """Return True if waiting and retrying could make this error go away."""
    if isinstance(error, (RateLimitError, TimeoutError, asyncio.TimeoutError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


@dataclass
class RetryPolicy:
    """
    Bounded exponential backoff with jitter for transient failures.

    Attributes:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1)
        base_delay: Backoff base in seconds
        max_jitter: Upper bound of the uniform random jitter in seconds
        sleep: Awaitable sleep, injectable for tests
        rand: Source of uniform [0, 1) values for jitter
        classify: Predicate deciding whether an error is retryable
        log_file: RUN_LOG.txt path, or None for stderr only
    """
    max_retries: int = 6
    base_delay: float = 5.0
    max_jitter: float = 1.0
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    rand: Callable[[], float] = random.random
    classify: Callable[[BaseException], bool] = is_transient_error
    log_file: Path | None = field(default=None, repr=False)

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_jitter < 0:
            raise ValueError("base_delay and max_jitter must be >= 0")

    def delay_for(self, retry_index: int) -> float:
        """Seconds to wait before retry number retry_index (0-based)."""
        return self.base_delay * (2 ** retry_index) + self.rand() * self.max_jitter

    async def call(self, label: str, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run operation, retrying transient failures with backoff.

        Args:
            label: Human-readable name used in log lines
            operation: Zero-argument coroutine factory; called once per attempt

        Returns:
            The first successful result

        Raises:
            The last error once retries are exhausted, or the first
            non-transient error immediately
        """
        for attempt in range(self.max_retries + 1):
            try:
                return await operation()
            except Exception as e:
                if attempt >= self.max_retries or not self.classify(e):
                    raise
                delay = self.delay_for(attempt)
                log_message(
                    self.log_file, "RATE_LIMIT",
                    f"{label} - retry {attempt + 1}/{self.max_retries} in {delay:.1f}s ({_short(e)})",
                )
                await self.sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover


def _short(error: BaseException, limit: int = 120) -> str:
    text = f"{type(error).__name__}: {error}"
    return text if len(text) <= limit else text[:limit - 3] + "..."
