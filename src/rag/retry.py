from __future__ import annotations

"""Shared retry policy for calls to external providers."""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


def is_transient_http_error(exc: BaseException) -> bool:
    """Return True for transport failures and retryable HTTP statuses."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in _RETRYABLE_STATUS
    return isinstance(exc, httpx.TransportError)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded attempts with exponential backoff and full jitter."""
    attempts: int = 3
    base_delay: float = 0.25
    max_delay: float = 4.0
    jitter: bool = True
    retry_on: Callable[[BaseException], bool] = field(default=is_transient_http_error)

    def delay_for(self, attempt: int) -> float:
        """Return the sleep before retry number `attempt` (1-based)."""
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if self.jitter:
            return random.uniform(0.0, delay)
        return delay

    async def run(self, operation: Callable[[], Awaitable[T]], label: str = "call") -> T:
        """Await `operation`, retrying while the error is retryable."""
        attempts = max(1, self.attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except Exception as exc:
                if attempt >= attempts or not self.retry_on(exc):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "retry_scheduled",
                    extra={
                        "label": label,
                        "attempt": attempt,
                        "delay": round(delay, 3),
                        "detail": type(exc).__name__,
                    },
                )
                await asyncio.sleep(delay)
        raise AssertionError("unreachable")


NO_RETRY = RetryPolicy(attempts=1)
