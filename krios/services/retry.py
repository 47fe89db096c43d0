"""
Retry policy and the middleware that applies it.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

from loguru import logger

from krios.services.errors import (
    ApiError,
    NetworkError,
    RateLimitError,
    ServerError,
)
from krios.services.middleware import ApiRequest, ApiResponse, Handler
from krios.services.rate_limit import RateLimitGuard


@dataclass
class RetryPolicy:
    """Bounded linear backoff."""

    max_retries: int = 2  # Retries beyond the initial attempt
    base_delay: float = 1.0  # Seconds, multiplied by the attempt number
    rate_limit_delay: float = 3.0  # Minimum wait after a 429

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def should_retry(self, error: Exception) -> bool:
        """Network failures, timeouts, 5xx and 429 are retryable."""
        return isinstance(error, (NetworkError, ServerError, RateLimitError))

    def next_delay(self, attempt: int, error: Exception) -> float:
        """Seconds to wait before retry number ``attempt`` (1-based)."""
        delay = self.base_delay * attempt
        if isinstance(error, RateLimitError):
            delay = max(delay, self.rate_limit_delay)
        return delay


class RetryMiddleware:
    """
    Re-issues retryable failures until the policy's attempts run out.

    A 429 also starts the guard's cooldown. When the request has a cached
    copy to fall back on at that moment, the 429 is raised straight away
    instead of being retried. Once attempts are exhausted the last error is
    re-raised unchanged.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        guard: RateLimitGuard | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.policy = policy
        self._guard = guard
        self._sleep = sleep

    async def __call__(self, request: ApiRequest, next_handler: Handler) -> ApiResponse:
        while True:
            try:
                return await next_handler(request)
            except ApiError as e:
                if isinstance(e, RateLimitError):
                    if self._guard is not None:
                        self._guard.record_rate_limited(e.retry_after)
                    if request.fallback_available and request.fallback_available():
                        raise

                if (
                    not self.policy.should_retry(e)
                    or request.retry_count >= self.policy.max_retries
                ):
                    raise

                request.retry_count += 1
                delay = self.policy.next_delay(request.retry_count, e)
                logger.info(
                    f"Retrying {request.method} {request.path} in {delay:.1f}s "
                    f"(retry {request.retry_count}/{self.policy.max_retries}) "
                    f"after {e.category.value}: {e}"
                )
                await self._sleep(delay)
