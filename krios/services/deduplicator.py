"""
RequestDeduplicator - Prevents duplicate concurrent requests.

When multiple callers request the same resource simultaneously,
only one actual request is made and the result is shared.
"""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


class RequestDeduplicator:
    """
    Deduplicates concurrent async requests.

    When multiple coroutines request the same key simultaneously,
    only one actual request is made. All callers await the same result
    or the same exception.

    Each caller awaits the shared task through ``asyncio.shield``, so a
    caller cancelling its own await leaves the shared call running. Only
    ``cancel``/``cancel_all`` abort the underlying call.

    Usage:
        dedup = RequestDeduplicator()

        async def fetch_rooms():
            return await dedup.dedupe(
                key="/rooms",
                request_fn=lambda: http_client.get("/rooms"),
            )
    """

    def __init__(self, debug: bool = False):
        self._in_flight: dict[str, asyncio.Task[Any]] = {}
        self._owners: dict[str, Any] = {}
        self._debug = debug
        self._stats = DeduplicatorStats()

    async def dedupe(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
        owner: Any = None,
    ) -> T:
        """
        Execute request with deduplication.

        If a request with the same key is already in flight,
        wait for and return its result instead of making a new request.
        A request that has already settled is never joined.

        Args:
            key: Canonical key for this request
            request_fn: Async function to execute if no duplicate exists
            owner: Recorded for the caller that starts the request, see
                ``cancel_owned``

        Returns:
            Result from request_fn (either fresh or from in-flight request)
        """
        # No await between lookup and registration
        task = self._in_flight.get(key)
        if task is not None:
            self._stats.deduplicated += 1
            self._log(f"JOIN: Waiting for in-flight request: {key[:50]}")
        else:
            self._stats.total += 1
            self._log(f"NEW: Starting request: {key[:50]}")
            task = asyncio.create_task(self._execute_and_cleanup(key, request_fn))
            task.add_done_callback(_mark_retrieved)
            self._in_flight[key] = task
            self._owners[key] = owner

        return await asyncio.shield(task)

    async def _execute_and_cleanup(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
    ) -> T:
        """Execute request and unregister it before the result is published."""
        try:
            return await request_fn()
        finally:
            if self._in_flight.get(key) is asyncio.current_task():
                del self._in_flight[key]
                self._owners.pop(key, None)
            self._log(f"DONE: Request completed: {key[:50]}")

    def cancel(self, key: str) -> bool:
        """Cancel an in-flight request for every caller sharing it."""
        task = self._in_flight.pop(key, None)
        self._owners.pop(key, None)
        if task is None:
            return False
        task.cancel()
        self._log(f"CANCEL: Request cancelled: {key[:50]}")
        return True

    def cancel_all(self) -> int:
        """Cancel all in-flight requests."""
        count = len(self._in_flight)
        for task in self._in_flight.values():
            task.cancel()
        self._in_flight.clear()
        self._owners.clear()
        if count:
            logger.debug(f"Deduplicator cancelled {count} in-flight requests")
        return count

    def cancel_owned(self, owner: Any) -> int:
        """
        Cancel the in-flight requests started by ``owner``.

        Callers from other owners that joined one of them are cancelled too.
        """
        keys = [k for k, o in self._owners.items() if o is owner]
        for key in keys:
            self.cancel(key)
        return len(keys)

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def get_in_flight_count(self) -> int:
        """Get number of in-flight requests."""
        return len(self._in_flight)

    def get_in_flight_keys(self) -> list[str]:
        """Get keys of all in-flight requests."""
        return list(self._in_flight.keys())

    def get_stats(self) -> "DeduplicatorStats":
        """Get deduplication statistics."""
        self._stats.in_flight = len(self._in_flight)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")


def _mark_retrieved(task: asyncio.Task[Any]) -> None:
    # Every caller may have cancelled its own await; the failure is still
    # delivered to anyone who joined, so don't report it as unretrieved.
    if not task.cancelled():
        task.exception()


class DeduplicatorStats:
    """Statistics for request deduplication."""

    def __init__(self):
        self.total: int = 0  # Total unique requests made
        self.deduplicated: int = 0  # Requests that joined an in-flight one
        self.in_flight: int = 0  # Current in-flight requests

    @property
    def dedup_rate(self) -> float:
        """Calculate deduplication rate."""
        total = self.total + self.deduplicated
        if total == 0:
            return 0.0
        return self.deduplicated / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_requests": self.total,
            "deduplicated": self.deduplicated,
            "in_flight": self.in_flight,
            "dedup_rate": f"{self.dedup_rate:.2%}",
        }
