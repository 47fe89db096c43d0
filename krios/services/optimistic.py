"""
OptimisticUpdateCoordinator - apply locally first, roll back if the server refuses.

Snapshots live in a table keyed by operation id. Starting a second operation
under an id that is still pending replaces the first one's snapshot, so only
the most recent snapshot for an id can be restored; callers that need more
must serialize operations per id.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass
class OptimisticOperation:
    """A pending optimistic mutation."""

    op_id: str
    snapshot: Any
    rollback: Callable[[Any], None]


@dataclass
class OptimisticResult(Generic[T]):
    """Outcome of ``run``; exactly one of ``data``/``error`` is meaningful."""

    success: bool
    data: T | None = None
    error: Exception | None = None


class OptimisticUpdateCoordinator:
    """
    Usage:
        coordinator = OptimisticUpdateCoordinator()

        def apply():
            previous = dict(state)
            state["completed"] = True
            return previous

        result = await coordinator.run(
            "complete-task:42",
            apply,
            lambda: client.post("/rooms/1/tasks/42/complete"),
            lambda snapshot: state.update(snapshot),
        )
        if not result.success:
            show(result.error)
    """

    def __init__(self):
        self._operations: dict[str, OptimisticOperation] = {}

    async def run(
        self,
        op_id: str,
        apply_locally: Callable[[], Any],
        remote_call: Callable[[], Awaitable[T]],
        rollback: Callable[[Any], None],
        on_success: Callable[[T], None] | None = None,
    ) -> OptimisticResult[T]:
        """
        Apply a local mutation, then confirm it remotely.

        Never raises for a failed remote call: the local state has already
        been restored when the failure result is returned.
        """
        try:
            snapshot = apply_locally()
        except Exception as e:
            logger.warning(f"Optimistic operation '{op_id}' could not apply locally: {e}")
            return OptimisticResult(success=False, error=e)

        self._operations[op_id] = OptimisticOperation(op_id, snapshot, rollback)

        try:
            result = await remote_call()
        except asyncio.CancelledError:
            self._rollback(op_id, "cancelled")
            raise
        except Exception as e:
            self._rollback(op_id, str(e))
            return OptimisticResult(success=False, error=e)

        self._operations.pop(op_id, None)
        if on_success is not None:
            try:
                on_success(result)
            except Exception:
                logger.exception(f"on_success callback for '{op_id}' failed")
        return OptimisticResult(success=True, data=result)

    def _rollback(self, op_id: str, reason: str) -> None:
        operation = self._operations.pop(op_id, None)
        if operation is None:
            logger.warning(f"Optimistic operation '{op_id}' failed with no snapshot left")
            return

        logger.info(f"Optimistic operation '{op_id}' rolled back: {reason}")
        try:
            operation.rollback(operation.snapshot)
        except Exception:
            logger.exception(f"Rollback for '{op_id}' failed")

    def has_pending(self, op_id: str) -> bool:
        return op_id in self._operations

    def pending_ids(self) -> list[str]:
        return list(self._operations)
