"""
Rooms and their daily tasks.
"""

from typing import Any, Callable

from pydantic import BaseModel, ConfigDict

from krios.resources.base import BaseResource
from krios.services.optimistic import OptimisticResult

ROOMS_PATH = "/rooms"


class RoomSummary(BaseModel):
    """Room as listed on the home screen."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    name: str
    description: str | None = None


def _to_summary(raw: dict[str, Any]) -> RoomSummary:
    # The backend sends either "id" or Mongo-style "_id"
    fields = {k: v for k, v in raw.items() if not k.startswith("_")}
    fields["id"] = str(raw.get("id") or raw.get("_id"))
    return RoomSummary.model_validate(fields)


class RoomsResource(BaseResource):
    """Room list, room detail and task completion."""

    async def list_rooms(self, refresh: bool = False) -> list[RoomSummary]:
        """
        Fetch the current user's rooms.

        Args:
            refresh: Skip the cache (pull-to-refresh)
        """
        result = await self.client.get(ROOMS_PATH, bypass_cache=refresh)
        data = result.data or {}
        rooms = data.get("rooms", []) if isinstance(data, dict) else data
        return [_to_summary(r) for r in rooms]

    async def get_room(self, room_id: str, refresh: bool = False) -> dict[str, Any]:
        result = await self.client.get(f"{ROOMS_PATH}/{room_id}", bypass_cache=refresh)
        data = result.data or {}
        return data.get("room", data) if isinstance(data, dict) else data

    async def complete_task(
        self,
        room_id: str,
        task_id: str,
        apply_locally: Callable[[], Any],
        rollback: Callable[[Any], None],
        on_success: Callable[[Any], None] | None = None,
    ) -> OptimisticResult[Any]:
        """
        Mark a task complete, updating local state before the server answers.

        On success the room list and every room-detail read are invalidated.
        """

        async def remote_call() -> Any:
            result = await self.client.post(
                f"{ROOMS_PATH}/{room_id}/tasks/{task_id}/complete",
                invalidates=[ROOMS_PATH],
            )
            return result.data

        return await self.client.optimistic.run(
            f"complete-task:{room_id}:{task_id}",
            apply_locally,
            remote_call,
            rollback,
            on_success,
        )

    async def uncomplete_task(self, room_id: str, task_id: str) -> Any:
        result = await self.client.delete(
            f"{ROOMS_PATH}/{room_id}/tasks/{task_id}/complete",
            invalidates=[ROOMS_PATH],
        )
        return result.data
