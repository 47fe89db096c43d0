"""Tests for the typed resources on top of ApiClient."""

import json

import httpx
import pytest

from krios.resources import ProfileResource, RoomsResource
from krios.services.errors import ServerError


class TestRooms:
    @pytest.mark.asyncio
    async def test_list_rooms_accepts_mongo_ids(self, make_client, backend):
        backend.route(
            "GET",
            "/rooms",
            httpx.Response(
                200,
                json={
                    "rooms": [
                        {"_id": "r1", "name": "Morning", "__v": 0, "streak": 4},
                        {"id": "r2", "name": "Evening", "description": "Wind down"},
                    ]
                },
            ),
        )
        rooms = RoomsResource(make_client())

        result = await rooms.list_rooms()

        assert [r.id for r in result] == ["r1", "r2"]
        assert result[0].streak == 4
        assert result[1].description == "Wind down"

    @pytest.mark.asyncio
    async def test_refresh_skips_cache(self, make_client, backend):
        backend.route("GET", "/rooms", httpx.Response(200, json={"rooms": []}))
        rooms = RoomsResource(make_client())

        await rooms.list_rooms()
        await rooms.list_rooms()
        await rooms.list_rooms(refresh=True)

        assert backend.calls("GET", "/rooms") == 2

    @pytest.mark.asyncio
    async def test_get_room_unwraps_payload(self, make_client, backend):
        backend.route("GET", "/rooms/r1", httpx.Response(200, json={"room": {"id": "r1"}}))

        room = await RoomsResource(make_client()).get_room("r1")

        assert room == {"id": "r1"}

    @pytest.mark.asyncio
    async def test_complete_task_invalidates_rooms(self, make_client, backend):
        backend.route("GET", "/rooms", httpx.Response(200, json={"rooms": []}))
        backend.route("GET", "/rooms/r1", httpx.Response(200, json={"room": {}}))
        backend.route(
            "POST", "/rooms/r1/tasks/t1/complete", httpx.Response(200, json={"points": 15})
        )
        client = make_client()
        rooms = RoomsResource(client)
        await rooms.list_rooms()
        await rooms.get_room("r1")
        local = {"completed": False}
        confirmed = []

        def apply():
            snapshot = dict(local)
            local["completed"] = True
            return snapshot

        result = await rooms.complete_task(
            "r1", "t1", apply, local.update, on_success=confirmed.append
        )

        assert result.success
        assert local == {"completed": True}
        assert confirmed == [{"points": 15}]
        assert not client.state.cache.has_any("/rooms")
        assert not client.state.cache.has_any("/rooms/r1")

    @pytest.mark.asyncio
    async def test_complete_task_failure_rolls_back(self, make_client, backend):
        backend.route("GET", "/rooms", httpx.Response(200, json={"rooms": []}))
        backend.route("POST", "/rooms/r1/tasks/t1/complete", httpx.Response(500))
        client = make_client()
        rooms = RoomsResource(client)
        await rooms.list_rooms()
        local = {"completed": False}

        def apply():
            snapshot = dict(local)
            local["completed"] = True
            return snapshot

        result = await rooms.complete_task("r1", "t1", apply, local.update)

        assert not result.success
        assert isinstance(result.error, ServerError)
        assert local == {"completed": False}
        assert client.state.cache.has("/rooms")
        assert backend.calls("POST", "/rooms/r1/tasks/t1/complete") == 3

    @pytest.mark.asyncio
    async def test_uncomplete_task(self, make_client, backend):
        backend.route("DELETE", "/rooms/r1/tasks/t1/complete", httpx.Response(200, json={}))

        await RoomsResource(make_client()).uncomplete_task("r1", "t1")

        assert backend.calls("DELETE", "/rooms/r1/tasks/t1/complete") == 1


class TestProfile:
    @pytest.mark.asyncio
    async def test_update_profile_drops_cached_profile(self, make_client, backend):
        backend.route(
            "GET",
            "/auth/profile",
            httpx.Response(200, json={"user": {"username": "nova"}}),
            httpx.Response(200, json={"user": {"username": "vega"}}),
        )
        backend.route(
            "PUT", "/auth/profile", httpx.Response(200, json={"user": {"username": "vega"}})
        )
        profile = ProfileResource(make_client())

        assert (await profile.get_profile())["username"] == "nova"
        updated = await profile.update_profile(username="vega")
        after = await profile.get_profile()

        assert updated == {"username": "vega"}
        assert after == {"username": "vega"}
        assert backend.calls("GET", "/auth/profile") == 2
        assert json.loads(backend.last_request("PUT", "/auth/profile").content) == {
            "username": "vega"
        }
