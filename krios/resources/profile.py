"""
Current user's profile.
"""

from typing import Any

from krios.resources.base import BaseResource

PROFILE_PATH = "/auth/profile"


class ProfileResource(BaseResource):
    async def get_profile(self, refresh: bool = False) -> dict[str, Any]:
        result = await self.client.get(PROFILE_PATH, bypass_cache=refresh)
        data = result.data or {}
        return data.get("user", data) if isinstance(data, dict) else data

    async def update_profile(self, **fields: Any) -> dict[str, Any]:
        """Update profile fields and drop the cached profile."""
        result = await self.client.put(
            PROFILE_PATH, json=fields, invalidates=[PROFILE_PATH]
        )
        data = result.data or {}
        return data.get("user", data) if isinstance(data, dict) else data
