"""
Krios client entry point.
Logs in with credentials from the environment and prints the critical reads.
"""

import asyncio
import os

from loguru import logger

from krios.resources import ProfileResource, RoomsResource
from krios.services import ApiClient, ApiError, describe_error
from krios.settings import Settings


async def main() -> None:
    settings = Settings.from_env()
    logger.info(f"Starting Krios client against {settings.api_base_url}")

    async with ApiClient(settings) as client:
        try:
            email = os.getenv("KRIOS_EMAIL")
            password = os.getenv("KRIOS_PASSWORD")
            if email and password and not client.tokens.is_authenticated:
                await client.login(email, password)

            # Warm anything the persisted tier restored as stale
            await client.revalidate()

            profile = await ProfileResource(client).get_profile()
            logger.info(f"Profile: {profile.get('username', '?')}")

            rooms = await RoomsResource(client).list_rooms()
            for room in rooms:
                logger.info(f"Room {room.id}: {room.name}")

        except ApiError as e:
            friendly = describe_error(e)
            logger.error(f"{friendly.title}: {friendly.message} ({e})")
        finally:
            logger.info(f"Client stats: {client.get_stats()}")


if __name__ == "__main__":
    asyncio.run(main())
