"""
LiveKit API access.

Creates short-lived LiveKitAPI clients for the ingress and egress services.
The client owns an aiohttp session, so it is opened and closed inside the
running event loop for each batch of calls.

Usage:
    async with livekit_client(settings) as lkapi:
        await lkapi.ingress.list_ingress(api.ListIngressRequest(room_name=room))
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from livekit import api

from broadcaster.config import LiveKitSettings

logger = logging.getLogger(__name__)

ApiFactory = Callable[[LiveKitSettings], "api.LiveKitAPI"]


def create_livekit_api(settings: LiveKitSettings) -> "api.LiveKitAPI":
    return api.LiveKitAPI(
        url=settings.host,
        api_key=settings.api_key,
        api_secret=settings.api_secret,
    )


@asynccontextmanager
async def livekit_client(
    settings: LiveKitSettings,
    factory: ApiFactory = create_livekit_api,
) -> AsyncIterator["api.LiveKitAPI"]:
    client = factory(settings)
    try:
        yield client
    finally:
        try:
            await client.aclose()
        except Exception as e:
            logger.debug(f"LiveKit client close failed: {e}")
