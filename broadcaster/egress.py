"""
HLS Egress Control.

Optionally asks LiveKit for a room-composite recording written as
segmented HLS, and publishes the playlist URL once the provider reports it.

The start call happens once. When the job is accepted but has no playlist
location yet, the job is polled with capped backoff (2s, 4s, 8s, 15s, ...)
until a URL appears or the pipeline shuts down. Recording is supplementary:
every failure here is a warning.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from livekit import api

from broadcaster.cloud import ApiFactory, create_livekit_api, livekit_client
from broadcaster.config import LiveKitSettings
from broadcaster.retry import RetryPolicy

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[bool]]


async def _plain_sleep(delay: float) -> bool:
    await asyncio.sleep(delay)
    return False


def playlist_url_from(info) -> Optional[str]:
    """Extract the best available playlist location from an EgressInfo."""
    results = list(getattr(info, "segment_results", None) or [])
    legacy = getattr(info, "segments", None)
    if legacy is not None:
        results.append(legacy)

    for segments in results:
        for attr in ("live_playlist_location", "playlist_location"):
            url = getattr(segments, attr, "")
            if url:
                return url
    return None


@dataclass
class EgressHandle:
    """A running egress job."""

    egress_id: str
    controller: "EgressController" = field(repr=False)
    playlist_url: Optional[str] = None
    attempts: int = 0

    async def cancel(self) -> None:
        await self.controller.stop()


class EgressController:
    """Starts, polls and stops the HLS egress job."""

    def __init__(
        self,
        settings: LiveKitSettings,
        api_factory: ApiFactory = create_livekit_api,
        sleep: Optional[SleepFn] = None,
        on_playlist: Optional[Callable[[str], None]] = None,
    ):
        self.settings = settings
        self._api_factory = api_factory
        self._sleep = sleep or _plain_sleep
        self.on_playlist = on_playlist
        egress = settings.egress
        self.policy = RetryPolicy(
            initial_delay=egress.initial_delay,
            max_delay=egress.max_delay,
            max_attempts=egress.max_attempts,
        )
        self.handle: Optional[EgressHandle] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._stopped = False

    def build_start_request(self) -> "api.RoomCompositeEgressRequest":
        egress = self.settings.egress
        fields = {
            "filename_prefix": egress.output_path,
            "playlist_name": egress.playlist_name,
            "segment_duration": egress.segment_duration,
        }
        if egress.live_playlist_name:
            fields["live_playlist_name"] = egress.live_playlist_name
        return api.RoomCompositeEgressRequest(
            room_name=self.settings.room_name,
            segment_outputs=[api.SegmentedFileOutput(**fields)],
        )

    def _publish(self, handle: EgressHandle, url: str) -> None:
        handle.playlist_url = url
        logger.info(f"HLS playlist ready: {url}")
        if self.on_playlist is not None:
            try:
                self.on_playlist(url)
            except Exception as e:
                logger.warning(f"Playlist callback failed: {e}")

    async def start(self) -> Optional[EgressHandle]:
        """
        Request the egress job once.

        Returns:
            EgressHandle when the provider accepted the job, None otherwise
        """
        if not self.settings.egress_enabled:
            logger.debug("HLS egress disabled")
            return None

        try:
            async with livekit_client(self.settings, self._api_factory) as lkapi:
                info = await lkapi.egress.start_room_composite_egress(self.build_start_request())
        except Exception as e:
            logger.warning(f"Failed to start HLS egress: {e}")
            return None

        self.handle = EgressHandle(egress_id=info.egress_id, controller=self)
        logger.info(f"HLS egress started: {info.egress_id}")

        url = playlist_url_from(info)
        if url:
            self._publish(self.handle, url)
        else:
            self._poll_task = asyncio.create_task(self._poll_playlist(), name="egress-poll")
        return self.handle

    async def _fetch_info(self, egress_id: str):
        async with livekit_client(self.settings, self._api_factory) as lkapi:
            listing = await lkapi.egress.list_egress(api.ListEgressRequest(egress_id=egress_id))
        return listing.items[0] if listing.items else None

    async def _poll_playlist(self) -> Optional[str]:
        """Poll the job with backoff until its playlist URL is known."""
        handle = self.handle
        while not self._stopped and not self.policy.exhausted:
            delay = self.policy.next_delay()
            handle.attempts = self.policy.attempt
            logger.info(f"HLS playlist pending; checking again in {delay:.0f}s (attempt {handle.attempts})")
            if await self._sleep(delay) or self._stopped:
                return None

            try:
                info = await self._fetch_info(handle.egress_id)
            except Exception as e:
                logger.warning(f"HLS egress status check failed: {e}")
                continue

            url = playlist_url_from(info) if info is not None else None
            if url:
                self._publish(handle, url)
                return url

        if self.policy.exhausted:
            logger.warning(f"HLS playlist not ready after {self.policy.attempt} attempts; giving up")
        return None

    async def stop(self) -> None:
        """Cancel polling and ask the provider to stop the job."""
        self._stopped = True
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
            await asyncio.gather(self._poll_task, return_exceptions=True)

        handle, self.handle = self.handle, None
        if handle is None:
            return
        try:
            async with livekit_client(self.settings, self._api_factory) as lkapi:
                await lkapi.egress.stop_egress(api.StopEgressRequest(egress_id=handle.egress_id))
            logger.info(f"HLS egress stopped: {handle.egress_id}")
        except Exception as e:
            logger.warning(f"Failed to stop HLS egress {handle.egress_id}: {e}")

    async def acquire(self, supervisor) -> Optional[EgressHandle]:
        if self._sleep is _plain_sleep:
            self._sleep = supervisor.sleep
        handle = await self.start()
        if handle is not None:
            supervisor.register_cleanup("egress", handle.cancel)
        return handle
