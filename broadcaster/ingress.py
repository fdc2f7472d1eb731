"""
Cloud Ingress Provisioning.

Ensures exactly one LiveKit RTMP ingress exists for the configured
participant identity in the room:
- existing with a push URL: reused as-is
- existing without a push URL (stale): deleted, then recreated
- absent: created

Ingress is an optional destination. Missing credentials or API failures
return None and the pipeline streams to its direct destinations only.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from livekit import api

from broadcaster.cloud import ApiFactory, create_livekit_api, livekit_client
from broadcaster.config import EncodingTarget, LiveKitSettings, TargetKind, join_url

logger = logging.getLogger(__name__)


class IngressState(str, Enum):
    VALID = "valid"
    STALE = "stale"
    ABSENT = "absent"


@dataclass
class IngressDescriptor:
    """A provisioned ingress endpoint."""

    room_name: str
    identity: str
    ingress_id: str
    push_url: str
    stream_key: Optional[str] = None
    state: IngressState = IngressState.VALID
    reused: bool = False

    @property
    def publish_url(self) -> str:
        """Push URL with the stream key appended when there is one."""
        if self.stream_key:
            return join_url(self.push_url, self.stream_key)
        return self.push_url

    def target(self) -> EncodingTarget:
        return EncodingTarget(url=self.publish_url, kind=TargetKind.INGRESS, best_effort=True)


def _video_options(preset: Optional[str]) -> Optional["api.IngressVideoOptions"]:
    if not preset:
        return None
    try:
        value = api.IngressVideoEncodingPreset.Value(preset)
    except ValueError:
        logger.warning(f"Unknown ingress video preset {preset!r}; using provider default")
        return None
    return api.IngressVideoOptions(preset=value)


def classify(info) -> IngressState:
    return IngressState.VALID if getattr(info, "url", "") else IngressState.STALE


class IngressProvisioner:
    """Idempotently provisions the RTMP ingress for the broadcast identity."""

    def __init__(self, settings: LiveKitSettings, api_factory: ApiFactory = create_livekit_api):
        self.settings = settings
        self._api_factory = api_factory
        self.descriptor: Optional[IngressDescriptor] = None

    def _describe(self, info, reused: bool) -> IngressDescriptor:
        return IngressDescriptor(
            room_name=self.settings.room_name,
            identity=self.settings.ingress.identity,
            ingress_id=info.ingress_id,
            push_url=info.url,
            stream_key=info.stream_key or None,
            state=IngressState.VALID,
            reused=reused,
        )

    def build_create_request(self) -> "api.CreateIngressRequest":
        ingress = self.settings.ingress
        fields = {
            "input_type": api.IngressInput.RTMP_INPUT,
            "name": ingress.name,
            "room_name": self.settings.room_name,
            "participant_identity": ingress.identity,
            "participant_name": ingress.name,
        }
        video = _video_options(ingress.video_preset)
        if video is not None:
            fields["video"] = video
        return api.CreateIngressRequest(**fields)

    async def _provision(self, lkapi) -> IngressDescriptor:
        identity = self.settings.ingress.identity
        room = self.settings.room_name

        listing = await lkapi.ingress.list_ingress(api.ListIngressRequest(room_name=room))
        matches = [info for info in listing.items if info.participant_identity == identity]

        keep = next((info for info in matches if classify(info) == IngressState.VALID), None)
        for info in matches:
            if info is keep:
                continue
            reason = "stale (no push URL)" if classify(info) == IngressState.STALE else "duplicate"
            logger.info(f"Deleting {reason} ingress {info.ingress_id} for {identity}")
            try:
                await lkapi.ingress.delete_ingress(api.DeleteIngressRequest(ingress_id=info.ingress_id))
            except Exception as e:
                # Nothing reusable: do not create beside a stale ingress we could not remove
                if keep is None:
                    raise
                logger.warning(f"Failed to delete {reason} ingress {info.ingress_id}: {e}")

        if keep is not None:
            logger.info(f"Reusing ingress {keep.ingress_id} for {identity} in room {room}")
            return self._describe(keep, reused=True)

        logger.info(f"Creating ingress for {identity} in room {room}")
        created = await lkapi.ingress.create_ingress(self.build_create_request())
        if not created.url:
            raise RuntimeError(f"Ingress {created.ingress_id} was created without a push URL")
        return self._describe(created, reused=False)

    async def ensure(self) -> Optional[IngressDescriptor]:
        """
        Make sure the ingress exists.

        Returns:
            IngressDescriptor, or None when ingress is not configured or unavailable
        """
        if not self.settings.ingress_enabled:
            logger.info("Ingress not configured; streaming to direct destinations only")
            return None

        try:
            async with livekit_client(self.settings, self._api_factory) as lkapi:
                self.descriptor = await self._provision(lkapi)
        except Exception as e:
            logger.warning(f"Ingress unavailable: {e}")
            self.descriptor = None
        return self.descriptor

    async def release(self) -> None:
        """Forget the descriptor; delete the remote ingress when configured to."""
        descriptor, self.descriptor = self.descriptor, None
        if descriptor is None or not self.settings.ingress.delete_on_stop:
            return
        try:
            async with livekit_client(self.settings, self._api_factory) as lkapi:
                await lkapi.ingress.delete_ingress(api.DeleteIngressRequest(ingress_id=descriptor.ingress_id))
            logger.info(f"Deleted ingress {descriptor.ingress_id}")
        except Exception as e:
            logger.warning(f"Failed to delete ingress {descriptor.ingress_id}: {e}")

    async def acquire(self, supervisor) -> Optional[IngressDescriptor]:
        descriptor = await self.ensure()
        if descriptor is not None:
            supervisor.register_cleanup("ingress", self.release)
        return descriptor
