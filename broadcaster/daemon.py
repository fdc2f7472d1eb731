#!/usr/bin/env python3
"""
Overlay Broadcast Daemon

Streams a browser-rendered overlay to one or more RTMP destinations.

Pipeline (acquired in this order, released in reverse):
    1. Xvfb virtual display
    2. Chromium (kiosk) showing the overlay URL
    3. Audio plan (silence or looping playlist manifest)
    4. LiveKit RTMP ingress (optional extra destination)
    5. ffmpeg x11grab -> FLV (tee when there are several destinations)
    6. LiveKit HLS egress (optional recording/playback)

Usage:
    # Run with ./config.json and ./config.local.json
    python -m broadcaster

    # Explicit config, verbose
    python -m broadcaster --config /etc/overlay-broadcast/config.json -v

    # Validate the configuration and print the encoder command
    python -m broadcaster --check-config

    # Control running daemon
    python -m broadcaster --status
    python -m broadcaster --stop

Systemd:
    systemctl --user start overlay-broadcast
    systemctl --user stop overlay-broadcast

Exit codes:
    0  shutdown requested (SIGTERM/SIGINT)
    1  fatal runtime error (display, browser or ffmpeg failure)
    2  configuration error (nothing was started)
"""

import json
import logging
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from broadcaster.audio import AudioSourceResolver, PlaylistPlan, SilencePlan
from broadcaster.base.daemon import BaseDaemon, sd_notify
from broadcaster.browser import OverlayRenderer
from broadcaster.config import PipelineConfig, load_config, mask_url
from broadcaster.display import DisplayAllocator
from broadcaster.egress import EgressController
from broadcaster.encoder import EncodingPipeline, VideoSettings, build_ffmpeg_args, redact_args
from broadcaster.errors import ConfigError
from broadcaster.ingress import IngressProvisioner
from broadcaster.paths import BROADCAST_STATE_FILE, LOCK_DIR
from broadcaster.supervisor import LifecycleSupervisor, PipelineState

logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2


class BroadcastDaemon(BaseDaemon):
    """Runs the overlay broadcast pipeline under a LifecycleSupervisor."""

    name = "broadcast"
    description = "Overlay Broadcast Daemon"

    def __init__(
        self,
        config: PipelineConfig,
        verbose: bool = False,
        lock_dir: Path = LOCK_DIR,
        state_file: Optional[Path] = BROADCAST_STATE_FILE,
        allocator: Optional[DisplayAllocator] = None,
        renderer: Optional[OverlayRenderer] = None,
        audio: Optional[AudioSourceResolver] = None,
        ingress: Optional[IngressProvisioner] = None,
        encoder: Optional[EncodingPipeline] = None,
        egress: Optional[EgressController] = None,
    ):
        super().__init__(verbose=verbose, lock_dir=lock_dir, state_file=state_file)
        self.config = config
        self.supervisor = LifecycleSupervisor()
        self.supervisor.add_listener(self._on_state_change)

        self.allocator = allocator or DisplayAllocator(
            base_display=config.display,
            width=config.width,
            height=config.height,
        )
        self.renderer = renderer or OverlayRenderer(
            config.overlay_url,
            width=config.width,
            height=config.height,
            background=config.background,
            navigation_timeout=config.navigation_timeout,
        )
        self.audio = audio or AudioSourceResolver(config.audio, config.scratch_dir)
        self.ingress = ingress or IngressProvisioner(config.livekit)
        self.encoder = encoder or EncodingPipeline(VideoSettings.from_config(config))
        self.egress = egress or EgressController(config.livekit)
        self.egress.on_playlist = self._on_playlist

        self.display: Optional[str] = None
        self.audio_plan = None
        self.targets: tuple = ()
        self.playlist_url: Optional[str] = None

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def _acquire(self) -> None:
        supervisor = self.supervisor
        config = self.config

        slot = await self.allocator.acquire(supervisor)
        self.display = slot.display
        supervisor.advance(PipelineState.DISPLAY_READY)
        # Give the X server a moment before clients attach
        if await supervisor.sleep(config.display_settle_seconds):
            return

        await self.renderer.acquire(supervisor, slot)
        supervisor.advance(PipelineState.BROWSER_READY)

        self.audio_plan = await self.audio.acquire(supervisor)

        targets = list(config.destinations)
        descriptor = await self.ingress.acquire(supervisor)
        if descriptor is not None:
            targets.append(descriptor.target())
        self.targets = tuple(targets)

        await self.encoder.acquire(supervisor, slot, self.audio_plan, self.targets)
        supervisor.advance(PipelineState.ENCODING)

        if await supervisor.sleep(config.stream_settle_seconds):
            return
        supervisor.advance(PipelineState.STREAMING)
        for target in self.targets:
            logger.info(f"✅ streaming overlay → {mask_url(target.url, config.rtmp_base)}")
        sd_notify("READY=1")

        await self.egress.acquire(supervisor)

    async def run_daemon(self) -> int:
        logger.info(f"Config: {self.config.summary()}")
        return await self.supervisor.run(self._acquire)

    def request_shutdown(self, reason: str = "requested"):
        super().request_shutdown(reason)
        self.supervisor.request_shutdown(reason)

    # =========================================================================
    # State reporting
    # =========================================================================

    def _on_playlist(self, url: str) -> None:
        self.playlist_url = url
        self.write_state()

    def _on_state_change(self, state: PipelineState) -> None:
        sd_notify(f"STATUS={state.value}")
        self.write_state()

    def get_state(self) -> dict:
        audio = "none"
        if isinstance(self.audio_plan, SilencePlan):
            audio = "silence"
        elif isinstance(self.audio_plan, PlaylistPlan):
            audio = f"playlist ({len(self.audio_plan.tracks)} tracks)"
        return {
            "state": self.supervisor.state.value,
            "display": self.display,
            "overlayUrl": self.config.overlay_url,
            "destinations": [mask_url(t.url, self.config.rtmp_base) for t in self.targets],
            "ingress": self.ingress.descriptor is not None,
            "audio": audio,
            "playlistUrl": self.playlist_url,
            "exitCode": self.supervisor.exit_code,
        }

    # =========================================================================
    # CLI
    # =========================================================================

    @classmethod
    def create_argument_parser(cls):
        parser = super().create_argument_parser()
        parser.add_argument(
            "-c",
            "--config",
            type=Path,
            default=Path("config.json"),
            help="Base configuration document (default: ./config.json)",
        )
        parser.add_argument(
            "--local-config",
            type=Path,
            default=None,
            help="Local override document (default: config.local.json beside --config)",
        )
        parser.add_argument(
            "--check-config",
            action="store_true",
            help="Validate the configuration, print the encoder command and exit",
        )
        return parser

    @classmethod
    def check_config(cls, config: PipelineConfig) -> int:
        """Print a masked summary and the ffmpeg command for the config."""
        print(json.dumps(config.summary(), indent=2))
        resolver = AudioSourceResolver(config.audio, config.scratch_dir)
        plan = resolver.resolve()
        try:
            args = build_ffmpeg_args(
                f":{config.display}",
                plan,
                config.destinations,
                VideoSettings.from_config(config),
            )
            print(" ".join(redact_args(args, config.destinations)))
        finally:
            if isinstance(plan, PlaylistPlan):
                plan.remove_manifest()
        return 0

    @classmethod
    def main(cls, args: Optional[list] = None):
        parser = cls.create_argument_parser()
        parsed = parser.parse_args(args)

        if parsed.status:
            sys.exit(cls.handle_status(state_file=BROADCAST_STATE_FILE))
        if parsed.stop:
            sys.exit(cls.handle_stop())

        cls.configure_logging(verbose=parsed.verbose)

        config_path = parsed.config.expanduser()
        load_dotenv(config_path.resolve().parent / ".env")
        try:
            config = load_config(config_path, parsed.local_config)
        except ConfigError as e:
            for error in e.errors:
                logger.error(f"Config: {error}")
            sys.exit(EXIT_CONFIG_ERROR)

        if parsed.check_config:
            sys.exit(cls.check_config(config))

        daemon = cls(config, verbose=parsed.verbose)
        sys.exit(daemon.run())


def main(args: Optional[list] = None):
    BroadcastDaemon.main(args)


if __name__ == "__main__":
    main()
