"""
Encoding Pipeline.

Builds and runs the ffmpeg process that captures the virtual display,
mixes in the audio plan and sends FLV to every destination.

- One destination: plain FLV output.
- Several destinations: the tee muxer, one slave per destination; slaves
  marked best-effort use onfail=ignore so one dead relay does not take the
  others down.

build_ffmpeg_args() is pure so the command line can be checked without
spawning anything.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from broadcaster.audio import AudioPlan, PlaylistPlan, SilencePlan
from broadcaster.config import EncodingTarget, PipelineConfig
from broadcaster.display import DisplaySlot
from broadcaster.process import ProcessHandle, spawn_process

logger = logging.getLogger(__name__)

AUDIO_SAMPLE_RATE = 44100
VIDEO_BUFSIZE = "2M"

SpawnFn = Callable[[str, Sequence[str]], Awaitable[ProcessHandle]]


@dataclass(frozen=True)
class VideoSettings:
    """Capture and encode settings for the video stream."""

    width: int = 1920
    height: int = 1080
    fps: int = 30
    bitrate: str = "5000k"
    audio_bitrate: str = "128k"
    filter: Optional[str] = None

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "VideoSettings":
        return cls(
            width=config.width,
            height=config.height,
            fps=config.fps,
            bitrate=config.video_bitrate,
            audio_bitrate=config.audio_bitrate,
            filter=config.video_filter,
        )

    @property
    def filter_chain(self) -> str:
        if self.filter:
            return self.filter
        # Even dimensions for yuv420p, then back to the output size
        return f"crop=trunc(iw/2)*2:trunc(ih/2)*2:0:0,scale={self.width}:{self.height}:flags=bicubic"


def video_input_args(display: str, video: VideoSettings) -> list[str]:
    return [
        "-f", "x11grab",
        "-draw_mouse", "0",
        "-video_size", f"{video.width}x{video.height}",
        "-framerate", str(video.fps),
        "-i", display,
    ]


def audio_input_args(audio: AudioPlan) -> list[str]:
    if isinstance(audio, PlaylistPlan):
        return [
            "-re",
            "-stream_loop", "-1",
            "-f", "concat",
            "-safe", "0",
            "-i", str(audio.manifest),
        ]
    if isinstance(audio, SilencePlan):
        return ["-f", "lavfi", "-i", audio.lavfi_source]
    raise TypeError(f"Unsupported audio plan: {audio!r}")


def codec_args(video: VideoSettings) -> list[str]:
    return [
        "-vf", video.filter_chain,
        "-c:v", "libx264",
        "-pix_fmt", "yuv420p",
        "-preset", "veryfast",
        "-tune", "zerolatency",
        "-b:v", video.bitrate,
        "-maxrate", video.bitrate,
        "-bufsize", VIDEO_BUFSIZE,
        "-g", str(video.fps * 2),
        "-keyint_min", str(video.fps),
        "-c:a", "aac",
        "-b:a", video.audio_bitrate,
        "-ar", str(AUDIO_SAMPLE_RATE),
        "-ac", "2",
    ]


def escape_tee_url(url: str) -> str:
    """Escape characters the tee muxer treats as syntax."""
    for char in ("\\", "|", "[", "]"):
        url = url.replace(char, f"\\{char}")
    return url


def tee_slave(target: EncodingTarget) -> str:
    options = "f=flv:onfail=ignore" if target.best_effort else "f=flv"
    return f"[{options}]{escape_tee_url(target.url)}"


def output_args(targets: Sequence[EncodingTarget]) -> list[str]:
    """
    Output section of the command line.

    Raises:
        ValueError: If there is no target
    """
    if not targets:
        raise ValueError("At least one encoding target is required")

    maps = ["-map", "0:v", "-map", "1:a"]
    if len(targets) == 1:
        return maps + ["-f", "flv", targets[0].url]

    spec = "|".join(tee_slave(target) for target in targets)
    return maps + ["-flags", "+global_header", "-f", "tee", spec]


def build_ffmpeg_args(
    display: str,
    audio: AudioPlan,
    targets: Sequence[EncodingTarget],
    video: VideoSettings,
    binary: str = "ffmpeg",
) -> list[str]:
    """Full ffmpeg argv for capturing `display` and streaming to `targets`."""
    return (
        [binary, "-hide_banner", "-loglevel", "info", "-nostats"]
        + video_input_args(display, video)
        + audio_input_args(audio)
        + codec_args(video)
        + output_args(targets)
    )


def redact_args(args: Sequence[str], targets: Sequence[EncodingTarget]) -> list[str]:
    """Copy of `args` with destination URLs masked, for logging."""
    redacted = []
    for arg in args:
        for target in targets:
            arg = arg.replace(escape_tee_url(target.url), target.masked_url)
            arg = arg.replace(target.url, target.masked_url)
        redacted.append(arg)
    return redacted


class EncodingPipeline:
    """Spawns and owns the ffmpeg capture/encode process."""

    def __init__(self, video: VideoSettings, binary: str = "ffmpeg", spawn: SpawnFn = spawn_process):
        self.video = video
        self.binary = binary
        self._spawn = spawn
        self.process: Optional[ProcessHandle] = None
        self.targets: tuple[EncodingTarget, ...] = ()

    def build_args(self, slot: DisplaySlot, audio: AudioPlan, targets: Sequence[EncodingTarget]) -> list[str]:
        return build_ffmpeg_args(slot.display, audio, targets, self.video, self.binary)

    async def start(self, slot: DisplaySlot, audio: AudioPlan, targets: Sequence[EncodingTarget]) -> ProcessHandle:
        args = self.build_args(slot, audio, targets)
        mode = "tee" if len(targets) > 1 else "single output"
        logger.info(f"Starting ffmpeg ({mode}, {len(targets)} destination(s))")
        logger.debug(f"ffmpeg command: {' '.join(redact_args(args, targets))}")
        self.targets = tuple(targets)
        self.process = await self._spawn("ffmpeg", args)
        return self.process

    async def stop(self) -> None:
        if self.process is not None:
            await self.process.terminate()

    async def acquire(
        self,
        supervisor,
        slot: DisplaySlot,
        audio: AudioPlan,
        targets: Sequence[EncodingTarget],
    ) -> ProcessHandle:
        process = await self.start(slot, audio, targets)
        supervisor.register_cleanup("ffmpeg", self.stop)
        supervisor.monitor("ffmpeg", process.wait(), critical=True)
        return process
