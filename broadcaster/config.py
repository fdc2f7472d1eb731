"""
Broadcast Configuration.

Resolves the pipeline configuration from two documents:
- config.json: base configuration (checked in, shared)
- config.local.json: local override (stream keys, credentials)

Values are layered per field: built-in defaults, then base, then override.
Top-level keys are replaced wholesale except the nested blocks listed in
NESTED_SECTIONS, which merge field by field.

Usage:
    from broadcaster.config import load_config

    config = load_config(Path("config.json"))
    print(config.display, config.destinations)
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from broadcaster.errors import ConfigError
from broadcaster.paths import SCRATCH_DIR

logger = logging.getLogger(__name__)

# Unfilled template values such as "YOUR-STREAM-KEY"
PLACEHOLDER_PATTERN = re.compile(r"YOUR[-_][A-Z0-9_-]*", re.IGNORECASE)

AUDIO_MODES = ("playlist", "silence")

DEFAULT_AUDIO_EXTENSIONS = (".mp3", ".m4a", ".aac", ".wav", ".flac", ".ogg", ".opus")

DEFAULTS: dict[str, Any] = {
    "overlayUrl": "http://localhost:3000/overlay/live?layout=compact",
    "display": ":99",
    "width": 1920,
    "height": 1080,
    "fps": 30,
    "videoBitrate": "5000k",
    "audioBitrate": "128k",
    "videoFilter": None,
    "background": "#000000",
    "navigationTimeout": 30.0,
    "displaySettleSeconds": 0.75,
    "streamSettleSeconds": 4.0,
    "scratchDir": None,
    "destinations": [],
    "audio": {
        "mode": "playlist",
        "directory": None,
        "playlist": [],
        "extensions": list(DEFAULT_AUDIO_EXTENSIONS),
        "shuffle": False,
    },
    "livekit": {
        "host": None,
        "apiKey": None,
        "apiSecret": None,
        "roomName": "overlay-live",
        "enableHls": False,
        "ingress": {
            "enabled": True,
            "identity": "overlay-broadcast",
            "name": "Overlay Broadcast",
            "videoPreset": "H264_1080P_30FPS_3_LAYERS",
            "deleteOnStop": False,
        },
        "egress": {
            "playlistName": "playlist.m3u8",
            "livePlaylistName": "live.m3u8",
            "segmentDuration": 6,
            "outputPath": "overlay-live/segment",
            "initialDelay": 2.0,
            "maxDelay": 15.0,
            "maxAttempts": None,
        },
    },
}

# Blocks merged per field rather than replaced; values are their own nested blocks
NESTED_SECTIONS: dict[str, dict] = {
    "audio": {},
    "livekit": {"ingress": {}, "egress": {}},
}

ENV_FALLBACKS = {
    "host": "LIVEKIT_URL",
    "apiKey": "LIVEKIT_API_KEY",
    "apiSecret": "LIVEKIT_API_SECRET",
}


class TargetKind(str, Enum):
    """How an encoding target receives the stream."""

    RTMP = "rtmp"
    INGRESS = "ingress"


@dataclass(frozen=True)
class EncodingTarget:
    """One output destination for the encoder."""

    url: str
    kind: TargetKind = TargetKind.RTMP
    best_effort: bool = True

    @property
    def masked_url(self) -> str:
        return mask_url(self.url)


@dataclass(frozen=True)
class AudioSettings:
    """Audio input plan settings."""

    mode: str = "playlist"
    directory: Optional[Path] = None
    playlist: tuple[Path, ...] = ()
    extensions: tuple[str, ...] = DEFAULT_AUDIO_EXTENSIONS
    shuffle: bool = False


@dataclass(frozen=True)
class IngressSettings:
    """Cloud ingress endpoint settings."""

    enabled: bool = True
    identity: str = "overlay-broadcast"
    name: str = "Overlay Broadcast"
    video_preset: Optional[str] = "H264_1080P_30FPS_3_LAYERS"
    delete_on_stop: bool = False


@dataclass(frozen=True)
class EgressSettings:
    """Server-side HLS recording settings."""

    playlist_name: str = "playlist.m3u8"
    live_playlist_name: Optional[str] = "live.m3u8"
    segment_duration: int = 6
    output_path: str = "overlay-live/segment"
    initial_delay: float = 2.0
    max_delay: float = 15.0
    max_attempts: Optional[int] = None


@dataclass(frozen=True)
class LiveKitSettings:
    """Cloud provider credentials and room settings."""

    host: Optional[str] = None
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    room_name: str = "overlay-live"
    enable_hls: bool = False
    ingress: IngressSettings = field(default_factory=IngressSettings)
    egress: EgressSettings = field(default_factory=EgressSettings)

    @property
    def has_credentials(self) -> bool:
        return bool(self.host and self.api_key and self.api_secret)

    @property
    def ingress_enabled(self) -> bool:
        return self.has_credentials and self.ingress.enabled and bool(self.room_name)

    @property
    def egress_enabled(self) -> bool:
        return self.has_credentials and self.enable_hls and bool(self.room_name)


@dataclass(frozen=True)
class PipelineConfig:
    """Immutable, validated broadcast configuration."""

    overlay_url: str
    destinations: tuple[EncodingTarget, ...]
    display: int = 99
    width: int = 1920
    height: int = 1080
    fps: int = 30
    video_bitrate: str = "5000k"
    audio_bitrate: str = "128k"
    video_filter: Optional[str] = None
    background: str = "#000000"
    navigation_timeout: float = 30.0
    display_settle_seconds: float = 0.75
    stream_settle_seconds: float = 4.0
    scratch_dir: Path = SCRATCH_DIR
    audio: AudioSettings = field(default_factory=AudioSettings)
    livekit: LiveKitSettings = field(default_factory=LiveKitSettings)
    rtmp_base: Optional[str] = None

    def summary(self) -> dict:
        """Loggable summary with stream keys masked."""
        return {
            "overlayUrl": self.overlay_url,
            "display": f":{self.display}",
            "geometry": f"{self.width}x{self.height}@{self.fps}",
            "destinations": [mask_url(t.url, self.rtmp_base) for t in self.destinations],
            "audio": self.audio.mode,
            "ingress": self.livekit.ingress_enabled,
            "hls": self.livekit.egress_enabled,
        }


# ==================== Helpers ====================


def mask_url(url: str, base: Optional[str] = None) -> str:
    """Hide the stream key (last path segment) of a destination URL."""
    if base and url.startswith(base.rstrip("/")):
        return f"{base.rstrip('/')}/•••"
    idx = url.rstrip("/").rfind("/")
    if idx > url.find("://") + 2:
        return f"{url[:idx]}/•••"
    return "rtmp://•••"


def join_url(base: str, key: str) -> str:
    return f"{base.rstrip('/')}/{key.lstrip('/')}"


def has_placeholder(value: Any) -> bool:
    return isinstance(value, str) and bool(PLACEHOLDER_PATTERN.search(value))


def parse_display_number(value: Any, default: int = 99) -> int:
    """Parse ":99", "99" or 99 into a display number."""
    try:
        return int(str(value).strip().lstrip(":").split(".")[0])
    except (TypeError, ValueError):
        return default


def normalize_api_host(host: Optional[str]) -> Optional[str]:
    """Convert a LiveKit websocket URL into the HTTP API URL."""
    if not host:
        return None
    if host.startswith("wss://"):
        return "https://" + host[len("wss://"):]
    if host.startswith("ws://"):
        return "http://" + host[len("ws://"):]
    return host


def local_override_path(path: Path) -> Path:
    """config.json -> config.local.json"""
    return path.with_name(f"{path.stem}.local{path.suffix}")


def load_document(path: Optional[Path]) -> dict[str, Any]:
    """
    Load a configuration document.

    Missing files are treated as empty. JSON by default, YAML for
    .yaml/.yml suffixes.

    Raises:
        ConfigError: If the document exists but cannot be parsed.
    """
    if path is None or not path.exists():
        return {}

    try:
        text = path.read_text()
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text) if text.strip() else {}
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError([f"Cannot read {path}: {e}"]) from e

    if not isinstance(data, dict):
        raise ConfigError([f"{path} must contain an object, got {type(data).__name__}"])
    return data


def merge_layers(*layers: Optional[Mapping[str, Any]], nested: Optional[dict] = None) -> dict[str, Any]:
    """
    Merge configuration layers, later layers winning.

    Keys listed in `nested` are merged per field (recursively, using the
    nested value as the next level's nesting map); all other keys are replaced.
    """
    nested = NESTED_SECTIONS if nested is None else nested
    merged: dict[str, Any] = {}
    for layer in layers:
        for key, value in (layer or {}).items():
            if key in nested and isinstance(value, Mapping):
                current = merged.get(key)
                merged[key] = merge_layers(
                    current if isinstance(current, Mapping) else {},
                    value,
                    nested=nested[key],
                )
            else:
                merged[key] = value
    return merged


# ==================== Resolution ====================


def _resolve_path(value: Any, base_dir: Path) -> Path:
    path = Path(str(value)).expanduser()
    return path if path.is_absolute() else (base_dir / path)


def _normalize_extension(ext: str) -> str:
    ext = str(ext).strip().lower()
    return ext if ext.startswith(".") else f".{ext}"


def _resolve_destinations(merged: dict[str, Any], errors: list[str]) -> list[EncodingTarget]:
    """Collect rtmpUrl / rtmpBase+streamKey / destinations[] into targets."""
    targets: list[EncodingTarget] = []

    primary = merged.get("rtmpUrl")
    if not primary and merged.get("rtmpBase") and merged.get("streamKey"):
        primary = join_url(str(merged["rtmpBase"]), str(merged["streamKey"]))
    if primary:
        targets.append(EncodingTarget(url=str(primary)))

    extra = merged.get("destinations") or []
    if not isinstance(extra, list):
        errors.append("'destinations' must be a list")
        extra = []

    for idx, entry in enumerate(extra):
        if isinstance(entry, str):
            targets.append(EncodingTarget(url=entry))
        elif isinstance(entry, Mapping) and entry.get("url"):
            targets.append(
                EncodingTarget(
                    url=str(entry["url"]),
                    best_effort=bool(entry.get("bestEffort", True)),
                )
            )
        else:
            errors.append(f"destinations[{idx}] must be a URL or an object with 'url'")

    seen: set[str] = set()
    unique: list[EncodingTarget] = []
    for target in targets:
        if target.url in seen:
            continue
        seen.add(target.url)
        unique.append(target)

    if not unique:
        errors.append("RTMP destination is not configured (set rtmpUrl, rtmpBase + streamKey, or destinations)")
    for target in unique:
        if has_placeholder(target.url):
            errors.append(f"Destination {mask_url(target.url)} still contains a placeholder")
    return unique


def _positive_int(
    block: Mapping[str, Any],
    key: str,
    errors: list[str],
    default: Optional[int] = None,
    label: Optional[str] = None,
) -> int:
    value = block.get(key)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        errors.append(f"'{label or key}' must be a positive integer, got {value!r}")
        return int(DEFAULTS[key] if default is None else default)
    return value


def _positive_number(
    block: Mapping[str, Any],
    key: str,
    errors: list[str],
    default: Optional[float] = None,
    label: Optional[str] = None,
    allow_zero: bool = False,
) -> float:
    """Seconds-style setting; numeric strings are accepted."""
    value = block.get(key)
    try:
        if isinstance(value, bool):
            raise TypeError(key)
        number = float(value)
    except (TypeError, ValueError):
        number = None

    if number is None or number != number or number < 0 or (number == 0 and not allow_zero):
        kind = "a non-negative number" if allow_zero else "a positive number"
        errors.append(f"'{label or key}' must be {kind}, got {value!r}")
        return float(DEFAULTS[key] if default is None else default)
    return number


def _resolve_audio(block: dict[str, Any], base_dir: Path, errors: list[str]) -> AudioSettings:
    mode = str(block.get("mode") or "playlist").lower()
    if mode not in AUDIO_MODES:
        errors.append(f"audio.mode must be one of {AUDIO_MODES}, got {mode!r}")
        mode = "playlist"

    playlist = block.get("playlist") or []
    if isinstance(playlist, str):
        playlist = [playlist]
    if not isinstance(playlist, list):
        errors.append("audio.playlist must be a list of paths")
        playlist = []

    extensions = block.get("extensions") or DEFAULT_AUDIO_EXTENSIONS
    if isinstance(extensions, str):
        extensions = [extensions]
    if not isinstance(extensions, (list, tuple)):
        errors.append("audio.extensions must be a list of file extensions")
        extensions = DEFAULT_AUDIO_EXTENSIONS
    directory = block.get("directory")

    return AudioSettings(
        mode=mode,
        directory=_resolve_path(directory, base_dir) if directory else None,
        playlist=tuple(_resolve_path(p, base_dir) for p in playlist),
        extensions=tuple(dict.fromkeys(_normalize_extension(e) for e in extensions)),
        shuffle=bool(block.get("shuffle", False)),
    )


def _resolve_livekit(block: dict[str, Any], env: Mapping[str, str], errors: list[str]) -> LiveKitSettings:
    values = dict(block)
    for key, env_name in ENV_FALLBACKS.items():
        if not values.get(key) and env.get(env_name):
            values[key] = env[env_name]

    ingress = block.get("ingress") or {}
    egress_defaults = DEFAULTS["livekit"]["egress"]
    egress = {**egress_defaults, **(block.get("egress") or {})}

    def egress_number(key: str) -> float:
        return _positive_number(egress, key, errors, egress_defaults[key], f"livekit.egress.{key}")

    max_attempts = egress.get("maxAttempts")
    if max_attempts is not None:
        max_attempts = _positive_int(egress, "maxAttempts", errors, 1, "livekit.egress.maxAttempts")

    settings = LiveKitSettings(
        host=normalize_api_host(values.get("host")),
        api_key=values.get("apiKey"),
        api_secret=values.get("apiSecret"),
        room_name=str(values.get("roomName") or ""),
        enable_hls=bool(values.get("enableHls", False)),
        ingress=IngressSettings(
            enabled=bool(ingress.get("enabled", True)),
            identity=str(ingress.get("identity") or "overlay-broadcast"),
            name=str(ingress.get("name") or ingress.get("identity") or "Overlay Broadcast"),
            video_preset=ingress.get("videoPreset") or None,
            delete_on_stop=bool(ingress.get("deleteOnStop", False)),
        ),
        egress=EgressSettings(
            playlist_name=str(egress.get("playlistName") or "playlist.m3u8"),
            live_playlist_name=egress.get("livePlaylistName") or None,
            segment_duration=_positive_int(
                egress, "segmentDuration", errors, egress_defaults["segmentDuration"], "livekit.egress.segmentDuration"
            ),
            output_path=str(egress.get("outputPath") or "overlay-live/segment"),
            initial_delay=egress_number("initialDelay"),
            max_delay=egress_number("maxDelay"),
            max_attempts=max_attempts,
        ),
    )

    # Credentials only matter when a cloud feature would use them
    if settings.ingress.enabled or settings.enable_hls:
        for key in ("host", "apiKey", "apiSecret"):
            if has_placeholder(values.get(key)):
                errors.append(f"livekit.{key} still contains a placeholder")
    if settings.enable_hls and not settings.has_credentials:
        logger.warning("livekit.enableHls is set but LiveKit credentials are missing; HLS disabled")
    return settings


def resolve_config(
    base: Optional[Mapping[str, Any]] = None,
    override: Optional[Mapping[str, Any]] = None,
    base_dir: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> PipelineConfig:
    """
    Build a validated PipelineConfig from base and override documents.

    Args:
        base: Base configuration document
        override: Local override document
        base_dir: Directory used to resolve relative audio paths
        env: Environment used for credential fallbacks (default: os.environ)

    Returns:
        Immutable PipelineConfig

    Raises:
        ConfigError: With every validation error found
    """
    env = os.environ if env is None else env
    base_dir = base_dir or Path.cwd()
    merged = merge_layers(DEFAULTS, base, override)
    errors: list[str] = []

    destinations = _resolve_destinations(merged, errors)

    overlay_url = str(merged.get("overlayUrl") or "").strip()
    if not overlay_url:
        errors.append("'overlayUrl' must be set")

    width = _positive_int(merged, "width", errors)
    height = _positive_int(merged, "height", errors)
    fps = _positive_int(merged, "fps", errors)
    navigation_timeout = _positive_number(merged, "navigationTimeout", errors)
    display_settle = _positive_number(merged, "displaySettleSeconds", errors, allow_zero=True)
    stream_settle = _positive_number(merged, "streamSettleSeconds", errors, allow_zero=True)

    audio = _resolve_audio(merged.get("audio") or {}, base_dir, errors)
    livekit = _resolve_livekit(merged.get("livekit") or {}, env, errors)

    if errors:
        raise ConfigError(errors)

    scratch_dir = merged.get("scratchDir")
    return PipelineConfig(
        overlay_url=overlay_url,
        destinations=tuple(destinations),
        display=parse_display_number(merged.get("display")),
        width=width,
        height=height,
        fps=fps,
        video_bitrate=str(merged.get("videoBitrate")),
        audio_bitrate=str(merged.get("audioBitrate")),
        video_filter=merged.get("videoFilter") or None,
        background=str(merged.get("background") or "#000000"),
        navigation_timeout=navigation_timeout,
        display_settle_seconds=display_settle,
        stream_settle_seconds=stream_settle,
        scratch_dir=_resolve_path(scratch_dir, base_dir) if scratch_dir else SCRATCH_DIR,
        audio=audio,
        livekit=livekit,
        rtmp_base=merged.get("rtmpBase") or None,
    )


def load_config(
    path: Path,
    local_path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> PipelineConfig:
    """
    Load and resolve the base document plus its local override.

    Args:
        path: Base configuration document (config.json)
        local_path: Override document (default: config.local.json beside path)
        env: Environment used for credential fallbacks
    """
    path = Path(path).expanduser()
    local_path = Path(local_path).expanduser() if local_path else local_override_path(path)

    base = load_document(path)
    override = load_document(local_path)
    if not base and not override:
        logger.warning(f"No configuration found at {path} or {local_path}; using defaults")

    return resolve_config(base, override, base_dir=path.resolve().parent, env=env)
