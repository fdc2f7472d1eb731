"""
Audio Source Resolution.

Turns the audio settings into an AudioPlan the encoder can consume:
- SilencePlan: a generated silent stereo source (lavfi anullsrc)
- PlaylistPlan: an ffconcat manifest of absolute track paths, read in a loop

Tracks come from the explicit playlist first, then from a scan of the
configured directory filtered by extension. Duplicates (by absolute path)
and entries that are not readable regular files are dropped.

Usage:
    resolver = AudioSourceResolver(config.audio, config.scratch_dir)
    plan = await resolver.acquire(supervisor)
"""

import logging
import os
import random
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Union

from broadcaster.config import AudioSettings

logger = logging.getLogger(__name__)

SILENCE_SAMPLE_RATE = 44100
SILENCE_CHANNEL_LAYOUT = "stereo"


@dataclass(frozen=True)
class SilencePlan:
    """Synthetic silent audio."""

    sample_rate: int = SILENCE_SAMPLE_RATE
    channel_layout: str = SILENCE_CHANNEL_LAYOUT

    @property
    def lavfi_source(self) -> str:
        return f"anullsrc=channel_layout={self.channel_layout}:sample_rate={self.sample_rate}"


@dataclass(frozen=True)
class PlaylistPlan:
    """An ordered list of tracks materialized as a concatenation manifest."""

    tracks: tuple[Path, ...]
    manifest: Path
    shuffled: bool = False

    def remove_manifest(self) -> None:
        try:
            self.manifest.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove playlist manifest {self.manifest}: {e}")


AudioPlan = Union[SilencePlan, PlaylistPlan]


def normalize_extensions(extensions: Iterable[str]) -> frozenset[str]:
    """Lowercase extensions and make sure each has a leading dot."""
    normalized = set()
    for ext in extensions:
        ext = str(ext).strip().lower()
        if ext:
            normalized.add(ext if ext.startswith(".") else f".{ext}")
    return frozenset(normalized)


def is_readable_file(path: Path) -> bool:
    return path.is_file() and os.access(path, os.R_OK)


def scan_directory(directory: Path, extensions: Iterable[str]) -> list[Path]:
    """List files in `directory` whose extension matches, sorted by name."""
    wanted = normalize_extensions(extensions)
    try:
        entries = sorted(directory.iterdir(), key=lambda p: p.name.lower())
    except OSError as e:
        logger.warning(f"Cannot scan audio directory {directory}: {e}")
        return []
    return [p for p in entries if p.suffix.lower() in wanted]


def gather_tracks(
    playlist: Iterable[Path],
    directory: Optional[Path],
    extensions: Iterable[str],
) -> list[Path]:
    """
    Collect tracks from the explicit playlist, then the directory scan.

    Returns absolute paths in discovery order, deduplicated, unreadable
    entries skipped.
    """
    candidates = [Path(p) for p in playlist]
    if directory is not None:
        candidates.extend(scan_directory(Path(directory), extensions))

    tracks: list[Path] = []
    seen: set[Path] = set()
    for candidate in candidates:
        path = Path(os.path.abspath(candidate.expanduser()))
        if path in seen:
            continue
        seen.add(path)
        if not is_readable_file(path):
            logger.warning(f"Skipping audio entry (not a readable file): {path}")
            continue
        tracks.append(path)
    return tracks


def _quote_ffconcat(path: Path) -> str:
    # ffconcat single-quote escaping: ' -> '\''
    return "'" + str(path).replace("'", "'\\''") + "'"


def write_manifest(tracks: Iterable[Path], scratch_dir: Path) -> Path:
    """Write an ffconcat manifest listing `tracks` and return its path."""
    scratch_dir.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix="playlist-", suffix=".ffconcat", dir=scratch_dir)
    lines = ["ffconcat version 1.0"] + [f"file {_quote_ffconcat(track)}" for track in tracks]
    with os.fdopen(fd, "w") as f:
        f.write("\n".join(lines) + "\n")
    return Path(name)


class AudioSourceResolver:
    """Resolves audio settings into a SilencePlan or a PlaylistPlan."""

    def __init__(
        self,
        settings: AudioSettings,
        scratch_dir: Path,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings
        self.scratch_dir = Path(scratch_dir)
        self._rng = rng or random.Random()

    def resolve(self) -> AudioPlan:
        settings = self.settings
        if settings.mode == "silence":
            logger.info("Audio: silence (configured)")
            return SilencePlan()

        tracks = gather_tracks(settings.playlist, settings.directory, settings.extensions)
        if not tracks:
            logger.info("Audio: no playable tracks found, falling back to silence")
            return SilencePlan()

        if settings.shuffle:
            self._rng.shuffle(tracks)

        manifest = write_manifest(tracks, self.scratch_dir)
        logger.info(f"Audio: {len(tracks)} track(s){' shuffled' if settings.shuffle else ''} -> {manifest}")
        return PlaylistPlan(tracks=tuple(tracks), manifest=manifest, shuffled=settings.shuffle)

    async def acquire(self, supervisor) -> AudioPlan:
        plan = self.resolve()
        if isinstance(plan, PlaylistPlan):
            supervisor.register_cleanup("audio manifest", plan.remove_manifest)
        return plan
