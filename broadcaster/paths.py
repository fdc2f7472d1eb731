"""Centralized path definitions for broadcast state files.

Runtime state lives under ~/.config/overlay-broadcast/ following XDG
conventions. Scratch files (audio manifests) go to the system temp dir.

Usage:
    from broadcaster.paths import BROADCAST_STATE_FILE, SCRATCH_DIR
"""

import tempfile
from pathlib import Path

# Base directory for all state
BROADCAST_CONFIG_DIR = Path.home() / ".config" / "overlay-broadcast"

# Current pipeline state, destinations and playback URL
BROADCAST_STATE_FILE = BROADCAST_CONFIG_DIR / "broadcast_state.json"

# Lock and PID files for single-instance enforcement
LOCK_DIR = Path(tempfile.gettempdir())

# Concatenation manifests and other per-run scratch files
SCRATCH_DIR = Path(tempfile.gettempdir()) / "overlay-broadcast"

# X server artifacts live under /tmp regardless of TMPDIR
X_ROOT_DIR = Path("/tmp")

