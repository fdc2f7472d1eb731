"""Error taxonomy for the broadcast pipeline.

Usage:
    from broadcaster.errors import ConfigError, FatalPipelineError

    raise ConfigError(["No RTMP destination configured"])
    raise NavigationError("Overlay returned HTTP 502")

Configuration errors stop the daemon before anything is spawned. Fatal
pipeline errors trigger a full teardown through the supervisor. Optional
subsystems (ingress, egress) never raise these; they log and degrade.
"""

from typing import Optional


class BroadcastError(Exception):
    """Base class for all broadcast errors."""


class ConfigError(BroadcastError):
    """Raised when the configuration cannot be resolved or validated."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Config validation failed: {'; '.join(errors)}")


class FatalPipelineError(BroadcastError):
    """Raised when a critical component cannot be acquired or dies."""


class DisplayUnavailableError(FatalPipelineError):
    """Raised when no virtual display candidate became ready."""


class NavigationError(FatalPipelineError):
    """Raised when the overlay page fails to load."""


class CriticalProcessExit(FatalPipelineError):
    """Raised when a critical child process exits unexpectedly."""

    def __init__(self, label: str, returncode: Optional[int]):
        self.label = label
        self.returncode = returncode
        super().__init__(f"{label} exited unexpectedly (code={returncode})")
