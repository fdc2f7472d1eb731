"""
Base infrastructure for broadcast daemons.

- BaseDaemon: CLI, signals, lifecycle and state file
- SingleInstance: lock file management for single-instance enforcement
- sd_notify: systemd notification helper
- pid_alive: process liveness check
"""

from broadcaster.base.daemon import BaseDaemon, SingleInstance, pid_alive, sd_notify

__all__ = [
    "BaseDaemon",
    "SingleInstance",
    "pid_alive",
    "sd_notify",
]
