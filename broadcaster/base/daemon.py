#!/usr/bin/env python3
"""
Base Daemon Infrastructure

Foundation shared by broadcast daemons:
- SingleInstance: flock-based lock plus PID file, one daemon per host
- BaseDaemon: CLI, signal routing, lifecycle and state file reporting
- sd_notify: systemd readiness/status notifications

Usage:
    from broadcaster.base import BaseDaemon

    class MyDaemon(BaseDaemon):
        name = "my-service"
        description = "My service daemon"

        async def run_daemon(self) -> int:
            await self._shutdown_event.wait()
            return 0

        def get_state(self) -> dict:
            return {"state": "idle"}

    daemon = MyDaemon(verbose=True)
    sys.exit(daemon.run())
"""

import argparse
import asyncio
import fcntl
import json
import logging
import os
import signal
import socket
import sys
import tempfile
import time
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Optional

import psutil

from broadcaster.paths import LOCK_DIR

logger = logging.getLogger(__name__)

STOP_WAIT_TIMEOUT = 20.0


# =============================================================================
# SYSTEMD NOTIFY SUPPORT
# =============================================================================


def sd_notify(*states: str) -> bool:
    """
    Send one datagram of newline-separated assignments to systemd.

    Args:
        states: Assignments such as "READY=1", "STATUS=streaming"

    Returns:
        True if sent, False when not running under systemd (no NOTIFY_SOCKET)
    """
    address = os.environ.get("NOTIFY_SOCKET")
    if not address or not states:
        return False
    if address.startswith("@"):
        # Abstract namespace socket
        address = "\0" + address[1:]

    payload = "\n".join(states).encode()
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM) as sock:
            sock.connect(address)
            sock.sendall(payload)
        return True
    except OSError as e:
        logger.warning(f"sd_notify({', '.join(states)}) failed: {e}")
        return False


def pid_alive(pid: Optional[int]) -> bool:
    """Whether `pid` names a running (non-zombie) process."""
    if not pid or pid <= 0:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


# =============================================================================
# SINGLE INSTANCE
# =============================================================================


class SingleInstance:
    """
    One running daemon per name and lock directory.

    The lock is an exclusive, non-blocking flock on `<name>-daemon.lock`, held
    for the life of the process; the kernel drops it if the process dies. The
    PID is written beside it for --status and --stop.

    Args:
        name: Daemon name used for lock/pid file names
        lock_dir: Directory for lock files
    """

    def __init__(self, name: str, lock_dir: Path = LOCK_DIR):
        self.name = name
        self.lock_dir = Path(lock_dir)
        self._fd: Optional[int] = None

    @property
    def lock_path(self) -> Path:
        return self.lock_dir / f"{self.name}-daemon.lock"

    @property
    def pid_path(self) -> Path:
        return self.lock_dir / f"{self.name}-daemon.pid"

    @property
    def is_acquired(self) -> bool:
        return self._fd is not None

    def acquire(self) -> bool:
        """
        Take the lock without blocking.

        Returns:
            True if acquired, False if another instance holds it.
        """
        if self._fd is not None:
            return True
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            os.close(fd)
            return False
        self._fd = fd
        self.pid_path.write_text(f"{os.getpid()}\n")
        return True

    def release(self) -> None:
        """Drop the lock and remove our PID file."""
        if self._fd is None:
            return
        try:
            if self.read_pid() == os.getpid():
                self.pid_path.unlink(missing_ok=True)
        except OSError as e:
            logger.debug(f"PID file removal failed: {e}")
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    def read_pid(self) -> Optional[int]:
        try:
            return int(self.pid_path.read_text().strip())
        except (OSError, ValueError):
            return None

    def get_running_pid(self) -> Optional[int]:
        """PID of the instance holding the lock, None if nothing is running."""
        pid = self.read_pid()
        return pid if pid_alive(pid) else None

    def __enter__(self) -> "SingleInstance":
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


# =============================================================================
# BASE DAEMON
# =============================================================================


class BaseDaemon(ABC):
    """
    Base class for long-running broadcast daemons.

    Provides:
    - Single instance enforcement
    - Standard CLI arguments (--status, --stop, --verbose)
    - SIGTERM/SIGINT routed to request_shutdown()
    - Atomic JSON state file written from get_state()
    - Logging configured for journald

    Subclasses must:
    - Set `name` and `description` class attributes
    - Implement `run_daemon()` returning the process exit code
    """

    name: str = ""
    description: str = ""

    def __init__(
        self,
        verbose: bool = False,
        lock_dir: Path = LOCK_DIR,
        state_file: Optional[Path] = None,
    ):
        if not self.name:
            raise ValueError("Daemon 'name' must be set")

        self.verbose = verbose
        self.state_file = state_file
        self._shutdown_event = asyncio.Event()
        self._single_instance = SingleInstance(self.name, lock_dir)

    @abstractmethod
    async def run_daemon(self) -> int:
        """
        Main daemon logic.

        Returns:
            Exit code for the process.
        """

    async def startup(self):
        """Called before run_daemon()."""

    async def shutdown(self):
        """Called after run_daemon() returns or fails."""

    def request_shutdown(self, reason: str = "requested"):
        """Ask the daemon to stop; safe to call more than once."""
        logger.info(f"Shutdown requested for {self.name} ({reason})")
        self._shutdown_event.set()

    # ==================== State file ====================

    def get_state(self) -> dict:
        """State written to the state file. Override in subclasses."""
        return {}

    def write_state(self) -> None:
        """Atomically rewrite the state file from get_state()."""
        if self.state_file is None:
            return

        state = {**self.get_state(), "pid": os.getpid(), "updated_at": datetime.now().isoformat()}
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)

            # Write atomically (temp file + rename)
            temp_fd, temp_path = tempfile.mkstemp(
                suffix=".tmp", prefix=f"{self.name}_state_", dir=self.state_file.parent
            )
            try:
                with os.fdopen(temp_fd, "w") as f:
                    json.dump(state, f, indent=2, default=str)
                Path(temp_path).replace(self.state_file)
            except Exception:
                Path(temp_path).unlink(missing_ok=True)
                raise
        except OSError as e:
            logger.error(f"Failed to save state: {e}")

    # ==================== Lifecycle ====================

    def _setup_signal_handlers(self):
        loop = asyncio.get_running_loop()

        def signal_handler(sig):
            logger.info(f"Received signal {sig.name}")
            self.request_shutdown(sig.name)

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler, sig)

    async def _run(self) -> int:
        self._setup_signal_handlers()
        try:
            await self.startup()
            logger.info(f"Daemon started: {self.name} (PID: {os.getpid()})")
            return await self.run_daemon()
        except Exception as e:
            logger.exception(f"Daemon error: {e}")
            sd_notify(f"STATUS=Error: {e}")
            return 1
        finally:
            sd_notify("STOPPING=1")
            await self.shutdown()

    def run(self) -> int:
        """Run the daemon to completion (blocking). Returns the exit code."""
        if not self._single_instance.acquire():
            pid = self._single_instance.get_running_pid()
            print(f"Another {self.name} instance is already running (PID: {pid})")
            return 1

        with self._single_instance:
            return asyncio.run(self._run())

    # ==================== CLI ====================

    @classmethod
    def configure_logging(cls, verbose: bool = False):
        """
        Log to stderr for journald.

        The format has no timestamp since journald adds its own.
        """
        logging.basicConfig(
            level=logging.DEBUG if verbose else logging.INFO,
            format="%(name)s - %(levelname)s - %(message)s",
            handlers=[logging.StreamHandler(sys.stderr)],
        )

    @classmethod
    def create_argument_parser(cls) -> argparse.ArgumentParser:
        """Parser with the standard daemon flags; extend in subclasses."""
        parser = argparse.ArgumentParser(
            description=cls.description or f"{cls.name} daemon",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument("--status", action="store_true", help="Show whether the daemon is running")
        parser.add_argument("--stop", action="store_true", help="Stop the running daemon")
        parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
        return parser

    @classmethod
    def handle_status(cls, lock_dir: Path = LOCK_DIR, state_file: Optional[Path] = None) -> int:
        """Print running state (and the last state file) for --status."""
        pid = SingleInstance(cls.name, lock_dir).get_running_pid()
        if not pid:
            print(f"{cls.name} is not running")
            return 1

        print(f"{cls.name} is running (PID: {pid})")
        if state_file is not None and state_file.exists():
            try:
                print(json.dumps(json.loads(state_file.read_text()), indent=2))
            except (OSError, ValueError) as e:
                print(f"State file unreadable: {e}")
        return 0

    @classmethod
    def handle_stop(cls, lock_dir: Path = LOCK_DIR, timeout: float = STOP_WAIT_TIMEOUT) -> int:
        """Send SIGTERM for --stop and wait for the teardown to finish."""
        pid = SingleInstance(cls.name, lock_dir).get_running_pid()
        if not pid:
            print(f"{cls.name} is not running")
            return 1

        try:
            os.kill(pid, signal.SIGTERM)
        except OSError as e:
            print(f"Failed to stop {cls.name}: {e}")
            return 1
        print(f"Sent SIGTERM to {cls.name} (PID: {pid})")

        deadline = time.monotonic() + timeout
        while pid_alive(pid):
            if time.monotonic() >= deadline:
                print(f"{cls.name} still running after {timeout:.0f}s")
                return 1
            time.sleep(0.2)
        print(f"{cls.name} stopped")
        return 0
