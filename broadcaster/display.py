"""
Virtual Display Allocation.

Finds a free X display number and starts Xvfb on it. Readiness is the
existence of the server's socket (/tmp/.X11-unix/X<N>).

Candidates are tried in increasing order starting at the configured base
display. Lock and socket files left behind by a crashed run are removed
first; a lock owned by a live process means the display is in use and the
candidate is skipped.

Usage:
    allocator = DisplayAllocator(base_display=99, width=1920, height=1080)
    slot = await allocator.acquire(supervisor)
    env["DISPLAY"] = slot.display
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

from broadcaster.base.daemon import pid_alive
from broadcaster.errors import DisplayUnavailableError
from broadcaster.paths import X_ROOT_DIR
from broadcaster.process import ProcessHandle, spawn_process

logger = logging.getLogger(__name__)

MAX_DISPLAY_ATTEMPTS = 10
SOCKET_READY_TIMEOUT = 1.0
SOCKET_POLL_INTERVAL = 0.05
CANDIDATE_RETRY_PAUSE = 0.25
SCREEN_DEPTH = 24

SpawnFn = Callable[[str, Sequence[str]], Awaitable[ProcessHandle]]


@dataclass
class DisplaySlot:
    """An allocated virtual display."""

    number: int
    lock_path: Path
    socket_path: Path
    process: ProcessHandle

    @property
    def display(self) -> str:
        return f":{self.number}"

    async def release(self) -> None:
        await self.process.terminate()


def read_lock_pid(lock_path: Path) -> Optional[int]:
    """Read the PID an X server writes into its lock file."""
    try:
        return int(lock_path.read_text().strip())
    except (OSError, ValueError):
        return None


def lock_owner_alive(lock_path: Path) -> Optional[int]:
    """
    Return the PID holding an X lock file if that process is still running.

    Returns:
        The live owner PID, or None when the lock is absent or stale.
    """
    pid = read_lock_pid(lock_path)
    return pid if pid_alive(pid) else None


def remove_stale_artifacts(*paths: Path) -> None:
    for path in paths:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove stale X artifact {path}: {e}")


async def wait_for_socket(
    socket_path: Path,
    timeout: float = SOCKET_READY_TIMEOUT,
    interval: float = SOCKET_POLL_INTERVAL,
    process: Optional[ProcessHandle] = None,
) -> bool:
    """
    Poll until `socket_path` exists.

    Returns False when `timeout` expires or `process` exits first.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        if socket_path.exists():
            return True
        if process is not None and not process.running:
            return False
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(interval)


class DisplayAllocator:
    """Starts Xvfb on the first display number whose socket comes up."""

    def __init__(
        self,
        base_display: int = 99,
        width: int = 1920,
        height: int = 1080,
        attempts: int = MAX_DISPLAY_ATTEMPTS,
        ready_timeout: float = SOCKET_READY_TIMEOUT,
        retry_pause: float = CANDIDATE_RETRY_PAUSE,
        x_root: Path = X_ROOT_DIR,
        binary: str = "Xvfb",
        spawn: SpawnFn = spawn_process,
    ):
        self.base_display = base_display
        self.width = width
        self.height = height
        self.attempts = attempts
        self.ready_timeout = ready_timeout
        self.retry_pause = retry_pause
        self.x_root = Path(x_root)
        self.binary = binary
        self._spawn = spawn

    def lock_path(self, number: int) -> Path:
        return self.x_root / f".X{number}-lock"

    def socket_path(self, number: int) -> Path:
        return self.x_root / ".X11-unix" / f"X{number}"

    def build_command(self, number: int) -> list[str]:
        screen = f"{self.width}x{self.height}x{SCREEN_DEPTH}"
        return [self.binary, f":{number}", "-screen", "0", screen, "-nolisten", "tcp", "-ac"]

    def candidates(self) -> list[int]:
        return [self.base_display + offset for offset in range(self.attempts)]

    async def allocate(self) -> DisplaySlot:
        """
        Start Xvfb on the first candidate that becomes ready.

        Raises:
            DisplayUnavailableError: If every candidate failed
        """
        for number in self.candidates():
            lock_path = self.lock_path(number)
            socket_path = self.socket_path(number)

            owner = lock_owner_alive(lock_path)
            if owner is not None:
                logger.info(f"Display :{number} is held by PID {owner}; trying next display")
                continue
            remove_stale_artifacts(lock_path, socket_path)

            logger.info(f"Starting Xvfb on :{number}")
            try:
                process = await self._spawn("Xvfb", self.build_command(number))
            except OSError as e:
                raise DisplayUnavailableError(f"Cannot start {self.binary}: {e}") from e

            try:
                ready = await wait_for_socket(socket_path, self.ready_timeout, process=process)
            except BaseException:
                await process.terminate()
                raise

            if ready:
                logger.info(f"Xvfb ready on :{number} (PID: {process.pid})")
                return DisplaySlot(number, lock_path, socket_path, process)

            logger.warning(f"Xvfb on :{number} did not start; trying next display")
            await process.terminate()
            await asyncio.sleep(self.retry_pause)

        first, last = self.base_display, self.base_display + self.attempts - 1
        raise DisplayUnavailableError(f"Failed to start Xvfb on any display (:{first}-:{last})")

    async def acquire(self, supervisor) -> DisplaySlot:
        """Allocate a display, register its teardown and watch the server."""
        slot = await self.allocate()
        supervisor.register_cleanup(f"Xvfb :{slot.number}", slot.release)
        supervisor.monitor("Xvfb", slot.process.wait(), critical=True)
        return slot
