"""
Child process handles.

Wraps asyncio subprocesses with a label, an exit notification, and a
terminate-then-kill release that is safe to call more than once.

Usage:
    handle = await spawn_process("ffmpeg", ["ffmpeg", "-i", ...])
    code = await handle.wait()
    await handle.terminate()
"""

import asyncio
import logging
import os
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

TERMINATE_TIMEOUT = 5.0


class ProcessHandle:
    """An OS process reference with an exit channel and a kill capability."""

    def __init__(self, label: str, process, command: Optional[Sequence[str]] = None):
        self.label = label
        self.process = process
        self.command = list(command or [])

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    async def wait(self) -> Optional[int]:
        """Wait for the process to exit and return its exit code."""
        return await self.process.wait()

    def kill(self) -> None:
        if not self.running:
            return
        try:
            self.process.kill()
        except ProcessLookupError:
            pass

    async def terminate(self, timeout: float = TERMINATE_TIMEOUT) -> Optional[int]:
        """
        Send SIGTERM and wait; escalate to SIGKILL after `timeout` seconds.

        Safe to call on a process that already exited.
        """
        if not self.running:
            return self.returncode

        logger.info(f"Stopping {self.label} (PID: {self.pid})")
        try:
            self.process.terminate()
        except ProcessLookupError:
            return self.returncode

        try:
            return await asyncio.wait_for(self.process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{self.label} did not exit after SIGTERM, killing")
            self.kill()
            return await self.process.wait()

    def __repr__(self) -> str:
        return f"ProcessHandle({self.label!r}, pid={self.pid}, returncode={self.returncode})"


async def spawn_process(
    label: str,
    command: Sequence[str],
    env: Optional[dict[str, str]] = None,
) -> ProcessHandle:
    """
    Start a child process that inherits stdout/stderr.

    Args:
        label: Name used in logs and exit notifications
        command: argv list
        env: Extra environment variables merged over os.environ
    """
    process_env = os.environ.copy()
    if env:
        process_env.update(env)

    process = await asyncio.create_subprocess_exec(
        *command,
        stdin=asyncio.subprocess.DEVNULL,
        env=process_env,
    )
    logger.debug(f"Spawned {label} (PID: {process.pid})")
    return ProcessHandle(label, process, command)
