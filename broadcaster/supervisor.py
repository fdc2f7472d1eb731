"""
Lifecycle Supervisor.

Owns the only cross-cutting state of the pipeline:
- the current PipelineState (which doubles as the "shutting down" guard)
- the ordered cleanup stack
- the event channel that child-process monitors and signal handlers feed

Components never touch that state directly. They call register_cleanup()
right after acquiring a resource and monitor() for every child they spawn.

Usage:
    supervisor = LifecycleSupervisor()

    async def acquire():
        slot = await allocator.acquire(supervisor)
        supervisor.advance(PipelineState.DISPLAY_READY)
        ...

    exit_code = await supervisor.run(acquire)
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from broadcaster.errors import ConfigError, CriticalProcessExit

logger = logging.getLogger(__name__)

CLEANUP_TIMEOUT = 15.0


class PipelineState(str, Enum):
    INIT = "init"
    DISPLAY_READY = "display_ready"
    BROWSER_READY = "browser_ready"
    ENCODING = "encoding"
    STREAMING = "streaming"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


ACQUISITION_ORDER = (
    PipelineState.INIT,
    PipelineState.DISPLAY_READY,
    PipelineState.BROWSER_READY,
    PipelineState.ENCODING,
    PipelineState.STREAMING,
)

CleanupAction = Callable[[], Union[Awaitable[Any], Any]]


class InvalidTransition(RuntimeError):
    """Raised when a state is skipped or reached out of order."""


@dataclass
class CleanupTask:
    """A release action that runs at most once."""

    label: str
    action: CleanupAction
    executed: bool = False

    async def run(self) -> None:
        if self.executed:
            return
        self.executed = True
        result = self.action()
        if inspect.isawaitable(result):
            await result


# Events delivered through the supervisor channel


@dataclass(frozen=True)
class ProcessExited:
    label: str
    returncode: Optional[int]
    critical: bool = True


@dataclass(frozen=True)
class ShutdownRequested:
    reason: str


@dataclass(frozen=True)
class AcquisitionFailed:
    error: BaseException


SupervisorEvent = Union[ProcessExited, ShutdownRequested, AcquisitionFailed]


class LifecycleSupervisor:
    """Drives the pipeline through its states and tears it down exactly once."""

    def __init__(self, cleanup_timeout: float = CLEANUP_TIMEOUT):
        self.state = PipelineState.INIT
        self.exit_code: Optional[int] = None
        self.cause: Optional[BaseException] = None
        self.cleanup_timeout = cleanup_timeout
        self._cleanup: list[CleanupTask] = []
        self._events: asyncio.Queue = asyncio.Queue()
        self._monitors: list[asyncio.Task] = []
        self._listeners: list[Callable[[PipelineState], None]] = []
        self._stopping = asyncio.Event()
        self._stopped = asyncio.Event()

    # ==================== State ====================

    @property
    def is_shutting_down(self) -> bool:
        return self.state in (PipelineState.SHUTTING_DOWN, PipelineState.STOPPED)

    def add_listener(self, callback: Callable[[PipelineState], None]) -> None:
        """Call `callback(state)` after every state change."""
        self._listeners.append(callback)

    def _set_state(self, state: PipelineState) -> None:
        previous = self.state
        self.state = state
        logger.info(f"Pipeline state: {previous.value} -> {state.value}")
        for callback in self._listeners:
            try:
                callback(state)
            except Exception as e:
                logger.warning(f"State listener failed: {e}")

    def advance(self, state: PipelineState) -> None:
        """
        Move to the next acquisition state.

        Raises:
            InvalidTransition: If `state` is not the immediate successor of the
                current state, or teardown has already started.
        """
        if self.is_shutting_down:
            raise InvalidTransition(f"Cannot enter {state.value} while {self.state.value}")
        if state not in ACQUISITION_ORDER:
            raise InvalidTransition(f"{state.value} is not an acquisition state")

        current = ACQUISITION_ORDER.index(self.state)
        if ACQUISITION_ORDER.index(state) != current + 1:
            raise InvalidTransition(f"Cannot go from {self.state.value} to {state.value}")
        self._set_state(state)

    # ==================== Registration ====================

    @property
    def pending_cleanup(self) -> list[str]:
        """Labels of cleanup tasks not yet executed, in registration order."""
        return [task.label for task in self._cleanup]

    def register_cleanup(self, label: str, action: CleanupAction) -> CleanupTask:
        """Push a release action; it runs in reverse registration order at teardown."""
        task = CleanupTask(label, action)
        self._cleanup.append(task)
        logger.debug(f"Registered cleanup: {label}")
        return task

    def monitor(self, label: str, waiter: Awaitable[Optional[int]], critical: bool = True) -> asyncio.Task:
        """
        Watch a child until it exits and report the exit on the event channel.

        Args:
            label: Name used in logs and in the exit event
            waiter: Awaitable that completes with the exit code when the child ends
            critical: Whether the exit is fatal to the pipeline
        """

        async def _watch():
            try:
                code = await waiter
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Monitor for {label} failed: {e}")
                code = None
            self._events.put_nowait(ProcessExited(label, code, critical))

        task = asyncio.create_task(_watch(), name=f"monitor-{label}")
        self._monitors.append(task)
        return task

    # ==================== Triggers ====================

    def request_shutdown(self, reason: str = "requested") -> None:
        """Ask for a graceful shutdown (exit code 0). Safe to call repeatedly."""
        if self.is_shutting_down:
            logger.info(f"Already shutting down, ignoring {reason}")
            return
        self._events.put_nowait(ShutdownRequested(reason))

    def fail(self, error: BaseException) -> None:
        """Report an unrecoverable error from outside the acquisition task."""
        if self.is_shutting_down:
            return
        self._events.put_nowait(AcquisitionFailed(error))

    async def sleep(self, delay: float) -> bool:
        """
        Sleep for `delay` seconds unless teardown starts first.

        Returns:
            True if teardown started during the wait
        """
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def _next_trigger(self) -> SupervisorEvent:
        """Wait for the first event that ends the run."""
        while True:
            event = await self._events.get()
            if isinstance(event, ProcessExited) and not event.critical:
                logger.warning(f"{event.label} exited (code={event.returncode}); not critical, continuing")
                continue
            return event

    def _record_trigger(self, event: SupervisorEvent) -> None:
        if isinstance(event, ShutdownRequested):
            logger.info(f"Shutting down: {event.reason}")
            self.exit_code = 0
        elif isinstance(event, ProcessExited):
            self.cause = CriticalProcessExit(event.label, event.returncode)
            logger.error(f"{self.cause}")
            code = event.returncode
            self.exit_code = code if code is not None and code > 0 else 1
        else:
            self.cause = event.error
            logger.error(f"Pipeline failed: {event.error}")
            self.exit_code = 2 if isinstance(event.error, ConfigError) else 1

    # ==================== Run / teardown ====================

    async def run(self, acquire: Callable[[], Awaitable[None]]) -> int:
        """
        Run the acquisition sequence, then wait for the first trigger and tear down.

        Returns:
            Process exit code: 0 on requested shutdown, non-zero on failure
        """
        acquisition = asyncio.create_task(acquire(), name="acquire")
        trigger_task = asyncio.create_task(self._next_trigger(), name="trigger")
        trigger: Optional[SupervisorEvent] = None

        try:
            done, _ = await asyncio.wait({acquisition, trigger_task}, return_when=asyncio.FIRST_COMPLETED)
            if trigger_task in done:
                trigger = trigger_task.result()
            elif acquisition.cancelled():
                trigger = ShutdownRequested("acquisition cancelled")
            elif acquisition.exception() is not None:
                trigger = AcquisitionFailed(acquisition.exception())
            else:
                logger.debug("Acquisition complete, supervising")
                trigger = await trigger_task
        finally:
            for task in (acquisition, trigger_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(acquisition, trigger_task, return_exceptions=True)

        self._record_trigger(trigger)
        return await self.shutdown()

    async def shutdown(self) -> int:
        """
        Execute every cleanup task in reverse registration order, exactly once.

        Concurrent or repeated calls wait for the first teardown and return
        its exit code.
        """
        if self.state == PipelineState.STOPPED:
            return self.exit_code or 0
        if self.state == PipelineState.SHUTTING_DOWN:
            await self._stopped.wait()
            return self.exit_code or 0

        if self.exit_code is None:
            self.exit_code = 0
        self._set_state(PipelineState.SHUTTING_DOWN)
        self._stopping.set()

        # Our own terminations below must not be reported as crashes
        for task in self._monitors:
            task.cancel()
        await asyncio.gather(*self._monitors, return_exceptions=True)
        self._monitors.clear()

        while self._cleanup:
            task = self._cleanup.pop()
            logger.info(f"Cleanup: {task.label}")
            try:
                await asyncio.wait_for(task.run(), timeout=self.cleanup_timeout)
            except asyncio.TimeoutError:
                logger.error(f"Cleanup '{task.label}' timed out after {self.cleanup_timeout}s")
            except Exception as e:
                logger.error(f"Cleanup '{task.label}' failed: {e}", exc_info=True)

        self._set_state(PipelineState.STOPPED)
        self._stopped.set()
        return self.exit_code
