"""Pytest configuration and shared fakes.

Nothing here starts a real Xvfb, Chromium, ffmpeg or LiveKit call. The
fakes are injected through the components' constructor seams (spawn,
playwright_factory, api_factory).
"""

import asyncio
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Optional

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from broadcaster.process import ProcessHandle  # noqa: E402

# ---------------------------------------------------------------------------
# Processes
# ---------------------------------------------------------------------------


class FakeProcess:
    """Stands in for asyncio.subprocess.Process."""

    _next_pid = 40000

    def __init__(self):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.returncode: Optional[int] = None
        self.signals: list[str] = []
        self._exited = asyncio.Event()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def exit(self, code: int) -> None:
        """Simulate the child exiting on its own."""
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    def terminate(self) -> None:
        self.signals.append("SIGTERM")
        self.exit(-15)

    def kill(self) -> None:
        self.signals.append("SIGKILL")
        self.exit(-9)


class FakeSpawner:
    """
    Records spawn calls and returns handles around FakeProcess.

    For Xvfb commands the display socket is created under `x_root`, unless the
    display number is listed in `dead_displays` (the child exits at once) or
    `sockets` is False (the child stays up but never becomes ready).
    """

    def __init__(self, x_root: Path, dead_displays: tuple = (), sockets: bool = True):
        self.x_root = Path(x_root)
        self.dead_displays = set(dead_displays)
        self.sockets = sockets
        self.calls: list[tuple[str, list[str]]] = []
        self.handles: list[ProcessHandle] = []

    async def __call__(self, label: str, command, env=None) -> ProcessHandle:
        command = list(command)
        self.calls.append((label, command))
        process = FakeProcess()
        if label == "Xvfb":
            number = int(command[1].lstrip(":"))
            if number in self.dead_displays:
                process.exit(1)
            elif self.sockets:
                socket_path = self.x_root / ".X11-unix" / f"X{number}"
                socket_path.parent.mkdir(parents=True, exist_ok=True)
                socket_path.touch()
        handle = ProcessHandle(label, process, command)
        self.handles.append(handle)
        return handle

    def commands(self, label: str) -> list[list[str]]:
        return [command for name, command in self.calls if name == label]

    def handles_for(self, label: str) -> list[ProcessHandle]:
        return [h for h in self.handles if h.label == label]


# ---------------------------------------------------------------------------
# Playwright
# ---------------------------------------------------------------------------


class FakeResponse:
    def __init__(self, status: int = 200):
        self.status = status

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class FakePage:
    def __init__(self, browser: "FakeBrowser"):
        self.browser = browser
        self.handlers: dict = {}
        self.goto_calls: list[tuple[str, dict]] = []
        self.evaluated: list[tuple[str, object]] = []

    def on(self, event: str, callback) -> None:
        self.handlers[event] = callback

    async def goto(self, url: str, **kwargs):
        self.goto_calls.append((url, kwargs))
        if self.browser.goto_error is not None:
            raise self.browser.goto_error
        return self.browser.response

    async def evaluate(self, script: str, arg=None):
        self.evaluated.append((script, arg))
        return True


class FakeContext:
    def __init__(self, browser: "FakeBrowser", viewport: dict):
        self.browser = browser
        self.viewport = viewport

    async def new_page(self) -> FakePage:
        page = FakePage(self.browser)
        self.browser.pages.append(page)
        return page


class FakeBrowser:
    def __init__(self, response: Optional[FakeResponse] = None, goto_error: Optional[Exception] = None):
        self.response = response if response is not None else FakeResponse(200)
        self.goto_error = goto_error
        self.handlers: dict = {}
        self.contexts: list[FakeContext] = []
        self.pages: list[FakePage] = []
        self.closed = False

    def on(self, event: str, callback) -> None:
        self.handlers[event] = callback

    async def new_context(self, viewport: dict) -> FakeContext:
        context = FakeContext(self, viewport)
        self.contexts.append(context)
        return context

    async def close(self) -> None:
        self.closed = True
        callback = self.handlers.get("disconnected")
        if callback is not None:
            callback(self)


class FakeChromium:
    def __init__(self, browser: FakeBrowser):
        self.browser = browser
        self.launch_kwargs: Optional[dict] = None

    async def launch(self, **kwargs) -> FakeBrowser:
        self.launch_kwargs = kwargs
        return self.browser


class FakePlaywright:
    """Mimics both async_playwright() and the started Playwright object."""

    def __init__(self, browser: Optional[FakeBrowser] = None):
        self.browser = browser or FakeBrowser()
        self.chromium = FakeChromium(self.browser)
        self.started = False
        self.stopped = False

    def __call__(self) -> "FakePlaywright":
        return self

    async def start(self) -> "FakePlaywright":
        self.started = True
        return self

    async def stop(self) -> None:
        self.stopped = True


# ---------------------------------------------------------------------------
# LiveKit
# ---------------------------------------------------------------------------


def ingress_info(ingress_id: str, identity: str, url: str = "", stream_key: str = "", room: str = "overlay-live"):
    return SimpleNamespace(
        ingress_id=ingress_id,
        participant_identity=identity,
        room_name=room,
        url=url,
        stream_key=stream_key,
    )


def egress_info(egress_id: str = "EG_1", live_playlist: str = "", playlist: str = ""):
    results = []
    if live_playlist or playlist:
        results.append(SimpleNamespace(live_playlist_location=live_playlist, playlist_location=playlist))
    return SimpleNamespace(egress_id=egress_id, segment_results=results, segments=None)


class FakeIngressService:
    def __init__(
        self,
        existing=None,
        created=None,
        error: Optional[Exception] = None,
        delete_error: Optional[Exception] = None,
    ):
        self.items = list(existing or [])
        self.created = created
        self.error = error
        self.delete_error = delete_error
        self.list_requests = []
        self.create_requests = []
        self.deleted: list[str] = []

    async def list_ingress(self, request):
        if self.error is not None:
            raise self.error
        self.list_requests.append(request)
        return SimpleNamespace(items=list(self.items))

    async def create_ingress(self, request):
        self.create_requests.append(request)
        return self.created

    async def delete_ingress(self, request):
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(request.ingress_id)
        return SimpleNamespace(ingress_id=request.ingress_id)


class FakeEgressService:
    def __init__(self, started=None, polled=None, error: Optional[Exception] = None):
        self.started = started if started is not None else egress_info()
        self.polled = list(polled or [])
        self.error = error
        self.start_requests = []
        self.list_requests = []
        self.stopped: list[str] = []

    async def start_room_composite_egress(self, request):
        if self.error is not None:
            raise self.error
        self.start_requests.append(request)
        return self.started

    async def list_egress(self, request):
        self.list_requests.append(request)
        info = self.polled.pop(0) if self.polled else egress_info(request.egress_id)
        return SimpleNamespace(items=[info])

    async def stop_egress(self, request):
        self.stopped.append(request.egress_id)
        return SimpleNamespace(egress_id=request.egress_id)


class FakeLiveKitAPI:
    def __init__(self, ingress: Optional[FakeIngressService] = None, egress: Optional[FakeEgressService] = None):
        self.ingress = ingress or FakeIngressService()
        self.egress = egress or FakeEgressService()
        self.settings = []
        self.closed = 0

    def factory(self, settings) -> "FakeLiveKitAPI":
        self.settings.append(settings)
        return self

    async def aclose(self) -> None:
        self.closed += 1


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def x_root(tmp_path):
    """Directory standing in for /tmp (X lock files and sockets)."""
    root = tmp_path / "x"
    (root / ".X11-unix").mkdir(parents=True)
    return root


@pytest.fixture
def spawner(x_root):
    return FakeSpawner(x_root)


@pytest.fixture
def fake_playwright():
    return FakePlaywright()


@pytest.fixture(autouse=True)
def no_notify_socket(monkeypatch):
    """Keep sd_notify from talking to a real systemd."""
    monkeypatch.delenv("NOTIFY_SOCKET", raising=False)
