"""
Overlay Renderer.

Uses Playwright to drive a kiosk-mode Chromium on the virtual display:
- Launches Chromium bound to the allocated DISPLAY at the configured geometry
- Navigates to the overlay URL and waits for network idle
- Normalizes page chrome (solid background, no zoom, fullscreen attempt)
  so the x11grab capture is pixel-stable

A page that fails to load (non-2xx, timeout) is fatal: streaming a broken
overlay is worse than not streaming.
"""

import asyncio
import logging
import os
from typing import Callable, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from broadcaster.display import DisplaySlot
from broadcaster.errors import NavigationError

logger = logging.getLogger(__name__)

CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--use-gl=swiftshader",
    "--kiosk",
    "--window-position=0,0",
    "--disable-translate",
    "--disable-notifications",
    "--disable-infobars",
    "--noerrdialogs",
    "--hide-scrollbars",
    "--no-first-run",
    "--no-default-browser-check",
    "--autoplay-policy=no-user-gesture-required",
    "--disable-features=HardwareMediaKeyHandling,MediaRouter,Translate",
]

# Runs in the page; receives the background colour
NORMALIZE_PAGE_SCRIPT = """
(background) => {
    const root = document.documentElement;
    const body = document.body;
    root.style.background = background;
    root.style.overflow = 'hidden';
    if (body) {
        body.style.background = background;
        body.style.margin = '0';
        body.style.overflow = 'hidden';
        body.style.zoom = '1';
    }
    let fullscreen = !!document.fullscreenElement;
    if (!fullscreen && root.requestFullscreen) {
        try {
            root.requestFullscreen().catch(() => {});
            fullscreen = true;
        } catch (e) {
            fullscreen = false;
        }
    }
    return fullscreen;
}
"""


class OverlayRenderer:
    """Renders the overlay page into a virtual display."""

    def __init__(
        self,
        overlay_url: str,
        width: int = 1920,
        height: int = 1080,
        background: str = "#000000",
        navigation_timeout: float = 30.0,
        playwright_factory: Callable = async_playwright,
    ):
        self.overlay_url = overlay_url
        self.width = width
        self.height = height
        self.background = background
        self.navigation_timeout = navigation_timeout
        self._playwright_factory = playwright_factory
        self._playwright = None
        self.browser = None
        self.page = None
        self._closing = False
        self._closed = asyncio.Event()

    def build_launch_args(self) -> list[str]:
        return CHROMIUM_ARGS + [f"--window-size={self.width},{self.height}"]

    def _on_disconnected(self, *_args) -> None:
        if not self._closing:
            logger.error("Browser disconnected unexpectedly")
        self._closed.set()

    def _on_crash(self, *_args) -> None:
        logger.error("Overlay page crashed")
        self._closed.set()

    async def launch(self, slot: DisplaySlot) -> None:
        """Start Chromium on the slot's display."""
        logger.info(f"Launching Chromium on DISPLAY={slot.display}")
        self._playwright = await self._playwright_factory().start()
        self.browser = await self._playwright.chromium.launch(
            headless=False,
            args=self.build_launch_args(),
            ignore_default_args=["--enable-automation"],
            env={**os.environ, "DISPLAY": slot.display},
        )
        self.browser.on("disconnected", self._on_disconnected)

    async def load_overlay(self) -> None:
        """
        Open the overlay and wait for it to settle.

        Raises:
            NavigationError: On timeout, navigation error or non-2xx response
        """
        context = await self.browser.new_context(
            viewport={"width": self.width, "height": self.height},
        )
        self.page = await context.new_page()
        self.page.on("crash", self._on_crash)

        try:
            response = await self.page.goto(
                self.overlay_url,
                wait_until="networkidle",
                timeout=self.navigation_timeout * 1000,
            )
        except PlaywrightError as e:
            # playwright's TimeoutError subclasses Error
            raise NavigationError(f"Overlay failed to load: {e}") from e

        if response is None:
            raise NavigationError(f"No response loading {self.overlay_url}")
        if not response.ok:
            raise NavigationError(f"Overlay returned HTTP {response.status}")

        logger.info("Overlay page loaded")
        await self.normalize_page()

    async def normalize_page(self) -> None:
        try:
            fullscreen = await self.page.evaluate(NORMALIZE_PAGE_SCRIPT, self.background)
        except PlaywrightError as e:
            logger.warning(f"Page normalization failed: {e}")
            return
        if not fullscreen:
            logger.debug("Fullscreen request was not granted; kiosk window covers the display")

    async def wait_closed(self) -> None:
        """Complete when the browser disconnects or the page crashes."""
        await self._closed.wait()

    async def close(self) -> None:
        self._closing = True
        if self.browser is not None:
            try:
                await self.browser.close()
            except PlaywrightError as e:
                logger.debug(f"Browser close failed: {e}")
            self.browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def acquire(self, supervisor, slot: DisplaySlot) -> None:
        """Launch, register teardown, then load the overlay."""
        try:
            await self.launch(slot)
        except BaseException:
            # A half-started browser has not been registered yet
            await self.close()
            raise
        supervisor.register_cleanup("browser", self.close)
        supervisor.monitor("browser", self.wait_closed(), critical=True)
        await self.load_overlay()
