import base64
import logging
import os
from typing import Callable, Optional

# IMPORTANT: server.py already conditionally sets PLAYWRIGHT_BROWSERS_PATH.
# Keep this module safe for local/dev environments.
if not os.environ.get("PLAYWRIGHT_BROWSERS_PATH") and os.path.exists("/pw-browsers"):
    os.environ["PLAYWRIGHT_BROWSERS_PATH"] = "/pw-browsers"

from playwright.async_api import (
    Browser,
    BrowserContext,
    CDPSession,
    Page,
    Playwright,
    async_playwright,
)

from .errors import EngineUnavailable

logger = logging.getLogger(__name__)

# -----------------------------
# Config
# -----------------------------
# Checked in this order; the first non-empty value wins.
EXECUTABLE_PATH_ENV_VARS = (
    "BROWSER_EXECUTABLE_PATH",
    "CHROME_EXECUTABLE_PATH",
    "PUPPETEER_EXECUTABLE_PATH",
    "CHROME_PATH",
)
HEADLESS = os.environ.get("BROWSER_HEADLESS", "true").lower() in ("true", "1", "yes")
SPOOF_WEBGL = os.environ.get("BROWSER_SPOOF_WEBGL", "true").lower() in ("true", "1", "yes")
USER_AGENT = os.environ.get(
    "BROWSER_USER_AGENT",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36",
)
LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--enable-gpu",
    "--use-gl=angle",
    "--ignore-gpu-blocklist",
    "--enable-features=NetworkService",
    "--disable-dev-shm-usage",
]

# Report a real GPU instead of SwiftShader (UNMASKED_VENDOR_WEBGL / UNMASKED_RENDERER_WEBGL).
WEBGL_OVERRIDE_SCRIPT = """
(() => {
    const getParameter = WebGLRenderingContext.prototype.getParameter;
    WebGLRenderingContext.prototype.getParameter = function (parameter) {
        if (parameter === 37445) {
            return 'Intel Open Source Technology Center';
        }
        if (parameter === 37446) {
            return 'Mesa DRI Intel(R) HD Graphics 630 (Kaby Lake GT2)';
        }
        return getParameter.apply(this, arguments);
    };
})();
"""

# CDP events forwarded to the session as load-state events.
LOAD_EVENTS = {
    "Page.frameStartedLoading": "loading-start",
    "Page.loadEventFired": "loading-end",
    "Page.frameStoppedLoading": "loading-end",
}


def resolve_executable_path() -> Optional[str]:
    for name in EXECUTABLE_PATH_ENV_VARS:
        value = os.environ.get(name, "").strip()
        if value:
            logger.debug(f"Using browser executable from {name}: {value}")
            return value
    return None


class PlaywrightEngine:
    """One isolated Chromium process with a single page.

    Owned by exactly one Session. ``on_event`` receives ``loading-start`` and
    ``loading-end`` notifications from the page's CDP feed.
    """

    def __init__(self, on_event: Optional[Callable[[str], None]] = None):
        self.on_event = on_event
        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self.cdp: Optional[CDPSession] = None

    async def launch(self, width: int, height: int):
        self.playwright = await async_playwright().start()

        launch_kwargs = {
            "headless": HEADLESS,
            "args": LAUNCH_ARGS + [f"--window-size={width},{height}"],
        }
        executable_path = resolve_executable_path()
        if executable_path:
            launch_kwargs["executable_path"] = executable_path

        self.browser = await self.playwright.chromium.launch(**launch_kwargs)
        self.context = await self.browser.new_context(
            viewport={"width": width, "height": height},
            user_agent=USER_AGENT,
        )
        if SPOOF_WEBGL:
            await self.context.add_init_script(WEBGL_OVERRIDE_SCRIPT)

        self.page = await self.context.new_page()
        self.page.on("console", lambda msg: logger.info(f"PAGE LOG: {msg.text}"))

        self.cdp = await self.context.new_cdp_session(self.page)
        await self.cdp.send("Page.enable")
        for cdp_event, name in LOAD_EVENTS.items():
            self.cdp.on(cdp_event, self._make_listener(name))

        logger.info(f"Browser launched ({width}x{height})")

    def _make_listener(self, name: str):
        def listener(_params=None):
            if self.on_event is not None:
                self.on_event(name)

        return listener

    def _require_page(self) -> Page:
        if self.page is None:
            raise EngineUnavailable("Browser page is not available")
        return self.page

    async def goto(self, url: str, wait_until: str, timeout: float):
        await self._require_page().goto(url, wait_until=wait_until, timeout=timeout)

    async def set_viewport(self, width: int, height: int):
        await self._require_page().set_viewport_size({"width": width, "height": height})

    async def screenshot(self, quality: int) -> str:
        data = await self._require_page().screenshot(type="jpeg", quality=quality)
        return base64.b64encode(data).decode("utf-8")

    async def click(self, x: float, y: float):
        await self._require_page().mouse.click(x, y)

    async def move(self, x: float, y: float):
        await self._require_page().mouse.move(x, y)

    async def wheel(self, delta_x: float, delta_y: float):
        await self._require_page().mouse.wheel(delta_x, delta_y)

    async def press(self, key: str):
        await self._require_page().keyboard.press(key)

    async def type(self, text: str):
        await self._require_page().keyboard.type(text)

    async def set_page_scale(self, scale: float):
        if self.cdp is None:
            raise EngineUnavailable("CDP session is not available")
        await self.cdp.send("Emulation.setPageScaleFactor", {"pageScaleFactor": scale})

    async def close(self):
        """Release everything this engine holds. Failures are logged, never raised."""
        cdp, context, browser, playwright = self.cdp, self.context, self.browser, self.playwright
        self.cdp = self.page = self.context = self.browser = self.playwright = None

        if cdp is not None:
            try:
                await cdp.detach()
            except Exception as e:
                logger.warning(f"CDP detach failed: {e}")
        if context is not None:
            try:
                await context.close()
            except Exception as e:
                logger.warning(f"Browser context close failed: {e}")
        if browser is not None:
            try:
                await browser.close()
            except Exception as e:
                logger.warning(f"Browser close failed: {e}")
        if playwright is not None:
            try:
                await playwright.stop()
            except Exception as e:
                logger.warning(f"Playwright stop failed: {e}")
