"""Shared fixtures: a scripted stand-in for the Playwright engine and an event recorder."""
import asyncio
from typing import Any, List, Optional, Tuple

import pytest


class FakeEngineFactory:
    """Builds FakeEngines and records acquire/release order across all of them."""

    def __init__(self):
        self.engines: List["FakeEngine"] = []
        self.log: List[Tuple[str, int]] = []
        self.live = 0
        self.max_live = 0
        self.goto_delay = 0.0
        self.screenshot_delay = 0.01
        self.fail_launch = False
        self.fail_goto = False
        self.fail_screenshot = False
        self.fail_input = False

    def __call__(self, on_event=None):
        engine = FakeEngine(self, len(self.engines), on_event)
        self.engines.append(engine)
        return engine


class FakeEngine:
    def __init__(self, factory: FakeEngineFactory, index: int, on_event=None):
        self.factory = factory
        self.index = index
        self.on_event = on_event
        self.launched = False
        self.closed = False
        self.viewport: Optional[Tuple[int, int]] = None
        self.gotos: List[Tuple[str, str]] = []
        self.calls: List[Tuple[Any, ...]] = []
        self.screenshots = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def launch(self, width: int, height: int):
        self.launched = True
        self.viewport = (width, height)
        self.factory.live += 1
        self.factory.max_live = max(self.factory.max_live, self.factory.live)
        self.factory.log.append(("acquire", self.index))
        if self.factory.fail_launch:
            raise RuntimeError("browser failed to launch")

    async def goto(self, url: str, wait_until: str, timeout: float):
        self.gotos.append((url, wait_until))
        if self.factory.goto_delay:
            await asyncio.sleep(self.factory.goto_delay)
        if self.factory.fail_goto:
            raise TimeoutError(f"Timeout {timeout}ms exceeded navigating to {url}")

    async def set_viewport(self, width: int, height: int):
        self.viewport = (width, height)

    async def screenshot(self, quality: int) -> str:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.factory.screenshot_delay)
            if self.factory.fail_screenshot:
                raise RuntimeError("Target page, context or browser has been closed")
            self.screenshots += 1
            return f"frame-{self.index}-{self.screenshots}"
        finally:
            self.in_flight -= 1

    async def _input(self, *call):
        if self.factory.fail_input:
            raise RuntimeError("input dispatch failed")
        self.calls.append(call)

    async def click(self, x, y):
        await self._input("click", x, y)

    async def move(self, x, y):
        await self._input("move", x, y)

    async def wheel(self, delta_x, delta_y):
        await self._input("wheel", delta_x, delta_y)

    async def press(self, key):
        await self._input("press", key)

    async def type(self, text):
        await self._input("type", text)

    async def set_page_scale(self, scale):
        await self._input("scale", scale)

    async def close(self):
        if self.closed:
            return
        self.closed = True
        if self.launched:
            self.factory.live -= 1
        self.factory.log.append(("release", self.index))


class EventRecorder:
    def __init__(self):
        self.events: List[Tuple[str, Any]] = []

    async def __call__(self, event: str, data: Any = None):
        self.events.append((event, data))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]

    def count(self, name: str) -> int:
        return sum(1 for n, _ in self.events if n == name)

    def frames(self) -> List[Any]:
        return [data for name, data in self.events if name == "frame"]


@pytest.fixture
def engine_factory() -> FakeEngineFactory:
    return FakeEngineFactory()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def make_session(engine_factory, recorder):
    from screencast.session import Session

    sessions = []

    def _make(**kwargs):
        kwargs.setdefault("frame_interval", 0.0)
        session = Session("test-session", recorder, engine_factory=engine_factory, **kwargs)
        sessions.append(session)
        return session

    return _make
