"""Per-connection remote browser session.

A Session owns at most one engine handle at a time and streams frames from it
with a self-pacing capture loop: the next capture starts only after the
previous frame was emitted (or failed), so a slow page or a slow client lowers
the frame rate instead of queueing work.

Every operation that touches ``state``, ``generation`` or ``engine`` runs under
the session lock, capture ticks included.
"""

import asyncio
import logging
import os
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Optional, Set

from .engine import PlaywrightEngine
from .errors import InvalidInput, SessionStartFailed
from .models import InputEvent, SessionInfo, Viewport

logger = logging.getLogger(__name__)

# -----------------------------
# Config
# -----------------------------
DEFAULT_WIDTH = 1280
DEFAULT_HEIGHT = 720
START_TIMEOUT_MS = int(os.environ.get("START_TIMEOUT_MS", "60000"))
NAVIGATE_TIMEOUT_MS = int(os.environ.get("NAVIGATE_TIMEOUT_MS", "30000"))
FRAME_QUALITY = int(os.environ.get("FRAME_QUALITY", "70"))
FRAME_MIN_INTERVAL_MS = int(os.environ.get("FRAME_MIN_INTERVAL_MS", "20"))

EmitFn = Callable[..., Awaitable[None]]


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    STOPPING = "stopping"
    CLOSED = "closed"


def _positive(value: Any, fallback: int) -> int:
    if value is None or isinstance(value, bool):
        return fallback
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        return fallback
    return number if number > 0 else fallback


class Session:
    def __init__(
        self,
        session_id: str,
        emit: EmitFn,
        engine_factory: Callable[..., Any] = PlaywrightEngine,
        channel_open: Optional[Callable[[], bool]] = None,
        frame_interval: float = FRAME_MIN_INTERVAL_MS / 1000,
        frame_quality: int = FRAME_QUALITY,
    ):
        self.id = session_id
        self.state = SessionState.IDLE
        self.engine = None
        self.viewport = Viewport(width=DEFAULT_WIDTH, height=DEFAULT_HEIGHT)
        self.generation = 0
        self.capturing = False
        self.frames_sent = 0

        self._emit = emit
        self._engine_factory = engine_factory
        self._channel_open = channel_open or (lambda: True)
        self._frame_interval = frame_interval
        self._frame_quality = frame_quality

        self._lock = asyncio.Lock()
        self._closed = False
        # Bumped by every start/stop; a queued start whose ticket is stale never launches.
        self._start_ticket = 0
        self._launch_task: Optional[asyncio.Task] = None
        self._capture_task: Optional[asyncio.Task] = None
        self._event_tasks: Set[asyncio.Task] = set()

    # -----------------------------
    # Lifecycle
    # -----------------------------
    async def start(self, url: str, width: Any = None, height: Any = None):
        """Tear down whatever is running, launch a fresh engine and begin streaming.

        A start superseded by a newer start, ``stop`` or ``destroy`` returns
        quietly after releasing its own engine. Raises ``InvalidInput`` for an
        empty url and ``SessionStartFailed`` when launch or navigation fails.
        """
        if self._closed:
            return
        if not url or not str(url).strip():
            raise InvalidInput("A url is required to start a session")

        viewport = Viewport(
            width=_positive(width, DEFAULT_WIDTH),
            height=_positive(height, DEFAULT_HEIGHT),
        )

        self._start_ticket += 1
        ticket = self._start_ticket
        self._cancel_launch()

        async with self._lock:
            if self._closed or ticket != self._start_ticket:
                logger.info(f"[{self.id}] Start for {url} superseded before launch")
                return

            await self._teardown()
            if self._closed or ticket != self._start_ticket:
                self._settle_idle()
                return

            self.generation += 1
            generation = self.generation
            self.state = SessionState.STARTING
            self.viewport = viewport
            logger.info(f"[{self.id}] Starting session (generation {generation}) at {url}")

            self._launch_task = asyncio.ensure_future(self._launch(url, generation))
            try:
                await self._launch_task
            except asyncio.CancelledError:
                await self._release()
                self._settle_idle()
                task = asyncio.current_task()
                if task is not None and task.cancelling():
                    raise
                logger.info(f"[{self.id}] Start for {url} cancelled")
                return
            except Exception as e:
                logger.error(f"[{self.id}] Session start error: {e}")
                await self._release()
                self._settle_idle()
                raise SessionStartFailed(e) from e
            finally:
                self._launch_task = None

            if self._closed or ticket != self._start_ticket:
                await self._release()
                self._settle_idle()
                return

            self.state = SessionState.STREAMING
            await self._emit("session-started")
            self._start_capture(generation)

    async def _launch(self, url: str, generation: int):
        self.engine = self._engine_factory(partial(self._on_engine_event, generation))
        await self.engine.launch(self.viewport.width, self.viewport.height)
        await self.engine.goto(url, wait_until="networkidle", timeout=START_TIMEOUT_MS)

    async def stop(self):
        """Stop streaming and release the engine. No-op when already idle or closed."""
        self._start_ticket += 1
        self._cancel_launch()

        async with self._lock:
            if self.state in (SessionState.IDLE, SessionState.CLOSED) and self.engine is None:
                return
            await self._teardown()
            self._settle_idle()
            logger.info(f"[{self.id}] Session stopped")

    async def destroy(self):
        """Terminal stop. Every later call on this session is a no-op."""
        if self.state is SessionState.CLOSED:
            return
        self._closed = True
        await self.stop()
        self.state = SessionState.CLOSED
        for task in list(self._event_tasks):
            task.cancel()
        logger.info(f"[{self.id}] Session destroyed")

    async def _teardown(self):
        self._cancel_capture()
        if self.engine is not None:
            self.state = SessionState.STOPPING
            await self._release()

    async def _release(self):
        engine, self.engine = self.engine, None
        if engine is None:
            return
        try:
            await engine.close()
        except Exception as e:
            logger.warning(f"[{self.id}] Engine release failed: {e}")

    def _settle_idle(self):
        if self.state is not SessionState.CLOSED:
            self.state = SessionState.IDLE

    def _cancel_launch(self):
        task = self._launch_task
        if task is not None and not task.done():
            task.cancel()

    # -----------------------------
    # Commands
    # -----------------------------
    async def dispatch_input(self, event: InputEvent):
        async with self._lock:
            if self.state is not SessionState.STREAMING or self.engine is None:
                return
            try:
                if event.type == "click":
                    await self.engine.click(event.x, event.y)
                elif event.type == "mousemove":
                    await self.engine.move(event.x, event.y)
                elif event.type == "scroll":
                    await self.engine.wheel(event.delta_x, event.delta_y)
                elif event.type == "zoom":
                    if event.scale is not None and event.scale > 0:
                        await self.engine.set_page_scale(event.scale)
                elif event.type == "keydown":
                    if event.key:
                        await self.engine.press(event.key)
                elif event.type == "type":
                    if event.text:
                        await self.engine.type(event.text)
                else:
                    logger.debug(f"[{self.id}] Ignoring input event of type {event.type!r}")
            except Exception as e:
                logger.error(f"[{self.id}] Input error ({event.type}): {e}")

    async def resize(self, width: Any = None, height: Any = None):
        async with self._lock:
            if self.engine is None:
                return
            # A non-positive dimension rejects the whole resize; a missing one keeps its current value.
            if any(value is not None and _positive(value, 0) == 0 for value in (width, height)):
                logger.info(f"[{self.id}] Ignoring resize to {width}x{height}")
                return
            viewport = Viewport(
                width=_positive(width, self.viewport.width),
                height=_positive(height, self.viewport.height),
            )
            logger.info(f"[{self.id}] Resizing viewport to {viewport.width}x{viewport.height}")
            try:
                await self.engine.set_viewport(viewport.width, viewport.height)
            except Exception as e:
                logger.error(f"[{self.id}] Resize error: {e}")
                return
            self.viewport = viewport

    async def navigate(self, url: str):
        async with self._lock:
            if self.engine is None or not url:
                return
            try:
                await self.engine.goto(url, wait_until="domcontentloaded", timeout=NAVIGATE_TIMEOUT_MS)
            except Exception as e:
                logger.error(f"[{self.id}] Navigation error: {e}")

    # -----------------------------
    # Capture loop
    # -----------------------------
    def _start_capture(self, generation: int):
        self.capturing = True
        self._capture_task = asyncio.create_task(self._capture_loop(generation))

    def _cancel_capture(self):
        task, self._capture_task = self._capture_task, None
        self.capturing = False
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _is_current(self, generation: int) -> bool:
        return (
            self.state is SessionState.STREAMING
            and self.generation == generation
            and self.engine is not None
            and self._channel_open()
        )

    async def _capture_loop(self, generation: int):
        try:
            while await self._capture_tick(generation):
                if self._frame_interval > 0:
                    await asyncio.sleep(self._frame_interval)
        finally:
            if self.generation == generation:
                self.capturing = False

    async def _capture_tick(self, generation: int) -> bool:
        """Capture and emit one frame. Returns False when the loop must end."""
        async with self._lock:
            if not self._is_current(generation):
                return False
            try:
                frame = await self.engine.screenshot(quality=self._frame_quality)
            except Exception as e:
                logger.warning(f"[{self.id}] Frame capture stopped: {e}")
                return False
            if not self._is_current(generation):
                return False
            try:
                await self._emit("frame", frame)
            except Exception as e:
                logger.warning(f"[{self.id}] Frame emit failed: {e}")
                return False
            self.frames_sent += 1
            return True

    # -----------------------------
    # Engine events
    # -----------------------------
    def _on_engine_event(self, generation: int, event: str):
        if self._closed or generation != self.generation:
            return
        if self.state not in (SessionState.STARTING, SessionState.STREAMING):
            return
        task = asyncio.ensure_future(self._emit(event))
        self._event_tasks.add(task)
        task.add_done_callback(self._event_tasks.discard)

    def to_info(self) -> SessionInfo:
        return SessionInfo(
            id=self.id,
            state=self.state.value,
            generation=self.generation,
            capturing=self.capturing,
            viewport=self.viewport,
            frames_sent=self.frames_sent,
        )
