from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from typing import Any, Callable, Dict, List, Optional, Set
import asyncio
import json
import logging
import uuid

from screencast.engine import PlaywrightEngine
from screencast.errors import InvalidInput, SessionError
from screencast.models import InputEvent, NavigateRequest, ResizeRequest, SessionInfo, StartSessionRequest
from screencast.session import Session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/browser", tags=["browser"])


# -----------------------------
# Session registry
# -----------------------------
class SessionManager:
    """Live sessions keyed by connection id. Destroys them all on shutdown."""

    def __init__(self, engine_factory: Callable[..., Any] = PlaywrightEngine):
        self.sessions: Dict[str, Session] = {}
        self.engine_factory = engine_factory

    def create_session(self, emit, channel_open: Optional[Callable[[], bool]] = None) -> Session:
        session = Session(
            uuid.uuid4().hex,
            emit,
            engine_factory=self.engine_factory,
            channel_open=channel_open,
        )
        self.sessions[session.id] = session
        logger.info(f"Registered session: {session.id}")
        return session

    def list_sessions(self) -> List[SessionInfo]:
        return [s.to_info() for s in self.sessions.values()]

    async def close_session(self, session_id: str):
        session = self.sessions.get(session_id)
        if session is None:
            return
        try:
            await session.destroy()
        except Exception as e:
            logger.warning(f"Session {session_id} destroy failed: {e}")
        self.sessions.pop(session_id, None)
        logger.info(f"Closed session: {session_id}")

    async def cleanup(self):
        for session_id in list(self.sessions.keys()):
            await self.close_session(session_id)


session_manager = SessionManager()


# -----------------------------
# Per-connection dispatcher
# -----------------------------
class Connection:
    """Routes one client's WebSocket commands to its Session and sends its events back.

    Messages in both directions are JSON objects ``{"event": name, "data": payload}``.
    """

    def __init__(self, websocket: WebSocket, manager: SessionManager):
        self.websocket = websocket
        self.manager = manager
        self._send_lock = asyncio.Lock()
        self._open = True
        self._closed = False
        self._tasks: Set[asyncio.Task] = set()
        self.session = manager.create_session(self.emit, channel_open=self.is_open)
        self._handlers = {
            "start-session": self._on_start_session,
            "stop-session": self._on_stop_session,
            "input-event": self._on_input_event,
            "resize": self._on_resize,
            "navigate": self._on_navigate,
            "ping": self._on_ping,
        }

    def is_open(self) -> bool:
        return self._open

    async def emit(self, event: str, data: Any = None):
        if not self._open:
            return
        async with self._send_lock:
            if not self._open:
                return
            try:
                await self.websocket.send_json({"event": event, "data": data})
            except Exception as e:
                logger.info(f"[{self.session.id}] Channel closed while sending {event}: {e}")
                self._open = False

    async def run(self):
        try:
            while True:
                received = await self.websocket.receive()
                if received["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(received.get("code", 1000))
                raw = received.get("text")
                if raw is None:
                    self._spawn(self.emit("error", "Malformed message"))
                    continue
                try:
                    message = json.loads(raw)
                except ValueError:
                    self._spawn(self.emit("error", "Malformed message"))
                    continue
                self.dispatch(message)
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected: {self.session.id}")
        except Exception as e:
            logger.warning(f"WebSocket error ({self.session.id}): {e}")
        finally:
            await self.close()

    def dispatch(self, message: Any):
        if not isinstance(message, dict):
            self._spawn(self.emit("error", "Malformed message"))
            return
        event = message.get("event")
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug(f"[{self.session.id}] Unknown command: {event!r}")
            return
        self._spawn(self._run_command(event, handler, message.get("data")))

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_command(self, event: str, handler, data: Any):
        try:
            await handler(data)
        except SessionError as e:
            await self.emit("error", str(e))
        except ValidationError as e:
            logger.info(f"[{self.session.id}] Invalid {event} payload: {e}")
            await self.emit("error", str(InvalidInput(f"Invalid {event} payload")))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"[{self.session.id}] Command {event} failed: {e}")
            await self.emit("error", f"{event} failed")

    async def close(self):
        """Destroy the session exactly once, whichever of close/error got here first."""
        if self._closed:
            return
        self._closed = True
        self._open = False
        # Shielded so a cancelled handler still releases the browser.
        await asyncio.shield(self.manager.close_session(self.session.id))
        # The session is closed, so anything still queued would be a no-op.
        for task in list(self._tasks):
            task.cancel()

    # -----------------------------
    # Command handlers
    # -----------------------------
    async def _on_start_session(self, data: Any):
        request = StartSessionRequest.model_validate(data or {})
        await self.session.start(request.url, request.width, request.height)

    async def _on_stop_session(self, data: Any):
        await self.session.stop()

    async def _on_input_event(self, data: Any):
        await self.session.dispatch_input(InputEvent.model_validate(data or {}))

    async def _on_resize(self, data: Any):
        request = ResizeRequest.model_validate(data or {})
        await self.session.resize(request.width, request.height)

    async def _on_navigate(self, data: Any):
        if isinstance(data, str):
            url = data
        else:
            url = NavigateRequest.model_validate(data or {}).url
        await self.session.navigate(url)

    async def _on_ping(self, data: Any):
        await self.emit("pong")


# -----------------------------
# Endpoints
# -----------------------------
@router.get("/sessions", response_model=List[SessionInfo])
async def list_sessions():
    """List the sessions of all connected clients."""
    return session_manager.list_sessions()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    connection = Connection(websocket, session_manager)
    logger.info(f"User connected: {connection.session.id}")
    await connection.run()
