"""Errors raised by remote browser sessions.

Only ``SessionError`` subclasses ever reach the client, as a single ``error``
event. Input dispatch and frame capture failures are logged and swallowed.
"""

from typing import Optional


class SessionError(Exception):
    """Base error with a stable code for client communication."""

    code = "SESSION_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code


class InvalidInput(SessionError):
    """Caller-correctable input, rejected before any engine call."""

    code = "INVALID_INPUT"


class SessionStartFailed(SessionError):
    """Browser launch or initial navigation failed."""

    code = "SESSION_START_FAILED"

    def __init__(self, cause: BaseException):
        super().__init__(f"Failed to start session: {cause}")
        self.cause = cause


class EngineUnavailable(SessionError):
    """Engine call made after the browser was released or before it launched."""

    code = "ENGINE_UNAVAILABLE"
