from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# -----------------------------
# Inbound command payloads
# -----------------------------
class StartSessionRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    url: str = ""
    width: Optional[float] = None
    height: Optional[float] = None


class InputEvent(BaseModel):
    """Structured pointer/keyboard event. Unknown ``type`` values are ignored downstream."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: Optional[str] = None
    x: float = 0
    y: float = 0
    delta_x: float = Field(default=0, alias="deltaX")
    delta_y: float = Field(default=0, alias="deltaY")
    scale: Optional[float] = None
    key: Optional[str] = None
    text: Optional[str] = None


class ResizeRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    width: Optional[float] = None
    height: Optional[float] = None


class NavigateRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    url: str = ""


# -----------------------------
# Status models
# -----------------------------
class Viewport(BaseModel):
    width: int = 1280
    height: int = 720


class SessionInfo(BaseModel):
    id: str
    state: str
    generation: int
    capturing: bool
    viewport: Viewport
    frames_sent: int = 0
