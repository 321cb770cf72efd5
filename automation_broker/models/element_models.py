"""Structured models for the screen-element pipeline."""
from __future__ import annotations

from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class BoundingBox(BaseModel):
    """Absolute pixel box (desktop space once a window offset is applied)."""

    x1: float
    y1: float
    x2: float
    y2: float

    @property
    def width(self) -> float:
        return self.x2 - self.x1

    @property
    def height(self) -> float:
        return self.y2 - self.y1

    def center(self) -> Tuple[float, float]:
        return (self.x1 + self.x2) / 2, (self.y1 + self.y2) / 2


class WindowBounds(BaseModel):
    """Window placement on the desktop, used to translate window-relative pixels."""

    x: float = 0
    y: float = 0
    width: Optional[float] = None
    height: Optional[float] = None


class ParsedElement(BaseModel):
    """One UI element produced by a detection pass."""

    id: int = Field(description="Unique within one detection pass, not globally stable")
    type: Literal["text", "icon"]
    bbox: BoundingBox
    normalized_bbox: Tuple[float, float, float, float] = Field(description="(x1, y1, x2, y2) in [0, 1]")
    interactivity: bool = False
    content: str = ""
    confidence: float = Field(default=0.9, ge=0.0, le=1.0)

    @property
    def normalized_center_x(self) -> float:
        return (self.normalized_bbox[0] + self.normalized_bbox[2]) / 2

    @property
    def normalized_center_y(self) -> float:
        return (self.normalized_bbox[1] + self.normalized_bbox[3]) / 2

    def center_point(self) -> "Coordinates":
        cx, cy = self.bbox.center()
        return Coordinates(x=round(cx), y=round(cy))


class Coordinates(BaseModel):
    x: int
    y: int


class ElementCacheEntry(BaseModel):
    """Cached outcome of one detection pass for a (origin, screenshot hash) pair."""

    model_config = ConfigDict(frozen=True)

    elements: List[ParsedElement]
    timestamp: float = Field(description="Capture time, seconds since the epoch")
    origin: str = "unknown"
    screenshot_hash: str
    screenshot_width: int
    screenshot_height: int
    window_bounds: Optional[WindowBounds] = None


class ScreenshotInput(BaseModel):
    """A base64-encoded screenshot as handed over by the caller."""

    base64: str
    mime_type: str = "image/png"

    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"


class DetectionContext(BaseModel):
    """Caller-supplied context for one detection or match request."""

    url: Optional[str] = None
    active_url: Optional[str] = None
    active_app: Optional[str] = None
    intent_type: Optional[str] = None
    screenshot_width: Optional[int] = None
    screenshot_height: Optional[int] = None
    window_bounds: Optional[WindowBounds] = None

    @property
    def origin(self) -> str:
        return self.url or self.active_url or "unknown"


class MatchOptions(BaseModel):
    """Options for one element resolution."""

    intent_type: Optional[str] = None
    active_app: Optional[str] = None
    active_url: Optional[str] = None
    screenshot_width: Optional[int] = None
    screenshot_height: Optional[int] = None
    window_bounds: Optional[WindowBounds] = None
    excluded_element_ids: List[int] = Field(default_factory=list)
    max_retries: Optional[int] = None


class ElementChoice(BaseModel):
    """Structured reply expected from the matching prompt."""

    element_index: int = Field(alias="elementIndex")
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = "LLM match"

    model_config = ConfigDict(populate_by_name=True)


class ElementMatchResult(BaseModel):
    element: Optional[ParsedElement] = None
    confidence: float = 0.0
    reasoning: str = ""
    attempt_number: Optional[int] = None
    excluded_count: Optional[int] = None


class DetectionResult(BaseModel):
    """Outcome of a detection request: a resolved point, or every element."""

    coordinates: Coordinates = Field(default_factory=lambda: Coordinates(x=0, y=0))
    confidence: float = 0.0
    method: Literal["omniparser", "omniparser_cached"] = "omniparser"
    selected_element: Optional[str] = None
    cache_hit: bool = False
    all_elements: Optional[List[ParsedElement]] = None
