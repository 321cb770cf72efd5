"""
Data models for dispatch, streaming and the element pipeline.
"""
from .dispatch_models import (
    DispatchMode,
    SamplingOptions,
    ImageInput,
    DispatchRequest,
    TokenUsage,
    FallbackAttempt,
    ProviderResponse,
    DispatchResult,
    StreamChunk,
)
from .stream_models import (
    StreamEventType,
    StreamStart,
    StreamChunkEvent,
    StreamEnd,
    StreamError,
    StreamEvent,
)
from .element_models import (
    BoundingBox,
    WindowBounds,
    ParsedElement,
    Coordinates,
    ElementCacheEntry,
    ScreenshotInput,
    DetectionContext,
    MatchOptions,
    ElementChoice,
    ElementMatchResult,
    DetectionResult,
)

__all__ = [
    "DispatchMode",
    "SamplingOptions",
    "ImageInput",
    "DispatchRequest",
    "TokenUsage",
    "FallbackAttempt",
    "ProviderResponse",
    "DispatchResult",
    "StreamChunk",
    "StreamEventType",
    "StreamStart",
    "StreamChunkEvent",
    "StreamEnd",
    "StreamError",
    "StreamEvent",
    "BoundingBox",
    "WindowBounds",
    "ParsedElement",
    "Coordinates",
    "ElementCacheEntry",
    "ScreenshotInput",
    "DetectionContext",
    "MatchOptions",
    "ElementChoice",
    "ElementMatchResult",
    "DetectionResult",
]
