"""Request/result records for the fallback dispatcher."""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union


class DispatchMode(str, Enum):
    """How a dispatch talks to its providers."""

    TEXT = "text"
    STREAM = "stream"
    VISION = "vision"

    @classmethod
    def coerce(cls, value: Union["DispatchMode", str]) -> "DispatchMode":
        """
        Return a `DispatchMode` for the provided value.

        >>> DispatchMode.coerce("Stream")
        <DispatchMode.STREAM: 'stream'>
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            allowed = ", ".join(mode.value for mode in cls)
            raise ValueError(f"Invalid dispatch mode '{value}'. Allowed values: {allowed}.") from exc


@dataclass(frozen=True)
class SamplingOptions:
    """Optional sampling overrides; None falls back to the mode's configured default."""

    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


@dataclass(frozen=True)
class ImageInput:
    """A base64 screenshot attached to a vision dispatch."""

    base64: str
    mime_type: str = "image/png"
    detail: str = "high"

    def data_uri(self) -> str:
        if self.base64.startswith("data:"):
            return self.base64
        return f"data:{self.mime_type};base64,{self.base64}"


@dataclass(frozen=True)
class DispatchRequest:
    """One logical completion request, already fully composed by the caller."""

    prompt: str
    system_instructions: Optional[str] = None
    preferred_provider: Optional[str] = None
    sampling: SamplingOptions = field(default_factory=SamplingOptions)
    images: Tuple[ImageInput, ...] = ()


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class FallbackAttempt:
    """Outcome of one provider attempt within a dispatch."""

    provider: str
    success: bool
    latency_ms: float
    error: Optional[str] = None
    error_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "success": self.success,
            "error": self.error,
            "latencyMs": round(self.latency_ms, 2),
        }


@dataclass(frozen=True)
class ProviderResponse:
    """Normalized output of one provider call, before it becomes a DispatchResult."""

    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: Optional[str] = None
    finish_reason: Optional[str] = None
    cost_usd: float = 0.0


@dataclass(frozen=True)
class DispatchResult:
    """Final outcome of a dispatch. Produced once per call."""

    text: str
    provider: str
    elapsed_ms: float
    usage: TokenUsage = field(default_factory=TokenUsage)
    fallback_chain: Tuple[FallbackAttempt, ...] = ()
    model: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fullText": self.text,
            "provider": self.provider,
            "processingTime": round(self.elapsed_ms, 2),
            "tokenUsage": {
                "promptTokens": self.usage.prompt_tokens,
                "completionTokens": self.usage.completion_tokens,
                "totalTokens": self.usage.total_tokens,
            },
            "fallbackChain": [attempt.to_dict() for attempt in self.fallback_chain],
        }


@dataclass(frozen=True)
class StreamChunk:
    """One incremental text fragment forwarded during a streaming dispatch."""

    text: str
    provider: str
    finish_reason: Optional[str] = None
