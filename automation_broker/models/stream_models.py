"""Stream events emitted for one streaming session.

For a given request id the sequence is always: one ``StreamStart``, zero or
more ``StreamChunkEvent``, then exactly one of ``StreamEnd`` / ``StreamError``.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from automation_broker.models.dispatch_models import DispatchResult


class StreamEventType(str, Enum):
    START = "llm_stream_start"
    CHUNK = "llm_stream_chunk"
    END = "llm_stream_end"
    ERROR = "llm_error"


@dataclass(frozen=True)
class StreamStart:
    request_id: str
    preferred_provider: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def type(self) -> StreamEventType:
        return StreamEventType.START

    @property
    def is_terminal(self) -> bool:
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.request_id,
            "type": self.type.value,
            "payload": {"preferredProvider": self.preferred_provider},
            "timestamp": int(self.timestamp * 1000),
        }


@dataclass(frozen=True)
class StreamChunkEvent:
    request_id: str
    text: str
    provider: str
    finish_reason: Optional[str] = None
    sequence: int = 0
    timestamp: float = field(default_factory=time.time)

    @property
    def type(self) -> StreamEventType:
        return StreamEventType.CHUNK

    @property
    def is_terminal(self) -> bool:
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": f"{self.request_id}_chunk_{self.sequence}",
            "parentId": self.request_id,
            "type": self.type.value,
            "payload": {"text": self.text, "provider": self.provider, "finishReason": self.finish_reason},
            "timestamp": int(self.timestamp * 1000),
        }


@dataclass(frozen=True)
class StreamEnd:
    request_id: str
    result: DispatchResult
    timestamp: float = field(default_factory=time.time)

    @property
    def type(self) -> StreamEventType:
        return StreamEventType.END

    @property
    def is_terminal(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": f"{self.request_id}_end",
            "parentId": self.request_id,
            "type": self.type.value,
            "payload": self.result.to_dict(),
            "timestamp": int(self.timestamp * 1000),
        }


@dataclass(frozen=True)
class StreamError:
    request_id: str
    code: str
    message: str
    recoverable: bool = True
    provider: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def type(self) -> StreamEventType:
        return StreamEventType.ERROR

    @property
    def is_terminal(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": f"{self.request_id}_error",
            "parentId": self.request_id,
            "type": self.type.value,
            "payload": {
                "code": self.code,
                "message": self.message,
                "recoverable": self.recoverable,
                "provider": self.provider,
            },
            "timestamp": int(self.timestamp * 1000),
        }


StreamEvent = Union[StreamStart, StreamChunkEvent, StreamEnd, StreamError]
