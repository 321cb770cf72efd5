"""
Stream Session Manager

Tracks in-flight streaming dispatches by request id and turns each one into
the event sequence Start -> Chunk* -> End | Error. The session map is
lock-protected so cancellation can arrive from any thread.
"""
from __future__ import annotations

import threading
from typing import Awaitable, Callable, Dict, List, Optional, Union

from automation_broker.ai_utils import _maybe_await
from automation_broker.dispatcher import CancellationToken, FallbackDispatcher
from automation_broker.error_handling import AllProvidersFailedError, DispatchCancelledError, DuplicateRequestError
from automation_broker.models.dispatch_models import DispatchMode, DispatchRequest, StreamChunk
from automation_broker.models.stream_models import (
    StreamChunkEvent,
    StreamEnd,
    StreamError,
    StreamEvent,
    StreamStart,
)
from automation_broker.utils.event_logger import EventLogger, get_event_logger


EmitFn = Callable[[StreamEvent], Union[None, Awaitable[None]]]

STREAMING_ERROR = "STREAMING_ERROR"
CANCELLED = "CANCELLED"


class StreamSessionManager:
    """Thread-safe registry of streaming sessions keyed by request id"""

    def __init__(self, dispatcher: FallbackDispatcher, logger: Optional[EventLogger] = None):
        self._dispatcher = dispatcher
        self._sessions: Dict[str, CancellationToken] = {}
        self._lock = threading.Lock()
        self._logger = logger

    @property
    def logger(self) -> EventLogger:
        return self._logger or get_event_logger()

    def _register(self, request_id: str) -> Optional[CancellationToken]:
        with self._lock:
            if request_id in self._sessions:
                return None
            token = CancellationToken()
            self._sessions[request_id] = token
            return token

    def _release(self, request_id: str) -> None:
        with self._lock:
            self._sessions.pop(request_id, None)

    async def stream(self, request_id: str, request: DispatchRequest, emit: EmitFn) -> None:
        """
        Run one streaming dispatch and report it through ``emit``.

        Never raises for provider exhaustion or cancellation; both become the
        terminal Error event of the session.

        Args:
            request_id: Caller-supplied id, unique while the session is in flight
            request: Fully composed dispatch request
            emit: Receives every StreamEvent in order (sync or async)

        Raises:
            DuplicateRequestError: ``request_id`` is already streaming; nothing
                is emitted and the running session is untouched
        """
        token = self._register(request_id)
        if token is None:
            self.logger.system_warning(f"Rejected stream '{request_id}': request id already in flight",
                                       request_id=request_id)
            raise DuplicateRequestError(f"Request '{request_id}' is already streaming", request_id=request_id)

        sequence = 0

        async def on_chunk(chunk: StreamChunk) -> None:
            nonlocal sequence
            event = StreamChunkEvent(
                request_id=request_id,
                text=chunk.text,
                provider=chunk.provider,
                finish_reason=chunk.finish_reason,
                sequence=sequence,
            )
            sequence += 1
            await _maybe_await(emit(event))

        try:
            self.logger.stream_start(request_id)
            await _maybe_await(emit(StreamStart(request_id=request_id, preferred_provider=request.preferred_provider)))

            try:
                result = await self._dispatcher.dispatch(
                    request,
                    mode=DispatchMode.STREAM,
                    on_chunk=on_chunk,
                    cancel_token=token,
                )
            except DispatchCancelledError:
                self.logger.stream_cancel(request_id)
                await _maybe_await(emit(StreamError(
                    request_id=request_id,
                    code=CANCELLED,
                    message="Stream cancelled",
                    recoverable=False,
                )))
                return
            except AllProvidersFailedError as exc:
                self.logger.stream_error(request_id, STREAMING_ERROR, exc.message)
                await _maybe_await(emit(StreamError(
                    request_id=request_id,
                    code=STREAMING_ERROR,
                    message=exc.message,
                    recoverable=True,
                )))
                return

            self.logger.stream_end(request_id, result.provider, len(result.text))
            await _maybe_await(emit(StreamEnd(request_id=request_id, result=result)))
        finally:
            self._release(request_id)

    def cancel(self, request_id: str) -> bool:
        """Cancel one session. Unknown ids are a no-op returning False."""
        with self._lock:
            token = self._sessions.get(request_id)
        if token is None:
            return False
        token.cancel()
        return True

    def cancel_all(self) -> int:
        """Cancel every in-flight session and return how many were signalled."""
        with self._lock:
            tokens: List[CancellationToken] = list(self._sessions.values())
        for token in tokens:
            token.cancel()
        return len(tokens)

    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def is_active(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._sessions
