"""
Unit tests for StreamSessionManager event sequencing and cancellation.
"""
import asyncio

import pytest

from automation_broker.error_handling import DuplicateRequestError
from automation_broker.models.dispatch_models import DispatchRequest, ProviderResponse
from automation_broker.models.stream_models import (
    StreamChunkEvent,
    StreamEnd,
    StreamError,
    StreamEventType,
    StreamStart,
)
from automation_broker.stream_sessions import (
    CANCELLED,
    STREAMING_ERROR,
    StreamSessionManager,
)


class GatedCompletion:
    """Streams one word, waits for the gate, then streams the rest"""

    def __init__(self, text="alpha beta gamma"):
        self.words = text.split(" ")
        self.gate = asyncio.Event()
        self.first_chunk_sent = asyncio.Event()

    async def __call__(self, call):
        await call.on_delta(self.words[0], None)
        self.first_chunk_sent.set()
        await self.gate.wait()
        for word in self.words[1:]:
            if call.should_stop():
                break
            await call.on_delta(word, None)
        return ProviderResponse(text=" ".join(self.words))


def test_event_sequence(dispatcher_factory):
    dispatcher, _ = dispatcher_factory(replies={"openai": "hello streaming world"})
    manager = StreamSessionManager(dispatcher)
    events = []

    asyncio.run(manager.stream("req-1", DispatchRequest(prompt="hi"), events.append))

    assert isinstance(events[0], StreamStart)
    chunks = [e for e in events if isinstance(e, StreamChunkEvent)]
    assert [c.text for c in chunks] == ["hello", "streaming", "world"]
    assert [c.sequence for c in chunks] == [0, 1, 2]
    assert isinstance(events[-1], StreamEnd)
    assert events[-1].result.provider == "openai"
    assert sum(1 for e in events if e.is_terminal) == 1
    assert manager.active_count() == 0


def test_event_payloads(dispatcher_factory):
    dispatcher, _ = dispatcher_factory(replies={"openai": "x"})
    manager = StreamSessionManager(dispatcher)
    events = []

    asyncio.run(manager.stream("req-9", DispatchRequest(prompt="hi", preferred_provider="openai"), events.append))

    start, chunk, end = [e.to_dict() for e in events]
    assert start["type"] == StreamEventType.START.value
    assert start["payload"]["preferredProvider"] == "openai"
    assert chunk["id"] == "req-9_chunk_0"
    assert chunk["parentId"] == "req-9"
    assert end["type"] == "llm_stream_end"
    assert end["payload"]["fullText"] == "x"


def test_exhaustion_becomes_error_event(dispatcher_factory):
    dispatcher, _ = dispatcher_factory(keys=())
    manager = StreamSessionManager(dispatcher)
    events = []

    asyncio.run(manager.stream("req-2", DispatchRequest(prompt="hi"), events.append))

    assert isinstance(events[0], StreamStart)
    assert isinstance(events[-1], StreamError)
    assert events[-1].code == STREAMING_ERROR
    assert events[-1].recoverable is True
    assert len(events) == 2
    assert manager.active_count() == 0


def test_async_emit(dispatcher_factory):
    dispatcher, _ = dispatcher_factory(replies={"openai": "a b"})
    manager = StreamSessionManager(dispatcher)
    events = []

    async def emit(event):
        events.append(event.type)

    asyncio.run(manager.stream("req-3", DispatchRequest(prompt="hi"), emit))
    assert events == [
        StreamEventType.START, StreamEventType.CHUNK, StreamEventType.CHUNK, StreamEventType.END,
    ]


def test_duplicate_request_id_rejected(dispatcher_factory):
    dispatcher, _ = dispatcher_factory()
    manager = StreamSessionManager(dispatcher)
    events = []

    async def scenario():
        completion = GatedCompletion()
        dispatcher._completion_fn = completion
        task = asyncio.create_task(manager.stream("dup", DispatchRequest(prompt="hi"), events.append))
        await completion.first_chunk_sent.wait()

        assert manager.is_active("dup")
        with pytest.raises(DuplicateRequestError) as excinfo:
            await manager.stream("dup", DispatchRequest(prompt="again"), events.append)
        assert excinfo.value.context.request_id == "dup"
        assert manager.is_active("dup")

        completion.gate.set()
        await task

    asyncio.run(scenario())

    assert [type(e).__name__ for e in events] == [
        "StreamStart", "StreamChunkEvent", "StreamChunkEvent", "StreamChunkEvent", "StreamEnd",
    ]
    assert sum(1 for e in events if e.is_terminal) == 1
    assert manager.active_count() == 0


def test_cancel_in_flight_stream(dispatcher_factory):
    dispatcher, _ = dispatcher_factory()
    manager = StreamSessionManager(dispatcher)
    events = []

    async def scenario():
        completion = GatedCompletion()
        dispatcher._completion_fn = completion
        task = asyncio.create_task(manager.stream("req-c", DispatchRequest(prompt="hi"), events.append))
        await completion.first_chunk_sent.wait()

        assert manager.cancel("req-c") is True
        completion.gate.set()
        await task

    asyncio.run(scenario())

    chunks = [e for e in events if isinstance(e, StreamChunkEvent)]
    assert [c.text for c in chunks] == ["alpha"]
    assert isinstance(events[-1], StreamError)
    assert events[-1].code == CANCELLED
    assert not any(isinstance(e, StreamEnd) for e in events)
    assert manager.active_count() == 0


def test_cancel_unknown_id(dispatcher_factory):
    dispatcher, _ = dispatcher_factory()
    manager = StreamSessionManager(dispatcher)
    assert manager.cancel("never-started") is False


def test_cancel_all(dispatcher_factory):
    dispatcher, _ = dispatcher_factory()
    manager = StreamSessionManager(dispatcher)
    outcomes = {"a": [], "b": []}

    async def scenario():
        completion = GatedCompletion()
        dispatcher._completion_fn = completion
        tasks = [
            asyncio.create_task(manager.stream(rid, DispatchRequest(prompt="hi"), outcomes[rid].append))
            for rid in outcomes
        ]
        while manager.active_count() < 2:
            await asyncio.sleep(0)

        assert manager.cancel_all() == 2
        completion.gate.set()
        await asyncio.gather(*tasks)

    asyncio.run(scenario())

    for events in outcomes.values():
        assert events[-1].code == CANCELLED
    assert manager.active_count() == 0
