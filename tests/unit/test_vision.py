"""
Unit tests for VisionService verify/analyze/find.
"""
import asyncio
import json

import pytest

from automation_broker.error_handling import AllProvidersFailedError
from automation_broker.models.dispatch_models import DispatchMode
from automation_broker.models.element_models import DetectionContext, ScreenshotInput, WindowBounds
from automation_broker.vision import VerificationContext, VisionService

SCREENSHOT = ScreenshotInput(base64="iVBORw0KGgo")


def make_service(dispatcher_factory, **kwargs):
    dispatcher, completion = dispatcher_factory(**kwargs)
    return VisionService(dispatcher), completion


class TestVerify:

    def test_structured_verdict(self, dispatcher_factory):
        reply = json.dumps({
            "verified": True,
            "confidence": 0.93,
            "reasoning": "The Save dialog is closed and the title shows the file name",
            "suggestion": "Proceed to next step",
        })
        service, completion = make_service(dispatcher_factory, default=reply)

        result = asyncio.run(service.verify(
            SCREENSHOT, "Confirm the file was saved", "Press Cmd+S",
            VerificationContext(active_app="TextEdit", step_index=1, total_steps=4),
        ))

        assert result.verified is True
        assert result.confidence == 0.93
        assert result.provider == "openai"
        assert result.degraded is False

        call = completion.calls[0]
        assert call.mode is DispatchMode.VISION
        assert call.request.images[0].base64 == "iVBORw0KGgo"
        assert 'Step that was just executed: "Press Cmd+S"' in call.request.prompt
        assert "Step 2 of 4" in call.request.prompt

    def test_unstructured_reply_is_unverified(self, dispatcher_factory):
        service, _ = make_service(dispatcher_factory, default="Looks fine to me")
        result = asyncio.run(service.verify(SCREENSHOT, "Is the menu open?"))
        assert result.verified is False
        assert result.reasoning == "Looks fine to me"

    def test_exhaustion_degrades(self, dispatcher_factory):
        service, completion = make_service(dispatcher_factory, keys=())
        result = asyncio.run(service.verify(SCREENSHOT, "Is the menu open?"))

        assert result.verified is None
        assert result.degraded is True
        assert result.confidence == 0.0
        assert completion.calls == []

    def test_text_only_providers_never_asked(self, dispatcher_factory):
        service, completion = make_service(dispatcher_factory, keys=("mistral", "deepseek"))
        result = asyncio.run(service.verify(SCREENSHOT, "Is the menu open?"))
        assert result.degraded is True
        assert completion.calls == []


class TestAnalyze:

    def test_structured_analysis(self, dispatcher_factory):
        reply = "```json\n" + json.dumps({
            "description": "A browser showing a checkout page",
            "answer": "The total is $42",
            "uiState": "checkout",
            "relevantElements": ["Pay now", "Total"],
        }) + "\n```"
        service, _ = make_service(dispatcher_factory, default=reply)

        result = asyncio.run(service.analyze(SCREENSHOT, "What is the total?",
                                             DetectionContext(active_app="Chrome")))

        assert result.answer == "The total is $42"
        assert result.ui_state == "checkout"
        assert result.relevant_elements == ["Pay now", "Total"]
        assert result.active_app == "Chrome"

    def test_plain_text_analysis(self, dispatcher_factory):
        service, _ = make_service(dispatcher_factory, default="A desktop with two windows")
        result = asyncio.run(service.analyze(SCREENSHOT))
        assert result.description == "A desktop with two windows"
        assert result.answer == "A desktop with two windows"
        assert result.relevant_elements == []

    def test_exhaustion_raises(self, dispatcher_factory):
        service, _ = make_service(dispatcher_factory, keys=())
        with pytest.raises(AllProvidersFailedError):
            asyncio.run(service.analyze(SCREENSHOT, "anything"))


class TestFind:

    def test_found(self, dispatcher_factory):
        reply = json.dumps({"found": True, "x": 640, "y": 412.5, "confidence": 0.8, "reasoning": "top bar"})
        service, completion = make_service(dispatcher_factory, default=reply)
        context = DetectionContext(window_bounds=WindowBounds(x=100, y=40, width=1280, height=800))

        result = asyncio.run(service.find(SCREENSHOT, "the search box", context))

        assert result.found is True
        assert (result.x, result.y) == (640.0, 412.5)
        assert result.structured is True
        assert "x offset: 100, y offset: 40" in completion.calls[0].request.prompt

    def test_not_found_omits_coordinates(self, dispatcher_factory):
        reply = json.dumps({"found": False, "x": 5, "y": 5, "confidence": 0.1, "reasoning": "absent"})
        service, _ = make_service(dispatcher_factory, default=reply)
        result = asyncio.run(service.find(SCREENSHOT, "a unicorn"))
        assert result.found is False
        assert result.x is None and result.y is None

    def test_unparseable_reply(self, dispatcher_factory):
        service, _ = make_service(dispatcher_factory, default="somewhere near the top")
        result = asyncio.run(service.find(SCREENSHOT, "the logo"))
        assert result.found is False
        assert result.structured is False
        assert result.reasoning == "somewhere near the top"


def test_health(dispatcher_factory):
    service, _ = make_service(dispatcher_factory, keys=("claude",))
    health = service.health()
    assert health["status"] == "ready"
    assert health["providers"] == {"openai": False, "claude": True, "gemini": False}
    assert health["models"]["claude"] == "anthropic/claude-opus-4-5"

    empty, _ = make_service(dispatcher_factory, keys=())
    assert empty.health()["status"] == "no_providers"
