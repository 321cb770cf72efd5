"""
Unit tests for the LiteLLM adapters in ai_utils.

Response adapters are checked against recorded payload shapes; the provider
call itself is exercised with ``acompletion`` monkeypatched out.
"""
import asyncio

import pytest

from automation_broker import ai_utils
from automation_broker.ai_utils import (
    Capability,
    ProviderCall,
    _build_messages_for_provider,
    _extract_json_object,
    _extract_stream_delta,
    _extract_text_from_response,
    _extract_usage,
    _resolve_api_key,
    call_provider,
    get_provider_config,
    has_credential,
    providers_with_capability,
    strip_code_fences,
)
from automation_broker.error_handling import ConfigurationError, CredentialMissingError
from automation_broker.models.dispatch_models import DispatchMode, DispatchRequest, ImageInput
from automation_broker.utils.event_logger import EventType

OPENAI_COMPLETION = {
    "id": "chatcmpl-123",
    "model": "gpt-4o",
    "choices": [{"index": 0, "message": {"role": "assistant", "content": "Hello there"}, "finish_reason": "stop"}],
    "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
}

ANTHROPIC_STYLE_COMPLETION = {
    "choices": [{"message": {"content": [{"type": "text", "text": "first"}, {"type": "text", "text": "second"}]}}],
    "usage": {"input_tokens": 7, "output_tokens": 2},
}

STREAM_CHUNKS = [
    {"choices": [{"index": 0, "delta": {"role": "assistant", "content": ""}, "finish_reason": None}]},
    {"choices": [{"index": 0, "delta": {"content": "Hel"}, "finish_reason": None}]},
    {"choices": [{"index": 0, "delta": {"content": "lo"}, "finish_reason": None}]},
    {"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]},
    {"choices": [], "usage": {"prompt_tokens": 4, "completion_tokens": 2, "total_tokens": 6}},
]


class TestResponseAdapters:

    def test_text_from_openai_payload(self):
        assert _extract_text_from_response(OPENAI_COMPLETION) == "Hello there"

    def test_text_from_segmented_content(self):
        assert _extract_text_from_response(ANTHROPIC_STYLE_COMPLETION) == "first\nsecond"

    def test_text_from_empty_payload(self):
        assert _extract_text_from_response({"choices": []}) == ""
        assert _extract_text_from_response(None) == ""

    def test_usage_reported(self):
        usage = _extract_usage(OPENAI_COMPLETION)
        assert (usage.prompt_tokens, usage.completion_tokens, usage.total_tokens) == (12, 3, 15)

    def test_usage_aliases_and_total_derived(self):
        usage = _extract_usage(ANTHROPIC_STYLE_COMPLETION)
        assert usage.prompt_tokens == 7
        assert usage.completion_tokens == 2
        assert usage.total_tokens == 9

    def test_usage_zero_filled_when_missing(self):
        usage = _extract_usage({"choices": []})
        assert usage.to_dict() == {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}

    def test_stream_delta_text(self):
        text, finish, usage = _extract_stream_delta(STREAM_CHUNKS[1])
        assert text == "Hel"
        assert finish is None
        assert usage is None

    def test_stream_delta_finish_and_usage(self):
        assert _extract_stream_delta(STREAM_CHUNKS[3]) == ("", "stop", None)
        _, _, usage = _extract_stream_delta(STREAM_CHUNKS[4])
        assert usage.total_tokens == 6

    def test_model_dump_objects_are_accepted(self):
        class Recorded:
            def model_dump(self):
                return OPENAI_COMPLETION

        assert _extract_text_from_response(Recorded()) == "Hello there"


class TestJsonHelpers:

    def test_strip_code_fences(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_code_fences('  {"a": 1} ') == '{"a": 1}'

    def test_extract_json_object_from_fenced_reply(self):
        assert _extract_json_object('```json\n{"elementIndex": 2}\n```') == {"elementIndex": 2}

    def test_extract_json_object_from_prose(self):
        assert _extract_json_object('Sure! {"found": true, "x": 10} hope that helps') == {"found": True, "x": 10}

    def test_extract_json_object_none(self):
        assert _extract_json_object("no json here") is None


class TestRegistry:

    def test_vision_capable_providers(self):
        assert set(providers_with_capability(Capability.VISION)) == {"openai", "claude", "gemini"}

    def test_every_provider_streams(self):
        assert set(providers_with_capability(Capability.STREAM_COMPLETE)) == {
            "openai", "claude", "gemini", "mistral", "deepseek", "grok", "lambda"
        }

    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError):
            get_provider_config("nope")

    def test_lambda_uses_custom_base(self):
        assert get_provider_config("lambda").api_base == "https://api.lambda.ai/v1"

    def test_resolve_from_env(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        assert _resolve_api_key("openai") == "sk-test"

    def test_resolve_secondary_env_name(self, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        monkeypatch.setenv("GOOGLE_API_KEY", "g-test")
        assert _resolve_api_key("gemini") == "g-test"

    def test_override_wins(self, monkeypatch):
        monkeypatch.setenv("MISTRAL_API_KEY", "from-env")
        monkeypatch.setitem(ai_utils.PROVIDER_API_KEYS, "mistral", "from-override")
        assert _resolve_api_key("mistral") == "from-override"

    def test_missing_credential(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        with pytest.raises(CredentialMissingError) as exc_info:
            _resolve_api_key("claude")
        assert "ANTHROPIC_API_KEY" in str(exc_info.value)
        assert exc_info.value.context.provider == "claude"
        assert has_credential("claude") is False


class TestMessageBuilding:

    def test_system_and_vision_parts(self):
        request = DispatchRequest(
            prompt="What is on screen?",
            system_instructions="Be brief",
            images=(ImageInput(base64="AAAA"),),
        )
        messages = _build_messages_for_provider(request, get_provider_config("openai"), DispatchMode.VISION)
        assert messages[0] == {"role": "system", "content": "Be brief"}
        parts = messages[1]["content"]
        assert parts[0]["type"] == "image_url"
        assert parts[0]["image_url"]["url"] == "data:image/png;base64,AAAA"
        assert parts[-1] == {"type": "text", "text": "What is on screen?"}

    def test_images_ignored_outside_vision_mode(self):
        request = DispatchRequest(prompt="hi", images=(ImageInput(base64="AAAA"),))
        messages = _build_messages_for_provider(request, get_provider_config("openai"), DispatchMode.TEXT)
        assert messages == [{"role": "user", "content": "hi"}]

    def test_string_only_providers(self):
        request = DispatchRequest(prompt="look", images=(ImageInput(base64="AAAA"),))
        messages = _build_messages_for_provider(request, get_provider_config("mistral"), DispatchMode.VISION)
        assert isinstance(messages[0]["content"], str)
        assert messages[0]["content"].startswith("look")


class TestCallProvider:

    def _call(self, mode, on_delta=None, provider="openai"):
        return ProviderCall(
            provider=provider,
            config=get_provider_config(provider),
            request=DispatchRequest(prompt="hi"),
            mode=mode,
            api_key="sk-test",
            temperature=0.1,
            max_tokens=64,
            timeout=5.0,
            on_delta=on_delta,
        )

    def test_text_call(self, monkeypatch, quiet_logger):
        captured = {}

        async def fake_acompletion(**kwargs):
            captured.update(kwargs)
            return OPENAI_COMPLETION

        monkeypatch.setattr(ai_utils, "acompletion", fake_acompletion)
        monkeypatch.setattr(ai_utils, "completion_cost", lambda **kwargs: 0.0025)

        response = asyncio.run(call_provider(self._call(DispatchMode.TEXT)))

        assert response.text == "Hello there"
        assert response.usage.total_tokens == 15
        assert response.cost_usd == 0.0025
        assert captured["api_key"] == "sk-test"
        assert captured["model"] == "gpt-4o"
        assert "stream" not in captured
        usage_events = quiet_logger.get_history(EventType.LLM_USAGE)
        assert usage_events and usage_events[-1].details["provider"] == "openai"

    def test_lambda_passes_api_base(self, monkeypatch):
        captured = {}

        async def fake_acompletion(**kwargs):
            captured.update(kwargs)
            return OPENAI_COMPLETION

        monkeypatch.setattr(ai_utils, "acompletion", fake_acompletion)
        monkeypatch.setattr(ai_utils, "completion_cost", lambda **kwargs: 0.0)

        asyncio.run(call_provider(self._call(DispatchMode.TEXT, provider="lambda")))
        assert captured["api_base"] == "https://api.lambda.ai/v1"

    def test_stream_call_forwards_deltas(self, monkeypatch):
        received = []

        async def stream():
            for chunk in STREAM_CHUNKS:
                yield chunk

        async def fake_acompletion(**kwargs):
            assert kwargs["stream"] is True
            return stream()

        monkeypatch.setattr(ai_utils, "acompletion", fake_acompletion)

        def on_delta(text, finish_reason):
            received.append(text)

        response = asyncio.run(call_provider(self._call(DispatchMode.STREAM, on_delta=on_delta)))

        assert received == ["Hel", "lo"]
        assert response.text == "Hello"
        assert response.finish_reason == "stop"
        assert response.usage.total_tokens == 6

    def test_stopped_stream_is_closed(self, monkeypatch):
        class RecordingStream:
            def __init__(self):
                self.closed = False
                self.served = 0

            def __aiter__(self):
                return self

            async def __anext__(self):
                if self.served >= len(STREAM_CHUNKS):
                    raise StopAsyncIteration
                chunk = STREAM_CHUNKS[self.served]
                self.served += 1
                return chunk

            async def aclose(self):
                self.closed = True

        stream = RecordingStream()

        async def fake_acompletion(**kwargs):
            return stream

        monkeypatch.setattr(ai_utils, "acompletion", fake_acompletion)
        received = []
        call = self._call(DispatchMode.STREAM, on_delta=lambda text, finish: received.append(text))
        call.should_stop = lambda: bool(received)

        response = asyncio.run(call_provider(call))

        assert received == ["Hel"]
        assert response.text == "Hel"
        assert stream.closed is True
        assert stream.served == 3
