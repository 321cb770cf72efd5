"""
Shared pytest fixtures for all tests.
"""
from typing import Callable, Dict, List, Optional

import pytest

from automation_broker.ai_utils import ProviderCall
from automation_broker.broker_config import DispatchConfig
from automation_broker.dispatcher import FallbackDispatcher
from automation_broker.error_handling import CredentialMissingError
from automation_broker.models.dispatch_models import ProviderResponse, TokenUsage
from automation_broker.models.element_models import BoundingBox, ParsedElement
from automation_broker.utils.event_logger import EventLogger, set_event_logger


class FakeCompletion:
    """
    Scripted stand-in for the LiteLLM call.

    ``replies`` maps provider -> reply text, or an Exception to raise.
    Stream-mode replies are delivered word by word through ``on_delta``.
    """

    def __init__(self, replies: Optional[Dict[str, object]] = None, default: object = "ok"):
        self.replies = replies or {}
        self.default = default
        self.calls: List[ProviderCall] = []

    @property
    def providers_called(self) -> List[str]:
        return [call.provider for call in self.calls]

    async def __call__(self, call: ProviderCall) -> ProviderResponse:
        self.calls.append(call)
        reply = self.replies.get(call.provider, self.default)
        if isinstance(reply, Exception):
            raise reply
        text = str(reply)
        if call.on_delta is not None:
            for piece in text.split(" "):
                if call.should_stop():
                    break
                await call.on_delta(piece, None)
        return ProviderResponse(text=text, usage=TokenUsage(10, 5, 15), model=f"{call.provider}-model")


def make_resolver(*providers_with_keys: str) -> Callable[[str], str]:
    """Credential resolver that only knows keys for the given providers."""
    def resolve(provider: str) -> str:
        if provider in providers_with_keys:
            return f"key-{provider}"
        raise CredentialMissingError(f"No API key configured for provider '{provider}'.", provider=provider)
    return resolve


def make_element(element_id, content, bbox, type="text", interactivity=False,
                 width=1000, height=1000) -> ParsedElement:
    x1, y1, x2, y2 = bbox
    return ParsedElement(
        id=element_id,
        type=type,
        bbox=BoundingBox(x1=x1 * width, y1=y1 * height, x2=x2 * width, y2=y2 * height),
        normalized_bbox=bbox,
        interactivity=interactivity,
        content=content,
    )


@pytest.fixture(autouse=True)
def quiet_logger():
    """Fresh, non-printing event logger per test"""
    logger = EventLogger(debug_mode=False)
    set_event_logger(logger)
    yield logger


@pytest.fixture
def fake_completion():
    return FakeCompletion()


@pytest.fixture
def dispatcher_factory():
    """Build a dispatcher with scripted replies and a fixed set of credentials"""
    def _create(replies=None, keys=("openai", "claude", "gemini", "mistral", "deepseek", "grok", "lambda"),
                config=None, default="ok"):
        completion = FakeCompletion(replies, default=default)
        dispatcher = FallbackDispatcher(
            config=config or DispatchConfig(),
            completion_fn=completion,
            credential_resolver=make_resolver(*keys),
        )
        return dispatcher, completion
    return _create
