"""Shared utilities for invoking chat/vision models through LiteLLM.

The helpers in this module provide a consistent way to:
    * keep the static provider registry (credentials, models, capabilities)
    * resolve provider API keys from overrides or the environment
    * call LiteLLM in text, streaming or vision mode
    * normalize responses, stream deltas and usage into common records
"""

from __future__ import annotations

import inspect
import json
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple, Union

import litellm
from litellm import acompletion, completion_cost

litellm.suppress_debug_info = True

from automation_broker.error_handling import ConfigurationError, CredentialMissingError
from automation_broker.models.dispatch_models import (
    DispatchMode,
    DispatchRequest,
    ImageInput,
    ProviderResponse,
    TokenUsage,
)
from automation_broker.utils.event_logger import get_event_logger


class Capability(str, Enum):
    """What a provider can be asked to do."""

    TEXT_COMPLETE = "text_complete"
    STREAM_COMPLETE = "stream_complete"
    VISION = "vision"


_ALL = frozenset({Capability.TEXT_COMPLETE, Capability.STREAM_COMPLETE, Capability.VISION})
_TEXT_ONLY = frozenset({Capability.TEXT_COMPLETE, Capability.STREAM_COMPLETE})

# Capability each dispatch mode needs from a provider.
MODE_CAPABILITY: Dict[DispatchMode, Capability] = {
    DispatchMode.TEXT: Capability.TEXT_COMPLETE,
    DispatchMode.STREAM: Capability.STREAM_COMPLETE,
    DispatchMode.VISION: Capability.VISION,
}


@dataclass(frozen=True)
class ProviderConfig:
    """Configuration describing provider-specific behaviour."""

    env_vars: Sequence[str]
    model: str
    capabilities: FrozenSet[Capability] = _TEXT_ONLY
    vision_model: Optional[str] = None
    api_base: Optional[str] = None
    requires_string_content: bool = False

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def model_for(self, mode: DispatchMode) -> str:
        if mode is DispatchMode.VISION and self.vision_model:
            return self.vision_model
        return self.model


_PROVIDERS: Dict[str, ProviderConfig] = {
    "openai": ProviderConfig(
        env_vars=("OPENAI_API_KEY",),
        model="gpt-4o",
        capabilities=_ALL,
    ),
    "claude": ProviderConfig(
        env_vars=("ANTHROPIC_API_KEY",),
        model="anthropic/claude-sonnet-4-20250514",
        vision_model="anthropic/claude-opus-4-5",
        capabilities=_ALL,
    ),
    "gemini": ProviderConfig(
        env_vars=("GEMINI_API_KEY", "GOOGLE_API_KEY"),
        model="gemini/gemini-1.5-pro",
        capabilities=_ALL,
    ),
    "mistral": ProviderConfig(
        env_vars=("MISTRAL_API_KEY",),
        model="mistral/mistral-medium",
        requires_string_content=True,
    ),
    "deepseek": ProviderConfig(
        env_vars=("DEEPSEEK_API_KEY",),
        model="deepseek/deepseek-chat",
        requires_string_content=True,
    ),
    "grok": ProviderConfig(
        env_vars=("GROK_API_KEY", "XAI_API_KEY"),
        model="xai/grok-2-latest",
        requires_string_content=True,
    ),
    "lambda": ProviderConfig(
        env_vars=("LAMBDA_AI",),
        model="openai/llama3.1-70b-instruct-fp8",
        api_base="https://api.lambda.ai/v1",
        requires_string_content=True,
    ),
}

# Optional per-provider API keys. Populate this if you do not want
# to rely solely on environment variables.
PROVIDER_API_KEYS: Dict[str, str] = {}

__all__ = [
    "Capability",
    "ProviderConfig",
    "ProviderCall",
    "PROVIDER_API_KEYS",
    "list_providers",
    "get_provider_config",
    "providers_with_capability",
    "has_credential",
    "call_provider",
]


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------


def list_providers() -> List[str]:
    """Return every registered provider id."""
    return list(_PROVIDERS.keys())


def get_provider_config(provider: str) -> ProviderConfig:
    """Return the registry entry for ``provider``."""
    config = _PROVIDERS.get(provider)
    if config is None:
        allowed = ", ".join(_PROVIDERS)
        raise ConfigurationError(f"Unknown provider '{provider}'. Known providers: {allowed}.", provider=provider)
    return config


def providers_with_capability(capability: Capability) -> List[str]:
    return [name for name, config in _PROVIDERS.items() if config.supports(capability)]


def _resolve_api_key(provider: str) -> str:
    """Locate an API key for the provider."""
    override = PROVIDER_API_KEYS.get(provider)
    if override:
        return override

    config = _PROVIDERS.get(provider)
    env_names = config.env_vars if config else ()
    for env_name in env_names:
        value = os.getenv(env_name)
        if value:
            return value

    env_hint = ", ".join(env_names) or "<provider specific env var>"
    raise CredentialMissingError(
        f"No API key configured for provider '{provider}'. "
        f"Set one in PROVIDER_API_KEYS or via environment variable(s): {env_hint}.",
        provider=provider,
    )


def has_credential(provider: str) -> bool:
    """True when ``provider`` has a credential, without raising."""
    try:
        _resolve_api_key(provider)
    except CredentialMissingError:
        return False
    return True


# ---------------------------------------------------------------------------
# Message building
# ---------------------------------------------------------------------------


def _prepare_image_part(image: ImageInput) -> Dict[str, Any]:
    """Convert base64 content into the structure expected by LiteLLM."""
    return {"type": "image_url", "image_url": {"url": image.data_uri(), "detail": image.detail}}


def _build_user_content(
    prompt: str,
    images: Sequence[ImageInput],
    *,
    requires_string_content: bool,
    supports_image_understanding: bool = True,
) -> Union[str, List[Dict[str, Any]]]:
    """Produce the user message content, honouring provider content rules."""
    if requires_string_content or not images:
        segments: List[str] = []
        if prompt:
            segments.append(prompt)
        if images:
            segments.append(f"[{len(images)} image(s) attached – omitted for this provider]")
        return "\n\n".join(segments)

    content_parts: List[Dict[str, Any]] = []
    if supports_image_understanding:
        for image in images:
            content_parts.append(_prepare_image_part(image))
    if prompt:
        content_parts.append({"type": "text", "text": prompt})
    return content_parts or [{"type": "text", "text": prompt}]


def _build_messages_for_provider(
    request: DispatchRequest,
    config: ProviderConfig,
    mode: DispatchMode,
) -> List[Dict[str, Any]]:
    """Compose the LiteLLM messages payload for the given provider."""
    messages: List[Dict[str, Any]] = []
    system_prompt = (request.system_instructions or "").strip()
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})

    images = request.images if mode is DispatchMode.VISION else ()
    user_content = _build_user_content(
        prompt=request.prompt,
        images=images,
        requires_string_content=config.requires_string_content,
        supports_image_understanding=config.supports(Capability.VISION),
    )
    messages.append({"role": "user", "content": user_content})
    return messages


# ---------------------------------------------------------------------------
# Response adapters
# ---------------------------------------------------------------------------


def _as_dict(payload: Any) -> Dict[str, Any]:
    """Coerce a LiteLLM response object (or a recorded payload) into a dict."""
    if payload is None:
        return {}
    if isinstance(payload, dict):
        return payload
    for attr in ("model_dump", "dict", "to_dict"):
        method = getattr(payload, attr, None)
        if callable(method):
            try:
                value = method()
            except Exception:
                continue
            if isinstance(value, dict):
                return value
    return {}


def _extract_text_from_response(response: Any) -> str:
    """Best-effort text extraction from a LiteLLM completion response."""
    data = _as_dict(response)
    choices = data.get("choices") or []
    if not choices:
        return ""

    message = choices[0].get("message") or {}
    content = message.get("content")
    if isinstance(content, list):
        return "\n".join(segment.get("text", "") for segment in content if isinstance(segment, dict) and segment.get("text"))
    if isinstance(content, str):
        return content
    return ""


def _extract_stream_delta(chunk: Any) -> Tuple[str, Optional[str], Optional[TokenUsage]]:
    """Return (text fragment, finish reason, usage if reported) for one stream chunk."""
    data = _as_dict(chunk)
    text = ""
    finish_reason: Optional[str] = None
    choices = data.get("choices") or []
    if choices:
        choice = choices[0] or {}
        delta = choice.get("delta") or {}
        content = delta.get("content")
        if isinstance(content, str):
            text = content
        finish_reason = choice.get("finish_reason") or None
    usage = _extract_usage(data) if data.get("usage") else None
    return text, finish_reason, usage


def _extract_usage(response: Any) -> TokenUsage:
    """Extract token usage from a LiteLLM response, zero-filling what is not reported."""
    data = _as_dict(response)
    usage = data.get("usage") or {}
    if not isinstance(usage, dict):
        usage = _as_dict(usage)
    prompt_tokens = usage.get("prompt_tokens") or usage.get("input_tokens") or 0
    completion_tokens = usage.get("completion_tokens") or usage.get("output_tokens") or 0
    total_tokens = usage.get("total_tokens") or (prompt_tokens + completion_tokens)
    return TokenUsage(
        prompt_tokens=int(prompt_tokens),
        completion_tokens=int(completion_tokens),
        total_tokens=int(total_tokens),
    )


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` wrapper, if any."""
    stripped = (text or "").strip()
    if stripped.startswith("```"):
        stripped = re.sub(r"```(?:json)?\n?", "", stripped)
        stripped = re.sub(r"```\n?$", "", stripped)
    return stripped.strip()


def _extract_json_object(text: str) -> Optional[Any]:
    """Best-effort extraction of a JSON object embedded in arbitrary text."""
    if not isinstance(text, str):
        return None

    candidates: List[str] = []
    stripped = text.strip()
    if stripped.startswith("```"):
        for block in re.findall(r"```(?:json)?\s*(\{.*?\})\s*```", text, flags=re.DOTALL):
            candidates.append(block)
    candidates.append(stripped)

    decoder = json.JSONDecoder()
    for candidate in candidates:
        candidate_stripped = candidate.strip()
        try:
            return json.loads(candidate_stripped)
        except ValueError:
            pass

        for idx, ch in enumerate(candidate_stripped):
            if ch == "{":
                try:
                    obj, _ = decoder.raw_decode(candidate_stripped[idx:])
                    return obj
                except ValueError:
                    continue
    return None


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


# ---------------------------------------------------------------------------
# Provider invocation
# ---------------------------------------------------------------------------


DeltaCallback = Callable[[str, Optional[str]], Union[None, Awaitable[None]]]


@dataclass
class ProviderCall:
    """Everything one provider attempt needs."""

    provider: str
    config: ProviderConfig
    request: DispatchRequest
    mode: DispatchMode
    api_key: str
    temperature: float
    max_tokens: int
    timeout: float
    on_delta: Optional[DeltaCallback] = None
    should_stop: Callable[[], bool] = field(default=lambda: False)


CompletionFn = Callable[[ProviderCall], Awaitable[ProviderResponse]]


async def call_provider(call: ProviderCall) -> ProviderResponse:
    """Invoke LiteLLM for one provider attempt and normalize the outcome."""
    model = call.config.model_for(call.mode)
    kwargs: Dict[str, Any] = {
        "model": model,
        "messages": _build_messages_for_provider(call.request, call.config, call.mode),
        "api_key": call.api_key,
        "temperature": call.temperature,
        "max_tokens": call.max_tokens,
        "timeout": call.timeout,
    }
    if call.config.api_base:
        kwargs["api_base"] = call.config.api_base

    if call.mode is DispatchMode.STREAM:
        return await _stream_completion(call, model, kwargs)

    response = await acompletion(**kwargs)
    text = _extract_text_from_response(response)
    usage = _extract_usage(response)
    try:
        cost_usd = completion_cost(completion_response=response) or 0.0
    except Exception:
        cost_usd = 0.0

    get_event_logger().llm_usage(
        provider=call.provider,
        prompt_tokens=usage.prompt_tokens,
        completion_tokens=usage.completion_tokens,
        total_tokens=usage.total_tokens,
        cost_usd=cost_usd,
        model=model,
    )
    return ProviderResponse(text=text, usage=usage, model=model, cost_usd=cost_usd)


async def _stream_completion(call: ProviderCall, model: str, kwargs: Dict[str, Any]) -> ProviderResponse:
    kwargs["stream"] = True
    kwargs["stream_options"] = {"include_usage": True}
    stream = await acompletion(**kwargs)

    pieces: List[str] = []
    usage = TokenUsage()
    finish_reason: Optional[str] = None
    try:
        async for chunk in stream:
            if call.should_stop():
                break
            text, chunk_finish, chunk_usage = _extract_stream_delta(chunk)
            if chunk_usage is not None:
                usage = chunk_usage
            if chunk_finish:
                finish_reason = chunk_finish
            if text:
                pieces.append(text)
                if call.on_delta is not None:
                    await _maybe_await(call.on_delta(text, chunk_finish))
    finally:
        # Release the HTTP connection when the stream is abandoned early
        close = getattr(stream, "aclose", None)
        if close is not None:
            await close()

    get_event_logger().llm_usage(
        provider=call.provider,
        prompt_tokens=usage.prompt_tokens,
        completion_tokens=usage.completion_tokens,
        total_tokens=usage.total_tokens,
        model=model,
    )
    return ProviderResponse(text="".join(pieces), usage=usage, model=model, finish_reason=finish_reason)
