"""
Screenshot verification, analysis and lookup through vision-capable providers.

Every call goes through the fallback dispatcher in vision mode, so the
provider order, credential checks and fallback trace are shared with text
dispatches.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from automation_broker.ai_utils import _extract_json_object, get_provider_config, strip_code_fences
from automation_broker.dispatcher import FallbackDispatcher
from automation_broker.error_handling import AllProvidersFailedError
from automation_broker.models.dispatch_models import DispatchMode, DispatchRequest, DispatchResult, ImageInput
from automation_broker.models.element_models import DetectionContext, ScreenshotInput, WindowBounds
from automation_broker.utils.event_logger import EventLogger, get_event_logger


class VerificationContext(BaseModel):
    active_app: Optional[str] = None
    active_url: Optional[str] = None
    step_index: Optional[int] = None
    total_steps: Optional[int] = None


class VerificationResult(BaseModel):
    """Verdict on whether an automation step succeeded."""

    verified: Optional[bool] = Field(description="None when no provider could judge")
    confidence: float = 0.0
    reasoning: str = ""
    suggestion: str = ""
    provider: Optional[str] = None
    processing_time_ms: float = 0.0
    degraded: bool = False
    timestamp: datetime = Field(default_factory=datetime.now)


class AnalysisResult(BaseModel):
    description: str
    answer: str
    ui_state: Optional[str] = None
    relevant_elements: List[str] = Field(default_factory=list)
    query: Optional[str] = None
    active_app: Optional[str] = None
    active_url: Optional[str] = None
    window_bounds: Optional[WindowBounds] = None
    provider: str
    processing_time_ms: float = 0.0
    timestamp: datetime = Field(default_factory=datetime.now)


class FindResult(BaseModel):
    found: bool
    x: Optional[float] = None
    y: Optional[float] = None
    confidence: float = 0.0
    reasoning: str = ""
    structured: bool = Field(default=True, description="False when the reply was not JSON")
    provider: str
    processing_time_ms: float = 0.0
    timestamp: datetime = Field(default_factory=datetime.now)


def _parse_json(text: str) -> Optional[Dict[str, Any]]:
    parsed = _extract_json_object(strip_code_fences(text))
    return parsed if isinstance(parsed, dict) else None


def _number(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value)


class VisionService:
    """Verify / analyze / find on a screenshot."""

    def __init__(self, dispatcher: FallbackDispatcher, logger: Optional[EventLogger] = None):
        self.dispatcher = dispatcher
        self._logger = logger

    @property
    def logger(self) -> EventLogger:
        return self._logger or get_event_logger()

    async def _call(self, screenshot: ScreenshotInput, prompt: str) -> DispatchResult:
        request = DispatchRequest(
            prompt=prompt,
            images=(ImageInput(base64=screenshot.base64, mime_type=screenshot.mime_type),),
        )
        return await self.dispatcher.dispatch(request, mode=DispatchMode.VISION)

    # ------------------------------------------------------------------
    # verify
    # ------------------------------------------------------------------

    @staticmethod
    def build_verify_prompt(prompt: str, step_description: Optional[str], context: VerificationContext) -> str:
        step_number = context.step_index + 1 if context.step_index is not None else "?"
        return f"""You are a UI automation verification agent. Your job is to look at a screenshot and determine whether a specific automation step succeeded.

Step that was just executed: "{step_description or prompt}"

Verification instruction from the automation brain:
{prompt}

Context:
- Active app: {context.active_app or 'unknown'}
- Step {step_number} of {context.total_steps or '?'}

Respond ONLY with a JSON object in this exact format:
{{
  "verified": true or false,
  "confidence": <number 0.0 to 1.0>,
  "reasoning": "<one or two sentences describing exactly what you see that supports your verdict>",
  "suggestion": "<if verified=false, a specific corrective action; if verified=true, write 'Proceed to next step'>"
}}

Be strict: only return verified=true if you can clearly see evidence the step succeeded."""

    async def verify(
        self,
        screenshot: ScreenshotInput,
        prompt: str,
        step_description: Optional[str] = None,
        context: Optional[VerificationContext] = None,
    ) -> VerificationResult:
        """
        Judge whether a step succeeded.

        Never raises for provider exhaustion: the verdict comes back with
        ``verified=None`` and ``degraded=True`` so the caller can proceed.
        """
        context = context or VerificationContext()
        try:
            result = await self._call(screenshot, self.build_verify_prompt(prompt, step_description, context))
        except AllProvidersFailedError as exc:
            self.logger.system_error("❌ All vision providers failed, returning degraded verdict", error=exc)
            return VerificationResult(
                verified=None,
                degraded=True,
                reasoning="Vision service unavailable: all providers failed. Cannot verify step.",
                suggestion="Vision unavailable: skip verification and proceed.",
            )

        parsed = _parse_json(result.text)
        if parsed is None:
            self.logger.system_warning("Verification reply was not JSON, treating as unverified",
                                       provider=result.provider)
            return VerificationResult(
                verified=False,
                reasoning=result.text,
                suggestion="LLM response was not structured JSON: treat as unverified",
                provider=result.provider,
                processing_time_ms=result.elapsed_ms,
            )

        return VerificationResult(
            verified=bool(parsed.get("verified")),
            confidence=_number(parsed.get("confidence")),
            reasoning=str(parsed.get("reasoning") or ""),
            suggestion=str(parsed.get("suggestion") or ""),
            provider=result.provider,
            processing_time_ms=result.elapsed_ms,
        )

    # ------------------------------------------------------------------
    # analyze
    # ------------------------------------------------------------------

    async def analyze(
        self,
        screenshot: ScreenshotInput,
        query: Optional[str] = None,
        context: Optional[DetectionContext] = None,
    ) -> AnalysisResult:
        """
        Free-form screenshot analysis. Falls back to the raw reply when it is not JSON.

        Raises:
            AllProvidersFailedError: no vision provider answered
        """
        context = context or DetectionContext()
        prompt = f"""You are a screen analysis assistant. Analyze the screenshot and answer the following query.

Query: {query or 'Describe what is visible on the screen in detail.'}

Context:
- Active app: {context.active_app or 'unknown'}
- Active URL: {context.active_url or 'none'}

Respond with a JSON object:
{{
  "description": "<detailed description of what is on screen>",
  "answer": "<direct answer to the query>",
  "uiState": "<brief summary of the current UI state>",
  "relevantElements": ["<list of notable UI elements visible>"]
}}"""
        result = await self._call(screenshot, prompt)
        parsed = _parse_json(result.text) or {}
        elements = parsed.get("relevantElements")

        return AnalysisResult(
            description=str(parsed.get("description") or result.text),
            answer=str(parsed.get("answer") or result.text),
            ui_state=parsed.get("uiState") or None,
            relevant_elements=[str(e) for e in elements] if isinstance(elements, list) else [],
            query=query,
            active_app=context.active_app,
            active_url=context.active_url,
            window_bounds=context.window_bounds,
            provider=result.provider,
            processing_time_ms=result.elapsed_ms,
        )

    # ------------------------------------------------------------------
    # find
    # ------------------------------------------------------------------

    async def find(
        self,
        screenshot: ScreenshotInput,
        description: str,
        context: Optional[DetectionContext] = None,
    ) -> FindResult:
        """
        Locate an element by description; coordinates are desktop-space.

        Raises:
            AllProvidersFailedError: no vision provider answered
        """
        context = context or DetectionContext()
        bounds = context.window_bounds or WindowBounds()
        width = bounds.width if bounds.width is not None else "unknown"
        height = bounds.height if bounds.height is not None else "unknown"
        prompt = f"""You are a UI element locator. Find the element described below in the screenshot and return its center coordinates.

Element to find: "{description}"

The screenshot dimensions correspond to a window at:
- x offset: {bounds.x:g}, y offset: {bounds.y:g}
- width: {width}, height: {height}

Return ONLY a JSON object:
{{
  "found": true or false,
  "x": <desktop x coordinate: window x offset + element x within window>,
  "y": <desktop y coordinate: window y offset + element y within window>,
  "confidence": <0.0 to 1.0>,
  "reasoning": "<brief explanation of where you found it>"
}}

If not found, set found=false and omit x/y."""
        result = await self._call(screenshot, prompt)
        parsed = _parse_json(result.text)
        if parsed is None:
            return FindResult(found=False, reasoning=result.text, structured=False,
                              provider=result.provider, processing_time_ms=result.elapsed_ms)

        found = bool(parsed.get("found"))
        x, y = parsed.get("x"), parsed.get("y")
        return FindResult(
            found=found,
            x=_number(x) if found and x is not None else None,
            y=_number(y) if found and y is not None else None,
            confidence=_number(parsed.get("confidence")),
            reasoning=str(parsed.get("reasoning") or ""),
            provider=result.provider,
            processing_time_ms=result.elapsed_ms,
        )

    # ------------------------------------------------------------------
    # health
    # ------------------------------------------------------------------

    def health(self) -> Dict[str, Any]:
        order = self.dispatcher.build_attempt_order(None, DispatchMode.VISION)
        providers = {name: self.dispatcher.has_credential(name) for name in order}
        available = any(providers.values())
        return {
            "service": "vision",
            "status": "ready" if available else "no_providers",
            "providers": providers,
            "models": {name: get_provider_config(name).model_for(DispatchMode.VISION) for name in order},
            "timestamp": datetime.now().isoformat(),
        }
