"""
LLM-backed element resolver.

Narrows a detection pass down to a short candidate list with cheap text
heuristics, asks the fallback dispatcher (text mode) to pick the best
candidate for a natural-language description, and retries with the rejected
candidates excluded when the pick is not confident enough.
"""
from __future__ import annotations

import re
from typing import List, Optional

from pydantic import ValidationError

from automation_broker.ai_utils import _extract_json_object, strip_code_fences
from automation_broker.broker_config import MatcherConfig
from automation_broker.dispatcher import FallbackDispatcher
from automation_broker.error_handling import (
    AllProvidersFailedError,
    LowConfidenceMatchError,
    NoCandidatesError,
)
from automation_broker.models.dispatch_models import DispatchMode, DispatchRequest
from automation_broker.models.element_models import (
    ElementChoice,
    ElementMatchResult,
    MatchOptions,
    ParsedElement,
)
from automation_broker.utils.event_logger import EventLogger, get_event_logger

# Status/log overlays that show up in screenshots of the automation itself
_NOISE_CONTENT = re.compile(r"\d+\.\d+s")
_NOISE_SUBSTRINGS = ("backend:", "frontend:", "thinking", "iteration", "llm:", "action")

FILENAME_PATTERN = re.compile(r"([\w\-.]+\.[a-zA-Z]{2,4})")
INTERACTIVE_KEYWORDS = ("input", "button", "field", "box", "click", "select", "dropdown")
INPUT_FIELD_KEYWORDS = ("input field", "text field", "search field", "search box", "input box")

# Normalized screen geometry for spotlight-style result lists
SPOTLIGHT_TOP_STRIP = 0.22
SPOTLIGHT_RESULTS_BOTTOM = 0.50
COMPACT_MAX_WIDTH = 0.30
COMPACT_MAX_HEIGHT = 0.15


INTENT_GUIDANCE = {
    "spotlight_search": (
        "**CRITICAL - Spotlight Search Rules:**\n"
        "- Prioritize TOP area elements (y < 30%) - Spotlight results appear at the top\n"
        "- Text elements are valid targets\n"
        "- Ignore browser/web elements\n"
        "- Exact filename match in top area beats interactive icon in middle/bottom"
    ),
    "browser_navigation": (
        "**Browser Navigation Rules:**\n"
        "- Prioritize interactive elements in the address bar or navigation area"
    ),
    "file_explorer": (
        "**File Explorer Rules:**\n"
        "- File/folder names in the main content area are the target\n"
        "- Avoid sidebar or menu bar elements"
    ),
    "search": (
        "**CRITICAL - Search Input Field Rules:**\n"
        "- \"search input field\" = text placeholder like \"Search Amazon\", NOT a button/icon\n"
        "- Input fields often have placeholder text and may be marked as non-interactive\n"
        "- If description says \"input field\", prioritize text/placeholder elements over buttons"
    ),
}
INTENT_GUIDANCE["type_text"] = INTENT_GUIDANCE["search"]


def _is_noise(element: ParsedElement) -> bool:
    content = (element.content or "").lower().strip()
    if not content:
        return True
    if _NOISE_CONTENT.search(content):
        return True
    return any(token in content for token in _NOISE_SUBSTRINGS)


def _split_interactive(elements: List[ParsedElement]):
    interactive = [e for e in elements if e.interactivity]
    passive = [e for e in elements if not e.interactivity]
    return interactive, passive


def _content_matches_filename(content: str, filename: str) -> bool:
    content_lower = content.lower().strip()
    normalized_content = re.sub(r"[\s.]+", "", content_lower)
    normalized_filename = re.sub(r"[\s.]+", "", filename)
    return (
        normalized_filename in normalized_content
        or filename in content_lower
        or filename in re.sub(r"\s+", ".", content_lower)
    )


class ElementMatcher:
    """Resolves a description to one ParsedElement."""

    def __init__(
        self,
        dispatcher: FallbackDispatcher,
        config: Optional[MatcherConfig] = None,
        logger: Optional[EventLogger] = None,
    ):
        self.dispatcher = dispatcher
        self.config = config or MatcherConfig()
        self._logger = logger

    @property
    def logger(self) -> EventLogger:
        return self._logger or get_event_logger()

    # ------------------------------------------------------------------
    # Candidate funnel
    # ------------------------------------------------------------------

    def pre_filter_candidates(
        self,
        description: str,
        elements: List[ParsedElement],
        options: Optional[MatchOptions] = None,
    ) -> List[ParsedElement]:
        """Return the first non-empty stage of the candidate funnel."""
        options = options or MatchOptions()
        desc_lower = (description or "").lower().strip()
        clean = [e for e in elements if not _is_noise(e)]

        is_spotlight = options.intent_type == "spotlight_search"
        pool = clean
        if is_spotlight:
            pool = [e for e in clean if e.normalized_center_y > SPOTLIGHT_TOP_STRIP]

        filename_match = FILENAME_PATTERN.search(description or "")
        if filename_match:
            filename = filename_match.group(1).lower()
            matches = [e for e in pool if _content_matches_filename(e.content, filename)]
            if matches:
                if is_spotlight:
                    compact = [
                        e for e in matches
                        if (e.normalized_bbox[2] - e.normalized_bbox[0]) < COMPACT_MAX_WIDTH
                        and (e.normalized_bbox[3] - e.normalized_bbox[1]) < COMPACT_MAX_HEIGHT
                    ]
                    if compact:
                        return compact[:10]
                return matches[:10]

            if is_spotlight:
                in_results = [
                    e for e in pool
                    if e.interactivity and SPOTLIGHT_TOP_STRIP < e.normalized_center_y < SPOTLIGHT_RESULTS_BOTTOM
                ]
                if in_results:
                    return in_results[:20]

        exact = [e for e in clean if e.content.lower().strip() == desc_lower]
        if exact:
            return exact[:10]

        substring = [
            e for e in clean
            if desc_lower in e.content.lower().strip() or e.content.lower().strip() in desc_lower
        ]
        if substring:
            if any(keyword in desc_lower for keyword in INTERACTIVE_KEYWORDS):
                interactive, passive = _split_interactive(substring)
                return interactive[:20] + passive[:10]
            return substring[:30]

        interactive, passive = _split_interactive(clean)
        if any(keyword in desc_lower for keyword in INPUT_FIELD_KEYWORDS):
            return passive[:30] + interactive[:20]
        return interactive[:40] + passive[:10]

    # ------------------------------------------------------------------
    # Prompt
    # ------------------------------------------------------------------

    @staticmethod
    def _spatial_label(element: ParsedElement) -> str:
        cx, cy = element.normalized_center_x, element.normalized_center_y
        vertical = "top" if cy < 0.1 else "bottom" if cy > 0.9 else "center"
        horizontal = "left" if cx < 0.2 else "right" if cx > 0.8 else "center"
        return f"{vertical}-{horizontal}"

    @staticmethod
    def _spatial_hints(candidates: List[ParsedElement]) -> str:
        top = sum(1 for e in candidates if e.normalized_bbox[1] < 0.1)
        bottom = sum(1 for e in candidates if e.normalized_bbox[1] > 0.9)
        center = len(candidates) - top - bottom
        hints = []
        if top:
            hints.append(f"- Top area (menu bar): {top} elements")
        if center:
            hints.append(f"- Center area (main content): {center} elements")
        if bottom:
            hints.append(f"- Bottom area (status bar): {bottom} elements")
        return "\n".join(hints) or "- No clear spatial distribution"

    def build_matching_prompt(
        self,
        description: str,
        candidates: List[ParsedElement],
        options: Optional[MatchOptions] = None,
    ) -> str:
        options = options or MatchOptions()
        element_list = "\n".join(
            f'{idx}. "{e.content}" ({e.type}, {self._spatial_label(e)}, '
            f'{"✓ interactive" if e.interactivity else "✗ not interactive"})'
            for idx, e in enumerate(candidates, start=1)
        )
        guidance = INTENT_GUIDANCE.get(options.intent_type or "", "")

        return f"""You are an expert UI element matcher. Select the BEST matching element for the description.

**Target Description:** "{description}"

**Context:**
- Active app: {options.active_app or 'unknown'}
- Intent type: {options.intent_type or 'unknown'}
- Screen size: {options.screenshot_width or '?'}x{options.screenshot_height or '?'}

**Available Elements:**
{element_list}

**Spatial Context:**
{self._spatial_hints(candidates)}

**Matching Rules:**
1. Exact matches take priority over partial matches
2. Interactive elements are preferred for clickable actions
3. Spatial context matters: Consider element position
4. Avoid false positives: Skip menu items when looking for content
5. File extensions: "test.txt.rtf" should match "test.txt rtf"
6. Case insensitive

{guidance}

**Output Format:**
Return ONLY a JSON object:
{{
  "elementIndex": <number 1-{len(candidates)}>,
  "confidence": <number 0.0-1.0>,
  "reasoning": "<brief explanation>"
}}

Return ONLY the JSON object, no additional text."""

    # ------------------------------------------------------------------
    # Response
    # ------------------------------------------------------------------

    def _fallback(self, candidates: List[ParsedElement], reason: str) -> ElementMatchResult:
        return ElementMatchResult(
            element=candidates[0],
            confidence=self.config.fallback_confidence,
            reasoning=reason,
        )

    def parse_llm_response(self, text: str, candidates: List[ParsedElement]) -> ElementMatchResult:
        """Validate the model's pick; anything unusable degrades to the first candidate."""
        parsed = _extract_json_object(strip_code_fences(text))
        if not isinstance(parsed, dict):
            self.logger.system_warning("Matcher reply is not a JSON object", response=(text or "")[:200])
            return self._fallback(candidates, "Failed to parse LLM response: no JSON object")

        try:
            choice = ElementChoice.model_validate(parsed)
        except ValidationError as exc:
            self.logger.system_warning("Matcher reply failed validation", error=str(exc))
            return self._fallback(candidates, f"Failed to parse LLM response: {exc.error_count()} invalid field(s)")

        if not 1 <= choice.element_index <= len(candidates):
            self.logger.system_warning("Matcher reply index out of range", element_index=choice.element_index)
            return self._fallback(candidates, f"Failed to parse LLM response: invalid elementIndex {choice.element_index}")

        return ElementMatchResult(
            element=candidates[choice.element_index - 1],
            confidence=choice.confidence,
            reasoning=choice.reasoning or "LLM match",
        )

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    async def match_element(
        self,
        description: str,
        elements: List[ParsedElement],
        options: Optional[MatchOptions] = None,
    ) -> ElementMatchResult:
        """
        One resolution attempt.

        Raises:
            NoCandidatesError: nothing left to choose from; no dispatch is made
            LowConfidenceMatchError: the pick is below the acceptance threshold
        """
        options = options or MatchOptions()
        excluded = set(options.excluded_element_ids)
        available = [e for e in elements if e.id not in excluded]
        candidates = self.pre_filter_candidates(description, available, options)
        if not candidates:
            reason = "All elements have been excluded" if elements and not available else "No matching candidates found"
            raise NoCandidatesError(reason, description=description)

        prompt = self.build_matching_prompt(description, candidates, options)
        request = DispatchRequest(prompt=prompt, preferred_provider=self.config.preferred_provider)
        try:
            response = await self.dispatcher.dispatch(request, mode=DispatchMode.TEXT)
            result = self.parse_llm_response(response.text, candidates)
        except AllProvidersFailedError as exc:
            self.logger.match_failure(description, exc.message)
            result = self._fallback(candidates, f"LLM matching failed, using first candidate: {exc.message}")

        if result.confidence < self.config.acceptance_threshold:
            matched = result.element.content if result.element else ""
            has_window_bounds = options.window_bounds is not None
            self.logger.match_low_confidence(description, matched, result.confidence,
                                             has_window_bounds=has_window_bounds)
            if has_window_bounds:
                detail = f'No good match for "{description}"'
            else:
                detail = "Frontend must send windowBounds in context"
            raise LowConfidenceMatchError(
                f'Element matching failed: Low confidence ({result.confidence}) - {detail}. Matched: "{matched}"',
                element=result.element,
                confidence=result.confidence,
                has_window_bounds=has_window_bounds,
                description=description,
            )

        self.logger.match_found(description, result.element.content, result.confidence)
        return result

    async def match_element_with_retry(
        self,
        description: str,
        elements: List[ParsedElement],
        options: Optional[MatchOptions] = None,
    ) -> ElementMatchResult:
        """Up to ``max_retries`` attempts, excluding every low-confidence pick."""
        options = options or MatchOptions()
        max_retries = options.max_retries or self.config.max_retries
        excluded: List[int] = list(options.excluded_element_ids)
        reason = "No elements provided"

        for attempt in range(1, max_retries + 1):
            self.logger.match_attempt(description, attempt, max_retries, len(excluded))
            attempt_options = options.model_copy(update={"excluded_element_ids": list(excluded)})
            try:
                result = await self.match_element(description, elements, attempt_options)
            except LowConfidenceMatchError as exc:
                reason = exc.message
                if exc.element is not None and exc.element.id not in excluded:
                    excluded.append(exc.element.id)
                continue
            except NoCandidatesError as exc:
                reason = exc.message
                break
            return result.model_copy(update={"attempt_number": attempt, "excluded_count": len(excluded)})

        self.logger.match_failure(description, reason)
        return ElementMatchResult(
            element=None,
            confidence=0.0,
            reasoning=f"No match found after {max_retries} attempts: {reason}",
            attempt_number=max_retries,
            excluded_count=len(excluded),
        )
