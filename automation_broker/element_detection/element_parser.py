"""
Tolerant parser for detector element-description text.

The detector returns one element per line, written as a Python dict repr:

    icon 7: {'type': 'text', 'bbox': [0.1, 0.2, 0.3, 0.4], 'interactivity': False, 'content': 'It's here'}

Grammar handled here:
    - the line prefix ``icon <id>: `` followed by a ``{...}`` body
    - single-quoted keys and strings
    - Python literals ``True`` / ``False`` / ``None``
    - a trailing ``'content'`` field that may contain raw quotes,
      backslashes and tabs; it is lifted out verbatim
      before the rest of the body is parsed

Lines without the prefix are ignored. Lines with the prefix that still fail to
parse are logged and skipped; the rest of the batch is kept.
"""
from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from automation_broker.broker_config import MergeConfig
from automation_broker.element_detection.element_merger import merge_icon_text_pairs
from automation_broker.error_handling import ElementParseError
from automation_broker.models.element_models import BoundingBox, ParsedElement, WindowBounds
from automation_broker.utils.event_logger import get_event_logger

LINE_PATTERN = re.compile(r"icon (\d+): (\{.*\})")
CONTENT_PATTERN = re.compile(r"'content':\s*'(.+?)'\}$", re.DOTALL)
_PLACEHOLDER = "__ELEMENT_CONTENT__"

DEFAULT_CONFIDENCE = 0.9


def _normalize_literals(body: str) -> str:
    body = re.sub(r"\bFalse\b", "false", body)
    body = re.sub(r"\bTrue\b", "true", body)
    return re.sub(r"\bNone\b", "null", body)


def parse_element_line(line: str) -> Optional[Dict[str, Any]]:
    """
    Parse one detector line into ``{"id", "type", "bbox", "interactivity", "content"}``.

    Returns None when the line is not an element line.

    Raises:
        ElementParseError: the line looks like an element but cannot be decoded
    """
    match = LINE_PATTERN.search(line.rstrip("\r"))
    if not match:
        return None

    element_id = int(match.group(1))
    body = match.group(2)

    content: Optional[str] = None
    content_match = CONTENT_PATTERN.search(body)
    if content_match:
        content = content_match.group(1)
        body = body[:content_match.start()] + f"'content': '{_PLACEHOLDER}'}}"

    body = _normalize_literals(body).replace("'", '"')

    try:
        data = json.loads(body)
    except ValueError as exc:
        raise ElementParseError(f"Malformed element body: {exc}", line=line) from exc
    if not isinstance(data, dict):
        raise ElementParseError("Element body is not an object", line=line)

    if content is not None:
        data["content"] = content
    data["id"] = element_id
    return data


def _to_element(
    data: Dict[str, Any],
    screenshot_width: int,
    screenshot_height: int,
    window_bounds: Optional[WindowBounds],
) -> ParsedElement:
    bbox = data.get("bbox")
    if not isinstance(bbox, (list, tuple)) or len(bbox) != 4:
        raise ElementParseError(f"Element {data.get('id')} has no usable bbox")
    try:
        nx1, ny1, nx2, ny2 = (float(v) for v in bbox)
    except (TypeError, ValueError) as exc:
        raise ElementParseError(f"Element {data.get('id')} bbox is not numeric") from exc

    offset_x = window_bounds.x if window_bounds else 0
    offset_y = window_bounds.y if window_bounds else 0
    absolute = BoundingBox(
        x1=nx1 * screenshot_width + offset_x,
        y1=ny1 * screenshot_height + offset_y,
        x2=nx2 * screenshot_width + offset_x,
        y2=ny2 * screenshot_height + offset_y,
    )

    try:
        return ParsedElement(
            id=data["id"],
            type=data.get("type"),
            bbox=absolute,
            normalized_bbox=(nx1, ny1, nx2, ny2),
            interactivity=bool(data.get("interactivity", False)),
            content=str(data.get("content") or ""),
            confidence=DEFAULT_CONFIDENCE,
        )
    except ValidationError as exc:
        raise ElementParseError(f"Element {data.get('id')} failed validation: {exc}") from exc


def parse_elements(
    raw: str,
    screenshot_width: int,
    screenshot_height: int,
    window_bounds: Optional[WindowBounds] = None,
    merge_config: Optional[MergeConfig] = None,
) -> List[ParsedElement]:
    """
    Convert raw detector output into merged, desktop-space elements.

    Args:
        raw: Detector output, one element per line
        screenshot_width: Pixel width the normalized bboxes are scaled by
        screenshot_height: Pixel height the normalized bboxes are scaled by
        window_bounds: Optional window offset added to absolute coordinates
        merge_config: Icon+label merge geometry

    Returns:
        Elements in detector order, icon+label pairs fused
    """
    logger = get_event_logger()
    elements: List[ParsedElement] = []

    for line in (raw or "").split("\n"):
        try:
            data = parse_element_line(line)
            if data is None:
                continue
            elements.append(_to_element(data, screenshot_width, screenshot_height, window_bounds))
        except ElementParseError as exc:
            logger.element_line_skipped(line, exc.message)

    return merge_icon_text_pairs(elements, merge_config or MergeConfig())
