"""
Icon+label fusion.

The detector reports a desktop icon and its caption as two elements: an icon
with a generic description ("a folder.") and a text element just below it
("Budget.xlsx"). Fusing them gives the resolver a single element that has
both the position of the icon and the name of the label.
"""
from __future__ import annotations

import re
from typing import Dict, List, Optional, Set

from automation_broker.broker_config import MergeConfig
from automation_broker.models.element_models import ParsedElement
from automation_broker.utils.event_logger import get_event_logger

GENERIC_ICON_CONTENT = re.compile(
    r'^(unanswerable|a folder\.|a file folder\.|a bookmark\.|an arrow|a loading screen|a symbol'
    r'|a stop button|the number|the "not" function|the power button|the time or date'
    r'|the "refresh" function|adding a new|image blank|remote|a text box|a user profile'
    r'|a low profile|the option to close|the 3-point view|a tool for writing)$',
    re.IGNORECASE,
)

# Clock times, weekday/month abbreviations, bare digits, lone brackets/punctuation.
NOISE_TEXT = re.compile(
    r"^(\d{1,2}:\d{2}(am|pm)?|mon|tue|wed|thu|fri|sat|sun|jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec"
    r"|\d+|\[|\]|\{|\}|>|<|/|\\|\|)$",
    re.IGNORECASE,
)


def is_generic_icon(content: str, min_specific_length: int = 4) -> bool:
    content = (content or "").strip()
    return bool(GENERIC_ICON_CONTENT.match(content)) or len(content) < min_specific_length


def is_label_text(content: str) -> bool:
    label = (content or "").strip()
    return len(label) >= 2 and not NOISE_TEXT.match(label)


def merge_icon_text_pairs(elements: List[ParsedElement], config: Optional[MergeConfig] = None) -> List[ParsedElement]:
    """
    Give generic icons the text of the label directly below them.

    A label qualifies when its centre is within ``label_max_dx`` of the icon
    centre and its top edge sits between ``label_min_dy`` and ``label_max_dy``
    below the icon bottom. The closest label horizontally wins; each label is
    consumed by at most one icon and dropped from the output.
    """
    config = config or MergeConfig()
    consumed: Set[int] = set()
    renamed: Dict[int, str] = {}
    texts = [e for e in elements if e.type == "text"]

    for icon in elements:
        if icon.type != "icon" or not is_generic_icon(icon.content, config.min_specific_length):
            continue

        icon_cx = icon.normalized_center_x
        icon_bottom = icon.normalized_bbox[3]

        best: Optional[ParsedElement] = None
        best_dx = 0.0
        for text in texts:
            if text.id in consumed or not is_label_text(text.content):
                continue
            dx = abs(text.normalized_center_x - icon_cx)
            dy = text.normalized_bbox[1] - icon_bottom
            if dx > config.label_max_dx or not (config.label_min_dy <= dy <= config.label_max_dy):
                continue
            if best is None or dx < best_dx:
                best, best_dx = text, dx

        if best is None:
            continue
        consumed.add(best.id)
        renamed[icon.id] = best.content.strip()

    if not consumed:
        return list(elements)

    merged: List[ParsedElement] = []
    for element in elements:
        if element.type == "text" and element.id in consumed:
            continue
        if element.type == "icon" and element.id in renamed:
            element = element.model_copy(update={"content": renamed[element.id]})
        merged.append(element)

    get_event_logger().elements_merged(len(consumed), before=len(elements), after=len(merged))
    return merged
