"""
Unit tests for the detector line parser.
"""
import pytest

from automation_broker.element_detection.element_parser import parse_element_line, parse_elements
from automation_broker.error_handling import ElementParseError
from automation_broker.models.element_models import WindowBounds
from automation_broker.utils.event_logger import EventType

RAW_OUTPUT = "\n".join([
    "icon 0: {'type': 'text', 'bbox': [0.1, 0.2, 0.3, 0.4], 'interactivity': False, 'content': 'It's here'}",
    "icon 1: {'type': 'icon', 'bbox': [0.5, 0.5, 0.6, 0.6], 'interactivity': True, 'content': 'Submit'}",
    "Detected 2 elements",
    "",
])


class TestParseElementLine:

    def test_apostrophe_in_content(self):
        data = parse_element_line(
            "icon 0: {'type': 'text', 'bbox': [0.1, 0.2, 0.3, 0.4], 'interactivity': False, 'content': 'It's here'}"
        )
        assert data["id"] == 0
        assert data["content"] == "It's here"
        assert data["interactivity"] is False
        assert data["bbox"] == [0.1, 0.2, 0.3, 0.4]

    def test_python_literals(self):
        data = parse_element_line(
            "icon 4: {'type': 'icon', 'bbox': [0, 0, 1, 1], 'interactivity': True, 'content': None}"
        )
        assert data["interactivity"] is True
        assert data["content"] is None

    def test_content_with_raw_quotes_and_backslashes(self):
        data = parse_element_line(
            "icon 2: {'type': 'text', 'bbox': [0, 0, 1, 1], 'interactivity': False, "
            "'content': 'C:\\Users\\me \"docs\"\tTab'}"
        )
        assert data["content"] == 'C:\\Users\\me "docs"\tTab'

    def test_non_element_line(self):
        assert parse_element_line("Detected 2 elements") is None
        assert parse_element_line("") is None

    def test_malformed_body_raises(self):
        with pytest.raises(ElementParseError) as exc_info:
            parse_element_line("icon 3: {'type': 'text', 'bbox': [0.1, 0.2}")
        assert exc_info.value.context.metadata["line"].startswith("icon 3")


class TestParseElements:

    def test_scaling_and_confidence(self):
        elements = parse_elements(RAW_OUTPUT, 1440, 900)

        assert [e.id for e in elements] == [0, 1]
        first = elements[0]
        assert first.content == "It's here"
        assert first.bbox.x1 == pytest.approx(144)
        assert first.bbox.y1 == pytest.approx(180)
        assert first.bbox.x2 == pytest.approx(432)
        assert first.bbox.y2 == pytest.approx(360)
        assert first.normalized_bbox == (0.1, 0.2, 0.3, 0.4)
        assert all(e.confidence == 0.9 for e in elements)
        assert elements[1].interactivity is True

    def test_window_offset_applied(self):
        elements = parse_elements(RAW_OUTPUT, 1000, 800, window_bounds=WindowBounds(x=100, y=50))
        submit = elements[1]
        assert submit.bbox.x1 == pytest.approx(600)
        assert submit.bbox.y1 == pytest.approx(450)
        assert submit.center_point().x == 650
        assert submit.center_point().y == 490

    def test_malformed_line_skipped_batch_kept(self, quiet_logger):
        raw = "\n".join([
            "icon 0: {'type': 'text', 'bbox': [0.1, 0.1, 0.2, 0.2], 'interactivity': False, 'content': 'Keep me'}",
            "icon 1: {'type': 'text', 'bbox': [0.1, 0.2}",
            "icon 2: {'type': 'text', 'bbox': 'oops', 'interactivity': False, 'content': 'Bad box'}",
            "icon 3: {'type': 'button', 'bbox': [0, 0, 1, 1], 'interactivity': False, 'content': 'Bad type'}",
            "icon 4: {'type': 'text', 'bbox': [0.3, 0.3, 0.4, 0.4], 'interactivity': False, 'content': 'Me too'}",
        ])
        elements = parse_elements(raw, 1000, 1000)

        assert [e.content for e in elements] == ["Keep me", "Me too"]
        assert len(quiet_logger.get_history(EventType.ELEMENT_LINE_SKIPPED)) == 3

    def test_empty_output(self):
        assert parse_elements("", 1000, 1000) == []

    def test_windows_line_endings(self):
        raw = "icon 0: {'type': 'text', 'bbox': [0, 0, 1, 1], 'interactivity': False, 'content': 'OK'}\r\n"
        assert [e.content for e in parse_elements(raw, 10, 10)] == ["OK"]

    def test_icon_label_pairs_merged(self):
        raw = "\n".join([
            "icon 0: {'type': 'icon', 'bbox': [0.40, 0.10, 0.46, 0.16], 'interactivity': True, 'content': 'a folder.'}",
            "icon 1: {'type': 'text', 'bbox': [0.39, 0.17, 0.47, 0.19], 'interactivity': False, 'content': 'Budget.xlsx'}",
        ])
        elements = parse_elements(raw, 1000, 1000)
        assert len(elements) == 1
        assert elements[0].id == 0
        assert elements[0].content == "Budget.xlsx"
