"""
Screen-element detection, caching and matching.
"""
from .detector_client import DetectorChain
from .element_cache import ElementCache, InMemoryCacheBackend
from .element_matcher import ElementMatcher
from .element_parser import parse_elements
from .element_merger import merge_icon_text_pairs
from .element_service import ElementDetectionService
from .warmup import WarmupCoordinator

__all__ = [
    "DetectorChain",
    "ElementCache",
    "InMemoryCacheBackend",
    "ElementMatcher",
    "parse_elements",
    "merge_icon_text_pairs",
    "ElementDetectionService",
    "WarmupCoordinator",
]
