"""
Element detection service: screenshot + description -> desktop coordinates.

Flow for one request:
    1. make sure the detector is warm (when warmup is enabled)
    2. hash the screenshot and look the pass up in the element cache
    3. on a hit, resolve the description against the cached elements
    4. on a miss (or when the cached pass has no match), call the detector
       chain, parse + merge its output, cache it, and resolve again
"""
from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from automation_broker.broker_config import DetectorConfig, MergeConfig
from automation_broker.element_detection.detector_client import DetectorChain
from automation_broker.element_detection.element_cache import ElementCache, hash_screenshot
from automation_broker.element_detection.element_matcher import ElementMatcher
from automation_broker.element_detection.element_parser import parse_elements
from automation_broker.element_detection.warmup import WarmupCoordinator
from automation_broker.error_handling import DetectorUnavailableError, ElementNotFoundError
from automation_broker.models.element_models import (
    DetectionContext,
    DetectionResult,
    ElementCacheEntry,
    MatchOptions,
    ParsedElement,
    ScreenshotInput,
)
from automation_broker.utils.event_logger import EventLogger, get_event_logger

FETCH_ALL_ELEMENTS = "fetch_all_elements"


class ElementDetectionService:
    """Coordinates warmup, cache, detector chain and matcher for one screenshot."""

    def __init__(
        self,
        detector: DetectorChain,
        matcher: ElementMatcher,
        cache: Optional[ElementCache] = None,
        warmup: Optional[WarmupCoordinator] = None,
        merge_config: Optional[MergeConfig] = None,
        logger: Optional[EventLogger] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.detector = detector
        self.matcher = matcher
        self.cache = cache or ElementCache()
        self.warmup = warmup
        self.merge_config = merge_config or MergeConfig()
        self._logger = logger
        self._clock = clock

    @property
    def logger(self) -> EventLogger:
        return self._logger or get_event_logger()

    @property
    def detector_config(self) -> DetectorConfig:
        return self.detector.config

    def is_available(self) -> bool:
        return self.detector.is_available()

    def _dimensions(self, context: DetectionContext):
        width = context.screenshot_width or self.detector_config.default_screenshot_width
        height = context.screenshot_height or self.detector_config.default_screenshot_height
        return width, height

    async def _ensure_warm(self) -> None:
        if self.warmup is None or not self.warmup.enabled or self.warmup.is_warm():
            return
        self.logger.system_warning("⚠️ Detector is cold, warming up before detection")
        result = await self.warmup.ensure_warm()
        self.logger.system_info("Warmup complete", was_warm=result.was_warm, latency_ms=result.latency_ms)

    async def _find(
        self,
        entry: ElementCacheEntry,
        description: str,
        context: DetectionContext,
    ) -> Optional[DetectionResult]:
        if not description:
            return None
        options = MatchOptions(
            intent_type=context.intent_type,
            active_app=context.active_app,
            active_url=context.active_url,
            screenshot_width=entry.screenshot_width,
            screenshot_height=entry.screenshot_height,
            window_bounds=context.window_bounds or entry.window_bounds,
            max_retries=self.matcher.config.max_retries,
        )
        match = await self.matcher.match_element_with_retry(description, entry.elements, options)
        if match.element is None:
            self.logger.system_warning("Matcher found no suitable element", description=description,
                                       reasoning=match.reasoning)
            return None
        return DetectionResult(
            coordinates=match.element.center_point(),
            confidence=match.confidence,
            selected_element=match.element.content,
        )

    async def detect_element(
        self,
        screenshot: ScreenshotInput,
        description: str,
        context: Optional[DetectionContext] = None,
    ) -> DetectionResult:
        """
        Resolve ``description`` to desktop coordinates.

        ``description == "fetch_all_elements"`` returns every element instead.

        Raises:
            DetectorUnavailableError: no detector configured, or all detectors failed
            ElementNotFoundError: the fresh detection pass has no acceptable match
        """
        if not self.is_available():
            raise DetectorUnavailableError(
                "Element detector not available: configure HUGGINGFACE_OMNIPARSER_ENDPOINT, "
                "MODAL_OMNIPARSER_ENDPOINT, or REPLICATE_API_TOKEN"
            )

        context = context or DetectionContext()
        fetch_all = description == FETCH_ALL_ELEMENTS
        self.logger.system_info("🔍 Starting element detection", description=description,
                                has_window_bounds=context.window_bounds is not None)

        await self._ensure_warm()

        screenshot_hash = hash_screenshot(screenshot.base64)
        origin = context.origin
        cached = await self.cache.get(origin, screenshot_hash)

        if cached is not None:
            if fetch_all:
                return DetectionResult(confidence=1.0, method="omniparser_cached", cache_hit=True,
                                       all_elements=cached.elements)
            found = await self._find(cached, description, context)
            if found is not None:
                return found.model_copy(update={"method": "omniparser_cached", "cache_hit": True})
            self.logger.system_warning("Element not found in cached pass, calling detector",
                                       description=description)

        width, height = self._dimensions(context)
        raw, detector_name = await self.detector.detect(screenshot)
        elements = parse_elements(raw, width, height, context.window_bounds, self.merge_config)
        self.logger.system_info(f"Parsed {len(elements)} elements", detector=detector_name)

        entry = ElementCacheEntry(
            elements=elements,
            timestamp=self._clock(),
            origin=origin,
            screenshot_hash=screenshot_hash,
            screenshot_width=width,
            screenshot_height=height,
            window_bounds=context.window_bounds,
        )
        await self.cache.put(origin, screenshot_hash, entry)

        if fetch_all:
            return DetectionResult(confidence=1.0, method="omniparser", cache_hit=False, all_elements=elements)

        found = await self._find(entry, description, context)
        if found is None:
            raise ElementNotFoundError(f"Element not found: {description}", description=description, origin=origin)
        return found.model_copy(update={"method": "omniparser", "cache_hit": False})

    async def parse_screenshot(
        self,
        screenshot: ScreenshotInput,
        context: Optional[DetectionContext] = None,
    ) -> List[ParsedElement]:
        """Every element of one screenshot, from cache when possible."""
        result = await self.detect_element(screenshot, FETCH_ALL_ELEMENTS, context)
        return list(result.all_elements or [])

    async def invalidate_cache(self, origin: str, screenshot_hash: Optional[str] = None) -> int:
        return await self.cache.invalidate(origin, screenshot_hash)

    def health(self) -> Dict[str, Any]:
        """Detector configuration, warmup stats and cache status."""
        config = self.detector_config
        available = self.is_available()
        warmup_stats = self.warmup.get_stats() if self.warmup else {"enabled": False}
        return {
            "service": "omniparser",
            "status": "healthy" if available else "unavailable",
            "providers": {
                "huggingface": {
                    "available": bool(config.huggingface_endpoint),
                    "priority": 1,
                },
                "modal": {
                    "available": config.modal_configured,
                    "priority": 2,
                },
                "replicate": {
                    "available": bool(config.replicate_api_token),
                    "priority": 3,
                    "fallback": True,
                    "warmup": warmup_stats,
                },
            },
            "features": {
                "caching": self.cache.available,
                "elementDetection": True,
                "batchParsing": True,
            },
            "timestamp": datetime.now().isoformat(),
        }
