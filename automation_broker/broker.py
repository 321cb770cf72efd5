"""
AutomationBroker - one object wiring every component from a BrokerConfig.

Example:
    >>> config = BrokerConfig.from_env()
    >>> async with AutomationBroker(config=config) as broker:
    ...     result = await broker.complete("Summarize the open document")
    ...     print(result.provider, result.text)
"""
from __future__ import annotations

from typing import Any, Callable, Dict, Optional

import httpx

from automation_broker.ai_utils import CompletionFn
from automation_broker.broker_config import BrokerConfig
from automation_broker.dispatcher import CancellationToken, FallbackDispatcher
from automation_broker.element_detection.detector_client import DetectorChain
from automation_broker.element_detection.element_cache import CacheBackend, ElementCache, InMemoryCacheBackend
from automation_broker.element_detection.element_matcher import ElementMatcher
from automation_broker.element_detection.element_service import ElementDetectionService
from automation_broker.element_detection.warmup import WarmupCoordinator
from automation_broker.models.dispatch_models import DispatchMode, DispatchRequest, DispatchResult, SamplingOptions
from automation_broker.models.element_models import DetectionContext, DetectionResult, ScreenshotInput
from automation_broker.stream_sessions import EmitFn, StreamSessionManager
from automation_broker.utils.event_logger import EventLogger, get_event_logger, set_event_logger
from automation_broker.vision import VisionService


class AutomationBroker:
    """
    Facade over the dispatcher, stream sessions, element pipeline and vision service.

    Every component is built from ``config``; ``completion_fn`` and
    ``credential_resolver`` replace the LiteLLM call and the key lookup.
    """

    def __init__(
        self,
        config: Optional[BrokerConfig] = None,
        completion_fn: Optional[CompletionFn] = None,
        credential_resolver: Optional[Callable[[str], str]] = None,
        cache_backend: Optional[CacheBackend] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        event_logger: Optional[EventLogger] = None,
    ):
        self.config = config or BrokerConfig()

        if event_logger is not None:
            set_event_logger(event_logger)
        else:
            get_event_logger().debug_mode = self.config.logging.debug_mode
        self.logger = get_event_logger()

        self.dispatcher = FallbackDispatcher(
            config=self.config.dispatch,
            completion_fn=completion_fn,
            credential_resolver=credential_resolver,
        )
        self.sessions = StreamSessionManager(self.dispatcher)

        if cache_backend is None and self.config.cache.enabled:
            cache_backend = InMemoryCacheBackend()
        self.cache = ElementCache(backend=cache_backend, config=self.config.cache)

        self.detector = DetectorChain(config=self.config.detector, client=http_client)
        ping_fn = None
        if self.config.detector.replicate_api_token:
            test_image = self.config.warmup.test_image_url

            async def ping_fn():
                return await self.detector.ping(test_image)

        self.warmup = WarmupCoordinator(config=self.config.warmup, ping_fn=ping_fn)

        self.matcher = ElementMatcher(self.dispatcher, config=self.config.matcher)
        self.elements = ElementDetectionService(
            detector=self.detector,
            matcher=self.matcher,
            cache=self.cache,
            warmup=self.warmup,
            merge_config=self.config.merge,
        )
        self.vision = VisionService(self.dispatcher)
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start background components (the warmup loop, when enabled)."""
        if self._started:
            return
        self.warmup.start()
        self._started = True
        self.logger.system_info("🚀 Automation broker started",
                                warmup=self.warmup.enabled,
                                detector_available=self.elements.is_available())

    async def stop(self) -> None:
        """Cancel in-flight streams, stop the warmup loop and release HTTP resources."""
        cancelled = self.sessions.cancel_all()
        await self.warmup.stop()
        await self.detector.close()
        self._started = False
        self.logger.system_info("🛑 Automation broker stopped", cancelled_streams=cancelled)

    async def __aenter__(self) -> "AutomationBroker":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Convenience entry points
    # ------------------------------------------------------------------

    async def complete(
        self,
        prompt: str,
        system_instructions: Optional[str] = None,
        preferred_provider: Optional[str] = None,
        sampling: Optional[SamplingOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> DispatchResult:
        """Non-streaming text completion with provider fallback."""
        request = DispatchRequest(
            prompt=prompt,
            system_instructions=system_instructions,
            preferred_provider=preferred_provider,
            sampling=sampling or SamplingOptions(),
        )
        return await self.dispatcher.dispatch(request, mode=DispatchMode.TEXT, cancel_token=cancel_token)

    async def stream(self, request_id: str, request: DispatchRequest, emit: EmitFn) -> None:
        await self.sessions.stream(request_id, request, emit)

    def cancel_stream(self, request_id: str) -> bool:
        return self.sessions.cancel(request_id)

    async def detect_element(
        self,
        screenshot: ScreenshotInput,
        description: str,
        context: Optional[DetectionContext] = None,
    ) -> DetectionResult:
        return await self.elements.detect_element(screenshot, description, context)

    def health(self) -> Dict[str, Any]:
        return {
            "started": self._started,
            "activeStreams": self.sessions.active_count(),
            "vision": self.vision.health(),
            "elements": self.elements.health(),
        }
