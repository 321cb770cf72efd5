"""
automation_broker - LLM fallback dispatch and screen-element resolution.

This package brokers natural-language automation requests to external
intelligence providers: a multi-provider dispatcher that streams or returns
completions with automatic failover, and a pipeline that turns a screenshot
into structured UI elements and resolves a description to desktop coordinates.

Main Classes:
    AutomationBroker: Facade wiring every component from a BrokerConfig
    FallbackDispatcher: Provider-fallback dispatch engine
    ElementDetectionService: Screenshot + description -> coordinates
    BrokerConfig: Grouped configuration

Example:
    >>> from automation_broker import AutomationBroker, BrokerConfig
    >>>
    >>> async with AutomationBroker(config=BrokerConfig.from_env()) as broker:
    ...     result = await broker.complete("Name three keyboard shortcuts")
"""

# Facade
from automation_broker.broker import AutomationBroker

# Configuration
from automation_broker.broker_config import (
    BrokerConfig,
    DispatchConfig,
    CacheConfig,
    WarmupConfig,
    MergeConfig,
    MatcherConfig,
    DetectorConfig,
    LoggingConfig,
)

# Dispatch
from automation_broker.dispatcher import CancellationToken, FallbackDispatcher
from automation_broker.stream_sessions import StreamSessionManager

# Element pipeline
from automation_broker.element_detection import (
    DetectorChain,
    ElementCache,
    ElementDetectionService,
    ElementMatcher,
    InMemoryCacheBackend,
    WarmupCoordinator,
    parse_elements,
)

# Vision
from automation_broker.vision import VisionService

# Errors
from automation_broker.error_handling import (
    BrokerError,
    CredentialMissingError,
    ProviderRequestFailedError,
    AllProvidersFailedError,
    DispatchCancelledError,
    DuplicateRequestError,
    ElementParseError,
    NoCandidatesError,
    LowConfidenceMatchError,
    ElementNotFoundError,
    CacheUnavailableError,
    DetectorUnavailableError,
    ConfigurationError,
)

__version__ = "0.1.0"

__all__ = [
    "AutomationBroker",
    "BrokerConfig",
    "DispatchConfig",
    "CacheConfig",
    "WarmupConfig",
    "MergeConfig",
    "MatcherConfig",
    "DetectorConfig",
    "LoggingConfig",
    "CancellationToken",
    "FallbackDispatcher",
    "StreamSessionManager",
    "DetectorChain",
    "ElementCache",
    "ElementDetectionService",
    "ElementMatcher",
    "InMemoryCacheBackend",
    "WarmupCoordinator",
    "parse_elements",
    "VisionService",
    "BrokerError",
    "CredentialMissingError",
    "ProviderRequestFailedError",
    "AllProvidersFailedError",
    "DispatchCancelledError",
    "DuplicateRequestError",
    "ElementParseError",
    "NoCandidatesError",
    "LowConfidenceMatchError",
    "ElementNotFoundError",
    "CacheUnavailableError",
    "DetectorUnavailableError",
    "ConfigurationError",
]
