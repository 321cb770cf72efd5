"""
Configuration models for the automation broker.

This module provides structured, type-safe configuration using Pydantic models.
Instead of scattering provider orders, cache TTLs and merge geometry across
the components, you can create a BrokerConfig object with grouped settings.

Example:
    >>> from automation_broker.broker_config import BrokerConfig, MatcherConfig
    >>> config = BrokerConfig(
    ...     matcher=MatcherConfig(acceptance_threshold=0.6),
    ... )
    >>> broker = AutomationBroker(config=config)
"""
from __future__ import annotations

import os
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


def _env(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value.strip() if value and value.strip() else None


class DispatchConfig(BaseModel):
    """Provider ordering and sampling defaults for the fallback dispatcher."""

    text_priority: List[str] = Field(
        default_factory=lambda: ["openai", "claude", "gemini", "mistral", "deepseek"],
        description="Fallback order for non-streaming text completions"
    )
    stream_priority: List[str] = Field(
        default_factory=lambda: ["openai", "claude", "gemini", "mistral", "deepseek", "grok", "lambda"],
        description="Fallback order for streaming completions"
    )
    vision_priority: List[str] = Field(
        default_factory=lambda: ["openai", "claude", "gemini"],
        description="Fallback order for screenshot (vision) completions"
    )
    text_temperature: float = Field(default=0.1, ge=0.0, le=2.0, description="Default temperature in text mode")
    stream_temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="Default temperature in stream mode")
    vision_temperature: float = Field(default=0.1, ge=0.0, le=2.0, description="Default temperature in vision mode")
    text_max_tokens: int = Field(default=512, ge=1, description="Default max tokens in text mode")
    stream_max_tokens: int = Field(default=4096, ge=1, description="Default max tokens in stream mode")
    vision_max_tokens: int = Field(default=1024, ge=1, description="Default max tokens in vision mode")
    timeout_seconds: float = Field(default=30.0, gt=0.0, description="Per-provider request timeout")

    class Config:
        arbitrary_types_allowed = True


class CacheConfig(BaseModel):
    """Element cache configuration."""

    enabled: bool = Field(
        default=True,
        description="Enable element caching (a missing backend still degrades to always-miss)"
    )
    ttl_seconds: int = Field(
        default=3 * 24 * 60 * 60,
        ge=1,
        description="Retention window for cached detection passes"
    )
    key_prefix: str = Field(
        default="omniparser",
        description="Prefix for every cache key"
    )

    class Config:
        arbitrary_types_allowed = True


class WarmupConfig(BaseModel):
    """Detector warmup configuration."""

    enabled: bool = Field(
        default=False,
        description="Keep the cold-start-prone detector hot with periodic pings"
    )
    interval_seconds: float = Field(
        default=180.0,
        gt=0.0,
        description="Seconds between scheduled warmup pings"
    )
    warm_ttl_seconds: float = Field(
        default=200.0,
        gt=0.0,
        description="How long after a successful ping the detector counts as warm"
    )
    cold_boot_threshold_ms: float = Field(
        default=60_000.0,
        gt=0.0,
        description="Warmup latency above which a cold boot is reported"
    )
    test_image_url: str = Field(
        default="https://replicate.delivery/pbxt/MWb5PhmtW9qcXtvG1G9DQMo2TmBtsVK3DS1dETfEl78YNLZL/replicate-website.png",
        description="Image sent with every warmup ping"
    )

    @model_validator(mode="after")
    def _ttl_exceeds_interval(self) -> "WarmupConfig":
        if self.warm_ttl_seconds <= self.interval_seconds:
            raise ValueError(
                f"warm_ttl_seconds ({self.warm_ttl_seconds}) must be greater than "
                f"interval_seconds ({self.interval_seconds})"
            )
        return self


class MergeConfig(BaseModel):
    """Icon+label fusion geometry, in normalized screen units."""

    label_max_dx: float = Field(default=0.08, ge=0.0, le=1.0,
                                description="Max horizontal centre offset between icon and label")
    label_min_dy: float = Field(default=-0.02, ge=-1.0, le=1.0,
                                description="Min gap between icon bottom and label top (negative = overlap)")
    label_max_dy: float = Field(default=0.06, ge=0.0, le=1.0,
                                description="Max gap between icon bottom and label top")
    min_specific_length: int = Field(default=4, ge=0,
                                     description="Icon content shorter than this is treated as generic")


class MatcherConfig(BaseModel):
    """Element resolver configuration."""

    acceptance_threshold: float = Field(default=0.5, ge=0.0, le=1.0,
                                        description="Minimum confidence for an accepted match")
    max_retries: int = Field(default=3, ge=1, description="Match attempts before giving up")
    fallback_confidence: float = Field(default=0.5, ge=0.0, le=1.0,
                                       description="Confidence assigned when the LLM reply is unusable")
    preferred_provider: Optional[str] = Field(default=None,
                                              description="Provider tried first for matching prompts")


class DetectorConfig(BaseModel):
    """Element detector endpoints, in fixed priority order: Hugging Face, Modal, Replicate."""

    huggingface_endpoint: Optional[str] = Field(default=None, description="Gradio predict endpoint")
    modal_endpoint: Optional[str] = Field(default=None, description="Modal serverless endpoint")
    modal_api_key: Optional[str] = Field(default=None, description="Bearer token for Modal")
    replicate_api_token: Optional[str] = Field(default=None, description="Replicate API token")
    replicate_model_version: str = Field(
        default="49cf3d41b8d3aca1360514e83be4c97131ce8f0d99abfc365526d8384caa88df",
        description="Replicate model version hash for microsoft/omniparser-v2"
    )
    replicate_api_url: str = Field(default="https://api.replicate.com/v1/predictions",
                                   description="Replicate predictions endpoint")
    box_threshold: float = Field(default=0.05, ge=0.0, le=1.0)
    iou_threshold: float = Field(default=0.1, ge=0.0, le=1.0)
    imgsz: int = Field(default=640, ge=1)
    timeout_seconds: float = Field(default=60.0, gt=0.0)
    replicate_timeout_seconds: float = Field(default=180.0, gt=0.0)
    default_screenshot_width: int = Field(default=1440, ge=1)
    default_screenshot_height: int = Field(default=900, ge=1)

    @property
    def modal_configured(self) -> bool:
        return bool(self.modal_endpoint and self.modal_api_key)

    def is_available(self) -> bool:
        return bool(self.huggingface_endpoint or self.modal_configured or self.replicate_api_token)


class LoggingConfig(BaseModel):
    """Debugging and logging configuration."""

    debug_mode: bool = Field(
        default=True,
        description="Print events to the console in addition to callbacks"
    )


class BrokerConfig(BaseModel):
    """
    Main configuration object for the automation broker.

    Example:
        >>> config = BrokerConfig(
        ...     dispatch=DispatchConfig(text_priority=["claude", "openai"]),
        ...     warmup=WarmupConfig(enabled=True),
        ... )
    """

    dispatch: DispatchConfig = Field(default_factory=DispatchConfig, description="Dispatcher configuration")
    cache: CacheConfig = Field(default_factory=CacheConfig, description="Element cache configuration")
    warmup: WarmupConfig = Field(default_factory=WarmupConfig, description="Detector warmup configuration")
    merge: MergeConfig = Field(default_factory=MergeConfig, description="Icon+label merge geometry")
    matcher: MatcherConfig = Field(default_factory=MatcherConfig, description="Element resolver configuration")
    detector: DetectorConfig = Field(default_factory=DetectorConfig, description="Element detector endpoints")
    logging: LoggingConfig = Field(default_factory=LoggingConfig, description="Logging configuration")

    @classmethod
    def from_env(cls) -> BrokerConfig:
        """
        Create a configuration from process environment variables.

        Reads HUGGINGFACE_OMNIPARSER_ENDPOINT, MODAL_OMNIPARSER_ENDPOINT,
        MODAL_API_KEY, REPLICATE_API_TOKEN, OMNIPARSER_WARMUP_ENABLED and
        LOG_LEVEL. Provider credentials are resolved lazily per call.
        """
        return cls(
            detector=DetectorConfig(
                huggingface_endpoint=_env("HUGGINGFACE_OMNIPARSER_ENDPOINT"),
                modal_endpoint=_env("MODAL_OMNIPARSER_ENDPOINT"),
                modal_api_key=_env("MODAL_API_KEY"),
                replicate_api_token=_env("REPLICATE_API_TOKEN"),
            ),
            warmup=WarmupConfig(enabled=(_env("OMNIPARSER_WARMUP_ENABLED") or "").lower() == "true"),
            logging=LoggingConfig(debug_mode=(_env("LOG_LEVEL") or "debug").lower() == "debug"),
        )

    @classmethod
    def fast(cls) -> BrokerConfig:
        """
        Create a configuration optimized for interactive latency.

        Returns:
            BrokerConfig with a single match attempt and quiet logging
        """
        return cls(
            matcher=MatcherConfig(max_retries=1),
            dispatch=DispatchConfig(timeout_seconds=15.0),
            logging=LoggingConfig(debug_mode=False),
        )

    @classmethod
    def debug(cls) -> BrokerConfig:
        """
        Create a configuration optimized for debugging.

        Returns:
            BrokerConfig with console logging and caching disabled
        """
        return cls(
            cache=CacheConfig(enabled=False),
            logging=LoggingConfig(debug_mode=True),
        )
