"""
HTTP clients for the screen-element detector.

Three deployments of the same model are supported and tried in a fixed order:
Hugging Face Gradio endpoint, Modal serverless endpoint, then Replicate. Each
returns the raw element-description text; parsing happens downstream.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from automation_broker.broker_config import DetectorConfig
from automation_broker.error_handling import DetectorUnavailableError
from automation_broker.models.element_models import ScreenshotInput
from automation_broker.utils.event_logger import EventLogger, get_event_logger

_REPLICATE_TERMINAL = {"succeeded", "failed", "canceled"}


class BaseDetector:
    """One detector deployment."""

    name = "detector"

    def __init__(self, config: DetectorConfig):
        self.config = config

    async def detect(self, client: httpx.AsyncClient, screenshot: ScreenshotInput) -> str:
        raise NotImplementedError


class HuggingFaceDetector(BaseDetector):
    """Gradio predict endpoint: ``{"data": [image, box, iou]}`` -> ``data[0]``."""

    name = "huggingface"

    async def detect(self, client: httpx.AsyncClient, screenshot: ScreenshotInput) -> str:
        response = await client.post(
            self.config.huggingface_endpoint,
            json={"data": [screenshot.data_uri(), self.config.box_threshold, self.config.iou_threshold]},
            headers={"Content-Type": "application/json"},
            timeout=self.config.timeout_seconds,
        )
        response.raise_for_status()
        data = response.json().get("data") or []
        if not data or not isinstance(data[0], str):
            raise ValueError("Hugging Face response has no element text")
        return data[0]


class ModalDetector(BaseDetector):
    """Modal endpoint with bearer auth, returns ``{"elements": ...}``."""

    name = "modal"

    async def detect(self, client: httpx.AsyncClient, screenshot: ScreenshotInput) -> str:
        response = await client.post(
            self.config.modal_endpoint,
            json={
                "image": screenshot.base64,
                "imgsz": self.config.imgsz,
                "box_threshold": self.config.box_threshold,
                "iou_threshold": self.config.iou_threshold,
            },
            headers={
                "Authorization": f"Bearer {self.config.modal_api_key}",
                "Content-Type": "application/json",
            },
            timeout=self.config.timeout_seconds,
        )
        response.raise_for_status()
        elements = response.json().get("elements")
        if not isinstance(elements, str):
            raise ValueError("Modal response has no element text")
        return elements


class ReplicateDetector(BaseDetector):
    """Replicate predictions API. Cold starts are common; see WarmupCoordinator."""

    name = "replicate"
    poll_interval_seconds = 1.0

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.replicate_api_token}",
            "Content-Type": "application/json",
            "Prefer": "wait",
        }

    async def _predict(self, client: httpx.AsyncClient, model_input: Dict[str, Any]) -> Dict[str, Any]:
        response = await client.post(
            self.config.replicate_api_url,
            json={"version": self.config.replicate_model_version, "input": model_input},
            headers=self._headers(),
            timeout=self.config.replicate_timeout_seconds,
        )
        response.raise_for_status()
        prediction = response.json()

        # Prefer: wait may return before the prediction finishes
        while prediction.get("status") not in _REPLICATE_TERMINAL:
            poll_url = (prediction.get("urls") or {}).get("get")
            if not poll_url:
                break
            await asyncio.sleep(self.poll_interval_seconds)
            poll = await client.get(poll_url, headers=self._headers(), timeout=self.config.timeout_seconds)
            poll.raise_for_status()
            prediction = poll.json()

        status = prediction.get("status")
        if status and status != "succeeded":
            raise RuntimeError(f"Replicate prediction {status}: {prediction.get('error')}")
        return prediction

    async def run(self, client: httpx.AsyncClient, model_input: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await asyncio.wait_for(
                self._predict(client, model_input),
                timeout=self.config.replicate_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise TimeoutError(
                f"Replicate timeout after {self.config.replicate_timeout_seconds:.0f}s"
            ) from exc

    async def detect(self, client: httpx.AsyncClient, screenshot: ScreenshotInput) -> str:
        prediction = await self.run(client, {
            "image": screenshot.data_uri(),
            "imgsz": self.config.imgsz,
            "box_threshold": self.config.box_threshold,
            "iou_threshold": self.config.iou_threshold,
        })
        output = prediction.get("output") or {}
        elements = output.get("elements") if isinstance(output, dict) else None
        if not isinstance(elements, str):
            raise ValueError("Replicate output has no element text")
        return elements


class DetectorChain:
    """
    Tries every configured detector in priority order; first success wins.

    Pass an ``httpx.AsyncClient`` to share a connection pool (or a
    ``MockTransport`` client in tests); otherwise one is created lazily.
    """

    def __init__(
        self,
        config: Optional[DetectorConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        logger: Optional[EventLogger] = None,
    ):
        self.config = config or DetectorConfig()
        self._client = client
        self._owns_client = client is None
        self._logger = logger
        self.replicate = ReplicateDetector(self.config)

    @property
    def logger(self) -> EventLogger:
        return self._logger or get_event_logger()

    @property
    def detectors(self) -> List[BaseDetector]:
        chain: List[BaseDetector] = []
        if self.config.huggingface_endpoint:
            chain.append(HuggingFaceDetector(self.config))
        if self.config.modal_configured:
            chain.append(ModalDetector(self.config))
        if self.config.replicate_api_token:
            chain.append(self.replicate)
        return chain

    def is_available(self) -> bool:
        return self.config.is_available()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def detect(self, screenshot: ScreenshotInput) -> Tuple[str, str]:
        """
        Return ``(raw element text, detector name)``.

        Raises:
            DetectorUnavailableError: nothing configured, or every detector failed
        """
        chain = self.detectors
        if not chain:
            raise DetectorUnavailableError(
                "No element detector configured: set HUGGINGFACE_OMNIPARSER_ENDPOINT, "
                "MODAL_OMNIPARSER_ENDPOINT + MODAL_API_KEY, or REPLICATE_API_TOKEN"
            )

        client = await self._get_client()
        errors: List[str] = []
        for detector in chain:
            started = time.perf_counter()
            try:
                raw = await detector.detect(client, screenshot)
            except Exception as exc:
                message = str(exc) or exc.__class__.__name__
                errors.append(f"{detector.name}: {message}")
                self.logger.detector_failure(detector.name, message)
                continue
            self.logger.detector_call(detector.name, True, latency_ms=(time.perf_counter() - started) * 1000)
            return raw, detector.name

        raise DetectorUnavailableError(
            "Every element detector failed: " + "; ".join(errors),
            errors=errors,
        )

    async def ping(self, image_url: str) -> Dict[str, Any]:
        """Warmup ping: one Replicate prediction on a small public image."""
        client = await self._get_client()
        return await self.replicate.run(client, {
            "image": image_url,
            "box_threshold": self.config.box_threshold,
            "iou_threshold": self.config.iou_threshold,
        })
