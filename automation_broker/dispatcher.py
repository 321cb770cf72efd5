"""
Provider-fallback dispatch engine.

A dispatch walks the attempt order (preferred provider first, then the mode's
priority list) and returns the first provider that answers. Missing
credentials and provider exceptions are recorded in the fallback trace and the
walk continues; only exhaustion of every provider surfaces to the caller.
"""
from __future__ import annotations

import asyncio
import threading
import time
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from automation_broker.ai_utils import (
    MODE_CAPABILITY,
    CompletionFn,
    ProviderCall,
    _maybe_await,
    _resolve_api_key,
    call_provider,
    get_provider_config,
    list_providers,
)
from automation_broker.broker_config import DispatchConfig
from automation_broker.error_handling import (
    AllProvidersFailedError,
    CredentialMissingError,
    DispatchCancelledError,
)
from automation_broker.models.dispatch_models import (
    DispatchMode,
    DispatchRequest,
    DispatchResult,
    FallbackAttempt,
    StreamChunk,
)
from automation_broker.utils.event_logger import EventLogger, get_event_logger


ChunkCallback = Callable[[StreamChunk], Union[None, Awaitable[None]]]


class CancellationToken:
    """
    Cancellation handle for one dispatch.

    Safe to cancel from any thread. Coroutines blocked in ``wait()`` are woken
    on their own loop, which lets the dispatcher abort a provider call that is
    still running.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._waiters: List[Tuple[asyncio.AbstractEventLoop, asyncio.Event]] = []

    def cancel(self) -> None:
        with self._lock:
            self._event.set()
            waiters = list(self._waiters)
        for loop, waiter in waiters:
            if not loop.is_closed():
                loop.call_soon_threadsafe(waiter.set)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, attempts: int = 0) -> None:
        if self.cancelled:
            raise DispatchCancelledError("Dispatch cancelled", attempts=attempts)

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        waiter = asyncio.Event()
        entry = (asyncio.get_running_loop(), waiter)
        with self._lock:
            if self._event.is_set():
                return
            self._waiters.append(entry)
        try:
            await waiter.wait()
        finally:
            with self._lock:
                self._waiters.remove(entry)


class FallbackDispatcher:
    """Tries providers in a deterministic order until one succeeds."""

    def __init__(
        self,
        config: Optional[DispatchConfig] = None,
        completion_fn: Optional[CompletionFn] = None,
        credential_resolver: Optional[Callable[[str], str]] = None,
        logger: Optional[EventLogger] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.config = config or DispatchConfig()
        self._completion_fn = completion_fn or call_provider
        self._resolve_credential = credential_resolver or _resolve_api_key
        self._logger = logger
        self._clock = clock

    @property
    def logger(self) -> EventLogger:
        return self._logger or get_event_logger()

    def has_credential(self, provider: str) -> bool:
        try:
            self._resolve_credential(provider)
        except CredentialMissingError:
            return False
        return True

    # ------------------------------------------------------------------
    # Attempt order
    # ------------------------------------------------------------------

    def _priority_for(self, mode: DispatchMode) -> List[str]:
        priorities: Dict[DispatchMode, List[str]] = {
            DispatchMode.TEXT: self.config.text_priority,
            DispatchMode.STREAM: self.config.stream_priority,
            DispatchMode.VISION: self.config.vision_priority,
        }
        return priorities[mode]

    def build_attempt_order(self, preferred: Optional[str], mode: Union[DispatchMode, str]) -> List[str]:
        """
        Return the providers to try, in order.

        The preferred provider (when known and capable) comes first, followed
        by the mode's priority list without it. Providers lacking the mode's
        capability are never included.
        """
        mode = DispatchMode.coerce(mode)
        capability = MODE_CAPABILITY[mode]
        known = set(list_providers())

        def capable(provider: str) -> bool:
            return provider in known and get_provider_config(provider).supports(capability)

        order: List[str] = []
        if preferred:
            if capable(preferred):
                order.append(preferred)
            else:
                self.logger.system_warning(
                    f"Preferred provider '{preferred}' cannot serve {mode.value} requests; ignoring it",
                    provider=preferred,
                )

        for provider in self._priority_for(mode):
            if provider not in order and capable(provider):
                order.append(provider)
        return order

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _sampling_for(self, request: DispatchRequest, mode: DispatchMode):
        defaults = {
            DispatchMode.TEXT: (self.config.text_temperature, self.config.text_max_tokens),
            DispatchMode.STREAM: (self.config.stream_temperature, self.config.stream_max_tokens),
            DispatchMode.VISION: (self.config.vision_temperature, self.config.vision_max_tokens),
        }
        temperature, max_tokens = defaults[mode]
        if request.sampling.temperature is not None:
            temperature = request.sampling.temperature
        if request.sampling.max_tokens is not None:
            max_tokens = request.sampling.max_tokens
        return temperature, max_tokens

    async def _run_until_cancelled(self, call: ProviderCall, token: CancellationToken):
        """Await one provider call, aborting it as soon as ``token`` is cancelled."""
        call_task = asyncio.ensure_future(self._completion_fn(call))
        stop_task = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({call_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()
            if not call_task.done():
                call_task.cancel()
                await asyncio.gather(call_task, return_exceptions=True)

        if call_task.cancelled():
            raise DispatchCancelledError("Provider call aborted", provider=call.provider)
        return call_task.result()

    async def dispatch(
        self,
        request: DispatchRequest,
        mode: Union[DispatchMode, str] = DispatchMode.TEXT,
        on_chunk: Optional[ChunkCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> DispatchResult:
        """
        Run one logical request against the fallback chain.

        Raises:
            AllProvidersFailedError: every attempted provider failed
            DispatchCancelledError: ``cancel_token`` was cancelled before a provider answered
        """
        mode = DispatchMode.coerce(mode)
        token = cancel_token or CancellationToken()
        order = self.build_attempt_order(request.preferred_provider, mode)
        temperature, max_tokens = self._sampling_for(request, mode)

        started = self._clock()
        trace: List[FallbackAttempt] = []
        last_error: Optional[str] = None
        self.logger.dispatch_start(mode.value, order)

        for index, provider in enumerate(order, start=1):
            token.raise_if_cancelled(attempts=len(trace))
            self.logger.dispatch_attempt(provider, index)

            try:
                api_key = self._resolve_credential(provider)
            except CredentialMissingError as exc:
                last_error = exc.message
                trace.append(FallbackAttempt(
                    provider=provider,
                    success=False,
                    latency_ms=0.0,
                    error=exc.message,
                    error_type="CredentialMissing",
                ))
                self.logger.provider_skipped(provider, "CredentialMissing")
                continue

            async def forward(text: str, finish_reason: Optional[str], _provider: str = provider) -> None:
                if on_chunk is None or token.cancelled:
                    return
                await _maybe_await(on_chunk(StreamChunk(text=text, provider=_provider, finish_reason=finish_reason)))

            call = ProviderCall(
                provider=provider,
                config=get_provider_config(provider),
                request=request,
                mode=mode,
                api_key=api_key,
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=self.config.timeout_seconds,
                on_delta=forward if mode is DispatchMode.STREAM else None,
                should_stop=lambda: token.cancelled,
            )

            attempt_started = self._clock()
            try:
                response = await self._run_until_cancelled(call, token)
            except DispatchCancelledError:
                latency_ms = (self._clock() - attempt_started) * 1000
                trace.append(FallbackAttempt(
                    provider=provider,
                    success=False,
                    latency_ms=latency_ms,
                    error="Cancelled while in flight",
                    error_type="Cancelled",
                ))
                self.logger.dispatch_cancelled(len(trace))
                raise DispatchCancelledError("Dispatch cancelled", provider=provider, attempts=len(trace))
            except Exception as exc:
                latency_ms = (self._clock() - attempt_started) * 1000
                last_error = str(exc) or exc.__class__.__name__
                trace.append(FallbackAttempt(
                    provider=provider,
                    success=False,
                    latency_ms=latency_ms,
                    error=last_error,
                    error_type=exc.__class__.__name__,
                ))
                self.logger.provider_failure(provider, last_error, latency_ms=latency_ms)
                continue

            latency_ms = (self._clock() - attempt_started) * 1000
            trace.append(FallbackAttempt(provider=provider, success=True, latency_ms=latency_ms))

            if token.cancelled:
                self.logger.dispatch_cancelled(len(trace))
                raise DispatchCancelledError("Dispatch cancelled", provider=provider, attempts=len(trace))

            elapsed_ms = (self._clock() - started) * 1000
            self.logger.dispatch_success(provider, elapsed_ms, len(trace))
            return DispatchResult(
                text=response.text,
                provider=provider,
                elapsed_ms=elapsed_ms,
                usage=response.usage,
                fallback_chain=tuple(trace),
                model=response.model,
            )

        if token.cancelled:
            self.logger.dispatch_cancelled(len(trace))
            raise DispatchCancelledError("Dispatch cancelled", attempts=len(trace))

        self.logger.dispatch_exhausted(len(trace), last_error)
        raise AllProvidersFailedError(
            f"All providers failed after {len(trace)} attempt(s). Last error: {last_error or 'no providers available'}",
            attempts=trace,
            last_error=last_error,
        )
