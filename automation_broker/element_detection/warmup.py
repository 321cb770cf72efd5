"""
Warmup coordinator for the cold-start-prone element detector.

Keeps the detector hot by pinging it on a fixed interval, and lets request
paths call ``ensure_warm()`` before an expensive detection. Concurrent callers
share a single in-flight ping.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from automation_broker.broker_config import WarmupConfig
from automation_broker.utils.event_logger import EventLogger, get_event_logger

PingFn = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class WarmupResult:
    was_warm: bool
    latency_ms: Optional[float] = None
    success: bool = True


class WarmupCoordinator:
    """
    Disabled -> Idle -> Warming -> Idle.

    A coordinator without a ping function, or with ``enabled=False``, stays
    disabled: it never pings and ``is_warm()`` is always False.
    """

    def __init__(
        self,
        config: Optional[WarmupConfig] = None,
        ping_fn: Optional[PingFn] = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[EventLogger] = None,
    ):
        self.config = config or WarmupConfig()
        self._ping_fn = ping_fn
        self._clock = clock
        self._logger = logger

        self._inflight: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._last_success: Optional[float] = None
        self._last_success_wall: Optional[float] = None
        self._warmup_count = 0

        if self.enabled:
            self.logger.system_info(
                "🔥 Warmup coordinator initialized",
                interval_minutes=self.config.interval_seconds / 60,
            )

    @property
    def logger(self) -> EventLogger:
        return self._logger or get_event_logger()

    @property
    def enabled(self) -> bool:
        return bool(self.config.enabled and self._ping_fn is not None)

    @property
    def warmup_count(self) -> int:
        return self._warmup_count

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def _in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def _recently_warmed(self) -> bool:
        if self._last_success is None:
            return False
        return (self._clock() - self._last_success) < self.config.warm_ttl_seconds

    def is_warm(self) -> bool:
        """True while a ping is in flight or within the warm TTL of the last success."""
        if not self.enabled:
            return False
        return self._in_flight() or self._recently_warmed()

    async def _ping(self) -> bool:
        self._warmup_count += 1
        number = self._warmup_count
        started = self._clock()
        since_last = (started - self._last_success) if self._last_success is not None else None
        self.logger.warmup_start(number, seconds_since_last=since_last)

        try:
            await self._ping_fn()
        except Exception as exc:
            self.logger.warmup_failure(number, str(exc) or exc.__class__.__name__)
            return False

        latency_ms = (self._clock() - started) * 1000
        self._last_success = self._clock()
        self._last_success_wall = time.time()
        self.logger.warmup_success(number, latency_ms)
        if latency_ms > self.config.cold_boot_threshold_ms:
            self.logger.warmup_cold_boot(latency_ms, self.config.interval_seconds)
        return True

    async def warmup(self) -> bool:
        """
        Ping the detector once. Concurrent callers join the same in-flight ping.

        Returns:
            True if the ping succeeded. Failures are logged, never raised.
        """
        if not self.enabled:
            return False
        if not self._in_flight():
            self._inflight = asyncio.ensure_future(self._ping())
        # Shield so one caller being cancelled does not cancel the shared ping
        return await asyncio.shield(self._inflight)

    async def ensure_warm(self) -> WarmupResult:
        """Warm the detector unless it was warmed within the TTL."""
        if not self.enabled:
            return WarmupResult(was_warm=False, success=False)
        if self._recently_warmed():
            return WarmupResult(was_warm=True)

        started = self._clock()
        success = await self.warmup()
        return WarmupResult(was_warm=False, latency_ms=(self._clock() - started) * 1000, success=success)

    async def _run_loop(self) -> None:
        while True:
            await self.warmup()
            await asyncio.sleep(self.config.interval_seconds)

    def start(self) -> bool:
        """Fire an immediate warmup and schedule the periodic loop. Needs a running event loop."""
        if not self.enabled:
            self.logger.system_warning(
                "🔥 Cannot start warmup: coordinator disabled",
                reason="disabled" if not self.config.enabled else "no_ping_function",
            )
            return False
        if self.running:
            return True
        self._loop_task = asyncio.get_running_loop().create_task(self._run_loop())
        self.logger.system_info(
            "🔥 Warmup loop started",
            interval_seconds=self.config.interval_seconds,
        )
        return True

    async def stop(self) -> None:
        """Cancel the periodic loop. An in-flight ping is left to finish."""
        task, self._loop_task = self._loop_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self.logger.system_info("🔥 Warmup loop stopped", total_warmups=self._warmup_count)

    def get_stats(self) -> Dict[str, Any]:
        since_last = None
        if self._last_success is not None:
            since_last = round(self._clock() - self._last_success, 1)
        return {
            "enabled": self.enabled,
            "warmupCount": self._warmup_count,
            "lastWarmupTime": self._last_success_wall,
            "timeSinceLastWarmupSeconds": since_last,
            "intervalMinutes": self.config.interval_seconds / 60,
        }
