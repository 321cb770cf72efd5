"""
Unit tests for WarmupCoordinator.
"""
import asyncio

import pytest
from pydantic import ValidationError

from automation_broker.broker_config import WarmupConfig
from automation_broker.element_detection.warmup import WarmupCoordinator
from automation_broker.utils.event_logger import EventType


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


class CountingPing:
    def __init__(self, error=None, delay=0.01, clock=None, advance=0.0):
        self.count = 0
        self.error = error
        self.delay = delay
        self.clock = clock
        self.advance = advance

    async def __call__(self):
        self.count += 1
        await asyncio.sleep(self.delay)
        if self.clock is not None:
            self.clock.now += self.advance
        if self.error is not None:
            raise self.error
        return {"status": "succeeded"}


def enabled_config(**overrides):
    return WarmupConfig(enabled=True, **overrides)


def test_concurrent_callers_share_one_ping():
    ping = CountingPing()
    coordinator = WarmupCoordinator(config=enabled_config(), ping_fn=ping, clock=FakeClock())

    async def scenario():
        return await asyncio.gather(*[coordinator.ensure_warm() for _ in range(5)])

    results = asyncio.run(scenario())
    assert ping.count == 1
    assert all(r.success for r in results)
    assert coordinator.warmup_count == 1


def test_warm_within_ttl_then_cold():
    clock = FakeClock()
    ping = CountingPing()
    coordinator = WarmupCoordinator(config=enabled_config(), ping_fn=ping, clock=clock)

    async def scenario():
        assert coordinator.is_warm() is False
        await coordinator.ensure_warm()
        assert coordinator.is_warm() is True

        second = await coordinator.ensure_warm()
        assert second.was_warm is True
        assert ping.count == 1

        clock.now += 201
        assert coordinator.is_warm() is False
        third = await coordinator.ensure_warm()
        assert third.was_warm is False
        assert ping.count == 2

    asyncio.run(scenario())


def test_failure_is_swallowed(quiet_logger):
    ping = CountingPing(error=RuntimeError("model booting"))
    coordinator = WarmupCoordinator(config=enabled_config(), ping_fn=ping, clock=FakeClock())

    result = asyncio.run(coordinator.ensure_warm())

    assert result.success is False
    assert coordinator.is_warm() is False
    failures = quiet_logger.get_history(EventType.WARMUP_FAILURE)
    assert failures[-1].details["error"] == "model booting"


def test_disabled_never_pings():
    ping = CountingPing()
    coordinator = WarmupCoordinator(config=WarmupConfig(enabled=False), ping_fn=ping)

    async def scenario():
        result = await coordinator.ensure_warm()
        warmed = await coordinator.warmup()
        started = coordinator.start()
        return result, warmed, started

    result, warmed, started = asyncio.run(scenario())
    assert result.success is False
    assert warmed is False
    assert started is False
    assert ping.count == 0
    assert coordinator.is_warm() is False


def test_enabled_without_ping_function_is_disabled():
    coordinator = WarmupCoordinator(config=enabled_config(), ping_fn=None)
    assert coordinator.enabled is False


def test_cold_boot_reported(quiet_logger):
    clock = FakeClock()
    ping = CountingPing(clock=clock, advance=61.0)
    coordinator = WarmupCoordinator(config=enabled_config(), ping_fn=ping, clock=clock)

    assert asyncio.run(coordinator.warmup()) is True
    cold = quiet_logger.get_history(EventType.WARMUP_COLD_BOOT)
    assert cold and cold[-1].details["latency_ms"] == pytest.approx(61_000)


def test_background_loop_start_stop():
    ping = CountingPing(delay=0)
    coordinator = WarmupCoordinator(config=enabled_config(), ping_fn=ping, clock=FakeClock())

    async def scenario():
        assert coordinator.start() is True
        assert coordinator.start() is True
        for _ in range(10):
            await asyncio.sleep(0)
        assert coordinator.running
        await coordinator.stop()
        assert not coordinator.running

    asyncio.run(scenario())
    assert ping.count == 1


def test_stats():
    clock = FakeClock()
    coordinator = WarmupCoordinator(config=enabled_config(), ping_fn=CountingPing(), clock=clock)

    asyncio.run(coordinator.warmup())
    clock.now += 30

    stats = coordinator.get_stats()
    assert stats["enabled"] is True
    assert stats["warmupCount"] == 1
    assert stats["timeSinceLastWarmupSeconds"] == 30.0
    assert stats["intervalMinutes"] == 3.0
    assert stats["lastWarmupTime"] is not None


def test_ttl_must_exceed_interval():
    with pytest.raises(ValidationError):
        WarmupConfig(interval_seconds=180, warm_ttl_seconds=180)
