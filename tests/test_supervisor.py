"""Tests for ProcessSupervisor lifecycle and restart handling."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from unittest.mock import patch

import pytest

from metricexecd.accumulator import MemoryAccumulator
from metricexecd.metric import Metric
from metricexecd.services import ExecdProcessor, ProcessorStartError, ProcessSupervisor
from metricexecd.services import supervisor as supervisor_module

WAIT = 10.0


async def _wait_until(predicate: Callable[[], bool], timeout: float = WAIT) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


def _metric(count: int) -> Metric:
    return Metric(name="test", tags={"city": "Toronto"}, fields={"count": count}, time=count)


@pytest.mark.asyncio
async def test_lifecycle_is_published_to_stats(runtime_config) -> None:
    processor = ExecdProcessor(runtime_config)
    assert processor.lifecycle == ProcessSupervisor.STATE_STOPPED

    await processor.start(MemoryAccumulator())
    assert processor.lifecycle == ProcessSupervisor.STATE_RUNNING
    assert processor.stats.lifecycle == "running"
    assert processor.stats.pid is not None
    assert processor.stats.generation == 1

    await processor.stop()
    assert processor.stats.lifecycle == "stopped"
    assert processor.stats.pid is None


@pytest.mark.asyncio
async def test_stop_interrupts_restart_delay(make_config) -> None:
    processor = ExecdProcessor(make_config("EXIT_AFTER=1", restart_delay=30.0))
    accumulator = MemoryAccumulator()
    await processor.start(accumulator)
    await processor.add(_metric(1))
    await accumulator.wait(1, timeout=WAIT)
    await _wait_until(lambda: processor.lifecycle == ProcessSupervisor.STATE_RESTARTING)

    started = time.monotonic()
    await asyncio.wait_for(processor.stop(), timeout=WAIT)

    assert time.monotonic() - started < 5.0
    assert processor.lifecycle == ProcessSupervisor.STATE_STOPPED
    assert processor.stats.generation == 1


@pytest.mark.asyncio
async def test_failed_respawn_is_retried(make_config) -> None:
    real_spawn = supervisor_module.spawn_coprocess
    calls = 0

    async def _flaky_spawn(*args, **kwargs):
        nonlocal calls
        calls += 1
        if calls == 2:
            raise ProcessorStartError("transient spawn failure")
        return await real_spawn(*args, **kwargs)

    processor = ExecdProcessor(make_config("EXIT_AFTER=1", restart_delay=0.1))
    accumulator = MemoryAccumulator()
    with patch.object(supervisor_module, "spawn_coprocess", _flaky_spawn):
        await processor.start(accumulator)
        try:
            await processor.add(_metric(1))
            await accumulator.wait(1, timeout=WAIT)
            await _wait_until(lambda: processor.stats.generation >= 3)
            await processor.add(_metric(2))
            await accumulator.wait(2, timeout=WAIT)
        finally:
            await processor.stop()

    assert processor.stats.spawn_failures == 1
    assert [metric.fields["count"] for metric in accumulator.metrics] == [2, 4]


@pytest.mark.asyncio
async def test_invalid_triggers_are_ignored(runtime_config) -> None:
    processor = ExecdProcessor(runtime_config)
    await processor.start(MemoryAccumulator())
    supervisor = processor.supervisor
    assert supervisor is not None
    try:
        supervisor.recover()
        supervisor.halt()
        assert supervisor.lifecycle == ProcessSupervisor.STATE_RUNNING
    finally:
        await processor.stop()
