"""Tests for the bundled accumulators."""

from __future__ import annotations

import asyncio
import io

import pytest

from metricexecd.accumulator import MemoryAccumulator, StreamAccumulator
from metricexecd.codec import LineProtocolEncoder
from metricexecd.metric import DeliveryInfo, Metric, with_tracking


def test_stream_accumulator_writes_and_accepts() -> None:
    stream = io.BytesIO()
    outcomes: list[DeliveryInfo] = []
    tracked = with_tracking(Metric(name="cpu", fields={"usage": 0.5}, time=7), outcomes.append)

    StreamAccumulator(stream, LineProtocolEncoder()).add_metric(tracked)

    assert stream.getvalue() == b"cpu usage=0.5 7\n"
    assert [info.delivered for info in outcomes] == [True]


def test_stream_accumulator_rejects_unserializable_metric(caplog: pytest.LogCaptureFixture) -> None:
    stream = io.BytesIO()
    outcomes: list[DeliveryInfo] = []
    tracked = with_tracking(Metric(name="cpu", fields={"usage": float("nan")}, time=7), outcomes.append)

    StreamAccumulator(stream, LineProtocolEncoder()).add_metric(tracked)

    assert stream.getvalue() == b""
    assert [info.delivered for info in outcomes] == [False]
    assert "Dropping unserializable output metric" in caplog.text


def test_stream_accumulator_add_fields() -> None:
    stream = io.BytesIO()

    StreamAccumulator(stream, LineProtocolEncoder()).add_fields("disk", {"free": 3}, {"path": "/"}, 9)

    assert stream.getvalue() == b"disk,path=/ free=3i 9\n"


def test_memory_accumulator_collects_and_accepts() -> None:
    accumulator = MemoryAccumulator()
    outcomes: list[DeliveryInfo] = []
    accumulator.add_fields("mem", {"used": 1}, timestamp=3)
    accumulator.add_metric(with_tracking(Metric(name="swap", fields={"used": 2}), outcomes.append))

    assert len(accumulator) == 2
    assert [metric.name for metric in accumulator.metrics] == ["mem", "swap"]
    assert accumulator.metrics[0].time == 3
    assert accumulator.accept_all() == 1
    assert [info.delivered for info in outcomes] == [True]

    accumulator.clear()
    assert len(accumulator) == 0


@pytest.mark.asyncio
async def test_memory_accumulator_wait() -> None:
    accumulator = MemoryAccumulator()

    async def _produce() -> None:
        await asyncio.sleep(0.01)
        accumulator.add_fields("mem", {"used": 1})

    producer = asyncio.create_task(_produce())
    await accumulator.wait(1, timeout=5.0)
    await producer

    with pytest.raises(TimeoutError):
        await accumulator.wait(2, timeout=0.05)
