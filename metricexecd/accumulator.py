"""Downstream accumulator port and bundled implementations."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Mapping
from typing import BinaryIO, Protocol

from .codec import EncodeError, Encoder
from .metric import FieldValue, Metric, TrackedMetric, unwrap

logger = logging.getLogger("metricexecd.accumulator")


class Accumulator(Protocol):
    """Receives processed metrics.

    Tracked metrics must eventually be resolved with ``accept()`` or
    ``reject()`` by whoever owns their final delivery.
    """

    def add_metric(self, metric: Metric | TrackedMetric) -> None: ...

    def add_fields(
        self,
        name: str,
        fields: Mapping[str, FieldValue],
        tags: Mapping[str, str] | None = None,
        timestamp: int | None = None,
    ) -> None: ...


class MemoryAccumulator:
    """Collects metrics in memory; used by tests and embedding code."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._metrics: list[Metric | TrackedMetric] = []
        self._changed = asyncio.Event()

    def add_metric(self, metric: Metric | TrackedMetric) -> None:
        with self._lock:
            self._metrics.append(metric)
        self._changed.set()

    def add_fields(
        self,
        name: str,
        fields: Mapping[str, FieldValue],
        tags: Mapping[str, str] | None = None,
        timestamp: int | None = None,
    ) -> None:
        self.add_metric(Metric.new(name, tags, fields, timestamp))

    @property
    def items(self) -> list[Metric | TrackedMetric]:
        with self._lock:
            return list(self._metrics)

    @property
    def metrics(self) -> list[Metric]:
        return [unwrap(item) for item in self.items]

    def __len__(self) -> int:
        with self._lock:
            return len(self._metrics)

    def accept_all(self) -> int:
        accepted = 0
        for item in self.items:
            if isinstance(item, TrackedMetric):
                item.accept()
                accepted += 1
        return accepted

    def clear(self) -> None:
        with self._lock:
            self._metrics.clear()

    async def wait(self, count: int, *, timeout: float | None = None) -> None:
        """Block until at least *count* metrics have been collected."""
        async with asyncio.timeout(timeout):
            while len(self) < count:
                self._changed.clear()
                if len(self) >= count:
                    return
                await self._changed.wait()


class StreamAccumulator:
    """Writes metrics to a binary stream and accepts tracked ones."""

    def __init__(self, stream: BinaryIO, encoder: Encoder) -> None:
        self._stream = stream
        self._encoder = encoder

    def add_metric(self, metric: Metric | TrackedMetric) -> None:
        try:
            payload = self._encoder.encode(unwrap(metric))
        except EncodeError as exc:
            logger.error("Dropping unserializable output metric: %s", exc)
            if isinstance(metric, TrackedMetric):
                metric.reject()
            return
        self._stream.write(payload)
        self._stream.flush()
        if isinstance(metric, TrackedMetric):
            metric.accept()

    def add_fields(
        self,
        name: str,
        fields: Mapping[str, FieldValue],
        tags: Mapping[str, str] | None = None,
        timestamp: int | None = None,
    ) -> None:
        self.add_metric(Metric.new(name, tags, fields, timestamp))


__all__ = ["Accumulator", "MemoryAccumulator", "StreamAccumulator"]
