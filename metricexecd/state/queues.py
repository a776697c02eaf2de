"""Bounded FIFO feeding metrics to the coprocess."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Annotated

import msgspec

from ..metric import Metric


class QueueClosedError(Exception):
    """Raised by ``put`` once the queue no longer accepts metrics."""


class QueuedMetric(msgspec.Struct):
    """A metric waiting for the feeder, with its tracking id if any."""

    metric: Metric
    tracking_id: int | None = None


class MetricQueue:
    """FIFO with an item bound, blocking producers while full.

    ``close`` rejects new and blocked producers while consumers keep
    draining what is already queued; ``get`` returns None once the queue is
    both closed and empty.
    """

    def __init__(self, maxsize: int) -> None:
        self._maxsize = msgspec.convert(maxsize, Annotated[int, msgspec.Meta(ge=1)])
        self._items: deque[QueuedMetric] = deque()
        self._condition = asyncio.Condition()
        self._closed = False

    def __len__(self) -> int:
        return len(self._items)

    @property
    def maxsize(self) -> int:
        return self._maxsize

    @property
    def closed(self) -> bool:
        return self._closed

    def full(self) -> bool:
        return len(self._items) >= self._maxsize

    async def put(self, item: QueuedMetric) -> None:
        async with self._condition:
            await self._condition.wait_for(self._can_put)
            if self._closed:
                raise QueueClosedError("metric queue is closed")
            self._items.append(item)
            self._condition.notify_all()

    async def get(self) -> QueuedMetric | None:
        async with self._condition:
            await self._condition.wait_for(self._can_get)
            if not self._items:
                return None
            item = self._items.popleft()
            self._condition.notify_all()
            return item

    async def close(self) -> None:
        async with self._condition:
            self._closed = True
            self._condition.notify_all()

    async def reopen(self) -> None:
        async with self._condition:
            self._closed = False
            self._condition.notify_all()

    async def drain(self) -> list[QueuedMetric]:
        """Remove and return everything still queued."""
        async with self._condition:
            items = list(self._items)
            self._items.clear()
            self._condition.notify_all()
            return items

    def _can_put(self) -> bool:
        return self._closed or len(self._items) < self._maxsize

    def _can_get(self) -> bool:
        return self._closed or bool(self._items)


__all__ = ["MetricQueue", "QueueClosedError", "QueuedMetric"]
