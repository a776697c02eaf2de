"""Delivery accounting for tracked metrics passing through the coprocess.

A record is created when a tracked metric is queued. It is bound to a
coprocess generation just before the metric is written to that process, and
output metrics decoded from the same generation are attributed to it by
content hash (name and tags), oldest input first. The original notify fires
exactly once: when every expected output has been claimed and acknowledged
downstream, or with ``delivered=False`` when the record is abandoned.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable

import msgspec

from ..metric import DeliveryInfo, Metric, NotifyFunc, TrackedMetric

logger = logging.getLogger("metricexecd.tracking")

ResolutionObserver = Callable[[bool], None]


class DeliveryRecord(msgspec.Struct):
    """Outstanding delivery obligation for one tracked input."""

    tracking_id: int
    hash_id: int
    notify: NotifyFunc
    unclaimed: int
    pending: int = 0
    delivered: bool = True
    generation: int | None = None
    written: bool = False

    @property
    def settled(self) -> bool:
        return self.written and self.unclaimed == 0 and self.pending == 0


class DeliveryTracker:
    """Tracking-id keyed table guarded by a single lock."""

    def __init__(
        self,
        *,
        outputs_per_input: int = 1,
        on_resolved: ResolutionObserver | None = None,
    ) -> None:
        if outputs_per_input < 0:
            raise ValueError("outputs_per_input must not be negative")
        self._outputs_per_input = outputs_per_input
        self._on_resolved = on_resolved
        self._lock = threading.Lock()
        self._records: dict[int, DeliveryRecord] = {}
        self._by_hash: dict[int, deque[int]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, tracking_id: object) -> bool:
        with self._lock:
            return tracking_id in self._records

    @property
    def outputs_per_input(self) -> int:
        return self._outputs_per_input

    def register(self, tracked: TrackedMetric) -> int:
        record = DeliveryRecord(
            tracking_id=tracked.tracking_id,
            hash_id=tracked.metric.hash_id(),
            notify=tracked.notify,
            unclaimed=self._outputs_per_input,
        )
        with self._lock:
            if record.tracking_id in self._records:
                raise ValueError(f"tracking id {record.tracking_id} already registered")
            self._records[record.tracking_id] = record
            if record.unclaimed > 0:
                self._by_hash.setdefault(record.hash_id, deque()).append(record.tracking_id)
        return record.tracking_id

    def bind(self, tracking_id: int, generation: int) -> None:
        """Mark the input as handed to the coprocess of *generation*."""
        with self._lock:
            record = self._records.get(tracking_id)
            if record is not None:
                record.generation = generation

    def mark_written(self, tracking_id: int) -> None:
        with self._lock:
            record = self._records.get(tracking_id)
            if record is None:
                return
            record.written = True
            resolved = self._pop_if_settled(record)
        if resolved is not None:
            self._fire(resolved)

    def claim(self, metric: Metric, generation: int) -> int | None:
        """Attribute an output metric to the oldest matching input, if any."""
        hash_id = metric.hash_id()
        with self._lock:
            candidates = self._by_hash.get(hash_id)
            if not candidates:
                return None
            for tracking_id in candidates:
                record = self._records.get(tracking_id)
                if record is None or record.generation != generation:
                    continue
                record.unclaimed -= 1
                record.pending += 1
                if record.unclaimed <= 0:
                    candidates.remove(tracking_id)
                    if not candidates:
                        del self._by_hash[hash_id]
                return tracking_id
        return None

    def output_notify(self, info: DeliveryInfo) -> None:
        """Notify callback attached to claimed output metrics."""
        with self._lock:
            record = self._records.get(info.tracking_id)
            if record is None:
                return
            record.pending -= 1
            record.delivered = record.delivered and info.delivered
            resolved = self._pop_if_settled(record)
        if resolved is not None:
            self._fire(resolved)

    def fail(self, tracking_id: int) -> bool:
        with self._lock:
            record = self._pop(tracking_id)
        if record is None:
            return False
        record.delivered = False
        self._fire(record)
        return True

    def discard(self, tracking_id: int) -> bool:
        """Forget a record without notifying; the caller still owns the metric."""
        with self._lock:
            return self._pop(tracking_id) is not None

    def fail_generation(self, generation: int) -> int:
        """Abandon records of a torn-down process still expecting output.

        Inputs bound to the process but never fully written are abandoned too.
        Records whose outputs were all claimed stay until downstream
        acknowledges them.
        """
        with self._lock:
            doomed = [
                record
                for record in self._records.values()
                if record.generation == generation and (record.unclaimed > 0 or not record.written)
            ]
            for record in doomed:
                self._pop(record.tracking_id)
        for record in doomed:
            record.delivered = False
            self._fire(record)
        return len(doomed)

    def fail_unclaimed(self) -> int:
        """Abandon every record still expecting output from any process."""
        with self._lock:
            doomed = [record for record in self._records.values() if record.unclaimed > 0 or not record.written]
            for record in doomed:
                self._pop(record.tracking_id)
        for record in doomed:
            record.delivered = False
            self._fire(record)
        return len(doomed)

    def _pop_if_settled(self, record: DeliveryRecord) -> DeliveryRecord | None:
        if not record.settled:
            return None
        return self._pop(record.tracking_id)

    def _pop(self, tracking_id: int) -> DeliveryRecord | None:
        record = self._records.pop(tracking_id, None)
        if record is None:
            return None
        candidates = self._by_hash.get(record.hash_id)
        if candidates is not None and tracking_id in candidates:
            candidates.remove(tracking_id)
            if not candidates:
                del self._by_hash[record.hash_id]
        return record

    def _fire(self, record: DeliveryRecord) -> None:
        if self._on_resolved is not None:
            self._on_resolved(record.delivered)
        try:
            record.notify(DeliveryInfo(tracking_id=record.tracking_id, delivered=record.delivered))
        except Exception:
            logger.exception("Delivery notify callback failed for tracking id %d", record.tracking_id)


__all__ = ["DeliveryRecord", "DeliveryTracker"]
