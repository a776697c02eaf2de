"""Metric data model and delivery tracking primitives."""

from __future__ import annotations

import hashlib
import itertools
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

import msgspec


class Unsigned(int):
    """Integer field value carried as an unsigned integer on the wire."""

    __slots__ = ()

    def __new__(cls, value: int = 0) -> Unsigned:
        if int(value) < 0:
            raise ValueError(f"unsigned value must be non-negative, got {value}")
        return super().__new__(cls, value)

    def __repr__(self) -> str:
        return f"Unsigned({int(self)})"


FieldValue = float | int | bool | str


def _tags_factory() -> dict[str, str]:
    return {}


def _fields_factory() -> dict[str, FieldValue]:
    return {}


class Metric(msgspec.Struct):
    """Named, tagged, timestamped set of typed fields.

    ``time`` is expressed in nanoseconds since the Unix epoch.
    """

    name: str
    tags: dict[str, str] = msgspec.field(default_factory=_tags_factory)
    fields: dict[str, FieldValue] = msgspec.field(default_factory=_fields_factory)
    time: int = 0

    @classmethod
    def new(
        cls,
        name: str,
        tags: Mapping[str, str] | None = None,
        fields: Mapping[str, FieldValue] | None = None,
        timestamp: int | None = None,
    ) -> Metric:
        return cls(
            name=name,
            tags=dict(tags or {}),
            fields=dict(fields or {}),
            time=time.time_ns() if timestamp is None else int(timestamp),
        )

    def hash_id(self) -> int:
        """Stable 64-bit hash over name and tags (field values excluded)."""
        digest = hashlib.blake2b(digest_size=8)
        digest.update(self.name.encode("utf-8"))
        digest.update(b"\n")
        for key in sorted(self.tags):
            digest.update(key.encode("utf-8"))
            digest.update(b"\n")
            digest.update(self.tags[key].encode("utf-8"))
            digest.update(b"\n")
        return int.from_bytes(digest.digest(), "big")

    def get_field(self, key: str) -> FieldValue | None:
        return self.fields.get(key)

    def add_field(self, key: str, value: FieldValue) -> None:
        self.fields[key] = value

    def add_tag(self, key: str, value: str) -> None:
        self.tags[key] = value

    def copy(self) -> Metric:
        return Metric(
            name=self.name,
            tags=dict(self.tags),
            fields=dict(self.fields),
            time=self.time,
        )


class DeliveryInfo(msgspec.Struct, frozen=True):
    """Outcome reported to a tracked metric's notify callback."""

    tracking_id: int
    delivered: bool


NotifyFunc = Callable[[DeliveryInfo], None]

_tracking_ids = itertools.count(1)
_tracking_ids_lock = threading.Lock()


def next_tracking_id() -> int:
    with _tracking_ids_lock:
        return next(_tracking_ids)


@dataclass(eq=False)
class TrackedMetric:
    """A metric carrying a delivery obligation.

    The notify callback fires exactly once, on the first of ``accept``,
    ``reject`` or ``drop``. Later calls are ignored.
    """

    metric: Metric
    tracking_id: int
    notify: NotifyFunc
    _resolved: bool = field(default=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def name(self) -> str:
        return self.metric.name

    @property
    def tags(self) -> dict[str, str]:
        return self.metric.tags

    @property
    def fields(self) -> dict[str, FieldValue]:
        return self.metric.fields

    @property
    def time(self) -> int:
        return self.metric.time

    @property
    def resolved(self) -> bool:
        return self._resolved

    def hash_id(self) -> int:
        return self.metric.hash_id()

    def accept(self) -> None:
        self._resolve(True)

    def reject(self) -> None:
        self._resolve(False)

    def drop(self) -> None:
        self._resolve(False)

    def _resolve(self, delivered: bool) -> None:
        with self._lock:
            if self._resolved:
                return
            self._resolved = True
        self.notify(DeliveryInfo(tracking_id=self.tracking_id, delivered=delivered))


def with_tracking(metric: Metric, notify: NotifyFunc) -> TrackedMetric:
    """Attach a fresh tracking identifier and notify callback to *metric*."""
    return TrackedMetric(metric=metric, tracking_id=next_tracking_id(), notify=notify)


def unwrap(metric: Metric | TrackedMetric) -> Metric:
    if isinstance(metric, TrackedMetric):
        return metric.metric
    return metric


__all__ = [
    "DeliveryInfo",
    "FieldValue",
    "Metric",
    "NotifyFunc",
    "TrackedMetric",
    "Unsigned",
    "next_tracking_id",
    "unwrap",
    "with_tracking",
]
