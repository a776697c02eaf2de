"""Newline-delimited JSON codec.

Each record is one JSON object::

    {"name": "cpu", "tags": {"host": "a"}, "fields": {"idle": 0.5}, "timestamp": 1700000000000000000}

``timestamp`` is in nanoseconds; when absent the parse time is used. JSON
strings escape line breaks, so record boundaries are plain newlines.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable, Iterator
from typing import Any

import msgspec

from ..const import DEFAULT_STREAM_LIMIT_BYTES
from ..metric import FieldValue, Metric, Unsigned
from .base import DecodeError, EncodeError


def _dict_factory() -> dict[str, Any]:
    return {}


class JsonMetric(msgspec.Struct, omit_defaults=True):
    """Wire shape of a JSON-encoded metric."""

    name: str
    tags: dict[str, str] = msgspec.field(default_factory=_dict_factory)
    fields: dict[str, Any] = msgspec.field(default_factory=_dict_factory)
    timestamp: int | None = None


def _wire_value(value: FieldValue) -> FieldValue | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, Unsigned):
        return int(value)
    if isinstance(value, (int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    raise EncodeError(f"unsupported field type {type(value).__name__}")


class JsonEncoder:
    def __init__(self) -> None:
        self._encoder = msgspec.json.Encoder()

    def encode(self, metric: Metric) -> bytes:
        if not metric.name:
            raise EncodeError("metric name must not be empty")
        fields: dict[str, Any] = {}
        for key, value in metric.fields.items():
            wire = _wire_value(value)
            if wire is not None:
                fields[key] = wire
        if not fields:
            raise EncodeError(f"metric {metric.name!r} has no serializable fields")
        payload = JsonMetric(
            name=metric.name,
            tags=dict(metric.tags),
            fields=fields,
            timestamp=metric.time,
        )
        return self._encoder.encode(payload) + b"\n"


class JsonParser:
    def __init__(
        self,
        *,
        now: Callable[[], int] = time.time_ns,
        max_record: int = DEFAULT_STREAM_LIMIT_BYTES,
    ) -> None:
        self._now = now
        self._max_record = max_record
        self._decoder = msgspec.json.Decoder(JsonMetric)
        self._buffer = bytearray()
        self._discarding = False

    def feed(self, data: bytes) -> Iterator[Metric | DecodeError]:
        self._buffer.extend(data)
        results: list[Metric | DecodeError] = []
        while True:
            index = self._buffer.find(b"\n")
            if index < 0:
                break
            if self._discarding:
                del self._buffer[: index + 1]
                self._discarding = False
                continue
            line = bytes(self._buffer[:index])
            del self._buffer[: index + 1]
            parsed = self._parse(line)
            if parsed is not None:
                results.append(parsed)
        if self._discarding:
            self._buffer.clear()
        elif len(self._buffer) > self._max_record:
            size = len(self._buffer)
            results.append(
                DecodeError(
                    f"record exceeds {self._max_record} bytes ({size} pending); skipped",
                    record=bytes(self._buffer[:64]),
                )
            )
            self._buffer.clear()
            self._discarding = True
        return iter(results)

    def flush(self) -> Iterator[Metric | DecodeError]:
        line = b"" if self._discarding else bytes(self._buffer)
        self._buffer.clear()
        self._discarding = False
        parsed = self._parse(line)
        return iter([] if parsed is None else [parsed])

    def _parse(self, line: bytes) -> Metric | DecodeError | None:
        if not line.strip():
            return None
        try:
            wire = self._decoder.decode(line)
        except (msgspec.DecodeError, msgspec.ValidationError) as exc:
            return DecodeError(str(exc), record=line)

        fields: dict[str, FieldValue] = {}
        for key, value in wire.fields.items():
            if not isinstance(value, (bool, int, float, str)):
                return DecodeError(f"unsupported value for field {key!r}", record=line)
            fields[key] = value
        if not wire.name:
            return DecodeError("missing metric name", record=line)
        return Metric(
            name=wire.name,
            tags=wire.tags,
            fields=fields,
            time=self._now() if wire.timestamp is None else wire.timestamp,
        )


__all__ = ["JsonEncoder", "JsonMetric", "JsonParser"]
