"""InfluxDB line protocol codec.

Records are terminated by a newline that is neither escaped nor inside a
quoted string field value, so string fields may carry embedded line breaks.
Identifiers escape backslash, comma, space (plus equals sign and double
quote for keys) and render a newline as ``\\n``. A double quote opens a
string only where a field value starts.
"""

from __future__ import annotations

import math
import re
import time
from collections.abc import Callable, Iterator

from ..const import DEFAULT_STREAM_LIMIT_BYTES
from ..metric import FieldValue, Metric, Unsigned
from .base import DecodeError, EncodeError

_BACKSLASH = 0x5C
_QUOTE = 0x22
_SPACE = 0x20
_NEWLINE = 0x0A
_HASH = 0x23
_EQUALS = 0x3D
_COMMA = 0x2C
_WHITESPACE = frozenset(b" \t\r\n")

_MEASUREMENT_TABLE = str.maketrans({"\\": "\\\\", ",": "\\,", " ": "\\ ", "\n": "\\n"})
_KEY_TABLE = str.maketrans({"\\": "\\\\", ",": "\\,", " ": "\\ ", "=": "\\=", '"': '\\"', "\n": "\\n"})
_STRING_TABLE = str.maketrans({"\\": "\\\\", '"': '\\"'})

_INT_RE = re.compile(r"^[+-]?\d+$")
_UINT_RE = re.compile(r"^\d+$")
_FLOAT_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_TRUE_VALUES = frozenset({"t", "T", "true", "True", "TRUE"})
_FALSE_VALUES = frozenset({"f", "F", "false", "False", "FALSE"})
_IDENTIFIER_ESCAPES = {"n": "\n", ",": ",", " ": " ", "=": "=", "\\": "\\", '"': '"'}


def _format_value(value: FieldValue) -> str | None:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Unsigned):
        return f"{int(value)}u"
    if isinstance(value, int):
        return f"{value}i"
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return repr(value)
    if isinstance(value, str):
        return f'"{value.translate(_STRING_TABLE)}"'
    raise EncodeError(f"unsupported field type {type(value).__name__}")


class LineProtocolEncoder:
    """Serialize metrics to line protocol, one record per metric."""

    def encode(self, metric: Metric) -> bytes:
        if not metric.name:
            raise EncodeError("metric name must not be empty")

        fields: list[str] = []
        for key, value in metric.fields.items():
            if not key:
                continue
            rendered = _format_value(value)
            if rendered is None:
                continue
            fields.append(f"{key.translate(_KEY_TABLE)}={rendered}")
        if not fields:
            raise EncodeError(f"metric {metric.name!r} has no serializable fields")

        parts = [metric.name.translate(_MEASUREMENT_TABLE)]
        for key in sorted(metric.tags):
            value = metric.tags[key]
            if not key or not value:
                continue
            parts.append(f"{key.translate(_KEY_TABLE)}={value.translate(_KEY_TABLE)}")

        line = f"{','.join(parts)} {','.join(fields)} {metric.time}\n"
        return line.encode("utf-8")


class LineProtocolParser:
    """Incremental line protocol parser.

    A pending record longer than *max_record* bytes is reported as a
    DecodeError and dropped together with everything up to the next newline.
    """

    def __init__(
        self,
        *,
        now: Callable[[], int] = time.time_ns,
        max_record: int = DEFAULT_STREAM_LIMIT_BYTES,
    ) -> None:
        self._now = now
        self._max_record = max_record
        self._buffer = bytearray()
        self._discarding = False
        self._reset_scan()

    def _reset_scan(self) -> None:
        self._pos = 0
        self._escaped = False
        self._in_quotes = False
        self._in_value = False
        self._section = 0
        self._comment = False
        self._started = False

    def feed(self, data: bytes) -> Iterator[Metric | DecodeError]:
        self._buffer.extend(data)
        return iter(self._extract())

    def flush(self) -> Iterator[Metric | DecodeError]:
        results = self._extract()
        if self._buffer and not self._comment and not self._discarding:
            parsed = self._parse(bytes(self._buffer))
            if parsed is not None:
                results.append(parsed)
        self._buffer.clear()
        self._discarding = False
        self._reset_scan()
        return iter(results)

    def _extract(self) -> list[Metric | DecodeError]:
        results: list[Metric | DecodeError] = []
        if self._discarding and not self._skip_to_newline():
            return results
        buf = self._buffer
        index = self._pos
        while index < len(buf):
            byte = buf[index]
            if not self._started:
                if byte in _WHITESPACE:
                    index += 1
                    continue
                self._started = True
                self._comment = byte == _HASH

            if self._comment:
                if byte == _NEWLINE:
                    del buf[: index + 1]
                    self._reset_scan()
                    index = 0
                    continue
            elif self._escaped:
                self._escaped = False
            elif byte == _BACKSLASH:
                self._escaped = True
            elif self._in_quotes:
                if byte == _QUOTE:
                    self._in_quotes = False
            elif byte == _QUOTE and self._section == 1 and self._in_value:
                self._in_quotes = True
            elif byte == _EQUALS and self._section == 1:
                self._in_value = True
            elif byte == _COMMA and self._section == 1:
                self._in_value = False
            elif byte == _SPACE:
                self._section += 1
            elif byte == _NEWLINE:
                record = bytes(buf[:index])
                del buf[: index + 1]
                self._reset_scan()
                index = 0
                parsed = self._parse(record)
                if parsed is not None:
                    results.append(parsed)
                continue
            index += 1
        self._pos = index
        if len(buf) > self._max_record:
            results.append(self._overflow())
        return results

    def _skip_to_newline(self) -> bool:
        index = self._buffer.find(b"\n")
        if index < 0:
            self._buffer.clear()
            return False
        del self._buffer[: index + 1]
        self._discarding = False
        return True

    def _overflow(self) -> DecodeError:
        size = len(self._buffer)
        preview = bytes(self._buffer[:64])
        self._buffer.clear()
        self._reset_scan()
        self._discarding = True
        return DecodeError(f"record exceeds {self._max_record} bytes ({size} pending); skipped", record=preview)

    def _parse(self, raw: bytes) -> Metric | DecodeError | None:
        record = raw.strip()
        if not record or record.startswith(b"#"):
            return None
        try:
            text = record.decode("utf-8")
        except UnicodeDecodeError as exc:
            return DecodeError(f"invalid utf-8 in record: {exc}", record=raw)
        try:
            return self._parse_record(text)
        except ValueError as exc:
            return DecodeError(str(exc), record=raw)

    def _parse_record(self, text: str) -> Metric:
        sections = _split_sections(text)
        if len(sections) < 2 or not sections[1]:
            raise ValueError("missing field set")
        trailing = [section for section in sections[2:] if section]
        if len(trailing) > 1:
            raise ValueError("unexpected content after timestamp")

        head = _split_unescaped(sections[0], ",")
        name = _unescape(head[0])
        if not name:
            raise ValueError("missing measurement name")

        tags: dict[str, str] = {}
        for item in head[1:]:
            key, value = _partition_unescaped(item)
            if not key or not value:
                raise ValueError(f"malformed tag {item!r}")
            tags[_unescape(key)] = _unescape(value)

        fields: dict[str, FieldValue] = {}
        for item in _split_fields(sections[1]):
            key, value = _partition_unescaped(item)
            if not key:
                raise ValueError(f"malformed field {item!r}")
            fields[_unescape(key)] = _parse_value(value)

        if trailing:
            if not _INT_RE.match(trailing[0]):
                raise ValueError(f"invalid timestamp {trailing[0]!r}")
            timestamp = int(trailing[0])
        else:
            timestamp = self._now()

        return Metric(name=name, tags=tags, fields=fields, time=timestamp)


def _split_sections(text: str) -> list[str]:
    sections: list[str] = []
    start = 0
    escaped = False
    in_quotes = False
    in_value = False
    for index, char in enumerate(text):
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif in_quotes:
            in_quotes = char != '"'
        elif len(sections) == 1 and char == '"' and in_value:
            in_quotes = True
        elif len(sections) == 1 and char in "=,":
            in_value = char == "="
        elif char == " ":
            sections.append(text[start:index])
            start = index + 1
    if in_quotes:
        raise ValueError("unterminated string field value")
    sections.append(text[start:])
    return sections


def _split_unescaped(text: str, separator: str) -> list[str]:
    parts: list[str] = []
    start = 0
    escaped = False
    for index, char in enumerate(text):
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == separator:
            parts.append(text[start:index])
            start = index + 1
    parts.append(text[start:])
    return parts


def _split_fields(text: str) -> list[str]:
    parts: list[str] = []
    start = 0
    escaped = False
    in_quotes = False
    in_value = False
    for index, char in enumerate(text):
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif in_quotes:
            in_quotes = char != '"'
        elif char == '"' and in_value:
            in_quotes = True
        elif char == "=":
            in_value = True
        elif char == ",":
            in_value = False
            parts.append(text[start:index])
            start = index + 1
    parts.append(text[start:])
    return parts


def _partition_unescaped(text: str) -> tuple[str, str]:
    escaped = False
    for index, char in enumerate(text):
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == "=":
            return text[:index], text[index + 1 :]
    raise ValueError(f"missing '=' in {text!r}")


def _unescape(text: str) -> str:
    if "\\" not in text:
        return text
    out: list[str] = []
    index = 0
    while index < len(text):
        char = text[index]
        if char == "\\" and index + 1 < len(text):
            following = text[index + 1]
            replacement = _IDENTIFIER_ESCAPES.get(following)
            if replacement is not None:
                out.append(replacement)
                index += 2
                continue
        out.append(char)
        index += 1
    return "".join(out)


def _unescape_string(text: str) -> str:
    if "\\" not in text:
        return text
    out: list[str] = []
    index = 0
    while index < len(text):
        char = text[index]
        if char == "\\" and index + 1 < len(text) and text[index + 1] in '"\\':
            out.append(text[index + 1])
            index += 2
            continue
        out.append(char)
        index += 1
    return "".join(out)


def _parse_value(raw: str) -> FieldValue:
    if not raw:
        raise ValueError("empty field value")
    if raw[0] == '"':
        if len(raw) < 2 or raw[-1] != '"':
            raise ValueError(f"malformed string value {raw!r}")
        return _unescape_string(raw[1:-1])
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    suffix = raw[-1]
    if suffix == "i" and _INT_RE.match(raw[:-1]):
        return int(raw[:-1])
    if suffix == "u" and _UINT_RE.match(raw[:-1]):
        return Unsigned(int(raw[:-1]))
    if _FLOAT_RE.match(raw):
        return float(raw)
    raise ValueError(f"invalid field value {raw!r}")


__all__ = ["LineProtocolEncoder", "LineProtocolParser"]
