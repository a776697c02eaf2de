"""Codec ports used at the coprocess boundary."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable, Iterator
from typing import Protocol

from ..const import STREAM_READ_CHUNK_SIZE
from ..metric import Metric


class CodecError(Exception):
    """Base class for codec failures."""


class EncodeError(CodecError):
    """Raised when a metric cannot be serialized."""


class DecodeError(CodecError):
    """A malformed record; the stream continues at the next record boundary."""

    def __init__(self, message: str, *, record: bytes = b"") -> None:
        super().__init__(message)
        self.record = record


class Encoder(Protocol):
    """Serializes one metric to bytes."""

    def encode(self, metric: Metric) -> bytes: ...


class Parser(Protocol):
    """Incremental byte-stream parser.

    ``feed`` consumes a chunk and yields every complete record found so far,
    either as a Metric or as a DecodeError for a malformed record. ``flush``
    is called once at end of stream for a trailing unterminated record.
    """

    def feed(self, data: bytes) -> Iterator[Metric | DecodeError]: ...

    def flush(self) -> Iterator[Metric | DecodeError]: ...


class Decoder(Protocol):
    """Extracts one metric at a time from a stream.

    Returns None at end of stream and raises DecodeError for a malformed
    record. Any other exception is terminal.
    """

    async def next(self) -> Metric | None: ...


DecoderFactory = Callable[[asyncio.StreamReader], Decoder]


class StreamDecoder:
    """Decoder adapter driving a Parser from an asyncio StreamReader."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        parser: Parser,
        *,
        chunk_size: int = STREAM_READ_CHUNK_SIZE,
    ) -> None:
        self._reader = reader
        self._parser = parser
        self._chunk_size = chunk_size
        self._ready: deque[Metric | DecodeError] = deque()
        self._eof = False

    async def next(self) -> Metric | None:
        while not self._ready:
            if self._eof:
                return None
            chunk = await self._reader.read(self._chunk_size)
            if not chunk:
                self._eof = True
                self._ready.extend(self._parser.flush())
                continue
            self._ready.extend(self._parser.feed(chunk))

        item = self._ready.popleft()
        if isinstance(item, DecodeError):
            raise item
        return item


__all__ = [
    "CodecError",
    "DecodeError",
    "Decoder",
    "DecoderFactory",
    "EncodeError",
    "Encoder",
    "Parser",
    "StreamDecoder",
]
