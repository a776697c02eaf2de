"""Metric codecs for the coprocess wire format."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass

from ..const import DATA_FORMAT_INFLUX, DATA_FORMAT_JSON, DEFAULT_STREAM_LIMIT_BYTES
from .base import (
    CodecError,
    DecodeError,
    Decoder,
    DecoderFactory,
    EncodeError,
    Encoder,
    Parser,
    StreamDecoder,
)
from .influx import LineProtocolEncoder, LineProtocolParser
from .jsonl import JsonEncoder, JsonParser


@dataclass(frozen=True, slots=True)
class Codec:
    """Encoder/parser pair for one data format."""

    name: str
    encoder_factory: Callable[[], Encoder]
    parser_factory: Callable[..., Parser]

    def encoder(self) -> Encoder:
        return self.encoder_factory()

    def parser(self, *, limit: int = DEFAULT_STREAM_LIMIT_BYTES) -> Parser:
        return self.parser_factory(max_record=limit)

    def decoder(self, reader: asyncio.StreamReader, *, limit: int = DEFAULT_STREAM_LIMIT_BYTES) -> Decoder:
        """Decode *reader*, dropping records that grow past *limit* bytes."""
        return StreamDecoder(reader, self.parser(limit=limit))


_CODECS: dict[str, Codec] = {
    DATA_FORMAT_INFLUX: Codec(DATA_FORMAT_INFLUX, LineProtocolEncoder, LineProtocolParser),
    DATA_FORMAT_JSON: Codec(DATA_FORMAT_JSON, JsonEncoder, JsonParser),
}

SUPPORTED_FORMATS: tuple[str, ...] = tuple(_CODECS)


def get_codec(data_format: str) -> Codec:
    try:
        return _CODECS[data_format]
    except KeyError:
        raise ValueError(
            f"unsupported data format {data_format!r}; expected one of {', '.join(SUPPORTED_FORMATS)}"
        ) from None


__all__ = [
    "Codec",
    "CodecError",
    "DecodeError",
    "Decoder",
    "DecoderFactory",
    "EncodeError",
    "Encoder",
    "JsonEncoder",
    "JsonParser",
    "LineProtocolEncoder",
    "LineProtocolParser",
    "Parser",
    "SUPPORTED_FORMATS",
    "StreamDecoder",
    "get_codec",
]
