"""Logging setup for the metricexecd daemon.

Every line is a single JSON object. Records emitted on behalf of a coprocess
carry its generation, pid and program name; the formatter lifts those into a
``coprocess`` object so one child can be followed across restarts.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Mapping, MutableMapping
from datetime import datetime, timezone
from logging import Handler
from logging.config import dictConfig
from logging.handlers import SysLogHandler
from pathlib import Path
from typing import Any

import msgspec

from .model import RuntimeConfig

LOG_STREAM_ENV = "METRICEXECD_LOG_STREAM"

SYSLOG_SOCKET = Path("/dev/log")
SYSLOG_SOCKET_FALLBACK = Path("/var/run/log")

COPROCESS_KEYS: tuple[str, ...] = ("generation", "pid", "program")

_STANDARD_KEYS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


def _json_value(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="backslashreplace")
    return str(value)


class StructuredLogFormatter(logging.Formatter):
    """One JSON object per record with the package prefix trimmed off the logger."""

    PREFIX = "metricexecd."

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name.removeprefix(self.PREFIX),
            "message": record.getMessage(),
        }

        attributes = vars(record)
        coprocess = {key: attributes[key] for key in COPROCESS_KEYS if attributes.get(key) is not None}
        if coprocess:
            payload["coprocess"] = coprocess

        extras = {
            key: _json_value(value)
            for key, value in attributes.items()
            if key not in _STANDARD_KEYS and key not in COPROCESS_KEYS and not key.startswith("_")
        }
        if extras:
            payload["extra"] = extras

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return msgspec.json.encode(payload).decode("utf-8")


class CoprocessLogAdapter(logging.LoggerAdapter):
    """Stamps every record with the identity of one coprocess.

    Per-call ``extra`` entries are merged over the bound identity.
    """

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        bound: Mapping[str, Any] = self.extra or {}
        kwargs["extra"] = {**bound, **kwargs.get("extra", {})}
        return msg, kwargs


def _syslog_address() -> Path | None:
    for candidate in (SYSLOG_SOCKET, SYSLOG_SOCKET_FALLBACK):
        if candidate.exists():
            return candidate
    return None


def _build_handler() -> Handler:
    # stdout carries processed metrics in daemon mode.
    address = None if os.environ.get(LOG_STREAM_ENV) else _syslog_address()
    if address is None:
        return logging.StreamHandler(sys.stderr)
    handler = SysLogHandler(address=str(address), facility=SysLogHandler.LOG_DAEMON)
    handler.ident = "metricexecd "
    return handler


def configure_logging(config: RuntimeConfig) -> None:
    """Route every metricexecd logger through one structured handler."""

    level_name = "DEBUG" if config.debug_logging else "INFO"

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structured": {
                    "()": "metricexecd.config.logging.StructuredLogFormatter",
                }
            },
            "handlers": {
                "metricexecd": {
                    "()": _build_handler,
                    "level": level_name,
                    "formatter": "structured",
                }
            },
            "root": {
                "level": level_name,
                "handlers": ["metricexecd"],
            },
        }
    )

    logging.getLogger("metricexecd").info("Logging configured at level %s", level_name)


__all__ = [
    "COPROCESS_KEYS",
    "CoprocessLogAdapter",
    "LOG_STREAM_ENV",
    "StructuredLogFormatter",
    "configure_logging",
]
