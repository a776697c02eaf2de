"""Tests for the logging configuration."""

import json
import logging
from logging.handlers import SysLogHandler
from unittest.mock import patch

import pytest

from metricexecd.config import logging as log_mod
from metricexecd.config.model import RuntimeConfig


def _record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="metricexecd.stderr",
        level=logging.ERROR,
        pathname=__file__,
        lineno=1,
        msg="%s: %s",
        args=("transform[12]", "boom"),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_trims_prefix_and_serialises_extras() -> None:
    record = _record(raw=b"line\xff", count=3, thing=object())

    payload = json.loads(log_mod.StructuredLogFormatter().format(record))

    assert payload["logger"] == "stderr"
    assert payload["level"] == "ERROR"
    assert payload["message"] == "transform[12]: boom"
    assert payload["ts"].endswith("Z")
    assert payload["extra"]["raw"] == "line\\xff"
    assert payload["extra"]["count"] == 3
    assert "object" in payload["extra"]["thing"]
    assert "coprocess" not in payload


def test_formatter_lifts_coprocess_identity() -> None:
    record = _record(generation=3, pid=12, program="transform", stream="stderr")

    payload = json.loads(log_mod.StructuredLogFormatter().format(record))

    assert payload["coprocess"] == {"generation": 3, "pid": 12, "program": "transform"}
    assert payload["extra"] == {"stream": "stderr"}


def test_adapter_binds_identity_and_merges_call_extras(caplog: pytest.LogCaptureFixture) -> None:
    adapter = log_mod.CoprocessLogAdapter(
        logging.getLogger("metricexecd.supervisor"), {"generation": 2, "pid": 40, "program": "transform"}
    )

    with caplog.at_level(logging.INFO, logger="metricexecd.supervisor"):
        adapter.info("restarted", extra={"pid": 41, "attempt": 1})

    (record,) = caplog.records
    payload = json.loads(log_mod.StructuredLogFormatter().format(record))
    assert payload["coprocess"] == {"generation": 2, "pid": 41, "program": "transform"}
    assert payload["extra"] == {"attempt": 1}


def test_formatter_includes_exception() -> None:
    try:
        raise RuntimeError("child crashed")
    except RuntimeError:
        import sys

        record = _record()
        record.exc_info = sys.exc_info()

    payload = json.loads(log_mod.StructuredLogFormatter().format(record))

    assert "RuntimeError: child crashed" in payload["exception"]


def test_stream_env_forces_stream_handler(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(log_mod.LOG_STREAM_ENV, "1")

    handler = log_mod._build_handler()

    assert type(handler) is logging.StreamHandler


def test_syslog_socket_is_preferred(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.delenv(log_mod.LOG_STREAM_ENV, raising=False)
    fake_socket = tmp_path / "log"
    fake_socket.touch()

    with patch.object(log_mod, "SYSLOG_SOCKET", fake_socket):
        handler = log_mod._build_handler()
    try:
        assert isinstance(handler, SysLogHandler)
        assert handler.ident == "metricexecd "
    finally:
        handler.close()


def test_falls_back_to_stream_without_syslog(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.delenv(log_mod.LOG_STREAM_ENV, raising=False)

    with patch.object(log_mod, "SYSLOG_SOCKET", tmp_path / "missing"), patch.object(
        log_mod, "SYSLOG_SOCKET_FALLBACK", tmp_path / "also-missing"
    ):
        handler = log_mod._build_handler()

    assert type(handler) is logging.StreamHandler


@pytest.mark.parametrize(("debug", "level"), [(True, "DEBUG"), (False, "INFO")])
def test_configure_logging_level(debug: bool, level: str) -> None:
    config = RuntimeConfig(command=("transform",), debug_logging=debug)

    with patch.object(log_mod, "dictConfig") as mock_dict_config:
        log_mod.configure_logging(config)

    settings = mock_dict_config.call_args.args[0]
    assert settings["root"]["level"] == level
    assert settings["handlers"]["metricexecd"]["level"] == level
    assert settings["formatters"]["structured"]["()"] == "metricexecd.config.logging.StructuredLogFormatter"
