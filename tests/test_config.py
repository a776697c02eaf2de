"""Tests for RuntimeConfig normalization and TOML loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from metricexecd.config import normalise_restart_delay, settings
from metricexecd.config.model import RuntimeConfig
from metricexecd.config.schema import RuntimeConfigSchema
from metricexecd.const import (
    DEFAULT_QUEUE_LIMIT,
    DEFAULT_RESTART_DELAY,
    DEFAULT_STOP_GRACE_PERIOD,
    MIN_RESTART_DELAY,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (None, DEFAULT_RESTART_DELAY),
        (0, DEFAULT_RESTART_DELAY),
        (-3.0, DEFAULT_RESTART_DELAY),
        (0.01, MIN_RESTART_DELAY),
        (5.0, 5.0),
    ],
)
def test_restart_delay_normalization(raw: float | None, expected: float) -> None:
    assert normalise_restart_delay(raw) == expected


def test_runtime_config_defaults_and_command_split() -> None:
    config = RuntimeConfig(command="/usr/bin/transform --mode 'x y'")  # type: ignore[arg-type]

    assert config.command == ("/usr/bin/transform", "--mode", "x y")
    assert config.program == "/usr/bin/transform"
    assert config.restart_delay == DEFAULT_RESTART_DELAY
    assert config.stop_grace_period == DEFAULT_STOP_GRACE_PERIOD
    assert config.queue_limit == DEFAULT_QUEUE_LIMIT
    assert config.data_format == "influx"


@pytest.mark.parametrize(
    "overrides",
    [
        {"command": ()},
        {"environment": ("NOEQUALS",)},
        {"queue_limit": 0},
        {"outputs_per_input": -1},
    ],
)
def test_runtime_config_rejects_invalid_values(overrides: dict[str, object]) -> None:
    values: dict[str, object] = {"command": ("transform",)}
    values.update(overrides)

    with pytest.raises(ValueError):
        RuntimeConfig(**values)  # type: ignore[arg-type]


def test_schema_builds_config() -> None:
    config = RuntimeConfigSchema().load(
        {
            "command": ["transform", "--flag"],
            "environment": ["A=1"],
            "restart_delay": 0.05,
            "data_format": "json",
            "outputs_per_input": 0,
        }
    )

    assert isinstance(config, RuntimeConfig)
    assert config.command == ("transform", "--flag")
    assert config.environment == ("A=1",)
    assert config.restart_delay == MIN_RESTART_DELAY
    assert config.data_format == "json"
    assert config.outputs_per_input == 0


def test_load_runtime_config_from_toml(tmp_path: Path) -> None:
    path = tmp_path / "metricexecd.toml"
    path.write_text(
        "[execd]\n"
        'command = "python3 transform.py"\n'
        'environment = ["FIELD_NAME=count"]\n'
        "restart_delay = 2.5\n"
        "queue_limit = 50\n"
        "metrics_enabled = true\n"
        "metrics_port = 0\n",
        encoding="utf-8",
    )

    config = settings.load_runtime_config(path)

    assert config.command == ("python3", "transform.py")
    assert config.environment == ("FIELD_NAME=count",)
    assert config.restart_delay == 2.5
    assert config.queue_limit == 50
    assert config.metrics_enabled is True
    assert config.metrics_port == 0


@pytest.mark.parametrize(
    "body",
    [
        '[execd]\ncommand = ["t"]\ndata_format = "graphite"\n',
        '[execd]\ncommand = ["t"]\nenvironment = ["BAD"]\n',
        '[execd]\ncommand = ["t"]\nqueue_limit = 0\n',
        "[execd]\nrestart_delay = 1\n",
        "[execd\n",
    ],
)
def test_load_runtime_config_rejects_invalid_files(tmp_path: Path, body: str) -> None:
    path = tmp_path / "metricexecd.toml"
    path.write_text(body, encoding="utf-8")

    with pytest.raises(ValueError):
        settings.load_runtime_config(path)


def test_missing_file_fails_for_lack_of_command(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="command"):
        settings.load_runtime_config(tmp_path / "absent.toml")
