"""Pytest configuration for metricexecd tests."""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from metricexecd.config.model import RuntimeConfig

TESTS_DIR = Path(__file__).resolve().parent
REPO_ROOT = TESTS_DIR.parent
COUNTMULTIPLIER = TESTS_DIR / "countmultiplier.py"

ConfigFactory = Callable[..., RuntimeConfig]


@pytest.fixture(scope="session")
def event_loop_policy():
    """Provide uvloop event loop policy for pytest-asyncio."""
    import warnings

    import uvloop

    with warnings.catch_warnings():
        warnings.filterwarnings(
            "ignore",
            message=".*AbstractEventLoopPolicy.*",
            category=DeprecationWarning,
        )
        policy = uvloop.EventLoopPolicy()
    return policy


@pytest.fixture(autouse=True)
def reset_logging_handlers():
    """Close and remove all logging handlers after each test to prevent ResourceWarnings."""
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        try:
            handler.close()
        except (OSError, RuntimeError):
            pass
        root.removeHandler(handler)


@pytest.fixture
def countmultiplier_command() -> tuple[str, ...]:
    return (sys.executable, str(COUNTMULTIPLIER))


@pytest.fixture
def make_config(countmultiplier_command: tuple[str, ...]) -> ConfigFactory:
    """Build a RuntimeConfig running the doubling test program.

    Positional arguments are extra ``KEY=VALUE`` environment entries for the
    child; keyword arguments override config fields.
    """

    def _factory(*environment: str, **overrides: Any) -> RuntimeConfig:
        values: dict[str, Any] = {
            "command": countmultiplier_command,
            "environment": (f"PYTHONPATH={REPO_ROOT}", "FIELD_NAME=count", *environment),
            "restart_delay": 0.2,
            "stop_grace_period": 5.0,
            "queue_limit": 100,
        }
        values.update(overrides)
        return RuntimeConfig(**values)

    return _factory


@pytest.fixture
def runtime_config(make_config: ConfigFactory) -> RuntimeConfig:
    return make_config()
