"""Settings loader for the metricexecd daemon.

Configuration is read from the ``[execd]`` table of a TOML file. A missing
file yields an empty section, which fails validation because ``command`` is
required.
"""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Any

from marshmallow import ValidationError

from ..const import CONFIG_SECTION, DEFAULT_CONFIG_PATH
from .model import RuntimeConfig
from .schema import RuntimeConfigSchema

logger = logging.getLogger(__name__)


def _load_raw_config(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            document = tomllib.load(handle)
    except FileNotFoundError:
        logger.warning("Configuration file %s not found; using defaults", path)
        return {}
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"invalid TOML in {path}: {exc}") from exc

    section = document.get(CONFIG_SECTION, {})
    if not isinstance(section, dict):
        raise ValueError(f"[{CONFIG_SECTION}] in {path} must be a table")
    return section


def build_runtime_config(raw: dict[str, Any]) -> RuntimeConfig:
    """Validate a raw mapping into a RuntimeConfig."""
    try:
        return RuntimeConfigSchema().load(raw)
    except ValidationError as exc:
        raise ValueError(f"invalid configuration: {exc.messages}") from exc


def load_runtime_config(path: str | Path = DEFAULT_CONFIG_PATH) -> RuntimeConfig:
    """Load configuration from a TOML file."""
    return build_runtime_config(_load_raw_config(Path(path)))


__all__ = ["RuntimeConfig", "build_runtime_config", "load_runtime_config"]
