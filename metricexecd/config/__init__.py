"""Configuration helpers for the metricexecd daemon."""

from .common import normalise_command, normalise_restart_delay
from .model import RuntimeConfig
from .settings import build_runtime_config, load_runtime_config

__all__ = [
    "RuntimeConfig",
    "build_runtime_config",
    "load_runtime_config",
    "normalise_command",
    "normalise_restart_delay",
]
