"""Data model for metricexecd configuration."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..const import (
    DEFAULT_DATA_FORMAT,
    DEFAULT_DEBUG_LOGGING,
    DEFAULT_METRICS_ENABLED,
    DEFAULT_METRICS_HOST,
    DEFAULT_METRICS_PORT,
    DEFAULT_OUTPUTS_PER_INPUT,
    DEFAULT_QUEUE_LIMIT,
    DEFAULT_RESTART_DELAY,
    DEFAULT_STOP_GRACE_PERIOD,
    DEFAULT_STREAM_LIMIT_BYTES,
)
from .common import normalise_command, normalise_restart_delay


@dataclass(slots=True)
class RuntimeConfig:
    """Strongly typed configuration for the processor and daemon."""

    command: tuple[str, ...]
    environment: tuple[str, ...] = field(default_factory=tuple)
    restart_delay: float = DEFAULT_RESTART_DELAY
    stop_grace_period: float = DEFAULT_STOP_GRACE_PERIOD
    queue_limit: int = DEFAULT_QUEUE_LIMIT
    data_format: str = DEFAULT_DATA_FORMAT
    outputs_per_input: int = DEFAULT_OUTPUTS_PER_INPUT
    stream_limit_bytes: int = DEFAULT_STREAM_LIMIT_BYTES
    debug_logging: bool = DEFAULT_DEBUG_LOGGING
    metrics_enabled: bool = DEFAULT_METRICS_ENABLED
    metrics_host: str = DEFAULT_METRICS_HOST
    metrics_port: int = DEFAULT_METRICS_PORT

    def __post_init__(self) -> None:
        self.command = normalise_command(self.command)
        if not self.command or not self.command[0]:
            raise ValueError("command must name an executable")
        self.environment = tuple(self.environment)
        for assignment in self.environment:
            if "=" not in assignment or assignment.startswith("="):
                raise ValueError(f"environment entry {assignment!r} must be KEY=VALUE")
        self.restart_delay = normalise_restart_delay(self.restart_delay)
        self.stop_grace_period = max(0.0, float(self.stop_grace_period))
        self.queue_limit = self._require_positive("queue_limit", self.queue_limit)
        self.stream_limit_bytes = self._require_positive("stream_limit_bytes", self.stream_limit_bytes)
        if self.outputs_per_input < 0:
            raise ValueError("outputs_per_input must not be negative")

    @property
    def program(self) -> str:
        return self.command[0]

    @staticmethod
    def _require_positive(name: str, value: int) -> int:
        if value <= 0:
            raise ValueError(f"{name} must be a positive integer")
        return value


__all__ = ["RuntimeConfig"]
