"""Parsing helpers shared by the configuration loaders."""

from __future__ import annotations

import shlex
from collections.abc import Iterable

from ..const import DEFAULT_RESTART_DELAY, MIN_RESTART_DELAY


def normalise_command(command: str | Iterable[str]) -> tuple[str, ...]:
    """Return an argv tuple; a plain string is split shell-style."""
    if isinstance(command, str):
        return tuple(shlex.split(command))
    return tuple(str(part) for part in command)


def normalise_restart_delay(value: float | None) -> float:
    """Unset or non-positive delays fall back to the default; tiny ones are raised."""
    if value is None or value <= 0:
        return DEFAULT_RESTART_DELAY
    return max(MIN_RESTART_DELAY, float(value))


__all__ = ["normalise_command", "normalise_restart_delay"]
