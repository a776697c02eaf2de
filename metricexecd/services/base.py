"""Errors shared by the coprocess service components."""

from __future__ import annotations


class ExecdError(Exception):
    """Base class for processor failures."""


class ProcessorStartError(ExecdError):
    """The coprocess could not be spawned."""


class ProcessorStateError(ExecdError):
    """Operation not valid in the current lifecycle state."""


class ProcessorStoppedError(ExecdError):
    """The processor is stopping or stopped and no longer accepts metrics."""


class CoprocessWriteError(ExecdError):
    """Writing to the coprocess input stream failed."""


__all__ = [
    "CoprocessWriteError",
    "ExecdError",
    "ProcessorStartError",
    "ProcessorStateError",
    "ProcessorStoppedError",
]
