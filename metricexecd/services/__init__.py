"""Coprocess service components."""

from .base import (
    CoprocessWriteError,
    ExecdError,
    ProcessorStartError,
    ProcessorStateError,
    ProcessorStoppedError,
)
from .drain import DiagnosticDrain, OutputDrain
from .feeder import InputFeeder
from .process import (
    CoprocessHandle,
    CoprocessInput,
    build_environment,
    open_coprocess_input,
    spawn_coprocess,
    terminate_process_tree,
)
from .runtime import ExecdProcessor
from .supervisor import ProcessSupervisor

__all__ = [
    "CoprocessHandle",
    "CoprocessInput",
    "CoprocessWriteError",
    "DiagnosticDrain",
    "ExecdError",
    "ExecdProcessor",
    "InputFeeder",
    "OutputDrain",
    "ProcessSupervisor",
    "ProcessorStartError",
    "ProcessorStateError",
    "ProcessorStoppedError",
    "build_environment",
    "open_coprocess_input",
    "spawn_coprocess",
    "terminate_process_tree",
]
