"""Pipe telemetry metrics through a long-lived external transform program."""

from .accumulator import Accumulator, MemoryAccumulator, StreamAccumulator
from .metric import DeliveryInfo, Metric, TrackedMetric, Unsigned, with_tracking
from .services import (
    ExecdError,
    ExecdProcessor,
    ProcessorStartError,
    ProcessorStateError,
    ProcessorStoppedError,
)

__version__ = "0.1.0"

__all__ = [
    "Accumulator",
    "DeliveryInfo",
    "ExecdError",
    "ExecdProcessor",
    "MemoryAccumulator",
    "Metric",
    "ProcessorStartError",
    "ProcessorStateError",
    "ProcessorStoppedError",
    "StreamAccumulator",
    "TrackedMetric",
    "Unsigned",
    "__version__",
    "with_tracking",
]
