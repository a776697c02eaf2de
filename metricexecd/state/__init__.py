"""Shared runtime state for the coprocess processor."""

from .queues import MetricQueue, QueueClosedError, QueuedMetric
from .stats import ProcessorStats
from .tracking import DeliveryRecord, DeliveryTracker

__all__ = [
    "DeliveryRecord",
    "DeliveryTracker",
    "MetricQueue",
    "ProcessorStats",
    "QueueClosedError",
    "QueuedMetric",
]
