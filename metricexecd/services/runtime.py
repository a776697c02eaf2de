"""Public entry point of the coprocess metric processor."""

from __future__ import annotations

import asyncio
import functools
import logging

from ..accumulator import Accumulator
from ..codec import Codec, get_codec
from ..config.model import RuntimeConfig
from ..metric import Metric, TrackedMetric, unwrap
from ..state.queues import MetricQueue, QueueClosedError, QueuedMetric
from ..state.stats import ProcessorStats
from ..state.tracking import DeliveryTracker
from .base import ProcessorStateError, ProcessorStoppedError
from .drain import DiagnosticDrain, OutputDrain
from .feeder import InputFeeder
from .process import build_environment
from .supervisor import ProcessSupervisor

logger = logging.getLogger("metricexecd.runtime")


class ExecdProcessor:
    """Streams metrics through a long-lived external transform program.

    ``start`` spawns the program and begins forwarding its output to the
    accumulator; ``add`` queues a metric for the program's stdin, waiting
    while the queue is full; ``stop`` closes stdin, waits up to the grace
    period for a clean exit and resolves every tracked metric that can no
    longer be delivered.
    """

    def __init__(
        self,
        config: RuntimeConfig,
        *,
        codec: Codec | None = None,
        stats: ProcessorStats | None = None,
    ) -> None:
        self.config = config
        self.codec = codec or get_codec(config.data_format)
        self.stats = stats or ProcessorStats()
        self._queue = MetricQueue(config.queue_limit)
        self._tracker = DeliveryTracker(
            outputs_per_input=config.outputs_per_input,
            on_resolved=self.stats.record_delivery,
        )
        self._supervisor: ProcessSupervisor | None = None

    @property
    def lifecycle(self) -> str:
        if self._supervisor is None:
            return ProcessSupervisor.STATE_STOPPED
        return self._supervisor.lifecycle

    @property
    def supervisor(self) -> ProcessSupervisor | None:
        return self._supervisor

    @property
    def tracker(self) -> DeliveryTracker:
        return self._tracker

    @property
    def queue(self) -> MetricQueue:
        return self._queue

    async def start(self, accumulator: Accumulator) -> None:
        if self.lifecycle != ProcessSupervisor.STATE_STOPPED:
            raise ProcessorStateError(f"processor already {self.lifecycle}")

        environment = build_environment(self.config.environment)
        await self._queue.reopen()
        supervisor = ProcessSupervisor(
            command=self.config.command,
            environment=environment,
            restart_delay=self.config.restart_delay,
            stop_grace_period=self.config.stop_grace_period,
            stream_limit=self.config.stream_limit_bytes,
            queue=self._queue,
            feeder=InputFeeder(self._queue, self.codec.encoder(), self._tracker, self.stats),
            drain=OutputDrain(
                functools.partial(self.codec.decoder, limit=self.config.stream_limit_bytes),
                accumulator,
                self._tracker,
                self.stats,
            ),
            diagnostics=DiagnosticDrain(self.stats),
            tracker=self._tracker,
            stats=self.stats,
        )
        await supervisor.start()
        self._supervisor = supervisor

    async def add(self, metric: Metric | TrackedMetric) -> None:
        if self.lifecycle in (ProcessSupervisor.STATE_STOPPED, ProcessSupervisor.STATE_STOPPING):
            self._reject(metric, None)
            raise ProcessorStoppedError(f"processor is {self.lifecycle}")

        tracking_id: int | None = None
        if isinstance(metric, TrackedMetric):
            tracking_id = self._tracker.register(metric)

        try:
            await self._queue.put(QueuedMetric(metric=unwrap(metric), tracking_id=tracking_id))
        except QueueClosedError:
            self._reject(metric, tracking_id)
            raise ProcessorStoppedError("processor stopped while waiting for queue space") from None
        except asyncio.CancelledError:
            if tracking_id is not None:
                self._tracker.discard(tracking_id)
            raise
        self.stats.incr("metrics_added")

    async def stop(self) -> None:
        supervisor = self._supervisor
        if supervisor is None:
            return
        await supervisor.stop()

        leftovers = await self._queue.drain()
        for item in leftovers:
            if item.tracking_id is not None:
                self._tracker.fail(item.tracking_id)
        if leftovers:
            logger.warning("Discarded %d queued metrics at shutdown", len(leftovers))

        abandoned = self._tracker.fail_unclaimed()
        if abandoned:
            logger.warning("%d tracked metrics resolved as undelivered at shutdown", abandoned)

    def _reject(self, metric: Metric | TrackedMetric, tracking_id: int | None) -> None:
        self.stats.incr("metrics_rejected")
        if not isinstance(metric, TrackedMetric):
            return
        if tracking_id is not None:
            self._tracker.discard(tracking_id)
        self.stats.record_delivery(False)
        metric.drop()


__all__ = ["ExecdProcessor"]
