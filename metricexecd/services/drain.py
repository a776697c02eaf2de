"""Readers for the coprocess stdout and stderr streams."""

from __future__ import annotations

import logging

from ..accumulator import Accumulator
from ..codec import DecodeError, DecoderFactory
from ..metric import Metric, TrackedMetric
from ..state.stats import ProcessorStats
from ..state.tracking import DeliveryTracker
from .process import CoprocessHandle

logger = logging.getLogger("metricexecd.drain")
stderr_logger = logging.getLogger("metricexecd.stderr")


class OutputDrain:
    """Decodes stdout and forwards metrics in stream order."""

    def __init__(
        self,
        decoder_factory: DecoderFactory,
        accumulator: Accumulator,
        tracker: DeliveryTracker,
        stats: ProcessorStats,
    ) -> None:
        self._decoder_factory = decoder_factory
        self._accumulator = accumulator
        self._tracker = tracker
        self._stats = stats

    async def run(self, handle: CoprocessHandle) -> None:
        reader = handle.process.stdout
        if reader is None:
            return
        log = handle.bind_logger(logger)
        decoder = self._decoder_factory(reader)
        while True:
            try:
                metric = await decoder.next()
            except DecodeError as exc:
                log.error("Malformed metric from %s: %s", handle, exc)
                self._stats.incr("decode_errors")
                continue
            except (OSError, ValueError) as exc:
                log.debug("Output stream of %s ended: %s", handle, exc)
                return
            if metric is None:
                log.debug("Output stream of %s reached end of file", handle)
                return
            self._forward(metric, handle.generation, log)

    def _forward(self, metric: Metric, generation: int, log: logging.LoggerAdapter) -> None:
        tracking_id = self._tracker.claim(metric, generation)
        item: Metric | TrackedMetric = metric
        if tracking_id is not None:
            item = TrackedMetric(metric=metric, tracking_id=tracking_id, notify=self._tracker.output_notify)
        try:
            self._accumulator.add_metric(item)
        except Exception as exc:
            log.error("Accumulator refused metric %r: %s", metric.name, exc, exc_info=True)
            self._stats.incr("accumulator_errors")
            if isinstance(item, TrackedMetric):
                item.reject()
            return
        self._stats.incr("metrics_emitted")


class DiagnosticDrain:
    """Logs every stderr line of the child at error level."""

    def __init__(self, stats: ProcessorStats) -> None:
        self._stats = stats

    async def run(self, handle: CoprocessHandle) -> None:
        reader = handle.process.stderr
        if reader is None:
            return
        log = handle.bind_logger(stderr_logger)
        while True:
            try:
                line = await reader.readline()
            except ValueError:
                log.warning("%s: stderr line exceeds the stream limit; skipped", handle)
                continue
            except OSError:
                return
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip("\r\n")
            if not text:
                continue
            self._stats.incr("stderr_lines")
            log.error("%s: %s", handle, text)


__all__ = ["DiagnosticDrain", "OutputDrain"]
