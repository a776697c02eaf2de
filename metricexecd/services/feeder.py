"""Single writer serializing queued metrics onto the coprocess stdin."""

from __future__ import annotations

import logging

from ..codec import EncodeError, Encoder
from ..state.queues import MetricQueue
from ..state.stats import ProcessorStats
from ..state.tracking import DeliveryTracker
from .base import CoprocessWriteError
from .process import CoprocessHandle

logger = logging.getLogger("metricexecd.feeder")


class InputFeeder:
    """Dequeues metrics in FIFO order and writes their encodings.

    Returns normally once the queue is closed and drained, after closing the
    child's stdin. Raises CoprocessWriteError when the stream breaks.
    """

    def __init__(
        self,
        queue: MetricQueue,
        encoder: Encoder,
        tracker: DeliveryTracker,
        stats: ProcessorStats,
    ) -> None:
        self._queue = queue
        self._encoder = encoder
        self._tracker = tracker
        self._stats = stats

    async def run(self, handle: CoprocessHandle) -> None:
        log = handle.bind_logger(logger)
        stdin = handle.stdin
        if stdin is None:
            raise CoprocessWriteError(f"{handle} has no input stream")

        while True:
            item = await self._queue.get()
            if item is None:
                break

            try:
                payload = self._encoder.encode(item.metric)
            except EncodeError as exc:
                log.error("Dropping metric %r: %s", item.metric.name, exc)
                self._stats.incr("encode_errors")
                if item.tracking_id is not None:
                    self._tracker.fail(item.tracking_id)
                continue

            if item.tracking_id is not None:
                self._tracker.bind(item.tracking_id, handle.generation)
            try:
                stdin.write(payload)
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError, OSError) as exc:
                self._stats.incr("write_failures")
                raise CoprocessWriteError(f"write to {handle} failed: {exc}") from exc

            self._stats.incr("metrics_written")
            if item.tracking_id is not None:
                self._tracker.mark_written(item.tracking_id)

        log.debug("Input queue closed; closing stdin of %s", handle)
        stdin.close()
        try:
            await stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError, OSError):
            log.debug("Error closing stdin of %s", handle, exc_info=True)


__all__ = ["InputFeeder"]
