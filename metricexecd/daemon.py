#!/usr/bin/env python3
"""Stream-filter daemon around the coprocess metric processor.

Architecture:
    main() -> ExecdDaemon -> TaskGroup
        ├── input-pump (stdin -> ExecdProcessor.add)
        ├── prometheus-exporter (optional)
        └── ExecdProcessor -> StreamAccumulator (stdout)

The daemon stops on end of input or SIGTERM/SIGINT, closing the coprocess
stdin and waiting for its last outputs before exiting.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Sequence
from typing import BinaryIO, NoReturn

import uvloop

from metricexecd.accumulator import StreamAccumulator
from metricexecd.codec import DecodeError
from metricexecd.config.logging import configure_logging
from metricexecd.config.settings import RuntimeConfig, load_runtime_config
from metricexecd.const import DEFAULT_CONFIG_PATH
from metricexecd.metrics import PrometheusExporter
from metricexecd.services import ExecdError, ExecdProcessor, ProcessorStoppedError

logger = logging.getLogger("metricexecd.daemon")


class ExecdDaemon:
    """Reads metrics from an input stream and writes processed ones out."""

    def __init__(
        self,
        config: RuntimeConfig,
        *,
        output: BinaryIO | None = None,
    ) -> None:
        self.config = config
        self.processor = ExecdProcessor(config)
        self.accumulator = StreamAccumulator(output or sys.stdout.buffer, self.processor.codec.encoder())
        self.exporter: PrometheusExporter | None = None
        if config.metrics_enabled:
            self.exporter = PrometheusExporter(self.processor.stats, config.metrics_host, config.metrics_port)
        self._stop_event: asyncio.Event | None = None

    def request_stop(self) -> None:
        if self._stop_event is not None and not self._stop_event.is_set():
            logger.info("Shutdown requested")
            self._stop_event.set()

    async def _open_stdin(self) -> asyncio.StreamReader:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=self.config.stream_limit_bytes)
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin.buffer)
        return reader

    async def _pump_input(self, reader: asyncio.StreamReader) -> None:
        decoder = self.processor.codec.decoder(reader, limit=self.config.stream_limit_bytes)
        while True:
            try:
                metric = await decoder.next()
            except DecodeError as exc:
                logger.error("Malformed input metric: %s", exc)
                continue
            if metric is None:
                logger.info("End of input reached")
                return
            try:
                await self.processor.add(metric)
            except ProcessorStoppedError:
                return

    async def run(self, reader: asyncio.StreamReader | None = None) -> None:
        """Main async entry point."""
        self._stop_event = asyncio.Event()
        if reader is None:
            reader = await self._open_stdin()

        await self.processor.start(self.accumulator)
        try:
            async with asyncio.TaskGroup() as task_group:
                exporter_task: asyncio.Task[None] | None = None
                if self.exporter is not None:
                    exporter_task = task_group.create_task(self.exporter.run(), name="prometheus-exporter")
                pump = task_group.create_task(self._pump_input(reader), name="input-pump")
                stop_wait = task_group.create_task(self._stop_event.wait(), name="stop-wait")
                await asyncio.wait({pump, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
                pump.cancel()
                stop_wait.cancel()
                if exporter_task is not None:
                    exporter_task.cancel()
        finally:
            await self.processor.stop()
            logger.info("metricexecd stopped")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="metricexecd",
        description="Pipe metrics through an external transform program.",
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help=f"TOML configuration file (default: {DEFAULT_CONFIG_PATH})",
    )
    return parser.parse_args(argv)


async def _serve(daemon: ExecdDaemon) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, daemon.request_stop)
    await daemon.run()


def _run_daemon(daemon: ExecdDaemon) -> None:
    with asyncio.Runner(loop_factory=uvloop.new_event_loop) as runner:
        runner.run(_serve(daemon))


def main(argv: Sequence[str] | None = None) -> NoReturn:  # pragma: no cover (Entry point wrapper)
    args = _parse_args(argv)
    try:
        config = load_runtime_config(args.config)
    except ValueError as exc:
        logging.basicConfig(level=logging.ERROR)
        logger.critical("Configuration error: %s", exc)
        sys.exit(2)
    configure_logging(config)

    logger.info(
        "Starting metricexecd: command=%s format=%s",
        " ".join(config.command),
        config.data_format,
    )

    try:
        daemon = ExecdDaemon(config)
        _run_daemon(daemon)
        sys.exit(0)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        sys.exit(0)
    except ExecdError as exc:
        logger.critical("Processor failure: %s", exc)
        sys.exit(1)
    except ExceptionGroup as exc_group:
        for group_exc in exc_group.exceptions:
            logger.critical("Fatal error in task group: %s", group_exc, exc_info=group_exc)
        sys.exit(1)
    except OSError as exc:
        logger.critical("System/OS error during daemon execution: %s", exc, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
