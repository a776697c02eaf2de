"""Prometheus exporter for processor statistics."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, cast

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, InfoMetricFamily
from prometheus_client.exposition import choose_encoder
from prometheus_client.registry import Collector

from .const import METRICS_REQUEST_TIMEOUT
from .state.stats import ProcessorStats

logger = logging.getLogger("metricexecd.metrics")


_SANITIZE_RE = re.compile(r"[^a-zA-Z0-9_]")
_PREFIX = "metricexecd"
_GAUGE_FIELDS = frozenset({"generation", "pid"})
_COUNTER_DOC = "metricexecd processor counter"
_GAUGE_DOC = "metricexecd processor gauge"
_INFO_DOC = "metricexecd processor state"
_METRICS_PATHS = frozenset({"/", "/metrics"})
_HEALTH_PATH = "/healthz"


class _ProcessorStatsCollector(Collector):
    """Projects ProcessorStats snapshots onto Prometheus families."""

    def __init__(self, stats: ProcessorStats) -> None:
        self._stats = stats

    def collect(self) -> Iterator[Any]:
        snapshot = self._stats.snapshot()
        info: dict[str, str] = {}
        for key, value in snapshot.items():
            if value is None:
                continue
            name = _sanitize_metric_name(f"{_PREFIX}_{key}")
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                info[key] = str(value)
            elif key in _GAUGE_FIELDS:
                gauge = GaugeMetricFamily(name, _GAUGE_DOC)
                gauge.add_metric((), float(value))
                yield gauge
            else:
                counter = CounterMetricFamily(name, _COUNTER_DOC)
                counter.add_metric((), float(value))
                yield counter
        if info:
            info_metric = InfoMetricFamily(_PREFIX, _INFO_DOC)
            info_metric.add_metric((), info)
            yield info_metric


class PrometheusExporter:
    """Expose ProcessorStats via the Prometheus text format."""

    def __init__(self, stats: ProcessorStats, host: str, port: int) -> None:
        self._stats = stats
        self._host = host
        self._port = port
        self._server: asyncio.AbstractServer | None = None
        self._resolved_port: int | None = None
        self._registry = CollectorRegistry()
        self._registry.register(_ProcessorStatsCollector(stats))

    @property
    def port(self) -> int:
        return self._resolved_port or self._port

    async def start(self) -> None:
        if self._server is not None:
            return
        self._server = await asyncio.start_server(
            self._serve_scrape,
            host=self._host,
            port=self._port,
        )
        sockets = self._server.sockets or []
        if sockets:
            sockname = sockets[0].getsockname()
            if isinstance(sockname, tuple):
                typed_sockname = cast(tuple[object, ...], sockname)
                if len(typed_sockname) >= 2 and isinstance(typed_sockname[1], int):
                    self._resolved_port = typed_sockname[1]
        logger.info(
            "Prometheus exporter listening",
            extra={"host": self._host, "port": self.port},
        )

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        logger.info("Prometheus exporter stopped")

    async def run(self) -> None:
        await self.start()
        assert self._server is not None
        try:
            await self._server.serve_forever()
        finally:
            await self.stop()

    async def _serve_scrape(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            try:
                async with asyncio.timeout(METRICS_REQUEST_TIMEOUT):
                    request = await _read_request(reader)
            except ValueError as exc:
                logger.warning("Rejecting metrics request: %s", exc)
                writer.write(_response(HTTPStatus.BAD_REQUEST))
            else:
                if request is not None:
                    writer.write(self._respond(request))
            await writer.drain()
        except TimeoutError:
            logger.debug("Metrics client sent no complete request in %.1fs", METRICS_REQUEST_TIMEOUT)
        except OSError as exc:
            logger.warning("Metrics client connection error: %s", exc)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (OSError, RuntimeError):
                logger.debug("Error closing metrics client connection", exc_info=True)

    def _respond(self, request: _Request) -> bytes:
        head = request.method == "HEAD"
        if request.path not in _METRICS_PATHS and request.path != _HEALTH_PATH:
            return _response(HTTPStatus.NOT_FOUND, head=head)
        if request.method not in ("GET", "HEAD"):
            return _response(HTTPStatus.METHOD_NOT_ALLOWED)
        if request.path == _HEALTH_PATH:
            lifecycle = self._stats.lifecycle
            status = HTTPStatus.OK if lifecycle == "running" else HTTPStatus.SERVICE_UNAVAILABLE
            return _response(status, f"{lifecycle}\n".encode("ascii"), head=head)
        encoder, content_type = choose_encoder(request.headers.get("accept", ""))
        return _response(HTTPStatus.OK, encoder(self._registry), content_type=content_type, head=head)

    def render(self) -> bytes:
        return generate_latest(self._registry)


@dataclass(frozen=True, slots=True)
class _Request:
    method: str
    path: str
    headers: dict[str, str]


async def _read_request(reader: asyncio.StreamReader) -> _Request | None:
    """Read a request head; None if the client disconnected first."""
    request_line = await reader.readline()
    if not request_line:
        return None
    method, _, rest = request_line.decode("latin-1").strip().partition(" ")
    target = rest.partition(" ")[0]
    if not method or not target:
        raise ValueError(f"malformed request line {request_line[:80]!r}")

    headers: dict[str, str] = {}
    while True:
        line = await reader.readline()
        if line in (b"", b"\r\n", b"\n"):
            break
        name, sep, value = line.decode("latin-1").partition(":")
        if sep:
            headers[name.strip().lower()] = value.strip()
    return _Request(method=method.upper(), path=target.partition("?")[0], headers=headers)


def _response(
    status: HTTPStatus,
    body: bytes = b"",
    *,
    content_type: str = "text/plain; charset=utf-8",
    head: bool = False,
) -> bytes:
    header = (
        f"HTTP/1.1 {status.value} {status.phrase}\r\n"
        f"Content-Type: {content_type}\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n\r\n"
    )
    return header.encode("ascii") + (b"" if head else body)


def _sanitize_metric_name(name: str) -> str:
    cleaned = _SANITIZE_RE.sub("_", name.lower())
    cleaned = cleaned.strip("_") or "metricexecd_metric"
    if cleaned[0].isdigit():
        cleaned = f"_{cleaned}"
    return cleaned


__all__ = ["PrometheusExporter"]
