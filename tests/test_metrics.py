"""Tests for the Prometheus exporter."""

from __future__ import annotations

import asyncio

import pytest

from metricexecd.metrics import PrometheusExporter, _sanitize_metric_name
from metricexecd.state.stats import ProcessorStats


def test_render_exposes_counters_gauges_and_state() -> None:
    stats = ProcessorStats()
    stats.incr("restarts", 2)
    stats.incr("decode_errors")
    stats.generation = 3
    stats.pid = 4321
    stats.lifecycle = "running"

    body = PrometheusExporter(stats, "127.0.0.1", 0).render().decode("utf-8")

    assert "metricexecd_restarts_total 2.0" in body
    assert "metricexecd_decode_errors_total 1.0" in body
    assert "metricexecd_generation 3.0" in body
    assert "metricexecd_pid 4321.0" in body
    assert 'metricexecd_info{lifecycle="running"} 1.0' in body


def test_render_skips_unset_pid() -> None:
    body = PrometheusExporter(ProcessorStats(), "127.0.0.1", 0).render().decode("utf-8")

    assert "metricexecd_pid" not in body


def test_sanitize_metric_name() -> None:
    assert _sanitize_metric_name("Metric-Execd.Queue") == "metric_execd_queue"
    assert _sanitize_metric_name("9lives") == "_9lives"
    assert _sanitize_metric_name("***") == "metricexecd_metric"


async def _http_get(port: int, path: str, *, method: str = "GET", headers: str = "") -> bytes:
    return await _http_raw(port, f"{method} {path} HTTP/1.1\r\nHost: localhost\r\n{headers}\r\n".encode("ascii"))


async def _http_raw(port: int, request: bytes) -> bytes:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(request)
    await writer.drain()
    response = await reader.read()
    writer.close()
    await writer.wait_closed()
    return response


@pytest.mark.asyncio
async def test_exporter_serves_metrics_over_http() -> None:
    stats = ProcessorStats()
    stats.incr("metrics_added", 5)
    exporter = PrometheusExporter(stats, "127.0.0.1", 0)
    await exporter.start()
    try:
        ok = await _http_get(exporter.port, "/metrics")
        missing = await _http_get(exporter.port, "/nope")
    finally:
        await exporter.stop()

    assert ok.startswith(b"HTTP/1.1 200 OK")
    assert b"metricexecd_metrics_added_total 5.0" in ok
    assert missing.startswith(b"HTTP/1.1 404")


@pytest.mark.asyncio
async def test_exporter_request_handling() -> None:
    stats = ProcessorStats()
    stats.incr("restarts")
    exporter = PrometheusExporter(stats, "127.0.0.1", 0)
    await exporter.start()
    try:
        query = await _http_get(exporter.port, "/metrics?name[]=x")
        head = await _http_get(exporter.port, "/metrics", method="HEAD")
        post = await _http_get(exporter.port, "/metrics", method="POST")
        openmetrics = await _http_get(
            exporter.port, "/metrics", headers="Accept: application/openmetrics-text; version=1.0.0\r\n"
        )
        malformed = await _http_raw(exporter.port, b"\r\n\r\n")
    finally:
        await exporter.stop()

    assert query.startswith(b"HTTP/1.1 200 OK")
    assert b"metricexecd_restarts_total 1.0" in query
    head_headers, _, head_body = head.partition(b"\r\n\r\n")
    assert head_headers.startswith(b"HTTP/1.1 200 OK")
    assert b"Content-Length: 0" not in head_headers
    assert head_body == b""
    assert post.startswith(b"HTTP/1.1 405 Method Not Allowed")
    assert b"Content-Type: application/openmetrics-text" in openmetrics
    assert openmetrics.rstrip().endswith(b"# EOF")
    assert malformed.startswith(b"HTTP/1.1 400 Bad Request")


@pytest.mark.asyncio
async def test_health_endpoint_follows_lifecycle() -> None:
    stats = ProcessorStats()
    exporter = PrometheusExporter(stats, "127.0.0.1", 0)
    await exporter.start()
    try:
        stopped = await _http_get(exporter.port, "/healthz")
        stats.lifecycle = "running"
        running = await _http_get(exporter.port, "/healthz")
    finally:
        await exporter.stop()

    assert stopped.startswith(b"HTTP/1.1 503 Service Unavailable")
    assert stopped.endswith(b"\r\n\r\nstopped\n")
    assert running.startswith(b"HTTP/1.1 200 OK")
    assert running.endswith(b"\r\n\r\nrunning\n")
