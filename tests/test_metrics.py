import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from imagesweep.metrics import (
    IMAGES_REMOVED_COUNTER,
    ManualReader,
    MeterProvider,
    OtlpHttpExporter,
    configure_metrics,
    export_metrics,
    record_metrics_controller,
    record_metrics_eraser,
    record_metrics_scanner,
)


def _names(collected):
    return {m["name"] for s in collected["scope_metrics"] for m in s["metrics"]}


def test_configure_metrics():
    exporter, reader, provider = configure_metrics("otel-collector:4318")
    assert exporter.url == "http://otel-collector:4318/v1/metrics"
    assert reader.collect()["scope_metrics"] == []
    assert provider.meter("eraser") is provider.meter("eraser")


def test_record_metrics(monkeypatch):
    monkeypatch.setenv("NODE_NAME", "node-a")
    _, reader, provider = configure_metrics("otel-collector:4318")
    record_metrics_eraser(provider, 1)
    record_metrics_scanner(provider, 1)
    record_metrics_controller(provider, 1.0, 1, 1)
    assert _names(reader.collect()) == {
        IMAGES_REMOVED_COUNTER, "vulnerable_images_run_total",
        "imagejob_duration_run_seconds", "pods_completed_run_total",
        "pods_failed_run_total", "imagejob_run_total",
    }


def test_meter_creates_instrument():
    reader = ManualReader()
    meter = MeterProvider(reader).meter("eraser")
    meter.counter(IMAGES_REMOVED_COUNTER).add(1)
    collected = reader.collect()
    assert len(collected["scope_metrics"]) == 1
    metrics = collected["scope_metrics"][0]["metrics"]
    assert len(metrics) == 1
    assert metrics[0]["name"] == IMAGES_REMOVED_COUNTER


def test_counter_accumulates_per_attributes():
    reader = ManualReader()
    counter = MeterProvider(reader).meter("eraser").counter("c")
    counter.add(2, {"k": "a"})
    counter.add(3, {"k": "a"})
    counter.add(4, {"k": "b"})
    points = reader.collect()["scope_metrics"][0]["metrics"][0]["data_points"]
    assert {p["attributes"]["k"]: p["value"] for p in points} == {"a": 5, "b": 4}


def test_histogram_uses_view_boundaries():
    _, reader, provider = configure_metrics("x:1")
    record_metrics_controller(provider, 15.0, 0, 0)
    metric = next(m for s in reader.collect()["scope_metrics"] for m in s["metrics"]
                  if m["name"] == "imagejob_duration_run_seconds")
    point = metric["data_points"][0]
    assert metric["unit"] == "s"
    assert point["explicit_bounds"] == [0.0, 10.0, 20.0, 30.0, 40.0, 50.0, 60.0]
    assert sum(point["bucket_counts"]) == point["count"] == 1


def test_invalid_name_and_negative_add():
    meter = MeterProvider().meter("eraser")
    with pytest.raises(ValueError):
        meter.counter("1bad")
    with pytest.raises(ValueError):
        meter.counter("ok").add(-1)


def test_export_posts_otlp_json():
    received = []

    class Handler(BaseHTTPRequestHandler):
        def do_POST(self):
            length = int(self.headers["Content-Length"])
            received.append((self.path, json.loads(self.rfile.read(length))))
            self.send_response(200)
            self.end_headers()

        def log_message(self, *args):
            pass

    server = HTTPServer(("127.0.0.1", 0), Handler)
    port = server.server_port
    thread = threading.Thread(target=server.handle_request)
    thread.start()
    try:
        reader = ManualReader()
        provider = MeterProvider(reader)
        record_metrics_eraser(provider, 3)
        exporter = OtlpHttpExporter(f"127.0.0.1:{port}")
        assert exporter.url == f"http://127.0.0.1:{port}/v1/metrics"
        export_metrics(exporter, reader)
        thread.join(timeout=5)
    finally:
        server.server_close()
    assert len(received) == 1
    path, body = received[0]
    assert path == "/v1/metrics"
    metric = body["resourceMetrics"][0]["scopeMetrics"][0]["metrics"][0]
    assert metric["name"] == IMAGES_REMOVED_COUNTER
    assert metric["sum"]["dataPoints"][0]["asInt"] == "3"