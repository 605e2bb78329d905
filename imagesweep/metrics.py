"""A small metrics pipeline: counters and histograms, collected and pushed over OTLP/HTTP."""

from __future__ import annotations

import bisect
import json
import logging
import os
import re
import threading
import time
import urllib.request
from typing import Any, Mapping

IMAGES_REMOVED_COUNTER = "images_removed_run_total"
IMAGES_REMOVED_DESCRIPTION = "total images removed"
DURATION_HISTOGRAM = "imagejob_duration_run_seconds"
DURATION_BOUNDARIES = (0.0, 10.0, 20.0, 30.0, 40.0, 50.0, 60.0)
DEFAULT_BOUNDARIES = (
    0.0, 5.0, 10.0, 25.0, 50.0, 75.0, 100.0, 250.0, 500.0,
    750.0, 1000.0, 2500.0, 5000.0, 7500.0, 10000.0,
)

_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9_.\-]{0,62}$")
_log = logging.getLogger("metrics")


def _attr_key(attributes: Mapping[str, Any] | None) -> tuple[tuple[str, Any], ...]:
    return tuple(sorted((attributes or {}).items()))


class _Instrument:
    kind = ""

    def __init__(self, name: str, description: str, unit: str) -> None:
        if not _NAME.match(name):
            raise ValueError(f"invalid instrument name: {name!r}")
        self.name = name
        self.description = description
        self.unit = unit
        self.start = time.time_ns()
        self._lock = threading.Lock()


class Counter(_Instrument):
    """A monotonic cumulative sum per attribute set."""

    kind = "sum"

    def __init__(self, name: str, description: str = "", unit: str = "") -> None:
        super().__init__(name, description, unit)
        self._sums: dict[tuple[tuple[str, Any], ...], int | float] = {}

    def add(self, value: int | float, attributes: Mapping[str, Any] | None = None) -> None:
        if value < 0:
            raise ValueError("counter values must not be negative")
        key = _attr_key(attributes)
        with self._lock:
            self._sums[key] = self._sums.get(key, 0) + value

    def _points(self) -> list[dict[str, Any]]:
        with self._lock:
            return [{"attributes": dict(k), "value": v} for k, v in self._sums.items()]


class Histogram(_Instrument):
    """Explicit-bucket histogram per attribute set."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        description: str = "",
        unit: str = "",
        boundaries: tuple[float, ...] = DEFAULT_BOUNDARIES,
    ) -> None:
        super().__init__(name, description, unit)
        self.boundaries = tuple(boundaries)
        self._data: dict[tuple[tuple[str, Any], ...], dict[str, Any]] = {}

    def record(self, value: float, attributes: Mapping[str, Any] | None = None) -> None:
        key = _attr_key(attributes)
        with self._lock:
            point = self._data.setdefault(
                key,
                {"count": 0, "sum": 0.0, "min": value, "max": value,
                 "bucket_counts": [0] * (len(self.boundaries) + 1)},
            )
            point["count"] += 1
            point["sum"] += value
            point["min"] = min(point["min"], value)
            point["max"] = max(point["max"], value)
            point["bucket_counts"][bisect.bisect_left(self.boundaries, value)] += 1

    def _points(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {"attributes": dict(k), **p, "bucket_counts": list(p["bucket_counts"]),
                 "explicit_bounds": list(self.boundaries)}
                for k, p in self._data.items()
            ]


class Meter:
    """Creates and keeps the instruments of one instrumentation scope."""

    def __init__(self, name: str, views: Mapping[str, dict[str, Any]]) -> None:
        self.name = name
        self._views = views
        self._instruments: dict[str, _Instrument] = {}

    def counter(self, name: str, description: str = "", unit: str = "") -> Counter:
        existing = self._instruments.get(name)
        if isinstance(existing, Counter):
            return existing
        if existing is not None:
            raise ValueError(f"instrument {name!r} already exists with another kind")
        created = Counter(name, description, unit)
        self._instruments[name] = created
        return created

    def histogram(self, name: str, description: str = "", unit: str = "") -> Histogram:
        existing = self._instruments.get(name)
        if isinstance(existing, Histogram):
            return existing
        if existing is not None:
            raise ValueError(f"instrument {name!r} already exists with another kind")
        view = self._views.get(name, {})
        created = Histogram(
            name,
            description,
            view.get("unit", unit),
            tuple(view.get("boundaries", DEFAULT_BOUNDARIES)),
        )
        self._instruments[name] = created
        return created

    def _snapshot(self) -> list[dict[str, Any]]:
        out = []
        for inst in self._instruments.values():
            points = inst._points()  # noqa: SLF001
            if points:
                out.append({"name": inst.name, "description": inst.description,
                            "unit": inst.unit, "kind": inst.kind,
                            "start_time": inst.start, "data_points": points})
        return out


class ManualReader:
    """Collects the current state of the provider it is registered with."""

    def __init__(self) -> None:
        self._provider: MeterProvider | None = None

    def collect(self) -> dict[str, Any]:
        if self._provider is None:
            raise RuntimeError("reader is not registered with a meter provider")
        scopes = []
        for meter in self._provider._meters.values():  # noqa: SLF001
            metrics = meter._snapshot()  # noqa: SLF001
            if metrics:
                scopes.append({"scope": {"name": meter.name}, "metrics": metrics})
        return {"time": time.time_ns(), "scope_metrics": scopes}


class MeterProvider:
    """Hands out meters by name; views override histogram units and buckets."""

    def __init__(
        self,
        reader: ManualReader | None = None,
        views: Mapping[str, dict[str, Any]] | None = None,
    ) -> None:
        self._views = dict(views or {})
        self._meters: dict[str, Meter] = {}
        if reader is not None:
            if reader._provider is not None:  # noqa: SLF001
                raise ValueError("reader is already registered")
            reader._provider = self  # noqa: SLF001

    def meter(self, name: str) -> Meter:
        if name not in self._meters:
            self._meters[name] = Meter(name, self._views)
        return self._meters[name]


def _otlp_value(value: Any) -> dict[str, Any]:
    if isinstance(value, bool):
        return {"boolValue": value}
    if isinstance(value, int):
        return {"intValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    return {"stringValue": str(value)}


def _otlp_point(point: dict[str, Any], start: int, now: int) -> dict[str, Any]:
    out: dict[str, Any] = {
        "attributes": [{"key": k, "value": _otlp_value(v)} for k, v in point["attributes"].items()],
        "startTimeUnixNano": str(start),
        "timeUnixNano": str(now),
    }
    if "value" in point:
        value = point["value"]
        if isinstance(value, int):
            out["asInt"] = str(value)
        else:
            out["asDouble"] = value
    else:
        out.update(count=str(point["count"]), sum=point["sum"], min=point["min"],
                   max=point["max"], bucketCounts=[str(c) for c in point["bucket_counts"]],
                   explicitBounds=point["explicit_bounds"])
    return out


class OtlpHttpExporter:
    """Pushes collected metrics as OTLP JSON to ``<endpoint>/v1/metrics``."""

    def __init__(self, endpoint: str, insecure: bool = True, timeout: float = 10.0) -> None:
        scheme = "http" if insecure else "https"
        self.url = f"{scheme}://{endpoint}/v1/metrics"
        self.timeout = timeout

    def to_otlp(self, metrics: dict[str, Any]) -> dict[str, Any]:
        now = metrics["time"]
        scopes = []
        for scope in metrics["scope_metrics"]:
            items = []
            for m in scope["metrics"]:
                points = [_otlp_point(p, m["start_time"], now) for p in m["data_points"]]
                entry: dict[str, Any] = {"name": m["name"], "description": m["description"],
                                         "unit": m["unit"]}
                if m["kind"] == "sum":
                    entry["sum"] = {"dataPoints": points, "aggregationTemporality": 2,
                                    "isMonotonic": True}
                else:
                    entry["histogram"] = {"dataPoints": points, "aggregationTemporality": 2}
                items.append(entry)
            scopes.append({"scope": scope["scope"], "metrics": items})
        return {"resourceMetrics": [{"resource": {"attributes": []}, "scopeMetrics": scopes}]}

    def export(self, metrics: dict[str, Any]) -> None:
        body = json.dumps(self.to_otlp(metrics)).encode()
        request = urllib.request.Request(
            self.url, data=body, method="POST", headers={"Content-Type": "application/json"}
        )
        with urllib.request.urlopen(request, timeout=self.timeout) as response:
            response.read()


def configure_metrics(endpoint: str) -> tuple[OtlpHttpExporter, ManualReader, MeterProvider]:
    """Build an exporter, a reader and a provider with the job-duration view."""
    exporter = OtlpHttpExporter(endpoint, insecure=True)
    reader = ManualReader()
    provider = MeterProvider(
        reader, views={DURATION_HISTOGRAM: {"unit": "s", "boundaries": DURATION_BOUNDARIES}}
    )
    return exporter, reader, provider


def export_metrics(exporter: OtlpHttpExporter, reader: ManualReader) -> None:
    """Collect and export once; failures are logged, not raised."""
    try:
        collected = reader.collect()
    except Exception:
        _log.exception("failed to collect metrics")
        return
    try:
        exporter.export(collected)
    except Exception:
        _log.exception("failed to export metrics")


def _node_attributes() -> dict[str, str]:
    return {"node name": os.environ.get("NODE_NAME", "")}


def record_metrics_eraser(provider: MeterProvider, total_removed: int) -> None:
    provider.meter("eraser").counter(
        IMAGES_REMOVED_COUNTER, IMAGES_REMOVED_DESCRIPTION, "1"
    ).add(int(total_removed), _node_attributes())


def record_metrics_scanner(provider: MeterProvider, total_vulnerable: int) -> None:
    provider.meter("eraser").counter(
        "vulnerable_images_run_total", "total vulnerable images", "1"
    ).add(int(total_vulnerable), _node_attributes())


def record_metrics_controller(
    provider: MeterProvider, job_duration: float, pods_completed: int, pods_failed: int
) -> None:
    meter = provider.meter("eraser")
    meter.histogram(DURATION_HISTOGRAM, "duration of imagejob", "s").record(job_duration)
    meter.counter("pods_completed_run_total", "total pods completed", "1").add(pods_completed)
    meter.counter("pods_failed_run_total", "total pods failed", "1").add(pods_failed)
    meter.counter("imagejob_run_total", "total number of imagejobs completed", "1").add(1)