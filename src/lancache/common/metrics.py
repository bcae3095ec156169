"""Metrics utilities for exposing Prometheus-formatted data."""

from __future__ import annotations

import threading
from typing import Dict, Sequence


DEFAULT_BUCKETS = [0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]

LabelValues = tuple[str, ...]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_labels(names: Sequence[str], values: Sequence[str], extra: str | None = None) -> str:
    pairs = [f'{name}="{_escape(value)}"' for name, value in zip(names, values)]
    if extra:
        pairs.append(extra)
    if not pairs:
        return ""
    return "{" + ",".join(pairs) + "}"


def _format_value(value: float) -> str:
    if value == int(value):
        return str(int(value))
    return repr(value)


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, description: str = "", labelnames: Sequence[str] = ()) -> None:
        self.name = name
        self.description = description
        self.labelnames = tuple(labelnames)
        self._lock = threading.Lock()

    def _key(self, labels: Dict[str, str]) -> LabelValues:
        if set(labels) != set(self.labelnames):
            raise ValueError(f"{self.name} expects labels {self.labelnames}, got {tuple(labels)}")
        return tuple(str(labels[name]) for name in self.labelnames)

    def _header(self) -> list[str]:
        return [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]


class Counter(_Metric):
    kind = "counter"

    def __init__(self, name: str, description: str = "", labelnames: Sequence[str] = ()) -> None:
        super().__init__(name, description, labelnames)
        self._values: Dict[LabelValues, float] = {}

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        if amount < 0:
            raise ValueError("counters can only increase")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, **labels: str) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def render(self) -> str:
        lines = self._header()
        with self._lock:
            values = dict(self._values)
        if not values and not self.labelnames:
            values[()] = 0.0
        for key in sorted(values):
            lines.append(f"{self.name}{_format_labels(self.labelnames, key)} {_format_value(values[key])}")
        return "\n".join(lines) + "\n"


class _HistogramSeries:
    __slots__ = ("counts", "sum", "count")

    def __init__(self, buckets: Sequence[float]) -> None:
        self.counts = [0] * len(buckets)
        self.sum = 0.0
        self.count = 0


class Histogram(_Metric):
    kind = "histogram"

    def __init__(
        self,
        name: str,
        buckets: Sequence[float] | None = None,
        description: str = "",
        labelnames: Sequence[str] = (),
    ) -> None:
        super().__init__(name, description, labelnames)
        self._buckets = sorted(buckets or DEFAULT_BUCKETS)
        self._series: Dict[LabelValues, _HistogramSeries] = {}

    def observe(self, value: float, **labels: str) -> None:
        key = self._key(labels)
        with self._lock:
            series = self._series.get(key)
            if series is None:
                series = self._series[key] = _HistogramSeries(self._buckets)
            series.count += 1
            series.sum += value
            for index, bucket in enumerate(self._buckets):
                if value <= bucket:
                    series.counts[index] += 1

    def count(self, **labels: str) -> int:
        key = self._key(labels)
        with self._lock:
            series = self._series.get(key)
            return series.count if series else 0

    def render(self) -> str:
        lines = self._header()
        with self._lock:
            snapshot = {
                key: (list(series.counts), series.sum, series.count) for key, series in self._series.items()
            }
        for key in sorted(snapshot):
            counts, total, count = snapshot[key]
            # bucket counts are already cumulative because each observation lands in every bucket >= value
            for bucket, bucket_count in zip(self._buckets, counts):
                labels = _format_labels(self.labelnames, key, f'le="{bucket}"')
                lines.append(f"{self.name}_bucket{labels} {bucket_count}")
            labels = _format_labels(self.labelnames, key, 'le="+Inf"')
            lines.append(f"{self.name}_bucket{labels} {count}")
            plain = _format_labels(self.labelnames, key)
            lines.append(f"{self.name}_sum{plain} {total}")
            lines.append(f"{self.name}_count{plain} {count}")
        return "\n".join(lines) + "\n"


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def register(self, metric):
        with self._lock:
            existing = self._metrics.get(metric.name)
            if existing is not None:
                return existing
            self._metrics[metric.name] = metric
        return metric

    def render(self) -> str:
        with self._lock:
            metrics = list(self._metrics.values())
        return "\n".join(metric.render() for metric in metrics) + "\n"


GLOBAL_REGISTRY = MetricsRegistry()
