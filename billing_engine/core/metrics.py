"""Lightweight in-memory metrics (Prometheus text format)."""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Optional, Tuple


def _sanitize_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"")


def _format_labels(label_names: List[str], values: Tuple[str, ...]) -> str:
    if not label_names:
        return ""
    parts = [f'{name}="{_sanitize_label_value(val)}"' for name, val in zip(label_names, values)]
    return "{" + ",".join(parts) + "}"


class _LabeledMetric:
    kind = "untyped"

    def __init__(self, name: str, label_names: Optional[Iterable[str]] = None):
        self.name = name
        self.label_names = list(label_names or [])
        self._values: Dict[Tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _label_tuple(self, labels: Optional[Dict[str, str]]) -> Tuple[str, ...]:
        labels = labels or {}
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def _add(self, labels: Optional[Dict[str, str]], amount: float) -> None:
        key = self._label_tuple(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._values.get(self._label_tuple(labels), 0.0)

    def export(self) -> List[str]:
        lines = [f"# TYPE {self.name} {self.kind}"]
        with self._lock:
            for label_values, value in self._values.items():
                labels = _format_labels(self.label_names, label_values)
                lines.append(f"{self.name}{labels} {value}")
        return lines

    def reset(self):
        with self._lock:
            self._values.clear()


class Counter(_LabeledMetric):
    kind = "counter"

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0):
        if amount < 0:
            raise ValueError("counters only go up")
        self._add(labels, amount)


class Gauge(_LabeledMetric):
    kind = "gauge"

    def set(self, value: float, labels: Optional[Dict[str, str]] = None):
        key = self._label_tuple(labels)
        with self._lock:
            self._values[key] = float(value)


class MetricsRegistry:
    def __init__(self):
        self.metrics: Dict[str, _LabeledMetric] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, cls, name: str, label_names: Optional[Iterable[str]]):
        with self._lock:
            metric = self.metrics.get(name)
            if metric is None:
                metric = cls(name, label_names)
                self.metrics[name] = metric
            elif not isinstance(metric, cls):
                raise ValueError(f"metric {name} already registered as {metric.kind}")
            return metric

    def counter(self, name: str, label_names: Optional[Iterable[str]] = None) -> Counter:
        return self._get_or_create(Counter, name, label_names)

    def gauge(self, name: str, label_names: Optional[Iterable[str]] = None) -> Gauge:
        return self._get_or_create(Gauge, name, label_names)

    def export_prometheus(self) -> str:
        lines: List[str] = []
        for metric in list(self.metrics.values()):
            lines.extend(metric.export())
        return "\n".join(lines) + "\n"

    def reset(self):
        for metric in self.metrics.values():
            metric.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter("http_requests_total", ["method", "path", "status"])
subscription_transitions_total = METRICS.counter("subscription_transitions_total", ["command", "result"])
billing_events_appended_total = METRICS.counter("billing_events_appended_total", ["kind"])
gateway_charges_total = METRICS.counter("gateway_charges_total", ["result"])
scheduler_dispatch_total = METRICS.counter("scheduler_dispatch_total", ["action"])

scheduler_last_scan_due = METRICS.gauge("scheduler_last_scan_due")


_ID_RE = re.compile(r"^(sub_[0-9a-fA-F]+|[0-9a-fA-F-]{8,})$")


def normalize_path(path: str) -> str:
    """Reduce cardinality by replacing id/number segments with :id."""
    parts = []
    for segment in path.split("/"):
        if not segment:
            continue
        if segment.isdigit() or _ID_RE.match(segment):
            parts.append(":id")
        else:
            parts.append(segment)
    return "/" + "/".join(parts)
