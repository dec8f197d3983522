"""Node resource metrics and Prometheus text export.

Provides a lightweight in-process registry for counters and gauges,
the node-level gauges the capacity engine reports (schedule state and
the latest offline resource candidate), and an exporter loop that
periodically writes a Prometheus text snapshot for a node exporter's
textfile collector.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping

LOGGER = logging.getLogger(__name__)

SCHEDULE_DISABLED = "node_schedule_disabled"
OFFLINE_RESOURCE_PREFIX = "node_resource_offline_"
CAPACITY_CHANGES = "capacity_changes_total"
CAPACITY_INCREASE_THROTTLED = "capacity_increase_throttled_total"
NM_RESTARTS = "nodemanager_restarts_total"


# ---------------------------------------------------------------------------
# Metric types
# ---------------------------------------------------------------------------


class MetricType(Enum):
    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass
class MetricValue:
    """A single metric with its current value."""

    name: str
    metric_type: MetricType
    value: float = 0.0
    updated_at: float = 0.0

    def increment(self, amount: float = 1.0, now: float | None = None) -> None:
        self.value += amount
        self.updated_at = now or time.monotonic()

    def set(self, value: float, now: float | None = None) -> None:
        self.value = value
        self.updated_at = now or time.monotonic()


# ---------------------------------------------------------------------------
# Metric snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetricSnapshot:
    """A point-in-time snapshot of all metrics."""

    timestamp: float
    metrics: Dict[str, float]
    types: Dict[str, MetricType] = field(default_factory=dict)

    def to_prometheus_text(self) -> str:
        """Export metrics in Prometheus text exposition format."""
        lines: list[str] = []
        for name, value in sorted(self.metrics.items()):
            prom_name = name.replace(".", "_").replace("-", "_")
            metric_type = self.types.get(name)
            if metric_type is not None:
                lines.append(f"# TYPE {prom_name} {metric_type.value}")
            lines.append(f"{prom_name} {value}")
        return "\n".join(lines) + "\n" if lines else ""


# ---------------------------------------------------------------------------
# Metrics registry
# ---------------------------------------------------------------------------


class MetricsRegistry:
    """Thread-safe registry of named counters and gauges.

    Usage::

        registry = MetricsRegistry()
        registry.counter("capacity_changes_total").increment()
        registry.gauge("node_schedule_disabled").set(1)
        text = registry.snapshot().to_prometheus_text()
    """

    def __init__(self) -> None:
        self._metrics: Dict[str, MetricValue] = {}
        self._lock = threading.Lock()

    def counter(self, name: str) -> MetricValue:
        return self._get_or_create(name, MetricType.COUNTER)

    def gauge(self, name: str) -> MetricValue:
        return self._get_or_create(name, MetricType.GAUGE)

    def get(self, name: str) -> MetricValue | None:
        with self._lock:
            return self._metrics.get(name)

    def remove(self, name: str) -> None:
        with self._lock:
            self._metrics.pop(name, None)

    def snapshot(self, now: float | None = None) -> MetricSnapshot:
        if now is None:
            now = time.time()
        with self._lock:
            values = {name: mv.value for name, mv in self._metrics.items()}
            types = {name: mv.metric_type for name, mv in self._metrics.items()}
        return MetricSnapshot(timestamp=now, metrics=values, types=types)

    def metric_names(self) -> list[str]:
        with self._lock:
            return sorted(self._metrics.keys())

    def _get_or_create(self, name: str, metric_type: MetricType) -> MetricValue:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = MetricValue(name=name, metric_type=metric_type)
                self._metrics[name] = metric
            return metric


# ---------------------------------------------------------------------------
# Node metrics
# ---------------------------------------------------------------------------


class NodeMetrics:
    """Gauges reported by the capacity engine."""

    def __init__(self, registry: MetricsRegistry | None = None) -> None:
        self._registry = registry or MetricsRegistry()

    @property
    def registry(self) -> MetricsRegistry:
        return self._registry

    def set_schedule_disabled(self, value: int) -> None:
        self._registry.gauge(SCHEDULE_DISABLED).set(float(value))

    def reset_offline_resource(self, allocation: Mapping[str, int]) -> None:
        """Replace the offline resource gauges with ``allocation``.

        Kinds missing from ``allocation`` are dropped rather than left stale.
        """
        for name in self._registry.metric_names():
            if name.startswith(OFFLINE_RESOURCE_PREFIX):
                self._registry.remove(name)
        for kind, quantity in allocation.items():
            self._registry.gauge(OFFLINE_RESOURCE_PREFIX + kind).set(float(quantity))

    def record_capacity_change(self) -> None:
        self._registry.counter(CAPACITY_CHANGES).increment()

    def record_increase_throttled(self) -> None:
        self._registry.counter(CAPACITY_INCREASE_THROTTLED).increment()

    def record_restart(self) -> None:
        self._registry.counter(NM_RESTARTS).increment()


# ---------------------------------------------------------------------------
# Exporter
# ---------------------------------------------------------------------------


class MetricsExporter:
    """Writes registry snapshots to a Prometheus textfile until stopped.

    Parameters
    ----------
    registry:
        Registry to snapshot.
    path:
        Output file. Written atomically via a temp file and rename.
    interval_seconds:
        Seconds between writes. Default 15.
    """

    def __init__(
        self,
        registry: MetricsRegistry,
        path: str | Path,
        interval_seconds: float = 15.0,
    ) -> None:
        self._registry = registry
        self._path = Path(path)
        self._interval = interval_seconds
        self._writes = 0

    @property
    def writes(self) -> int:
        return self._writes

    def export_once(self) -> None:
        text = self._registry.snapshot().to_prometheus_text()
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(text, encoding="utf-8")
        os.replace(tmp_path, self._path)
        self._writes += 1

    def run(self, stop_event: threading.Event) -> None:
        LOGGER.info("metrics exporter writing to %s every %.1fs", self._path, self._interval)
        while not stop_event.is_set():
            try:
                self.export_once()
            except OSError as exc:
                LOGGER.warning("metrics export to %s failed: %s", self._path, exc)
            stop_event.wait(self._interval)
        LOGGER.info("metrics exporter stopped")
