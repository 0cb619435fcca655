"""
In-process metrics for remediation attempts.

The orchestrator reports through the ``track_*`` helpers; ``get_metrics_text``
renders everything in the Prometheus text exposition format so an embedding
service can serve it from its own ``/metrics`` route.
"""

import threading
from typing import Dict, List, Optional, Tuple

LabelKey = Tuple[Tuple[str, str], ...]

HELP = {
    "adapt_remediation_total": "Attempts that reached a terminal disposition",
    "adapt_remediation_duration_seconds": "Attempt duration from detection to disposition",
    "adapt_remediation_rollbacks_total": "Rollbacks performed",
    "adapt_remediation_backups_restored_total": "Backups restored by rollbacks",
    "adapt_remediation_active_attempts": "Attempts currently in flight",
    "adapt_remediation_deployments_total": "Deployments by strategy and health outcome",
}


def _label_key(labels: Optional[Dict[str, str]]) -> LabelKey:
    return tuple(sorted((labels or {}).items()))


def _render_labels(key: LabelKey) -> str:
    if not key:
        return ""
    return "{" + ",".join(f'{name}="{value}"' for name, value in key) + "}"


class MetricsCollector:
    """
    Process-wide store of gauges, counters and histogram observations.

    There is one instance per process (``MetricsCollector() is metrics``);
    worker threads update it concurrently.
    """

    _instance = None
    _instance_lock = threading.Lock()

    def __new__(cls):
        with cls._instance_lock:
            if cls._instance is None:
                instance = super().__new__(cls)
                instance._lock = threading.Lock()
                instance._gauges = {}
                instance._counters = {}
                instance._observations = {}
                cls._instance = instance
        return cls._instance

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        with self._lock:
            self._gauges.setdefault(name, {})[_label_key(labels)] = value

    def increment_counter(self, name: str, value: int = 1, labels: Optional[Dict[str, str]] = None):
        key = _label_key(labels)
        with self._lock:
            series = self._counters.setdefault(name, {})
            series[key] = series.get(key, 0) + value

    def record_histogram(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        with self._lock:
            self._observations.setdefault(name, {}).setdefault(_label_key(labels), []).append(value)

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> int:
        with self._lock:
            return self._counters.get(name, {}).get(_label_key(labels), 0)

    def reset(self) -> None:
        with self._lock:
            self._gauges.clear()
            self._counters.clear()
            self._observations.clear()

    def get_metrics(self) -> str:
        """
        Render all series in Prometheus text format.

        Histograms are exported as ``_count`` and ``_sum`` only.
        """
        lines: List[str] = []

        def header(name: str, kind: str) -> None:
            if name in HELP:
                lines.append(f"# HELP {name} {HELP[name]}")
            lines.append(f"# TYPE {name} {kind}")

        with self._lock:
            for kind, store in (("gauge", self._gauges), ("counter", self._counters)):
                for name in sorted(store):
                    header(name, kind)
                    for key, value in store[name].items():
                        lines.append(f"{name}{_render_labels(key)} {value}")

            for name in sorted(self._observations):
                header(name, "histogram")
                for key, values in self._observations[name].items():
                    labels = _render_labels(key)
                    lines.append(f"{name}_count{labels} {len(values)}")
                    lines.append(f"{name}_sum{labels} {sum(values)}")

        return "\n".join(lines)


metrics = MetricsCollector()


def track_remediation_total(disposition: str, reason: Optional[str] = None):
    metrics.increment_counter(
        "adapt_remediation_total",
        labels={"disposition": disposition, "reason": reason or "none"}
    )


def track_remediation_duration(duration_seconds: float, disposition: str):
    metrics.record_histogram(
        "adapt_remediation_duration_seconds", duration_seconds, {"disposition": disposition}
    )


def track_rollback(restored: int):
    """Count one rollback and the number of backups it put back."""
    metrics.increment_counter("adapt_remediation_rollbacks_total")
    metrics.increment_counter("adapt_remediation_backups_restored_total", restored)


def track_active_attempts(count: int):
    metrics.set_gauge("adapt_remediation_active_attempts", count)


def track_deployment(strategy: str, healthy: bool):
    metrics.increment_counter(
        "adapt_remediation_deployments_total",
        labels={"strategy": strategy, "healthy": str(healthy).lower()}
    )


def get_metrics_text() -> str:
    return metrics.get_metrics()
