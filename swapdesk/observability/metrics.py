"""In-process metrics for the settlement passes.

Every series is keyed by name plus an optional label set, so the same
counter can be split by pass, order type or ledger source. The scheduler
folds each pass report into the collector with ``record_pass``; the API
renders the lot in Prometheus text format.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Any, Mapping

Labels = tuple[tuple[str, str], ...]
SeriesKey = tuple[str, Labels]


@dataclass
class Timing:
    count: int = 0
    total: float = 0.0
    max: float = 0.0

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.max = max(self.max, value)


def _label_value(value: Any) -> str:
    return str(value.value) if isinstance(value, Enum) else str(value)


def _key(name: str, labels: Mapping[str, Any]) -> SeriesKey:
    return name, tuple(sorted((k, _label_value(v)) for k, v in labels.items()))


def _prom_name(name: str, prefix: str) -> str:
    return f"{prefix}_" + name.replace(".", "_").replace("-", "_")


def _prom_labels(labels: Labels) -> str:
    if not labels:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in labels) + "}"


def _is_count(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class MetricsCollector:
    """Thread-safe counters, gauges and timings."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[SeriesKey, float] = defaultdict(float)
        self._gauges: dict[SeriesKey, float] = {}
        self._timings: dict[SeriesKey, Timing] = defaultdict(Timing)

    def incr(self, name: str, value: float = 1.0, **labels: Any) -> None:
        with self._lock:
            self._counters[_key(name, labels)] += value

    def gauge(self, name: str, value: float, **labels: Any) -> None:
        with self._lock:
            self._gauges[_key(name, labels)] = value

    def observe(self, name: str, value: float, **labels: Any) -> None:
        with self._lock:
            self._timings[_key(name, labels)].observe(value)

    def counter(self, name: str, **labels: Any) -> float:
        """Sum of every ``name`` series whose labels include ``labels``."""
        wanted = set(_key(name, labels)[1])
        with self._lock:
            return sum(
                value for (series, series_labels), value in self._counters.items()
                if series == name and wanted <= set(series_labels)
            )

    def gauge_value(self, name: str, **labels: Any) -> float | None:
        with self._lock:
            return self._gauges.get(_key(name, labels))

    def record_pass(
        self,
        pass_name: str,
        report: Mapping[str, Any],
        duration_secs: float,
        status: str = "ok",
    ) -> None:
        """Fold one batch pass into the collector.

        Numeric report fields become ``pass.<field>`` counters labelled by
        pass; nested count maps (the winner-trade outcomes) are flattened to
        ``pass.<field>_<outcome>``. The pass duration is both timed and kept
        as a last-value gauge.
        """
        self.incr("scheduler.passes", pass_name=pass_name, status=status)
        self.observe("scheduler.pass_secs", duration_secs, pass_name=pass_name)
        self.gauge("scheduler.last_pass_secs", duration_secs, pass_name=pass_name)
        for field_name, value in report.items():
            if _is_count(value):
                self.incr(f"pass.{field_name}", value, pass_name=pass_name)
            elif isinstance(value, Mapping):
                for outcome, count in value.items():
                    if _is_count(count):
                        self.incr(f"pass.{field_name}_{outcome}", count, pass_name=pass_name)

    def snapshot(self) -> dict[str, Any]:
        """JSON-serializable view, series names rendered with their labels."""
        def _label(key: SeriesKey) -> str:
            name, labels = key
            return name + _prom_labels(labels)

        with self._lock:
            return {
                "counters": {_label(k): v for k, v in self._counters.items()},
                "gauges": {_label(k): v for k, v in self._gauges.items()},
                "timings": {
                    _label(k): {"count": t.count, "sum": round(t.total, 6), "max": t.max}
                    for k, t in self._timings.items()
                },
            }

    def render_prometheus(self, prefix: str = "swapdesk") -> list[str]:
        lines: list[str] = []
        with self._lock:
            counters = sorted(self._counters.items())
            gauges = sorted(self._gauges.items())
            timings = sorted(self._timings.items())
        typed: set[str] = set()

        def _type(metric: str, kind: str) -> None:
            if metric not in typed:
                typed.add(metric)
                lines.append(f"# TYPE {metric} {kind}")

        for (name, labels), value in counters:
            metric = _prom_name(name, prefix) + "_total"
            _type(metric, "counter")
            lines.append(f"{metric}{_prom_labels(labels)} {value}")
        for (name, labels), value in gauges:
            metric = _prom_name(name, prefix)
            _type(metric, "gauge")
            lines.append(f"{metric}{_prom_labels(labels)} {value}")
        for (name, labels), timing in timings:
            metric = _prom_name(name, prefix)
            _type(metric, "summary")
            lines.append(f"{metric}_count{_prom_labels(labels)} {timing.count}")
            lines.append(f"{metric}_sum{_prom_labels(labels)} {round(timing.total, 6)}")
        return lines

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._timings.clear()


metrics = MetricsCollector()
