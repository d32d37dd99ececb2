"""
Engine Metrics: labelled counters, gauges and latency histograms

Every series of a store is labelled with the store name, so several
stores can share one collector:

    reliastore_loads_total{store="players"} 12.0
    reliastore_saves_total{outcome="written",store="players"} 40.0
    reliastore_save_seconds_bucket{le="0.05",store="players"} 38

No exporter is started; ``MetricsCollector.export_prometheus()`` renders
the text exposition format for hosts that scrape it.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Iterator, Optional, Sequence

# Sorted (label, value) pairs; one entry per series of a metric.
SeriesKey = tuple[tuple[str, str], ...]

LATENCY_BUCKETS: tuple[float, ...] = (
    0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0,
)


def _render_labels(key: SeriesKey, extra: str = "") -> str:
    pairs = [extra] if extra else []
    pairs += [f'{name}="{value}"' for name, value in key]
    return "{" + ",".join(pairs) + "}" if pairs else ""


class _Metric:
    """Name, help text and label schema shared by every metric kind."""

    kind = "untyped"

    __slots__ = ("name", "help_text", "label_names", "_lock")

    def __init__(self, name: str, label_names: Sequence[str] = (), help_text: str = "") -> None:
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names)
        self._lock = threading.Lock()

    def _series(self, labels: dict[str, str]) -> SeriesKey:
        # Unknown labels are dropped; missing ones render empty.
        return tuple(sorted((k, str(labels.get(k, ""))) for k in self.label_names))

    def header(self) -> list[str]:
        lines = [f"# HELP {self.name} {self.help_text}"] if self.help_text else []
        lines.append(f"# TYPE {self.name} {self.kind}")
        return lines


class Counter(_Metric):
    """
    Monotonically increasing count.

        saves = Counter("reliastore_saves_total", ["store", "outcome"])
        saves.inc(store="players", outcome="written")
    """

    kind = "counter"

    __slots__ = ("_values",)

    def __init__(self, name: str, label_names: Sequence[str] = (), help_text: str = "") -> None:
        super().__init__(name, label_names, help_text)
        self._values: dict[SeriesKey, float] = {}

    def inc(self, value: float = 1.0, **labels: str) -> None:
        if value < 0:
            raise ValueError("Counter can only increase")
        key = self._series(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + value

    def get(self, **labels: str) -> float:
        with self._lock:
            return self._values.get(self._series(labels), 0.0)

    def render(self) -> list[str]:
        with self._lock:
            series = sorted(self._values.items())
        return [f"{self.name}{_render_labels(key)} {value}" for key, value in series]


class Gauge(Counter):
    """Point-in-time value, e.g. the number of active sessions."""

    kind = "gauge"

    __slots__ = ()

    def set(self, value: float, **labels: str) -> None:
        key = self._series(labels)
        with self._lock:
            self._values[key] = float(value)


class Histogram(_Metric):
    """
    Cumulative-bucket latency histogram.

        latency = Histogram("reliastore_save_seconds", ["store"])
        with latency.time(store="players"):
            await engine.save(identity)
    """

    kind = "histogram"

    __slots__ = ("_bounds", "_series_data")

    def __init__(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
        buckets: Optional[Sequence[float]] = None,
    ) -> None:
        super().__init__(name, label_names, help_text)
        self._bounds = tuple(sorted(buckets or LATENCY_BUCKETS))
        # series -> [per-bucket counts..., +Inf count], running sum
        self._series_data: dict[SeriesKey, tuple[list[int], list[float]]] = {}

    def observe(self, value: float, **labels: str) -> None:
        key = self._series(labels)
        with self._lock:
            counts, total = self._series_data.setdefault(
                key, ([0] * (len(self._bounds) + 1), [0.0])
            )
            for i, bound in enumerate(self._bounds):
                if value <= bound:
                    counts[i] += 1
            counts[-1] += 1
            total[0] += value

    @contextmanager
    def time(self, **labels: str) -> Iterator[None]:
        """Observe the wall time spent inside the block, even when it raises."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(time.perf_counter() - start, **labels)

    def render(self) -> list[str]:
        with self._lock:
            series = sorted(
                (key, list(counts), total[0])
                for key, (counts, total) in self._series_data.items()
            )
        lines: list[str] = []
        for key, counts, total in series:
            for bound, count in zip(self._bounds + (float("inf"),), counts):
                le = 'le="+Inf"' if bound == float("inf") else f'le="{bound}"'
                lines.append(f"{self.name}_bucket{_render_labels(key, le)} {count}")
            lines.append(f"{self.name}_sum{_render_labels(key)} {total}")
            lines.append(f"{self.name}_count{_render_labels(key)} {counts[-1]}")
        return lines


class MetricsCollector:
    """
    Registry of metrics, get-or-create by name.

    Usage:
        collector = MetricsCollector()
        players = ReliableStore("players", {...}, backend, collector=collector)
        pets = ReliableStore("pets", {...}, backend, collector=collector)
        text = collector.export_prometheus()
    """

    __slots__ = ("_metrics", "_lock")

    def __init__(self) -> None:
        self._metrics: dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def _register(self, kind: type, name: str, *args: object) -> _Metric:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = self._metrics[name] = kind(name, *args)
            elif type(metric) is not kind:
                raise ValueError(f"Metric {name} already registered as a {metric.kind}")
            return metric

    def counter(self, name: str, label_names: Sequence[str] = (), help_text: str = "") -> Counter:
        return self._register(Counter, name, label_names, help_text)

    def gauge(self, name: str, label_names: Sequence[str] = (), help_text: str = "") -> Gauge:
        return self._register(Gauge, name, label_names, help_text)

    def histogram(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
        buckets: Optional[Sequence[float]] = None,
    ) -> Histogram:
        return self._register(Histogram, name, label_names, help_text, buckets)

    def export_prometheus(self) -> str:
        """Render every registered metric in the Prometheus text format."""
        with self._lock:
            metrics = list(self._metrics.values())
        lines: list[str] = []
        for metric in metrics:
            lines += metric.header()
            lines += metric.render()
        return "\n".join(lines)


class EngineMetrics:
    """
    Named metrics of one store, labelled by store name.

    Collected in a private ``MetricsCollector`` unless one is passed in.
    """

    __slots__ = (
        "store", "collector", "loads", "rejections", "saves", "conflicts",
        "save_failures", "lease_thefts", "migration_failures",
        "active_sessions", "save_latency",
    )

    def __init__(self, store: str, collector: Optional[MetricsCollector] = None) -> None:
        self.store = store
        self.collector = collector if collector is not None else MetricsCollector()
        c = self.collector
        self.loads = c.counter(
            "reliastore_loads_total", ["store"], "Sessions opened")
        self.rejections = c.counter(
            "reliastore_rejections_total", ["store"], "Sessions refused or evicted over a lease")
        self.saves = c.counter(
            "reliastore_saves_total", ["store", "outcome"], "Completed saves by outcome")
        self.conflicts = c.counter(
            "reliastore_conflicts_total", ["store"], "Saves refused because a newer version was stored")
        self.save_failures = c.counter(
            "reliastore_save_failures_total", ["store"], "Saves that ran out of retries")
        self.lease_thefts = c.counter(
            "reliastore_lease_thefts_total", ["store"], "Stale leases taken over from another owner")
        self.migration_failures = c.counter(
            "reliastore_migration_failures_total", ["store"], "Migrations skipped after raising")
        self.active_sessions = c.gauge(
            "reliastore_active_sessions", ["store"], "Sessions currently loaded")
        self.save_latency = c.histogram(
            "reliastore_save_seconds", ["store"], "Save round-trip time")
