"""autopilot.core.metrics

In-process counters, gauges and summaries for the autopilot.

Series are keyed by name plus optional labels, e.g. the per-position
data-quality counters ``cppi_data_quality_total{code=...,position_id=...}``.
``snapshot()`` flattens everything into ``{"counter.<key>": value, ...}`` so the
CLI and API can print it without knowing the series types.
"""

from __future__ import annotations

from threading import Lock


def series_key(name: str, labels: dict[str, str] | None = None) -> str:
    if not labels:
        return name
    body = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
    return f"{name}{{{body}}}"


class Counter:
    def __init__(self, key: str) -> None:
        self.key = key
        self._value = 0.0
        self._lock = Lock()

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters only go up")
        with self._lock:
            self._value += amount

    @property
    def value(self) -> float:
        with self._lock:
            return self._value


class Gauge:
    def __init__(self, key: str) -> None:
        self.key = key
        self._value = 0.0
        self._lock = Lock()

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    @property
    def value(self) -> float:
        with self._lock:
            return self._value


class Summary:
    """Count, sum and max of observed values (slippage, fill costs)."""

    def __init__(self, key: str) -> None:
        self.key = key
        self.count = 0
        self.total = 0.0
        self.max = 0.0
        self._lock = Lock()

    def observe(self, value: float) -> None:
        v = float(value)
        with self._lock:
            self.max = v if self.count == 0 else max(self.max, v)
            self.count += 1
            self.total += v

    @property
    def mean(self) -> float:
        with self._lock:
            return self.total / self.count if self.count else 0.0


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, Counter] = {}
        self._gauges: dict[str, Gauge] = {}
        self._summaries: dict[str, Summary] = {}

    def counter(self, name: str, **labels: str) -> Counter:
        key = series_key(name, labels)
        with self._lock:
            if key not in self._counters:
                self._counters[key] = Counter(key)
            return self._counters[key]

    def gauge(self, name: str, **labels: str) -> Gauge:
        key = series_key(name, labels)
        with self._lock:
            if key not in self._gauges:
                self._gauges[key] = Gauge(key)
            return self._gauges[key]

    def summary(self, name: str, **labels: str) -> Summary:
        key = series_key(name, labels)
        with self._lock:
            if key not in self._summaries:
                self._summaries[key] = Summary(key)
            return self._summaries[key]

    def snapshot(self) -> dict[str, float]:
        with self._lock:
            counters = list(self._counters.items())
            gauges = list(self._gauges.items())
            summaries = list(self._summaries.items())

        data: dict[str, float] = {}
        data.update({f"counter.{k}": c.value for k, c in counters})
        data.update({f"gauge.{k}": g.value for k, g in gauges})
        for k, s in summaries:
            data[f"summary.{k}.count"] = float(s.count)
            data[f"summary.{k}.sum"] = s.total
            data[f"summary.{k}.max"] = s.max
        return data


REGISTRY = MetricsRegistry()
