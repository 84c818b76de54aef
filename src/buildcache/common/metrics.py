"""In-process metrics rendered in the Prometheus text exposition format."""

from __future__ import annotations

from typing import Dict, Iterable, Tuple


LabelKey = Tuple[Tuple[str, str], ...]


def _label_key(labels: Dict[str, str]) -> LabelKey:
    return tuple(sorted((name, str(value)) for name, value in labels.items()))


def _format_labels(key: LabelKey, extra: Iterable[Tuple[str, str]] = ()) -> str:
    pairs = list(key) + list(extra)
    if not pairs:
        return ""
    rendered = ",".join(f'{name}="{value}"' for name, value in pairs)
    return "{" + rendered + "}"


class Counter:
    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description
        self._values: Dict[LabelKey, float] = {}

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        key = _label_key(labels)
        self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, **labels: str) -> float:
        return self._values.get(_label_key(labels), 0.0)

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} counter"]
        if not self._values:
            lines.append(f"{self.name} 0.0")
        for key, value in sorted(self._values.items()):
            lines.append(f"{self.name}{_format_labels(key)} {value}")
        return "\n".join(lines) + "\n"


class Histogram:
    def __init__(self, name: str, buckets: list[float], description: str = "") -> None:
        self.name = name
        self.description = description
        self._buckets = sorted(buckets)
        self._series: Dict[LabelKey, dict] = {}

    def observe(self, value: float, **labels: str) -> None:
        key = _label_key(labels)
        series = self._series.setdefault(
            key, {"counts": [0] * len(self._buckets), "sum": 0.0, "count": 0}
        )
        series["sum"] += value
        series["count"] += 1
        for index, bucket in enumerate(self._buckets):
            if value <= bucket:
                series["counts"][index] += 1

    def count(self, **labels: str) -> int:
        series = self._series.get(_label_key(labels))
        return series["count"] if series else 0

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} histogram"]
        for key, series in sorted(self._series.items()):
            # bucket counts are already cumulative since observe() increments every bucket >= value
            for bucket, bucket_count in zip(self._buckets, series["counts"]):
                lines.append(f"{self.name}_bucket{_format_labels(key, [('le', str(bucket))])} {bucket_count}")
            lines.append(f"{self.name}_bucket{_format_labels(key, [('le', '+Inf')])} {series['count']}")
            lines.append(f"{self.name}_sum{_format_labels(key)} {series['sum']}")
            lines.append(f"{self.name}_count{_format_labels(key)} {series['count']}")
        return "\n".join(lines) + "\n"


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, object] = {}

    def register(self, metric):
        existing = self._metrics.get(metric.name)
        if existing is not None:
            return existing
        self._metrics[metric.name] = metric
        return metric

    def render(self) -> str:
        return "\n".join(metric.render() for metric in self._metrics.values())


GLOBAL_REGISTRY = MetricsRegistry()
