"""Metrics collection and export for skill runs."""

import time
from dataclasses import dataclass, field
from enum import Enum
from threading import RLock
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

HISTOGRAM_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

LabelSet = Tuple[Tuple[str, str], ...]


class MetricType(Enum):
    COUNTER = "counter"
    HISTOGRAM = "histogram"


def label_set(labels: Optional[Dict[str, str]]) -> LabelSet:
    """Order-independent key for a label mapping."""
    return tuple(sorted((str(k), str(v)) for k, v in (labels or {}).items()))


@dataclass
class Sample:
    """One histogram observation."""

    value: float
    observed_at: float


@dataclass
class Metric:
    """A named metric and its series, one per distinct label set."""

    name: str
    type: MetricType
    help: str = ""
    totals: Dict[LabelSet, float] = field(default_factory=dict)
    samples: Dict[LabelSet, List[Sample]] = field(default_factory=dict)

    def matching(self, labels: Optional[Dict[str, str]]) -> Iterator[LabelSet]:
        """Label sets of this metric that carry every pair in ``labels``."""
        wanted = set(label_set(labels))
        keys = self.totals if self.type == MetricType.COUNTER else self.samples
        for key in keys:
            if wanted <= set(key):
                yield key


def _percentile(ordered: List[float], fraction: float) -> float:
    # Linear interpolation between closest ranks.
    position = (len(ordered) - 1) * fraction
    lower = int(position)
    upper = min(lower + 1, len(ordered) - 1)
    return ordered[lower] + (position - lower) * (ordered[upper] - ordered[lower])


class MetricsCollector:
    """
    In-process counters and histograms, safe to share between threads.

    Histogram samples older than ``retention_seconds`` are pruned from a
    series whenever that series is observed.

    Example:
        metrics = MetricsCollector()
        metrics.increment_counter("skill_runs_total", {"skill": "lead-capture", "status": "completed"})
        metrics.observe_histogram("skill_run_duration_seconds", 1.25, {"skill": "lead-capture"})
        print(metrics.get_counter("skill_runs_total"))
    """

    def __init__(
        self,
        retention_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._lock = RLock()
        self._metrics: Dict[str, Metric] = {}

    def _metric(self, name: str, metric_type: MetricType, help_text: Optional[str]) -> Metric:
        metric = self._metrics.get(name)
        if metric is None:
            metric = self._metrics[name] = Metric(name, metric_type, help_text or "")
        elif metric.type != metric_type:
            raise ValueError(f"Metric '{name}' is a {metric.type.value}, not a {metric_type.value}")
        elif help_text and not metric.help:
            metric.help = help_text
        return metric

    def increment_counter(
        self,
        name: str,
        labels: Optional[Dict[str, str]] = None,
        value: float = 1.0,
        help_text: Optional[str] = None,
    ) -> None:
        key = label_set(labels)
        with self._lock:
            metric = self._metric(name, MetricType.COUNTER, help_text)
            metric.totals[key] = metric.totals.get(key, 0.0) + value

    def observe_histogram(
        self,
        name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None,
        help_text: Optional[str] = None,
    ) -> None:
        key = label_set(labels)
        now = self._clock()
        cutoff = now - self.retention_seconds
        with self._lock:
            metric = self._metric(name, MetricType.HISTOGRAM, help_text)
            series = [s for s in metric.samples.get(key, []) if s.observed_at >= cutoff]
            series.append(Sample(value, now))
            metric.samples[key] = series

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """
        Get counter value.

        Args:
            name: Metric name
            labels: Exact label set; None sums every label combination
        """
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None or metric.type != MetricType.COUNTER:
                return 0.0
            if labels is None:
                return sum(metric.totals.values())
            return metric.totals.get(label_set(labels), 0.0)

    def get_histogram_values(
        self, name: str, labels: Optional[Dict[str, str]] = None
    ) -> List[float]:
        """Observed values of every series carrying ``labels``."""
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None or metric.type != MetricType.HISTOGRAM:
                return []
            return [
                sample.value
                for key in metric.matching(labels)
                for sample in metric.samples[key]
            ]

    def get_histogram_stats(
        self, name: str, labels: Optional[Dict[str, str]] = None
    ) -> Dict[str, float]:
        """
        Get histogram statistics.

        Returns:
            Dict with count, sum, min, max, avg, p50, p95, p99
        """
        ordered = sorted(self.get_histogram_values(name, labels))
        if not ordered:
            empty: Dict[str, float] = {"count": 0}
            empty.update(dict.fromkeys(("sum", "min", "max", "avg", "p50", "p95", "p99"), 0.0))
            return empty

        total = sum(ordered)
        return {
            "count": len(ordered),
            "sum": total,
            "min": ordered[0],
            "max": ordered[-1],
            "avg": total / len(ordered),
            "p50": _percentile(ordered, 0.50),
            "p95": _percentile(ordered, 0.95),
            "p99": _percentile(ordered, 0.99),
        }

    def series(self, name: str) -> List[Tuple[Dict[str, str], Any]]:
        """
        Every series of a metric as ``(labels, data)`` pairs, sorted by labels.

        ``data`` is the running total for counters and the list of observed
        values for histograms.
        """
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                return []
            if metric.type == MetricType.COUNTER:
                return [(dict(k), v) for k, v in sorted(metric.totals.items())]
            return [
                (dict(k), [s.value for s in samples])
                for k, samples in sorted(metric.samples.items())
            ]

    def get_all_metrics(self) -> Dict[str, Any]:
        with self._lock:
            snapshot: Dict[str, Any] = {}
            for name, metric in self._metrics.items():
                entry: Dict[str, Any] = {"type": metric.type.value, "help": metric.help}
                if metric.type == MetricType.COUNTER:
                    entry["values"] = {
                        ",".join(f"{k}={v}" for k, v in key): total
                        for key, total in metric.totals.items()
                    }
                else:
                    entry["stats"] = self.get_histogram_stats(name)
                snapshot[name] = entry
            return snapshot

    def reset(self) -> None:
        with self._lock:
            self._metrics.clear()


class SkillMetrics:
    """The engine's named metrics on top of a MetricsCollector."""

    RUNS_TOTAL = "skill_runs_total"
    RUN_DURATION = "skill_run_duration_seconds"
    ACTIONS_TOTAL = "action_executions_total"
    ACTION_DURATION = "action_duration_seconds"
    RETRIES_TOTAL = "action_retries_total"

    def __init__(self, collector: Optional[MetricsCollector] = None) -> None:
        self.collector = collector or MetricsCollector()

    def record_run(self, skill: str, trigger: str, status: str, duration_seconds: float) -> None:
        self.collector.increment_counter(
            self.RUNS_TOTAL,
            {"skill": skill, "trigger": trigger, "status": status},
            help_text="Total skill runs",
        )
        self.collector.observe_histogram(
            self.RUN_DURATION,
            duration_seconds,
            {"skill": skill},
            help_text="Skill run duration in seconds",
        )

    def record_action(self, action_type: str, status: str, duration_seconds: float) -> None:
        self.collector.increment_counter(
            self.ACTIONS_TOTAL,
            {"type": action_type, "status": status},
            help_text="Total actions processed",
        )
        if status != "skipped":
            self.collector.observe_histogram(
                self.ACTION_DURATION,
                duration_seconds,
                {"type": action_type},
                help_text="Action duration in seconds",
            )

    def record_retry(self, action_type: str) -> None:
        self.collector.increment_counter(
            self.RETRIES_TOTAL,
            {"type": action_type},
            help_text="Total action retry attempts",
        )


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _render_labels(labels: Dict[str, str], extra: Optional[Tuple[str, str]] = None) -> str:
    pairs = [f'{k}="{_escape(v)}"' for k, v in sorted(labels.items())]
    if extra:
        pairs.append(f'{extra[0]}="{extra[1]}"')
    return "{" + ",".join(pairs) + "}" if pairs else ""


class PrometheusExporter:
    """Export metrics in Prometheus text format."""

    def __init__(self, metrics: MetricsCollector) -> None:
        self.metrics = metrics

    def export(self) -> str:
        lines: List[str] = []

        for name, info in sorted(self.metrics.get_all_metrics().items()):
            if info["help"]:
                lines.append(f"# HELP {name} {info['help']}")
            lines.append(f"# TYPE {name} {info['type']}")

            for labels, data in self.metrics.series(name):
                if info["type"] == MetricType.COUNTER.value:
                    lines.append(f"{name}{_render_labels(labels)} {data}")
                    continue
                for le in HISTOGRAM_BUCKETS:
                    below = sum(1 for v in data if v <= le)
                    lines.append(f"{name}_bucket{_render_labels(labels, ('le', str(le)))} {below}")
                lines.append(f"{name}_bucket{_render_labels(labels, ('le', '+Inf'))} {len(data)}")
                lines.append(f"{name}_sum{_render_labels(labels)} {sum(data)}")
                lines.append(f"{name}_count{_render_labels(labels)} {len(data)}")

            lines.append("")

        return "\n".join(lines)
