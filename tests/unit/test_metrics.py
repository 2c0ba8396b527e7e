"""Tests for metrics collection and export."""

import pytest

from src.ignition.metrics import MetricsCollector, PrometheusExporter, SkillMetrics


class TestMetricsCollector:
    """Test suite for MetricsCollector."""

    @pytest.fixture
    def metrics(self) -> MetricsCollector:
        return MetricsCollector()

    def test_counter(self, metrics):
        """Test counters with and without labels."""
        metrics.increment_counter("runs", {"status": "completed"})
        metrics.increment_counter("runs", {"status": "completed"})
        metrics.increment_counter("runs", {"status": "failed"}, value=3)

        assert metrics.get_counter("runs", {"status": "completed"}) == 2
        assert metrics.get_counter("runs", {"status": "failed"}) == 3
        assert metrics.get_counter("runs") == 5
        assert metrics.get_counter("missing") == 0.0

    def test_label_order_does_not_matter(self, metrics):
        """Test that label dicts are keyed independent of order."""
        metrics.increment_counter("x", {"a": "1", "b": "2"})
        assert metrics.get_counter("x", {"b": "2", "a": "1"}) == 1

    def test_histogram_stats(self, metrics):
        """Test histogram statistics."""
        for value in [1.0, 2.0, 3.0, 4.0]:
            metrics.observe_histogram("duration", value, {"skill": "a"})
        metrics.observe_histogram("duration", 100.0, {"skill": "b"})

        stats = metrics.get_histogram_stats("duration", {"skill": "a"})
        assert stats["count"] == 4
        assert stats["sum"] == 10.0
        assert stats["min"] == 1.0
        assert stats["max"] == 4.0
        assert stats["avg"] == 2.5
        assert stats["p50"] == 2.5

        assert metrics.get_histogram_stats("duration")["count"] == 5

    def test_empty_histogram(self, metrics):
        """Test stats of an unknown histogram."""
        assert metrics.get_histogram_stats("nothing")["count"] == 0

    def test_retention(self):
        """Test that old histogram values are dropped."""
        now = [1000.0]
        metrics = MetricsCollector(retention_seconds=60, clock=lambda: now[0])
        metrics.observe_histogram("d", 1.0)
        now[0] += 30
        metrics.observe_histogram("d", 2.0)
        now[0] += 45
        metrics.observe_histogram("d", 3.0)

        assert metrics.get_histogram_values("d") == [2.0, 3.0]

    def test_type_conflict(self, metrics):
        """Test that a name keeps its metric type."""
        metrics.increment_counter("runs")
        with pytest.raises(ValueError, match="is a counter"):
            metrics.observe_histogram("runs", 1.0)

    def test_series(self, metrics):
        """Test per-label series listing."""
        metrics.observe_histogram("d", 0.5, {"skill": "b"})
        metrics.observe_histogram("d", 0.1, {"skill": "a"})
        metrics.observe_histogram("d", 0.2, {"skill": "a"})

        assert metrics.series("d") == [({"skill": "a"}, [0.1, 0.2]), ({"skill": "b"}, [0.5])]
        assert metrics.series("missing") == []

    def test_get_all_and_reset(self, metrics):
        """Test snapshot and reset."""
        metrics.increment_counter("c", help_text="A counter")
        metrics.observe_histogram("h", 0.5)

        snapshot = metrics.get_all_metrics()
        assert snapshot["c"]["type"] == "counter"
        assert snapshot["c"]["help"] == "A counter"
        assert snapshot["h"]["stats"]["count"] == 1

        metrics.reset()
        assert metrics.get_all_metrics() == {}


class TestSkillMetrics:
    """Tests for the engine's named metrics."""

    def test_record_run(self):
        metrics = SkillMetrics()
        metrics.record_run("lead-capture", "run", "completed", 0.2)

        assert (
            metrics.collector.get_counter(
                SkillMetrics.RUNS_TOTAL,
                {"skill": "lead-capture", "trigger": "run", "status": "completed"},
            )
            == 1
        )
        assert metrics.collector.get_histogram_values(SkillMetrics.RUN_DURATION) == [0.2]

    def test_skipped_actions_have_no_duration(self):
        """Test that skipped actions count but are not timed."""
        metrics = SkillMetrics()
        metrics.record_action("log", "skipped", 0.0)
        metrics.record_action("log", "completed", 0.01)

        assert metrics.collector.get_counter(SkillMetrics.ACTIONS_TOTAL) == 2
        assert metrics.collector.get_histogram_values(SkillMetrics.ACTION_DURATION) == [0.01]

    def test_record_retry(self):
        metrics = SkillMetrics()
        metrics.record_retry("mcp:call")
        assert metrics.collector.get_counter(SkillMetrics.RETRIES_TOTAL, {"type": "mcp:call"}) == 1


class TestPrometheusExporter:
    """Tests for Prometheus text export."""

    def test_export(self):
        collector = MetricsCollector()
        metrics = SkillMetrics(collector)
        metrics.record_run("lead-capture", "run", "completed", 0.02)

        output = PrometheusExporter(collector).export()

        assert "# HELP skill_runs_total Total skill runs" in output
        assert "# TYPE skill_runs_total counter" in output
        assert (
            'skill_runs_total{skill="lead-capture",status="completed",trigger="run"} 1.0' in output
        )
        assert "# TYPE skill_run_duration_seconds histogram" in output
        assert 'skill_run_duration_seconds_bucket{skill="lead-capture",le="0.01"} 0' in output
        assert 'skill_run_duration_seconds_bucket{skill="lead-capture",le="0.025"} 1' in output
        assert 'skill_run_duration_seconds_bucket{skill="lead-capture",le="+Inf"} 1' in output
        assert 'skill_run_duration_seconds_count{skill="lead-capture"} 1' in output

    def test_unlabelled_metrics(self):
        collector = MetricsCollector()
        collector.increment_counter("plain_total")
        collector.observe_histogram("plain_seconds", 3.0)

        output = PrometheusExporter(collector).export()

        assert "plain_total 1.0" in output
        assert 'plain_seconds_bucket{le="2.5"} 0' in output
        assert "plain_seconds_sum 3.0" in output

    def test_label_values_are_escaped(self):
        collector = MetricsCollector()
        collector.increment_counter("odd_total", {"name": 'say "hi"'})

        assert 'odd_total{name="say \\"hi\\""} 1.0' in PrometheusExporter(collector).export()
