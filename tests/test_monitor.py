"""Tests for performance monitoring."""

import pytest

from aigate.models import AlertSeverity
from aigate.monitor import PerformanceConfig, PerformanceMonitor, _percentile


def _run(monitor, clock, count, latency=0.1, success=True, operation="op", cache_hit=None):
    for i in range(count):
        request_id = f"{operation}-{clock.now}-{i}"
        monitor.start_request(request_id, operation)
        clock.advance(latency)
        monitor.end_request(request_id, success=success, cache_hit=cache_hit)


class TestTracing:
    """Test request traces."""

    def test_end_returns_latency(self, clock):
        monitor = PerformanceMonitor(clock=clock)
        monitor.start_request("r1", "cache_get")
        clock.advance(0.25)

        assert monitor.end_request("r1") == pytest.approx(250)

    def test_end_unknown_request(self, clock):
        assert PerformanceMonitor(clock=clock).end_request("missing") is None

    def test_track_marks_failure_and_reraises(self, clock):
        monitor = PerformanceMonitor(clock=clock)

        with pytest.raises(RuntimeError):
            with monitor.track("cache_set"):
                raise RuntimeError("boom")

        trace = monitor.export_data()["traces"][0]
        assert trace["operation"] == "cache_set"
        assert trace["success"] is False

    def test_track_records_outcome(self, clock):
        monitor = PerformanceMonitor(clock=clock)
        with monitor.track("cache_get") as handle:
            handle.cache_hit = True
            handle.cost_cents = 0.2

        trace = monitor.export_data()["traces"][0]
        assert trace["success"] is True
        assert trace["cache_hit"] is True
        assert trace["cost_cents"] == 0.2

    def test_open_requests_are_counted(self, clock):
        monitor = PerformanceMonitor(clock=clock)
        monitor.start_request("r1", "op")
        assert monitor.get_status()["metrics"]["active_requests"] == 1


class TestStatus:
    """Test health classification."""

    def test_no_data_is_healthy(self, clock):
        status = PerformanceMonitor(clock=clock).get_status()
        assert status["overall"] == "healthy"
        assert status["metrics"]["sample_size"] == 0

    def test_high_error_rate_is_unhealthy(self, clock):
        monitor = PerformanceMonitor(clock=clock)
        _run(monitor, clock, 8)
        _run(monitor, clock, 2, success=False)

        status = monitor.get_status()
        assert status["metrics"]["error_rate"] == 20
        assert status["overall"] == "unhealthy"

    def test_recovers_once_errors_leave_window(self, clock):
        """Test unhealthy flips back to healthy as the window moves on."""
        monitor = PerformanceMonitor(clock=clock)
        _run(monitor, clock, 10, success=False)
        assert monitor.get_status()["overall"] == "unhealthy"

        clock.advance(301)
        _run(monitor, clock, 10)
        assert monitor.get_status()["overall"] == "healthy"

    def test_moderate_error_rate_is_degraded(self, clock):
        monitor = PerformanceMonitor(clock=clock)
        _run(monitor, clock, 93)
        _run(monitor, clock, 7, success=False)

        assert monitor.get_status()["overall"] == "degraded"

    def test_few_samples_are_not_judged(self, clock):
        monitor = PerformanceMonitor(clock=clock)
        _run(monitor, clock, 2, success=False)
        assert monitor.get_status()["overall"] == "healthy"

    def test_slow_p95_is_degraded(self, clock):
        monitor = PerformanceMonitor(PerformanceConfig(response_time_threshold_ms=1000), clock=clock)
        _run(monitor, clock, 10, latency=2.0)

        status = monitor.get_status()
        assert status["overall"] == "degraded"
        assert "P95 latency" in status["reasons"][0]

    def test_critical_memory_is_unhealthy(self, clock):
        monitor = PerformanceMonitor(clock=clock, memory_probe=lambda: 0.97)
        assert monitor.get_status()["overall"] == "unhealthy"

    def test_p95_regression_is_degraded(self, clock):
        monitor = PerformanceMonitor(clock=clock)
        _run(monitor, clock, 10, latency=0.2)
        clock.advance(300)
        _run(monitor, clock, 10, latency=0.9)

        status = monitor.get_status()
        assert status["overall"] == "degraded"
        assert any("regressed" in r for r in status["reasons"])


class TestAlerts:
    """Test alert lifecycle."""

    def test_error_rate_alert_raised_and_auto_resolved(self, clock):
        monitor = PerformanceMonitor(clock=clock)
        _run(monitor, clock, 10, success=False)
        monitor.get_status()

        active = monitor.get_alerts(active_only=True)
        assert len(active) == 1
        assert active[0]["condition"] == "error_rate"
        assert active[0]["severity"] == "critical"

        clock.advance(301)
        _run(monitor, clock, 10)
        monitor.get_status()

        assert monitor.get_alerts(active_only=True) == []
        assert monitor.get_alerts()[0]["auto_resolved"] is True

    def test_one_active_alert_per_condition(self, clock):
        monitor = PerformanceMonitor(clock=clock)
        first = monitor.raise_alert("budget_daily", AlertSeverity.WARNING, "80%", "budget")
        again = monitor.raise_alert("budget_daily", AlertSeverity.WARNING, "82%", "budget")
        assert first.id == again.id

        escalated = monitor.raise_alert("budget_daily", AlertSeverity.CRITICAL, "95%", "budget")
        assert escalated.id != first.id
        assert [a["id"] for a in monitor.get_alerts(active_only=True)] == [escalated.id]

    def test_acknowledge_and_resolve(self, clock):
        monitor = PerformanceMonitor(clock=clock)
        alert = monitor.raise_alert("latency", AlertSeverity.WARNING, "slow")

        assert monitor.acknowledge_alert(alert.id) is True
        assert monitor.resolve_alert(alert.id) is True
        assert monitor.resolve_alert(alert.id) is True
        assert monitor.acknowledge_alert(alert.id) is False

    def test_unknown_alert(self, clock):
        monitor = PerformanceMonitor(clock=clock)
        assert monitor.acknowledge_alert("alert_nope") is False
        assert monitor.resolve_alert("alert_nope") is False

    def test_callbacks_receive_new_alerts(self, clock):
        monitor = PerformanceMonitor(clock=clock)
        received = []
        monitor.on_alert(received.append)

        monitor.raise_alert("memory", AlertSeverity.CRITICAL, "full")
        assert received[0].condition == "memory"

    def test_failing_callback_does_not_block_alert(self, clock):
        monitor = PerformanceMonitor(clock=clock)

        def broken(alert):
            raise RuntimeError("sink down")

        monitor.on_alert(broken)
        monitor.raise_alert("memory", AlertSeverity.WARNING, "high")
        assert len(monitor.get_alerts()) == 1

    def test_alert_history_is_bounded(self, clock):
        monitor = PerformanceMonitor(PerformanceConfig(max_alerts=5), clock=clock)
        for i in range(20):
            monitor.raise_alert(f"cond_{i}", AlertSeverity.WARNING, "x")
        assert len(monitor.get_alerts()) == 5


class TestInsightsAndReports:
    """Test insights and reports."""

    def test_insufficient_data(self, clock):
        insights = PerformanceMonitor(clock=clock).generate_insights()
        assert insights[0].startswith("Insufficient data")

    def test_low_hit_rate_insight(self, clock):
        monitor = PerformanceMonitor(clock=clock)
        _run(monitor, clock, 8, operation="cache_get", cache_hit=False)
        _run(monitor, clock, 2, operation="cache_get", cache_hit=True)

        insights = monitor.generate_insights()
        assert any("Cache hit rate dropped below 50%" in i for i in insights)
        assert any(i.startswith("Busiest operation: cache_get") for i in insights)

    def test_report(self, clock):
        monitor = PerformanceMonitor(clock=clock)
        _run(monitor, clock, 6, operation="cache_get")
        _run(monitor, clock, 4, operation="ai_enhance", success=False)
        monitor.get_status()

        report = monitor.get_report(3600)
        assert report["summary"]["count"] == 10
        assert report["by_operation"]["ai_enhance"]["failures"] == 4
        assert "Check AI service availability" in report["recommendations"]

    def test_report_rejects_bad_window(self, clock):
        with pytest.raises(ValueError):
            PerformanceMonitor(clock=clock).get_report(0)


class TestRetention:
    """Test pruning and reset."""

    def test_prune_drops_old_traces(self, clock):
        monitor = PerformanceMonitor(PerformanceConfig(retention_seconds=60), clock=clock)
        _run(monitor, clock, 3)
        clock.advance(120)
        _run(monitor, clock, 2)

        assert monitor.prune() == 3
        assert len(monitor.export_data()["traces"]) == 2

    def test_reset(self, clock):
        monitor = PerformanceMonitor(clock=clock)
        _run(monitor, clock, 3)
        monitor.raise_alert("latency", AlertSeverity.WARNING, "slow")

        monitor.reset()
        data = monitor.export_data()
        assert data["traces"] == []
        assert data["alerts"] == []


def test_percentile_nearest_rank():
    values = list(range(1, 101))
    assert _percentile(values, 95) == 95
    assert _percentile(values, 50) == 50
    assert _percentile([], 95) == 0.0
