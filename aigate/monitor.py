"""
Performance monitoring for aigate.

Traces every tracked operation (cache actions, model calls, config
updates), derives rolling latency/error-rate/throughput metrics, raises
and resolves alerts, and turns the numbers into short insights.
"""

import logging
import math
import threading
import time
import uuid
from collections import deque, defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from datetime import datetime, UTC
from typing import Callable, Iterator, Optional

from aigate.models import Alert, AlertSeverity, OperationTrace

logger = logging.getLogger(__name__)


@dataclass
class PerformanceConfig:
    """Monitor thresholds and retention."""
    response_time_threshold_ms: float = 3000.0
    degraded_error_rate: float = 5.0  # percent
    unhealthy_error_rate: float = 10.0  # percent
    memory_warning: float = 0.85  # fraction
    memory_critical: float = 0.95
    min_cache_hit_rate: float = 0.5
    p95_regression_factor: float = 1.5
    p95_regression_floor_ms: float = 250.0
    metrics_window_seconds: float = 300.0
    min_samples: int = 5
    max_traces: int = 10_000
    retention_seconds: float = 24 * 3600
    max_alerts: int = 100


RECOMMENDATIONS = {
    "latency": [
        "Check AI model performance",
        "Investigate network latency",
        "Consider request batching",
        "Review cache effectiveness",
    ],
    "error_rate": [
        "Check AI service availability",
        "Review request validation",
        "Check provider circuit breakers",
    ],
    "cache_hit_rate": [
        "Review cache TTL settings",
        "Implement cache warming",
        "Increase cache size limits",
    ],
    "memory": [
        "Optimize cache eviction policies",
        "Reduce cache entry sizes",
        "Consider scaling resources",
    ],
}


def _percentile(values: list[float], pct: float) -> float:
    """Nearest-rank percentile; 0 for no data."""
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[rank - 1]


def _summarize(traces: list[OperationTrace], window_seconds: float) -> dict:
    latencies = [t.latency_ms for t in traces]
    failures = sum(1 for t in traces if not t.success)
    lookups = [t for t in traces if t.cache_hit is not None]
    hits = sum(1 for t in lookups if t.cache_hit)
    count = len(traces)
    return {
        "count": count,
        "successes": count - failures,
        "failures": failures,
        "error_rate": failures / count * 100 if count else 0.0,
        "response_time": sum(latencies) / count if count else 0.0,
        "p50_response_time": _percentile(latencies, 50),
        "p95_response_time": _percentile(latencies, 95),
        "p99_response_time": _percentile(latencies, 99),
        "throughput": count / (window_seconds / 60) if window_seconds else 0.0,
        "cost_cents": sum(t.cost_cents for t in traces),
        "cache_lookups": len(lookups),
        "cache_hit_rate": hits / len(lookups) if lookups else None,
    }


@dataclass
class TraceHandle:
    """Yielded by PerformanceMonitor.track; set outcome details before exit."""
    request_id: str
    cost_cents: float = 0.0
    cache_hit: Optional[bool] = None
    success: Optional[bool] = None


class PerformanceMonitor:
    """
    Tracks operations and derives health from them.

    Only a bounded trailing window of traces is kept in memory; older data
    is dropped unless a caller exports it.

    Example:
        ```python
        monitor = PerformanceMonitor()

        monitor.start_request("req-1", "cache_get")
        ...
        monitor.end_request("req-1", success=True)

        monitor.get_status()["overall"]   # "healthy"
        ```
    """

    def __init__(
        self,
        config: Optional[PerformanceConfig] = None,
        clock: Callable[[], float] = time.time,
        memory_probe: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize the monitor.

        Args:
            config: Thresholds and retention. Uses defaults if not provided.
            clock: Time source in epoch seconds.
            memory_probe: Returns memory pressure as a 0..1 fraction.
        """
        self.config = config or PerformanceConfig()
        self._clock = clock
        self._memory_probe = memory_probe
        self._lock = threading.Lock()

        self._open: dict[str, OperationTrace] = {}
        self._traces: deque[OperationTrace] = deque(maxlen=self.config.max_traces)
        self._alerts: list[Alert] = []
        self._callbacks: list[Callable[[Alert], None]] = []

    def set_memory_probe(self, probe: Optional[Callable[[], float]]) -> None:
        self._memory_probe = probe

    # =========================================================================
    # Tracing
    # =========================================================================

    def start_request(self, request_id: str, operation_name: str) -> None:
        """Begin a trace. A duplicate id replaces the open trace."""
        with self._lock:
            if request_id in self._open:
                logger.debug("Replacing open trace %s", request_id)
            self._open[request_id] = OperationTrace(
                request_id=request_id,
                operation_name=operation_name,
                started_at=self._clock(),
            )

    def end_request(
        self,
        request_id: str,
        success: bool = True,
        cost_cents: float = 0.0,
        cache_hit: Optional[bool] = None,
    ) -> Optional[float]:
        """
        Close a trace.

        Returns:
            Latency in milliseconds, or None if no such open trace exists.
        """
        with self._lock:
            trace = self._open.pop(request_id, None)
            if trace is None:
                return None
            trace.ended_at = max(self._clock(), trace.started_at)
            trace.success = success
            trace.cost_cents = cost_cents
            trace.cache_hit = cache_hit
            self._traces.append(trace)
            return trace.latency_ms

    @contextmanager
    def track(self, operation_name: str) -> Iterator[TraceHandle]:
        """
        Trace a block; an exception marks the trace failed and propagates.

        Example:
            ```python
            with monitor.track("cache_warm") as handle:
                handle.cost_cents = 0.4
            ```
        """
        handle = TraceHandle(request_id=f"{operation_name}_{uuid.uuid4().hex[:12]}")
        self.start_request(handle.request_id, operation_name)
        try:
            yield handle
        except BaseException:
            self.end_request(handle.request_id, False, handle.cost_cents, handle.cache_hit)
            raise
        self.end_request(
            handle.request_id,
            handle.success if handle.success is not None else True,
            handle.cost_cents,
            handle.cache_hit,
        )

    def _closed_between(self, start: float, end: float) -> list[OperationTrace]:
        return [t for t in self._traces if start <= t.ended_at <= end]

    # =========================================================================
    # Status
    # =========================================================================

    def _memory_usage(self) -> float:
        if self._memory_probe is None:
            return 0.0
        try:
            return float(self._memory_probe())
        except Exception:
            logger.exception("Memory probe failed")
            return 0.0

    def get_status(self) -> dict:
        """
        Classify current health and evaluate alert conditions.

        Returns:
            ``{"overall": "healthy"|"degraded"|"unhealthy", "metrics": {...},
            "active_alerts": [...], "reasons": [...]}``
        """
        cfg = self.config
        window = cfg.metrics_window_seconds
        with self._lock:
            now = self._clock()
            current = self._closed_between(now - window, now)
            previous = [t for t in self._traces if now - 2 * window <= t.ended_at < now - window]
            active_requests = len(self._open)

        memory = self._memory_usage()
        m = _summarize(current, window)
        prev = _summarize(previous, window)
        enough = m["count"] >= cfg.min_samples

        reasons = []
        overall = "healthy"
        if enough and m["error_rate"] > cfg.unhealthy_error_rate:
            reasons.append(f"error rate {m['error_rate']:.1f}% above {cfg.unhealthy_error_rate}%")
            overall = "unhealthy"
        if memory >= cfg.memory_critical:
            reasons.append(f"memory usage {memory:.0%} is critical")
            overall = "unhealthy"

        if overall == "healthy":
            if enough and m["error_rate"] > cfg.degraded_error_rate:
                reasons.append(f"error rate {m['error_rate']:.1f}% above {cfg.degraded_error_rate}%")
            if enough and m["p95_response_time"] > cfg.response_time_threshold_ms:
                reasons.append(
                    f"P95 latency {m['p95_response_time']:.0f}ms above "
                    f"{cfg.response_time_threshold_ms:.0f}ms"
                )
            if (
                enough
                and prev["count"] >= cfg.min_samples
                and prev["p95_response_time"] > 0
                and m["p95_response_time"] > cfg.p95_regression_floor_ms
                and m["p95_response_time"] > prev["p95_response_time"] * cfg.p95_regression_factor
            ):
                reasons.append(
                    f"P95 latency regressed from {prev['p95_response_time']:.0f}ms "
                    f"to {m['p95_response_time']:.0f}ms"
                )
            if memory >= cfg.memory_warning:
                reasons.append(f"memory usage {memory:.0%} is high")
            if reasons:
                overall = "degraded"

        self._evaluate_conditions(m, memory, enough)

        with self._lock:
            active_alerts = [a.to_dict() for a in self._alerts if a.is_active]

        return {
            "overall": overall,
            "metrics": {
                "response_time": m["response_time"],
                "p95_response_time": m["p95_response_time"],
                "error_rate": m["error_rate"],
                "throughput": m["throughput"],
                "memory_usage": memory,
                "cache_hit_rate": m["cache_hit_rate"],
                "active_requests": active_requests,
                "sample_size": m["count"],
            },
            "active_alerts": active_alerts,
            "reasons": reasons,
        }

    def evaluate(self) -> str:
        """Re-evaluate alert conditions; returns the overall status."""
        return self.get_status()["overall"]

    def _evaluate_conditions(self, m: dict, memory: float, enough: bool) -> None:
        cfg = self.config

        severity = None
        if enough and m["error_rate"] > cfg.unhealthy_error_rate:
            severity = AlertSeverity.CRITICAL
        elif enough and m["error_rate"] > cfg.degraded_error_rate:
            severity = AlertSeverity.WARNING
        self._set_condition("error_rate", severity, f"High error rate: {m['error_rate']:.1f}%")

        severity = None
        p95 = m["p95_response_time"]
        if enough and p95 > cfg.response_time_threshold_ms * 2:
            severity = AlertSeverity.CRITICAL
        elif enough and p95 > cfg.response_time_threshold_ms:
            severity = AlertSeverity.WARNING
        self._set_condition("latency", severity, f"High response time: P95 {p95:.0f}ms")

        severity = None
        if memory >= cfg.memory_critical:
            severity = AlertSeverity.CRITICAL
        elif memory >= cfg.memory_warning:
            severity = AlertSeverity.WARNING
        self._set_condition("memory", severity, f"High memory usage: {memory:.1%}")

        severity = None
        hit_rate = m["cache_hit_rate"]
        if (
            hit_rate is not None
            and m["cache_lookups"] >= cfg.min_samples
            and hit_rate < cfg.min_cache_hit_rate
        ):
            severity = AlertSeverity.WARNING
        self._set_condition(
            "cache_hit_rate", severity, f"Low cache hit rate: {(hit_rate or 0):.1%}"
        )

    # =========================================================================
    # Alerts
    # =========================================================================

    def on_alert(self, callback: Callable[[Alert], None]) -> None:
        """Register a callback invoked for every newly raised alert."""
        self._callbacks.append(callback)

    def raise_alert(
        self,
        condition: str,
        severity: AlertSeverity,
        message: str,
        source: str = "performance",
    ) -> Alert:
        """
        Raise an alert for a condition.

        At most one alert per condition is active. Raising the same severity
        again returns the active alert; a different severity resolves it and
        raises a new one.
        """
        return self._set_condition(condition, AlertSeverity(severity), message, source)

    def clear_condition(self, condition: str) -> bool:
        """Auto-resolve the active alert for a condition, if any."""
        with self._lock:
            active = self._active_for(condition)
            if active is None:
                return False
            active.resolved_at = self._clock()
            active.auto_resolved = True
        logger.info("Alert auto-resolved: %s (%s)", active.id, condition)
        return True

    def _active_for(self, condition: str) -> Optional[Alert]:
        for alert in reversed(self._alerts):
            if alert.condition == condition and alert.is_active:
                return alert
        return None

    def _set_condition(
        self,
        condition: str,
        severity: Optional[AlertSeverity],
        message: str,
        source: str = "performance",
    ) -> Optional[Alert]:
        if severity is None:
            self.clear_condition(condition)
            return None

        with self._lock:
            now = self._clock()
            active = self._active_for(condition)
            if active is not None and active.severity == severity:
                return active
            if active is not None:
                active.resolved_at = now
                active.auto_resolved = True

            alert = Alert(
                severity=severity,
                message=message,
                raised_at=now,
                condition=condition,
                source=source,
            )
            self._alerts.append(alert)
            self._trim_alerts()
            callbacks = list(self._callbacks)

        log = logger.error if severity == AlertSeverity.CRITICAL else logger.warning
        log("Alert raised: %s %s - %s", alert.severity.value, condition, message)
        for callback in callbacks:
            try:
                callback(alert)
            except Exception:
                logger.exception("Alert callback failed")
        return alert

    def _trim_alerts(self) -> None:
        excess = len(self._alerts) - self.config.max_alerts
        if excess <= 0:
            return
        resolved = [a for a in self._alerts if not a.is_active][:excess]
        drop = {id(a) for a in resolved}
        self._alerts = [a for a in self._alerts if id(a) not in drop]
        if len(self._alerts) > self.config.max_alerts:
            self._alerts = self._alerts[-self.config.max_alerts:]

    def acknowledge_alert(self, alert_id: str) -> bool:
        """Acknowledge an alert. False if unknown or already resolved."""
        with self._lock:
            alert = next((a for a in self._alerts if a.id == alert_id), None)
            if alert is None or not alert.is_active:
                return False
            if alert.acknowledged_at is None:
                alert.acknowledged_at = self._clock()
        logger.info("Alert acknowledged: %s", alert_id)
        return True

    def resolve_alert(self, alert_id: str) -> bool:
        """Resolve an alert. Resolving twice is fine; unknown ids return False."""
        with self._lock:
            alert = next((a for a in self._alerts if a.id == alert_id), None)
            if alert is None:
                return False
            if alert.resolved_at is None:
                alert.resolved_at = self._clock()
        logger.info("Alert resolved: %s", alert_id)
        return True

    def get_alerts(self, active_only: bool = False) -> list[dict]:
        with self._lock:
            return [a.to_dict() for a in self._alerts if a.is_active or not active_only]

    # =========================================================================
    # Insights and reports
    # =========================================================================

    def generate_insights(self) -> list[str]:
        """
        Human-readable observations about the last hour, compared with the
        hour before.
        """
        cfg = self.config
        with self._lock:
            now = self._clock()
            last_hour = self._closed_between(now - 3600, now)
            prev_hour = [t for t in self._traces if now - 7200 <= t.ended_at < now - 3600]
            alerts = [a for a in self._alerts if a.is_active]

        if len(last_hour) < cfg.min_samples:
            return [
                f"Insufficient data for insights: {len(last_hour)} operations in the last hour"
            ]

        cur = _summarize(last_hour, 3600)
        prev = _summarize(prev_hour, 3600) if len(prev_hour) >= cfg.min_samples else None
        insights = []

        hit_rate = cur["cache_hit_rate"]
        if hit_rate is not None and cur["cache_lookups"] >= cfg.min_samples:
            if hit_rate < cfg.min_cache_hit_rate:
                insights.append(
                    f"Cache hit rate dropped below {cfg.min_cache_hit_rate:.0%} "
                    f"in the last hour ({hit_rate:.1%})"
                )
            elif prev and prev["cache_hit_rate"] is not None and hit_rate > prev["cache_hit_rate"] * 1.1:
                insights.append(
                    f"Cache hit rate improved from {prev['cache_hit_rate']:.1%} to {hit_rate:.1%}"
                )

        if prev and prev["error_rate"] > 0 and abs(cur["error_rate"] - prev["error_rate"]) / prev["error_rate"] > 0.1:
            direction = "rose" if cur["error_rate"] > prev["error_rate"] else "fell"
            insights.append(
                f"Error rate {direction} from {prev['error_rate']:.1f}% to "
                f"{cur['error_rate']:.1f}% compared with the previous hour"
            )
        elif cur["error_rate"] > cfg.degraded_error_rate:
            insights.append(
                f"Error rate is {cur['error_rate']:.1f}% in the last hour, "
                f"above the {cfg.degraded_error_rate}% threshold"
            )

        if prev and prev["p95_response_time"] > 0:
            change = (cur["p95_response_time"] - prev["p95_response_time"]) / prev["p95_response_time"]
            if abs(change) > 0.1:
                direction = "increased" if change > 0 else "decreased"
                insights.append(
                    f"P95 latency {direction} by {abs(change):.0%} "
                    f"({prev['p95_response_time']:.0f}ms -> {cur['p95_response_time']:.0f}ms)"
                )

        by_op = self._by_operation(last_hour)
        busiest = max(by_op.items(), key=lambda kv: kv[1]["count"])
        insights.append(
            f"Busiest operation: {busiest[0]} ({busiest[1]['count']} requests, "
            f"{busiest[1]['count'] / cur['count']:.0%} of traffic)"
        )
        slowest = max(by_op.items(), key=lambda kv: kv[1]["avg_response_time_ms"])
        if len(by_op) > 1 and slowest[1]["avg_response_time_ms"] > 0:
            insights.append(
                f"Slowest operation: {slowest[0]} (avg {slowest[1]['avg_response_time_ms']:.0f}ms)"
            )

        if cur["cost_cents"] > 0:
            insights.append(f"Model spend in the last hour: {cur['cost_cents']:.2f} cents")

        if alerts:
            critical = sum(1 for a in alerts if a.severity == AlertSeverity.CRITICAL)
            insights.append(f"{len(alerts)} active alerts ({critical} critical)")

        return insights

    @staticmethod
    def _by_operation(traces: list[OperationTrace]) -> dict[str, dict]:
        grouped: dict[str, list[OperationTrace]] = defaultdict(list)
        for t in traces:
            grouped[t.operation_name].append(t)
        result = {}
        for op, items in grouped.items():
            latencies = [t.latency_ms for t in items]
            failures = sum(1 for t in items if not t.success)
            result[op] = {
                "count": len(items),
                "failures": failures,
                "error_rate": failures / len(items) * 100,
                "avg_response_time_ms": sum(latencies) / len(latencies),
                "p95_response_time_ms": _percentile(latencies, 95),
                "cost_cents": sum(t.cost_cents for t in items),
                "cache_hits": sum(1 for t in items if t.cache_hit),
            }
        return result

    def get_report(self, window_seconds: float = 3600) -> dict:
        """
        Aggregate statistics for traces closed within the trailing window.

        Raises:
            ValueError: If window_seconds is not positive
        """
        if window_seconds <= 0:
            raise ValueError(f"window_seconds must be positive, got {window_seconds}")

        with self._lock:
            now = self._clock()
            traces = self._closed_between(now - window_seconds, now)
            alerts = [a.to_dict() for a in self._alerts if a.raised_at >= now - window_seconds]

        summary = _summarize(traces, window_seconds)
        recommendations = []
        for alert in alerts:
            for rec in RECOMMENDATIONS.get(alert["condition"], []):
                if rec not in recommendations:
                    recommendations.append(rec)

        return {
            "window_seconds": window_seconds,
            "generated_at": datetime.now(UTC).isoformat(),
            "summary": summary,
            "by_operation": self._by_operation(traces),
            "alerts": alerts,
            "insights": self.generate_insights(),
            "recommendations": recommendations,
        }

    # =========================================================================
    # Retention and export
    # =========================================================================

    def prune(self) -> int:
        """Drop traces and resolved alerts older than the retention period."""
        with self._lock:
            cutoff = self._clock() - self.config.retention_seconds
            dropped = 0
            while self._traces and self._traces[0].ended_at < cutoff:
                self._traces.popleft()
                dropped += 1
            for request_id in [k for k, t in self._open.items() if t.started_at < cutoff]:
                del self._open[request_id]
                dropped += 1
            self._alerts = [
                a for a in self._alerts if a.resolved_at is None or a.resolved_at >= cutoff
            ]
            return dropped

    def export_data(self) -> dict:
        """Serialise retained traces and alerts for offline analysis."""
        with self._lock:
            return {
                "config": asdict(self.config),
                "traces": [t.to_dict() for t in self._traces],
                "open_requests": [t.to_dict() for t in self._open.values()],
                "alerts": [a.to_dict() for a in self._alerts],
                "exported_at": datetime.now(UTC).isoformat(),
            }

    def reset(self) -> None:
        """Drop all traces and alerts."""
        with self._lock:
            self._open.clear()
            self._traces.clear()
            self._alerts.clear()
