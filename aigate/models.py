"""Shared data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
import uuid


@dataclass
class CacheEntry:
    """A cached model response. Owned by ResponseCache."""
    key: str
    operation: str
    payload: str  # canonical JSON of the cached value
    created_at: float
    last_accessed_at: float
    size_bytes: int
    ttl: Optional[float] = None  # seconds; None never expires
    tags: frozenset = frozenset()
    hit_count: int = 0
    cost_cents: float = 0.0

    def is_expired(self, now: float) -> bool:
        return self.ttl is not None and now - self.created_at > self.ttl


@dataclass
class RateLimitWindow:
    """Request/token counters for one identity in the current window."""
    identity: str
    window_start: float
    request_count: int = 0
    token_count: int = 0


@dataclass
class RateLimitDecision:
    """Outcome of a rate limit check."""
    allowed: bool
    identity: str
    limit: int
    remaining: int
    reset_at: float
    retry_after_seconds: int = 0


@dataclass
class OperationTrace:
    """One tracked operation, from start_request to end_request."""
    request_id: str
    operation_name: str
    started_at: float
    ended_at: Optional[float] = None
    success: Optional[bool] = None
    cost_cents: float = 0.0
    cache_hit: Optional[bool] = None

    @property
    def latency_ms(self) -> float:
        if self.ended_at is None:
            return 0.0
        return (self.ended_at - self.started_at) * 1000

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "operation": self.operation_name,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "success": self.success,
            "latency_ms": round(self.latency_ms, 3),
            "cost_cents": self.cost_cents,
            "cache_hit": self.cache_hit,
        }


class AlertSeverity(str, Enum):
    """Alert severities."""
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class Alert:
    """A raised alert: raised -> acknowledged -> resolved."""
    severity: AlertSeverity
    message: str
    raised_at: float
    condition: str  # e.g. "error_rate", "budget_daily"
    source: str = "performance"
    id: str = field(default_factory=lambda: f"alert_{uuid.uuid4().hex[:12]}")
    acknowledged_at: Optional[float] = None
    resolved_at: Optional[float] = None
    auto_resolved: bool = False

    @property
    def is_active(self) -> bool:
        return self.resolved_at is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "severity": self.severity.value,
            "message": self.message,
            "condition": self.condition,
            "source": self.source,
            "raised_at": self.raised_at,
            "acknowledged_at": self.acknowledged_at,
            "resolved_at": self.resolved_at,
            "auto_resolved": self.auto_resolved,
        }


@dataclass
class BudgetRule:
    """User-defined advisory rule, e.g. ``daily_spend > 300`` -> ``downgrade_model``."""
    name: str
    condition: str
    action: str
    enabled: bool = True
    id: str = field(default_factory=lambda: f"rule_{uuid.uuid4().hex[:8]}")


@dataclass
class RuleFiring:
    """Record of a custom rule whose condition became true."""
    rule_id: str
    rule_name: str
    action: str
    value: float
    fired_at: str


@dataclass
class PeriodTotal:
    """Closing total of a finished budget period."""
    period: str  # "daily" or "monthly"
    label: str   # "2026-10-18" or "2026-10"
    spend_cents: int
    requests: int
