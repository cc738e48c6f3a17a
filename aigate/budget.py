"""
Budget guard for aigate.

"Never get surprised by an LLM bill again."

Tracks spend against daily and monthly limits, raises warning/emergency
alerts as thresholds are crossed, optionally stops further model calls, and
evaluates user-defined advisory rules.
"""

import calendar
import copy
import logging
import re
import threading
from collections import deque
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime
from typing import Any, Callable, Optional

from aigate.errors import ValidationError
from aigate.models import AlertSeverity, BudgetRule, PeriodTotal, RuleFiring
from aigate.validation import validate_budget_config

logger = logging.getLogger(__name__)


METRICS = ("daily_spend", "monthly_spend", "daily_usage", "monthly_usage", "daily_requests")

_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    "==": lambda a, b: a == b,
}

_CONDITION_RE = re.compile(r"^\s*([a-z_]+)\s*(>=|<=|==|>|<)\s*(-?\d+(?:\.\d+)?)\s*$")


@dataclass(frozen=True)
class Condition:
    """A parsed rule condition such as ``daily_usage >= 75``."""
    metric: str
    operator: str
    threshold: float

    def evaluate(self, value: float) -> bool:
        return _OPERATORS[self.operator](value, self.threshold)

    def __str__(self) -> str:
        return f"{self.metric} {self.operator} {self.threshold:g}"


def parse_condition(text: Any) -> Condition:
    """
    Parse ``"<metric> <op> <number>"``.

    Raises:
        ValidationError: If the text is not a supported comparison
    """
    if not isinstance(text, str):
        raise ValidationError.for_field("condition", "must be a string")
    match = _CONDITION_RE.match(text)
    if not match:
        raise ValidationError.for_field(
            "condition", f"'{text}' is not of the form '<metric> <op> <number>'"
        )
    metric, operator, number = match.groups()
    if metric not in METRICS:
        raise ValidationError.for_field(
            "condition", f"unknown metric '{metric}' (known: {', '.join(METRICS)})"
        )
    return Condition(metric, operator, float(number))


@dataclass
class BudgetConfig:
    """Budget limits (integer cents) and thresholds (percent of limit)."""
    daily_limit_cents: int = 500
    monthly_limit_cents: int = 10_000
    warning_threshold: float = 80.0
    emergency_threshold: float = 90.0
    alerts_enabled: bool = True
    auto_stop_enabled: bool = True
    notification_channels: list[str] = field(default_factory=lambda: ["email"])
    custom_rules: list[BudgetRule] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> "BudgetConfig":
        """
        Build a config from a JSON object. Missing fields take defaults.

        Raises:
            ValidationError: On unknown fields or malformed rules
        """
        if not isinstance(data, dict):
            raise ValidationError.for_field("config", "must be an object")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValidationError(
                "Unknown budget config fields",
                [{"field": name, "message": "unknown field"} for name in unknown],
            )

        channels = data.get("notification_channels", ["email"])
        if not isinstance(channels, list) or not all(isinstance(c, str) for c in channels):
            raise ValidationError.for_field("notification_channels", "must be a list of strings")

        raw_rules = data.get("custom_rules") or []
        if not isinstance(raw_rules, list):
            raise ValidationError.for_field("custom_rules", "must be a list")
        rules = []
        for i, raw in enumerate(raw_rules):
            if not isinstance(raw, dict) or "condition" not in raw or "action" not in raw:
                raise ValidationError.for_field(
                    f"custom_rules[{i}]", "must be an object with 'condition' and 'action'"
                )
            extra = {"id": raw["id"]} if raw.get("id") else {}
            rules.append(BudgetRule(
                name=str(raw.get("name") or raw["action"]),
                condition=raw["condition"],
                action=str(raw["action"]),
                enabled=raw.get("enabled", True),
                **extra,
            ))

        kwargs = {k: v for k, v in data.items() if k not in ("custom_rules", "notification_channels")}
        return cls(notification_channels=list(channels), custom_rules=rules, **kwargs)


@dataclass
class BudgetDecision:
    """Outcome of a preauthorization."""
    allowed: bool
    daily_spend_cents: int
    monthly_spend_cents: int
    reason: Optional[str] = None
    period: Optional[str] = None
    suggested_actions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


# sink(condition, severity, message, source)
AlertSink = Callable[[str, AlertSeverity, str, str], Any]


class BudgetGuard:
    """
    Tracks AI spend and enforces budget limits.

    Spend is kept in integer cents. Fractional cents from token pricing are
    carried until they add up to a whole cent.

    Example:
        ```python
        guard = BudgetGuard(BudgetConfig(daily_limit_cents=500))

        decision = guard.preauthorize(estimated_cents=2)
        if decision.allowed:
            ...  # call the model
            guard.record_spend(1.7)
        ```
    """

    def __init__(
        self,
        config: Optional[BudgetConfig] = None,
        now: Callable[[], datetime] = datetime.now,
        alert_sink: Optional[AlertSink] = None,
        alert_clear: Optional[Callable[[str], Any]] = None,
        history_limit: int = 90,
        max_firings: int = 100,
    ):
        """
        Initialize the guard.

        Args:
            config: Budget configuration. Uses defaults if not provided.
            now: Local-time clock; day and month boundaries follow it.
            alert_sink: Receives threshold alerts, e.g. ``PerformanceMonitor.raise_alert``.
            alert_clear: Resolves a period's alert on rollover, e.g.
                ``PerformanceMonitor.clear_condition``.
            history_limit: Closed periods kept in the history.
            max_firings: Rule firings kept.
        """
        config = config or BudgetConfig()
        validate_budget_config(config)
        self._config = copy.deepcopy(config)
        self._now = now
        self._alert_sink = alert_sink
        self._alert_clear = alert_clear
        self._lock = threading.Lock()

        self._history: deque[PeriodTotal] = deque(maxlen=history_limit)
        self._firings: deque[RuleFiring] = deque(maxlen=max_firings)
        self._start_fresh(self._now())

    def _start_fresh(self, now: datetime) -> None:
        self._day = now.date()
        self._month = (now.year, now.month)
        self._daily_spend = 0
        self._monthly_spend = 0
        self._daily_requests = 0
        self._monthly_requests = 0
        self._carry = 0.0
        self._failed_attempts = 0
        self._triggered: dict[str, set[str]] = {"daily": set(), "monthly": set()}
        self._period_alerts: list[dict] = []
        self._halts: dict[str, str] = {}  # period -> reason
        self._rule_state: dict[str, bool] = {}

    def set_alert_sink(
        self, sink: Optional[AlertSink], clear: Optional[Callable[[str], Any]] = None
    ) -> None:
        """Route threshold alerts to ``sink``; ``clear(condition)`` resolves them on rollover."""
        self._alert_sink = sink
        self._alert_clear = clear

    # =========================================================================
    # Period handling
    # =========================================================================

    def _rollover(self, now: datetime) -> bool:
        """Close finished periods. Caller holds the lock."""
        rolled = False

        if now.date() != self._day:
            self._history.append(PeriodTotal(
                "daily", self._day.isoformat(), self._daily_spend, self._daily_requests
            ))
            logger.info(
                "Daily budget period %s closed at %d cents", self._day, self._daily_spend
            )
            self._day = now.date()
            self._daily_spend = 0
            self._daily_requests = 0
            self._failed_attempts = 0
            self._triggered["daily"].clear()
            self._period_alerts = [a for a in self._period_alerts if a["period"] != "daily"]
            self._unhalt("daily", "daily period rolled over")
            self._clear_alert("daily")
            rolled = True

        month = (now.year, now.month)
        if month != self._month:
            label = f"{self._month[0]:04d}-{self._month[1]:02d}"
            self._history.append(PeriodTotal(
                "monthly", label, self._monthly_spend, self._monthly_requests
            ))
            logger.info("Monthly budget period %s closed at %d cents", label, self._monthly_spend)
            self._month = month
            self._monthly_spend = 0
            self._monthly_requests = 0
            self._triggered["monthly"].clear()
            self._period_alerts = [a for a in self._period_alerts if a["period"] != "monthly"]
            self._unhalt("monthly", "monthly period rolled over")
            self._clear_alert("monthly")
            rolled = True

        if rolled:
            self._evaluate_rules(now)
        return rolled

    def check_rollover(self) -> bool:
        """Close finished periods now. Returns True if any rolled over."""
        with self._lock:
            return self._rollover(self._now())

    def _unhalt(self, period: str, why: str) -> None:
        if self._halts.pop(period, None) is not None:
            logger.info("Budget auto-stop on %s spend lifted: %s", period, why)

    def _halt(self) -> tuple[Optional[str], Optional[str]]:
        """The (reason, period) stopping calls, daily first; (None, None) if running."""
        for period in ("daily", "monthly"):
            if period in self._halts:
                return self._halts[period], period
        return None, None

    def _clear_alert(self, period: str) -> None:
        # Runs under the lock; the monitor never calls into the guard.
        if self._alert_clear is None:
            return
        try:
            self._alert_clear(f"budget_{period}")
        except Exception:
            logger.exception("Budget alert clear failed")

    def _usage(self, period: str) -> float:
        if period == "daily":
            return self._daily_spend / self._config.daily_limit_cents * 100
        return self._monthly_spend / self._config.monthly_limit_cents * 100

    def _metrics(self) -> dict[str, float]:
        return {
            "daily_spend": self._daily_spend,
            "monthly_spend": self._monthly_spend,
            "daily_usage": self._usage("daily"),
            "monthly_usage": self._usage("monthly"),
            "daily_requests": self._daily_requests,
        }

    # =========================================================================
    # Thresholds and rules
    # =========================================================================

    def _check_thresholds(self, now: datetime) -> list[tuple]:
        """Record threshold crossings; returns alerts to emit. Caller holds the lock."""
        cfg = self._config
        pending = []
        for period, spend, limit in (
            ("daily", self._daily_spend, cfg.daily_limit_cents),
            ("monthly", self._monthly_spend, cfg.monthly_limit_cents),
        ):
            usage = self._usage(period)
            triggered = self._triggered[period]
            summary = f"{period.capitalize()} budget at {usage:.1f}% ({spend}/{limit} cents)"

            if usage >= cfg.emergency_threshold and "emergency" not in triggered:
                triggered.update(("warning", "emergency"))
                self._period_alerts.append(
                    {"period": period, "level": "emergency", "usage": usage, "at": now.isoformat()}
                )
                pending.append((f"budget_{period}", AlertSeverity.CRITICAL, summary))
                if cfg.auto_stop_enabled and period not in self._halts:
                    self._halts[period] = f"{summary}: emergency threshold reached"
                    logger.error("Budget auto-stop engaged: %s", self._halts[period])
            elif usage >= cfg.warning_threshold and "warning" not in triggered:
                triggered.add("warning")
                self._period_alerts.append(
                    {"period": period, "level": "warning", "usage": usage, "at": now.isoformat()}
                )
                pending.append((f"budget_{period}", AlertSeverity.WARNING, summary))
                logger.warning(summary)

        return pending if cfg.alerts_enabled else []

    def _evaluate_rules(self, now: datetime) -> None:
        metrics = self._metrics()
        for rule in self._config.custom_rules:
            if not rule.enabled:
                self._rule_state[rule.id] = False
                continue
            condition = parse_condition(rule.condition)
            value = metrics[condition.metric]
            active = condition.evaluate(value)
            if active and not self._rule_state.get(rule.id, False):
                self._firings.append(RuleFiring(
                    rule_id=rule.id,
                    rule_name=rule.name,
                    action=rule.action,
                    value=value,
                    fired_at=now.isoformat(),
                ))
                logger.info("Budget rule fired: %s (%s) -> %s", rule.name, condition, rule.action)
            self._rule_state[rule.id] = active

    def _suggested_actions(self) -> list[str]:
        actions = []
        for rule in self._config.custom_rules:
            if rule.enabled and self._rule_state.get(rule.id) and rule.action not in actions:
                actions.append(rule.action)
        return actions

    def _emit(self, pending: list[tuple]) -> None:
        if self._alert_sink is None:
            return
        for condition, severity, message in pending:
            try:
                self._alert_sink(condition, severity, message, "budget")
            except Exception:
                logger.exception("Budget alert sink failed")

    # =========================================================================
    # Spend
    # =========================================================================

    def preauthorize(self, estimated_cents: float = 0) -> BudgetDecision:
        """
        Check whether a model call may proceed.

        Never raises. With auto-stop enabled a call is rejected while halted,
        or if its estimate would push either period past its limit.
        """
        with self._lock:
            self._rollover(self._now())
            cfg = self._config
            reason, period = self._halt()
            if reason is None and cfg.auto_stop_enabled and estimated_cents > 0:
                if self._daily_spend + estimated_cents > cfg.daily_limit_cents:
                    reason, period = "Estimated cost would exceed the daily limit", "daily"
                elif self._monthly_spend + estimated_cents > cfg.monthly_limit_cents:
                    reason, period = "Estimated cost would exceed the monthly limit", "monthly"

            return BudgetDecision(
                allowed=reason is None,
                daily_spend_cents=self._daily_spend,
                monthly_spend_cents=self._monthly_spend,
                reason=reason,
                period=period,
                suggested_actions=self._suggested_actions(),
            )

    def record_spend(self, amount_cents: float, requests: int = 1) -> None:
        """
        Add the actual cost of a completed model call.

        Raises:
            ValueError: If amount_cents is negative
        """
        if amount_cents < 0:
            raise ValueError(f"amount_cents cannot be negative, got {amount_cents}")

        with self._lock:
            now = self._now()
            self._rollover(now)
            total = self._carry + amount_cents
            whole = int(total)
            self._carry = total - whole
            self._daily_spend += whole
            self._monthly_spend += whole
            self._daily_requests += requests
            self._monthly_requests += requests
            pending = self._check_thresholds(now)
            self._evaluate_rules(now)

        self._emit(pending)

    def record_failed_attempt(self) -> None:
        """Count a model call that failed upstream. Nothing was billed."""
        with self._lock:
            self._rollover(self._now())
            self._failed_attempts += 1

    # =========================================================================
    # Admin
    # =========================================================================

    def resume(self) -> bool:
        """Lift an auto-stop. Returns True if the guard was halted."""
        with self._lock:
            was_halted = bool(self._halts)
            for period in list(self._halts):
                self._unhalt(period, "resumed by operator")
            return was_halted

    def get_config(self) -> BudgetConfig:
        with self._lock:
            return copy.deepcopy(self._config)

    def update_config(self, config: BudgetConfig) -> BudgetConfig:
        """
        Replace the configuration.

        Threshold levels no longer met are re-armed, and an auto-stop is lifted
        if usage of the halted period falls under the new emergency threshold.

        Raises:
            ValidationError: If the config is invalid
        """
        validate_budget_config(config)
        with self._lock:
            now = self._now()
            self._rollover(now)
            self._config = copy.deepcopy(config)

            for period in ("daily", "monthly"):
                usage = self._usage(period)
                if usage < config.emergency_threshold:
                    self._triggered[period].discard("emergency")
                if usage < config.warning_threshold:
                    self._triggered[period].discard("warning")

            for period in list(self._halts):
                if not config.auto_stop_enabled or self._usage(period) < config.emergency_threshold:
                    self._unhalt(period, "configuration updated")

            known = {rule.id for rule in config.custom_rules}
            self._rule_state = {k: v for k, v in self._rule_state.items() if k in known}
            pending = self._check_thresholds(now)
            self._evaluate_rules(now)

        logger.info(
            "Budget config updated: daily=%d monthly=%d cents",
            config.daily_limit_cents, config.monthly_limit_cents,
        )
        self._emit(pending)
        return copy.deepcopy(config)

    def get_state(self) -> dict:
        """Raw counters and limits."""
        with self._lock:
            self._rollover(self._now())
            cfg = self._config
            return {
                "daily_spend_cents": self._daily_spend,
                "monthly_spend_cents": self._monthly_spend,
                "daily_limit_cents": cfg.daily_limit_cents,
                "monthly_limit_cents": cfg.monthly_limit_cents,
                "warning_threshold": cfg.warning_threshold,
                "emergency_threshold": cfg.emergency_threshold,
                "auto_stop_enabled": cfg.auto_stop_enabled,
                "custom_rules": [asdict(rule) for rule in cfg.custom_rules],
            }

    def get_status(self) -> dict:
        """Computed budget status for dashboards."""
        with self._lock:
            now = self._now()
            self._rollover(now)
            cfg = self._config
            days_in_month = calendar.monthrange(now.year, now.month)[1]
            projected = round(self._monthly_spend / now.day * days_in_month)
            daily_usage = self._usage("daily")
            monthly_usage = self._usage("monthly")
            return {
                "daily_spend_cents": self._daily_spend,
                "monthly_spend_cents": self._monthly_spend,
                "daily_limit_cents": cfg.daily_limit_cents,
                "monthly_limit_cents": cfg.monthly_limit_cents,
                "daily_usage": daily_usage,
                "monthly_usage": monthly_usage,
                "daily_requests": self._daily_requests,
                "monthly_requests": self._monthly_requests,
                "failed_attempts": self._failed_attempts,
                "projected_monthly_spend_cents": projected,
                "days_left_in_month": days_in_month - now.day,
                "over_budget": daily_usage >= 100 or monthly_usage >= 100,
                "halted": bool(self._halts),
                "halted_reason": self._halt()[0],
                "halted_periods": sorted(self._halts),
                "alerts_triggered": list(self._period_alerts),
                "suggested_actions": self._suggested_actions(),
                "rule_firings": [asdict(f) for f in self._firings],
                "history": [asdict(p) for p in self._history],
                "as_of": now.isoformat(),
            }

    def reset(self) -> None:
        """Zero all counters, history and firings. Keeps the config."""
        with self._lock:
            self._history.clear()
            self._firings.clear()
            self._start_fresh(self._now())
