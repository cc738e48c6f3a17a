"""
AIService: the composed request pipeline.

One explicitly constructed instance owns the cache, monitor, rate limiters,
budget guard and gateway. The HTTP layer receives it by injection; tests
build their own and call ``reset()`` between cases.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Callable, Optional

from aigate.budget import BudgetConfig, BudgetGuard
from aigate.cache import CacheConfig, ResponseCache, make_cache_key
from aigate.config import Settings, get_model_chain
from aigate.errors import BudgetExceededError, UpstreamModelError, ValidationError
from aigate.gateway import Completion, GatewayClient, GatewayRequest
from aigate.models import RateLimitDecision
from aigate.monitor import PerformanceMonitor
from aigate.prompts import (
    CHAT_MAX_TOKENS,
    ENHANCE_MAX_TOKENS,
    build_chat_system_prompt,
    build_enhance_prompt,
    parse_chat_context,
    parse_chat_messages,
    render_transcript,
)
from aigate.rate_limiter import RateLimitConfig, RateLimiter
from aigate.validation import validate_operation, validate_tags, validate_text, validate_ttl_ms

logger = logging.getLogger(__name__)


@dataclass
class GenerateResult:
    """
    Outcome of ``AIService.generate``.

    A rate-limited call is not an error: ``allowed`` is False and
    ``rate_limit`` carries the retry hint.
    """
    allowed: bool
    rate_limit: RateLimitDecision
    data: Any = None
    cached: bool = False
    model: Optional[str] = None
    cost_cents: float = 0.0
    tokens: int = 0
    latency_ms: float = 0.0
    suggested_actions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "data": self.data,
            "cached": self.cached,
            "model": self.model,
            "cost_cents": self.cost_cents,
            "tokens": self.tokens,
            "latency_ms": self.latency_ms,
            "suggested_actions": self.suggested_actions,
            "rate_limit": {
                "limit": self.rate_limit.limit,
                "remaining": self.rate_limit.remaining,
                "reset_at": self.rate_limit.reset_at,
            },
        }


def _rank(status: str) -> int:
    return {"healthy": 0, "degraded": 1, "unhealthy": 2}.get(status, 0)


class AIService:
    """
    Cache-first model invocation with rate limits, budget and monitoring.

    Example:
        ```python
        service = AIService(gateway=GatewayClient(default_provider=MockProvider()))

        result = service.enhance_text("user_123", "our goal is grow", context="objective")
        result.data, result.cached
        ```
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        cache: Optional[ResponseCache] = None,
        monitor: Optional[PerformanceMonitor] = None,
        ai_limiter: Optional[RateLimiter] = None,
        admin_limiter: Optional[RateLimiter] = None,
        budget: Optional[BudgetGuard] = None,
        gateway: Optional[GatewayClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or Settings.from_env()
        s = self.settings

        self.cache = cache or ResponseCache(
            CacheConfig(
                max_entries=s.cache_max_entries,
                max_memory_bytes=int(s.cache_memory_mb * 1024 * 1024),
                max_entry_bytes=int(s.cache_max_entry_kb * 1024),
                default_ttl=s.cache_default_ttl_seconds,
            ),
            clock=clock,
        )
        self.monitor = monitor or PerformanceMonitor(clock=clock)
        self.monitor.set_memory_probe(self.cache.memory_usage)
        self.ai_limiter = ai_limiter or RateLimiter(
            RateLimitConfig(max_requests=s.ai_requests_per_hour, window_seconds=3600), clock=clock
        )
        self.admin_limiter = admin_limiter or RateLimiter(
            RateLimitConfig(max_requests=s.admin_requests_per_minute, window_seconds=60), clock=clock
        )
        self.budget = budget or BudgetGuard()
        self.budget.set_alert_sink(self.monitor.raise_alert, self.monitor.clear_condition)
        self.gateway = gateway or GatewayClient(timeout_seconds=s.gateway_timeout_seconds)

        self._stop = threading.Event()
        self._maintenance_thread: Optional[threading.Thread] = None

    # =========================================================================
    # Pipeline
    # =========================================================================

    def generate(
        self,
        identity: str,
        operation: str,
        params: Any,
        prompt: str,
        system_prompt: Optional[str] = None,
        tier: str = "text",
        max_tokens: int = 1000,
        temperature: float = 0.7,
        tags: Optional[list[str]] = None,
        ttl: Optional[float] = None,
    ) -> GenerateResult:
        """
        Answer a prompt, from cache when possible.

        Args:
            identity: Rate-limit identity (user id).
            operation: Cache operation name.
            params: Cache key parameters; identical params share an answer.
            prompt: User prompt sent on a miss.
            system_prompt: Optional system prompt.
            tier: Model chain to use.
            max_tokens: Completion limit.
            temperature: Sampling temperature.
            tags: Cache tags for the stored answer.
            ttl: Cache TTL in seconds; adaptive when omitted.

        Raises:
            ValidationError: On malformed input
            BudgetExceededError: If the budget guard stops the call
            UpstreamModelError: If every model failed (GatewayTimeoutError on timeout)
        """
        validate_operation(operation)
        tags = validate_tags(tags)
        try:
            get_model_chain(tier)
        except ValueError as e:
            raise ValidationError.for_field("tier", str(e)) from e
        try:
            key = make_cache_key(operation, params)
        except (TypeError, ValueError) as e:
            raise ValidationError.for_field("params", "must be JSON-serialisable") from e

        decision = self.ai_limiter.check(identity)
        if not decision.allowed:
            logger.info(
                "Rate limit exceeded for %s, retry in %ds", identity, decision.retry_after_seconds
            )
            return GenerateResult(allowed=False, rate_limit=decision)

        request_id = f"{operation}_{uuid.uuid4().hex[:12]}"
        self.monitor.start_request(request_id, f"ai_{operation}")
        started = time.monotonic()

        cached = self.cache.get(operation, params)
        if cached is not None:
            self.monitor.end_request(request_id, True, 0.0, cache_hit=True)
            logger.debug("Cache hit for %s", operation)
            return GenerateResult(
                allowed=True,
                rate_limit=decision,
                data=cached,
                cached=True,
                latency_ms=(time.monotonic() - started) * 1000,
            )

        request = GatewayRequest(
            prompt=prompt,
            tier=tier,
            system_prompt=system_prompt,
            max_tokens=max_tokens,
            temperature=temperature,
            operation=operation,
            params_hash=key[:16],
        )

        budget_decision = self.budget.preauthorize(self.gateway.estimate_request_cents(request))
        if not budget_decision.allowed:
            self.monitor.end_request(request_id, False, 0.0, cache_hit=False)
            logger.warning("Budget guard rejected %s: %s", operation, budget_decision.reason)
            raise BudgetExceededError(budget_decision.reason, budget_decision.period)

        try:
            completion: Completion = self.gateway.invoke(request)
        except UpstreamModelError:
            self.monitor.end_request(request_id, False, 0.0, cache_hit=False)
            self.budget.record_failed_attempt()
            raise

        text = completion.text.strip()
        self.cache.set(operation, params, text, ttl=ttl, tags=tags, cost_cents=completion.cost_cents)
        self.monitor.end_request(request_id, True, completion.cost_cents, cache_hit=False)
        self.budget.record_spend(completion.cost_cents)
        self.ai_limiter.record_tokens(identity, completion.total_tokens)

        return GenerateResult(
            allowed=True,
            rate_limit=decision,
            data=text,
            model=completion.model,
            cost_cents=completion.cost_cents,
            tokens=completion.total_tokens,
            latency_ms=(time.monotonic() - started) * 1000,
            suggested_actions=budget_decision.suggested_actions,
        )

    def enhance_text(
        self,
        identity: str,
        text: str,
        context: str = "general",
        organization_name: Optional[str] = None,
        additional_context: Optional[dict] = None,
    ) -> GenerateResult:
        """Rewrite text for clarity, in the register of its context."""
        validate_text(text)
        params = {
            "text": text,
            "context": context,
            "organization_name": organization_name,
            "additional_context": additional_context or {},
        }
        system_prompt, user_prompt = build_enhance_prompt(**params)
        return self.generate(
            identity,
            "enhance",
            params,
            user_prompt,
            system_prompt=system_prompt,
            max_tokens=ENHANCE_MAX_TOKENS,
            tags=["enhance", f"enhance:{context}"],
        )

    def chat(self, identity: str, messages: Any, context: Any = None) -> GenerateResult:
        """Answer a conversation, with a system prompt shaped by its session context."""
        parsed = parse_chat_messages(messages)
        for i, message in enumerate(parsed):
            validate_text(message.content, field=f"messages[{i}].content")
        session = parse_chat_context(context)
        params = {
            "messages": [m.model_dump() for m in parsed],
            "context": session.model_dump(),
        }
        return self.generate(
            identity,
            "chat",
            params,
            render_transcript(parsed),
            system_prompt=build_chat_system_prompt(session),
            max_tokens=CHAT_MAX_TOKENS,
            tags=["chat", f"chat:{session.session_type}"],
        )

    def check_admin_rate_limit(self, client_id: str) -> RateLimitDecision:
        return self.admin_limiter.check(client_id)

    # =========================================================================
    # Cache administration
    # =========================================================================

    def _warming_loader(self, operation: str, params: Any) -> str:
        if operation == "enhance":
            system_prompt, prompt = build_enhance_prompt(**params)
            max_tokens = ENHANCE_MAX_TOKENS
        elif operation == "chat":
            messages = parse_chat_messages(params["messages"])
            system_prompt = build_chat_system_prompt(parse_chat_context(params.get("context")))
            prompt = render_transcript(messages)
            max_tokens = CHAT_MAX_TOKENS
        elif isinstance(params, dict) and isinstance(params.get("prompt"), str):
            system_prompt, prompt, max_tokens = params.get("system_prompt"), params["prompt"], 1000
        else:
            raise ValueError(f"no prompt available to warm '{operation}'")

        request = GatewayRequest(
            prompt=prompt,
            system_prompt=system_prompt,
            max_tokens=max_tokens,
            operation=operation,
        )
        decision = self.budget.preauthorize(self.gateway.estimate_request_cents(request))
        if not decision.allowed:
            raise BudgetExceededError(decision.reason, decision.period)
        with self.monitor.track(f"ai_warm_{operation}") as handle:
            handle.cache_hit = False
            try:
                completion = self.gateway.invoke(request)
            except UpstreamModelError:
                self.budget.record_failed_attempt()
                raise
            handle.cost_cents = completion.cost_cents
        self.budget.record_spend(completion.cost_cents)
        return completion.text.strip()

    def warm_cache(self, background: bool = True) -> dict:
        """Start a warming pass through the gateway."""
        thread = self.cache.perform_cache_warming(self._warming_loader, background=background)
        stats = self.cache.get_advanced_stats()
        return {
            "started": thread is not None or not background,
            "warming_status": stats["warming_status"],
            "last_warming": stats["last_warming"],
        }

    def update_cache_config(self, data: Any) -> dict:
        """
        Apply live cache limits: ``max_entries``, ``max_memory_mb``,
        ``max_entry_kb``, ``default_ttl`` (milliseconds), ``enabled``.

        Raises:
            ValidationError: On unknown keys or out-of-range values
        """
        if not isinstance(data, dict) or not data:
            raise ValidationError.for_field("config", "must be a non-empty object")
        allowed = {"max_entries", "max_memory_mb", "max_entry_kb", "default_ttl", "enabled"}
        unknown = sorted(set(data) - allowed)
        if unknown:
            raise ValidationError(
                "Unknown cache config fields",
                [{"field": name, "message": "unknown field"} for name in unknown],
            )

        def positive(name, cast):
            value = data.get(name)
            if value is None:
                return None
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise ValidationError.for_field(name, "must be a positive number")
            return cast(value)

        max_entries = positive("max_entries", int)
        memory_mb = positive("max_memory_mb", float)
        entry_kb = positive("max_entry_kb", float)
        default_ttl = validate_ttl_ms(data.get("default_ttl"), field="default_ttl")
        enabled = data.get("enabled")
        if enabled is not None and not isinstance(enabled, bool):
            raise ValidationError.for_field("enabled", "must be a boolean")

        config = self.cache.reconfigure(
            max_entries=max_entries,
            max_memory_bytes=int(memory_mb * 1024 * 1024) if memory_mb else None,
            max_entry_bytes=int(entry_kb * 1024) if entry_kb else None,
            default_ttl=default_ttl,
        )
        if enabled is not None:
            config.enabled = enabled
        logger.info("Cache config updated: %s", data)
        return {
            "max_entries": config.max_entries,
            "max_memory_bytes": config.max_memory_bytes,
            "max_entry_bytes": config.max_entry_bytes,
            "default_ttl_ms": config.default_ttl * 1000 if config.default_ttl else None,
            "enabled": config.enabled,
        }

    # =========================================================================
    # Budget administration
    # =========================================================================

    def update_budget_config(self, data: Any) -> BudgetConfig:
        """
        Replace the fields given in ``data``; others keep their current value.

        Raises:
            ValidationError: If the resulting config is invalid
        """
        if not isinstance(data, dict):
            raise ValidationError.for_field("config", "must be an object")
        merged = self.budget.get_config().to_dict()
        merged.update(data)
        return self.budget.update_config(BudgetConfig.from_dict(merged))

    # =========================================================================
    # Health
    # =========================================================================

    def _pressure_status(self, usage: float) -> str:
        cfg = self.monitor.config
        if usage >= cfg.memory_critical:
            return "unhealthy"
        if usage >= cfg.memory_warning:
            return "degraded"
        return "healthy"

    def health(self, probe_models: bool = False) -> dict:
        """
        Compose performance, cache, memory, gateway and database checks.

        The overall status is the worst of the performance, memory and
        gateway checks; a degraded cache degrades the whole.
        """
        perf = self.monitor.get_status()
        stats = self.cache.get_advanced_stats()
        gateway = self.gateway.health_check(probe=probe_models)
        memory = stats["memory_usage"]

        cache_status = self._pressure_status(memory)
        if not self.cache.config.enabled and cache_status == "healthy":
            cache_status = "degraded"

        checks = {
            "performance": {
                "status": perf["overall"],
                "metrics": perf["metrics"],
                "reasons": perf["reasons"],
            },
            "cache": {
                "status": cache_status,
                "enabled": self.cache.config.enabled,
                "size": stats["size"],
                "hit_rate": stats["hit_rate"],
                "memory_usage": memory,
                "warming_status": stats["warming_status"],
            },
            "memory": {"status": self._pressure_status(memory), "usage": memory},
            "gateway": {
                "status": gateway["status"],
                "available": gateway["available"],
                "total": gateway["total"],
                "models": gateway["models"],
            },
            "database": {"status": "not_configured"},
        }

        worst = max(
            (checks[name]["status"] for name in ("performance", "memory", "gateway")),
            key=_rank,
        )
        if worst == "healthy" and cache_status != "healthy":
            worst = "degraded"

        return {
            "status": worst,
            "checks": checks,
            "active_alerts": perf["active_alerts"],
            "timestamp": datetime.now(UTC).isoformat(),
        }

    def detailed_status(self, test_models: bool = False, include_usage: bool = False) -> dict:
        """Health plus insights, and optionally spend and traffic figures."""
        report = self.health(probe_models=test_models)
        report["insights"] = self.monitor.generate_insights()
        if include_usage:
            report["usage"] = {
                "budget": self.budget.get_status(),
                "rate_limits": self.ai_limiter.get_global_stats(),
                "gateway": self.gateway.get_stats(),
                "cache": self.cache.get_advanced_stats()["analytics"],
            }
        return report

    # =========================================================================
    # Maintenance
    # =========================================================================

    def run_maintenance(self) -> dict:
        """One housekeeping pass."""
        expired = self.cache.sweep_expired()
        windows = self.ai_limiter.cleanup() + self.admin_limiter.cleanup()
        status = self.monitor.evaluate()
        pruned = self.monitor.prune()
        rolled = self.budget.check_rollover()
        logger.debug(
            "Maintenance: expired=%d windows=%d pruned=%d status=%s rollover=%s",
            expired, windows, pruned, status, rolled,
        )
        return {
            "expired_entries": expired,
            "stale_windows": windows,
            "pruned_traces": pruned,
            "status": status,
            "budget_rollover": rolled,
        }

    def _maintenance_loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            try:
                self.run_maintenance()
            except Exception:
                logger.exception("Maintenance pass failed")

    def start_maintenance(self, interval: Optional[float] = None) -> bool:
        """Start the background maintenance loop. False if already running."""
        if self._maintenance_thread is not None and self._maintenance_thread.is_alive():
            return False
        self._stop.clear()
        self._maintenance_thread = threading.Thread(
            target=self._maintenance_loop,
            args=(interval or self.settings.maintenance_interval_seconds,),
            name="aigate-maintenance",
            daemon=True,
        )
        self._maintenance_thread.start()
        logger.info("Maintenance loop started")
        return True

    def stop_maintenance(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._maintenance_thread is not None:
            self._maintenance_thread.join(timeout)
            self._maintenance_thread = None
            logger.info("Maintenance loop stopped")

    def reset(self) -> None:
        """Drop all cached data, traces, windows and spend."""
        self.cache.reset()
        self.monitor.reset()
        self.ai_limiter.reset()
        self.admin_limiter.reset()
        self.budget.reset()
        self.gateway.reset()

    def shutdown(self) -> None:
        self.stop_maintenance()
        self.gateway.shutdown()
