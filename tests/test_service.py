"""Tests for the composed AI service pipeline."""

import pytest

from aigate.budget import BudgetConfig, BudgetGuard
from aigate.config import Settings
from aigate.errors import BudgetExceededError, UpstreamModelError, ValidationError
from aigate.gateway import GatewayClient, MockProvider
from aigate.rate_limiter import RateLimitConfig, RateLimiter
from aigate.service import AIService

ALL_TEXT_MODELS = ("gpt-4o-mini", "claude-3-haiku-20240307")


@pytest.fixture
def build(clock, wall):
    services = []

    def make(provider=None, budget_config=None, ai_limit=50):
        service = AIService(
            settings=Settings(),
            gateway=GatewayClient(default_provider=provider or MockProvider()),
            budget=BudgetGuard(budget_config or BudgetConfig(), now=wall),
            ai_limiter=RateLimiter(RateLimitConfig(max_requests=ai_limit), clock=clock),
            clock=clock,
        )
        services.append(service)
        return service

    yield make
    for service in services:
        service.shutdown()


class TestPipeline:
    """Test cache-first invocation."""

    def test_miss_then_hit(self, build):
        provider = MockProvider()
        service = build(provider)

        first = service.enhance_text("user_1", "grow revenue", context="objective")
        second = service.enhance_text("user_1", "grow revenue", context="objective")

        assert first.allowed and not first.cached
        assert first.model == "openai/gpt-4o-mini"
        assert first.data.startswith("[gpt-4o-mini]")
        assert second.cached is True
        assert second.data == first.data
        assert len(provider.calls) == 1

    def test_spend_and_tokens_recorded(self, build):
        service = build()
        result = service.enhance_text("user_1", "grow revenue")

        assert result.tokens > 0
        assert service.budget.get_status()["daily_requests"] == 1
        assert service.ai_limiter.get_usage("user_1")["tokens"] == result.tokens

    def test_traces_model_calls(self, build):
        service = build()
        service.enhance_text("user_1", "grow revenue")
        service.enhance_text("user_1", "grow revenue")

        traces = service.monitor.export_data()["traces"]
        assert [t["operation"] for t in traces] == ["ai_enhance", "ai_enhance"]
        assert [t["cache_hit"] for t in traces] == [False, True]

    def test_different_context_is_a_different_entry(self, build):
        provider = MockProvider()
        service = build(provider)
        service.enhance_text("user_1", "grow revenue", context="objective")
        service.enhance_text("user_1", "grow revenue", context="general")

        assert len(provider.calls) == 2

    def test_enhance_tags(self, build):
        service = build()
        service.enhance_text("user_1", "grow revenue", context="objective")

        assert service.cache.clear_by_tag("enhance:objective") == 1

    def test_chat(self, build):
        provider = MockProvider(response_text="  Start with one objective.  ")
        service = build(provider)

        result = service.chat(
            "user_1",
            [{"role": "user", "content": "How do I start?"}],
            {"session_type": "strategy", "time_horizon": "Q3"},
        )

        assert result.data == "Start with one objective."
        assert "Time horizon: Q3" in provider.calls[0]["system_prompt"]
        assert service.cache.clear_by_tag("chat:strategy") == 1


class TestRejections:
    """Test validation, rate limit and budget rejections."""

    def test_rate_limited(self, build):
        service = build(ai_limit=2)
        service.enhance_text("user_1", "one")
        service.enhance_text("user_1", "one")

        result = service.enhance_text("user_1", "one")

        assert result.allowed is False
        assert result.rate_limit.retry_after_seconds > 0
        assert service.enhance_text("user_2", "one").allowed is True

    @pytest.mark.parametrize("text", ["", "   ", None, "x" * 5001])
    def test_invalid_text(self, build, text):
        provider = MockProvider()
        service = build(provider)

        with pytest.raises(ValidationError):
            service.enhance_text("user_1", text)
        assert provider.calls == []

    def test_unknown_tier(self, build):
        with pytest.raises(ValidationError):
            build().generate("user_1", "custom", {}, "prompt", tier="nonexistent")

    def test_non_serialisable_params(self, build):
        with pytest.raises(ValidationError):
            build().generate("user_1", "custom", {"x": object()}, "prompt")

    def test_budget_halt(self, build):
        provider = MockProvider()
        service = build(provider, budget_config=BudgetConfig(daily_limit_cents=100))
        service.budget.record_spend(95)

        with pytest.raises(BudgetExceededError) as exc_info:
            service.enhance_text("user_1", "grow revenue")

        assert exc_info.value.period == "daily"
        assert provider.calls == []

    def test_cache_hit_served_while_halted(self, build):
        service = build(budget_config=BudgetConfig(daily_limit_cents=100))
        service.enhance_text("user_1", "grow revenue")
        service.budget.record_spend(95)

        assert service.enhance_text("user_1", "grow revenue").cached is True

    def test_upstream_failure_is_not_cached(self, build):
        provider = MockProvider(fail_models=ALL_TEXT_MODELS)
        service = build(provider)

        with pytest.raises(UpstreamModelError):
            service.enhance_text("user_1", "grow revenue")
        with pytest.raises(UpstreamModelError):
            service.enhance_text("user_1", "grow revenue")

        assert service.cache.get_advanced_stats()["size"] == 0
        assert service.budget.get_status()["failed_attempts"] == 2
        traces = service.monitor.export_data()["traces"]
        assert [t["success"] for t in traces] == [False, False]


class TestAdministration:
    """Test cache and budget administration."""

    def test_budget_alerts_reach_monitor(self, build):
        service = build(budget_config=BudgetConfig(daily_limit_cents=100))
        service.budget.record_spend(85)

        alerts = service.monitor.get_alerts(active_only=True)
        assert alerts[0]["condition"] == "budget_daily"
        assert alerts[0]["source"] == "budget"

    def test_warm_cache_reloads_learned_queries(self, build):
        provider = MockProvider()
        service = build(provider)
        service.enhance_text("user_1", "grow revenue", context="objective")
        service.cache.clear_by_tag("enhance")

        service.warm_cache(background=False)

        assert len(provider.calls) == 2
        assert service.enhance_text("user_1", "grow revenue", context="objective").cached is True

        warm = [t for t in service.monitor.export_data()["traces"] if t["operation"] == "ai_warm_enhance"]
        assert len(warm) == 1
        assert warm[0]["success"] is True
        assert warm[0]["cost_cents"] > 0
        assert service.budget.get_status()["daily_requests"] == 2

    def test_failed_warming_is_accounted(self, build):
        provider = MockProvider()
        service = build(provider)
        service.enhance_text("user_1", "grow revenue", context="objective")
        service.cache.clear_by_tag("enhance")
        provider.fail_models = set(ALL_TEXT_MODELS)

        service.warm_cache(background=False)

        assert service.cache.get_advanced_stats()["last_warming"]["failed"] == 1
        assert service.budget.get_status()["failed_attempts"] == 1
        trace = service.monitor.export_data()["traces"][-1]
        assert trace["operation"] == "ai_warm_enhance"
        assert trace["success"] is False

    def test_update_cache_config(self, build):
        service = build()
        config = service.update_cache_config({"max_entries": 10, "default_ttl": 60_000})

        assert config["max_entries"] == 10
        assert config["default_ttl_ms"] == 60_000
        assert service.cache.config.default_ttl == 60

    @pytest.mark.parametrize("data", [{}, {"size": 1}, {"max_entries": -1}, {"default_ttl": 0}, {"enabled": "yes"}])
    def test_update_cache_config_rejects(self, build, data):
        with pytest.raises(ValidationError):
            build().update_cache_config(data)

    def test_disable_cache(self, build):
        provider = MockProvider()
        service = build(provider)
        service.update_cache_config({"enabled": False})
        service.enhance_text("user_1", "grow revenue")
        service.enhance_text("user_1", "grow revenue")

        assert len(provider.calls) == 2

    def test_update_budget_config_merges(self, build):
        service = build()
        config = service.update_budget_config({"daily_limit_cents": 1000})

        assert config.daily_limit_cents == 1000
        assert config.monthly_limit_cents == 10_000

    def test_update_budget_config_rejects(self, build):
        with pytest.raises(ValidationError):
            build().update_budget_config({"daily_limit_cents": -5})


class TestHealth:
    """Test composed health."""

    def test_healthy(self, build):
        report = build().health()

        assert report["status"] == "healthy"
        assert report["checks"]["database"] == {"status": "not_configured"}
        assert report["checks"]["gateway"]["available"] == 4

    def test_no_models_is_unhealthy(self, build):
        report = build(MockProvider(configured=False)).health()
        assert report["status"] == "unhealthy"

    def test_disabled_cache_degrades(self, build):
        service = build()
        service.update_cache_config({"enabled": False})
        assert service.health()["status"] == "degraded"

    def test_detailed_status(self, build):
        service = build()
        service.enhance_text("user_1", "grow revenue")

        report = service.detailed_status(include_usage=True)
        assert report["usage"]["budget"]["daily_requests"] == 1
        assert report["usage"]["rate_limits"]["total_requests"] == 1
        assert "insights" in report

    def test_maintenance_pass(self, build, clock):
        service = build()
        service.cache.set("op", {}, "v", ttl=1)
        clock.advance(5)

        result = service.run_maintenance()
        assert result["expired_entries"] == 1
        assert result["status"] == "healthy"

    def test_reset(self, build):
        service = build()
        service.enhance_text("user_1", "grow revenue")
        service.reset()

        assert service.cache.get_advanced_stats()["size"] == 0
        assert service.budget.get_status()["daily_requests"] == 0
        assert service.monitor.export_data()["traces"] == []
