"""Tests for the gateway client and circuit breaker."""

import pytest

from aigate.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from aigate.config import set_pricing
from aigate.errors import GatewayTimeoutError, UpstreamModelError
from aigate.gateway import (
    GatewayClient,
    GatewayRequest,
    MockProvider,
    cost_cents,
    estimate_tokens,
    split_model,
)


@pytest.fixture
def gateways():
    created = []

    def make(**kwargs):
        gateway = GatewayClient(**kwargs)
        created.append(gateway)
        return gateway

    yield make
    for gateway in created:
        gateway.shutdown()


class TestHelpers:
    """Test pricing helpers."""

    def test_split_model(self):
        assert split_model("openai/gpt-4o-mini") == ("openai", "gpt-4o-mini")
        assert split_model("local-model") == ("", "local-model")

    def test_estimate_tokens(self):
        assert estimate_tokens("abcd" * 10) == 10
        assert estimate_tokens("") == 1

    def test_cost_cents(self):
        assert cost_cents("openai/gpt-4o-mini", 1000, 1000) == pytest.approx(0.075)

    def test_unknown_model_uses_fallback_rates(self):
        assert cost_cents("acme/unknown", 1_000_000, 0) == pytest.approx(100.0)

    def test_custom_pricing(self):
        set_pricing({"openai/gpt-4o-mini": {"input": 1000.0, "output": 1000.0}})
        assert cost_cents("openai/gpt-4o-mini", 1000, 1000) == pytest.approx(2.0)

    def test_invalid_pricing(self):
        with pytest.raises(ValueError):
            set_pricing({"openai/gpt-4o-mini": {"input": 1.0}})


class TestInvoke:
    """Test dispatch and failover."""

    def test_first_model_answers(self, gateways):
        provider = MockProvider()
        gateway = gateways(default_provider=provider)

        completion = gateway.invoke(GatewayRequest(prompt="Hello", system_prompt="Be brief"))

        assert completion.model == "openai/gpt-4o-mini"
        assert completion.text == "[gpt-4o-mini] Hello"
        assert completion.cost_cents > 0
        assert [a["outcome"] for a in completion.attempts] == ["success"]
        assert provider.calls[0]["system_prompt"] == "Be brief"

    def test_failover_to_next_model(self, gateways):
        gateway = gateways(default_provider=MockProvider(fail_models=("gpt-4o-mini",)))

        completion = gateway.invoke(GatewayRequest(prompt="Hello"))

        assert completion.model == "anthropic/claude-3-haiku-20240307"
        assert [a["outcome"] for a in completion.attempts] == ["error", "success"]
        assert gateway.get_stats()["failovers"] == 1

    def test_all_models_fail(self, gateways):
        gateway = gateways(
            default_provider=MockProvider(fail_models=("gpt-4o-mini", "claude-3-haiku-20240307"))
        )

        with pytest.raises(UpstreamModelError) as exc_info:
            gateway.invoke(GatewayRequest(prompt="Hello", operation="enhance", params_hash="abc"))

        assert type(exc_info.value) is UpstreamModelError
        assert exc_info.value.operation == "enhance"
        assert exc_info.value.params_hash == "abc"
        assert len(exc_info.value.attempts) == 2

    def test_timeout(self, gateways):
        gateway = gateways(default_provider=MockProvider(delay_seconds=0.3), timeout_seconds=0.05)

        with pytest.raises(GatewayTimeoutError) as exc_info:
            gateway.invoke(GatewayRequest(prompt="Hello"))

        assert [a["outcome"] for a in exc_info.value.attempts] == ["timeout", "timeout"]
        assert exc_info.value.status_code == 504

    def test_unconfigured_provider_is_skipped(self, gateways):
        gateway = gateways(providers={
            "openai": MockProvider(configured=False),
            "anthropic": MockProvider(response_text="from anthropic"),
        })

        completion = gateway.invoke(GatewayRequest(prompt="Hello"))

        assert completion.text == "from anthropic"
        assert completion.attempts[0] == {
            "model": "openai/gpt-4o-mini", "outcome": "skipped", "error": "provider not configured",
        }

    def test_unknown_tier(self, gateways):
        gateway = gateways(default_provider=MockProvider())
        with pytest.raises(ValueError):
            gateway.invoke(GatewayRequest(prompt="Hello", tier="nonexistent"))

    def test_open_circuit_skips_provider(self, gateways, clock):
        provider = MockProvider(fail_models=("gpt-4o-mini",))
        gateway = gateways(
            default_provider=provider,
            breaker_config=CircuitBreakerConfig(failure_threshold=2, cooldown_seconds=60),
            clock=clock,
        )
        gateway.invoke(GatewayRequest(prompt="a"))
        gateway.invoke(GatewayRequest(prompt="b"))
        assert gateway.breaker("openai/gpt-4o-mini").state == CircuitState.OPEN

        calls_before = len(provider.calls)
        completion = gateway.invoke(GatewayRequest(prompt="c"))

        assert completion.attempts[0]["error"] == "circuit open"
        assert len(provider.calls) == calls_before + 1

        clock.advance(60)
        assert gateway.breaker("openai/gpt-4o-mini").state == CircuitState.HALF_OPEN

    def test_estimate_request_cents(self, gateways):
        gateway = gateways(default_provider=MockProvider())
        request = GatewayRequest(prompt="x" * 400, max_tokens=1000)
        assert gateway.estimate_request_cents(request) == pytest.approx(cost_cents("openai/gpt-4o-mini", 100, 1000))


class TestHealthCheck:
    """Test gateway health reporting."""

    def test_all_configured(self, gateways):
        report = gateways(default_provider=MockProvider()).health_check()
        assert report["status"] == "healthy"
        assert report["total"] == 4
        assert report["available"] == 4

    def test_partially_configured(self, gateways):
        report = gateways(providers={
            "openai": MockProvider(configured=False),
            "anthropic": MockProvider(),
        }).health_check()

        assert report["status"] == "degraded"
        assert report["available"] == 2
        assert report["models"]["openai/gpt-4o"]["configured"] is False

    def test_nothing_configured(self, gateways):
        report = gateways(default_provider=MockProvider(configured=False)).health_check()
        assert report["status"] == "unhealthy"

    def test_probe(self, gateways):
        report = gateways(
            default_provider=MockProvider(fail_models=("gpt-4o",))
        ).health_check(probe=True)

        assert report["models"]["openai/gpt-4o"]["healthy"] is False
        assert report["models"]["openai/gpt-4o-mini"]["healthy"] is True
        assert report["status"] == "degraded"


class TestCircuitBreaker:
    """Test circuit breaker states."""

    def test_opens_after_threshold(self, clock):
        breaker = CircuitBreaker("openai", CircuitBreakerConfig(failure_threshold=3), clock=clock)
        for _ in range(3):
            assert breaker.allow()
            breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        assert breaker.allow() is False

    def test_success_resets_failure_count(self, clock):
        breaker = CircuitBreaker("openai", CircuitBreakerConfig(failure_threshold=2), clock=clock)
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()

        assert breaker.state == CircuitState.CLOSED

    def test_half_open_recovery(self, clock):
        config = CircuitBreakerConfig(failure_threshold=1, success_threshold=2, cooldown_seconds=30)
        breaker = CircuitBreaker("openai", config, clock=clock)
        breaker.record_failure()

        clock.advance(30)
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.record_success()
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_half_open_failure_reopens(self, clock):
        config = CircuitBreakerConfig(failure_threshold=1, cooldown_seconds=30)
        breaker = CircuitBreaker("openai", config, clock=clock)
        breaker.record_failure()
        clock.advance(30)
        assert breaker.allow()

        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert breaker.get_stats()["time_until_retry"] == 30

    def test_half_open_limits_probes(self, clock):
        config = CircuitBreakerConfig(failure_threshold=1, cooldown_seconds=1, half_open_max_requests=2)
        breaker = CircuitBreaker("openai", config, clock=clock)
        breaker.record_failure()
        clock.advance(1)

        assert [breaker.allow() for _ in range(3)] == [True, True, False]

    def test_stats_count_trips(self, clock):
        breaker = CircuitBreaker("openai", CircuitBreakerConfig(failure_threshold=1, cooldown_seconds=10), clock=clock)
        breaker.record_success()
        breaker.record_failure()
        clock.advance(4)

        stats = breaker.get_stats()
        assert stats["state"] == "open"
        assert stats["trips"] == 1
        assert stats["total_successes"] == 1
        assert stats["time_until_retry"] == 6

    def test_reset(self, clock):
        breaker = CircuitBreaker("openai", CircuitBreakerConfig(failure_threshold=1), clock=clock)
        breaker.record_failure()
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
