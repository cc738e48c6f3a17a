"""
aigate - Cache, rate-limit, monitor and budget your AI calls.

Service usage:
    from aigate import AIService, GatewayClient, MockProvider

    service = AIService(gateway=GatewayClient(default_provider=MockProvider()))

    result = service.enhance_text("user_123", "grow revenue", context="objective")
    print(result.data)     # enhanced text
    print(result.cached)   # False, then True on the next identical call

Cache on its own:
    from aigate import ResponseCache

    cache = ResponseCache()
    cache.set("enhance", {"text": "hi"}, "Hi there!", tags=["enhance"])
    cache.get("enhance", {"text": "hi"})   # "Hi there!"

Budget guard:
    from aigate import BudgetGuard, BudgetConfig

    guard = BudgetGuard(BudgetConfig(daily_limit_cents=500, auto_stop_enabled=True))
    if guard.preauthorize(estimated_cents=2).allowed:
        guard.record_spend(1.4)

HTTP API:
    uvicorn api.main:app        # or: aigate serve
"""

from aigate.budget import BudgetConfig, BudgetDecision, BudgetGuard, parse_condition
from aigate.cache import CacheConfig, ResponseCache, WarmingQuery, make_cache_key
from aigate.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from aigate.config import Settings, configure_logging, get_pricing, set_pricing, get_model_chain, set_model_chain
from aigate.errors import (
    AIGateError,
    AuthenticationError,
    BudgetExceededError,
    GatewayTimeoutError,
    InternalError,
    UpstreamModelError,
    ValidationError,
)
from aigate.gateway import (
    AnthropicProvider,
    Completion,
    GatewayClient,
    GatewayRequest,
    MockProvider,
    ModelProvider,
    OpenAIProvider,
)
from aigate.models import Alert, AlertSeverity, BudgetRule, CacheEntry, OperationTrace, RateLimitDecision
from aigate.monitor import PerformanceConfig, PerformanceMonitor
from aigate.rate_limiter import RateLimitConfig, RateLimiter
from aigate.service import AIService, GenerateResult

__version__ = "0.1.0"
__all__ = [
    # Service
    "AIService",
    "GenerateResult",
    "Settings",
    "configure_logging",
    # Cache
    "ResponseCache",
    "CacheConfig",
    "CacheEntry",
    "WarmingQuery",
    "make_cache_key",
    # Rate limiting
    "RateLimiter",
    "RateLimitConfig",
    "RateLimitDecision",
    # Monitoring
    "PerformanceMonitor",
    "PerformanceConfig",
    "OperationTrace",
    "Alert",
    "AlertSeverity",
    # Budget
    "BudgetGuard",
    "BudgetConfig",
    "BudgetDecision",
    "BudgetRule",
    "parse_condition",
    # Gateway
    "GatewayClient",
    "GatewayRequest",
    "Completion",
    "ModelProvider",
    "MockProvider",
    "OpenAIProvider",
    "AnthropicProvider",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "get_pricing",
    "set_pricing",
    "get_model_chain",
    "set_model_chain",
    # Errors
    "AIGateError",
    "AuthenticationError",
    "ValidationError",
    "UpstreamModelError",
    "GatewayTimeoutError",
    "BudgetExceededError",
    "InternalError",
]
