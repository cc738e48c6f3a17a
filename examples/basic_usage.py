"""
Basic usage examples for aigate.

Runs entirely offline against the MockProvider.
"""

from aigate import (
    AIService,
    BudgetConfig,
    BudgetExceededError,
    BudgetGuard,
    GatewayClient,
    MockProvider,
    ResponseCache,
    Settings,
    ValidationError,
)
from aigate.models import BudgetRule


def _service(**kwargs) -> AIService:
    return AIService(
        settings=Settings(),
        gateway=GatewayClient(default_provider=MockProvider()),
        **kwargs,
    )


def example_cache_first():
    """Identical requests are answered from the cache."""
    print("=" * 60)
    print("Example 1: Cache-first enhancement")
    print("=" * 60)

    service = _service()

    for _ in range(2):
        result = service.enhance_text("user_123", "we want to grow sales", context="objective")
        print(f"Cached: {result.cached}  Model: {result.model}  Cost: {result.cost_cents:.4f} cents")

    stats = service.cache.get_advanced_stats()
    print(f"Hit rate: {stats['hit_rate']:.0%}")
    print()
    service.shutdown()


def example_cache_directly():
    """Using the cache without the service."""
    print("=" * 60)
    print("Example 2: Tags and snapshots")
    print("=" * 60)

    cache = ResponseCache()
    cache.set("insights", {"org": 1, "quarter": "Q3"}, {"summary": "On track"}, tags=["org:1"])
    cache.set("insights", {"org": 2, "quarter": "Q3"}, {"summary": "At risk"}, tags=["org:2"])

    # Parameter order never matters
    print(cache.get("insights", {"quarter": "Q3", "org": 1}))

    snapshot = cache.export_cache()
    print(f"Cleared: {cache.clear_by_tag('org:1')}")

    restored = ResponseCache()
    restored.import_cache(snapshot)
    print(f"Restored entries: {restored.get_advanced_stats()['size']}")
    print()


def example_budget():
    """Budget thresholds, advisory rules and auto-stop."""
    print("=" * 60)
    print("Example 3: Budget guard")
    print("=" * 60)

    guard = BudgetGuard(BudgetConfig(
        daily_limit_cents=100,
        custom_rules=[BudgetRule(name="Downgrade", condition="daily_usage >= 50", action="downgrade_model")],
    ))
    service = _service(budget=guard)

    guard.record_spend(60)
    print(f"Suggested actions: {guard.get_status()['suggested_actions']}")

    guard.record_spend(35)
    try:
        service.enhance_text("user_123", "a brand new request")
    except BudgetExceededError as e:
        print(f"Stopped: {e.reason}")

    guard.resume()
    result = service.enhance_text("user_123", "a brand new request")
    print(f"After resume: cached={result.cached}")
    print()
    service.shutdown()


def example_error_handling():
    """Handling validation errors."""
    print("=" * 60)
    print("Example 4: Error handling")
    print("=" * 60)

    service = _service()

    try:
        service.enhance_text("user_123", "   ")
    except ValidationError as e:
        print(f"Validation error: {e}")
        print(f"Details: {e.details}")

    try:
        service.chat("user_123", [{"role": "user", "content": "hi"}], {"session_type": "tracking"})
    except ValidationError as e:
        print(f"Invalid context: {e.details[0]['field']}")

    print()
    service.shutdown()


def example_health():
    """Composed health report."""
    print("=" * 60)
    print("Example 5: Health")
    print("=" * 60)

    service = _service()
    for i in range(6):
        service.enhance_text(f"user_{i % 2}", f"objective number {i % 3}")

    report = service.detailed_status(include_usage=True)
    print(f"Overall: {report['status']}")
    for name, check in report["checks"].items():
        print(f"  {name}: {check['status']}")
    for insight in report["insights"]:
        print(f"  - {insight}")
    print()
    service.shutdown()


if __name__ == "__main__":
    example_cache_first()
    example_cache_directly()
    example_budget()
    example_error_handling()
    example_health()

    print("All examples completed!")
