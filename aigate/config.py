"""Global configuration for aigate."""

from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Cents per million tokens.
DEFAULT_PRICING: Dict[str, Dict[str, float]] = {
    "openai/gpt-4o-mini": {"input": 15.0, "output": 60.0},
    "openai/gpt-4o": {"input": 250.0, "output": 1000.0},
    "anthropic/claude-3-haiku-20240307": {"input": 25.0, "output": 125.0},
    "anthropic/claude-3-5-sonnet-20241022": {"input": 300.0, "output": 1500.0},
}

# Ordered failover chains per tier.
DEFAULT_MODEL_CHAINS: Dict[str, List[str]] = {
    "text": ["openai/gpt-4o-mini", "anthropic/claude-3-haiku-20240307"],
    "premium": ["openai/gpt-4o", "anthropic/claude-3-5-sonnet-20241022"],
    "analysis": ["anthropic/claude-3-5-sonnet-20241022", "openai/gpt-4o"],
}

_pricing: Dict[str, Dict[str, float]] = copy.deepcopy(DEFAULT_PRICING)
_model_chains: Dict[str, List[str]] = copy.deepcopy(DEFAULT_MODEL_CHAINS)


def _parse_json_env(var_name: str) -> Dict[str, Any] | None:
    value = os.getenv(var_name)
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Ignoring %s: not valid JSON", var_name)
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def _env_number(var_name: str, default, cast=float):
    value = os.getenv(var_name)
    if value is None or value == "":
        return default
    try:
        return cast(value)
    except ValueError:
        logger.warning("Ignoring %s=%r: expected %s", var_name, value, cast.__name__)
        return default


def get_pricing() -> Dict[str, Dict[str, float]]:
    """Return pricing configuration, with optional env override."""
    parsed = _parse_json_env("AIGATE_PRICING_JSON")
    if parsed:
        return parsed
    return _pricing


def set_pricing(pricing: Dict[str, Dict[str, float]]) -> None:
    """Set pricing (cents per million tokens) at runtime."""
    if not isinstance(pricing, dict) or not pricing:
        raise ValueError("pricing must be a non-empty dict")
    for model, rates in pricing.items():
        if not isinstance(rates, dict) or "input" not in rates or "output" not in rates:
            raise ValueError(f"pricing for {model} must include 'input' and 'output'")
    global _pricing
    _pricing = copy.deepcopy(pricing)


def reset_pricing() -> None:
    """Restore the built-in pricing table."""
    global _pricing
    _pricing = copy.deepcopy(DEFAULT_PRICING)


def get_model_chains() -> Dict[str, List[str]]:
    """Return model chains, with optional env override."""
    parsed = _parse_json_env("AIGATE_MODEL_CHAINS_JSON")
    if parsed:
        return parsed
    return _model_chains


def get_model_chain(tier: str) -> List[str]:
    """Return the ordered failover chain for a tier."""
    chains = get_model_chains()
    if tier not in chains:
        raise ValueError(f"Unknown model tier '{tier}' (known: {', '.join(sorted(chains))})")
    return list(chains[tier])


def set_model_chain(tier: str, models: List[str]) -> None:
    """Replace the failover chain for a tier at runtime."""
    if not models:
        raise ValueError("model chain cannot be empty")
    global _model_chains
    updated = copy.deepcopy(_model_chains)
    updated[tier] = list(models)
    _model_chains = updated


@dataclass
class Settings:
    """Process settings. Built once at startup via ``Settings.from_env()``."""
    api_key: Optional[str] = None
    cache_max_entries: int = 5000
    cache_memory_mb: float = 512
    cache_max_entry_kb: float = 1024
    cache_default_ttl_seconds: Optional[float] = 3600
    ai_requests_per_hour: int = 50
    admin_requests_per_minute: int = 100
    gateway_timeout_seconds: float = 30.0
    maintenance_interval_seconds: float = 60.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            api_key=os.getenv("AIGATE_API_KEY") or None,
            cache_max_entries=_env_number("AIGATE_CACHE_MAX_ENTRIES", defaults.cache_max_entries, int),
            cache_memory_mb=_env_number("AIGATE_CACHE_MEMORY_MB", defaults.cache_memory_mb),
            cache_max_entry_kb=_env_number("AIGATE_CACHE_MAX_ENTRY_KB", defaults.cache_max_entry_kb),
            cache_default_ttl_seconds=_env_number(
                "AIGATE_CACHE_DEFAULT_TTL_SECONDS", defaults.cache_default_ttl_seconds
            ),
            ai_requests_per_hour=_env_number(
                "AIGATE_AI_REQUESTS_PER_HOUR", defaults.ai_requests_per_hour, int
            ),
            admin_requests_per_minute=_env_number(
                "AIGATE_ADMIN_REQUESTS_PER_MINUTE", defaults.admin_requests_per_minute, int
            ),
            gateway_timeout_seconds=_env_number(
                "AIGATE_GATEWAY_TIMEOUT_SECONDS", defaults.gateway_timeout_seconds
            ),
            maintenance_interval_seconds=_env_number(
                "AIGATE_MAINTENANCE_INTERVAL_SECONDS", defaults.maintenance_interval_seconds
            ),
            log_level=os.getenv("AIGATE_LOG_LEVEL", defaults.log_level).upper(),
        )


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach a stream handler to the ``aigate`` logger (once)."""
    root = logging.getLogger("aigate")
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    return root
