"""
Input validation for aigate.

Rejects malformed requests before they reach the cache or the gateway.
"""

import re
from typing import Any, Optional

from aigate.errors import ValidationError


MAX_TEXT_LENGTH = 5_000
MAX_OPERATION_LENGTH = 128
MAX_TAGS = 32
MAX_TTL_MS = 30 * 24 * 60 * 60 * 1000  # 30 days
MAX_LIMIT_CENTS = 100_000_000  # $1M, sanity check

_OPERATION_RE = re.compile(r"^[A-Za-z0-9_.:\-/]+$")


def validate_operation(operation: Any, field: str = "operation") -> str:
    """
    Validate an operation name.

    Raises:
        ValidationError: If the name is empty, too long or has odd characters
    """
    if not isinstance(operation, str) or not operation.strip():
        raise ValidationError.for_field(field, "must be a non-empty string")
    if len(operation) > MAX_OPERATION_LENGTH:
        raise ValidationError.for_field(
            field, f"too long ({len(operation)} chars, max {MAX_OPERATION_LENGTH})"
        )
    if not _OPERATION_RE.match(operation):
        raise ValidationError.for_field(field, "contains unsupported characters")
    return operation


def validate_text(text: Any, field: str = "text") -> str:
    """
    Validate user text sent to a model.

    Raises:
        ValidationError: If text is empty, whitespace-only or too long
    """
    if not isinstance(text, str):
        raise ValidationError.for_field(field, f"must be a string, got {type(text).__name__}")
    if not text.strip():
        raise ValidationError.for_field(field, "cannot be empty or whitespace-only")
    if len(text) > MAX_TEXT_LENGTH:
        raise ValidationError.for_field(
            field, f"too long: {len(text):,} characters (max: {MAX_TEXT_LENGTH:,})"
        )
    return text


def validate_tags(tags: Any, field: str = "tags") -> list[str]:
    """Validate a list of cache tags."""
    if tags is None:
        return []
    if not isinstance(tags, (list, tuple, set, frozenset)):
        raise ValidationError.for_field(field, "must be a list of strings")
    tags = list(tags)
    if len(tags) > MAX_TAGS:
        raise ValidationError.for_field(field, f"at most {MAX_TAGS} tags allowed")
    for tag in tags:
        if not isinstance(tag, str) or not tag:
            raise ValidationError.for_field(field, "every tag must be a non-empty string")
    return tags


def validate_ttl_ms(ttl_ms: Any, field: str = "ttl") -> Optional[float]:
    """Validate a TTL in milliseconds and return it in seconds."""
    if ttl_ms is None:
        return None
    if isinstance(ttl_ms, bool) or not isinstance(ttl_ms, (int, float)):
        raise ValidationError.for_field(field, "must be a number of milliseconds")
    if ttl_ms <= 0:
        raise ValidationError.for_field(field, f"must be positive, got {ttl_ms}")
    if ttl_ms > MAX_TTL_MS:
        raise ValidationError.for_field(field, f"too large (max {MAX_TTL_MS}ms)")
    return ttl_ms / 1000


def validate_budget_config(config) -> None:
    """
    Validate a BudgetConfig, collecting every problem before raising.

    Raises:
        ValidationError: With one detail per offending field
    """
    from aigate.budget import parse_condition

    details = []

    def problem(field, message):
        details.append({"field": field, "message": message})

    for name in ("daily_limit_cents", "monthly_limit_cents"):
        value = getattr(config, name)
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            problem(name, "must be a positive integer number of cents")
        elif value > MAX_LIMIT_CENTS:
            problem(name, f"too large (max {MAX_LIMIT_CENTS})")

    for name in ("warning_threshold", "emergency_threshold"):
        value = getattr(config, name)
        if not isinstance(value, (int, float)) or not 0 < value <= 100:
            problem(name, "must be a percentage in (0, 100]")

    if not details and config.warning_threshold > config.emergency_threshold:
        problem("warning_threshold", "must not exceed emergency_threshold")

    for name in ("alerts_enabled", "auto_stop_enabled"):
        if not isinstance(getattr(config, name), bool):
            problem(name, "must be a boolean")

    seen_ids = set()
    for i, rule in enumerate(config.custom_rules):
        prefix = f"custom_rules[{i}]"
        if not isinstance(rule.enabled, bool):
            problem(f"{prefix}.enabled", "must be a boolean")
        if rule.id in seen_ids:
            problem(f"{prefix}.id", f"duplicate rule id '{rule.id}'")
        seen_ids.add(rule.id)
        if not rule.action or not rule.action.strip():
            problem(f"{prefix}.action", "cannot be empty")
        try:
            parse_condition(rule.condition)
        except ValidationError as e:
            problem(f"{prefix}.condition", str(e))

    if details:
        raise ValidationError("Invalid budget configuration", details)
