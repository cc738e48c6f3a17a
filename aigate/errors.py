"""
Error taxonomy for aigate.

Every error the HTTP layer can surface has a class here carrying the
status code it maps to. Rate limiting is deliberately absent: a rejected
request is a RateLimitDecision, not an exception.
"""

from typing import Optional


class AIGateError(Exception):
    """Base class for all aigate errors."""
    status_code = 500
    public_message = "Internal server error"


class AuthenticationError(AIGateError):
    """Raised when a request carries no valid principal."""
    status_code = 401
    public_message = "Authentication required"


class ValidationError(AIGateError, ValueError):
    """Raised when input validation fails.

    Args:
        message: Summary of the problem.
        details: Field-level problems as ``{"field": ..., "message": ...}``.
    """
    status_code = 400
    public_message = "Invalid request"

    def __init__(self, message: str, details: Optional[list[dict]] = None):
        super().__init__(message)
        self.details = details or []

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(f"{field}: {message}", [{"field": field, "message": message}])


class UpstreamModelError(AIGateError):
    """Raised when every model in a failover chain failed."""
    status_code = 503
    public_message = "AI provider unavailable"

    def __init__(
        self,
        message: str,
        operation: str = "",
        params_hash: str = "",
        latency_ms: int = 0,
        attempts: Optional[list[dict]] = None,
    ):
        super().__init__(message)
        self.operation = operation
        self.params_hash = params_hash
        self.latency_ms = latency_ms
        self.attempts = attempts or []


class GatewayTimeoutError(UpstreamModelError):
    """Raised when the model chain ended on a timeout."""
    status_code = 504
    public_message = "AI provider timed out"


class BudgetExceededError(AIGateError):
    """Raised when the budget guard has stopped further model calls."""
    status_code = 402
    public_message = "AI budget exhausted"

    def __init__(self, reason: str, period: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.period = period


class InternalError(AIGateError):
    """Anything unexpected. Never exposes internal details to clients."""
    status_code = 500
