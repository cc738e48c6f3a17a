"""FastAPI server for aigate."""

from __future__ import annotations

import hmac
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from aigate import __version__
from aigate.config import Settings, configure_logging
from aigate.errors import (
    AIGateError,
    AuthenticationError,
    BudgetExceededError,
    UpstreamModelError,
    ValidationError,
)
from aigate.models import RateLimitDecision
from aigate.service import AIService
from aigate.validation import validate_operation, validate_tags, validate_ttl_ms

logger = logging.getLogger("aigate.api")

CACHE_GET_ACTIONS = ("stats", "health", "insights", "report", "export")


# =============================================================================
# Request models
# =============================================================================

class CacheActionRequest(BaseModel):
    action: str = Field(..., min_length=1)
    params: Dict[str, Any] = Field(default_factory=dict)


class CacheConfigRequest(BaseModel):
    config: Dict[str, Any]


class StatusRequest(BaseModel):
    testModels: bool = False
    includeUsage: bool = False


class EnhanceTextRequest(BaseModel):
    text: Any = None
    context: str = "general"
    organizationName: Optional[str] = None
    additionalContext: Dict[str, Any] = Field(default_factory=dict)


class ChatRequest(BaseModel):
    messages: List[Any] = Field(default_factory=list)
    context: Optional[Dict[str, Any]] = None


# =============================================================================
# Responses
# =============================================================================

def _timestamp() -> str:
    return datetime.now(UTC).isoformat()


def _success(data: Any = None, message: Optional[str] = None, **extra: Any) -> JSONResponse:
    content: Dict[str, Any] = {"status": "success"}
    if data is not None:
        content["data"] = data
    if message is not None:
        content["message"] = message
    content.update(extra)
    content["timestamp"] = _timestamp()
    return JSONResponse(content)


def _error(status_code: int, error: str, **extra: Any) -> JSONResponse:
    content = {"status": "error", "error": error, **extra, "timestamp": _timestamp()}
    return JSONResponse(content, status_code=status_code)


def _rate_limited(decision: RateLimitDecision) -> JSONResponse:
    response = _error(429, "Rate limit exceeded", retryAfter=decision.retry_after_seconds)
    response.headers["Retry-After"] = str(decision.retry_after_seconds)
    return response


# =============================================================================
# Dependencies
# =============================================================================

@dataclass
class Principal:
    user_id: str


def get_service(request: Request) -> AIService:
    return request.app.state.service


def require_principal(
    request: Request,
    x_api_key: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
) -> Principal:
    if not x_api_key:
        raise AuthenticationError("Missing X-API-Key header")
    expected = get_service(request).settings.api_key
    if expected and not hmac.compare_digest(x_api_key, expected):
        raise AuthenticationError("Invalid API key")
    return Principal(user_id=x_user_id or "api")


def client_id(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("x-real-ip") or "anonymous"


def admin_rate_limit(request: Request) -> None:
    decision = get_service(request).check_admin_rate_limit(client_id(request))
    if not decision.allowed:
        raise StarletteHTTPException(
            status_code=429,
            detail={"error": "Rate limit exceeded", "retryAfter": decision.retry_after_seconds},
            headers={"Retry-After": str(decision.retry_after_seconds)},
        )


router = APIRouter()


@router.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


# =============================================================================
# Cache
# =============================================================================

@router.get("/api/ai/cache", dependencies=[Depends(admin_rate_limit)])
def cache_read(
    action: str = Query("stats"),
    time_range_ms: int = Query(3_600_000, alias="timeRange"),
    service: AIService = Depends(get_service),
) -> JSONResponse:
    if action not in CACHE_GET_ACTIONS:
        raise ValidationError.for_field("action", f"must be one of: {', '.join(CACHE_GET_ACTIONS)}")
    if time_range_ms <= 0:
        raise ValidationError.for_field("timeRange", "must be a positive number of milliseconds")

    with service.monitor.track(f"cache_{action}"):
        if action == "stats":
            data = {
                "cache": service.cache.get_advanced_stats(),
                "performance": service.monitor.get_status(),
            }
        elif action == "health":
            perf = service.monitor.get_status()
            stats = service.cache.get_advanced_stats()
            data = {
                "overall": perf["overall"],
                "cache": {
                    "hit_rate": stats["hit_rate"],
                    "size": stats["size"],
                    "memory_usage": stats["memory_usage"],
                    "warming_status": stats["warming_status"],
                },
                "performance": {
                    "response_time": perf["metrics"]["response_time"],
                    "error_rate": perf["metrics"]["error_rate"],
                    "throughput": perf["metrics"]["throughput"],
                },
                "alerts": len(perf["active_alerts"]),
            }
        elif action == "insights":
            data = {"insights": service.monitor.generate_insights()}
        elif action == "report":
            data = {"report": service.monitor.get_report(time_range_ms / 1000)}
        else:
            data = {
                "cache": service.cache.export_cache(),
                "performance": service.monitor.export_data(),
            }
    return _success(data)


def _require(params: Dict[str, Any], name: str) -> Any:
    value = params.get(name)
    if value is None or value == "":
        raise ValidationError.for_field(name, "is required")
    return value


def _cache_warm(service: AIService, params: Dict[str, Any]) -> JSONResponse:
    background = params.get("background", True)
    if not isinstance(background, bool):
        raise ValidationError.for_field("background", "must be a boolean")
    with service.monitor.track("cache_warm"):
        data = service.warm_cache(background=background)
    return _success(data, "Cache warming started" if background else "Cache warming complete")


def _cache_clear(service: AIService, params: Dict[str, Any]) -> JSONResponse:
    tag = params.get("tag")
    if tag is not None:
        if not isinstance(tag, str) or not tag:
            raise ValidationError.for_field("tag", "must be a non-empty string")
        with service.monitor.track("cache_clear"):
            cleared = service.cache.clear_by_tag(tag)
        return _success({"cleared": cleared, "tag": tag}, f"Cleared {cleared} entries with tag '{tag}'")
    if params.get("confirm") is not True:
        raise ValidationError.for_field("confirm", "must be true to clear the whole cache")
    with service.monitor.track("cache_clear"):
        service.cache.clear()
    return _success(message="Cache cleared")


def _cache_optimize(service: AIService, params: Dict[str, Any]) -> JSONResponse:
    with service.monitor.track("cache_optimize"):
        result = service.cache.optimize()
    return _success(result, "Cache optimization completed")


def _cache_set(service: AIService, params: Dict[str, Any]) -> JSONResponse:
    operation = validate_operation(_require(params, "operation"))
    data = params.get("data")
    if data is None:
        raise ValidationError.for_field("data", "is required")
    options = params.get("options") or {}
    if not isinstance(options, dict):
        raise ValidationError.for_field("options", "must be an object")
    ttl = validate_ttl_ms(options.get("ttl"), field="options.ttl")
    tags = validate_tags(options.get("tags"), field="options.tags")
    cost = options.get("cost", 0)
    if isinstance(cost, bool) or not isinstance(cost, (int, float)) or cost < 0:
        raise ValidationError.for_field("options.cost", "must be a non-negative number of cents")

    with service.monitor.track("cache_set") as trace:
        stored = service.cache.set(operation, params.get("params"), data, ttl=ttl, tags=tags, cost_cents=cost)
        trace.success = stored
    if not stored:
        return _error(400, "Cache entry rejected (cache disabled or entry too large)")
    return _success(message="Cache entry set successfully")


def _cache_get(service: AIService, params: Dict[str, Any]) -> JSONResponse:
    operation = validate_operation(_require(params, "operation"))
    with service.monitor.track("cache_get") as trace:
        value = service.cache.get(operation, params.get("params"))
        trace.cache_hit = value is not None
    return JSONResponse({
        "status": "success",
        "hit": value is not None,
        "data": value,
        "timestamp": _timestamp(),
    })


def _cache_import(service: AIService, params: Dict[str, Any]) -> JSONResponse:
    snapshot = _require(params, "data")
    with service.monitor.track("cache_import") as trace:
        imported = service.cache.import_cache(snapshot)
        trace.success = imported
    if not imported:
        return _error(400, "Failed to import cache data")
    return _success(message="Cache data imported successfully")


def _alert_action(verb: str, fn_name: str) -> Callable[[AIService, Dict[str, Any]], JSONResponse]:
    def handler(service: AIService, params: Dict[str, Any]) -> JSONResponse:
        alert_id = _require(params, "alertId")
        if not isinstance(alert_id, str):
            raise ValidationError.for_field("alertId", "must be a string")
        with service.monitor.track(f"cache_{fn_name}"):
            done = getattr(service.monitor, fn_name)(alert_id)
        if not done:
            return _error(404, "Alert not found")
        return _success(message=f"Alert {verb}")
    return handler


CACHE_POST_ACTIONS: Dict[str, Callable[[AIService, Dict[str, Any]], JSONResponse]] = {
    "warm": _cache_warm,
    "clear": _cache_clear,
    "optimize": _cache_optimize,
    "set": _cache_set,
    "get": _cache_get,
    "import": _cache_import,
    "acknowledge_alert": _alert_action("acknowledged", "acknowledge_alert"),
    "resolve_alert": _alert_action("resolved", "resolve_alert"),
}


@router.post("/api/ai/cache", dependencies=[Depends(require_principal), Depends(admin_rate_limit)])
def cache_action(req: CacheActionRequest, service: AIService = Depends(get_service)) -> JSONResponse:
    handler = CACHE_POST_ACTIONS.get(req.action)
    if handler is None:
        raise ValidationError.for_field("action", f"must be one of: {', '.join(CACHE_POST_ACTIONS)}")
    return handler(service, req.params)


@router.put("/api/ai/cache", dependencies=[Depends(require_principal), Depends(admin_rate_limit)])
def cache_configure(req: CacheConfigRequest, service: AIService = Depends(get_service)) -> JSONResponse:
    config = service.update_cache_config(req.config)
    with service.monitor.track("cache_configure"):
        stats = service.cache.get_advanced_stats()
    return _success({"config": config, "size": stats["size"]}, "Cache configuration updated")


@router.delete("/api/ai/cache", dependencies=[Depends(require_principal), Depends(admin_rate_limit)])
def cache_delete(
    tag: Optional[str] = Query(None),
    operation: Optional[str] = Query(None),
    confirm: bool = Query(False),
    service: AIService = Depends(get_service),
) -> JSONResponse:
    if tag:
        with service.monitor.track("cache_delete"):
            deleted = service.cache.clear_by_tag(tag)
        return _success(message=f"Deleted {deleted} entries with tag '{tag}'", deleted=deleted)
    if operation and confirm:
        with service.monitor.track("cache_delete"):
            service.cache.clear()
        return _success(message="All cache entries deleted")
    raise ValidationError(
        "Delete requires a tag, or operation with confirm=true for a full clear",
        [{"field": "tag", "message": "required unless operation and confirm=true are given"}],
    )


# =============================================================================
# Status
# =============================================================================

def _status_response(report: Dict[str, Any]) -> JSONResponse:
    code = 503 if report["status"] == "unhealthy" else 200
    return JSONResponse(
        {"status": report["status"], "data": report, "timestamp": report["timestamp"]},
        status_code=code,
    )


@router.get("/api/ai/status")
def status(service: AIService = Depends(get_service)) -> JSONResponse:
    return _status_response(service.health())


@router.post("/api/ai/status")
def status_detailed(
    req: Optional[StatusRequest] = None,
    service: AIService = Depends(get_service),
) -> JSONResponse:
    req = req or StatusRequest()
    return _status_response(
        service.detailed_status(test_models=req.testModels, include_usage=req.includeUsage)
    )


# =============================================================================
# Budget
# =============================================================================

@router.get("/api/ai/budget/config", dependencies=[Depends(admin_rate_limit)])
def budget_config(service: AIService = Depends(get_service)) -> JSONResponse:
    return _success(service.budget.get_config().to_dict())


@router.put("/api/ai/budget/config", dependencies=[Depends(require_principal), Depends(admin_rate_limit)])
def budget_config_update(
    config: Dict[str, Any] = Body(...),
    service: AIService = Depends(get_service),
) -> JSONResponse:
    with service.monitor.track("budget_config_update"):
        updated = service.update_budget_config(config)
    return _success(updated.to_dict(), "Budget configuration updated")


@router.get("/api/ai/budget/status", dependencies=[Depends(admin_rate_limit)])
def budget_status(service: AIService = Depends(get_service)) -> JSONResponse:
    return _success(service.budget.get_status())


@router.post("/api/ai/budget/resume", dependencies=[Depends(require_principal), Depends(admin_rate_limit)])
def budget_resume(service: AIService = Depends(get_service)) -> JSONResponse:
    resumed = service.budget.resume()
    return _success(
        {"resumed": resumed},
        "AI calls resumed" if resumed else "Budget guard was not halted",
    )


# =============================================================================
# Model-invoking routes
# =============================================================================

@router.post("/api/ai/enhance-text")
def enhance_text(
    req: EnhanceTextRequest,
    principal: Principal = Depends(require_principal),
    service: AIService = Depends(get_service),
) -> JSONResponse:
    result = service.enhance_text(
        principal.user_id,
        req.text,
        context=req.context,
        organization_name=req.organizationName,
        additional_context=req.additionalContext,
    )
    if not result.allowed:
        return _rate_limited(result.rate_limit)
    return _success({
        "enhanced_text": result.data,
        "original_text": req.text,
        "context": req.context,
        "cached": result.cached,
        "usage": {"tokens": result.tokens, "model": result.model, "cost_cents": result.cost_cents},
        "suggested_actions": result.suggested_actions,
        "rate_limit": {"remaining": result.rate_limit.remaining, "reset_at": result.rate_limit.reset_at},
    })


@router.post("/api/ai/chat")
def chat(
    req: ChatRequest,
    principal: Principal = Depends(require_principal),
    service: AIService = Depends(get_service),
) -> JSONResponse:
    result = service.chat(principal.user_id, req.messages, req.context)
    if not result.allowed:
        return _rate_limited(result.rate_limit)
    return _success({
        "message": {"role": "assistant", "content": result.data},
        "cached": result.cached,
        "usage": {"tokens": result.tokens, "model": result.model, "cost_cents": result.cost_cents},
        "suggested_actions": result.suggested_actions,
        "rate_limit": {"remaining": result.rate_limit.remaining, "reset_at": result.rate_limit.reset_at},
    })


# =============================================================================
# App
# =============================================================================

def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return _error(400, str(exc), details=exc.details)

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            {
                "field": ".".join(str(p) for p in e["loc"] if p != "body") or "body",
                "message": e["msg"],
            }
            for e in exc.errors()
        ]
        return _error(400, "Invalid request", details=details)

    @app.exception_handler(BudgetExceededError)
    async def _budget_exceeded(request: Request, exc: BudgetExceededError) -> JSONResponse:
        return _error(exc.status_code, exc.public_message, reason=exc.reason, period=exc.period)

    @app.exception_handler(UpstreamModelError)
    async def _upstream_error(request: Request, exc: UpstreamModelError) -> JSONResponse:
        logger.warning(
            "Upstream model failure on %s %s: operation=%s params=%s latency=%dms",
            request.method, request.url.path, exc.operation, exc.params_hash, exc.latency_ms,
        )
        return _error(exc.status_code, exc.public_message)

    @app.exception_handler(AIGateError)
    async def _aigate_error(request: Request, exc: AIGateError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Unhandled %s on %s: %s", type(exc).__name__, request.url.path, exc)
        return _error(exc.status_code, exc.public_message)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        extra = dict(exc.detail) if isinstance(exc.detail, dict) else {"error": str(exc.detail)}
        response = _error(exc.status_code, extra.pop("error", "Request failed"), **extra)
        for name, value in (exc.headers or {}).items():
            response.headers[name] = value
        return response

    @app.exception_handler(Exception)
    async def _internal_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Internal error on %s %s", request.method, request.url.path)
        return _error(500, "Internal server error")


def create_app(service: Optional[AIService] = None, start_maintenance: bool = True) -> FastAPI:
    """
    Build the API around a service instance.

    Args:
        service: The AIService to expose. Built from the environment if omitted.
        start_maintenance: Run the maintenance loop for the app's lifetime.
    """
    settings = service.settings if service is not None else Settings.from_env()
    configure_logging(settings.log_level)
    service = service or AIService(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_maintenance:
            service.start_maintenance()
        yield
        service.stop_maintenance()

    app = FastAPI(title="aigate API", version=__version__, lifespan=lifespan)
    app.state.service = service
    _install_error_handlers(app)
    app.include_router(router)
    return app


app = create_app()
