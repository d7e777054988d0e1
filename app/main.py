import json
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Sequence

import structlog
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi.errors import RateLimitExceeded

from app.modules.approvals.domain.scheduler import ApprovalCleanupScheduler
from app.shared.core.app_routes import register_api_routers, register_lifecycle_routes
from app.shared.core.cache import build_ttl_store
from app.shared.core.config import get_settings, reload_settings_from_environment
from app.shared.core.exceptions import AdminTrustException
from app.shared.core.logging import setup_logging
from app.shared.core.middleware import RequestIDMiddleware, SecurityHeadersMiddleware
from app.shared.core.ops_metrics import API_ERRORS_TOTAL
from app.shared.core.rate_limit import setup_rate_limiting
from app.shared.db.session import async_session_maker, get_engine

setup_logging()
settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()

    logger.info("app_starting", app_name=settings.APP_NAME, environment=settings.ENVIRONMENT)

    app.state.ttl_store = build_ttl_store(settings)

    scheduler: ApprovalCleanupScheduler | None = None
    if settings.ADMIN_APPROVAL_CLEANUP_ENABLED and not settings.TESTING:
        scheduler = ApprovalCleanupScheduler(async_session_maker, settings)
        scheduler.start()
    app.state.approval_cleanup_scheduler = scheduler

    yield

    logger.info("app_shutting_down")
    if scheduler is not None:
        scheduler.stop()

    await get_engine().dispose()
    logger.info("db_engine_disposed")


# Application instance
admin_app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)
# Uvicorn looks for 'app' by default.
app: FastAPI = admin_app

__all__ = ["app", "admin_app", "lifespan"]


@admin_app.exception_handler(AdminTrustException)
async def admin_trust_exception_handler(
    request: Request, exc: AdminTrustException
) -> JSONResponse:
    """Handle custom application exceptions."""
    from app.shared.core.error_governance import handle_exception

    return handle_exception(request, exc)


@admin_app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions with standardized format."""
    detail_text = str(exc.detail) if isinstance(exc.detail, str) else "Request failed"
    if settings.is_production_like and exc.status_code >= 500:
        detail_text = "An unexpected internal error occurred"

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=exc.status_code
    ).inc()
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": detail_text,
                "code": "http_error",
                "id": getattr(request.state, "request_id", None),
                "details": None,
            }
        },
        headers=getattr(exc, "headers", None),
    )


@admin_app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors."""

    def _json_safe(value: Any) -> Any:
        if isinstance(value, Exception):
            return str(value)
        try:
            json.dumps(value)
            return value
        except (TypeError, ValueError):
            return str(value)

    def _sanitize_errors(errors: Sequence[Any]) -> List[Dict[str, Any]]:
        sanitized = []
        for err in errors:
            clean = dict(err)
            if "ctx" in clean and isinstance(clean["ctx"], dict):
                clean["ctx"] = {k: _json_safe(v) for k, v in clean["ctx"].items()}
            if "input" in clean:
                clean["input"] = _json_safe(clean["input"])
            sanitized.append(clean)
        return sanitized

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=422
    ).inc()
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "message": "The request body or parameters are invalid.",
                "code": "validation_error",
                "id": getattr(request.state, "request_id", None),
                "details": {"errors": _sanitize_errors(exc.errors())},
            }
        },
    )


setup_rate_limiting(admin_app)


async def custom_rate_limit_handler(request: Request, exc: Exception) -> Response:
    if not isinstance(exc, RateLimitExceeded):
        raise exc
    status_code = getattr(exc, "status_code", 429)
    API_ERRORS_TOTAL.labels(
        path=request.url.path,
        method=request.method,
        status_code=status_code,
    ).inc()
    logger.warning(
        "rate_limit_exceeded", path=request.url.path, limit=str(exc.detail)
    )
    response = JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "message": "Too many requests. Please retry later.",
                "code": "rate_limited",
                "id": getattr(request.state, "request_id", None),
                "details": {"limit": str(exc.detail)},
            }
        },
    )
    # Retry-After / X-RateLimit-* only exist once slowapi has evaluated a limit.
    view_rate_limit = getattr(request.state, "view_rate_limit", None)
    if view_rate_limit is not None:
        limiter = request.app.state.limiter
        response = limiter._inject_headers(response, view_rate_limit)
    return response


admin_app.add_exception_handler(RateLimitExceeded, custom_rate_limit_handler)


@admin_app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions with sanitized responses."""
    from app.shared.core.error_governance import handle_exception

    return handle_exception(request, exc)


register_lifecycle_routes(
    admin_app,
    app_name=settings.APP_NAME,
    version=settings.VERSION,
)
register_api_routers(admin_app)

# Initialize Prometheus Metrics
Instrumentator().instrument(admin_app).expose(admin_app)

# Middleware is processed in REVERSE order of addition.
# CORS must be added LAST so it processes FIRST for incoming requests.
admin_app.add_middleware(SecurityHeadersMiddleware)
admin_app.add_middleware(RequestIDMiddleware)

if settings.CORS_ORIGINS and "*" in settings.CORS_ORIGINS:
    # allow_credentials=True forbids wildcard origins
    logger.error(
        "insecure_cors_config_detected",
        msg="allow_credentials=True with '*' origin is forbidden",
    )
    cors_allowed_origins = [o for o in settings.CORS_ORIGINS if o != "*"]
else:
    cors_allowed_origins = settings.CORS_ORIGINS

admin_app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Admin-Session-Id", "X-Request-ID"],
)
