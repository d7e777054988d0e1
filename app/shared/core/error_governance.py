"""
Unified Error Governance

Centrally handles exception classification, structured logging and metrics,
and maps business reason codes from the session and approval services onto
HTTP statuses.
"""

from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from app.shared.core.config import get_settings
from app.shared.core.exceptions import AdminTrustException
from app.shared.core.ops_metrics import API_ERRORS_TOTAL

logger = structlog.get_logger()

# Reason codes that are safe to echo to clients in staging/production.
_SAFE_CODES = {
    "auth_error",
    "token_expired",
    "invalid_token",
    "forbidden",
    "not_found",
    "validation_error",
    "invalid_action",
    "invalid_status_filter",
    "self_approval_forbidden",
    "request_mismatch",
    "store_unavailable",
    "rate_limited",
    "cannot_terminate_current_session",
    "current_session_required",
    "session_not_found",
    "session_expired",
    "session_idle_timeout",
    "session_absolute_timeout",
}

_REASON_STATUS = {
    "not_found": 404,
    "self_approval_forbidden": 403,
    "request_mismatch": 409,
    "store_unavailable": 503,
}


def status_for_reason(reason: Optional[str]) -> int:
    """HTTP status for a business reason code returned by the workflow services."""
    if not reason:
        return 400
    if reason.startswith("invalid_status:"):
        return 409
    if reason.startswith("session_"):
        return 401
    return _REASON_STATUS.get(reason, 400)


def _is_safe_code(code: str) -> bool:
    return code in _SAFE_CODES or code.startswith("invalid_status:")


def handle_exception(
    request: Request, exc: Exception, error_id: Optional[str] = None
) -> JSONResponse:
    """
    Classifies and records exceptions, returning a standardized JSON response.
    """
    error_id = error_id or getattr(request.state, "request_id", None) or str(uuid4())

    settings = get_settings()
    is_prod = settings.is_production_like

    if isinstance(exc, AdminTrustException):
        trust_exc = exc
        message = trust_exc.message
        if is_prod and not _is_safe_code(trust_exc.code):
            message = "An error occurred while processing your request"
        code, status_code, details = trust_exc.code, trust_exc.status_code, trust_exc.details
    else:
        # Always sanitize unhandled exceptions to avoid leaking secrets via message bodies.
        message = "An unexpected internal error occurred"
        code, status_code, details = "internal_error", 500, {}
        logger.exception(
            "unhandled_raw_exception",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )

    API_ERRORS_TOTAL.labels(
        path=request.url.path,
        method=request.method,
        status_code=status_code,
    ).inc()

    log = logger.warning if status_code < 500 else logger.error
    log(
        "api_error",
        error_id=error_id,
        code=code,
        message=message,
        status_code=status_code,
        path=request.url.path,
    )

    response_details: Optional[Dict[str, Any]] = details or None
    if is_prod and not _is_safe_code(code):
        response_details = None

    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "message": message,
                "code": code,
                "id": error_id,
                "details": response_details,
            }
        },
    )
