"""
Rate limiting for the admin API.

Provides API rate limiting using slowapi (built on the limits library).
Limits are shared through Redis when REDIS_URL is set.
"""

import hashlib
from typing import Any, Callable, cast

import structlog
from fastapi import FastAPI, Request
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from app.shared.core.config import get_settings

__all__ = [
    "get_limiter",
    "reset_limiter",
    "setup_rate_limiting",
    "rate_limit",
    "standard_limit",
    "sensitive_limit",
    "context_aware_key",
    "RateLimitExceeded",
]

logger = structlog.get_logger()

_limiter: Limiter | None = None

STANDARD_LIMIT = "100/minute"
# Approve, reject and session termination.
SENSITIVE_LIMIT = "30/minute"


def context_aware_key(request: Request) -> str:
    """
    Identifies the requester for rate limiting.
    1. Uses the admin user id if auth already ran.
    2. Falls back to a hash of the bearer token.
    3. Falls back to remote IP.
    """
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"admin:{user_id}"

    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1]
        token_hash = hashlib.sha256(token.encode()).hexdigest()[:16]
        return f"token:{token_hash}"

    return get_remote_address(request)


def get_limiter() -> Limiter:
    """Lazy initialization of the Limiter instance.

    Production deployments are expected to set REDIS_URL so limits are shared
    across replicas; ``memory://`` is per-process.
    """
    global _limiter
    if _limiter is None:
        settings = get_settings()
        storage_uri = settings.REDIS_URL or "memory://"
        if settings.is_production_like and not settings.REDIS_URL:
            logger.warning(
                "rate_limiting_in_memory_break_glass",
                msg="REDIS_URL is not set. In-memory rate limiting is per-process "
                "and should be temporary.",
            )

        _limiter = Limiter(
            key_func=context_aware_key,
            storage_uri=storage_uri,
            strategy="fixed-window",
            enabled=settings.RATELIMIT_ENABLED and not settings.TESTING,
            # Limiter storage outages must not take the admin API down.
            swallow_errors=True,
        )
    return _limiter


def reset_limiter() -> None:
    global _limiter
    _limiter = None


def setup_rate_limiting(app: FastAPI) -> None:
    """
    Configure rate limiting for the FastAPI application.
    """
    limiter = get_limiter()
    app.state.limiter = limiter

    def _rate_limit_handler(request: Request, exc: Exception) -> Any:
        return _rate_limit_exceeded_handler(request, cast(RateLimitExceeded, exc))

    app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)
    logger.info("rate_limiting_configured", enabled=limiter.enabled)


def rate_limit(
    limit: str | Callable[..., str] = STANDARD_LIMIT,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator to apply rate limiting to an endpoint.

    Always returns the limiter's decorator; the limiter checks its ``enabled``
    flag per request, so TESTING is honoured without import-time branching.
    The decorated endpoint must accept a ``request: Request`` parameter.
    """
    return cast(
        Callable[[Callable[..., Any]], Callable[..., Any]], get_limiter().limit(limit)
    )


def standard_limit(func: Callable[..., Any]) -> Callable[..., Any]:
    """Apply the standard API limit decorator."""
    return rate_limit(STANDARD_LIMIT)(func)


def sensitive_limit(func: Callable[..., Any]) -> Callable[..., Any]:
    """Apply the tighter limit used by state-changing admin routes."""
    return rate_limit(SENSITIVE_LIMIT)(func)
