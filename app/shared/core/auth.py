import hashlib
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Callable, Optional, cast

import jwt
import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from app.shared.core.config import get_settings
from app.shared.core.exceptions import AuthError, ConfigurationError, ForbiddenError
from app.shared.core.permissions import AdminRole, normalize_role, role_has_permission

logger = structlog.get_logger()

__all__ = [
    "AdminPrincipal",
    "create_access_token",
    "decode_jwt",
    "get_current_admin",
    "requires_permission",
]

security = HTTPBearer(auto_error=False)


def _hash_email(email: str | None) -> str | None:
    if not email:
        return None
    normalized = email.strip().lower()
    return hashlib.sha256(normalized.encode()).hexdigest()[:12]


def create_access_token(
    data: dict[str, Any], expires_delta: Optional[timedelta] = None
) -> str:
    """
    Sign a token with the admin JWT secret.

    Issuance belongs to the auth service; this helper exists for tooling and tests.
    """
    settings = get_settings()
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=60))

    if "aud" not in to_encode:
        to_encode["aud"] = settings.ADMIN_JWT_AUDIENCE
    if settings.ADMIN_JWT_ISSUER and "iss" not in to_encode:
        to_encode["iss"] = settings.ADMIN_JWT_ISSUER

    to_encode.update({"exp": expire})

    if not settings.ADMIN_JWT_SECRET:
        raise ConfigurationError("ADMIN_JWT_SECRET is not configured")

    return jwt.encode(to_encode, settings.ADMIN_JWT_SECRET, algorithm="HS256")


class AdminPrincipal(BaseModel):
    """
    Represents the authenticated admin from the bearer JWT.
    """

    user_id: str
    email: str
    role: AdminRole
    token_expires_at: Optional[datetime] = None


def decode_jwt(token: str) -> dict[str, Any]:
    """
    Decode and verify an admin JWT.

    HS256 signature, expiry and audience (plus issuer when configured) are
    enforced by PyJWT.

    Raises:
        AuthError if token is invalid
    """
    settings = get_settings()
    if not settings.ADMIN_JWT_SECRET:
        logger.error("jwt_secret_missing_in_decode")
        raise ConfigurationError("Configuration error: Missing JWT secret")

    options: dict[str, Any] = {}
    kwargs: dict[str, Any] = {}
    if settings.ADMIN_JWT_ISSUER:
        kwargs["issuer"] = settings.ADMIN_JWT_ISSUER
        options["require"] = ["exp", "iss"]
    else:
        options["require"] = ["exp"]

    try:
        payload = jwt.decode(
            token,
            settings.ADMIN_JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.ADMIN_JWT_AUDIENCE,
            options=options,
            **kwargs,
        )
        return cast(dict[str, Any], payload)
    except jwt.ExpiredSignatureError:
        logger.warning("jwt_expired")
        raise AuthError("Token has expired", code="token_expired")
    except jwt.InvalidTokenError as e:
        logger.warning("jwt_invalid", error=str(e))
        raise AuthError("Invalid token", code="invalid_token")


async def get_current_admin(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AdminPrincipal:
    """
    Bearer JWT -> AdminPrincipal. No DB lookup; the token carries sub, email and role.
    """
    if credentials is None:
        raise AuthError("Not authenticated", code="auth_error")

    payload = decode_jwt(credentials.credentials)
    user_id = payload.get("sub")
    email = payload.get("email")
    if not user_id or not email:
        raise AuthError("Invalid token payload", code="invalid_token")

    role = normalize_role(payload.get("role"))
    if role is None:
        logger.warning("admin_role_missing", user_id=str(user_id))
        raise ForbiddenError("Admin role required")

    raw_exp = payload.get("exp")
    token_expires_at = (
        datetime.fromtimestamp(int(raw_exp), tz=timezone.utc) if raw_exp is not None else None
    )

    request.state.user_id = str(user_id)
    logger.debug(
        "admin_authenticated",
        user_id=str(user_id),
        email_hash=_hash_email(str(email)),
        role=role.value,
    )
    return AdminPrincipal(
        user_id=str(user_id),
        email=str(email),
        role=role,
        token_expires_at=token_expires_at,
    )


@lru_cache(maxsize=64)
def requires_permission(permission: str) -> Callable[..., AdminPrincipal]:
    """
    FastAPI dependency for RBAC.

    Usage:
        @router.post("/approvals/{id}/approve")
        async def approve(user: AdminPrincipal = Depends(requires_permission("announcements:approve"))):
            ...
    """

    def permission_checker(
        principal: AdminPrincipal = Depends(get_current_admin),
    ) -> AdminPrincipal:
        if not role_has_permission(principal.role, permission):
            logger.warning(
                "insufficient_permissions",
                user_id=principal.user_id,
                user_role=principal.role.value,
                required_permission=permission,
            )
            raise ForbiddenError(f"Insufficient permissions. Required: {permission}")
        return principal

    return permission_checker
