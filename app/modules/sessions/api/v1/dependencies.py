from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Awaitable, Callable, Optional

import structlog
from fastapi import Depends, Header, Request

from app.modules.approvals.domain.service import ApprovalActor
from app.modules.sessions.domain.records import (
    SESSION_NOT_FOUND,
    STORE_UNAVAILABLE,
    SessionContext,
    SessionRecord,
)
from app.modules.sessions.domain.service import SessionLifecycleService
from app.shared.core.auth import AdminPrincipal, requires_permission
from app.shared.core.cache import TTLStore, build_ttl_store
from app.shared.core.exceptions import AuthError, StoreUnavailableError

logger = structlog.get_logger()

SESSION_HEADER = "X-Admin-Session-Id"


def get_ttl_store(request: Request) -> TTLStore:
    store = getattr(request.app.state, "ttl_store", None)
    if store is None:
        store = build_ttl_store()
        request.app.state.ttl_store = store
    return store


def get_session_service(
    ttl_store: TTLStore = Depends(get_ttl_store),
) -> SessionLifecycleService:
    return SessionLifecycleService.from_settings(ttl_store)


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""


def session_context(request: Request, principal: AdminPrincipal) -> SessionContext:
    return SessionContext(
        user_id=principal.user_id,
        email=principal.email,
        ip=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )


@dataclass(frozen=True)
class AdminContext:
    """Authenticated principal plus its validated, freshly touched session."""

    principal: AdminPrincipal
    session: SessionRecord

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def actor(self) -> ApprovalActor:
        return ApprovalActor(
            user_id=self.principal.user_id,
            email=self.principal.email,
            role=self.principal.role.value,
        )


@lru_cache(maxsize=64)
def requires_admin_session(
    permission: str,
) -> Callable[..., Awaitable[AdminContext]]:
    """
    FastAPI dependency: bearer principal with ``permission`` plus a live admin session.

    Validation failures map to 401 with the reason as the error code; an
    unreachable session store maps to 503. A session that disappears between
    validation and touch is reported as not found rather than re-created.
    """

    async def session_checker(
        request: Request,
        principal: AdminPrincipal = Depends(requires_permission(permission)),
        service: SessionLifecycleService = Depends(get_session_service),
        session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
    ) -> AdminContext:
        if not session_id:
            raise AuthError("Admin session required", code=SESSION_NOT_FOUND)

        validation = await service.validate_session(session_id)
        if not validation.valid:
            reason = validation.reason or SESSION_NOT_FOUND
            if reason == STORE_UNAVAILABLE:
                raise StoreUnavailableError("Session store unavailable", store="session")
            raise AuthError("Admin session is not valid", code=reason)

        record = validation.record
        if record is None or record.user_id != principal.user_id:
            # Never disclose that the id belongs to someone else.
            logger.warning(
                "admin_session_principal_mismatch",
                session_id=session_id,
                user_id=principal.user_id,
            )
            raise AuthError("Admin session is not valid", code=SESSION_NOT_FOUND)

        touched = await service.touch_session(
            session_id,
            session_context(request, principal),
            action=request.url.path,
            recreate_missing=False,
        )
        if touched is None:
            raise AuthError("Admin session is not valid", code=SESSION_NOT_FOUND)

        return AdminContext(principal=principal, session=touched)

    return session_checker
