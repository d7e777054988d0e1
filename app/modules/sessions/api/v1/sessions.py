"""
Admin Sessions API

Provides endpoints for:
- Opening an admin session for the bearer principal
- Step-up (extending the current session's hard ceiling)
- Listing and terminating the caller's sessions
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Request, status

from app.modules.sessions.api.v1.dependencies import (
    AdminContext,
    client_ip,
    get_session_service,
    requires_admin_session,
)
from app.modules.sessions.api.v1.schemas import (
    OpenSessionResponse,
    SessionListResponse,
    StepUpResponse,
    TerminateOthersResponse,
    TerminateSessionRequest,
    TerminateSessionResponse,
)
from app.modules.sessions.domain.records import SESSION_NOT_FOUND, SessionContext
from app.modules.sessions.domain.service import SessionLifecycleService
from app.shared.core.auth import AdminPrincipal, requires_permission
from app.shared.core.exceptions import (
    AdminTrustException,
    AuthError,
    ResourceNotFoundError,
)
from app.shared.core.logging import audit_log
from app.shared.core.permissions import PERMISSION_ADMIN_READ, PERMISSION_SECURITY_READ
from app.shared.core.rate_limit import sensitive_limit, standard_limit

router = APIRouter(tags=["Admin Sessions"])
logger = structlog.get_logger()


@router.post(
    "/sessions",
    response_model=OpenSessionResponse,
    status_code=status.HTTP_201_CREATED,
)
@sensitive_limit
async def open_session(
    request: Request,
    principal: Annotated[AdminPrincipal, Depends(requires_permission(PERMISSION_ADMIN_READ))],
    service: SessionLifecycleService = Depends(get_session_service),
) -> OpenSessionResponse:
    """
    Open an admin session for the bearer principal.

    The returned ``sessionId`` must be sent back in ``X-Admin-Session-Id``.
    The session cannot outlive the bearer token.
    """
    ip = client_ip(request)
    user_agent = request.headers.get("User-Agent")

    is_new_device = await service.is_new_device(principal.user_id, ip, user_agent)
    record = await service.create_session(
        principal.user_id,
        principal.email,
        ip,
        user_agent,
        principal.token_expires_at,
    )
    if is_new_device:
        audit_log(
            "admin_session_new_device",
            principal.user_id,
            {"session_id": record.id, "device": record.device, "browser": record.browser},
        )

    return OpenSessionResponse(
        session_id=record.id,
        is_new_device=is_new_device,
        session=service.map_session_for_client(record, record.id),
    )


@router.post("/step-up", response_model=StepUpResponse)
@sensitive_limit
async def step_up(
    request: Request,
    ctx: Annotated[AdminContext, Depends(requires_admin_session(PERMISSION_ADMIN_READ))],
    service: SessionLifecycleService = Depends(get_session_service),
) -> StepUpResponse:
    """Re-anchor the current session's ceiling on the (fresh) bearer token's expiry."""
    record = await service.touch_session(
        ctx.session_id,
        SessionContext(
            user_id=ctx.principal.user_id,
            email=ctx.principal.email,
            ip=client_ip(request),
            user_agent=request.headers.get("User-Agent"),
            expires_at=ctx.principal.token_expires_at,
        ),
        recreate_missing=False,
    )
    if record is None:
        raise AuthError("Admin session is not valid", code=SESSION_NOT_FOUND)

    logger.info(
        "admin_session_stepped_up",
        session_id=record.id,
        user_id=record.user_id,
        expires_at=record.expires_at.isoformat() if record.expires_at else None,
    )
    return StepUpResponse(
        session_id=record.id,
        session=service.map_session_for_client(record, record.id),
    )


@router.get("/sessions", response_model=SessionListResponse)
@standard_limit
async def list_sessions(
    request: Request,
    ctx: Annotated[AdminContext, Depends(requires_admin_session(PERMISSION_ADMIN_READ))],
    service: SessionLifecycleService = Depends(get_session_service),
) -> SessionListResponse:
    records = await service.list_sessions(ctx.principal.user_id)
    return SessionListResponse(
        sessions=[service.map_session_for_client(r, ctx.session_id) for r in records],
        current_session_id=ctx.session_id,
    )


@router.post("/sessions/terminate", response_model=TerminateSessionResponse)
@sensitive_limit
async def terminate_session(
    request: Request,
    body: TerminateSessionRequest,
    ctx: Annotated[AdminContext, Depends(requires_admin_session(PERMISSION_SECURITY_READ))],
    service: SessionLifecycleService = Depends(get_session_service),
) -> TerminateSessionResponse:
    """Terminate one of the caller's other sessions."""
    if body.session_id == ctx.session_id:
        raise AdminTrustException(
            "Use logout to end the current session",
            code="cannot_terminate_current_session",
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    target = await service.get_session(body.session_id)
    if target is None or target.user_id != ctx.principal.user_id:
        raise ResourceNotFoundError("Session not found")

    if not await service.terminate_session(body.session_id):
        raise ResourceNotFoundError("Session not found")

    return TerminateSessionResponse(success=True, session_id=body.session_id)


@router.post("/sessions/terminate-others", response_model=TerminateOthersResponse)
@sensitive_limit
async def terminate_other_sessions(
    request: Request,
    ctx: Annotated[AdminContext, Depends(requires_admin_session(PERMISSION_SECURITY_READ))],
    service: SessionLifecycleService = Depends(get_session_service),
) -> TerminateOthersResponse:
    count = await service.terminate_other_sessions(ctx.principal.user_id, ctx.session_id)
    audit_log(
        "admin_sessions_terminated_others",
        ctx.principal.user_id,
        {"current_session_id": ctx.session_id, "terminated_count": count},
    )
    return TerminateOthersResponse(success=True, terminated_count=count)
