"""
Dual-control Approvals API

Provides endpoints for:
- Listing and inspecting approval requests
- Reading the effective approval policy matrix
- Approving or rejecting a pending request (never your own)
"""

from typing import Annotated, Optional

import structlog
from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.approvals.api.v1.schemas import (
    ApprovalDecisionResponse,
    ApprovalListResponse,
    ApprovalPolicyResponse,
    ApprovalView,
    ApproveRequest,
    RejectRequest,
)
from app.modules.approvals.domain.policy import ApprovalPolicy
from app.modules.approvals.domain.service import (
    MAX_LIST_LIMIT,
    ApprovalOutcome,
    ApprovalWorkflowService,
)
from app.modules.sessions.api.v1.dependencies import AdminContext, requires_admin_session
from app.shared.core.config import get_settings
from app.shared.core.error_governance import status_for_reason
from app.shared.core.exceptions import AdminTrustException, ResourceNotFoundError
from app.shared.core.permissions import (
    PERMISSION_ANNOUNCEMENTS_APPROVE,
    PERMISSION_ANNOUNCEMENTS_READ,
)
from app.shared.core.rate_limit import sensitive_limit, standard_limit
from app.shared.db.session import get_db

router = APIRouter(tags=["Admin Approvals"])
logger = structlog.get_logger()

_REASON_MESSAGES = {
    "not_found": "Approval request not found",
    "self_approval_forbidden": "You cannot approve your own request",
    "request_mismatch": "Approval does not match the requested action",
    "store_unavailable": "Approval store unavailable",
}


def get_approval_service(db: AsyncSession = Depends(get_db)) -> ApprovalWorkflowService:
    return ApprovalWorkflowService.from_settings(db)


def get_approval_policy() -> ApprovalPolicy:
    return ApprovalPolicy.from_settings()


def _raise_for_outcome(outcome: ApprovalOutcome) -> None:
    reason = outcome.reason or "not_found"
    message = _REASON_MESSAGES.get(reason)
    if message is None and reason.startswith("invalid_status:"):
        message = f"Approval request is {reason.split(':', 1)[1]}"
    raise AdminTrustException(
        message or "Approval request refused",
        code=reason,
        status_code=status_for_reason(reason),
    )


@router.get("", response_model=ApprovalListResponse)
@standard_limit
async def list_approvals(
    request: Request,
    ctx: Annotated[AdminContext, Depends(requires_admin_session(PERMISSION_ANNOUNCEMENTS_READ))],
    service: ApprovalWorkflowService = Depends(get_approval_service),
    status: str = Query(default="all", description="Approval status or 'all'"),
    mine: bool = Query(default=False, description="Only requests raised by the caller"),
    limit: int = Query(default=50, ge=1, le=MAX_LIST_LIMIT),
    offset: int = Query(default=0, ge=0),
) -> ApprovalListResponse:
    items, total = await service.list_requests(
        status=status,
        requested_by_user_id=ctx.principal.user_id if mine else None,
        limit=limit,
        offset=offset,
    )
    return ApprovalListResponse(
        items=[ApprovalView.model_validate(item) for item in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/policy", response_model=ApprovalPolicyResponse)
@standard_limit
async def get_policy(
    request: Request,
    ctx: Annotated[AdminContext, Depends(requires_admin_session(PERMISSION_ANNOUNCEMENTS_READ))],
    policy: ApprovalPolicy = Depends(get_approval_policy),
) -> ApprovalPolicyResponse:
    return ApprovalPolicyResponse(
        dual_approval_required=get_settings().ADMIN_DUAL_APPROVAL_REQUIRED,
        matrix=policy.as_dict(),
    )


@router.get("/{approval_id}", response_model=ApprovalView)
@standard_limit
async def get_approval(
    request: Request,
    approval_id: str,
    ctx: Annotated[AdminContext, Depends(requires_admin_session(PERMISSION_ANNOUNCEMENTS_READ))],
    service: ApprovalWorkflowService = Depends(get_approval_service),
) -> ApprovalView:
    approval = await service.get_request(approval_id)
    if approval is None:
        raise ResourceNotFoundError("Approval request not found")
    return ApprovalView.model_validate(approval)


@router.post("/{approval_id}/approve", response_model=ApprovalDecisionResponse)
@sensitive_limit
async def approve_request(
    request: Request,
    approval_id: str,
    ctx: Annotated[AdminContext, Depends(requires_admin_session(PERMISSION_ANNOUNCEMENTS_APPROVE))],
    service: ApprovalWorkflowService = Depends(get_approval_service),
    body: Optional[ApproveRequest] = Body(default=None),
) -> ApprovalDecisionResponse:
    """
    Approve a pending request.

    Responds 403 for the requester's own request, 409 when the request is
    no longer pending and 404 when it does not exist.
    """
    outcome = await service.approve(approval_id, ctx.actor, body.note if body else None)
    if not outcome.ok or outcome.approval is None:
        _raise_for_outcome(outcome)
    return ApprovalDecisionResponse(
        success=True, approval=ApprovalView.model_validate(outcome.approval)
    )


@router.post("/{approval_id}/reject", response_model=ApprovalDecisionResponse)
@sensitive_limit
async def reject_request(
    request: Request,
    approval_id: str,
    ctx: Annotated[AdminContext, Depends(requires_admin_session(PERMISSION_ANNOUNCEMENTS_APPROVE))],
    service: ApprovalWorkflowService = Depends(get_approval_service),
    body: Optional[RejectRequest] = Body(default=None),
) -> ApprovalDecisionResponse:
    outcome = await service.reject(approval_id, ctx.actor, body.reason if body else None)
    if not outcome.ok or outcome.approval is None:
        _raise_for_outcome(outcome)
    return ApprovalDecisionResponse(
        success=True, approval=ApprovalView.model_validate(outcome.approval)
    )
