from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

import structlog

from app.models.admin_approval import AdminApprovalRequest
from app.modules.approvals.domain.actions import ApprovalAction
from app.modules.approvals.domain.policy import (
    ApprovalPolicy,
    ApprovalRequirement,
    extract_payload_content_types,
)
from app.modules.approvals.domain.service import ApprovalActor, ApprovalWorkflowService
from app.shared.core.error_governance import status_for_reason

logger = structlog.get_logger()


@dataclass(frozen=True)
class GateDecision:
    proceed: bool
    reason: str
    approval: Optional[AdminApprovalRequest] = None
    requirement: Optional[ApprovalRequirement] = None
    status_code: int = 200


class ApprovalGate:
    """
    Front door for high-risk mutation handlers.

    Handlers call ``require`` before mutating and ``complete`` right after.
    Without an approval id a gated action is parked as a pending request
    (202); with one, the approval must match the action exactly.
    """

    def __init__(self, service: ApprovalWorkflowService, policy: ApprovalPolicy) -> None:
        self.service = service
        self.policy = policy

    async def require(
        self,
        action: ApprovalAction,
        actor: ApprovalActor,
        approval_id: Optional[str | UUID] = None,
        note: Optional[str] = None,
    ) -> GateDecision:
        requirement = self.policy.evaluate_requirement(
            action.kind,
            actor.role,
            action.target_ids,
            extract_payload_content_types(action.payload_dict()),
        )
        if not requirement.required:
            return GateDecision(proceed=True, reason=requirement.reason, requirement=requirement)

        if not approval_id:
            approval = await self.service.create_request(action, actor, note)
            logger.info(
                "admin_approval_gate_parked",
                approval_id=str(approval.id),
                action_type=action.kind.value,
                risk=requirement.risk,
            )
            return GateDecision(
                proceed=False,
                reason=requirement.reason,
                approval=approval,
                requirement=requirement,
                status_code=202,
            )

        outcome = await self.service.validate_for_execution(approval_id, action)
        if outcome.ok:
            return GateDecision(
                proceed=True,
                reason="approved",
                approval=outcome.approval,
                requirement=requirement,
            )
        reason = outcome.reason or "not_found"
        return GateDecision(
            proceed=False,
            reason=reason,
            approval=outcome.approval,
            requirement=requirement,
            status_code=status_for_reason(reason),
        )

    async def complete(self, approval_id: Optional[str | UUID], actor: ApprovalActor) -> bool:
        if not approval_id:
            return False
        return await self.service.mark_executed(approval_id, actor)
