from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.models.admin_approval import AdminApprovalStatus, ApprovalActionType


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class ApprovalView(_CamelModel):
    id: UUID
    action_type: ApprovalActionType
    endpoint: str
    method: str
    target_ids: List[str]
    payload: Dict[str, Any]
    request_hash: str
    status: AdminApprovalStatus
    requested_by_user_id: str
    requested_by_email: Optional[str] = None
    requested_by_role: Optional[str] = None
    requested_at: datetime
    expires_at: datetime
    note: Optional[str] = None
    approved_by_user_id: Optional[str] = None
    approved_by_email: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by_user_id: Optional[str] = None
    rejected_by_email: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    executed_by_user_id: Optional[str] = None
    executed_by_email: Optional[str] = None
    executed_at: Optional[datetime] = None


class ApprovalListResponse(_CamelModel):
    items: List[ApprovalView]
    total: int
    limit: int
    offset: int


class ApproveRequest(_CamelModel):
    note: Optional[str] = Field(default=None, max_length=1000)


class RejectRequest(_CamelModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class ApprovalDecisionResponse(_CamelModel):
    success: bool
    approval: ApprovalView


class ApprovalPolicyResponse(_CamelModel):
    dual_approval_required: bool
    matrix: Dict[str, Dict[str, Any]]
