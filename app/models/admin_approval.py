from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Enum as SQLEnum,
    Index,
    String,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AdminApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"
    EXPIRED = "expired"


TERMINAL_APPROVAL_STATUSES = frozenset(
    {
        AdminApprovalStatus.REJECTED,
        AdminApprovalStatus.EXECUTED,
        AdminApprovalStatus.EXPIRED,
    }
)


class ApprovalActionType(str, Enum):
    ANNOUNCEMENT_PUBLISH = "announcement_publish"
    ANNOUNCEMENT_BULK_PUBLISH = "announcement_bulk_publish"
    ANNOUNCEMENT_DELETE = "announcement_delete"
    ANNOUNCEMENT_BULK_STATUS = "announcement_bulk_status"


class AdminApprovalRequest(Base):
    """
    Durable dual-control request gating one high-risk admin action.

    ``request_hash`` binds the approval to the exact action (type, endpoint,
    method, target set, payload) and never changes after insert.
    """

    __tablename__ = "admin_approval_requests"
    __table_args__ = (
        Index("ix_admin_approval_status_expires", "status", "expires_at"),
        Index("ix_admin_approval_requested_at", "requested_at"),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    action_type: Mapped[ApprovalActionType] = mapped_column(
        SQLEnum(
            ApprovalActionType,
            name="admin_approval_action_type",
            native_enum=False,
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
    )
    endpoint: Mapped[str] = mapped_column(String(512), nullable=False)
    method: Mapped[str] = mapped_column(String(16), nullable=False)
    target_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[AdminApprovalStatus] = mapped_column(
        SQLEnum(
            AdminApprovalStatus,
            name="admin_approval_status",
            native_enum=False,
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
        default=AdminApprovalStatus.PENDING,
        index=True,
    )
    requested_by_user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    requested_by_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    requested_by_role: Mapped[str | None] = mapped_column(String(32), nullable=True)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    note: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    approved_by_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    approved_by_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    rejected_by_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    rejected_by_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    executed_by_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    executed_by_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
