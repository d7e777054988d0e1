from __future__ import annotations

import hmac
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.admin_approval import AdminApprovalRequest, AdminApprovalStatus
from app.modules.approvals.domain.actions import ApprovalAction
from app.modules.approvals.domain.repository import ApprovalRepository, parse_approval_id
from app.shared.core.config import Settings, get_settings
from app.shared.core.exceptions import InvalidRequestError, StoreUnavailableError
from app.shared.core.logging import audit_log
from app.shared.core.ops_metrics import (
    ADMIN_APPROVAL_CLEANUP_LAST_DELETED,
    ADMIN_APPROVAL_EXECUTION_CHECKS_TOTAL,
    ADMIN_APPROVAL_TRANSITIONS_TOTAL,
)

logger = structlog.get_logger()

NOT_FOUND = "not_found"
SELF_APPROVAL_FORBIDDEN = "self_approval_forbidden"
REQUEST_MISMATCH = "request_mismatch"
STORE_UNAVAILABLE = "store_unavailable"
DEFAULT_REJECTION_REASON = "Rejected"
MAX_LIST_LIMIT = 200


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def invalid_status(status: AdminApprovalStatus | str) -> str:
    value = status.value if isinstance(status, AdminApprovalStatus) else str(status)
    return f"invalid_status:{value}"


def _clean_text(value: Optional[str]) -> Optional[str]:
    cleaned = (value or "").strip()
    return cleaned or None


@dataclass(frozen=True)
class ApprovalActor:
    user_id: str
    email: str
    role: Optional[str] = None


@dataclass(frozen=True)
class ApprovalOutcome:
    ok: bool
    reason: Optional[str] = None
    approval: Optional[AdminApprovalRequest] = None


@dataclass(frozen=True)
class CleanupResult:
    expired_count: int
    deleted_count: int
    cutoff: datetime


class ApprovalWorkflowService:
    """
    Dual-control workflow over ``admin_approval_requests``.

    Business failures come back as ``ApprovalOutcome(ok=False, reason=...)``;
    only infrastructure failures raise, and the execution check converts
    those into a refusal.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        expiry: timedelta = timedelta(minutes=30),
        retention_days: int = 30,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.db = db
        self.expiry = expiry
        self.retention_days = retention_days
        self._clock = clock
        self.repository = ApprovalRepository(db, clock=clock)

    @classmethod
    def from_settings(
        cls,
        db: AsyncSession,
        settings: Settings | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> "ApprovalWorkflowService":
        settings = settings or get_settings()
        return cls(
            db,
            expiry=timedelta(minutes=settings.ADMIN_APPROVAL_EXPIRY_MINUTES),
            retention_days=settings.ADMIN_APPROVAL_RETENTION_DAYS,
            clock=clock,
        )

    async def create_request(
        self,
        action: ApprovalAction,
        requested_by: ApprovalActor,
        note: Optional[str] = None,
    ) -> AdminApprovalRequest:
        if not requested_by.user_id:
            raise InvalidRequestError("requested_by.user_id is required")

        now = self._clock()
        row = AdminApprovalRequest(
            action_type=action.kind,
            endpoint=action.endpoint,
            method=action.method,
            target_ids=list(action.target_ids),
            payload=action.payload_dict(),
            request_hash=action.request_hash(),
            status=AdminApprovalStatus.PENDING,
            requested_by_user_id=requested_by.user_id,
            requested_by_email=requested_by.email,
            requested_by_role=requested_by.role,
            requested_at=now,
            expires_at=now + self.expiry,
            note=_clean_text(note),
        )
        saved = await self.repository.insert(row)
        ADMIN_APPROVAL_TRANSITIONS_TOTAL.labels(transition="create", outcome="applied").inc()
        audit_log(
            "admin_approval_requested",
            requested_by.user_id,
            {
                "approval_id": str(saved.id),
                "action_type": action.kind.value,
                "target_count": len(action.target_ids),
            },
        )
        return saved

    async def get_request(self, approval_id: str | UUID) -> Optional[AdminApprovalRequest]:
        parsed = parse_approval_id(approval_id)
        if parsed is None:
            return None
        return await self.repository.get(parsed)

    async def list_requests(
        self,
        status: str | AdminApprovalStatus | None = "all",
        requested_by_user_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AdminApprovalRequest], int]:
        status_filter: Optional[AdminApprovalStatus] = None
        if status is not None and status != "all":
            try:
                status_filter = AdminApprovalStatus(status)
            except ValueError as exc:
                raise InvalidRequestError(
                    f"Unknown approval status: {status}", code="invalid_status_filter"
                ) from exc
        return await self.repository.list_requests(
            status=status_filter,
            requested_by_user_id=requested_by_user_id,
            limit=min(MAX_LIST_LIMIT, max(1, limit)),
            offset=max(0, offset),
        )

    async def _lost_race(
        self, approval_id: UUID, transition: str
    ) -> ApprovalOutcome:
        ADMIN_APPROVAL_TRANSITIONS_TOTAL.labels(transition=transition, outcome="noop").inc()
        current = await self.repository.get(approval_id)
        if current is None:
            return ApprovalOutcome(ok=False, reason=NOT_FOUND)
        logger.info(
            "admin_approval_transition_conflict",
            approval_id=str(approval_id),
            transition=transition,
            status=current.status.value,
        )
        return ApprovalOutcome(ok=False, reason=invalid_status(current.status), approval=current)

    def _refused(self, transition: str, reason: str) -> ApprovalOutcome:
        ADMIN_APPROVAL_TRANSITIONS_TOTAL.labels(transition=transition, outcome="rejected").inc()
        return ApprovalOutcome(ok=False, reason=reason)

    async def approve(
        self,
        approval_id: str | UUID,
        approved_by: ApprovalActor,
        note: Optional[str] = None,
    ) -> ApprovalOutcome:
        parsed = parse_approval_id(approval_id)
        if parsed is None:
            return self._refused("approve", NOT_FOUND)
        approval = await self.repository.get(parsed)
        if approval is None:
            return self._refused("approve", NOT_FOUND)
        # Separation of duties outranks every other check.
        if approval.requested_by_user_id == approved_by.user_id:
            logger.warning(
                "admin_approval_self_approval_blocked",
                approval_id=str(parsed),
                user_id=approved_by.user_id,
            )
            return self._refused("approve", SELF_APPROVAL_FORBIDDEN)
        if approval.status != AdminApprovalStatus.PENDING:
            return self._refused("approve", invalid_status(approval.status))

        applied = await self.repository.transition(
            parsed,
            (AdminApprovalStatus.PENDING,),
            {
                "status": AdminApprovalStatus.APPROVED,
                "approved_at": self._clock(),
                "approved_by_user_id": approved_by.user_id,
                "approved_by_email": approved_by.email,
                "note": _clean_text(note) or approval.note,
            },
        )
        if not applied:
            return await self._lost_race(parsed, "approve")

        ADMIN_APPROVAL_TRANSITIONS_TOTAL.labels(transition="approve", outcome="applied").inc()
        audit_log("admin_approval_approved", approved_by.user_id, {"approval_id": str(parsed)})
        return ApprovalOutcome(ok=True, approval=await self.repository.get(parsed))

    async def reject(
        self,
        approval_id: str | UUID,
        rejected_by: ApprovalActor,
        reason: Optional[str] = None,
    ) -> ApprovalOutcome:
        parsed = parse_approval_id(approval_id)
        if parsed is None:
            return self._refused("reject", NOT_FOUND)
        approval = await self.repository.get(parsed)
        if approval is None:
            return self._refused("reject", NOT_FOUND)
        if approval.status not in (AdminApprovalStatus.PENDING, AdminApprovalStatus.APPROVED):
            return self._refused("reject", invalid_status(approval.status))

        # Keyed on the observed status so a concurrent approve is detected.
        applied = await self.repository.transition(
            parsed,
            (approval.status,),
            {
                "status": AdminApprovalStatus.REJECTED,
                "rejected_at": self._clock(),
                "rejected_by_user_id": rejected_by.user_id,
                "rejected_by_email": rejected_by.email,
                "rejection_reason": _clean_text(reason) or DEFAULT_REJECTION_REASON,
            },
        )
        if not applied:
            return await self._lost_race(parsed, "reject")

        ADMIN_APPROVAL_TRANSITIONS_TOTAL.labels(transition="reject", outcome="applied").inc()
        audit_log("admin_approval_rejected", rejected_by.user_id, {"approval_id": str(parsed)})
        return ApprovalOutcome(ok=True, approval=await self.repository.get(parsed))

    async def validate_for_execution(
        self,
        approval_id: str | UUID,
        action: ApprovalAction,
    ) -> ApprovalOutcome:
        """
        Confirm an approved request matches the action about to run.

        The hash is recomputed from ``action`` itself, so an approval for one
        target set or payload can never authorise another. Store failures
        refuse execution.
        """
        try:
            outcome = await self._check_execution(approval_id, action)
        except StoreUnavailableError as exc:
            logger.error(
                "admin_approval_execution_check_store_unavailable",
                approval_id=str(approval_id),
                error=str(exc),
            )
            outcome = ApprovalOutcome(ok=False, reason=STORE_UNAVAILABLE)

        result = "ok" if outcome.ok else (outcome.reason or "unknown").split(":", 1)[0]
        ADMIN_APPROVAL_EXECUTION_CHECKS_TOTAL.labels(result=result).inc()
        return outcome

    async def _check_execution(
        self, approval_id: str | UUID, action: ApprovalAction
    ) -> ApprovalOutcome:
        parsed = parse_approval_id(approval_id)
        if parsed is None:
            return ApprovalOutcome(ok=False, reason=NOT_FOUND)
        approval = await self.repository.get(parsed)
        if approval is None:
            return ApprovalOutcome(ok=False, reason=NOT_FOUND)

        if (
            approval.status == AdminApprovalStatus.APPROVED
            and _as_utc(approval.expires_at) <= self._clock()
        ):
            await self.repository.transition(
                parsed,
                (AdminApprovalStatus.APPROVED,),
                {"status": AdminApprovalStatus.EXPIRED},
            )
            approval = await self.repository.get(parsed)
            if approval is None:
                return ApprovalOutcome(ok=False, reason=NOT_FOUND)

        if approval.status != AdminApprovalStatus.APPROVED:
            return ApprovalOutcome(
                ok=False, reason=invalid_status(approval.status), approval=approval
            )
        if not hmac.compare_digest(approval.request_hash, action.request_hash()):
            logger.warning(
                "admin_approval_request_mismatch",
                approval_id=str(parsed),
                action_type=action.kind.value,
            )
            return ApprovalOutcome(ok=False, reason=REQUEST_MISMATCH, approval=approval)
        return ApprovalOutcome(ok=True, approval=approval)

    async def mark_executed(
        self,
        approval_id: str | UUID,
        executed_by: ApprovalActor,
    ) -> bool:
        """Move ``approved`` to ``executed``; any other state is left untouched."""
        parsed = parse_approval_id(approval_id)
        if parsed is None:
            return False
        applied = await self.repository.transition(
            parsed,
            (AdminApprovalStatus.APPROVED,),
            {
                "status": AdminApprovalStatus.EXECUTED,
                "executed_at": self._clock(),
                "executed_by_user_id": executed_by.user_id,
                "executed_by_email": executed_by.email,
            },
        )
        outcome = "applied" if applied else "noop"
        ADMIN_APPROVAL_TRANSITIONS_TOTAL.labels(transition="execute", outcome=outcome).inc()
        if applied:
            audit_log("admin_approval_executed", executed_by.user_id, {"approval_id": str(parsed)})
        return applied

    async def expire_overdue(self) -> int:
        count = await self.repository.expire_overdue()
        if count:
            ADMIN_APPROVAL_TRANSITIONS_TOTAL.labels(transition="expire", outcome="applied").inc(
                count
            )
            logger.info("admin_approvals_expired", count=count)
        return count

    async def cleanup_old(self, retention_days: Optional[int] = None) -> CleanupResult:
        days = max(1, retention_days if retention_days is not None else self.retention_days)
        cutoff = self._clock() - timedelta(days=days)

        expired_count = await self.expire_overdue()
        deleted_count = await self.repository.delete_terminal_before(cutoff)
        ADMIN_APPROVAL_CLEANUP_LAST_DELETED.set(deleted_count)
        if expired_count or deleted_count:
            logger.info(
                "admin_approval_cleanup_completed",
                expired=expired_count,
                deleted=deleted_count,
                cutoff=cutoff.isoformat(),
            )
        return CleanupResult(
            expired_count=expired_count,
            deleted_count=deleted_count,
            cutoff=cutoff,
        )
