"""
Persistence for admin approval requests.

Every status change is a conditional ``UPDATE ... WHERE id = ? AND status IN
(<expected>)``; a transition that loses a race matches zero rows and is
reported as a no-op. Reads of overdue ``pending`` rows flip them to
``expired`` before returning them.
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Iterable, Optional, Sequence, cast
from uuid import UUID

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.admin_approval import (
    TERMINAL_APPROVAL_STATUSES,
    AdminApprovalRequest,
    AdminApprovalStatus,
)
from app.shared.core.exceptions import StoreUnavailableError
from app.shared.core.ops_metrics import ADMIN_APPROVAL_LAZY_EXPIRATIONS_TOTAL

logger = structlog.get_logger()

_LIVE_STATUSES = (AdminApprovalStatus.PENDING, AdminApprovalStatus.APPROVED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_approval_id(value: str | UUID) -> Optional[UUID]:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value).strip())
    except (TypeError, ValueError, AttributeError):
        return None


class ApprovalRepository:
    def __init__(
        self,
        db: AsyncSession,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.db = db
        self._clock = clock

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error(
                "admin_approval_store_error",
                operation=operation,
                error=str(exc),
            )
            raise StoreUnavailableError(
                "Approval store is unavailable", store="database"
            ) from exc

    async def insert(self, row: AdminApprovalRequest) -> AdminApprovalRequest:
        async with self._guard("insert"):
            self.db.add(row)
            await self.db.commit()
            await self.db.refresh(row)
        return row

    async def _select(self, approval_id: UUID) -> Optional[AdminApprovalRequest]:
        result = await self.db.execute(
            select(AdminApprovalRequest)
            .where(AdminApprovalRequest.id == approval_id)
            .execution_options(populate_existing=True)
        )
        return cast(Optional[AdminApprovalRequest], result.scalar_one_or_none())

    async def get(self, approval_id: UUID) -> Optional[AdminApprovalRequest]:
        """Load one request, applying lazy expiry."""
        async with self._guard("get"):
            row = await self._select(approval_id)
            if row is None:
                return None
            return await self._expire_if_overdue(row)

    async def _expire_if_overdue(self, row: AdminApprovalRequest) -> AdminApprovalRequest:
        if row.status != AdminApprovalStatus.PENDING:
            return row
        if _as_utc(row.expires_at) > self._clock():
            return row

        approval_id = row.id
        applied = await self._conditional_update(
            approval_id,
            (AdminApprovalStatus.PENDING,),
            {"status": AdminApprovalStatus.EXPIRED},
        )
        if applied:
            ADMIN_APPROVAL_LAZY_EXPIRATIONS_TOTAL.inc()
            logger.info("admin_approval_lazily_expired", approval_id=str(approval_id))
        refreshed = await self._select(approval_id)
        return refreshed if refreshed is not None else row

    async def _conditional_update(
        self,
        approval_id: UUID,
        expected: Iterable[AdminApprovalStatus],
        values: dict[str, Any],
    ) -> bool:
        result = cast(
            CursorResult[Any],
            await self.db.execute(
                update(AdminApprovalRequest)
                .where(AdminApprovalRequest.id == approval_id)
                .where(AdminApprovalRequest.status.in_(tuple(expected)))
                .values(**values)
                .execution_options(synchronize_session=False)
            ),
        )
        applied = int(result.rowcount or 0) == 1
        # Commit on a miss too; loaded rows must stay unexpired for the caller.
        await self.db.commit()
        return applied

    async def transition(
        self,
        approval_id: UUID,
        expected: Sequence[AdminApprovalStatus],
        values: dict[str, Any],
    ) -> bool:
        """
        Apply ``values`` only if the row is still in one of ``expected``.

        Returns False when another writer moved the row first.
        """
        async with self._guard("transition"):
            return await self._conditional_update(approval_id, expected, values)

    async def list_requests(
        self,
        *,
        status: Optional[AdminApprovalStatus] = None,
        requested_by_user_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AdminApprovalRequest], int]:
        filters = []
        if status is not None:
            filters.append(AdminApprovalRequest.status == status)
        if requested_by_user_id:
            filters.append(AdminApprovalRequest.requested_by_user_id == requested_by_user_id)

        async with self._guard("list"):
            total = int(
                (
                    await self.db.execute(
                        select(func.count()).select_from(AdminApprovalRequest).where(*filters)
                    )
                ).scalar_one()
            )
            rows = list(
                (
                    await self.db.execute(
                        select(AdminApprovalRequest)
                        .where(*filters)
                        .order_by(AdminApprovalRequest.requested_at.desc())
                        .offset(offset)
                        .limit(limit)
                        .execution_options(populate_existing=True)
                    )
                )
                .scalars()
                .all()
            )
            items = [await self._expire_if_overdue(row) for row in rows]
        return items, total

    async def expire_overdue(self) -> int:
        async with self._guard("expire_overdue"):
            result = cast(
                CursorResult[Any],
                await self.db.execute(
                    update(AdminApprovalRequest)
                    .where(AdminApprovalRequest.status.in_(_LIVE_STATUSES))
                    .where(AdminApprovalRequest.expires_at <= self._clock())
                    .values(status=AdminApprovalStatus.EXPIRED)
                    .execution_options(synchronize_session=False)
                ),
            )
            await self.db.commit()
        return int(result.rowcount or 0)

    async def delete_terminal_before(self, cutoff: datetime) -> int:
        async with self._guard("delete_terminal_before"):
            result = cast(
                CursorResult[Any],
                await self.db.execute(
                    delete(AdminApprovalRequest)
                    .where(AdminApprovalRequest.status.in_(tuple(TERMINAL_APPROVAL_STATUSES)))
                    .where(AdminApprovalRequest.requested_at < cutoff)
                    .execution_options(synchronize_session=False)
                ),
            )
            await self.db.commit()
        return int(result.rowcount or 0)
