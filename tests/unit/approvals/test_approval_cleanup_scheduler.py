from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.models.admin_approval import AdminApprovalStatus
from app.modules.approvals.domain.scheduler import CLEANUP_JOB_ID, ApprovalCleanupScheduler
from app.modules.approvals.domain.service import ApprovalWorkflowService
from app.shared.core.config import get_settings


class _LockClient:
    def __init__(self, acquired=True, error: Exception | None = None) -> None:
        self.acquired = acquired
        self.error = error
        self.calls = []

    async def set(self, key, value, ex=None, nx=False):
        self.calls.append({"key": key, "ex": ex, "nx": nx})
        if self.error is not None:
            raise self.error
        return self.acquired


class _BrokenSessionMaker:
    def __call__(self):
        raise RuntimeError("database offline")


async def _seed_overdue(session_maker, requester, publish_action) -> None:
    past = datetime.now(timezone.utc) - timedelta(hours=1)
    async with session_maker() as db:
        service = ApprovalWorkflowService.from_settings(db, clock=lambda: past)
        await service.create_request(publish_action, requester)


@pytest.mark.asyncio
async def test_run_cleanup_expires_overdue_requests(session_maker, requester, publish_action) -> None:
    await _seed_overdue(session_maker, requester, publish_action)
    scheduler = ApprovalCleanupScheduler(session_maker, get_settings(), redis_client=_LockClient())

    result = await scheduler.run_cleanup()

    assert result is not None
    assert result.expired_count == 1
    assert result.deleted_count == 0
    status = scheduler.get_status()
    assert status["last_run_success"] is True
    assert status["last_expired_count"] == 1

    async with session_maker() as db:
        rows = (await ApprovalWorkflowService.from_settings(db).list_requests())[0]
    assert [row.status for row in rows] == [AdminApprovalStatus.EXPIRED]


@pytest.mark.asyncio
async def test_run_cleanup_skips_when_another_instance_holds_the_lock(session_maker) -> None:
    lock = _LockClient(acquired=None)
    scheduler = ApprovalCleanupScheduler(session_maker, get_settings(), redis_client=lock)

    assert await scheduler.run_cleanup() is None
    assert lock.calls[0]["nx"] is True
    assert lock.calls[0]["key"].endswith(f"dispatch-lock:{CLEANUP_JOB_ID}")
    assert lock.calls[0]["ex"] >= 60
    assert scheduler.get_status()["last_run_success"] is None


@pytest.mark.asyncio
async def test_run_cleanup_proceeds_when_lock_backend_fails(
    session_maker, requester, publish_action
) -> None:
    await _seed_overdue(session_maker, requester, publish_action)
    scheduler = ApprovalCleanupScheduler(
        session_maker,
        get_settings(),
        redis_client=_LockClient(error=ConnectionError("redis down")),
    )

    result = await scheduler.run_cleanup()

    assert result is not None
    assert result.expired_count == 1


@pytest.mark.asyncio
async def test_run_cleanup_never_raises() -> None:
    scheduler = ApprovalCleanupScheduler(
        _BrokenSessionMaker(), get_settings(), redis_client=_LockClient()
    )

    assert await scheduler.run_cleanup() is None
    status = scheduler.get_status()
    assert status["last_run_success"] is False
    assert status["last_run_time"] is not None


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(session_maker) -> None:
    scheduler = ApprovalCleanupScheduler(session_maker, get_settings(), redis_client=_LockClient())
    scheduler._running = True

    assert await scheduler.run_cleanup() is None
    assert scheduler._running is True


def test_cleanup_interval_has_a_floor_of_five_minutes() -> None:
    settings = get_settings().model_copy(update={"ADMIN_APPROVAL_CLEANUP_INTERVAL_MINUTES": 1})

    assert ApprovalCleanupScheduler(None, settings).interval_minutes == 5


def test_status_before_start_reports_idle_scheduler() -> None:
    scheduler = ApprovalCleanupScheduler(None, get_settings())

    status = scheduler.get_status()

    assert status["running"] is False
    assert status["last_run_success"] is None
    assert status["jobs"] == []
