from __future__ import annotations

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from app.models.admin_approval import AdminApprovalStatus, ApprovalActionType
from app.modules.approvals.domain.actions import build_action
from app.modules.approvals.domain.service import (
    NOT_FOUND,
    REQUEST_MISMATCH,
    SELF_APPROVAL_FORBIDDEN,
    ApprovalActor,
    ApprovalWorkflowService,
)
from app.shared.core.exceptions import InvalidRequestError

SECOND_REVIEWER = ApprovalActor(user_id="reviewer-2", email="reviewer2@example.com", role="reviewer")


@pytest.mark.asyncio
async def test_create_request_stores_pending_row_bound_to_action(
    approval_service, requester, publish_action, clock
) -> None:
    approval = await approval_service.create_request(publish_action, requester, note="  weekly batch  ")

    assert approval.status == AdminApprovalStatus.PENDING
    assert approval.action_type == ApprovalActionType.ANNOUNCEMENT_BULK_PUBLISH
    assert approval.method == "POST"
    assert approval.target_ids == ["a-3", "a-1", "a-2"]
    assert approval.payload == {"status": "published", "types": ["job"]}
    assert approval.request_hash == publish_action.request_hash()
    assert approval.requested_by_user_id == "editor-1"
    assert approval.note == "weekly batch"
    assert approval.expires_at.replace(tzinfo=None) == (clock() + timedelta(minutes=30)).replace(
        tzinfo=None
    )


@pytest.mark.asyncio
async def test_create_request_requires_requester(approval_service, publish_action) -> None:
    with pytest.raises(InvalidRequestError):
        await approval_service.create_request(publish_action, ApprovalActor(user_id="", email=""))


@pytest.mark.asyncio
async def test_approve_records_approver(approval_service, requester, reviewer, publish_action) -> None:
    approval = await approval_service.create_request(publish_action, requester, note="batch")

    outcome = await approval_service.approve(approval.id, reviewer, note="looks right")

    assert outcome.ok is True
    assert outcome.approval.status == AdminApprovalStatus.APPROVED
    assert outcome.approval.approved_by_user_id == "reviewer-1"
    assert outcome.approval.approved_at is not None
    assert outcome.approval.note == "looks right"


@pytest.mark.asyncio
async def test_self_approval_is_forbidden_in_any_status(
    approval_service, requester, reviewer, publish_action
) -> None:
    approval = await approval_service.create_request(publish_action, requester)

    pending = await approval_service.approve(approval.id, requester)
    assert pending.ok is False
    assert pending.reason == SELF_APPROVAL_FORBIDDEN

    await approval_service.reject(approval.id, reviewer)
    after_reject = await approval_service.approve(approval.id, requester)
    assert after_reject.reason == SELF_APPROVAL_FORBIDDEN

    current = await approval_service.get_request(approval.id)
    assert current.approved_by_user_id is None


@pytest.mark.asyncio
async def test_concurrent_approvals_apply_exactly_once(
    session_maker, requester, reviewer, publish_action, clock
) -> None:
    async with session_maker() as setup_db:
        seed = ApprovalWorkflowService.from_settings(setup_db, clock=clock)
        approval = await seed.create_request(publish_action, requester)

    async def _approve(actor: ApprovalActor):
        async with session_maker() as db:
            service = ApprovalWorkflowService.from_settings(db, clock=clock)
            return await service.approve(approval.id, actor)

    outcomes = await asyncio.gather(_approve(reviewer), _approve(SECOND_REVIEWER))

    winners = [outcome for outcome in outcomes if outcome.ok]
    losers = [outcome for outcome in outcomes if not outcome.ok]
    assert len(winners) == 1
    assert len(losers) == 1
    assert losers[0].reason == "invalid_status:approved"

    async with session_maker() as check_db:
        final = await ApprovalWorkflowService.from_settings(check_db, clock=clock).get_request(
            approval.id
        )
    assert final.status == AdminApprovalStatus.APPROVED
    assert final.approved_by_user_id == winners[0].approval.approved_by_user_id


@pytest.mark.asyncio
async def test_concurrent_approve_and_reject_never_lose_an_update(
    session_maker, requester, reviewer, publish_action, clock
) -> None:
    async with session_maker() as setup_db:
        seed = ApprovalWorkflowService.from_settings(setup_db, clock=clock)
        approval = await seed.create_request(publish_action, requester)

    async def _approve():
        async with session_maker() as db:
            service = ApprovalWorkflowService.from_settings(db, clock=clock)
            return await service.approve(approval.id, reviewer)

    async def _reject():
        async with session_maker() as db:
            service = ApprovalWorkflowService.from_settings(db, clock=clock)
            return await service.reject(approval.id, SECOND_REVIEWER, reason="hold")

    approved, rejected = await asyncio.gather(_approve(), _reject())

    async with session_maker() as check_db:
        final = await ApprovalWorkflowService.from_settings(check_db, clock=clock).get_request(
            approval.id
        )

    if approved.ok and rejected.ok:
        # Serial order: approve committed, then reject observed "approved" and withdrew it.
        assert final.status == AdminApprovalStatus.REJECTED
        assert final.approved_by_user_id == "reviewer-1"
        assert final.rejected_by_user_id == "reviewer-2"
        return

    outcomes = [approved, rejected]
    winners = [outcome for outcome in outcomes if outcome.ok]
    losers = [outcome for outcome in outcomes if not outcome.ok]
    assert len(winners) == 1
    assert len(losers) == 1
    assert losers[0].reason == f"invalid_status:{final.status.value}"
    if approved.ok:
        assert final.status == AdminApprovalStatus.APPROVED
        assert final.rejected_by_user_id is None
    else:
        assert final.status == AdminApprovalStatus.REJECTED
        assert final.approved_by_user_id is None


@pytest.mark.asyncio
async def test_approve_after_committed_expiry_sweep_sees_expired(
    session_maker, requester, reviewer, publish_action, clock
) -> None:
    async with session_maker() as setup_db:
        seed = ApprovalWorkflowService.from_settings(setup_db, clock=clock)
        approval = await seed.create_request(publish_action, requester)

    def past_deadline():
        return clock() + timedelta(minutes=31)

    async with session_maker() as sweep_db:
        sweeper = ApprovalWorkflowService.from_settings(sweep_db, clock=past_deadline)
        assert await sweeper.expire_overdue() == 1

    # The approver's clock is still inside the window, so only the committed sweep can refuse it.
    async with session_maker() as approve_db:
        approver = ApprovalWorkflowService.from_settings(approve_db, clock=clock)
        outcome = await approver.approve(approval.id, reviewer)

    assert outcome.ok is False
    assert outcome.reason == "invalid_status:expired"
    assert outcome.approval is None or outcome.approval.approved_by_user_id is None


@pytest.mark.asyncio
async def test_approving_twice_reports_current_status(
    approval_service, requester, reviewer, publish_action
) -> None:
    approval = await approval_service.create_request(publish_action, requester)
    await approval_service.approve(approval.id, reviewer)

    again = await approval_service.approve(approval.id, SECOND_REVIEWER)

    assert again.ok is False
    assert again.reason == "invalid_status:approved"


@pytest.mark.asyncio
async def test_reject_from_pending_and_from_approved(
    approval_service, requester, reviewer, publish_action
) -> None:
    first = await approval_service.create_request(publish_action, requester)
    rejected = await approval_service.reject(first.id, reviewer, reason="   ")
    assert rejected.ok is True
    assert rejected.approval.status == AdminApprovalStatus.REJECTED
    assert rejected.approval.rejection_reason == "Rejected"
    assert rejected.approval.rejected_by_user_id == "reviewer-1"

    second = await approval_service.create_request(publish_action, requester)
    await approval_service.approve(second.id, reviewer)
    withdrawn = await approval_service.reject(second.id, SECOND_REVIEWER, reason="wrong batch")
    assert withdrawn.ok is True
    assert withdrawn.approval.rejection_reason == "wrong batch"

    terminal = await approval_service.reject(first.id, SECOND_REVIEWER)
    assert terminal.reason == "invalid_status:rejected"


@pytest.mark.asyncio
async def test_unknown_or_malformed_ids_are_not_found(approval_service, reviewer) -> None:
    assert (await approval_service.approve("not-a-uuid", reviewer)).reason == NOT_FOUND
    assert (await approval_service.approve(uuid4(), reviewer)).reason == NOT_FOUND
    assert (await approval_service.reject(str(uuid4()), reviewer)).reason == NOT_FOUND
    assert await approval_service.get_request("not-a-uuid") is None


@pytest.mark.asyncio
async def test_overdue_pending_request_expires_on_read(
    approval_service, requester, reviewer, publish_action, clock
) -> None:
    approval = await approval_service.create_request(publish_action, requester)
    clock.advance(minutes=31)

    loaded = await approval_service.get_request(approval.id)
    assert loaded.status == AdminApprovalStatus.EXPIRED

    outcome = await approval_service.approve(approval.id, reviewer)
    assert outcome.reason == "invalid_status:expired"


@pytest.mark.asyncio
async def test_execution_requires_identical_action(
    approval_service, requester, reviewer, publish_action
) -> None:
    approval = await approval_service.create_request(publish_action, requester)
    await approval_service.approve(approval.id, reviewer)

    reordered = build_action(
        "announcement_bulk_publish",
        "/api/admin/announcements/bulk-publish",
        "POST",
        ["a-1", "a-2", "a-3"],
        {"types": ["job"], "status": "published"},
    )
    assert (await approval_service.validate_for_execution(approval.id, reordered)).ok is True

    extra_target = build_action(
        "announcement_bulk_publish",
        "/api/admin/announcements/bulk-publish",
        "POST",
        ["a-1", "a-2", "a-3", "a-4"],
        {"status": "published", "types": ["job"]},
    )
    other_payload = build_action(
        "announcement_bulk_publish",
        "/api/admin/announcements/bulk-publish",
        "POST",
        ["a-1", "a-2", "a-3"],
        {"status": "archived", "types": ["job"]},
    )
    for action in (extra_target, other_payload):
        outcome = await approval_service.validate_for_execution(approval.id, action)
        assert outcome.ok is False
        assert outcome.reason == REQUEST_MISMATCH


@pytest.mark.asyncio
async def test_execution_refuses_unapproved_and_overdue_requests(
    approval_service, requester, reviewer, publish_action, clock
) -> None:
    approval = await approval_service.create_request(publish_action, requester)
    pending = await approval_service.validate_for_execution(approval.id, publish_action)
    assert pending.reason == "invalid_status:pending"

    await approval_service.approve(approval.id, reviewer)
    clock.advance(minutes=31)

    overdue = await approval_service.validate_for_execution(approval.id, publish_action)
    assert overdue.ok is False
    assert overdue.reason == "invalid_status:expired"
    assert (await approval_service.get_request(approval.id)).status == AdminApprovalStatus.EXPIRED


@pytest.mark.asyncio
async def test_mark_executed_is_single_use(
    approval_service, requester, reviewer, publish_action
) -> None:
    approval = await approval_service.create_request(publish_action, requester)
    assert await approval_service.mark_executed(approval.id, requester) is False

    await approval_service.approve(approval.id, reviewer)
    assert await approval_service.mark_executed(approval.id, requester) is True
    assert await approval_service.mark_executed(approval.id, requester) is False

    executed = await approval_service.get_request(approval.id)
    assert executed.status == AdminApprovalStatus.EXECUTED
    assert executed.executed_by_user_id == "editor-1"

    replay = await approval_service.validate_for_execution(approval.id, publish_action)
    assert replay.reason == "invalid_status:executed"


@pytest.mark.asyncio
async def test_list_requests_filters_and_paginates(
    approval_service, requester, reviewer, publish_action, clock
) -> None:
    created = []
    for _ in range(3):
        created.append(await approval_service.create_request(publish_action, requester))
        clock.advance(seconds=1)
    await approval_service.create_request(publish_action, reviewer)
    await approval_service.approve(created[0].id, reviewer)

    items, total = await approval_service.list_requests(status="pending")
    assert total == 3

    mine, mine_total = await approval_service.list_requests(
        requested_by_user_id="editor-1", limit=2
    )
    assert mine_total == 3
    assert [item.id for item in mine] == [created[2].id, created[1].id]

    approved, _ = await approval_service.list_requests(status="approved")
    assert [item.id for item in approved] == [created[0].id]


@pytest.mark.asyncio
async def test_list_requests_rejects_unknown_status(approval_service) -> None:
    with pytest.raises(InvalidRequestError) as exc:
        await approval_service.list_requests(status="done")

    assert exc.value.code == "invalid_status_filter"


@pytest.mark.asyncio
async def test_cleanup_expires_live_rows_and_deletes_old_terminal_rows(
    approval_service, requester, reviewer, publish_action, clock
) -> None:
    old_rejected = await approval_service.create_request(publish_action, requester)
    await approval_service.reject(old_rejected.id, reviewer)
    old_pending = await approval_service.create_request(publish_action, requester)

    clock.advance(days=31)
    fresh = await approval_service.create_request(publish_action, requester)

    result = await approval_service.cleanup_old()

    assert result.expired_count == 1
    assert result.deleted_count == 2
    assert await approval_service.get_request(old_rejected.id) is None
    assert await approval_service.get_request(old_pending.id) is None
    assert (await approval_service.get_request(fresh.id)).status == AdminApprovalStatus.PENDING
