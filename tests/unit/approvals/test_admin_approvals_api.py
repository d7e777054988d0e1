from __future__ import annotations

from uuid import uuid4

import pytest

BASE = "/api/v1/admin/approvals"


@pytest.fixture
def reviewer_headers(auth_headers, open_session):
    async def _headers(user_id: str = "reviewer-1", role: str = "reviewer"):
        session = await open_session(user_id)
        return auth_headers(user_id, role=role, session_id=session.id)

    return _headers


@pytest.mark.asyncio
async def test_reviewer_approves_pending_request(
    async_client, approval_service, requester, publish_action, reviewer_headers
) -> None:
    approval = await approval_service.create_request(publish_action, requester)

    response = await async_client.post(
        f"{BASE}/{approval.id}/approve",
        headers=await reviewer_headers(),
        json={"note": "checked the batch"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["approval"]["status"] == "approved"
    assert body["approval"]["approvedByUserId"] == "reviewer-1"
    assert body["approval"]["note"] == "checked the batch"


@pytest.mark.asyncio
async def test_requester_cannot_approve_own_request(
    async_client, approval_service, publish_action, reviewer_headers
) -> None:
    from app.modules.approvals.domain.service import ApprovalActor

    own = ApprovalActor(user_id="admin-7", email="admin-7@example.com", role="admin")
    approval = await approval_service.create_request(publish_action, own)

    response = await async_client.post(
        f"{BASE}/{approval.id}/approve", headers=await reviewer_headers("admin-7", "admin")
    )

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "self_approval_forbidden"


@pytest.mark.asyncio
async def test_second_approval_conflicts(
    async_client, approval_service, requester, reviewer, publish_action, reviewer_headers
) -> None:
    approval = await approval_service.create_request(publish_action, requester)
    await approval_service.approve(approval.id, reviewer)

    response = await async_client.post(
        f"{BASE}/{approval.id}/approve", headers=await reviewer_headers("reviewer-2")
    )

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "invalid_status:approved"


@pytest.mark.asyncio
async def test_reject_records_reason(
    async_client, approval_service, requester, publish_action, reviewer_headers
) -> None:
    approval = await approval_service.create_request(publish_action, requester)

    response = await async_client.post(
        f"{BASE}/{approval.id}/reject",
        headers=await reviewer_headers(),
        json={"reason": "targets include drafts"},
    )

    assert response.status_code == 200
    assert response.json()["approval"]["status"] == "rejected"
    assert response.json()["approval"]["rejectionReason"] == "targets include drafts"


@pytest.mark.asyncio
async def test_unknown_approval_is_not_found(async_client, reviewer_headers) -> None:
    headers = await reviewer_headers()

    approve = await async_client.post(f"{BASE}/{uuid4()}/approve", headers=headers)
    fetch = await async_client.get(f"{BASE}/not-a-uuid", headers=headers)

    assert approve.status_code == 404
    assert approve.json()["error"]["code"] == "not_found"
    assert fetch.status_code == 404


@pytest.mark.asyncio
async def test_viewer_cannot_approve(
    async_client, approval_service, requester, publish_action, reviewer_headers
) -> None:
    approval = await approval_service.create_request(publish_action, requester)

    response = await async_client.post(
        f"{BASE}/{approval.id}/approve", headers=await reviewer_headers("viewer-1", "viewer")
    )

    assert response.status_code == 403
    assert (await approval_service.get_request(approval.id)).status.value == "pending"


@pytest.mark.asyncio
async def test_approval_routes_require_admin_session(
    async_client, approval_service, requester, publish_action, auth_headers
) -> None:
    approval = await approval_service.create_request(publish_action, requester)

    response = await async_client.post(
        f"{BASE}/{approval.id}/approve", headers=auth_headers("reviewer-1", role="reviewer")
    )

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "session_not_found"


@pytest.mark.asyncio
async def test_list_and_get_approvals(
    async_client, approval_service, requester, reviewer, publish_action, reviewer_headers
) -> None:
    first = await approval_service.create_request(publish_action, requester)
    await approval_service.create_request(publish_action, reviewer)
    headers = await reviewer_headers()

    listed = await async_client.get(BASE, params={"status": "pending", "mine": "true"}, headers=headers)
    assert listed.status_code == 200
    body = listed.json()
    assert body["total"] == 1
    assert body["items"][0]["requestedByUserId"] == "reviewer-1"
    assert body["limit"] == 50

    fetched = await async_client.get(f"{BASE}/{first.id}", headers=headers)
    assert fetched.status_code == 200
    assert fetched.json()["targetIds"] == ["a-3", "a-1", "a-2"]
    assert fetched.json()["actionType"] == "announcement_bulk_publish"


@pytest.mark.asyncio
async def test_list_rejects_unknown_status_filter(async_client, reviewer_headers) -> None:
    response = await async_client.get(BASE, params={"status": "done"}, headers=await reviewer_headers())

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "invalid_status_filter"


@pytest.mark.asyncio
async def test_policy_endpoint_exposes_matrix(async_client, reviewer_headers) -> None:
    response = await async_client.get(f"{BASE}/policy", headers=await reviewer_headers())

    assert response.status_code == 200
    body = response.json()
    assert body["dualApprovalRequired"] is True
    assert body["matrix"]["announcement_delete"]["risk"] == "critical"
