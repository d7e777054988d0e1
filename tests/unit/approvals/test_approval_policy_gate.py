from __future__ import annotations

import pytest

from app.models.admin_approval import AdminApprovalStatus, ApprovalActionType
from app.modules.approvals.domain.actions import build_action
from app.modules.approvals.domain.gate import ApprovalGate
from app.modules.approvals.domain.policy import (
    ApprovalPolicy,
    build_policy_matrix,
    extract_payload_content_types,
)
from app.shared.core.config import Settings


def _settings(**overrides) -> Settings:
    return Settings(**overrides)


def test_default_matrix_requires_approval_for_every_action() -> None:
    matrix = build_policy_matrix(_settings())

    assert set(matrix) == set(ApprovalActionType)
    assert all(rule.enabled for rule in matrix.values())
    assert matrix[ApprovalActionType.ANNOUNCEMENT_DELETE].risk == "critical"
    assert matrix[ApprovalActionType.ANNOUNCEMENT_PUBLISH].risk == "high"


def test_global_switch_disables_every_rule() -> None:
    policy = ApprovalPolicy.from_settings(_settings(ADMIN_DUAL_APPROVAL_REQUIRED=False))

    requirement = policy.evaluate_requirement("announcement_delete", "editor", ["a-1"])

    assert requirement.required is False
    assert requirement.reason == "policy_disabled"


def test_overrides_merge_per_field_and_ignore_bad_types() -> None:
    matrix = build_policy_matrix(
        _settings(
            ADMIN_APPROVAL_POLICY_MATRIX={
                "announcement_bulk_publish": {
                    "enabled": "yes",
                    "risk": "extreme",
                    "minTargets": 2.7,
                    "bypassRoles": ["admin", 7],
                    "contentTypes": ["job", "podcast"],
                },
                "announcement_delete": {"min_targets": -5, "risk": "medium"},
                "announcement_archive": {"enabled": False},
            }
        )
    )

    bulk = matrix[ApprovalActionType.ANNOUNCEMENT_BULK_PUBLISH]
    assert bulk.enabled is True
    assert bulk.risk == "critical"
    assert bulk.min_targets == 2
    assert bulk.bypass_roles == ("admin",)
    assert bulk.content_types == ("job",)

    delete = matrix[ApprovalActionType.ANNOUNCEMENT_DELETE]
    assert delete.min_targets == 1
    assert delete.risk == "medium"


@pytest.mark.parametrize(
    ("role", "targets", "types", "required", "reason"),
    [
        ("admin", ["a-1", "a-2"], ["job"], False, "role_bypassed"),
        ("editor", ["a-1"], ["job"], False, "target_threshold_not_met"),
        ("editor", ["a-1", "a-2"], ["result"], False, "content_type_not_matched"),
        ("editor", ["a-1", "a-2"], ["result", "job"], True, "approval_required"),
    ],
)
def test_evaluate_requirement_reasons(role, targets, types, required, reason) -> None:
    policy = ApprovalPolicy.from_settings(
        _settings(
            ADMIN_APPROVAL_POLICY_MATRIX={
                "announcement_bulk_publish": {
                    "bypass_roles": ["admin"],
                    "min_targets": 2,
                    "content_types": ["job"],
                }
            }
        )
    )

    requirement = policy.evaluate_requirement("announcement_bulk_publish", role, targets, types)

    assert requirement.required is required
    assert requirement.reason == reason
    assert requirement.risk == "critical"


def test_unknown_action_type_has_no_policy() -> None:
    requirement = ApprovalPolicy.from_settings(_settings()).evaluate_requirement(
        "announcement_purge", "editor", ["a-1"]
    )

    assert requirement.required is False
    assert requirement.reason == "policy_not_found"


def test_extract_payload_content_types() -> None:
    assert extract_payload_content_types({"type": "job", "types": ["result", 3]}) == ["job", "result"]
    assert extract_payload_content_types(None) == []


@pytest.mark.asyncio
async def test_gate_parks_gated_action_as_pending_request(
    approval_service, requester, publish_action
) -> None:
    gate = ApprovalGate(approval_service, ApprovalPolicy.from_settings(_settings()))

    decision = await gate.require(publish_action, requester, note="publish results")

    assert decision.proceed is False
    assert decision.status_code == 202
    assert decision.approval.status == AdminApprovalStatus.PENDING
    assert decision.requirement.risk == "critical"


@pytest.mark.asyncio
async def test_gate_lets_ungated_actions_through_without_a_request(
    approval_service, requester, publish_action
) -> None:
    gate = ApprovalGate(
        approval_service,
        ApprovalPolicy.from_settings(_settings(ADMIN_DUAL_APPROVAL_REQUIRED=False)),
    )

    decision = await gate.require(publish_action, requester)

    assert decision.proceed is True
    assert decision.approval is None
    _, total = await approval_service.list_requests()
    assert total == 0


@pytest.mark.asyncio
async def test_gate_executes_approved_action_once(
    approval_service, requester, reviewer, publish_action
) -> None:
    gate = ApprovalGate(approval_service, ApprovalPolicy.from_settings(_settings()))
    parked = await gate.require(publish_action, requester)
    await approval_service.approve(parked.approval.id, reviewer)

    decision = await gate.require(publish_action, requester, approval_id=str(parked.approval.id))
    assert decision.proceed is True
    assert decision.reason == "approved"
    assert await gate.complete(parked.approval.id, requester) is True

    replay = await gate.require(publish_action, requester, approval_id=str(parked.approval.id))
    assert replay.proceed is False
    assert replay.reason == "invalid_status:executed"
    assert replay.status_code == 409


@pytest.mark.asyncio
async def test_gate_refuses_approval_for_a_different_action(
    approval_service, requester, reviewer, publish_action
) -> None:
    gate = ApprovalGate(approval_service, ApprovalPolicy.from_settings(_settings()))
    parked = await gate.require(publish_action, requester)
    await approval_service.approve(parked.approval.id, reviewer)

    widened = build_action(
        "announcement_bulk_publish",
        "/api/admin/announcements/bulk-publish",
        "POST",
        ["a-1", "a-2", "a-3", "a-99"],
        {"status": "published", "types": ["job"]},
    )
    decision = await gate.require(widened, requester, approval_id=str(parked.approval.id))

    assert decision.proceed is False
    assert decision.reason == "request_mismatch"
    assert decision.status_code == 409
    assert await gate.complete(None, requester) is False
