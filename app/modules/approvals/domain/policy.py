from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Any, Literal, Mapping, Optional, Sequence

import structlog

from app.models.admin_approval import ApprovalActionType
from app.modules.approvals.domain.actions import ContentType
from app.shared.core.config import Settings, get_settings

logger = structlog.get_logger()

ApprovalRisk = Literal["low", "medium", "high", "critical"]
_RISKS: frozenset[str] = frozenset({"low", "medium", "high", "critical"})
_CONTENT_TYPES: frozenset[str] = frozenset(item.value for item in ContentType)

_DEFAULT_RISKS: dict[ApprovalActionType, ApprovalRisk] = {
    ApprovalActionType.ANNOUNCEMENT_PUBLISH: "high",
    ApprovalActionType.ANNOUNCEMENT_BULK_PUBLISH: "critical",
    ApprovalActionType.ANNOUNCEMENT_DELETE: "critical",
    ApprovalActionType.ANNOUNCEMENT_BULK_STATUS: "high",
}


@dataclass(frozen=True)
class ApprovalPolicyRule:
    enabled: bool
    risk: ApprovalRisk
    bypass_roles: tuple[str, ...] = ()
    min_targets: int = 1
    content_types: Optional[tuple[str, ...]] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "risk": self.risk,
            "bypass_roles": list(self.bypass_roles),
            "min_targets": self.min_targets,
            "content_types": list(self.content_types) if self.content_types else None,
        }


_MISSING_RULE = ApprovalPolicyRule(enabled=False, risk="low")


@dataclass(frozen=True)
class ApprovalRequirement:
    required: bool
    risk: ApprovalRisk
    reason: str
    rule: ApprovalPolicyRule = field(default=_MISSING_RULE)


def _override_value(raw: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in raw:
            return raw[name]
    return None


def _parse_content_types(value: Any) -> Optional[tuple[str, ...]]:
    if not isinstance(value, list):
        return None
    types = tuple(
        entry.strip()
        for entry in value
        if isinstance(entry, str) and entry.strip() in _CONTENT_TYPES
    )
    return types or None


def _apply_override(rule: ApprovalPolicyRule, raw: Any) -> ApprovalPolicyRule:
    """Merge one override field by field; fields of the wrong type are ignored."""
    if not isinstance(raw, Mapping):
        return rule

    enabled = _override_value(raw, "enabled")
    if isinstance(enabled, bool):
        rule = replace(rule, enabled=enabled)

    risk = _override_value(raw, "risk")
    if isinstance(risk, str) and risk in _RISKS:
        rule = replace(rule, risk=risk)  # type: ignore[arg-type]

    bypass_roles = _override_value(raw, "bypass_roles", "bypassRoles")
    if isinstance(bypass_roles, list):
        rule = replace(
            rule,
            bypass_roles=tuple(entry for entry in bypass_roles if isinstance(entry, str)),
        )

    min_targets = _override_value(raw, "min_targets", "minTargets")
    if isinstance(min_targets, (int, float)) and not isinstance(min_targets, bool):
        if math.isfinite(min_targets):
            rule = replace(rule, min_targets=max(1, math.floor(min_targets)))

    content_types = _parse_content_types(
        _override_value(raw, "content_types", "contentTypes")
    )
    if content_types:
        rule = replace(rule, content_types=content_types)
    return rule


def build_policy_matrix(
    settings: Settings | None = None,
) -> dict[ApprovalActionType, ApprovalPolicyRule]:
    settings = settings or get_settings()
    enabled_by_default = bool(settings.ADMIN_DUAL_APPROVAL_REQUIRED)
    overrides = settings.ADMIN_APPROVAL_POLICY_MATRIX or {}

    matrix: dict[ApprovalActionType, ApprovalPolicyRule] = {}
    for action_type, risk in _DEFAULT_RISKS.items():
        rule = ApprovalPolicyRule(enabled=enabled_by_default, risk=risk)
        raw = overrides.get(action_type.value)
        if raw is not None:
            rule = _apply_override(rule, raw)
        matrix[action_type] = rule

    unknown = sorted(set(overrides) - {item.value for item in ApprovalActionType})
    if unknown:
        logger.warning("admin_approval_policy_unknown_actions", action_types=unknown)
    return matrix


class ApprovalPolicy:
    """Decides, per action and actor, whether dual control applies."""

    def __init__(self, matrix: Mapping[ApprovalActionType, ApprovalPolicyRule]) -> None:
        self.matrix = dict(matrix)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ApprovalPolicy":
        return cls(build_policy_matrix(settings))

    def as_dict(self) -> dict[str, dict[str, Any]]:
        return {action_type.value: rule.as_dict() for action_type, rule in self.matrix.items()}

    def evaluate_requirement(
        self,
        action_type: ApprovalActionType | str,
        actor_role: Optional[str],
        target_ids: Sequence[str],
        content_types: Sequence[str] = (),
    ) -> ApprovalRequirement:
        try:
            key = ApprovalActionType(action_type)
        except ValueError:
            return ApprovalRequirement(required=False, risk="low", reason="policy_not_found")

        rule = self.matrix.get(key)
        if rule is None:
            return ApprovalRequirement(required=False, risk="low", reason="policy_not_found")
        if not rule.enabled:
            return ApprovalRequirement(False, rule.risk, "policy_disabled", rule)
        if actor_role and actor_role in rule.bypass_roles:
            return ApprovalRequirement(False, rule.risk, "role_bypassed", rule)
        if len(target_ids) < rule.min_targets:
            return ApprovalRequirement(False, rule.risk, "target_threshold_not_met", rule)
        if rule.content_types:
            if not any(item in rule.content_types for item in content_types):
                return ApprovalRequirement(False, rule.risk, "content_type_not_matched", rule)
        return ApprovalRequirement(True, rule.risk, "approval_required", rule)


def extract_payload_content_types(payload: Mapping[str, Any] | None) -> list[str]:
    if not payload:
        return []
    found: list[str] = []
    if isinstance(payload.get("type"), str):
        found.append(payload["type"])
    types = payload.get("types")
    if isinstance(types, list):
        found.extend(entry for entry in types if isinstance(entry, str))
    return found
