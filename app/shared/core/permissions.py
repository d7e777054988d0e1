from __future__ import annotations

from enum import Enum
from typing import Any, Iterable

PERMISSION_ADMIN_READ = "admin:read"
PERMISSION_ADMIN_WRITE = "admin:write"
PERMISSION_ANNOUNCEMENTS_READ = "announcements:read"
PERMISSION_ANNOUNCEMENTS_WRITE = "announcements:write"
PERMISSION_ANNOUNCEMENTS_APPROVE = "announcements:approve"
PERMISSION_ANNOUNCEMENTS_DELETE = "announcements:delete"
PERMISSION_AUDIT_READ = "audit:read"
PERMISSION_SECURITY_READ = "security:read"

SUPPORTED_PERMISSIONS = frozenset(
    {
        PERMISSION_ADMIN_READ,
        PERMISSION_ADMIN_WRITE,
        PERMISSION_ANNOUNCEMENTS_READ,
        PERMISSION_ANNOUNCEMENTS_WRITE,
        PERMISSION_ANNOUNCEMENTS_APPROVE,
        PERMISSION_ANNOUNCEMENTS_DELETE,
        PERMISSION_AUDIT_READ,
        PERMISSION_SECURITY_READ,
    }
)


class AdminRole(str, Enum):
    ADMIN = "admin"
    EDITOR = "editor"
    REVIEWER = "reviewer"
    VIEWER = "viewer"


ROLE_PERMISSIONS: dict[AdminRole, frozenset[str]] = {
    AdminRole.ADMIN: frozenset({"*"}),
    AdminRole.EDITOR: frozenset(
        {
            PERMISSION_ADMIN_READ,
            PERMISSION_ADMIN_WRITE,
            PERMISSION_ANNOUNCEMENTS_READ,
            PERMISSION_ANNOUNCEMENTS_WRITE,
        }
    ),
    AdminRole.REVIEWER: frozenset(
        {
            PERMISSION_ADMIN_READ,
            PERMISSION_ANNOUNCEMENTS_READ,
            PERMISSION_ANNOUNCEMENTS_APPROVE,
            PERMISSION_AUDIT_READ,
        }
    ),
    AdminRole.VIEWER: frozenset({PERMISSION_ADMIN_READ, PERMISSION_ANNOUNCEMENTS_READ}),
}


def normalize_role(value: Any) -> AdminRole | None:
    role_value = str(getattr(value, "value", value) or "").strip().lower()
    try:
        return AdminRole(role_value)
    except ValueError:
        return None


def _matches(permission: str, allowed: str) -> bool:
    if allowed == "*":
        return True
    if allowed.endswith(":*"):
        return permission.startswith(allowed[:-1])
    return permission == allowed


def role_has_permission(role: Any, permission: str) -> bool:
    normalized = normalize_role(role)
    if normalized is None or permission not in SUPPORTED_PERMISSIONS:
        return False
    return any(_matches(permission, allowed) for allowed in ROLE_PERMISSIONS[normalized])


def list_permissions(role: Any) -> list[str]:
    normalized = normalize_role(role)
    if normalized is None:
        return []
    granted: Iterable[str] = ROLE_PERMISSIONS[normalized]
    if "*" in granted:
        return sorted(SUPPORTED_PERMISSIONS)
    return sorted(granted)
