# -*- coding: utf-8 -*-
"""
Account roles and the single authorization policy table.

Every role check goes through :func:`has_permission` / :func:`require_permission`
instead of comparing role strings at call sites.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, FrozenSet, Tuple, Union

__all__ = [
    "Permission",
    "PermissionDenied",
    "Role",
    "can_access_path",
    "has_permission",
    "parse_role",
    "require_permission",
]

_logger = logging.getLogger(__name__)


class Role(str, Enum):
    LEARNER = "LEARNER"
    INSTRUCTOR = "INSTRUCTOR"
    ADMIN = "ADMIN"


class Permission(str, Enum):
    ACCESS_DASHBOARD = "access_dashboard"
    MANAGE_OWN_SECURITY = "manage_own_security"
    MANAGE_COURSES = "manage_courses"
    VIEW_COURSE_ANALYTICS = "view_course_analytics"
    ACCESS_ADMIN = "access_admin"
    VIEW_AUDIT_LOGS = "view_audit_logs"
    MANAGE_USERS = "manage_users"


class PermissionDenied(PermissionError):
    """Role lacks the permission required for an operation."""

    status_code = 403

    def __init__(self, role: Union[str, Role], permission: Permission) -> None:
        label = role.value if isinstance(role, Role) else role
        super().__init__(f"Role {label} lacks permission {permission.value}")
        self.role = role
        self.permission = permission


_LEARNER: FrozenSet[Permission] = frozenset(
    {Permission.ACCESS_DASHBOARD, Permission.MANAGE_OWN_SECURITY}
)
_INSTRUCTOR: FrozenSet[Permission] = _LEARNER | {
    Permission.MANAGE_COURSES,
    Permission.VIEW_COURSE_ANALYTICS,
}
_ADMIN: FrozenSet[Permission] = frozenset(Permission)

POLICY: Dict[Role, FrozenSet[Permission]] = {
    Role.LEARNER: _LEARNER,
    Role.INSTRUCTOR: _INSTRUCTOR,
    Role.ADMIN: _ADMIN,
}

# Path prefix -> permission required to enter it
PATH_RULES: Tuple[Tuple[str, Permission], ...] = (
    ("/admin", Permission.ACCESS_ADMIN),
    ("/instructor", Permission.MANAGE_COURSES),
)


def parse_role(value: Union[str, Role]) -> Role:
    """Parse a stored role string; unknown values raise ValueError."""
    if isinstance(value, Role):
        return value
    return Role(value.strip().upper())


def has_permission(role: Union[str, Role], permission: Permission) -> bool:
    try:
        return permission in POLICY[parse_role(role)]
    except ValueError:
        _logger.warning("Unknown role %r denied %s", role, permission.value)
        return False


def require_permission(role: Union[str, Role], permission: Permission) -> Role:
    """Return the parsed role or raise PermissionDenied (unknown roles included)."""
    try:
        parsed = parse_role(role)
    except ValueError:
        _logger.warning("Unknown role %r denied %s", role, permission.value)
        raise PermissionDenied(role, permission) from None
    if permission not in POLICY[parsed]:
        raise PermissionDenied(parsed, permission)
    return parsed


def can_access_path(role: Union[str, Role], path: str) -> bool:
    """Route guard: /admin is admin-only, /instructor needs instructor or admin."""
    for prefix, permission in PATH_RULES:
        if path.startswith(prefix):
            return has_permission(role, permission)
    return True
