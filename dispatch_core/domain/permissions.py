from __future__ import annotations

import os
from typing import Any

PLATFORM_SUPERUSER_ROLE = os.getenv("PLATFORM_SUPERUSER_ROLE", "super_admin")

PERM_WILDCARD = "*"
PERM_DISPATCH_READ = "dispatch.read"
PERM_DISPATCH_WRITE = "dispatch.write"
PERM_STRATEGY_EVALUATE = "strategy.evaluate"
PERM_LEARNING_WRITE = "learning.write"
PERM_TASK_READ = "task.read"
PERM_TASK_TRANSITION = "task.transition"

ROLE_PERMISSIONS: dict[str, list[str]] = {
    PLATFORM_SUPERUSER_ROLE: [PERM_WILDCARD],
    "admin": [PERM_WILDCARD],
    "staff": [
        PERM_DISPATCH_READ,
        PERM_DISPATCH_WRITE,
        PERM_STRATEGY_EVALUATE,
        PERM_LEARNING_WRITE,
        PERM_TASK_READ,
        PERM_TASK_TRANSITION,
    ],
    "worker": [
        PERM_DISPATCH_READ,
        PERM_TASK_READ,
        PERM_TASK_TRANSITION,
    ],
}


def is_platform_superuser(claims: dict[str, Any]) -> bool:
    return claims.get("role") == PLATFORM_SUPERUSER_ROLE


def effective_permissions(claims: dict[str, Any]) -> set[str]:
    granted: set[str] = set()
    explicit = claims.get("permissions", [])
    if isinstance(explicit, list):
        granted.update(item for item in explicit if isinstance(item, str))
    role = claims.get("role")
    if isinstance(role, str):
        granted.update(ROLE_PERMISSIONS.get(role, []))
    return granted


def has_permission(claims: dict[str, Any], permission: str) -> bool:
    permissions = effective_permissions(claims)
    return permission in permissions or PERM_WILDCARD in permissions
