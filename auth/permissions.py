"""
auth/permissions.py -- The single capability check for role-gated operations.

Roles are strictly ordered: user < manager < admin < superadmin. A role
satisfies a requirement when it ranks at or above it. The service layer and
the FastAPI dependencies both call role_allows(); nothing else compares roles.
"""

from __future__ import annotations

from auth.models import Role

_RANK: dict[Role, int] = {
    Role.USER: 0,
    Role.MANAGER: 1,
    Role.ADMIN: 2,
    Role.SUPERADMIN: 3,
}


def role_allows(role: Role | str, required: Role) -> bool:
    """Return True if *role* may perform an action that requires *required*.

    Unknown role strings never pass.
    """
    try:
        role = Role(role)
    except ValueError:
        return False
    return _RANK[role] >= _RANK[required]
