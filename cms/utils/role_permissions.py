"""
Role hierarchy utilities for CMS users.

Roles form a fixed total order: VIEWER < EDITOR < ADMIN. A user satisfies a
requirement when their role ranks at or above the required role.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional, Set


ROLE_VIEWER = "VIEWER"
ROLE_EDITOR = "EDITOR"
ROLE_ADMIN = "ADMIN"

ROLE_RANKS: Dict[str, int] = {
    ROLE_VIEWER: 1,
    ROLE_EDITOR: 2,
    ROLE_ADMIN: 3,
}

ALLOWED_ROLES: FrozenSet[str] = frozenset(ROLE_RANKS)
DEFAULT_ROLE = ROLE_VIEWER


class RoleEnum(str, Enum):
    """Enum for user roles used in schemas and validation."""
    VIEWER = ROLE_VIEWER
    EDITOR = ROLE_EDITOR
    ADMIN = ROLE_ADMIN


def normalize_role(role: Optional[str]) -> Optional[str]:
    if role is None:
        return None
    value = role.value if isinstance(role, RoleEnum) else str(role)
    value = value.strip().upper()
    return value if value in ALLOWED_ROLES else None


def role_rank(role: Optional[str]) -> int:
    """Return the rank of a role, 0 for unknown roles."""
    normalized = normalize_role(role)
    if normalized is None:
        return 0
    return ROLE_RANKS[normalized]


def has_permission(user_role: Optional[str], required_role: str) -> bool:
    """
    Return True when ``user_role`` is at least ``required_role``.

    Unknown user roles never pass.

    Raises:
        ValueError: If ``required_role`` is not recognized
    """
    required = normalize_role(required_role)
    if required is None:
        raise ValueError(f"Unknown role: {required_role}. Allowed roles: {sorted(ALLOWED_ROLES)}")
    rank = role_rank(user_role)
    return rank > 0 and rank >= ROLE_RANKS[required]


def get_allowed_roles() -> Set[str]:
    """Get the set of all allowed roles."""
    return set(ALLOWED_ROLES)
