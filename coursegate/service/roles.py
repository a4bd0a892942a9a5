from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional, Union


class Role(str, Enum):
    """Closed set of account roles."""

    STUDENT = "student"
    INSTRUCTOR = "instructor"
    SECURITY_ANALYST = "security_analyst"
    ADMIN = "admin"


# Roles that cannot be self-assigned at registration without an invite
ELEVATED_ROLES = frozenset({Role.ADMIN, Role.SECURITY_ANALYST})

# Roles that may view incidents and audit entries
SECURITY_VIEW_ROLES = frozenset({Role.SECURITY_ANALYST, Role.ADMIN})


def parse_role(value: Union[str, Role, None]) -> Optional[Role]:
    """Return the ``Role`` for ``value`` or ``None`` when it is empty or unknown."""
    if isinstance(value, Role):
        return value
    if value is None:
        return None
    normalized = str(value).strip().lower()
    if not normalized:
        return None
    try:
        return Role(normalized)
    except ValueError:
        return None


def role_values(roles: Iterable[Role]) -> list[str]:
    return sorted(role.value for role in roles)
