"""Role and permission model for tenant memberships.

A membership carries a role and an explicit permission list. Elevated roles
(OWNER, ADMIN) imply every permission; MEMBER is checked against its list.
``authorize`` is a pure function: it never raises and never touches the
database, so route guards and services can call it freely.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Protocol


class Permission(str, Enum):
    """Capabilities checked against a membership's explicit permission set."""
    MANAGE_MEMBERS = "manage_members"
    INVITE_MEMBERS = "invite_members"
    VIEW_ANALYTICS = "view_analytics"
    MANAGE_SLACK = "manage_slack"
    SEND_MESSAGES = "send_messages"
    MANAGE_INTEGRATIONS = "manage_integrations"

    @classmethod
    def parse(cls, value: str | "Permission") -> "Permission":
        """Parse a permission, accepting either its value or member name."""
        return _parse_enum(cls, value)

    @classmethod
    def parse_many(cls, values: Iterable[str]) -> frozenset["Permission"]:
        return frozenset(cls.parse(v) for v in values)


class Role(str, Enum):
    """Membership roles, ordered MEMBER < ADMIN < OWNER."""
    MEMBER = "member"
    ADMIN = "admin"
    OWNER = "owner"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    def implies_all_permissions(self) -> bool:
        """OWNER and ADMIN bypass explicit permission checks."""
        return self in (Role.OWNER, Role.ADMIN)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Role):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Role):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Role):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Role):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value: str | "Role") -> "Role":
        """Parse a role name. Raises ValueError for unknown roles."""
        return _parse_enum(cls, value)


_ROLE_RANK: dict[Role, int] = {
    Role.MEMBER: 0,
    Role.ADMIN: 1,
    Role.OWNER: 2,
}


DEFAULT_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.OWNER: frozenset(Permission),
    Role.ADMIN: frozenset({
        Permission.INVITE_MEMBERS,
        Permission.MANAGE_SLACK,
        Permission.VIEW_ANALYTICS,
        Permission.SEND_MESSAGES,
    }),
    Role.MEMBER: frozenset({
        Permission.VIEW_ANALYTICS,
        Permission.SEND_MESSAGES,
    }),
}


def _parse_enum(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Invalid {enum_cls.__name__.lower()}: {value!r}")
    normalized = value.strip()
    try:
        return enum_cls(normalized.lower())
    except ValueError:
        pass
    try:
        return enum_cls[normalized.upper()]
    except KeyError:
        raise ValueError(f"Invalid {enum_cls.__name__.lower()}: {value!r}") from None


def default_permissions_for(role: Role) -> list[str]:
    """Permission values stored on a membership/invitation when none are supplied."""
    return sorted(p.value for p in DEFAULT_PERMISSIONS[role])


class MembershipLike(Protocol):
    role: str
    permissions: list[str]


def authorize(
    membership: MembershipLike | None,
    required: Iterable[Permission] | None = None,
) -> bool:
    """Decide whether a membership grants every required permission.

    Args:
        membership: The caller's membership in the tenant, or None.
        required: Permissions the operation needs. Empty/None means any
            member may proceed.

    Returns:
        True if access is granted.
    """
    if membership is None:
        return False

    try:
        role = Role.parse(membership.role)
    except ValueError:
        return False

    if role.implies_all_permissions():
        return True

    needed = frozenset(required or ())
    if not needed:
        return True

    granted: set[Permission] = set()
    for value in membership.permissions or ():
        try:
            granted.add(Permission.parse(value))
        except ValueError:
            continue
    return needed <= granted
