"""Identity, sessions and tenant-scoped permissions."""

from allay.auth.identity import IdentityService, get_identity_service
from allay.auth.permissions import Permission, Role, authorize, default_permissions_for

__all__ = [
    "IdentityService",
    "Permission",
    "Role",
    "authorize",
    "default_permissions_for",
    "get_identity_service",
]
