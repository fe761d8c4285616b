"""FastAPI dependencies for authentication and tenant authorization.

Usage:
    @router.get("/members", dependencies=[Depends(require_permissions(
        Permission.MANAGE_MEMBERS,
    ))])
    async def members(tenant_id: str): ...

``require_permissions`` implies ``current_membership``, which implies
``current_user``. Failures surface as 401 (no valid session) or 403
(not a member / missing permission).
"""

from __future__ import annotations

from typing import Any, Callable, Coroutine

import structlog
from fastapi import Depends, HTTPException, Request

from allay.auth.identity import IdentityService, extract_token, get_identity_service
from allay.auth.permissions import Permission, authorize
from allay.db.models import Membership, User
from allay.organization.service import OrganizationService, get_organization_service

logger = structlog.get_logger()


def session_token(request: Request) -> str | None:
    return extract_token(request.headers.get("authorization"), request.cookies)


async def current_user(
    request: Request,
    identity: IdentityService = Depends(get_identity_service),
) -> User:
    """Resolve the authenticated user or raise 401."""
    token = session_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")
    user = await identity.validate(token)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or expired session")
    request.state.user_id = user.id
    return user


async def current_membership(
    tenant_id: str,
    user: User = Depends(current_user),
    organization: OrganizationService = Depends(get_organization_service),
) -> Membership:
    """Active membership of the current user in the path's tenant, or 403."""
    membership = await organization.get_membership(user.id, tenant_id)
    if membership is None:
        logger.info("tenant_access_denied", tenant_id=tenant_id, user_id=user.id)
        raise HTTPException(status_code=403, detail="Access denied to this tenant")
    return membership


def require_permissions(
    *required: Permission,
) -> Callable[..., Coroutine[Any, Any, Membership]]:
    """Build a dependency that enforces ``authorize(membership, required)``."""

    async def _guard(membership: Membership = Depends(current_membership)) -> Membership:
        if not authorize(membership, required):
            logger.info(
                "permission_denied",
                tenant_id=membership.tenant_id,
                user_id=membership.user_id,
                required=[p.value for p in required],
            )
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return membership

    return _guard
