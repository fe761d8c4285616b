"""Organization endpoints: members, invitations, Slack coverage.

All tenant routes are gated by ``require_permissions``; invitation
acceptance only needs an authenticated user because the caller is not a
member yet.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field

from allay.auth.deps import current_user, require_permissions
from allay.auth.permissions import Permission, Role
from allay.core.http import unwrap
from allay.db.models import Membership, User
from allay.organization.service import OrganizationService, get_organization_service

router = APIRouter(prefix="/api/{tenant_id}/organization", tags=["organization"])
invitations_router = APIRouter(prefix="/api/invitations", tags=["organization"])


class AddMemberRequest(BaseModel):
    userId: str
    role: Role = Role.MEMBER
    customPermissions: list[Permission] | None = None


class CreateInvitationRequest(BaseModel):
    email: EmailStr
    proposedRole: Role = Role.MEMBER
    proposedPermissions: list[Permission] | None = None
    message: str | None = Field(default=None, max_length=2000)
    expiresInDays: int | None = Field(default=None, ge=1, le=90)


# ═══════════════════════════════════════════════════════════════════════════════
# MEMBERS
# ═══════════════════════════════════════════════════════════════════════════════

@router.get("/members")
async def list_members(
    tenant_id: str,
    _: Membership = Depends(
        require_permissions(Permission.MANAGE_MEMBERS, Permission.VIEW_ANALYTICS)
    ),
    organization: OrganizationService = Depends(get_organization_service),
) -> dict[str, Any]:
    return {"members": await organization.list_members(tenant_id)}


@router.post("/members", status_code=201)
async def add_member(
    tenant_id: str,
    req: AddMemberRequest,
    _: Membership = Depends(require_permissions(Permission.MANAGE_MEMBERS)),
    organization: OrganizationService = Depends(get_organization_service),
) -> dict[str, Any]:
    permissions = (
        [p.value for p in req.customPermissions]
        if req.customPermissions is not None
        else None
    )
    member = unwrap(
        await organization.add_member(req.userId, tenant_id, req.role, permissions)
    )
    return {"success": True, "member": member}


@router.delete("/members/{user_id}")
async def remove_member(
    tenant_id: str,
    user_id: str,
    _: Membership = Depends(require_permissions(Permission.MANAGE_MEMBERS)),
    organization: OrganizationService = Depends(get_organization_service),
) -> dict[str, Any]:
    member = unwrap(await organization.remove_member(tenant_id, user_id))
    return {"success": True, "member": member}


@router.get("/members/{user_id}/permissions")
async def member_permissions(
    tenant_id: str,
    user_id: str,
    _: Membership = Depends(require_permissions(Permission.MANAGE_MEMBERS)),
    organization: OrganizationService = Depends(get_organization_service),
) -> dict[str, Any]:
    role, permissions = await organization.get_member_permissions(user_id, tenant_id)
    return {"role": role.value if role else None, "permissions": permissions}


# ═══════════════════════════════════════════════════════════════════════════════
# INVITATIONS
# ═══════════════════════════════════════════════════════════════════════════════

@router.get("/invitations")
async def list_invitations(
    tenant_id: str,
    _: Membership = Depends(
        require_permissions(Permission.MANAGE_MEMBERS, Permission.INVITE_MEMBERS)
    ),
    organization: OrganizationService = Depends(get_organization_service),
) -> dict[str, Any]:
    return {"invitations": await organization.list_invitations(tenant_id)}


@router.post("/invitations", status_code=201)
async def create_invitation(
    tenant_id: str,
    req: CreateInvitationRequest,
    membership: Membership = Depends(require_permissions(Permission.INVITE_MEMBERS)),
    organization: OrganizationService = Depends(get_organization_service),
) -> dict[str, Any]:
    permissions = (
        [p.value for p in req.proposedPermissions]
        if req.proposedPermissions is not None
        else None
    )
    invitation = unwrap(
        await organization.create_invitation(
            req.email,
            tenant_id,
            membership.user_id,
            req.proposedRole,
            permissions,
            req.message,
            req.expiresInDays,
        )
    )
    return {"success": True, "invitation": invitation}


@router.post("/invitations/{invitation_id}/revoke")
async def revoke_invitation(
    tenant_id: str,
    invitation_id: str,
    _: Membership = Depends(require_permissions(Permission.MANAGE_MEMBERS)),
    organization: OrganizationService = Depends(get_organization_service),
) -> dict[str, Any]:
    invitation = unwrap(await organization.revoke_invitation(tenant_id, invitation_id))
    return {"success": True, "invitation": invitation}


@invitations_router.post("/{token}/accept")
async def accept_invitation(
    token: str,
    user: User = Depends(current_user),
    organization: OrganizationService = Depends(get_organization_service),
) -> dict[str, Any]:
    accepted = unwrap(await organization.accept_invitation(token, user.id))
    return {"success": True, **accepted}


# ═══════════════════════════════════════════════════════════════════════════════
# SLACK COVERAGE
# ═══════════════════════════════════════════════════════════════════════════════

@router.get("/slack/members-not-in-slack")
async def members_not_in_slack(
    tenant_id: str,
    _: Membership = Depends(
        require_permissions(Permission.MANAGE_MEMBERS, Permission.MANAGE_SLACK)
    ),
    organization: OrganizationService = Depends(get_organization_service),
) -> dict[str, Any]:
    return {"members": await organization.members_not_in_slack(tenant_id)}
