"""Organization membership and invitation lifecycle.

Invitation state machine:

    PENDING ──accept──→ ACCEPTED
       │ ──revoke──→ REVOKED
       └─(now > expires_at, observed lazily)──→ EXPIRED

Expiry has no background sweep. Every path that reads or uses an
invitation re-checks ``now > expires_at``; creating a new invitation or
accepting an old one persists the EXPIRED transition when it finds one.

At most one PENDING, unexpired invitation exists per (tenant, email). The
check runs in the service; a partial unique index backs it up against
concurrent creates.
"""

from __future__ import annotations

import secrets
from datetime import timedelta
from typing import Any, Iterable

import structlog
from email_validator import EmailNotValidError, validate_email
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from allay.auth.permissions import Permission, Role, default_permissions_for
from allay.config import settings
from allay.core.outcome import Outcome
from allay.db.models import (
    Invitation,
    InvitationStatus,
    Membership,
    SlackUser,
    User,
    as_utc,
    utcnow,
)

logger = structlog.get_logger()

_TOKEN_BYTES = 32  # 256 bits


def _iso(value) -> str | None:
    return as_utc(value).isoformat() if value is not None else None


def member_projection(membership: Membership, user: User | None = None) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": membership.id,
        "userId": membership.user_id,
        "tenantId": membership.tenant_id,
        "role": membership.role,
        "permissions": list(membership.permissions or []),
        "joinedAt": _iso(membership.joined_at),
        "lastActiveAt": _iso(membership.last_active_at),
        "isActive": membership.is_active,
    }
    if user is not None:
        data.update(
            email=user.email,
            firstName=user.first_name,
            lastName=user.last_name,
        )
    return data


def invitation_projection(
    invitation: Invitation,
    inviter: User | None = None,
    include_token: bool = False,
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": invitation.id,
        "tenantId": invitation.tenant_id,
        "email": invitation.email,
        "proposedRole": invitation.role,
        "proposedPermissions": list(invitation.permissions or []),
        "status": invitation.effective_status().value,
        "invitedBy": invitation.invited_by_user_id,
        "invitedByName": inviter.display_name if inviter is not None else None,
        "message": invitation.message,
        "createdAt": _iso(invitation.created_at),
        "expiresAt": _iso(invitation.expires_at),
        "acceptedAt": _iso(invitation.accepted_at),
        "acceptedBy": invitation.accepted_by_user_id,
    }
    if include_token:
        data["token"] = invitation.token
    return data


def _resolve_permissions(
    role: Role, permissions: Iterable[str] | None
) -> list[str]:
    """Explicit permissions if given, otherwise the role's defaults."""
    if permissions is None:
        return default_permissions_for(role)
    return sorted(p.value for p in Permission.parse_many(permissions))


class OrganizationService:
    """Members and invitations of a tenant."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        if session_factory is None:
            from allay.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self._session_factory = session_factory

    # ═══════════════════════════════════════════════════════════════════════
    # MEMBERS
    # ═══════════════════════════════════════════════════════════════════════

    async def list_members(self, tenant_id: str) -> list[dict[str, Any]]:
        """Active members ordered by join time."""
        async with self._session_factory() as db:
            rows = await db.execute(
                select(Membership, User)
                .join(User, User.id == Membership.user_id)
                .where(Membership.tenant_id == tenant_id, Membership.is_active.is_(True))
                .order_by(Membership.joined_at.asc())
            )
            return [member_projection(m, u) for m, u in rows.all()]

    async def get_membership(self, user_id: str, tenant_id: str) -> Membership | None:
        """Active membership of a user in a tenant."""
        async with self._session_factory() as db:
            row = await db.execute(
                select(Membership).where(
                    Membership.user_id == user_id,
                    Membership.tenant_id == tenant_id,
                    Membership.is_active.is_(True),
                )
            )
            return row.scalar_one_or_none()

    async def get_member_permissions(
        self, user_id: str, tenant_id: str
    ) -> tuple[Role | None, list[str]]:
        membership = await self.get_membership(user_id, tenant_id)
        if membership is None:
            return None, []
        return Role.parse(membership.role), list(membership.permissions or [])

    async def add_member(
        self,
        user_id: str,
        tenant_id: str,
        role: str | Role = Role.MEMBER,
        permissions: Iterable[str] | None = None,
    ) -> Outcome[dict[str, Any]]:
        """Add a user to a tenant, or reactivate a deactivated membership."""
        try:
            parsed_role = Role.parse(role)
            granted = _resolve_permissions(parsed_role, permissions)
        except ValueError as e:
            return Outcome.invalid(str(e))

        async with self._session_factory() as db:
            user = await db.get(User, user_id)
            if user is None:
                return Outcome.not_found("User not found")

            outcome = await self._grant_membership(db, user, tenant_id, parsed_role, granted)
            if outcome.ok:
                await db.commit()
            return outcome

    async def _grant_membership(
        self,
        db: AsyncSession,
        user: User,
        tenant_id: str,
        role: Role,
        permissions: list[str],
    ) -> Outcome[dict[str, Any]]:
        row = await db.execute(
            select(Membership).where(
                Membership.user_id == user.id,
                Membership.tenant_id == tenant_id,
            )
        )
        membership = row.scalar_one_or_none()
        now = utcnow()

        if membership is not None and membership.is_active:
            return Outcome.conflict("User is already a member")

        if membership is not None:
            membership.is_active = True
            membership.role = role.value
            membership.permissions = permissions
            membership.last_active_at = now
            logger.info(
                "member_reactivated",
                tenant_id=tenant_id,
                user_id=user.id,
                role=role.value,
            )
        else:
            membership = Membership(
                user_id=user.id,
                tenant_id=tenant_id,
                role=role.value,
                permissions=permissions,
                joined_at=now,
                last_active_at=now,
            )
            db.add(membership)
            logger.info(
                "member_added",
                tenant_id=tenant_id,
                user_id=user.id,
                role=role.value,
            )
        await db.flush()
        return Outcome.success(member_projection(membership, user))

    async def remove_member(self, tenant_id: str, user_id: str) -> Outcome[dict[str, Any]]:
        """Deactivate a membership. Owners cannot be removed."""
        async with self._session_factory() as db:
            row = await db.execute(
                select(Membership).where(
                    Membership.user_id == user_id,
                    Membership.tenant_id == tenant_id,
                    Membership.is_active.is_(True),
                )
            )
            membership = row.scalar_one_or_none()
            if membership is None:
                return Outcome.not_found("Member not found")
            if Role.parse(membership.role) is Role.OWNER:
                return Outcome.forbidden("The organization owner cannot be removed")

            membership.is_active = False
            await db.commit()

        logger.info("member_removed", tenant_id=tenant_id, user_id=user_id)
        return Outcome.success(member_projection(membership))

    async def members_not_in_slack(self, tenant_id: str) -> list[dict[str, Any]]:
        """Active members whose email has no matching Slack profile."""
        async with self._session_factory() as db:
            members = await db.execute(
                select(Membership, User)
                .join(User, User.id == Membership.user_id)
                .where(Membership.tenant_id == tenant_id, Membership.is_active.is_(True))
                .order_by(Membership.joined_at.asc())
            )
            slack_emails = await db.execute(
                select(SlackUser.email).where(
                    SlackUser.tenant_id == tenant_id,
                    SlackUser.email.is_not(None),
                )
            )
            known = {e.lower() for e in slack_emails.scalars().all() if e}

        return [
            {
                "userId": m.user_id,
                "email": u.email,
                "firstName": u.first_name,
                "lastName": u.last_name,
                "role": m.role,
            }
            for m, u in members.all()
            if u.email and u.email.lower() not in known
        ]

    # ═══════════════════════════════════════════════════════════════════════
    # INVITATIONS
    # ═══════════════════════════════════════════════════════════════════════

    async def create_invitation(
        self,
        email: str,
        tenant_id: str,
        inviter_id: str | None,
        role: str | Role = Role.MEMBER,
        permissions: Iterable[str] | None = None,
        message: str | None = None,
        ttl_days: int | None = None,
    ) -> Outcome[dict[str, Any]]:
        """Create a PENDING invitation.

        Returns:
            Outcome with the invitation projection (including its token).
            VALIDATION for an unknown role, bad email or non-positive TTL;
            CONFLICT if the email is already an active member or already
            has a live pending invitation.
        """
        email = (email or "").strip().lower()
        try:
            validate_email(email, check_deliverability=False)
        except EmailNotValidError as e:
            return Outcome.invalid(f"Invalid email: {e}")
        ttl_days = settings.invitation_ttl_days if ttl_days is None else ttl_days
        if ttl_days <= 0:
            return Outcome.invalid("Invitation TTL must be positive")
        try:
            parsed_role = Role.parse(role)
            proposed = _resolve_permissions(parsed_role, permissions)
        except ValueError as e:
            return Outcome.invalid(str(e))

        now = utcnow()
        async with self._session_factory() as db:
            member = await db.execute(
                select(Membership.id)
                .join(User, User.id == Membership.user_id)
                .where(
                    User.email == email,
                    Membership.tenant_id == tenant_id,
                    Membership.is_active.is_(True),
                )
            )
            if member.scalar_one_or_none() is not None:
                return Outcome.conflict("User is already a member of this organization")

            pending = await db.execute(
                select(Invitation).where(
                    Invitation.tenant_id == tenant_id,
                    Invitation.email == email,
                    Invitation.status == InvitationStatus.PENDING.value,
                )
            )
            for stale in pending.scalars().all():
                if not stale.is_expired(now):
                    return Outcome.conflict("Pending invitation already exists for this email")
                stale.status = InvitationStatus.EXPIRED.value
                logger.info(
                    "invitation_expired",
                    tenant_id=tenant_id,
                    invitation_id=stale.id,
                )
            await db.flush()

            invitation = Invitation(
                tenant_id=tenant_id,
                email=email,
                token=await self._unused_token(db),
                role=parsed_role.value,
                permissions=proposed,
                message=message,
                invited_by_user_id=inviter_id,
                status=InvitationStatus.PENDING.value,
                expires_at=now + timedelta(days=ttl_days),
                created_at=now,
            )
            db.add(invitation)
            try:
                await db.commit()
            except IntegrityError:
                # Race condition: a concurrent create won the pending slot
                await db.rollback()
                return Outcome.conflict("Pending invitation already exists for this email")

        logger.info(
            "invitation_created",
            tenant_id=tenant_id,
            invitation_id=invitation.id,
            role=parsed_role.value,
            ttl_days=ttl_days,
        )
        return Outcome.success(invitation_projection(invitation, include_token=True))

    @staticmethod
    async def _unused_token(db: AsyncSession) -> str:
        while True:
            token = secrets.token_hex(_TOKEN_BYTES)
            taken = await db.execute(select(Invitation.id).where(Invitation.token == token))
            if taken.scalar_one_or_none() is None:
                return token

    async def list_invitations(self, tenant_id: str) -> list[dict[str, Any]]:
        """All invitations of a tenant, newest first, with effective status."""
        async with self._session_factory() as db:
            rows = await db.execute(
                select(Invitation, User)
                .outerjoin(User, User.id == Invitation.invited_by_user_id)
                .where(Invitation.tenant_id == tenant_id)
                .order_by(Invitation.created_at.desc())
            )
            return [invitation_projection(inv, inviter) for inv, inviter in rows.all()]

    async def accept_invitation(self, token: str, user_id: str) -> Outcome[dict[str, Any]]:
        """Redeem an invitation token for the given user."""
        now = utcnow()
        async with self._session_factory() as db:
            row = await db.execute(select(Invitation).where(Invitation.token == token))
            invitation = row.scalar_one_or_none()
            if invitation is None:
                return Outcome.not_found("Invitation not found")

            if invitation.status != InvitationStatus.PENDING.value:
                return Outcome.conflict(f"Invitation is {invitation.status}")

            if invitation.is_expired(now):
                invitation.status = InvitationStatus.EXPIRED.value
                await db.commit()
                logger.info(
                    "invitation_expired",
                    tenant_id=invitation.tenant_id,
                    invitation_id=invitation.id,
                )
                return Outcome.conflict("Invitation has expired")

            user = await db.get(User, user_id)
            if user is None:
                return Outcome.not_found("User not found")
            if user.email.lower() != invitation.email.lower():
                return Outcome.forbidden("Invitation was issued to a different email")

            granted = await self._grant_membership(
                db,
                user,
                invitation.tenant_id,
                Role.parse(invitation.role),
                list(invitation.permissions or []),
            )
            if not granted.ok:
                return granted

            invitation.status = InvitationStatus.ACCEPTED.value
            invitation.accepted_at = now
            invitation.accepted_by_user_id = user.id
            await db.commit()

        logger.info(
            "invitation_accepted",
            tenant_id=invitation.tenant_id,
            invitation_id=invitation.id,
            user_id=user_id,
        )
        return Outcome.success(
            {
                "invitation": invitation_projection(invitation),
                "member": granted.value,
            }
        )

    async def revoke_invitation(
        self, tenant_id: str, invitation_id: str
    ) -> Outcome[dict[str, Any]]:
        """Move a PENDING invitation to REVOKED."""
        async with self._session_factory() as db:
            row = await db.execute(
                select(Invitation).where(
                    Invitation.id == invitation_id,
                    Invitation.tenant_id == tenant_id,
                )
            )
            invitation = row.scalar_one_or_none()
            if invitation is None:
                return Outcome.not_found("Invitation not found")
            if invitation.status != InvitationStatus.PENDING.value:
                return Outcome.conflict(f"Invitation is {invitation.status}")
            if invitation.is_expired():
                invitation.status = InvitationStatus.EXPIRED.value
                await db.commit()
                return Outcome.conflict("Invitation has expired")

            invitation.status = InvitationStatus.REVOKED.value
            await db.commit()

        logger.info("invitation_revoked", tenant_id=tenant_id, invitation_id=invitation_id)
        return Outcome.success(invitation_projection(invitation))


_service: OrganizationService | None = None


def get_organization_service() -> OrganizationService:
    """Get or create the singleton OrganizationService."""
    global _service
    if _service is None:
        _service = OrganizationService()
    return _service
