"""Tenant creation and lookup."""

from __future__ import annotations

import re
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from allay.auth.permissions import Role
from allay.core.outcome import Outcome
from allay.db.models import Membership, Tenant, User, as_utc, utcnow

logger = structlog.get_logger()

_SLUG_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,98}[a-z0-9])?$")

# Keys of Tenant.slack_config that are safe to return to the dashboard
_PUBLIC_SLACK_KEYS = ("team_id", "team_name", "bot_user_id", "installed_by", "connected_at")


def public_slack_config(config: dict[str, Any] | None) -> dict[str, Any] | None:
    if not config:
        return None
    return {k: config.get(k) for k in _PUBLIC_SLACK_KEYS if k in config}


def tenant_projection(tenant: Tenant) -> dict[str, Any]:
    return {
        "id": tenant.id,
        "name": tenant.name,
        "slug": tenant.slug,
        "isActive": tenant.is_active,
        "slackConfig": public_slack_config(tenant.slack_config),
        "isSlackConfigured": tenant.slack_connected,
        "createdAt": as_utc(tenant.created_at).isoformat(),
        "updatedAt": as_utc(tenant.updated_at).isoformat(),
    }


class TenantService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        if session_factory is None:
            from allay.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self._session_factory = session_factory

    async def create_tenant(self, user_id: str, name: str, slug: str) -> Outcome[dict[str, Any]]:
        """Create a tenant and make ``user_id`` its OWNER.

        The owner membership carries an empty permission list: the role
        alone grants everything.
        """
        name = (name or "").strip()
        slug = (slug or "").strip().lower()
        if not name:
            return Outcome.invalid("Tenant name is required")
        if not _SLUG_RE.match(slug):
            return Outcome.invalid("Slug must be lowercase letters, digits and dashes")

        async with self._session_factory() as db:
            user = await db.get(User, user_id)
            if user is None:
                return Outcome.not_found("User not found")

            taken = await db.execute(select(Tenant.id).where(Tenant.slug == slug))
            if taken.scalar_one_or_none() is not None:
                return Outcome.conflict("Tenant with this slug already exists")

            now = utcnow()
            tenant = Tenant(name=name, slug=slug, created_at=now, updated_at=now)
            db.add(tenant)
            await db.flush()
            db.add(
                Membership(
                    user_id=user_id,
                    tenant_id=tenant.id,
                    role=Role.OWNER.value,
                    permissions=[],
                    joined_at=now,
                    last_active_at=now,
                )
            )
            try:
                await db.commit()
            except IntegrityError:
                # Race condition: slug claimed concurrently
                await db.rollback()
                return Outcome.conflict("Tenant with this slug already exists")

        logger.info("tenant_created", tenant_id=tenant.id, slug=slug, owner_id=user_id)
        return Outcome.success(tenant_projection(tenant))

    async def get_tenant_info(self, tenant_id: str, user_id: str) -> Outcome[dict[str, Any]]:
        async with self._session_factory() as db:
            membership = await db.execute(
                select(Membership.id).where(
                    Membership.tenant_id == tenant_id,
                    Membership.user_id == user_id,
                    Membership.is_active.is_(True),
                )
            )
            if membership.scalar_one_or_none() is None:
                return Outcome.forbidden("Access denied to this tenant")

            tenant = await db.get(Tenant, tenant_id)
            if tenant is None:
                return Outcome.not_found("Tenant not found")
            return Outcome.success(tenant_projection(tenant))

    async def list_user_tenants(self, user_id: str) -> list[dict[str, Any]]:
        async with self._session_factory() as db:
            rows = await db.execute(
                select(Membership, Tenant)
                .join(Tenant, Tenant.id == Membership.tenant_id)
                .where(Membership.user_id == user_id, Membership.is_active.is_(True))
                .order_by(Membership.joined_at.asc())
            )
            return [
                {
                    "id": tenant.id,
                    "name": tenant.name,
                    "slug": tenant.slug,
                    "role": membership.role,
                    "joinedAt": as_utc(membership.joined_at).isoformat(),
                    "isSlackConfigured": tenant.slack_connected,
                }
                for membership, tenant in rows.all()
            ]


_service: TenantService | None = None


def get_tenant_service() -> TenantService:
    """Get or create the singleton TenantService."""
    global _service
    if _service is None:
        _service = TenantService()
    return _service
