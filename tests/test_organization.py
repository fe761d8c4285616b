"""Organization service: members and the invitation lifecycle."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select, update

from allay.auth.permissions import Role
from allay.core.outcome import ErrorKind
from allay.db.models import Invitation, InvitationStatus, Membership, utcnow
from allay.organization.service import OrganizationService

from factories import add_membership, add_slack_user, create_tenant, create_user


@pytest.fixture
def org(session_factory) -> OrganizationService:
    return OrganizationService(session_factory)


@pytest.fixture
async def seeded(session_factory):
    owner = await create_user(session_factory, "owner@example.com")
    tenant = await create_tenant(session_factory, "org1")
    await add_membership(session_factory, owner, tenant, role="owner")
    return owner, tenant


async def backdate_expiry(session_factory, invitation_id: str) -> None:
    async with session_factory() as db:
        await db.execute(
            update(Invitation)
            .where(Invitation.id == invitation_id)
            .values(expires_at=utcnow() - timedelta(minutes=1))
        )
        await db.commit()


# ═══════════════════════════════════════════════════════════════════════════════
# INVITATIONS
# ═══════════════════════════════════════════════════════════════════════════════


class TestCreateInvitation:
    async def test_creates_pending_with_defaults(self, org, seeded):
        owner, tenant = seeded
        outcome = await org.create_invitation("New@Example.com ", tenant.id, owner.id)

        assert outcome.ok
        inv = outcome.value
        assert inv["email"] == "new@example.com"
        assert inv["status"] == "pending"
        assert inv["proposedRole"] == "member"
        assert inv["proposedPermissions"] == ["send_messages", "view_analytics"]
        assert len(inv["token"]) == 64

    async def test_explicit_permissions_are_kept(self, org, seeded):
        owner, tenant = seeded
        outcome = await org.create_invitation(
            "a@example.com", tenant.id, owner.id, "member", ["manage_slack"]
        )
        assert outcome.value["proposedPermissions"] == ["manage_slack"]

    async def test_second_pending_for_same_email_conflicts(self, org, seeded):
        owner, tenant = seeded
        first = await org.create_invitation("a@example.com", tenant.id, owner.id)
        second = await org.create_invitation("a@example.com", tenant.id, owner.id)

        assert first.ok
        assert second.error.kind is ErrorKind.CONFLICT
        listed = await org.list_invitations(tenant.id)
        assert len([i for i in listed if i["status"] == "pending"]) == 1

    async def test_same_email_other_tenant_is_independent(self, org, seeded, session_factory):
        owner, tenant = seeded
        other = await create_tenant(session_factory, "org2")
        assert (await org.create_invitation("a@example.com", tenant.id, owner.id)).ok
        assert (await org.create_invitation("a@example.com", other.id, owner.id)).ok

    async def test_expired_pending_is_replaced(self, org, seeded, session_factory):
        owner, tenant = seeded
        first = await org.create_invitation("a@example.com", tenant.id, owner.id)
        await backdate_expiry(session_factory, first.value["id"])

        second = await org.create_invitation("a@example.com", tenant.id, owner.id)

        assert second.ok
        async with session_factory() as db:
            old = await db.get(Invitation, first.value["id"])
            assert old.status == InvitationStatus.EXPIRED.value

    async def test_unknown_role_is_validation(self, org, seeded):
        owner, tenant = seeded
        outcome = await org.create_invitation("a@example.com", tenant.id, owner.id, "superuser")
        assert outcome.error.kind is ErrorKind.VALIDATION
        assert await org.list_invitations(tenant.id) == []

    @pytest.mark.parametrize(
        "email", ["not-an-email", "a..b@example.com", "ada@-example.com", "ada@example"]
    )
    async def test_bad_email_is_validation(self, org, seeded, email):
        owner, tenant = seeded
        outcome = await org.create_invitation(email, tenant.id, owner.id)
        assert outcome.error.kind is ErrorKind.VALIDATION
        assert await org.list_invitations(tenant.id) == []

    async def test_non_positive_ttl_is_validation(self, org, seeded):
        owner, tenant = seeded
        outcome = await org.create_invitation("a@example.com", tenant.id, owner.id, ttl_days=0)
        assert outcome.error.kind is ErrorKind.VALIDATION

    async def test_existing_member_conflicts(self, org, seeded):
        owner, tenant = seeded
        outcome = await org.create_invitation("owner@example.com", tenant.id, owner.id)
        assert outcome.error.kind is ErrorKind.CONFLICT


class TestListInvitations:
    async def test_newest_first_with_inviter_name(self, org, seeded, session_factory):
        owner, tenant = seeded
        await org.create_invitation("a@example.com", tenant.id, owner.id)
        second = await org.create_invitation("b@example.com", tenant.id, owner.id)
        # Guarantee ordering without relying on clock resolution
        async with session_factory() as db:
            await db.execute(
                update(Invitation)
                .where(Invitation.id == second.value["id"])
                .values(created_at=utcnow() + timedelta(seconds=5))
            )
            await db.commit()

        listed = await org.list_invitations(tenant.id)

        assert [i["email"] for i in listed] == ["b@example.com", "a@example.com"]
        assert listed[0]["invitedByName"] == "Ada Lovelace"
        assert "token" not in listed[0]

    async def test_past_expiry_reads_as_expired(self, org, seeded, session_factory):
        owner, tenant = seeded
        created = await org.create_invitation("a@example.com", tenant.id, owner.id)
        await backdate_expiry(session_factory, created.value["id"])

        listed = await org.list_invitations(tenant.id)

        assert listed[0]["status"] == "expired"
        async with session_factory() as db:
            row = await db.get(Invitation, created.value["id"])
            assert row.status == "pending"


class TestAcceptInvitation:
    async def test_accept_creates_membership(self, org, seeded, session_factory):
        owner, tenant = seeded
        invitee = await create_user(session_factory, "new@example.com")
        created = await org.create_invitation(
            "new@example.com", tenant.id, owner.id, Role.ADMIN
        )

        outcome = await org.accept_invitation(created.value["token"], invitee.id)

        assert outcome.ok
        assert outcome.value["invitation"]["status"] == "accepted"
        assert outcome.value["member"]["role"] == "admin"
        membership = await org.get_membership(invitee.id, tenant.id)
        assert membership is not None

    async def test_accept_twice_conflicts(self, org, seeded, session_factory):
        owner, tenant = seeded
        invitee = await create_user(session_factory, "new@example.com")
        created = await org.create_invitation("new@example.com", tenant.id, owner.id)
        await org.accept_invitation(created.value["token"], invitee.id)

        again = await org.accept_invitation(created.value["token"], invitee.id)
        assert again.error.kind is ErrorKind.CONFLICT

    async def test_expired_accept_marks_expired(self, org, seeded, session_factory):
        owner, tenant = seeded
        invitee = await create_user(session_factory, "new@example.com")
        created = await org.create_invitation("new@example.com", tenant.id, owner.id)
        await backdate_expiry(session_factory, created.value["id"])

        outcome = await org.accept_invitation(created.value["token"], invitee.id)

        assert outcome.error.kind is ErrorKind.CONFLICT
        async with session_factory() as db:
            row = await db.get(Invitation, created.value["id"])
            assert row.status == "expired"
        assert await org.get_membership(invitee.id, tenant.id) is None

    async def test_email_mismatch_is_forbidden(self, org, seeded, session_factory):
        owner, tenant = seeded
        stranger = await create_user(session_factory, "stranger@example.com")
        created = await org.create_invitation("new@example.com", tenant.id, owner.id)

        outcome = await org.accept_invitation(created.value["token"], stranger.id)
        assert outcome.error.kind is ErrorKind.FORBIDDEN

    async def test_unknown_token(self, org, seeded):
        owner, _ = seeded
        outcome = await org.accept_invitation("nope", owner.id)
        assert outcome.error.kind is ErrorKind.NOT_FOUND


class TestRevokeInvitation:
    async def test_revoke_pending(self, org, seeded):
        owner, tenant = seeded
        created = await org.create_invitation("a@example.com", tenant.id, owner.id)

        outcome = await org.revoke_invitation(tenant.id, created.value["id"])

        assert outcome.value["status"] == "revoked"
        # Slot is free again
        assert (await org.create_invitation("a@example.com", tenant.id, owner.id)).ok

    async def test_revoke_is_tenant_scoped(self, org, seeded, session_factory):
        owner, tenant = seeded
        other = await create_tenant(session_factory, "org2")
        created = await org.create_invitation("a@example.com", tenant.id, owner.id)

        outcome = await org.revoke_invitation(other.id, created.value["id"])
        assert outcome.error.kind is ErrorKind.NOT_FOUND

    async def test_revoke_terminal_conflicts(self, org, seeded):
        owner, tenant = seeded
        created = await org.create_invitation("a@example.com", tenant.id, owner.id)
        await org.revoke_invitation(tenant.id, created.value["id"])

        again = await org.revoke_invitation(tenant.id, created.value["id"])
        assert again.error.kind is ErrorKind.CONFLICT


# ═══════════════════════════════════════════════════════════════════════════════
# MEMBERS
# ═══════════════════════════════════════════════════════════════════════════════


class TestMembers:
    async def test_add_and_list(self, org, seeded, session_factory):
        owner, tenant = seeded
        user = await create_user(session_factory, "m@example.com", first_name="Grace")

        added = await org.add_member(user.id, tenant.id)

        assert added.value["permissions"] == ["send_messages", "view_analytics"]
        members = await org.list_members(tenant.id)
        assert {m["email"] for m in members} == {"owner@example.com", "m@example.com"}

    async def test_add_existing_conflicts(self, org, seeded):
        owner, tenant = seeded
        outcome = await org.add_member(owner.id, tenant.id)
        assert outcome.error.kind is ErrorKind.CONFLICT

    async def test_remove_then_readd_reactivates(self, org, seeded, session_factory):
        owner, tenant = seeded
        user = await create_user(session_factory, "m@example.com")
        await org.add_member(user.id, tenant.id)

        removed = await org.remove_member(tenant.id, user.id)
        assert removed.ok
        assert await org.get_membership(user.id, tenant.id) is None

        readded = await org.add_member(user.id, tenant.id, Role.ADMIN)
        assert readded.value["role"] == "admin"
        async with session_factory() as db:
            rows = await db.execute(
                select(Membership).where(Membership.user_id == user.id)
            )
            assert len(rows.scalars().all()) == 1

    async def test_owner_cannot_be_removed(self, org, seeded):
        owner, tenant = seeded
        outcome = await org.remove_member(tenant.id, owner.id)
        assert outcome.error.kind is ErrorKind.FORBIDDEN

    async def test_member_permissions(self, org, seeded, session_factory):
        owner, tenant = seeded
        role, permissions = await org.get_member_permissions(owner.id, tenant.id)
        assert role is Role.OWNER
        assert permissions == []

        stranger = await create_user(session_factory, "s@example.com")
        assert await org.get_member_permissions(stranger.id, tenant.id) == (None, [])

    async def test_members_not_in_slack(self, org, seeded, session_factory):
        owner, tenant = seeded
        user = await create_user(session_factory, "m@example.com")
        await org.add_member(user.id, tenant.id)
        await add_slack_user(session_factory, tenant, "U1", email="OWNER@example.com")

        missing = await org.members_not_in_slack(tenant.id)
        assert [m["email"] for m in missing] == ["m@example.com"]
