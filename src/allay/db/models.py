"""Allay database models: multi-tenant schema.

Design principles:
- Every domain table is partitioned by tenant_id
- JSON columns (JSONB on PostgreSQL) for reactions, thread replies and
  integration config that evolve without migrations
- Conversations are keyed by (tenant_id, Slack message ts) so the source
  timestamp doubles as the natural dedup key
- Membership and invitation rows are never hard-deleted; they move through
  is_active / status instead
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB as _JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from drivers without tz support."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id() -> str:
    return str(uuid.uuid4())


class JSONB(TypeDecorator):
    """JSON column stored as JSONB on PostgreSQL and plain JSON elsewhere.

    Handles UUID, datetime and Enum values nested inside the document.
    """

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(_JSONB())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        return json.loads(json.dumps(value, default=self._json_default))

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        return value

    @staticmethod
    def _json_default(obj: Any) -> Any:
        if isinstance(obj, uuid.UUID):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class Base(DeclarativeBase):
    """Declarative base mapping JSON and datetime annotations to portable column types."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
        list[dict[str, Any]]: JSONB,
        list[str]: JSONB,
        datetime: DateTime(timezone=True),
    }


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class InvitationStatus(str, Enum):
    """Invitation lifecycle states. Everything except PENDING is terminal."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    REVOKED = "revoked"


# ═══════════════════════════════════════════════════════════════════════════════
# IDENTITY
# ═══════════════════════════════════════════════════════════════════════════════

class User(Base):
    """Dashboard account (email + password)."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, nullable=False
    )

    @property
    def display_name(self) -> str:
        full = " ".join(p for p in (self.first_name, self.last_name) if p)
        return full or self.email


class Session(Base):
    """Server-side record of an issued session token."""

    __tablename__ = "sessions"
    __table_args__ = (
        Index("ix_sessions_user_active", "user_id", "is_active"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


# ═══════════════════════════════════════════════════════════════════════════════
# CORE TENANT TABLES
# ═══════════════════════════════════════════════════════════════════════════════

class Tenant(Base):
    """Organization; the top-level isolation boundary."""

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    slack_team_id: Mapped[str | None] = mapped_column(
        String(32), unique=True, nullable=True,
        comment="Slack workspace/team ID (T1234567890)"
    )
    slack_config: Mapped[dict[str, Any] | None] = mapped_column(
        JSONB, nullable=True,
        comment="Bot token, team name, bot user id, connected_at"
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, nullable=False
    )

    @property
    def slack_connected(self) -> bool:
        return bool(self.slack_config and self.slack_config.get("bot_token"))


class Membership(Base):
    """Grants a user a role and a permission set within one tenant."""

    __tablename__ = "memberships"
    __table_args__ = (
        UniqueConstraint("user_id", "tenant_id", name="uix_membership_user_tenant"),
        Index("ix_memberships_tenant_active", "tenant_id", "is_active"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    tenant_id: Mapped[str] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[str] = mapped_column(
        String(20), default="member", nullable=False,
        comment="owner|admin|member"
    )
    permissions: Mapped[list[str]] = mapped_column(JSONB, default=list, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    joined_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    last_active_at: Mapped[datetime | None] = mapped_column(nullable=True)


class Invitation(Base):
    """Time-boxed, single-use offer of a role within a tenant."""

    __tablename__ = "invitations"
    __table_args__ = (
        Index("ix_invitations_tenant_email_status", "tenant_id", "email", "status"),
        Index("ix_invitations_tenant_created", "tenant_id", "created_at"),
        Index(
            "uix_invitations_one_pending",
            "tenant_id",
            "email",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    token: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    permissions: Mapped[list[str]] = mapped_column(JSONB, default=list, nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    invited_by_user_id: Mapped[str | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[str] = mapped_column(
        String(20), default=InvitationStatus.PENDING.value, nullable=False,
        comment="pending|accepted|expired|revoked"
    )
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    accepted_by_user_id: Mapped[str | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) > as_utc(self.expires_at)

    def effective_status(self, now: datetime | None = None) -> InvitationStatus:
        """Status as a reader should see it: pending past expiry reads as expired."""
        status = InvitationStatus(self.status)
        if status is InvitationStatus.PENDING and self.is_expired(now):
            return InvitationStatus.EXPIRED
        return status


# ═══════════════════════════════════════════════════════════════════════════════
# SLACK MIRROR
# ═══════════════════════════════════════════════════════════════════════════════

class SlackUser(Base):
    """Slack profile of a workspace member, plus an optional user token."""

    __tablename__ = "slack_users"
    __table_args__ = (
        UniqueConstraint("tenant_id", "slack_user_id", name="uix_slack_user_tenant"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    slack_user_id: Mapped[str] = mapped_column(
        String(32), nullable=False, comment="Slack user ID (U1234567890)"
    )
    real_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    profile_image: Mapped[str | None] = mapped_column(String(500), nullable=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_bot: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_owner: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)

    user_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    scopes: Mapped[list[str]] = mapped_column(JSONB, default=list, nullable=False)
    token_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_seen_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, nullable=False
    )

    @property
    def resolved_name(self) -> str | None:
        return self.real_name or self.display_name

    def to_profile(self) -> dict[str, Any]:
        return {
            "slackUserId": self.slack_user_id,
            "realName": self.real_name,
            "displayName": self.display_name,
            "email": self.email,
            "profileImage": self.profile_image,
            "title": self.title,
            "isBot": self.is_bot,
            "isAdmin": self.is_admin,
            "isOwner": self.is_owner,
            "timezone": self.timezone,
        }


class Conversation(Base):
    """A Slack message mirrored for the dashboard.

    Thread replies live twice: as their own row (thread_ts set) and as an
    entry in the parent's ``thread_replies`` list.
    """

    __tablename__ = "conversations"
    __table_args__ = (
        Index("ix_conversations_tenant_source_ts", "tenant_id", "source_timestamp"),
        Index("ix_conversations_tenant_thread", "tenant_id", "thread_ts"),
    )

    tenant_id: Mapped[str] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), primary_key=True
    )
    id: Mapped[str] = mapped_column(
        String(32), primary_key=True, comment="Slack message ts"
    )
    channel_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    channel_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content: Mapped[str] = mapped_column(Text, default="", nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    user_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reactions: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB, default=list, nullable=False,
        comment="[{name, count, users}]"
    )
    thread_replies: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB, default=list, nullable=False,
        comment="[{id, messageText, messageTs, userId, channelId, postedAt}]"
    )
    thread_ts: Mapped[str | None] = mapped_column(String(32), nullable=True)
    source_timestamp: Mapped[datetime] = mapped_column(nullable=False)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, nullable=False
    )

    def to_projection(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "channelId": self.channel_id,
            "channelName": self.channel_name,
            "content": self.content,
            "userId": self.user_id,
            "userName": self.user_name,
            "reactions": list(self.reactions or []),
            "threadReplies": list(self.thread_replies or []),
            "threadTs": self.thread_ts,
            "slackTimestamp": as_utc(self.source_timestamp).isoformat(),
            "createdAt": as_utc(self.created_at).isoformat() if self.created_at else None,
            "updatedAt": as_utc(self.updated_at).isoformat() if self.updated_at else None,
        }
