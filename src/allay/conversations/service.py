"""Conversation aggregator: the write path behind every live update.

Flow:
    Slack event / dashboard reply
        → persist (conversation row, parent's thread_replies list)
        → commit
        → TenantEventBus.broadcast (best effort)

Thread replies are dual-written. Each reply is its own Conversation row
keyed by its Slack ts (upserted, so the latest content wins) and an entry in
the parent's ``thread_replies`` list (appended only if no entry has the same
``messageTs``). Appends to one parent are serialized by a per-parent lock
plus a row lock on databases that support it.

Broadcast happens after the commit and never fails the write: a dead or
slow dashboard cannot block or roll back persistence.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from allay.config import settings
from allay.core.outcome import Outcome
from allay.db.models import Conversation, SlackUser, utcnow
from allay.observability.metrics import get_metrics
from allay.realtime.bus import TenantEventBus, get_event_bus
from allay.realtime.events import (
    MessageUpdated,
    NewMessage,
    NewThreadReply,
    ReactionUpdate,
    UpdatePayload,
)

logger = structlog.get_logger()

# Replies sent from the dashboard carry no Slack identity
PLACEHOLDER_USER_IDS = frozenset({"current_user"})
DASHBOARD_USER_ID = "bot_user"
DASHBOARD_USER_NAME = "Dashboard User"
UNKNOWN_USER_NAME = "Unknown User"

# Message subtypes that never become conversations
_IGNORED_SUBTYPES = frozenset({
    "bot_message",
    "message_deleted",
    "channel_join",
    "channel_leave",
    "channel_topic",
    "channel_purpose",
    "channel_name",
})

_PARENT_LOCK_TTL_S = 300.0


def parse_slack_ts(ts: str) -> datetime:
    """Convert a Slack message ts ("1712345678.000100") to an aware datetime.

    Raises:
        ValueError: if ``ts`` is not a non-negative decimal number.
    """
    value = float(ts)
    if value < 0 or value != value:
        raise ValueError(f"Invalid Slack timestamp: {ts!r}")
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError) as e:
        raise ValueError(f"Invalid Slack timestamp: {ts!r}") from e


def _source_time(ts: str) -> datetime:
    """Source timestamp for a message id; ids that are not Slack ts values use now."""
    try:
        return parse_slack_ts(ts)
    except (TypeError, ValueError):
        logger.debug("non_slack_message_ts", ts=ts)
        return utcnow()


class ConversationService:
    """Reads and writes mirrored Slack conversations for a tenant."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        bus: TenantEventBus | None = None,
    ) -> None:
        if session_factory is None:
            from allay.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self._session_factory = session_factory
        self._bus = bus if bus is not None else get_event_bus()

        self._parent_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._parent_lock_used: dict[tuple[str, str], float] = {}
        self._parent_lock_registry: asyncio.Lock | None = None

    # ═══════════════════════════════════════════════════════════════════════
    # READS
    # ═══════════════════════════════════════════════════════════════════════

    async def list_recent_with_users(
        self, tenant_id: str, limit: int | None = None
    ) -> list[dict[str, Any]]:
        """Newest conversations first, each with its Slack profile if known.

        Conversations whose author has no profile simply omit ``slackUser``.
        """
        limit = settings.conversation_list_default if limit is None else limit
        limit = max(1, min(limit, settings.conversation_list_max))

        async with self._session_factory() as db:
            rows = await db.execute(
                select(Conversation)
                .where(Conversation.tenant_id == tenant_id)
                .order_by(Conversation.source_timestamp.desc())
                .limit(limit)
            )
            conversations = list(rows.scalars().all())

            user_ids = {c.user_id for c in conversations if c.user_id}
            profiles: dict[str, SlackUser] = {}
            if user_ids:
                found = await db.execute(
                    select(SlackUser).where(
                        SlackUser.tenant_id == tenant_id,
                        SlackUser.slack_user_id.in_(user_ids),
                    )
                )
                profiles = {p.slack_user_id: p for p in found.scalars().all()}

        result = []
        for conversation in conversations:
            item = conversation.to_projection()
            profile = profiles.get(conversation.user_id or "")
            if profile is not None:
                item["slackUser"] = profile.to_profile()
            result.append(item)
        return result

    async def get_conversation(self, tenant_id: str, conversation_id: str) -> Conversation | None:
        async with self._session_factory() as db:
            return await db.get(Conversation, (tenant_id, conversation_id))

    # ═══════════════════════════════════════════════════════════════════════
    # THREAD REPLIES
    # ═══════════════════════════════════════════════════════════════════════

    async def create_thread_reply(
        self,
        tenant_id: str,
        parent_id: str,
        text: str,
        source_ts: str,
        user_id: str | None = None,
        channel_id: str | None = None,
    ) -> Outcome[dict[str, Any]]:
        """Record a thread reply and notify the tenant's dashboards.

        Returns:
            Outcome whose value is ``{id, content, userName, timestamp,
            threadTs}``. NOT_FOUND if the parent does not exist (nothing is
            written), VALIDATION for an empty ``source_ts``.
        """
        if not source_ts:
            return Outcome.invalid("Message timestamp is required")
        source_time = _source_time(source_ts)
        if source_ts == parent_id:
            return Outcome.invalid("A reply cannot be its own parent")

        author_id, author_name = await self._resolve_author(tenant_id, user_id)

        lock = await self._get_parent_lock(tenant_id, parent_id)
        async with lock:
            async with self._session_factory() as db:
                row = await db.execute(
                    select(Conversation)
                    .where(
                        Conversation.tenant_id == tenant_id,
                        Conversation.id == parent_id,
                    )
                    .with_for_update()
                )
                parent = row.scalar_one_or_none()
                if parent is None:
                    logger.info(
                        "thread_reply_parent_missing",
                        tenant_id=tenant_id,
                        parent_id=parent_id,
                    )
                    return Outcome.not_found("Parent conversation not found")

                now = utcnow()
                reply_channel = channel_id or parent.channel_id
                reply = await self._upsert_row(
                    db,
                    tenant_id=tenant_id,
                    ts=source_ts,
                    content=text,
                    user_id=author_id,
                    user_name=author_name,
                    channel_id=reply_channel,
                    channel_name=parent.channel_name,
                    thread_ts=parent.id,
                    source_time=source_time,
                    now=now,
                )

                replies = list(parent.thread_replies or [])
                appended = not any(r.get("messageTs") == source_ts for r in replies)
                if appended:
                    replies.append({
                        "id": source_ts,
                        "messageText": text,
                        "messageTs": source_ts,
                        "userId": author_id,
                        "channelId": reply_channel,
                        "postedAt": now.isoformat(),
                    })
                    parent.thread_replies = replies
                    parent.updated_at = now

                await db.commit()

        logger.info(
            "thread_reply_stored",
            tenant_id=tenant_id,
            parent_id=parent_id,
            reply_ts=source_ts,
            appended=appended,
        )

        timestamp = source_time.isoformat()
        await self._publish(
            tenant_id,
            NewThreadReply(
                conversation_id=reply.id,
                parent_conversation_id=parent_id,
                content=text,
                user_name=author_name,
                timestamp=timestamp,
            ),
        )
        return Outcome.success({
            "id": reply.id,
            "content": reply.content,
            "userName": reply.user_name,
            "timestamp": timestamp,
            "threadTs": reply.thread_ts,
        })

    async def _resolve_author(self, tenant_id: str, user_id: str | None) -> tuple[str, str]:
        """Map a Slack user id to (stored user id, display name).

        Never fails: lookup errors degrade to "Unknown User".
        """
        if not user_id or user_id in PLACEHOLDER_USER_IDS:
            return DASHBOARD_USER_ID, DASHBOARD_USER_NAME
        try:
            async with self._session_factory() as db:
                row = await db.execute(
                    select(SlackUser).where(
                        SlackUser.tenant_id == tenant_id,
                        SlackUser.slack_user_id == user_id,
                    )
                )
                profile = row.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.warning(
                "author_lookup_failed",
                tenant_id=tenant_id,
                user_id=user_id,
                error=str(e),
            )
            return user_id, UNKNOWN_USER_NAME
        if profile is None:
            return user_id, UNKNOWN_USER_NAME
        return user_id, profile.resolved_name or UNKNOWN_USER_NAME

    async def _get_parent_lock(self, tenant_id: str, parent_id: str) -> asyncio.Lock:
        """Get or create the lock serializing appends to one parent.

        Locks idle (unheld and not requested) for longer than the TTL are
        dropped; every request refreshes the lock's last-use time.
        """
        if self._parent_lock_registry is None:
            self._parent_lock_registry = asyncio.Lock()
        key = (tenant_id, parent_id)
        async with self._parent_lock_registry:
            now = time.monotonic()
            stale = [
                k for k, lock in self._parent_locks.items()
                if not lock.locked()
                and now - self._parent_lock_used.get(k, now) > _PARENT_LOCK_TTL_S
            ]
            for k in stale:
                del self._parent_locks[k]
                self._parent_lock_used.pop(k, None)

            lock = self._parent_locks.get(key)
            if lock is None:
                lock = self._parent_locks[key] = asyncio.Lock()
            self._parent_lock_used[key] = now
            return lock

    @staticmethod
    async def _upsert_row(
        db: AsyncSession,
        *,
        tenant_id: str,
        ts: str,
        content: str,
        user_id: str | None,
        user_name: str | None,
        channel_id: str | None,
        channel_name: str | None,
        thread_ts: str | None,
        source_time: datetime,
        now: datetime,
    ) -> Conversation:
        row = await db.get(Conversation, (tenant_id, ts))
        if row is None:
            row = Conversation(
                tenant_id=tenant_id,
                id=ts,
                reactions=[],
                thread_replies=[],
                created_at=now,
            )
            db.add(row)
        row.content = content
        row.user_id = user_id
        row.user_name = user_name
        row.channel_id = channel_id
        row.channel_name = channel_name if channel_name is not None else row.channel_name
        row.thread_ts = thread_ts
        row.source_timestamp = source_time
        row.updated_at = now
        return row

    # ═══════════════════════════════════════════════════════════════════════
    # SLACK INGESTION
    # ═══════════════════════════════════════════════════════════════════════

    async def ingest_message(
        self, tenant_id: str, event: dict[str, Any]
    ) -> Outcome[dict[str, Any]] | None:
        """Mirror a Slack ``message`` event.

        Returns None for events that are deliberately ignored (bot echoes,
        joins, deletions).
        """
        subtype = event.get("subtype")
        if subtype == "message_changed":
            return await self._apply_edit(tenant_id, event)
        if subtype in _IGNORED_SUBTYPES or event.get("bot_id"):
            return None

        ts = event.get("ts")
        if not ts:
            return Outcome.invalid("Message event without ts")
        text = event.get("text") or ""
        thread_ts = event.get("thread_ts")

        if thread_ts and thread_ts != ts:
            return await self.create_thread_reply(
                tenant_id,
                thread_ts,
                text,
                ts,
                user_id=event.get("user"),
                channel_id=event.get("channel"),
            )

        source_time = _source_time(ts)

        author_id, author_name = await self._resolve_author(tenant_id, event.get("user"))
        async with self._session_factory() as db:
            created = await db.get(Conversation, (tenant_id, ts)) is None
            row = await self._upsert_row(
                db,
                tenant_id=tenant_id,
                ts=ts,
                content=text,
                user_id=author_id,
                user_name=author_name,
                channel_id=event.get("channel"),
                channel_name=event.get("channel_name"),
                thread_ts=None,
                source_time=source_time,
                now=utcnow(),
            )
            await db.commit()

        logger.info("message_ingested", tenant_id=tenant_id, ts=ts, created=created)
        if created:
            await self._publish(
                tenant_id,
                NewMessage(
                    conversation_id=ts,
                    channel_id=row.channel_id,
                    content=text,
                    user_name=author_name,
                    timestamp=source_time.isoformat(),
                ),
            )
        return Outcome.success(row.to_projection())

    async def _apply_edit(self, tenant_id: str, event: dict[str, Any]) -> Outcome[dict[str, Any]]:
        message = event.get("message") or {}
        ts = message.get("ts")
        text = message.get("text") or ""
        if not ts:
            return Outcome.invalid("Edit event without message ts")

        async with self._session_factory() as db:
            row = await db.get(Conversation, (tenant_id, ts))
            if row is None:
                return Outcome.not_found("Conversation not found")
            now = utcnow()
            row.content = text
            row.updated_at = now

            if row.thread_ts:
                parent = await db.get(Conversation, (tenant_id, row.thread_ts))
                if parent is not None:
                    replies = [dict(r) for r in parent.thread_replies or []]
                    for reply in replies:
                        if reply.get("messageTs") == ts:
                            reply["messageText"] = text
                    parent.thread_replies = replies
                    parent.updated_at = now
            await db.commit()

        logger.info("message_edited", tenant_id=tenant_id, ts=ts)
        await self._publish(tenant_id, MessageUpdated(conversation_id=ts, content=text))
        return Outcome.success(row.to_projection())

    async def apply_reaction(
        self,
        tenant_id: str,
        message_ts: str,
        name: str,
        slack_user_id: str,
        added: bool,
    ) -> Outcome[dict[str, Any]]:
        """Add or remove one user's reaction; ``count`` always equals ``len(users)``."""
        async with self._session_factory() as db:
            row = await db.get(Conversation, (tenant_id, message_ts))
            if row is None:
                return Outcome.not_found("Conversation not found")

            reactions = [
                {**r, "users": list(r.get("users") or [])}
                for r in row.reactions or []
            ]
            entry = next((r for r in reactions if r.get("name") == name), None)
            if added:
                if entry is None:
                    entry = {"name": name, "count": 0, "users": []}
                    reactions.append(entry)
                if slack_user_id not in entry["users"]:
                    entry["users"].append(slack_user_id)
                entry["count"] = len(entry["users"])
            elif entry is not None:
                if slack_user_id in entry["users"]:
                    entry["users"].remove(slack_user_id)
                entry["count"] = len(entry["users"])
                if entry["count"] == 0:
                    reactions.remove(entry)

            row.reactions = reactions
            row.updated_at = utcnow()
            await db.commit()

        await self._publish(
            tenant_id,
            ReactionUpdate(conversation_id=message_ts, reactions=tuple(reactions)),
        )
        return Outcome.success({"conversationId": message_ts, "reactions": reactions})

    # ═══════════════════════════════════════════════════════════════════════
    # BROADCAST
    # ═══════════════════════════════════════════════════════════════════════

    async def _publish(self, tenant_id: str, payload: UpdatePayload) -> None:
        """Best-effort fan-out; the write has already committed."""
        await get_metrics().conversation_updated(payload.type.value)
        try:
            self._bus.broadcast(tenant_id, payload)
        except Exception as e:
            logger.warning(
                "conversation_broadcast_failed",
                tenant_id=tenant_id,
                update_type=payload.type.value,
                error=str(e),
            )


_service: ConversationService | None = None


def get_conversation_service() -> ConversationService:
    """Get or create the singleton ConversationService."""
    global _service
    if _service is None:
        _service = ConversationService()
    return _service
