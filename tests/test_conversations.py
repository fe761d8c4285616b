"""Conversation aggregation: thread replies, Slack ingestion, reactions."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from allay.conversations.service import (
    ConversationService,
    parse_slack_ts,
)
from allay.core.outcome import ErrorKind
from allay.db.models import Conversation, utcnow
from allay.realtime.events import decode_frame

from factories import add_slack_user, create_tenant


@pytest.fixture
def service(session_factory, bus) -> ConversationService:
    return ConversationService(session_factory, bus)


@pytest.fixture
async def tenant(session_factory):
    return await create_tenant(session_factory, "org1")


async def seed_parent(session_factory, tenant_id: str, ts: str = "T1", **fields) -> Conversation:
    async with session_factory() as db:
        row = Conversation(
            tenant_id=tenant_id,
            id=ts,
            channel_id=fields.get("channel_id", "C1"),
            channel_name=fields.get("channel_name", "general"),
            content=fields.get("content", "parent"),
            user_id=fields.get("user_id", "U9"),
            user_name=fields.get("user_name", "Someone"),
            reactions=[],
            thread_replies=[],
            source_timestamp=fields.get("source_timestamp", utcnow()),
        )
        db.add(row)
        await db.commit()
        return row


def updates(sub) -> list[dict]:
    frames = []
    while sub.pending:
        frame = sub._queue.get_nowait()
        if frame is None:
            continue
        decoded = decode_frame(frame)
        if decoded["type"] == "conversation_update":
            frames.append(decoded["data"])
    return frames


class TestParseSlackTs:
    def test_parses_decimal_seconds(self):
        dt = parse_slack_ts("1712345678.000100")
        assert dt.tzinfo is not None
        assert int(dt.timestamp()) == 1712345678

    @pytest.mark.parametrize("ts", ["T2", "", "-1", "nan"])
    def test_rejects_non_timestamps(self, ts):
        with pytest.raises(ValueError):
            parse_slack_ts(ts)


# ═══════════════════════════════════════════════════════════════════════════════
# THREAD REPLIES
# ═══════════════════════════════════════════════════════════════════════════════


class TestCreateThreadReply:
    async def test_dashboard_reply_scenario(self, service, session_factory, bus, tenant):
        await seed_parent(session_factory, tenant.id, "T1")
        sub = bus.subscribe(tenant.id)

        outcome = await service.create_thread_reply(
            tenant.id, "T1", "hi", "T2", user_id="current_user"
        )

        assert outcome.ok
        reply = outcome.value
        assert reply["id"] == "T2"
        assert reply["content"] == "hi"
        assert reply["userName"] == "Dashboard User"
        assert reply["threadTs"] == "T1"

        parent = await service.get_conversation(tenant.id, "T1")
        assert [r["messageTs"] for r in parent.thread_replies] == ["T2"]
        assert parent.thread_replies[0]["userId"] == "bot_user"
        stored = await service.get_conversation(tenant.id, "T2")
        assert stored.thread_ts == "T1"

        frames = updates(sub)
        assert len(frames) == 1
        assert frames[0]["type"] == "new_thread_reply"
        assert frames[0]["conversationId"] == "T2"
        assert frames[0]["parentConversationId"] == "T1"
        assert frames[0]["userName"] == "Dashboard User"

    async def test_replay_is_idempotent_and_upserts_content(
        self, service, session_factory, tenant
    ):
        await seed_parent(session_factory, tenant.id, "T1")
        await service.create_thread_reply(tenant.id, "T1", "first", "1712345678.000200")
        await service.create_thread_reply(tenant.id, "T1", "edited", "1712345678.000200")

        parent = await service.get_conversation(tenant.id, "T1")
        assert len(parent.thread_replies) == 1
        reply = await service.get_conversation(tenant.id, "1712345678.000200")
        assert reply.content == "edited"

    async def test_missing_parent_writes_nothing(self, service, bus, tenant):
        sub = bus.subscribe(tenant.id)

        outcome = await service.create_thread_reply(tenant.id, "missing", "hi", "T2")

        assert outcome.error.kind is ErrorKind.NOT_FOUND
        assert await service.get_conversation(tenant.id, "T2") is None
        assert updates(sub) == []

    async def test_parent_in_other_tenant_is_not_found(self, service, session_factory, tenant):
        other = await create_tenant(session_factory, "org2")
        await seed_parent(session_factory, other.id, "T1")

        outcome = await service.create_thread_reply(tenant.id, "T1", "hi", "T2")
        assert outcome.error.kind is ErrorKind.NOT_FOUND

    async def test_empty_ts_is_validation(self, service, session_factory, tenant):
        await seed_parent(session_factory, tenant.id, "T1")
        outcome = await service.create_thread_reply(tenant.id, "T1", "hi", "")
        assert outcome.error.kind is ErrorKind.VALIDATION

    async def test_reply_to_itself_is_validation(self, service, session_factory, tenant):
        await seed_parent(session_factory, tenant.id, "T1")
        outcome = await service.create_thread_reply(tenant.id, "T1", "hi", "T1")
        assert outcome.error.kind is ErrorKind.VALIDATION

    async def test_author_name_from_slack_profile(self, service, session_factory, tenant):
        await seed_parent(session_factory, tenant.id, "T1")
        await add_slack_user(session_factory, tenant, "U1", real_name="Grace Hopper")
        await add_slack_user(session_factory, tenant, "U2", display_name="linus")

        first = await service.create_thread_reply(tenant.id, "T1", "a", "T2", user_id="U1")
        second = await service.create_thread_reply(tenant.id, "T1", "b", "T3", user_id="U2")
        third = await service.create_thread_reply(tenant.id, "T1", "c", "T4", user_id="U404")

        assert first.value["userName"] == "Grace Hopper"
        assert second.value["userName"] == "linus"
        assert third.value["userName"] == "Unknown User"

    async def test_concurrent_replies_all_appended(self, service, session_factory, tenant):
        await seed_parent(session_factory, tenant.id, "T1")

        results = await asyncio.gather(*[
            service.create_thread_reply(tenant.id, "T1", f"r{i}", f"R{i}")
            for i in range(5)
        ])

        assert all(r.ok for r in results)
        parent = await service.get_conversation(tenant.id, "T1")
        assert sorted(r["messageTs"] for r in parent.thread_replies) == [f"R{i}" for i in range(5)]

    async def test_broadcast_failure_does_not_fail_write(self, session_factory, tenant):
        broken_bus = MagicMock()
        broken_bus.broadcast.side_effect = RuntimeError("bus down")
        service = ConversationService(session_factory, broken_bus)
        await seed_parent(session_factory, tenant.id, "T1")

        outcome = await service.create_thread_reply(tenant.id, "T1", "hi", "T2")

        assert outcome.ok
        broken_bus.broadcast.assert_called_once()


class TestParentLocks:
    async def test_recently_used_lock_survives_sweep(self, service, monkeypatch):
        monkeypatch.setattr("allay.conversations.service._PARENT_LOCK_TTL_S", 0.2)

        first = await service._get_parent_lock("org1", "T1")
        await asyncio.sleep(0.12)
        assert await service._get_parent_lock("org1", "T1") is first
        await asyncio.sleep(0.12)
        # Older than the TTL since creation, but not since last use
        await service._get_parent_lock("org1", "T2")

        assert await service._get_parent_lock("org1", "T1") is first

    async def test_idle_lock_is_dropped(self, service, monkeypatch):
        monkeypatch.setattr("allay.conversations.service._PARENT_LOCK_TTL_S", 0.01)

        first = await service._get_parent_lock("org1", "T1")
        await asyncio.sleep(0.03)
        await service._get_parent_lock("org1", "T2")

        assert ("org1", "T1") not in service._parent_locks
        assert await service._get_parent_lock("org1", "T1") is not first

    async def test_held_lock_is_never_dropped(self, service, monkeypatch):
        monkeypatch.setattr("allay.conversations.service._PARENT_LOCK_TTL_S", 0.01)

        held = await service._get_parent_lock("org1", "T1")
        async with held:
            await asyncio.sleep(0.03)
            await service._get_parent_lock("org1", "T2")
            assert service._parent_locks[("org1", "T1")] is held


# ═══════════════════════════════════════════════════════════════════════════════
# LISTING
# ═══════════════════════════════════════════════════════════════════════════════


class TestListRecent:
    async def test_newest_first_with_profiles(self, service, session_factory, tenant):
        await add_slack_user(session_factory, tenant, "U1", real_name="Grace Hopper")
        await seed_parent(
            session_factory, tenant.id, "1712345600.000000",
            user_id="U1", source_timestamp=parse_slack_ts("1712345600.000000"),
        )
        await seed_parent(
            session_factory, tenant.id, "1712345700.000000",
            user_id="U404", source_timestamp=parse_slack_ts("1712345700.000000"),
        )

        listed = await service.list_recent_with_users(tenant.id)

        assert [c["id"] for c in listed] == ["1712345700.000000", "1712345600.000000"]
        assert "slackUser" not in listed[0]
        assert listed[1]["slackUser"]["realName"] == "Grace Hopper"
        assert "userToken" not in listed[1]["slackUser"]

    async def test_limit_is_clamped(self, service, session_factory, tenant):
        for i in range(3):
            await seed_parent(session_factory, tenant.id, f"T{i}")
        assert len(await service.list_recent_with_users(tenant.id, limit=2)) == 2
        assert len(await service.list_recent_with_users(tenant.id, limit=0)) == 1

    async def test_tenant_isolation(self, service, session_factory, tenant):
        other = await create_tenant(session_factory, "org2")
        await seed_parent(session_factory, other.id, "T1")
        assert await service.list_recent_with_users(tenant.id) == []


# ═══════════════════════════════════════════════════════════════════════════════
# SLACK INGESTION
# ═══════════════════════════════════════════════════════════════════════════════


class TestIngest:
    async def test_new_message_is_stored_and_broadcast(self, service, bus, tenant):
        sub = bus.subscribe(tenant.id)
        event = {"type": "message", "ts": "1712345678.000100", "text": "hello", "user": "U1", "channel": "C1"}

        outcome = await service.ingest_message(tenant.id, event)

        assert outcome.ok
        assert outcome.value["content"] == "hello"
        frames = updates(sub)
        assert [f["type"] for f in frames] == ["new_message"]
        assert frames[0]["channelId"] == "C1"

    async def test_redelivery_does_not_rebroadcast(self, service, bus, tenant):
        event = {"ts": "1712345678.000100", "text": "hello", "user": "U1", "channel": "C1"}
        await service.ingest_message(tenant.id, event)
        sub = bus.subscribe(tenant.id)

        await service.ingest_message(tenant.id, event)
        assert updates(sub) == []

    async def test_thread_reply_event_routes_to_parent(self, service, session_factory, tenant):
        await seed_parent(session_factory, tenant.id, "1712345678.000100")
        event = {
            "ts": "1712345679.000100",
            "thread_ts": "1712345678.000100",
            "text": "in thread",
            "user": "U1",
            "channel": "C1",
        }

        outcome = await service.ingest_message(tenant.id, event)

        assert outcome.value["threadTs"] == "1712345678.000100"
        parent = await service.get_conversation(tenant.id, "1712345678.000100")
        assert len(parent.thread_replies) == 1

    @pytest.mark.parametrize("event", [
        {"ts": "1.0", "subtype": "channel_join", "user": "U1"},
        {"ts": "1.0", "subtype": "bot_message", "bot_id": "B1"},
        {"ts": "1.0", "bot_id": "B1", "text": "echo"},
    ])
    async def test_ignored_events(self, service, tenant, event):
        assert await service.ingest_message(tenant.id, event) is None
        assert await service.get_conversation(tenant.id, "1.0") is None

    async def test_edit_updates_row_and_parent_entry(self, service, session_factory, bus, tenant):
        await seed_parent(session_factory, tenant.id, "1712345678.000100")
        await service.create_thread_reply(tenant.id, "1712345678.000100", "typo", "1712345679.000100")
        sub = bus.subscribe(tenant.id)

        outcome = await service.ingest_message(tenant.id, {
            "subtype": "message_changed",
            "message": {"ts": "1712345679.000100", "text": "fixed"},
        })

        assert outcome.ok
        reply = await service.get_conversation(tenant.id, "1712345679.000100")
        assert reply.content == "fixed"
        parent = await service.get_conversation(tenant.id, "1712345678.000100")
        assert parent.thread_replies[0]["messageText"] == "fixed"
        assert [f["type"] for f in updates(sub)] == ["message_updated"]


class TestReactions:
    async def test_add_and_remove(self, service, session_factory, bus, tenant):
        await seed_parent(session_factory, tenant.id, "T1")
        sub = bus.subscribe(tenant.id)

        await service.apply_reaction(tenant.id, "T1", "tada", "U1", added=True)
        await service.apply_reaction(tenant.id, "T1", "tada", "U2", added=True)
        dup = await service.apply_reaction(tenant.id, "T1", "tada", "U2", added=True)
        assert dup.value["reactions"] == [{"name": "tada", "count": 2, "users": ["U1", "U2"]}]

        await service.apply_reaction(tenant.id, "T1", "tada", "U1", added=False)
        last = await service.apply_reaction(tenant.id, "T1", "tada", "U2", added=False)
        assert last.value["reactions"] == []

        row = await service.get_conversation(tenant.id, "T1")
        assert row.reactions == []
        assert all(f["type"] == "reaction_update" for f in updates(sub))

    async def test_unknown_message(self, service, tenant):
        outcome = await service.apply_reaction(tenant.id, "nope", "tada", "U1", added=True)
        assert outcome.error.kind is ErrorKind.NOT_FOUND
