"""Per-tenant event bus: registration, fan-out, heartbeat and cleanup."""

from __future__ import annotations

import asyncio

import pytest

from allay.conversations.routes import stream_conversations
from allay.realtime.bus import SubscriberGone, Subscription, TenantEventBus
from allay.realtime.events import (
    Connected,
    ConversationUpdate,
    Heartbeat,
    MessageUpdated,
    NewThreadReply,
    ReactionUpdate,
    decode_frame,
    encode_frame,
)


def reply(conversation_id: str = "T2", parent: str = "T1") -> NewThreadReply:
    return NewThreadReply(
        conversation_id=conversation_id,
        parent_conversation_id=parent,
        content="hi",
        user_name="Dashboard User",
        timestamp="2024-04-05T12:00:00+00:00",
    )


def drain(sub: Subscription) -> list[dict]:
    frames = []
    while sub.pending:
        frame = sub._queue.get_nowait()
        if frame is not None:
            frames.append(decode_frame(frame))
    return frames


# ---------------------------------------------------------------------------
# Frames
# ---------------------------------------------------------------------------


class TestFrames:
    def test_frame_shape(self):
        frame = encode_frame(Heartbeat())
        assert frame.startswith("data: ")
        assert frame.endswith("\n\n")
        assert "\n" not in frame[:-2]

    def test_conversation_update_envelope(self):
        decoded = decode_frame(encode_frame(ConversationUpdate(data=reply())))
        assert decoded["type"] == "conversation_update"
        assert decoded["data"] == {
            "type": "new_thread_reply",
            "conversationId": "T2",
            "parentConversationId": "T1",
            "content": "hi",
            "userName": "Dashboard User",
            "timestamp": "2024-04-05T12:00:00+00:00",
        }
        assert "timestamp" in decoded

    def test_connected_carries_tenant(self):
        decoded = decode_frame(encode_frame(Connected(tenant_id="org1")))
        assert decoded["type"] == "connected"
        assert decoded["tenantId"] == "org1"

    def test_reaction_update_payload(self):
        payload = ReactionUpdate(
            conversation_id="T1",
            reactions=({"name": "tada", "count": 1, "users": ["U1"]},),
        )
        assert payload.to_dict()["reactions"] == [{"name": "tada", "count": 1, "users": ["U1"]}]

    def test_decode_rejects_malformed(self):
        with pytest.raises(ValueError):
            decode_frame("event: ping\n\n")


# ---------------------------------------------------------------------------
# Subscribe / broadcast
# ---------------------------------------------------------------------------


class TestSubscribe:
    async def test_first_frame_is_connected(self, bus: TenantEventBus):
        sub = bus.subscribe("org1")
        frames = drain(sub)
        assert frames[0]["type"] == "connected"
        assert frames[0]["tenantId"] == "org1"
        assert bus.subscriber_count("org1") == 1

    async def test_broadcast_reaches_only_that_tenant(self, bus: TenantEventBus):
        a = bus.subscribe("org1")
        b = bus.subscribe("org2")
        drain(a)
        drain(b)

        delivered = bus.broadcast("org1", reply())

        assert delivered == 1
        frames = drain(a)
        assert len(frames) == 1
        assert frames[0]["data"]["conversationId"] == "T2"
        assert drain(b) == []

    async def test_broadcast_to_empty_tenant_is_dropped(self, bus: TenantEventBus):
        assert bus.broadcast("nobody", reply()) == 0
        assert not bus.has_tenant("nobody")

    async def test_no_replay_for_late_subscribers(self, bus: TenantEventBus):
        bus.broadcast("org1", reply("T2"))
        sub = bus.subscribe("org1")
        frames = drain(sub)
        assert [f["type"] for f in frames] == ["connected"]

    async def test_frames_arrive_in_emission_order(self, bus: TenantEventBus):
        sub = bus.subscribe("org1")
        drain(sub)
        for ts in ("T2", "T3", "T4"):
            bus.broadcast("org1", reply(ts))
        assert [f["data"]["conversationId"] for f in drain(sub)] == ["T2", "T3", "T4"]

    async def test_multiple_subscribers_same_tenant(self, bus: TenantEventBus):
        subs = [bus.subscribe("org1") for _ in range(3)]
        for s in subs:
            drain(s)
        assert bus.broadcast("org1", MessageUpdated(conversation_id="T1", content="x")) == 3
        for s in subs:
            assert drain(s)[0]["data"]["type"] == "message_updated"


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------


class TestCleanup:
    async def test_unsubscribe_is_idempotent(self, bus: TenantEventBus):
        sub = bus.subscribe("org1")
        assert bus.unsubscribe("org1", sub) is True
        assert bus.unsubscribe("org1", sub) is False
        assert not bus.has_tenant("org1")
        assert sub.closed

    async def test_unsubscribe_keeps_other_subscribers(self, bus: TenantEventBus):
        a = bus.subscribe("org1")
        bus.subscribe("org1")
        bus.unsubscribe("org1", a)
        assert bus.subscriber_count("org1") == 1

    async def test_stream_abort_removes_subscriber(self, bus: TenantEventBus):
        received: list[str] = []

        async def consume():
            async for frame in bus.stream("org1"):
                received.append(frame)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.01)
        assert bus.has_tenant("org1")
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert received and decode_frame(received[0])["type"] == "connected"
        assert not bus.has_tenant("org1")
        assert bus.subscriber_count() == 0
        assert bus.broadcast("org1", reply()) == 0

    async def test_stream_closed_before_first_frame_never_registers(self, bus: TenantEventBus):
        stream = bus.stream("org1")
        assert not bus.has_tenant("org1")

        await stream.aclose()
        await asyncio.sleep(0.1)

        assert not bus.has_tenant("org1")
        assert bus.broadcast("org1", reply()) == 0

    async def test_stream_closed_after_first_frame_stops_heartbeat(self, bus: TenantEventBus):
        stream = bus.stream("org1")
        first = await stream.__anext__()
        (sub,) = bus._subscribers["org1"]

        await stream.aclose()
        await asyncio.sleep(0.01)

        assert decode_frame(first)["type"] == "connected"
        assert not bus.has_tenant("org1")
        assert sub.closed
        assert sub._heartbeat.done()

    async def test_route_defers_subscription_to_iteration(self, bus: TenantEventBus):
        response = await stream_conversations("org1", _=None, bus=bus)
        assert not bus.has_tenant("org1")

        await response.body_iterator.aclose()
        assert bus.subscriber_count() == 0

    async def test_stream_ends_when_unsubscribed(self, bus: TenantEventBus):
        received: list[str] = []

        async def consume():
            async for frame in bus.stream("org1"):
                received.append(frame)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.01)
        (sub,) = bus._subscribers["org1"]
        bus.unsubscribe("org1", sub)
        await asyncio.wait_for(task, timeout=1)
        assert len(received) >= 1

    async def test_full_queue_subscriber_is_pruned(self):
        bus = TenantEventBus(heartbeat_interval=60, queue_max=2)
        try:
            slow = bus.subscribe("org1")  # holds the connected frame
            healthy = bus.subscribe("org1")
            drain(healthy)

            bus.broadcast("org1", reply("T2"))  # slow queue now full
            drain(healthy)
            delivered = bus.broadcast("org1", reply("T3"))

            assert delivered == 1
            assert slow.closed
            assert bus.subscriber_count("org1") == 1
            assert bus.snapshot()["subscribers_pruned_total"] == 1
        finally:
            await bus.shutdown()

    async def test_offer_after_close_raises(self, bus: TenantEventBus):
        sub = bus.subscribe("org1")
        sub.close()
        with pytest.raises(SubscriberGone):
            sub.offer("data: {}\n\n")

    async def test_shutdown_closes_everything(self):
        bus = TenantEventBus(heartbeat_interval=60)
        subs = [bus.subscribe("org1"), bus.subscribe("org2")]
        await bus.shutdown()
        assert all(s.closed for s in subs)
        assert bus.subscriber_count() == 0


# ---------------------------------------------------------------------------
# Heartbeat
# ---------------------------------------------------------------------------


class TestHeartbeat:
    async def test_heartbeat_frames_are_sent(self, bus: TenantEventBus):
        sub = bus.subscribe("org1")
        drain(sub)
        await asyncio.sleep(0.12)
        types = [f["type"] for f in drain(sub)]
        assert "heartbeat" in types

    async def test_heartbeat_stops_after_unsubscribe(self, bus: TenantEventBus):
        sub = bus.subscribe("org1")
        bus.unsubscribe("org1", sub)
        await asyncio.sleep(0.01)
        assert sub._heartbeat is not None
        assert sub._heartbeat.done()

    async def test_heartbeat_prunes_dead_subscriber(self):
        bus = TenantEventBus(heartbeat_interval=0.01, queue_max=1)
        try:
            sub = bus.subscribe("org1")  # queue already full with connected
            await asyncio.sleep(0.05)
            assert sub.closed
            assert not bus.has_tenant("org1")
        finally:
            await bus.shutdown()


class TestSnapshot:
    async def test_snapshot_counts(self, bus: TenantEventBus):
        bus.subscribe("org1")
        bus.subscribe("org1")
        bus.subscribe("org2")
        bus.broadcast("org1", reply())
        snap = bus.snapshot()
        assert snap["tenants"] == 2
        assert snap["subscribers"] == 3
        assert snap["broadcasts_total"] == 1
        assert snap["frames_delivered_total"] == 2
