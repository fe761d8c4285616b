"""Typed live-update events and their SSE wire framing.

Every frame sent to a dashboard is one of three envelopes:

    Connected           sent once, right after subscribing
    Heartbeat           keep-alive, every N seconds per subscriber
    ConversationUpdate  carries one of the update payloads below

Payloads stay typed until ``encode_frame`` turns an envelope into
``data: <json>\\n\\n``. Field names on the wire are camelCase because the
dashboard consumes them directly.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


def _now() -> datetime:
    return datetime.now(timezone.utc)


class EventType(str, Enum):
    """Envelope discriminator (the ``type`` field of every frame)."""
    CONNECTED = "connected"
    HEARTBEAT = "heartbeat"
    CONVERSATION_UPDATE = "conversation_update"


class UpdateType(str, Enum):
    """Discriminator of ``data.type`` inside a conversation_update frame."""
    NEW_MESSAGE = "new_message"
    NEW_THREAD_REPLY = "new_thread_reply"
    MESSAGE_UPDATED = "message_updated"
    REACTION_UPDATE = "reaction_update"


# ═══════════════════════════════════════════════════════════════════════════════
# UPDATE PAYLOADS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class NewThreadReply:
    conversation_id: str
    parent_conversation_id: str
    content: str
    user_name: str
    timestamp: str

    type = UpdateType.NEW_THREAD_REPLY

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "conversationId": self.conversation_id,
            "parentConversationId": self.parent_conversation_id,
            "content": self.content,
            "userName": self.user_name,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class NewMessage:
    conversation_id: str
    channel_id: str | None
    content: str
    user_name: str
    timestamp: str

    type = UpdateType.NEW_MESSAGE

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "conversationId": self.conversation_id,
            "channelId": self.channel_id,
            "content": self.content,
            "userName": self.user_name,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class MessageUpdated:
    conversation_id: str
    content: str

    type = UpdateType.MESSAGE_UPDATED

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "conversationId": self.conversation_id,
            "content": self.content,
        }


@dataclass(frozen=True)
class ReactionUpdate:
    conversation_id: str
    reactions: tuple[dict[str, Any], ...] = ()

    type = UpdateType.REACTION_UPDATE

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "conversationId": self.conversation_id,
            "reactions": [dict(r) for r in self.reactions],
        }


UpdatePayload = Union[NewThreadReply, NewMessage, MessageUpdated, ReactionUpdate]


# ═══════════════════════════════════════════════════════════════════════════════
# ENVELOPES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Connected:
    tenant_id: str
    timestamp: datetime = field(default_factory=_now)

    type = EventType.CONNECTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "tenantId": self.tenant_id,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class Heartbeat:
    timestamp: datetime = field(default_factory=_now)

    type = EventType.HEARTBEAT

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "timestamp": self.timestamp.isoformat()}


@dataclass(frozen=True)
class ConversationUpdate:
    data: UpdatePayload
    timestamp: datetime = field(default_factory=_now)

    type = EventType.CONVERSATION_UPDATE

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "data": self.data.to_dict(),
            "timestamp": self.timestamp.isoformat(),
        }


Event = Union[Connected, Heartbeat, ConversationUpdate]


def encode_frame(event: Event) -> str:
    """Serialize an envelope as a single SSE ``data:`` frame."""
    return f"data: {json.dumps(event.to_dict(), separators=(',', ':'))}\n\n"


def decode_frame(frame: str) -> dict[str, Any]:
    """Parse a frame produced by ``encode_frame`` (used by clients and tests)."""
    if not frame.startswith("data: ") or not frame.endswith("\n\n"):
        raise ValueError(f"Malformed SSE frame: {frame!r}")
    return json.loads(frame[len("data: "):-2])
