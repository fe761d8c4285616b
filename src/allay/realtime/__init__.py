"""Live dashboard updates: typed events and the per-tenant event bus."""

from allay.realtime.bus import Subscription, SubscriberGone, TenantEventBus, get_event_bus
from allay.realtime.events import (
    Connected,
    ConversationUpdate,
    EventType,
    Heartbeat,
    MessageUpdated,
    NewMessage,
    NewThreadReply,
    ReactionUpdate,
    UpdateType,
    decode_frame,
    encode_frame,
)

__all__ = [
    "Connected",
    "ConversationUpdate",
    "EventType",
    "Heartbeat",
    "MessageUpdated",
    "NewMessage",
    "NewThreadReply",
    "ReactionUpdate",
    "Subscription",
    "SubscriberGone",
    "TenantEventBus",
    "UpdateType",
    "decode_frame",
    "encode_frame",
    "get_event_bus",
]
