"""Conversation endpoints: recent list, live stream, thread replies."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from allay.auth.deps import current_membership, require_permissions
from allay.auth.permissions import Permission
from allay.config import settings
from allay.conversations.service import ConversationService, get_conversation_service
from allay.core.http import unwrap
from allay.db.models import Membership
from allay.realtime.bus import TenantEventBus, get_event_bus

logger = structlog.get_logger()

router = APIRouter(prefix="/api/{tenant_id}/conversations", tags=["conversations"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class ThreadReplyRequest(BaseModel):
    parentConversationId: str = Field(min_length=1, max_length=32)
    messageText: str
    messageTs: str = Field(min_length=1, max_length=32)
    userId: str | None = None
    channelId: str | None = None


@router.get("")
async def list_conversations(
    tenant_id: str,
    limit: int = Query(default=settings.conversation_list_default, ge=1),
    _: Membership = Depends(current_membership),
    conversations: ConversationService = Depends(get_conversation_service),
) -> list[dict[str, Any]]:
    return await conversations.list_recent_with_users(tenant_id, limit)


@router.get("/stream")
async def stream_conversations(
    tenant_id: str,
    _: Membership = Depends(current_membership),
    bus: TenantEventBus = Depends(get_event_bus),
) -> StreamingResponse:
    """Server-sent events: connected, heartbeat and conversation_update frames."""
    return StreamingResponse(
        bus.stream(tenant_id),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.post("/thread-reply")
async def create_thread_reply(
    tenant_id: str,
    req: ThreadReplyRequest,
    _: Membership = Depends(require_permissions(Permission.SEND_MESSAGES)),
    conversations: ConversationService = Depends(get_conversation_service),
) -> dict[str, Any]:
    reply = unwrap(
        await conversations.create_thread_reply(
            tenant_id,
            req.parentConversationId,
            req.messageText,
            req.messageTs,
            user_id=req.userId,
            channel_id=req.channelId,
        )
    )
    return {"success": True, "threadReply": reply}
