"""Slack event handlers.

Mirrors channel traffic into the conversation store: new messages, thread
replies, edits and reaction changes. Each handler needs ``tenant_id`` on
the context (set by ``resolve_tenant_middleware``) and is a no-op without it.
"""

from __future__ import annotations

from typing import Any

import structlog
from slack_bolt.async_app import AsyncApp

from allay.conversations.service import get_conversation_service
from allay.slack.service import get_slack_service

logger = structlog.get_logger()


async def handle_message(event: dict[str, Any], context: Any) -> None:
    tenant_id = context.get("tenant_id")
    if not tenant_id:
        logger.warning("slack_event_without_tenant", event_type="message")
        return

    user = event.get("user")
    if user and not event.get("bot_id"):
        await get_slack_service().ensure_profile(tenant_id, user)

    outcome = await get_conversation_service().ingest_message(tenant_id, event)
    if outcome is not None and not outcome.ok:
        logger.info(
            "slack_message_not_ingested",
            tenant_id=tenant_id,
            ts=event.get("ts"),
            reason=outcome.error.message,
        )


async def _handle_reaction(event: dict[str, Any], context: Any, added: bool) -> None:
    tenant_id = context.get("tenant_id")
    item = event.get("item") or {}
    if not tenant_id or item.get("type") != "message":
        return

    outcome = await get_conversation_service().apply_reaction(
        tenant_id,
        item.get("ts", ""),
        event.get("reaction", ""),
        event.get("user", ""),
        added=added,
    )
    if not outcome.ok:
        logger.debug(
            "slack_reaction_skipped",
            tenant_id=tenant_id,
            ts=item.get("ts"),
            reason=outcome.error.message,
        )


async def handle_reaction_added(event: dict[str, Any], context: Any) -> None:
    await _handle_reaction(event, context, added=True)


async def handle_reaction_removed(event: dict[str, Any], context: Any) -> None:
    await _handle_reaction(event, context, added=False)


def register_handlers(app: AsyncApp) -> None:
    """Register all Slack event handlers on the Bolt app."""

    @app.event("message")
    async def on_message(event: dict[str, Any], context: Any) -> None:
        await handle_message(event, context)

    @app.event("reaction_added")
    async def on_reaction_added(event: dict[str, Any], context: Any) -> None:
        await handle_reaction_added(event, context)

    @app.event("reaction_removed")
    async def on_reaction_removed(event: dict[str, Any], context: Any) -> None:
        await handle_reaction_removed(event, context)
