"""Slack Bolt authorization and tenant resolution.

Bot tokens live on the tenant row (written by the OAuth callback), so
authorization is a lookup by ``team_id`` rather than an installation store.
The resolved tenant id is attached to the Bolt context for the handlers.
"""

from __future__ import annotations

from typing import Any, Callable

import structlog
from slack_bolt.authorization import AuthorizeResult
from slack_bolt.request.async_request import AsyncBoltRequest

from allay.slack.service import get_slack_service

logger = structlog.get_logger()


async def authorize(enterprise_id: str | None, team_id: str | None) -> AuthorizeResult | None:
    """Bolt ``authorize`` callable: bot token of the tenant bound to ``team_id``."""
    if not team_id:
        return None
    tenant = await get_slack_service().tenant_for_team(team_id)
    if tenant is None or not tenant.slack_connected:
        logger.warning("slack_authorize_unknown_team", team_id=team_id)
        return None
    return AuthorizeResult(
        enterprise_id=enterprise_id,
        team_id=team_id,
        bot_token=tenant.slack_config["bot_token"],
        bot_user_id=tenant.slack_config.get("bot_user_id"),
    )


async def resolve_tenant_middleware(
    request: AsyncBoltRequest, context: Any, next: Callable[[], Any]
) -> None:
    """Attach ``tenant_id`` for the team that sent the event."""
    team_id = context.get("team_id") or (request.body.get("team_id") if request.body else None)
    if team_id:
        tenant = await get_slack_service().tenant_for_team(team_id)
        if tenant is not None:
            # Use dict-style context to avoid the setter restriction
            context["tenant_id"] = tenant.id
    await next()
