"""Slack endpoints: OAuth install, Events API, tenant-scoped Web API proxies."""

from __future__ import annotations

from typing import Any
from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from slack_bolt.adapter.fastapi.async_handler import AsyncSlackRequestHandler
from slack_bolt.async_app import AsyncApp

from allay.auth.deps import current_membership, require_permissions
from allay.auth.permissions import Permission
from allay.config import settings
from allay.core.http import unwrap
from allay.db.models import Membership
from allay.slack.handlers import register_handlers
from allay.slack.middleware import authorize, resolve_tenant_middleware
from allay.slack.service import SlackService, get_slack_service

logger = structlog.get_logger()

router = APIRouter(prefix="/api/slack", tags=["slack"])
tenant_router = APIRouter(prefix="/api/{tenant_id}/slack", tags=["slack"])


class JoinChannelRequest(BaseModel):
    channelId: str = Field(min_length=1, max_length=32)


class PostMessageRequest(BaseModel):
    channelId: str = Field(min_length=1, max_length=32)
    text: str = Field(min_length=1, max_length=40000)
    threadTs: str | None = None
    slackUserId: str | None = None


# ═══════════════════════════════════════════════════════════════════════════════
# SLACK BOLT APP
# ═══════════════════════════════════════════════════════════════════════════════

def create_bolt_app() -> AsyncApp:
    bolt = AsyncApp(
        signing_secret=settings.slack_signing_secret,
        authorize=authorize,
        process_before_response=True,
    )
    bolt.middleware(resolve_tenant_middleware)
    register_handlers(bolt)
    return bolt


_handler: AsyncSlackRequestHandler | None = None


def get_bolt_handler() -> AsyncSlackRequestHandler:
    """Get or create the request handler wrapping the Bolt app."""
    global _handler
    if _handler is None:
        _handler = AsyncSlackRequestHandler(create_bolt_app())
    return _handler


@router.post("/events")
async def slack_events(request: Request) -> Response:
    """Slack Events API endpoint; signature checks happen inside Bolt."""
    return await get_bolt_handler().handle(request)


# ═══════════════════════════════════════════════════════════════════════════════
# OAUTH INSTALL
# ═══════════════════════════════════════════════════════════════════════════════

@router.get("/install/{tenant_id}")
async def install(
    tenant_id: str,
    _: Membership = Depends(require_permissions(Permission.MANAGE_SLACK)),
    slack: SlackService = Depends(get_slack_service),
) -> RedirectResponse:
    return RedirectResponse(slack.install_url(tenant_id), status_code=302)


@router.get("/callback")
async def oauth_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    slack: SlackService = Depends(get_slack_service),
) -> RedirectResponse:
    """Finish the install and send the browser back to the dashboard."""
    outcome = await slack.complete_install(code, state, error)
    base = settings.frontend_url.rstrip("/")
    if outcome.ok:
        target = f"{base}/{outcome.value['tenantId']}/integrations?" + urlencode({"slack": "connected"})
    else:
        tenant_id = slack.verify_state(state)
        prefix = f"{base}/{tenant_id}" if tenant_id else base
        target = f"{prefix}/integrations?" + urlencode({"slack": "error", "reason": outcome.error.message})
        logger.warning("slack_install_failed", tenant_id=tenant_id, reason=outcome.error.message)
    return RedirectResponse(target, status_code=302)


# ═══════════════════════════════════════════════════════════════════════════════
# TENANT-SCOPED
# ═══════════════════════════════════════════════════════════════════════════════

@tenant_router.get("/status")
async def status(
    tenant_id: str,
    _: Membership = Depends(current_membership),
    slack: SlackService = Depends(get_slack_service),
) -> dict[str, Any]:
    return unwrap(await slack.status(tenant_id))


@tenant_router.get("/channels")
async def list_channels(
    tenant_id: str,
    _: Membership = Depends(current_membership),
    slack: SlackService = Depends(get_slack_service),
) -> dict[str, Any]:
    return {"channels": unwrap(await slack.list_channels(tenant_id))}


@tenant_router.post("/channels")
async def join_channel(
    tenant_id: str,
    req: JoinChannelRequest,
    _: Membership = Depends(require_permissions(Permission.MANAGE_SLACK)),
    slack: SlackService = Depends(get_slack_service),
) -> dict[str, Any]:
    return unwrap(await slack.join_channel(tenant_id, req.channelId))


@tenant_router.get("/users")
async def list_users(
    tenant_id: str,
    includeInactive: bool = Query(default=False),
    search: str | None = Query(default=None, max_length=100),
    _: Membership = Depends(current_membership),
    slack: SlackService = Depends(get_slack_service),
) -> dict[str, Any]:
    return {"users": await slack.list_users(tenant_id, includeInactive, search)}


@tenant_router.get("/user-auth")
async def user_auth(
    tenant_id: str,
    slackUserId: str | None = Query(default=None),
    _: Membership = Depends(current_membership),
    slack: SlackService = Depends(get_slack_service),
) -> dict[str, Any]:
    return await slack.user_auth_status(tenant_id, slackUserId)


@tenant_router.post("/reply")
async def post_message(
    tenant_id: str,
    req: PostMessageRequest,
    _: Membership = Depends(require_permissions(Permission.SEND_MESSAGES)),
    slack: SlackService = Depends(get_slack_service),
) -> dict[str, Any]:
    return unwrap(
        await slack.post_message(
            tenant_id,
            req.channelId,
            req.text,
            thread_ts=req.threadTs,
            as_slack_user_id=req.slackUserId,
        )
    )


@tenant_router.post("/disconnect")
async def disconnect(
    tenant_id: str,
    _: Membership = Depends(require_permissions(Permission.MANAGE_SLACK)),
    slack: SlackService = Depends(get_slack_service),
) -> dict[str, Any]:
    return unwrap(await slack.disconnect(tenant_id))
