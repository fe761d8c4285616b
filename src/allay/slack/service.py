"""Slack workspace integration for a tenant.

Covers the OAuth v2 install flow, Web API calls made on a tenant's behalf
(channels, posting, users) and disconnecting. Event ingestion lives in
``allay.slack.handlers``; this module only supplies the tenant lookup and
bot tokens those handlers need.

Every Web API call goes through ``call_slack``, which retries rate limits,
5xx responses and connection failures with exponential backoff.
"""

from __future__ import annotations

import asyncio
import time
from datetime import timedelta
from typing import Any, Callable

import aiohttp
import structlog
from slack_sdk.errors import SlackApiError
from slack_sdk.oauth import AuthorizeUrlGenerator
from slack_sdk.web.async_client import AsyncWebClient
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from allay.auth.identity import issue_token, verify_token
from allay.config import settings
from allay.core.outcome import Outcome
from allay.db.models import SlackUser, Tenant, as_utc, utcnow
from allay.observability.metrics import get_metrics

logger = structlog.get_logger()

BOT_SCOPES: tuple[str, ...] = (
    # Core reading
    "channels:read",
    "groups:read",
    "im:read",
    "mpim:read",
    "reactions:read",
    "team:read",
    # Message history
    "channels:history",
    "groups:history",
    "im:history",
    "mpim:history",
    # Writing
    "chat:write",
    "reactions:write",
    # Channel management
    "channels:join",
    "groups:write",
    # User information
    "users:read",
    "users:read.email",
    # Posting outside joined channels / custom identity
    "chat:write.public",
    "chat:write.customize",
)

USER_SCOPES: tuple[str, ...] = (
    "chat:write",  # post as the installing user
)

OAUTH_STATE_PURPOSE = "slack_install"

ClientFactory = Callable[..., AsyncWebClient]


def _is_retryable_slack_error(exc: BaseException) -> bool:
    if isinstance(exc, SlackApiError):
        status = getattr(exc.response, "status_code", None)
        return status == 429 or (isinstance(status, int) and status >= 500)
    return isinstance(exc, (aiohttp.ClientConnectionError, asyncio.TimeoutError))


@retry(
    retry=retry_if_exception(_is_retryable_slack_error),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    reraise=True,
)
async def call_slack(client: AsyncWebClient, method: str, **kwargs: Any) -> dict[str, Any]:
    """Invoke a Web API method by its SDK name and return the response body."""
    t0 = time.monotonic()
    ok = False
    try:
        response = await getattr(client, method)(**kwargs)
        ok = True
    finally:
        await get_metrics().slack_api_called(method, (time.monotonic() - t0) * 1000, ok)
    return dict(response.data)


def _slack_error(exc: SlackApiError) -> str:
    try:
        return str(exc.response["error"])
    except (KeyError, TypeError):
        return str(exc)


class SlackService:
    """Per-tenant Slack operations backed by the tenant's bot token."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        client_factory: ClientFactory = AsyncWebClient,
    ) -> None:
        if session_factory is None:
            from allay.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self._session_factory = session_factory
        self._client_factory = client_factory

    # ═══════════════════════════════════════════════════════════════════════
    # INSTALL (OAuth v2)
    # ═══════════════════════════════════════════════════════════════════════

    def issue_state(self, tenant_id: str) -> str:
        return issue_token(
            {"tenant_id": tenant_id, "purpose": OAUTH_STATE_PURPOSE},
            timedelta(minutes=settings.oauth_state_ttl_minutes),
        )

    def verify_state(self, state: str | None) -> str | None:
        """Return the tenant id carried by a valid install state."""
        if not state:
            return None
        claims = verify_token(state)
        if not claims or claims.get("purpose") != OAUTH_STATE_PURPOSE:
            return None
        return claims.get("tenant_id")

    def install_url(self, tenant_id: str) -> str:
        generator = AuthorizeUrlGenerator(
            client_id=settings.slack_client_id,
            scopes=list(BOT_SCOPES),
            user_scopes=list(USER_SCOPES),
            redirect_uri=settings.slack_redirect_uri,
        )
        return generator.generate(state=self.issue_state(tenant_id))

    async def complete_install(
        self,
        code: str | None,
        state: str | None,
        error: str | None = None,
    ) -> Outcome[dict[str, Any]]:
        """Exchange an OAuth code and store the bot/user tokens on the tenant."""
        if error:
            return Outcome.invalid(f"Slack authorization failed: {error}")
        if not code:
            return Outcome.invalid("Missing authorization code")
        tenant_id = self.verify_state(state)
        if tenant_id is None:
            return Outcome.invalid("Invalid or expired install state")

        try:
            data = await call_slack(
                self._client_factory(),
                "oauth_v2_access",
                client_id=settings.slack_client_id,
                client_secret=settings.slack_client_secret,
                code=code,
                redirect_uri=settings.slack_redirect_uri,
            )
        except SlackApiError as e:
            logger.warning("slack_oauth_exchange_failed", tenant_id=tenant_id, error=_slack_error(e))
            return Outcome.invalid(f"Slack authorization failed: {_slack_error(e)}")

        team = data.get("team") or {}
        team_id = team.get("id")
        bot_token = data.get("access_token")
        if not team_id or not bot_token:
            return Outcome.invalid("Slack response is missing team or bot token")
        authed_user = data.get("authed_user") or {}
        now = utcnow()

        async with self._session_factory() as db:
            tenant = await db.get(Tenant, tenant_id)
            if tenant is None:
                return Outcome.not_found("Tenant not found")

            claimed = await db.execute(
                select(Tenant.id).where(Tenant.slack_team_id == team_id, Tenant.id != tenant_id)
            )
            if claimed.scalar_one_or_none() is not None:
                return Outcome.conflict("Slack workspace is already connected to another tenant")

            tenant.slack_team_id = team_id
            tenant.slack_config = {
                "bot_token": bot_token,
                "bot_user_id": data.get("bot_user_id"),
                "team_id": team_id,
                "team_name": team.get("name"),
                "scopes": data["scope"].split(",") if data.get("scope") else [],
                "installed_by": authed_user.get("id"),
                "connected_at": now.isoformat(),
            }

            if authed_user.get("id") and authed_user.get("access_token"):
                profile = await self._get_or_create_profile(db, tenant_id, authed_user["id"])
                profile.user_token = authed_user["access_token"]
                profile.scopes = (
                    authed_user["scope"].split(",") if authed_user.get("scope") else []
                )
                expires_in = authed_user.get("expires_in")
                profile.token_expires_at = (
                    now + timedelta(seconds=int(expires_in)) if expires_in else None
                )
                profile.is_active = True
            await db.commit()

        logger.info("slack_installed", tenant_id=tenant_id, team_id=team_id)

        if authed_user.get("id"):
            try:
                await self.sync_profile(tenant_id, authed_user["id"])
            except (SlackApiError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning("slack_installer_profile_sync_failed", tenant_id=tenant_id, error=str(e))

        return Outcome.success({
            "tenantId": tenant_id,
            "teamId": team_id,
            "teamName": team.get("name"),
        })

    # ═══════════════════════════════════════════════════════════════════════
    # TENANT LOOKUP
    # ═══════════════════════════════════════════════════════════════════════

    async def tenant_for_team(self, team_id: str) -> Tenant | None:
        """Active tenant connected to a Slack team."""
        async with self._session_factory() as db:
            row = await db.execute(
                select(Tenant).where(
                    Tenant.slack_team_id == team_id,
                    Tenant.is_active.is_(True),
                )
            )
            return row.scalar_one_or_none()

    async def _bot_client(self, tenant_id: str) -> AsyncWebClient | None:
        async with self._session_factory() as db:
            tenant = await db.get(Tenant, tenant_id)
        if tenant is None or not tenant.slack_connected:
            return None
        return self._client_factory(token=tenant.slack_config["bot_token"])

    async def status(self, tenant_id: str) -> Outcome[dict[str, Any]]:
        async with self._session_factory() as db:
            tenant = await db.get(Tenant, tenant_id)
        if tenant is None:
            return Outcome.not_found("Tenant not found")
        config = tenant.slack_config or {}
        return Outcome.success({
            "connected": tenant.slack_connected,
            "teamId": config.get("team_id"),
            "teamName": config.get("team_name"),
            "botUserId": config.get("bot_user_id"),
            "connectedAt": config.get("connected_at"),
        })

    # ═══════════════════════════════════════════════════════════════════════
    # WEB API
    # ═══════════════════════════════════════════════════════════════════════

    async def list_channels(self, tenant_id: str) -> Outcome[list[dict[str, Any]]]:
        client = await self._bot_client(tenant_id)
        if client is None:
            return Outcome.conflict("Slack is not connected")
        try:
            data = await call_slack(
                client,
                "conversations_list",
                types="public_channel,private_channel",
                exclude_archived=True,
                limit=200,
            )
        except SlackApiError as e:
            logger.warning("slack_channels_failed", tenant_id=tenant_id, error=_slack_error(e))
            return Outcome.invalid(_slack_error(e))
        return Outcome.success([
            {
                "id": c.get("id"),
                "name": c.get("name"),
                "isPrivate": c.get("is_private", False),
                "isMember": c.get("is_member", False),
                "topic": (c.get("topic") or {}).get("value"),
                "purpose": (c.get("purpose") or {}).get("value"),
                "numMembers": c.get("num_members"),
            }
            for c in data.get("channels") or []
        ])

    async def join_channel(self, tenant_id: str, channel_id: str) -> Outcome[dict[str, Any]]:
        client = await self._bot_client(tenant_id)
        if client is None:
            return Outcome.conflict("Slack is not connected")
        try:
            await call_slack(client, "conversations_join", channel=channel_id)
        except SlackApiError as e:
            logger.warning(
                "slack_join_failed",
                tenant_id=tenant_id,
                channel_id=channel_id,
                error=_slack_error(e),
            )
            return Outcome.invalid(_slack_error(e))
        logger.info("slack_channel_joined", tenant_id=tenant_id, channel_id=channel_id)
        return Outcome.success({"channelId": channel_id, "joined": True})

    async def post_message(
        self,
        tenant_id: str,
        channel_id: str,
        text: str,
        thread_ts: str | None = None,
        as_slack_user_id: str | None = None,
    ) -> Outcome[dict[str, Any]]:
        """Post to Slack, as the given Slack user when they granted a user token."""
        client = await self._bot_client(tenant_id)
        if client is None:
            return Outcome.conflict("Slack is not connected")

        if as_slack_user_id:
            async with self._session_factory() as db:
                row = await db.execute(
                    select(SlackUser).where(
                        SlackUser.tenant_id == tenant_id,
                        SlackUser.slack_user_id == as_slack_user_id,
                        SlackUser.is_active.is_(True),
                    )
                )
                profile = row.scalar_one_or_none()
            if profile is not None and profile.user_token and not self._token_expired(profile):
                client = self._client_factory(token=profile.user_token)

        kwargs: dict[str, Any] = {"channel": channel_id, "text": text}
        if thread_ts:
            kwargs["thread_ts"] = thread_ts
        try:
            data = await call_slack(client, "chat_postMessage", **kwargs)
        except SlackApiError as e:
            logger.warning("slack_post_failed", tenant_id=tenant_id, error=_slack_error(e))
            return Outcome.invalid(_slack_error(e))

        logger.info("slack_message_posted", tenant_id=tenant_id, channel_id=channel_id)
        return Outcome.success({
            "success": True,
            "messageTs": data.get("ts"),
            "threadTs": thread_ts,
        })

    @staticmethod
    def _token_expired(profile: SlackUser) -> bool:
        return (
            profile.token_expires_at is not None
            and as_utc(profile.token_expires_at) <= utcnow()
        )

    # ═══════════════════════════════════════════════════════════════════════
    # USERS
    # ═══════════════════════════════════════════════════════════════════════

    async def list_users(
        self,
        tenant_id: str,
        include_inactive: bool = False,
        search: str | None = None,
    ) -> list[dict[str, Any]]:
        query = select(SlackUser).where(SlackUser.tenant_id == tenant_id)
        if not include_inactive:
            query = query.where(SlackUser.is_active.is_(True))
        if search:
            pattern = f"%{search.lower()}%"
            query = query.where(
                or_(
                    func.lower(SlackUser.real_name).like(pattern),
                    func.lower(SlackUser.display_name).like(pattern),
                    func.lower(SlackUser.email).like(pattern),
                )
            )
        async with self._session_factory() as db:
            rows = await db.execute(query.order_by(SlackUser.real_name.asc()))
            return [p.to_profile() for p in rows.scalars().all()]

    async def user_auth_status(
        self, tenant_id: str, slack_user_id: str | None = None
    ) -> dict[str, Any]:
        query = select(SlackUser).where(SlackUser.tenant_id == tenant_id)
        if slack_user_id:
            query = query.where(SlackUser.slack_user_id == slack_user_id)
        async with self._session_factory() as db:
            rows = await db.execute(query)
            profiles = rows.scalars().all()
        return {
            "users": [
                {
                    "slackUserId": p.slack_user_id,
                    "displayName": p.display_name,
                    "hasUserToken": bool(p.user_token) and not self._token_expired(p),
                    "isActive": p.is_active,
                    "lastSeenAt": as_utc(p.last_seen_at).isoformat() if p.last_seen_at else None,
                }
                for p in profiles
            ]
        }

    async def sync_profile(self, tenant_id: str, slack_user_id: str) -> SlackUser | None:
        """Fetch ``users.info`` with the bot token and upsert the profile."""
        client = await self._bot_client(tenant_id)
        if client is None:
            return None
        data = await call_slack(client, "users_info", user=slack_user_id)
        info = data.get("user") or {}
        profile_info = info.get("profile") or {}

        async with self._session_factory() as db:
            profile = await self._get_or_create_profile(db, tenant_id, slack_user_id)
            profile.real_name = info.get("real_name") or profile_info.get("real_name")
            profile.display_name = profile_info.get("display_name") or info.get("name")
            profile.email = profile_info.get("email")
            profile.profile_image = profile_info.get("image_72")
            profile.title = profile_info.get("title")
            profile.is_bot = bool(info.get("is_bot"))
            profile.is_admin = bool(info.get("is_admin"))
            profile.is_owner = bool(info.get("is_owner"))
            profile.timezone = info.get("tz")
            profile.is_active = not info.get("deleted", False)
            profile.last_seen_at = utcnow()
            await db.commit()

        logger.info("slack_profile_synced", tenant_id=tenant_id, slack_user_id=slack_user_id)
        return profile

    async def ensure_profile(self, tenant_id: str, slack_user_id: str) -> None:
        """Sync a profile the first time a Slack user is seen."""
        async with self._session_factory() as db:
            row = await db.execute(
                select(SlackUser.id).where(
                    SlackUser.tenant_id == tenant_id,
                    SlackUser.slack_user_id == slack_user_id,
                )
            )
            if row.scalar_one_or_none() is not None:
                return
        try:
            await self.sync_profile(tenant_id, slack_user_id)
        except (SlackApiError, aiohttp.ClientError, asyncio.TimeoutError, IntegrityError) as e:
            logger.warning(
                "slack_profile_sync_failed",
                tenant_id=tenant_id,
                slack_user_id=slack_user_id,
                error=str(e),
            )

    @staticmethod
    async def _get_or_create_profile(
        db: AsyncSession, tenant_id: str, slack_user_id: str
    ) -> SlackUser:
        row = await db.execute(
            select(SlackUser).where(
                SlackUser.tenant_id == tenant_id,
                SlackUser.slack_user_id == slack_user_id,
            )
        )
        profile = row.scalar_one_or_none()
        if profile is None:
            now = utcnow()
            profile = SlackUser(
                tenant_id=tenant_id,
                slack_user_id=slack_user_id,
                scopes=[],
                created_at=now,
                updated_at=now,
            )
            db.add(profile)
        return profile

    # ═══════════════════════════════════════════════════════════════════════
    # DISCONNECT
    # ═══════════════════════════════════════════════════════════════════════

    async def disconnect(self, tenant_id: str) -> Outcome[dict[str, Any]]:
        """Revoke the bot token, drop user tokens and clear the tenant's config."""
        async with self._session_factory() as db:
            tenant = await db.get(Tenant, tenant_id)
            if tenant is None:
                return Outcome.not_found("Tenant not found")
            bot_token = (tenant.slack_config or {}).get("bot_token")

        if bot_token:
            try:
                await call_slack(self._client_factory(token=bot_token), "auth_revoke")
            except (SlackApiError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning("slack_token_revoke_failed", tenant_id=tenant_id, error=str(e))

        async with self._session_factory() as db:
            await db.execute(
                update(SlackUser)
                .where(SlackUser.tenant_id == tenant_id)
                .values(user_token=None, scopes=[], token_expires_at=None, is_active=False)
            )
            tenant = await db.get(Tenant, tenant_id)
            if tenant is not None:
                tenant.slack_config = None
                tenant.slack_team_id = None
            await db.commit()

        logger.info("slack_disconnected", tenant_id=tenant_id)
        return Outcome.success({"success": True})


_service: SlackService | None = None


def get_slack_service() -> SlackService:
    """Get or create the singleton SlackService."""
    global _service
    if _service is None:
        _service = SlackService()
    return _service
