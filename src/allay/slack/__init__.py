"""Slack integration: OAuth install, Web API calls, event handlers, middleware."""

from allay.slack.handlers import register_handlers
from allay.slack.middleware import authorize, resolve_tenant_middleware
from allay.slack.service import SlackService, get_slack_service

__all__ = [
    "SlackService",
    "authorize",
    "get_slack_service",
    "register_handlers",
    "resolve_tenant_middleware",
]
