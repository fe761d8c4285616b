"""Allay: multi-tenant Slack conversation dashboard backend."""

__version__ = "0.1.0"
