"""Tenant membership and invitation management."""

from allay.organization.service import OrganizationService, get_organization_service

__all__ = ["OrganizationService", "get_organization_service"]
