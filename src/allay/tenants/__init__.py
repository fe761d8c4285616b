"""Tenant creation and lookup."""

from allay.tenants.service import TenantService, get_tenant_service

__all__ = ["TenantService", "get_tenant_service"]
