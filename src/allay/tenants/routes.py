"""Tenant endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from allay.auth.deps import current_user
from allay.core.http import unwrap
from allay.db.models import User
from allay.tenants.service import TenantService, get_tenant_service

router = APIRouter(prefix="/api/tenants", tags=["tenants"])


class CreateTenantRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    slug: str = Field(min_length=1, max_length=100)


@router.post("/create", status_code=201)
async def create_tenant(
    req: CreateTenantRequest,
    user: User = Depends(current_user),
    tenants: TenantService = Depends(get_tenant_service),
) -> dict[str, Any]:
    return unwrap(await tenants.create_tenant(user.id, req.name, req.slug))


@router.get("")
async def list_tenants(
    user: User = Depends(current_user),
    tenants: TenantService = Depends(get_tenant_service),
) -> list[dict[str, Any]]:
    return await tenants.list_user_tenants(user.id)


@router.get("/{tenant_id}/info")
async def tenant_info(
    tenant_id: str,
    user: User = Depends(current_user),
    tenants: TenantService = Depends(get_tenant_service),
) -> dict[str, Any]:
    return unwrap(await tenants.get_tenant_info(tenant_id, user.id))
