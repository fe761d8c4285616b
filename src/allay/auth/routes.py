"""Authentication endpoints: register, login, logout, current user."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel, EmailStr, Field

from allay.auth.deps import current_user, session_token
from allay.auth.identity import AuthResult, IdentityService, get_identity_service, user_projection
from allay.config import settings
from allay.core.http import unwrap
from allay.db.models import User
from allay.tenants.service import TenantService, get_tenant_service

logger = structlog.get_logger()

router = APIRouter(prefix="/api/auth", tags=["auth"])


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    firstName: str | None = Field(default=None, max_length=100)
    lastName: str | None = Field(default=None, max_length=100)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


def _set_session_cookie(response: Response, result: AuthResult) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=result.token,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
        max_age=settings.session_ttl_days * 24 * 60 * 60,
    )


def _client_meta(request: Request) -> dict[str, str | None]:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


@router.post("/register", status_code=201)
async def register(
    req: RegisterRequest,
    request: Request,
    response: Response,
    identity: IdentityService = Depends(get_identity_service),
) -> dict[str, Any]:
    result = unwrap(
        await identity.register(
            req.email,
            req.password,
            first_name=req.firstName,
            last_name=req.lastName,
            **_client_meta(request),
        )
    )
    _set_session_cookie(response, result)
    return {"user": result.user, "token": result.token}


@router.post("/login")
async def login(
    req: LoginRequest,
    request: Request,
    response: Response,
    identity: IdentityService = Depends(get_identity_service),
) -> dict[str, Any]:
    outcome = await identity.login(req.email, req.password, **_client_meta(request))
    if not outcome.ok:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    result = outcome.value
    _set_session_cookie(response, result)
    return {"user": result.user, "token": result.token}


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    identity: IdentityService = Depends(get_identity_service),
) -> dict[str, str]:
    token = session_token(request)
    if token:
        await identity.logout(token)
    response.delete_cookie(settings.session_cookie_name)
    return {"message": "Logged out successfully"}


@router.get("/me")
async def me(user: User = Depends(current_user)) -> dict[str, Any]:
    return user_projection(user)


@router.get("/user-tenants")
async def user_tenants(
    user: User = Depends(current_user),
    tenants: TenantService = Depends(get_tenant_service),
) -> list[dict[str, Any]]:
    return await tenants.list_user_tenants(user.id)
