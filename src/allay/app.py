"""Allay application entry point: FastAPI API + Slack Bolt over HTTP.

Architecture:
- FastAPI for the dashboard API, the SSE stream and health checks
- Slack Bolt (HTTP mode) for Events API delivery at /api/slack/events
- Async SQLAlchemy for database operations
- In-process tenant event bus for live conversation updates
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from allay import __version__
from allay.auth.routes import router as auth_router
from allay.config import settings
from allay.conversations.routes import router as conversations_router
from allay.db.session import close_db, init_db
from allay.observability.metrics import get_metrics
from allay.organization.routes import invitations_router
from allay.organization.routes import router as organization_router
from allay.realtime.bus import get_event_bus
from allay.slack.routes import router as slack_router
from allay.slack.routes import tenant_router as slack_tenant_router
from allay.tenants.routes import router as tenants_router

logger = structlog.get_logger()

# Configure structlog
structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer()
        if settings.env == "production"
        else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.getLevelName(settings.log_level.upper())
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
)


# ═══════════════════════════════════════════════════════════════════════════════
# FASTAPI APP
# ═══════════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("app_starting", env=settings.env, version=__version__)

    if settings.env == "development":
        logger.info("database_initializing")
        await init_db()

    yield

    logger.info("app_shutting_down")
    await get_event_bus().shutdown()
    await close_db()


api = FastAPI(
    title="Allay",
    version=__version__,
    description="Multi-tenant Slack conversation dashboard",
    lifespan=lifespan,
)

api.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@api.middleware("http")
async def log_requests(request: Request, call_next) -> Response:
    """Log every request with its status and duration; feed request metrics."""
    t0 = time.monotonic()
    response = await call_next(request)
    elapsed_ms = (time.monotonic() - t0) * 1000
    logger.info(
        "http_request",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        elapsed_ms=round(elapsed_ms, 1),
        user_id=getattr(request.state, "user_id", None),
    )
    await get_metrics().request_completed(response.status_code, elapsed_ms)
    return response


@api.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_error",
        method=request.method,
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


api.include_router(auth_router)
api.include_router(tenants_router)
api.include_router(organization_router)
api.include_router(invitations_router)
api.include_router(conversations_router)
api.include_router(slack_router)
api.include_router(slack_tenant_router)


@api.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "service": "allay"}


@api.get("/health/db")
async def health_db() -> dict[str, str]:
    """Database health check."""
    from sqlalchemy import text
    from sqlalchemy.exc import SQLAlchemyError

    from allay.db.session import async_engine

    try:
        async with async_engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            result.scalar()
        return {"status": "ok", "database": "connected"}
    except (SQLAlchemyError, OSError) as e:
        logger.error("db_health_check_failed", error=str(e))
        return {"status": "error", "database": "disconnected"}


@api.get("/metrics")
async def metrics_endpoint() -> dict:
    """Live metrics snapshot: request counters, latency histograms and the
    event bus registry (tenants, subscribers, frames delivered, pruned)."""
    snap = await get_metrics().snapshot()
    snap["event_bus"] = get_event_bus().snapshot()
    return snap


# ═══════════════════════════════════════════════════════════════════════════════
# MAIN ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════════

def main() -> None:
    """Run the API with uvicorn."""
    import uvicorn

    logger.info("starting_allay", host=settings.host, port=settings.port)
    uvicorn.run(
        "allay.app:api",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        proxy_headers=True,
    )


if __name__ == "__main__":
    main()
