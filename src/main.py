"""Vitalink API — FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config import Settings, get_settings
from src.middleware.clerk_auth import ClerkAuthMiddleware
from src.routers import alerts, health, integrations, metrics, webhooks
from src.services.stores import postgres_stores
from src.services.supabase import close_pool, init_pool
from src.wearables.config_loader import get_ingest_config
from src.wearables.realtime import SubscriptionRegistry
from src.wearables.retry import RetryScheduler
from src.wearables.terra_client import TerraClient

# ---------- Logging ----------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("vitalink")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks.

    Owns every long-lived resource: the DB pool, the shared HTTP client,
    the subscription registry and the retry scheduler.
    """
    settings: Settings = app.state.settings
    logger.info(
        "Starting Vitalink API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    config = get_ingest_config()
    await init_pool(settings)

    http_client = httpx.AsyncClient(timeout=settings.terra_request_timeout_seconds)
    app.state.stores = postgres_stores()
    app.state.terra_client = TerraClient(
        api_key=settings.terra_api_key,
        dev_id=settings.terra_dev_id,
        base_url=settings.terra_api_base,
        timeout_s=config.backfill.request_timeout_seconds,
        http_client=http_client,
    )
    app.state.registry = SubscriptionRegistry()
    app.state.retry_scheduler = RetryScheduler()
    try:
        yield
    finally:
        await app.state.retry_scheduler.shutdown()
        app.state.registry.destroy()
        await http_client.aclose()
        await close_pool()
        logger.info("Vitalink API shut down")


# ---------- App factory ----------

def create_app(settings: Settings | None = None, with_auth: bool = True) -> FastAPI:
    settings = settings or get_settings()
    logging.getLogger("vitalink").setLevel(settings.log_level.upper())

    app = FastAPI(
        title="Vitalink API",
        description=(
            "Wearable data ingestion: aggregator webhooks, historical backfill, "
            "unified metrics with source-priority conflict resolution, and alerts."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # ---------- Middleware (the last one added is the outermost) ----------

    # Clerk JWT authentication
    if with_auth:
        app.add_middleware(ClerkAuthMiddleware, settings=settings)

    # CORS is outermost, so preflight is answered before auth runs
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (outside v1 prefix — always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(webhooks.router, prefix=v1_prefix)
    app.include_router(integrations.router, prefix=v1_prefix)
    app.include_router(metrics.router, prefix=v1_prefix)
    app.include_router(alerts.router, prefix=v1_prefix)

    return app


app = create_app()
