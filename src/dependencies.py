"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

import hmac
import uuid
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.wearables.base import StoreBundle
from src.wearables.config_loader import IngestConfig, get_ingest_config
from src.wearables.realtime import SubscriptionRegistry
from src.wearables.retry import RetryScheduler
from src.wearables.terra_client import TerraClient


@dataclass(frozen=True)
class AuthContext:
    """Authenticated user context extracted from Clerk JWT."""

    user_id: str  # Clerk user ID (e.g. "user_2x...")
    internal_user_id: uuid.UUID | None = None  # our UUID, from the session token template
    email: str | None = None
    session_id: str | None = None


async def get_current_user(request: Request) -> AuthContext:
    """Extract the authenticated user from the request state.

    The Clerk auth middleware sets ``request.state.auth`` before routes run.
    """
    auth: AuthContext | None = getattr(request.state, "auth", None)
    if auth is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return auth


async def get_internal_user_id(
    auth: Annotated[AuthContext, Depends(get_current_user)],
) -> uuid.UUID:
    """Return the caller's internal UUID, or 403 if the account is not provisioned."""
    if auth.internal_user_id is None:
        raise HTTPException(status_code=403, detail="User is not provisioned")
    return auth.internal_user_id


async def require_service_role(
    request: Request, settings: Annotated[Settings, Depends(get_settings)]
) -> None:
    """Guard cron-triggered routes with ``Authorization: Bearer <service role key>``."""
    header = request.headers.get("Authorization", "")
    token = header.removeprefix("Bearer ").strip() if header.startswith("Bearer ") else ""
    if not token or not hmac.compare_digest(token, settings.supabase_service_role_key):
        raise HTTPException(status_code=401, detail="Service role required")


# ---------- Application-scoped services (created in the lifespan) ----------

def get_stores(request: Request) -> StoreBundle:
    return request.app.state.stores


def get_registry(request: Request) -> SubscriptionRegistry:
    return request.app.state.registry


def get_terra_client(request: Request) -> TerraClient:
    return request.app.state.terra_client


def get_retry_scheduler(request: Request) -> RetryScheduler:
    return request.app.state.retry_scheduler


# Annotated shortcuts for route signatures
CurrentUser = Annotated[AuthContext, Depends(get_current_user)]
InternalUserId = Annotated[uuid.UUID, Depends(get_internal_user_id)]
AppSettings = Annotated[Settings, Depends(get_settings)]
IngestSettings = Annotated[IngestConfig, Depends(get_ingest_config)]
Stores = Annotated[StoreBundle, Depends(get_stores)]
Registry = Annotated[SubscriptionRegistry, Depends(get_registry)]
Terra = Annotated[TerraClient, Depends(get_terra_client)]
Retries = Annotated[RetryScheduler, Depends(get_retry_scheduler)]
ServiceRole = Depends(require_service_role)
