"""Integration endpoints: historical backfill, scheduled sync, webhook harness, diagnostics."""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException

from src.dependencies import (
    AppSettings,
    IngestSettings,
    InternalUserId,
    Registry,
    Retries,
    ServiceRole,
    Stores,
    Terra,
)
from src.models.metrics import (
    BackfillRequest,
    ScheduledSyncRequest,
    TestWebhookRequest,
    TestWebhookResult,
)
from src.wearables.base import Provider
from src.wearables.ingest import WebhookProcessor
from src.wearables.retry import RetryExhaustedError
from src.wearables.sample_payloads import build_sample_payload
from src.wearables.signature import sign_payload, verify_signature
from src.wearables.sync.backfill import BackfillSummary, HistoricalRangeRequester
from src.wearables.terra_client import ProviderRequestError

router = APIRouter(prefix="/integrations", tags=["integrations"])
logger = logging.getLogger("vitalink.integrations")


def _combine(summaries: list[BackfillSummary]) -> dict[str, Any]:
    return {
        "success": True,
        "total": sum(s.total for s in summaries),
        "successful": sum(s.successful for s in summaries),
        "failed": sum(s.failed for s in summaries),
        "errors": [e.to_dict() for s in summaries for e in s.errors],
        "providers": [s.to_dict() for s in summaries],
    }


def _provider_or_400(value: str | None) -> Provider | None:
    if value is None:
        return None
    try:
        return Provider.parse(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


# ---------- Connections ----------

@router.get("")
async def list_connections(user_id: InternalUserId, stores: Stores) -> list[dict[str, Any]]:
    tokens = await stores.tokens.get_active_tokens(user_id=user_id)
    return [
        {
            "provider": t.provider.value,
            "terraUserId": t.terra_user_id,
            "lastSyncAt": t.last_sync_at.isoformat() if t.last_sync_at else None,
        }
        for t in tokens
    ]


# ---------- Backfill ----------

@router.post("/backfill")
async def backfill(
    user_id: InternalUserId,
    stores: Stores,
    terra: Terra,
    config: IngestSettings,
    body: BackfillRequest | None = None,
) -> dict[str, Any]:
    """Request historical redelivery for the caller's connected providers."""
    body = body or BackfillRequest()
    provider = _provider_or_400(body.provider)
    days_back = config.backfill.default_days_back if body.days_back is None else body.days_back

    requester = HistoricalRangeRequester(terra, stores.tokens, config)
    summaries = await requester.request_for_active_tokens(days_back, provider, user_id)
    if not summaries:
        raise HTTPException(status_code=404, detail="No active wearable connection found")

    logger.info("Manual backfill for %s: %d provider(s), %d days", user_id, len(summaries), days_back)
    return _combine(summaries)


@router.post("/sync/scheduled", dependencies=[ServiceRole])
async def scheduled_sync(
    stores: Stores,
    terra: Terra,
    config: IngestSettings,
    registry: Registry,
    body: ScheduledSyncRequest | None = None,
) -> dict[str, Any]:
    """Cron tick: request a short recent window for every active connection.

    The same tick reprocesses webhook deliveries whose processing failed.
    """
    body = body or ScheduledSyncRequest()
    provider = _provider_or_400(body.provider)
    days_back = config.backfill.scheduled_days_back if body.days_back is None else body.days_back

    requester = HistoricalRangeRequester(terra, stores.tokens, config)
    summaries = await requester.request_for_active_tokens(days_back, provider)
    result = _combine(summaries)
    retries = await WebhookProcessor(stores, config, registry).retry_failed()
    result["webhookRetries"] = retries.to_dict()
    logger.info(
        "Scheduled sync: %d/%d users ok across %d provider(s), %d/%d webhook retries ok",
        result["successful"], result["total"], len(summaries),
        retries.processed, retries.total,
    )
    return result


# ---------- Webhook harness ----------

@router.post("/test-webhook")
async def test_webhook(
    user_id: InternalUserId,
    stores: Stores,
    registry: Registry,
    settings: AppSettings,
    config: IngestSettings,
    body: TestWebhookRequest | None = None,
) -> dict[str, Any]:
    """Sign a sample payload, verify it both ways and optionally process it."""
    body = body or TestWebhookRequest()
    provider = _provider_or_400(body.provider)

    tokens = await stores.tokens.get_active_tokens(provider=provider, user_id=user_id)
    terra_user_id = tokens[0].terra_user_id if tokens else None
    if not body.dry_run and not terra_user_id:
        raise HTTPException(
            status_code=400,
            detail=f"Connect {provider.value} before sending a live test webhook",
        )

    try:
        payload = build_sample_payload(
            body.type, provider, terra_user_id or "harness-user", reference_id=user_id
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    secret = settings.terra_signing_secret
    signature_valid = all(
        verify_signature(raw, sign_payload(raw, secret, separator=sep), secret)
        for sep in (b".", b"")
    )

    result = None
    if not body.dry_run and signature_valid:
        processed = await WebhookProcessor(stores, config, registry).process(payload)
        result = processed.to_dict()

    return TestWebhookResult(
        type=payload["type"],
        provider=provider.value,
        signature_valid=signature_valid,
        processed=result is not None,
        payload=payload if body.dry_run else None,
        result=result,
    ).model_dump(by_alias=True)


# ---------- Diagnostics ----------

@router.get("/diagnostics")
async def diagnostics(terra: Terra, retries: Retries) -> dict[str, Any]:
    """Probe the aggregator API with bounded retries."""
    try:
        response = await retries.run(
            "terra-connectivity", terra.list_integrations, retry_on=(ProviderRequestError,)
        )
    except RetryExhaustedError as exc:
        logger.warning("Aggregator unreachable: %s", exc)
        raise HTTPException(
            status_code=503,
            detail={"status": "unreachable", "attempts": exc.attempts, "error": str(exc.last_error)},
        ) from exc

    providers = response.get("providers") or []
    return {"status": "ok", "providers": len(providers)}
