"""Lifecycle alerts: on-demand synthesis, listing, read/dismiss, and a live stream."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, AsyncIterator

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from src.dependencies import IngestSettings, InternalUserId, Registry, Stores
from src.models.alerts import AlertUpdate, LifecycleAlert, SynthesizeRequest
from src.wearables.alerts import ALERTS_TABLE, FEED_TABLE, AlertSynthesizer

router = APIRouter(prefix="/alerts", tags=["alerts"])
logger = logging.getLogger("vitalink.alerts")

_KEEPALIVE_SECONDS = 15.0


@router.post("/synthesize")
async def synthesize(
    user_id: InternalUserId,
    stores: Stores,
    registry: Registry,
    config: IngestSettings,
    body: SynthesizeRequest,
) -> dict[str, Any]:
    """Run one synthesizer category for the caller."""
    synthesizer = AlertSynthesizer(stores.metrics, stores.tokens, stores.alerts, config, registry)
    try:
        summary = await synthesizer.run(body.category, [user_id])
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown alert category {body.category!r}") from exc
    return {"success": True, **summary.to_dict()}


@router.get("", response_model=list[LifecycleAlert])
async def list_alerts(
    user_id: InternalUserId,
    stores: Stores,
    include_dismissed: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
) -> Any:
    return await stores.alerts.list_alerts(user_id, include_dismissed, limit)


@router.patch("/{alert_id}", response_model=LifecycleAlert)
async def update_alert(
    alert_id: uuid.UUID, user_id: InternalUserId, stores: Stores, body: AlertUpdate
) -> Any:
    if body.is_read is None and body.dismissed is None:
        raise HTTPException(status_code=400, detail="No fields to update")
    alert = await stores.alerts.update_alert(alert_id, user_id, body.is_read, body.dismissed)
    if alert is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    return alert


@router.get("/stream")
async def stream_alerts(
    request: Request, user_id: InternalUserId, registry: Registry
) -> StreamingResponse:
    """Server-sent events for new alerts and feed entries addressed to the caller."""
    queue: asyncio.Queue = asyncio.Queue(maxsize=100)
    subscriptions = [
        registry.subscribe(ALERTS_TABLE, {"recipient_id": user_id}, queue=queue),
        registry.subscribe(FEED_TABLE, {"user_id": user_id}, queue=queue),
    ]

    async def events() -> AsyncIterator[str]:
        try:
            while not await request.is_disconnected():
                try:
                    record = await asyncio.wait_for(queue.get(), timeout=_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                if record is None:
                    break
                event = "alert" if "alert_type" in record else "feed"
                yield f"event: {event}\ndata: {json.dumps(record)}\n\n"
        finally:
            for subscription in subscriptions:
                registry.unsubscribe(subscription)
            logger.debug("Alert stream closed for %s", user_id)

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
