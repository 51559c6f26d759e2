"""Aggregator webhook receiver.

Every delivery is verified against the ``terra-signature`` header (HMAC over
the byte-exact body) before it is parsed.  Verified payloads are handed to
``WebhookProcessor``.

Responses:
    200 ``{"success": true, ...}``  accepted (including duplicates and ignored types)
    401 ``{"error": ...}``           signature missing or invalid
    400 ``{"error": ...}``           body is not a JSON object
    500 ``{"error": ...}``           processing failed
"""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from src.dependencies import AppSettings, IngestSettings, Registry, Stores
from src.wearables.ingest import WebhookPayloadError, WebhookProcessor
from src.wearables.signature import SIGNATURE_HEADERS, verify_signature

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger("vitalink.webhooks")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, GET, OPTIONS",
    "Access-Control-Allow-Headers": (
        "authorization, x-client-info, apikey, content-type, "
        + ", ".join(SIGNATURE_HEADERS)
    ),
}


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code, headers=CORS_HEADERS)


@router.options("/terra", include_in_schema=False)
async def terra_webhook_preflight() -> Response:
    return Response(status_code=200, headers=CORS_HEADERS)


@router.api_route("/terra", methods=["GET", "HEAD"])
async def terra_webhook_status() -> JSONResponse:
    """Liveness check used when registering the webhook URL."""
    return JSONResponse(
        {"success": True, "message": "Terra webhook endpoint is live"},
        headers=CORS_HEADERS,
    )


@router.post("/terra")
async def terra_webhook(
    request: Request,
    settings: AppSettings,
    stores: Stores,
    registry: Registry,
    config: IngestSettings,
) -> JSONResponse:
    """Receive one aggregator delivery."""
    body = await request.body()
    header = next(
        (request.headers[h] for h in SIGNATURE_HEADERS if h in request.headers), None
    )

    if not verify_signature(body, header, settings.terra_signing_secret):
        client = request.client.host if request.client else "unknown"
        logger.warning("Rejected webhook from %s: invalid signature", client)
        return _error("Invalid signature", 401)

    try:
        payload = json.loads(body)
    except ValueError:
        return _error("Invalid JSON payload", 400)

    processor = WebhookProcessor(stores, config, registry)
    try:
        result = await processor.process(payload)
    except WebhookPayloadError as exc:
        return _error(str(exc), 400)
    except Exception as exc:
        logger.exception("Webhook processing failed (type=%s)", payload.get("type"))
        return _error(str(exc) or exc.__class__.__name__, 500)

    return JSONResponse(result.to_dict(), headers=CORS_HEADERS)
