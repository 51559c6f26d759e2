"""Process verified aggregator webhooks.

Signature verification happens in the router, before this module sees the
payload.  Processing steps:

1. Compute the idempotency key and claim the delivery in
   ``terra_webhooks_raw``.  Only a key whose processing completed
   short-circuits as a duplicate; a failed or interrupted delivery is
   processed again when the aggregator resends it or when
   ``retry_failed`` sweeps it.
2. Dispatch on ``type``:
   - ``auth`` / ``reauth`` / ``user_reauth``: upsert the provider token; the
     aggregator's ``reference_id`` is our internal user id
   - ``deauth`` / ``access_revoked``: deactivate the token
   - ``healthcheck``: acknowledge
   - ``body`` / ``daily`` / ``activity`` / ``sleep``: normalize and append
     raw metric rows, touch last sync, and synthesize workout entries for
     activity deliveries; data for a disconnected (deactivated) token is
     acknowledged and dropped
   - anything else: acknowledge and ignore
3. Mark the delivery ``processed``, or ``failed`` with the error when
   processing raised.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from src.wearables.alerts import AlertCategory, AlertSynthesizer
from src.wearables.base import (
    DataType,
    PersistenceError,
    Provider,
    ProviderToken,
    StoreBundle,
    WebhookStatus,
)
from src.wearables.config_loader import IngestConfig, get_ingest_config
from src.wearables.metric_normalizer import MetricNormalizer
from src.wearables.realtime import SubscriptionRegistry
from src.wearables.sync.dedup import webhook_idempotency_key

logger = logging.getLogger("vitalink.wearables.ingest")

AUTH_EVENTS = {"auth", "reauth", "user_reauth"}
REVOKE_EVENTS = {"deauth", "access_revoked"}
DATA_EVENTS = {t.value for t in DataType}


class WebhookPayloadError(ValueError):
    """The webhook body is not a JSON object."""


@dataclass
class WebhookResult:
    """What processing did with one delivery."""

    type: str
    success: bool = True
    duplicate: bool = False
    message: str | None = None
    user_id: uuid.UUID | None = None
    provider: str | None = None
    rows_inserted: int = 0
    rows_skipped: int = 0
    feed_created: int = 0

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": self.success, "type": self.type}
        if self.duplicate:
            body["duplicate"] = True
        if self.message:
            body["message"] = self.message
        if self.user_id:
            body["userId"] = str(self.user_id)
        if self.provider:
            body["provider"] = self.provider
        if self.type in DATA_EVENTS:
            body["rowsInserted"] = self.rows_inserted
            body["rowsSkipped"] = self.rows_skipped
        if self.feed_created:
            body["feedCreated"] = self.feed_created
        return body


@dataclass
class WebhookRetrySummary:
    """Outcome of one sweep over failed deliveries."""

    total: int = 0
    processed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "failed": self.failed,
            "errors": list(self.errors),
        }


def _parse_uuid(value: Any) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class WebhookProcessor:
    """Turn one verified webhook payload into store writes."""

    def __init__(
        self,
        stores: StoreBundle,
        config: IngestConfig | None = None,
        registry: SubscriptionRegistry | None = None,
    ) -> None:
        self._stores = stores
        self._config = config or get_ingest_config()
        self._normalizer = MetricNormalizer(self._config)
        self._synthesizer = AlertSynthesizer(
            stores.metrics, stores.tokens, stores.alerts, self._config, registry
        )

    async def process(self, payload: dict[str, Any]) -> WebhookResult:
        """Process a parsed webhook body.

        Raises:
            WebhookPayloadError: If the body is not a JSON object.
            PersistenceError:    If a store write fails.
        """
        if not isinstance(payload, dict):
            raise WebhookPayloadError("Webhook body must be a JSON object")

        payload_type = str(payload.get("type") or "unknown")
        user = payload.get("user")
        if not isinstance(user, dict):
            if user is not None:
                logger.warning("Ignoring non-object 'user' in %s webhook", payload_type)
            user = {}
        terra_user_id = user.get("user_id")
        provider_name = user.get("provider") or payload.get("provider")

        webhook_id = webhook_idempotency_key(payload)
        claimed = await self._stores.metrics.record_webhook(
            webhook_id, payload_type, terra_user_id, provider_name, payload
        )
        if not claimed:
            logger.info("Duplicate webhook %s ignored", webhook_id)
            return WebhookResult(type=payload_type, duplicate=True, message="duplicate")

        try:
            result = await self._dispatch(payload, payload_type, user, terra_user_id, provider_name)
        except Exception as exc:
            await self._mark_failed(webhook_id, exc)
            raise
        await self._stores.metrics.mark_webhook(webhook_id, WebhookStatus.PROCESSED)
        return result

    async def retry_failed(self) -> WebhookRetrySummary:
        """Reprocess failed deliveries that still have attempts left.

        Each delivery goes back through ``process``, which re-claims it and
        records the new outcome.  A delivery that fails again is counted and
        the sweep moves on.
        """
        cfg = self._config.webhook_retry
        summary = WebhookRetrySummary()
        for stored in await self._stores.metrics.list_failed_webhooks(
            cfg.max_attempts, cfg.batch_size
        ):
            summary.total += 1
            try:
                await self.process(stored.payload)
            except Exception as exc:
                summary.failed += 1
                summary.errors.append(f"{stored.webhook_id}: {exc}")
                logger.warning(
                    "Retry of webhook %s (attempt %d) failed: %s",
                    stored.webhook_id, stored.attempts + 1, exc,
                )
                continue
            summary.processed += 1
        if summary.total:
            logger.info(
                "Webhook retry sweep: %d processed, %d failed",
                summary.processed, summary.failed,
            )
        return summary

    async def _mark_failed(self, webhook_id: str, exc: Exception) -> None:
        try:
            await self._stores.metrics.mark_webhook(
                webhook_id, WebhookStatus.FAILED, error_message=str(exc)
            )
        except PersistenceError as mark_exc:
            # the delivery stays pending; the processing error is what gets raised
            logger.error("Could not mark webhook %s failed: %s", webhook_id, mark_exc)

    async def _dispatch(
        self,
        payload: dict[str, Any],
        payload_type: str,
        user: dict[str, Any],
        terra_user_id: str | None,
        provider_name: str | None,
    ) -> WebhookResult:
        if payload_type == "healthcheck":
            return WebhookResult(type=payload_type, message="healthcheck ok")
        if payload_type in AUTH_EVENTS:
            return await self._handle_auth(payload, payload_type, user, provider_name)
        if payload_type in REVOKE_EVENTS:
            return await self._handle_revoke(payload_type, terra_user_id)
        if payload_type in DATA_EVENTS:
            return await self._handle_data(payload, payload_type, user, provider_name)

        logger.info("Ignoring webhook type %r", payload_type)
        return WebhookResult(type=payload_type, message="ignored")

    # ------------------------------------------------------------------
    # Connection events
    # ------------------------------------------------------------------

    async def _handle_auth(
        self,
        payload: dict[str, Any],
        payload_type: str,
        user: dict[str, Any],
        provider_name: str | None,
    ) -> WebhookResult:
        if payload.get("status") == "error":
            logger.warning(
                "Provider auth failed for reference %s: %s",
                payload.get("reference_id"), payload.get("message"),
            )
            return WebhookResult(type=payload_type, message="auth error acknowledged")

        token = await self._link(user, provider_name, payload.get("reference_id"))
        if token is None:
            return WebhookResult(type=payload_type, message="ignored: unresolvable user")
        logger.info(
            "Connected %s for user %s (aggregator user %s)",
            token.provider.value, token.user_id, token.terra_user_id,
        )
        return WebhookResult(
            type=payload_type, user_id=token.user_id, provider=token.provider.value,
            message="connected",
        )

    async def _handle_revoke(self, payload_type: str, terra_user_id: str | None) -> WebhookResult:
        if not terra_user_id:
            return WebhookResult(type=payload_type, message="ignored: no aggregator user id")
        count = await self._stores.tokens.deactivate(terra_user_id)
        logger.info("Deactivated %d token(s) for aggregator user %s", count, terra_user_id)
        return WebhookResult(type=payload_type, message=f"deactivated {count}")

    async def _link(
        self,
        user: dict[str, Any],
        provider_name: str | None,
        reference: Any = None,
    ) -> ProviderToken | None:
        """Create or reactivate the token named by the payload's reference id."""
        target = self._link_target(user, provider_name, reference)
        if target is None:
            return None
        user_id, provider = target
        return await self._stores.tokens.upsert_token(user_id, provider, user["user_id"])

    async def _existing_token(
        self, user: dict[str, Any], provider_name: str | None
    ) -> ProviderToken | None:
        """Return the stored token (active or not) the payload's reference id points at."""
        target = self._link_target(user, provider_name, quiet=True)
        if target is None:
            return None
        return await self._stores.tokens.get_token(*target)

    def _link_target(
        self,
        user: dict[str, Any],
        provider_name: str | None,
        reference: Any = None,
        quiet: bool = False,
    ) -> tuple[uuid.UUID, Provider] | None:
        user_id = _parse_uuid(reference or user.get("reference_id"))
        terra_user_id = user.get("user_id")
        if user_id is None or not terra_user_id or not provider_name:
            if not quiet:
                logger.warning(
                    "Cannot link aggregator user %s: reference=%r provider=%r",
                    terra_user_id, reference or user.get("reference_id"), provider_name,
                )
            return None
        try:
            provider = Provider.parse(provider_name)
        except ValueError:
            if not quiet:
                logger.warning("Unsupported provider %r for aggregator user %s",
                               provider_name, terra_user_id)
            return None
        return user_id, provider

    # ------------------------------------------------------------------
    # Data deliveries
    # ------------------------------------------------------------------

    async def _handle_data(
        self,
        payload: dict[str, Any],
        payload_type: str,
        user: dict[str, Any],
        provider_name: str | None,
    ) -> WebhookResult:
        terra_user_id = user.get("user_id")
        token = None
        if terra_user_id:
            token = await self._stores.tokens.find_by_terra_user_id(terra_user_id)
        if token is None:
            # first delivery can beat the auth webhook
            existing = await self._existing_token(user, provider_name)
            if existing is not None and not existing.is_active:
                logger.info(
                    "Dropping %s delivery for disconnected %s token of user %s",
                    payload_type, existing.provider.value, existing.user_id,
                )
                return WebhookResult(
                    type=payload_type, user_id=existing.user_id,
                    provider=existing.provider.value, message="ignored: connection revoked",
                )
            token = await self._link(user, provider_name)
        if token is None:
            return WebhookResult(type=payload_type, message="ignored: unknown user")

        items = payload.get("data") or []
        if isinstance(items, dict):
            items = [items]

        normalized = self._normalizer.normalize(
            payload_type, token.provider, token.user_id, items
        )
        inserted = 0
        if normalized.rows:
            inserted = await self._stores.metrics.insert_raw_rows(normalized.rows)
        await self._stores.tokens.touch_last_sync(
            token.user_id, token.provider, datetime.now(timezone.utc)
        )

        result = WebhookResult(
            type=payload_type,
            user_id=token.user_id,
            provider=token.provider.value,
            rows_inserted=inserted,
            rows_skipped=normalized.skipped,
        )
        logger.info(
            "%s/%s for %s: %d item(s), %d row(s) inserted, %d skipped",
            token.provider.value, payload_type, token.user_id, len(items),
            inserted, normalized.skipped,
        )

        if payload_type == DataType.ACTIVITY.value and inserted:
            synthesis = await self._synthesizer.run(
                AlertCategory.WORKOUT_COMPLETED, [token.user_id]
            )
            result.feed_created = synthesis.created
        return result
