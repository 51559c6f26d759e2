"""Postgres implementations of the ingestion stores.

Rows read from ``unified_metrics`` are parsed into ``RawMetricRow`` here,
before any business logic sees them; a row that fails validation is logged
and dropped.  Reads and writes wrap driver and connection errors in
``PersistenceError``.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import date, datetime, timezone
from typing import Any

import asyncpg
from pydantic import ValidationError

from src.models.alerts import FeedEntry, LifecycleAlert, NotificationPreferences
from src.models.metrics import RawMetricRow
from src.services import supabase as db
from src.wearables.base import (
    AlertStore,
    MetricStore,
    PersistenceError,
    Provider,
    ProviderToken,
    StoreBundle,
    StoredWebhook,
    TokenStore,
    WebhookStatus,
)
from src.wearables.sync.dedup import METRIC_CONFLICT_COLUMNS, build_upsert_query

logger = logging.getLogger("vitalink.db.stores")

_METRIC_COLUMNS = [
    "user_id", "metric_name", "metric_category", "value", "unit",
    "measurement_date", "source", "provider", "external_id",
    "priority", "confidence_score",
]

_INSERT_METRIC = build_upsert_query(
    "unified_metrics", _METRIC_COLUMNS, METRIC_CONFLICT_COLUMNS, update_columns=[],
    returning="id",
)

_UPSERT_TOKEN = build_upsert_query(
    "terra_tokens",
    ["user_id", "provider", "terra_user_id", "is_active"],
    ["user_id", "provider"],
    returning="user_id, provider, terra_user_id, is_active, last_sync_date, created_at",
)


# Driver and connection failures surfaced as PersistenceError
_DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


async def _fetch(table: str, query: str, *args: Any, user_id: uuid.UUID | None = None) -> list:
    try:
        return await db.fetch(query, *args, user_id=user_id)
    except _DB_ERRORS as exc:
        raise PersistenceError(f"{table} read failed: {exc}") from exc


async def _fetchrow(table: str, query: str, *args: Any, user_id: uuid.UUID | None = None) -> Any:
    try:
        return await db.fetchrow(query, *args, user_id=user_id)
    except _DB_ERRORS as exc:
        raise PersistenceError(f"{table} read failed: {exc}") from exc


async def _fetchval(table: str, query: str, *args: Any) -> Any:
    try:
        return await db.fetchval(query, *args)
    except _DB_ERRORS as exc:
        raise PersistenceError(f"{table} read failed: {exc}") from exc


def _json(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def parse_metric_record(record: asyncpg.Record | dict[str, Any]) -> RawMetricRow | None:
    """Validate one ``unified_metrics`` record.  Returns None for invalid rows."""
    data = dict(record)
    try:
        return RawMetricRow(
            id=data.get("id"),
            user_id=data["user_id"],
            metric_name=data["metric_name"],
            value=data["value"],
            unit=data.get("unit") or "",
            measurement_date=data["measurement_date"],
            source=data.get("source") or data.get("provider") or "UNKNOWN",
            priority=data.get("priority") if data.get("priority") is not None else 5,
            confidence_score=(
                data.get("confidence_score") if data.get("confidence_score") is not None else 50
            ),
            category=data.get("metric_category"),
            external_id=data.get("external_id"),
            created_at=data.get("created_at"),
        )
    except (KeyError, ValidationError) as exc:
        logger.warning("Dropping invalid unified_metrics row %s: %s", data.get("id"), exc)
        return None


def _token_from_record(record: asyncpg.Record) -> ProviderToken | None:
    try:
        provider = Provider.parse(record["provider"])
    except ValueError:
        logger.warning("Ignoring token with unknown provider %r", record["provider"])
        return None
    return ProviderToken(
        user_id=record["user_id"],
        provider=provider,
        terra_user_id=record["terra_user_id"],
        is_active=record["is_active"],
        last_sync_at=record["last_sync_date"],
        created_at=record["created_at"],
    )


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class PostgresTokenStore(TokenStore):
    async def get_active_tokens(
        self, provider: Provider | None = None, user_id: uuid.UUID | None = None
    ) -> list[ProviderToken]:
        records = await _fetch(
            "terra_tokens",
            """
            SELECT user_id, provider, terra_user_id, is_active, last_sync_date, created_at
            FROM terra_tokens
            WHERE is_active
              AND ($1::text IS NULL OR provider = $1)
              AND ($2::uuid IS NULL OR user_id = $2)
            ORDER BY provider, created_at
            """,
            provider.value if provider else None,
            user_id,
        )
        return [t for t in map(_token_from_record, records) if t is not None]

    async def find_by_terra_user_id(self, terra_user_id: str) -> ProviderToken | None:
        record = await _fetchrow(
            "terra_tokens",
            """
            SELECT user_id, provider, terra_user_id, is_active, last_sync_date, created_at
            FROM terra_tokens
            WHERE terra_user_id = $1 AND is_active
            ORDER BY created_at DESC
            LIMIT 1
            """,
            terra_user_id,
        )
        return _token_from_record(record) if record else None

    async def get_token(self, user_id: uuid.UUID, provider: Provider) -> ProviderToken | None:
        record = await _fetchrow(
            "terra_tokens",
            """
            SELECT user_id, provider, terra_user_id, is_active, last_sync_date, created_at
            FROM terra_tokens
            WHERE user_id = $1 AND provider = $2
            """,
            user_id, provider.value,
        )
        return _token_from_record(record) if record else None

    async def upsert_token(
        self, user_id: uuid.UUID, provider: Provider, terra_user_id: str
    ) -> ProviderToken:
        try:
            record = await db.fetchrow(
                _UPSERT_TOKEN, user_id, provider.value, terra_user_id, True
            )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"terra_tokens upsert failed: {exc}") from exc
        token = _token_from_record(record) if record else None
        if token is None:
            raise PersistenceError(
                f"terra_tokens upsert for {user_id}/{provider.value} returned no usable row"
            )
        return token

    async def deactivate(self, terra_user_id: str) -> int:
        try:
            status = await db.execute(
                "UPDATE terra_tokens SET is_active = false WHERE terra_user_id = $1 AND is_active",
                terra_user_id,
            )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"terra_tokens deactivate failed: {exc}") from exc
        # asyncpg returns e.g. "UPDATE 2"
        return int(status.split()[-1]) if status else 0

    async def touch_last_sync(
        self, user_id: uuid.UUID, provider: Provider, synced_at: datetime
    ) -> None:
        try:
            await db.execute(
                "UPDATE terra_tokens SET last_sync_date = $3 WHERE user_id = $1 AND provider = $2",
                user_id, provider.value, synced_at,
            )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"terra_tokens last sync update failed: {exc}") from exc


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class PostgresMetricStore(MetricStore):
    async def insert_raw_rows(self, rows: list[RawMetricRow]) -> int:
        inserted = 0
        try:
            async with db.get_connection() as conn:
                for row in rows:
                    new_id = await conn.fetchval(
                        _INSERT_METRIC,
                        row.user_id, row.metric_name, row.category, row.value, row.unit,
                        row.measurement_date, row.source, row.source, row.external_id,
                        row.priority, row.confidence_score,
                    )
                    if new_id is not None:
                        inserted += 1
        except _DB_ERRORS as exc:
            raise PersistenceError(f"unified_metrics insert failed: {exc}") from exc
        return inserted

    async def fetch_raw_rows(
        self,
        user_id: uuid.UUID,
        metric_names: list[str],
        start_date: date,
        end_date: date,
    ) -> list[RawMetricRow]:
        records = await _fetch(
            "unified_metrics",
            """
            SELECT id, user_id, metric_name, metric_category, value, unit,
                   measurement_date, source, provider, external_id,
                   priority, confidence_score, created_at
            FROM unified_metrics
            WHERE user_id = $1
              AND metric_name = ANY($2::text[])
              AND measurement_date BETWEEN $3 AND $4
            ORDER BY measurement_date, priority, confidence_score DESC, created_at, id
            """,
            user_id, metric_names, start_date, end_date,
        )
        return [r for r in map(parse_metric_record, records) if r is not None]

    async def find_by_external_id(
        self, user_id: uuid.UUID, external_id: str
    ) -> RawMetricRow | None:
        try:
            record = await db.fetchrow(
                """
                SELECT id, user_id, metric_name, metric_category, value, unit,
                       measurement_date, source, provider, external_id,
                       priority, confidence_score, created_at
                FROM unified_metrics
                WHERE user_id = $1 AND external_id = $2
                ORDER BY created_at
                LIMIT 1
                """,
                user_id, external_id,
            )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"unified_metrics lookup failed: {exc}") from exc
        return parse_metric_record(record) if record else None

    async def record_webhook(
        self,
        webhook_id: str,
        payload_type: str,
        terra_user_id: str | None,
        provider: str | None,
        payload: dict[str, Any],
    ) -> bool:
        try:
            new_id = await db.fetchval(
                """
                INSERT INTO terra_webhooks_raw
                    (webhook_id, type, user_id, provider, payload, status, retry_count)
                VALUES ($1, $2, $3, $4, $5::jsonb, 'pending', 1)
                ON CONFLICT (webhook_id) DO UPDATE SET
                    status = 'pending',
                    retry_count = terra_webhooks_raw.retry_count + 1,
                    error_message = NULL
                WHERE terra_webhooks_raw.status <> 'processed'
                RETURNING id
                """,
                webhook_id, payload_type, terra_user_id, provider,
                json.dumps(payload, default=str),
            )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"terra_webhooks_raw insert failed: {exc}") from exc
        return new_id is not None

    async def mark_webhook(
        self, webhook_id: str, status: WebhookStatus, error_message: str | None = None
    ) -> None:
        try:
            await db.execute(
                """
                UPDATE terra_webhooks_raw
                SET status = $2, error_message = $3, processed_at = now()
                WHERE webhook_id = $1
                """,
                webhook_id, WebhookStatus(status).value, error_message,
            )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"terra_webhooks_raw update failed: {exc}") from exc

    async def list_failed_webhooks(self, max_attempts: int, limit: int) -> list[StoredWebhook]:
        records = await _fetch(
            "terra_webhooks_raw",
            """
            SELECT webhook_id, type, payload, status, retry_count, error_message
            FROM terra_webhooks_raw
            WHERE status = 'failed' AND retry_count < $1
            ORDER BY created_at
            LIMIT $2
            """,
            max_attempts, limit,
        )
        return [
            StoredWebhook(
                webhook_id=r["webhook_id"],
                payload_type=r["type"],
                payload=_json(r["payload"]),
                status=WebhookStatus(r["status"]),
                attempts=r["retry_count"],
                error_message=r["error_message"],
            )
            for r in records
        ]


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


def _feed_from_record(record: asyncpg.Record) -> FeedEntry:
    data = dict(record)
    data["metadata"] = _json(data.get("metadata"))
    return FeedEntry.model_validate(data)


class PostgresAlertStore(AlertStore):
    async def feed_entry_exists(self, source_table: str, source_id: str) -> bool:
        return bool(
            await _fetchval(
                "activity_feed",
                "SELECT EXISTS (SELECT 1 FROM activity_feed WHERE source_table = $1 AND source_id = $2)",
                source_table, source_id,
            )
        )

    async def insert_feed_entry(self, entry: FeedEntry) -> FeedEntry:
        try:
            record = await db.fetchrow(
                """
                INSERT INTO activity_feed
                    (user_id, action_type, action_text, source_table, source_id,
                     measurement_date, metadata)
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
                RETURNING id, user_id, action_type, action_text, source_table, source_id,
                          measurement_date, metadata, is_read, dismissed_at, created_at
                """,
                entry.user_id, entry.action_type, entry.action_text, entry.source_table,
                entry.source_id, entry.measurement_date, json.dumps(entry.metadata, default=str),
            )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"activity_feed insert failed: {exc}") from exc
        return _feed_from_record(record)

    async def alert_exists(
        self, recipient_id: uuid.UUID, user_id: uuid.UUID, alert_type: str, alert_date: date
    ) -> bool:
        return bool(
            await _fetchval(
                "lifecycle_alerts",
                """
                SELECT EXISTS (
                    SELECT 1 FROM lifecycle_alerts
                    WHERE recipient_id = $1 AND user_id = $2
                      AND alert_type = $3 AND alert_date = $4
                )
                """,
                recipient_id, user_id, alert_type, alert_date,
            )
        )

    async def insert_alert(self, alert: LifecycleAlert) -> LifecycleAlert:
        try:
            record = await db.fetchrow(
                """
                INSERT INTO lifecycle_alerts
                    (user_id, recipient_id, alert_type, message, alert_date,
                     source_table, source_id)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                RETURNING *
                """,
                alert.user_id, alert.recipient_id, alert.alert_type, alert.message,
                alert.alert_date, alert.source_table, alert.source_id,
            )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"lifecycle_alerts insert failed: {exc}") from exc
        return LifecycleAlert.model_validate(dict(record))

    async def get_notification_preferences(
        self, recipient_id: uuid.UUID
    ) -> NotificationPreferences | None:
        record = await _fetchrow(
            "notification_settings",
            """
            SELECT user_id AS recipient_id, integration_issues, client_alerts
            FROM notification_settings
            WHERE user_id = $1
            """,
            recipient_id,
        )
        return NotificationPreferences.model_validate(dict(record)) if record else None

    async def list_alert_recipients(self, user_id: uuid.UUID) -> list[uuid.UUID]:
        records = await _fetch(
            "trainer_clients",
            """
            SELECT trainer_id FROM trainer_clients
            WHERE client_id = $1 AND status = 'active'
            ORDER BY created_at
            """,
            user_id,
        )
        return [user_id, *(r["trainer_id"] for r in records if r["trainer_id"] != user_id)]

    async def list_alerts(
        self, recipient_id: uuid.UUID, include_dismissed: bool = False, limit: int = 50
    ) -> list[LifecycleAlert]:
        records = await _fetch(
            "lifecycle_alerts",
            """
            SELECT * FROM lifecycle_alerts
            WHERE recipient_id = $1 AND ($2 OR dismissed_at IS NULL)
            ORDER BY created_at DESC
            LIMIT $3
            """,
            recipient_id, include_dismissed, limit,
            user_id=recipient_id,
        )
        return [LifecycleAlert.model_validate(dict(r)) for r in records]

    async def update_alert(
        self,
        alert_id: uuid.UUID,
        recipient_id: uuid.UUID,
        is_read: bool | None = None,
        dismissed: bool | None = None,
    ) -> LifecycleAlert | None:
        dismissed_at = None
        if dismissed:
            dismissed_at = datetime.now(timezone.utc)
        try:
            record = await db.fetchrow(
                """
                UPDATE lifecycle_alerts SET
                    is_read = COALESCE($3, is_read),
                    dismissed_at = CASE
                        WHEN $4::boolean IS NULL THEN dismissed_at
                        WHEN $4 THEN COALESCE(dismissed_at, $5)
                        ELSE NULL
                    END
                WHERE id = $1 AND recipient_id = $2
                RETURNING *
                """,
                alert_id, recipient_id, is_read, dismissed, dismissed_at,
                user_id=recipient_id,
            )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"lifecycle_alerts update failed: {exc}") from exc
        return LifecycleAlert.model_validate(dict(record)) if record else None


def postgres_stores() -> StoreBundle:
    return StoreBundle(
        tokens=PostgresTokenStore(),
        metrics=PostgresMetricStore(),
        alerts=PostgresAlertStore(),
    )
