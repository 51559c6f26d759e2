"""In-memory store implementations used by the wearable and router tests.

They honour the same contracts as the Postgres stores in
``src/services/stores.py``: raw metric rows are append-only and deduplicated
on their natural key, ids and ``created_at`` are assigned on insert, and
fetches come back in (date, priority, confidence desc, created_at) order.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any

from src.models.alerts import FeedEntry, LifecycleAlert, NotificationPreferences
from src.models.metrics import RawMetricRow
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
from src.wearables.sync.dedup import metric_row_key

_BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


class InMemoryTokenStore(TokenStore):
    def __init__(self, tokens: list[ProviderToken] | None = None) -> None:
        self.tokens: list[ProviderToken] = list(tokens or [])
        self.touched: list[tuple[uuid.UUID, Provider]] = []
        self.fail_touch = False

    async def get_active_tokens(
        self, provider: Provider | None = None, user_id: uuid.UUID | None = None
    ) -> list[ProviderToken]:
        return [
            t for t in self.tokens
            if t.is_active
            and (provider is None or t.provider == provider)
            and (user_id is None or t.user_id == user_id)
        ]

    async def find_by_terra_user_id(self, terra_user_id: str) -> ProviderToken | None:
        for token in self.tokens:
            if token.is_active and token.terra_user_id == terra_user_id:
                return token
        return None

    async def get_token(self, user_id: uuid.UUID, provider: Provider) -> ProviderToken | None:
        for token in self.tokens:
            if token.user_id == user_id and token.provider == provider:
                return token
        return None

    async def upsert_token(
        self, user_id: uuid.UUID, provider: Provider, terra_user_id: str
    ) -> ProviderToken:
        for token in self.tokens:
            if token.user_id == user_id and token.provider == provider:
                token.terra_user_id = terra_user_id
                token.is_active = True
                return token
        token = ProviderToken(
            user_id=user_id,
            provider=provider,
            terra_user_id=terra_user_id,
            created_at=datetime.now(timezone.utc),
        )
        self.tokens.append(token)
        return token

    async def deactivate(self, terra_user_id: str) -> int:
        count = 0
        for token in self.tokens:
            if token.terra_user_id == terra_user_id and token.is_active:
                token.is_active = False
                count += 1
        return count

    async def touch_last_sync(
        self, user_id: uuid.UUID, provider: Provider, synced_at: datetime
    ) -> None:
        if self.fail_touch:
            raise PersistenceError("terra_tokens is read-only")
        self.touched.append((user_id, provider))
        for token in self.tokens:
            if token.user_id == user_id and token.provider == provider:
                token.last_sync_at = synced_at


class InMemoryMetricStore(MetricStore):
    def __init__(self) -> None:
        self.rows: list[RawMetricRow] = []
        self.webhooks: dict[str, StoredWebhook] = {}
        self.fail_inserts = False
        self.unreadable_users: set[uuid.UUID] = set()
        self._keys: set[tuple] = set()

    def add(self, *rows: RawMetricRow) -> None:
        """Seed rows directly, keeping any id/created_at the test supplied."""
        for row in rows:
            self._store(row)

    def _store(self, row: RawMetricRow) -> bool:
        key = metric_row_key(row)
        if key in self._keys:
            return False
        self._keys.add(key)
        self.rows.append(
            row.model_copy(update={
                "id": row.id or uuid.uuid4(),
                "created_at": row.created_at or _BASE_TIME + timedelta(seconds=len(self.rows)),
            })
        )
        return True

    async def insert_raw_rows(self, rows: list[RawMetricRow]) -> int:
        if self.fail_inserts:
            raise PersistenceError("unified_metrics insert failed: connection reset")
        return sum(1 for row in rows if self._store(row))

    async def fetch_raw_rows(
        self,
        user_id: uuid.UUID,
        metric_names: list[str],
        start_date: date,
        end_date: date,
    ) -> list[RawMetricRow]:
        if user_id in self.unreadable_users:
            raise PersistenceError("unified_metrics read failed: statement timeout")
        names = set(metric_names)
        matched = [
            r for r in self.rows
            if r.user_id == user_id
            and r.metric_name in names
            and start_date <= r.measurement_date <= end_date
        ]
        return sorted(
            matched,
            key=lambda r: (r.measurement_date, r.priority, -r.confidence_score, r.created_at),
        )

    async def find_by_external_id(
        self, user_id: uuid.UUID, external_id: str
    ) -> RawMetricRow | None:
        for row in self.rows:
            if row.user_id == user_id and row.external_id == external_id:
                return row
        return None

    async def record_webhook(
        self,
        webhook_id: str,
        payload_type: str,
        terra_user_id: str | None,
        provider: str | None,
        payload: dict[str, Any],
    ) -> bool:
        stored = self.webhooks.get(webhook_id)
        if stored is None:
            self.webhooks[webhook_id] = StoredWebhook(
                webhook_id=webhook_id,
                payload_type=payload_type,
                payload=payload,
                status=WebhookStatus.PENDING,
            )
            return True
        if stored.status is WebhookStatus.PROCESSED:
            return False
        stored.status = WebhookStatus.PENDING
        stored.attempts += 1
        stored.error_message = None
        return True

    async def mark_webhook(
        self, webhook_id: str, status: WebhookStatus, error_message: str | None = None
    ) -> None:
        stored = self.webhooks[webhook_id]
        stored.status = status
        stored.error_message = error_message

    async def list_failed_webhooks(self, max_attempts: int, limit: int) -> list[StoredWebhook]:
        failed = [
            w for w in self.webhooks.values()
            if w.status is WebhookStatus.FAILED and w.attempts < max_attempts
        ]
        return failed[:limit]


class InMemoryAlertStore(AlertStore):
    def __init__(self) -> None:
        self.feed: list[FeedEntry] = []
        self.alerts: list[LifecycleAlert] = []
        self.preferences: dict[uuid.UUID, NotificationPreferences] = {}
        self.trainers: dict[uuid.UUID, list[uuid.UUID]] = {}
        self.failing_recipients: set[uuid.UUID] = set()
        self.unreadable_recipients: set[uuid.UUID] = set()

    async def feed_entry_exists(self, source_table: str, source_id: str) -> bool:
        return any(
            e.source_table == source_table and e.source_id == source_id for e in self.feed
        )

    async def insert_feed_entry(self, entry: FeedEntry) -> FeedEntry:
        saved = entry.model_copy(update={"id": uuid.uuid4()})
        self.feed.append(saved)
        return saved

    async def alert_exists(
        self, recipient_id: uuid.UUID, user_id: uuid.UUID, alert_type: str, alert_date: date
    ) -> bool:
        if recipient_id in self.unreadable_recipients:
            raise PersistenceError("lifecycle_alerts read timeout")
        return any(
            a.recipient_id == recipient_id
            and a.user_id == user_id
            and a.alert_type == alert_type
            and a.alert_date == alert_date
            for a in self.alerts
        )

    async def insert_alert(self, alert: LifecycleAlert) -> LifecycleAlert:
        if alert.recipient_id in self.failing_recipients:
            raise PersistenceError(f"insert into lifecycle_alerts failed for {alert.recipient_id}")
        saved = alert.model_copy(update={"id": uuid.uuid4()})
        self.alerts.append(saved)
        return saved

    async def get_notification_preferences(
        self, recipient_id: uuid.UUID
    ) -> NotificationPreferences | None:
        return self.preferences.get(recipient_id)

    async def list_alert_recipients(self, user_id: uuid.UUID) -> list[uuid.UUID]:
        return [user_id, *self.trainers.get(user_id, [])]

    async def list_alerts(
        self, recipient_id: uuid.UUID, include_dismissed: bool = False, limit: int = 50
    ) -> list[LifecycleAlert]:
        alerts = [
            a for a in self.alerts
            if a.recipient_id == recipient_id and (include_dismissed or a.dismissed_at is None)
        ]
        return sorted(alerts, key=lambda a: a.created_at, reverse=True)[:limit]

    async def update_alert(
        self,
        alert_id: uuid.UUID,
        recipient_id: uuid.UUID,
        is_read: bool | None = None,
        dismissed: bool | None = None,
    ) -> LifecycleAlert | None:
        for index, alert in enumerate(self.alerts):
            if alert.id != alert_id or alert.recipient_id != recipient_id:
                continue
            update: dict[str, Any] = {}
            if is_read is not None:
                update["is_read"] = is_read
            if dismissed is not None:
                update["dismissed_at"] = datetime.now(timezone.utc) if dismissed else None
            self.alerts[index] = alert.model_copy(update=update)
            return self.alerts[index]
        return None


def in_memory_stores(tokens: list[ProviderToken] | None = None) -> StoreBundle:
    return StoreBundle(
        tokens=InMemoryTokenStore(tokens),
        metrics=InMemoryMetricStore(),
        alerts=InMemoryAlertStore(),
    )
