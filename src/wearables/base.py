"""Base types and store interfaces for the Vitalink wearable ingestion core.

The provider and data-type enums, the ProviderToken record and the abstract
stores defined here are the seams between the core components (signature
verifier, range requester, normalizer / conflict resolver, alert
synthesizer) and the relational store.  Core components receive store
instances explicitly; none of them import a database module.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from src.models.alerts import FeedEntry, LifecycleAlert, NotificationPreferences
from src.models.metrics import RawMetricRow


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class PersistenceError(RuntimeError):
    """A store read or write failed."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Provider(str, Enum):
    """Wearable providers reachable through the aggregator."""

    WHOOP = "WHOOP"
    GARMIN = "GARMIN"
    WITHINGS = "WITHINGS"
    OURA = "OURA"
    ULTRAHUMAN = "ULTRAHUMAN"
    GOOGLE = "GOOGLE"

    @classmethod
    def parse(cls, value: str | "Provider") -> "Provider":
        """Parse a provider name case-insensitively.

        Raises:
            ValueError: If the name is not a known provider.
        """
        if isinstance(value, Provider):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(
                f"Unknown provider {value!r}. Available: {[p.value for p in cls]}"
            ) from None


class DataType(str, Enum):
    """Aggregator data-type categories (webhook ``type`` and REST path)."""

    BODY = "body"
    DAILY = "daily"
    ACTIVITY = "activity"
    SLEEP = "sleep"


# ---------------------------------------------------------------------------
# Provider token
# ---------------------------------------------------------------------------


@dataclass
class ProviderToken:
    """One user's authorization to pull data from one provider.

    Deactivated (never deleted) on disconnect or provider auth failure.

    Attributes:
        user_id:       Internal user UUID.
        provider:      Provider enum.
        terra_user_id: Aggregator-side user id used for outbound requests.
        is_active:     False once disconnected.
        last_sync_at:  UTC timestamp of the last sync attempt / delivery.
        created_at:    When the connection was first made.
    """

    user_id: UUID
    provider: Provider
    terra_user_id: str | None
    is_active: bool = True
    last_sync_at: datetime | None = None
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Raw webhook log
# ---------------------------------------------------------------------------


class WebhookStatus(str, Enum):
    """Processing state of a delivery in ``terra_webhooks_raw``."""

    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


@dataclass
class StoredWebhook:
    """A recorded delivery, as read back for reprocessing."""

    webhook_id: str
    payload_type: str
    payload: dict[str, Any]
    status: WebhookStatus
    attempts: int = 1
    error_message: str | None = None


# ---------------------------------------------------------------------------
# Store interfaces
# ---------------------------------------------------------------------------


class TokenStore(ABC):
    """Access to ``terra_tokens``."""

    @abstractmethod
    async def get_active_tokens(
        self, provider: Provider | None = None, user_id: UUID | None = None
    ) -> list[ProviderToken]:
        """Return active tokens, optionally filtered by provider and/or user."""

    @abstractmethod
    async def find_by_terra_user_id(self, terra_user_id: str) -> ProviderToken | None:
        """Return the active token for an aggregator user id, if any."""

    @abstractmethod
    async def get_token(self, user_id: UUID, provider: Provider) -> ProviderToken | None:
        """Return the token for (user, provider), active or not."""

    @abstractmethod
    async def upsert_token(
        self, user_id: UUID, provider: Provider, terra_user_id: str
    ) -> ProviderToken:
        """Create or re-activate the token for (user, provider)."""

    @abstractmethod
    async def deactivate(self, terra_user_id: str) -> int:
        """Deactivate every token bound to an aggregator user id. Returns rows touched."""

    @abstractmethod
    async def touch_last_sync(
        self, user_id: UUID, provider: Provider, synced_at: datetime
    ) -> None:
        """Record a sync attempt for (user, provider)."""


class MetricStore(ABC):
    """Access to ``unified_metrics`` (append-only) and the raw webhook log."""

    @abstractmethod
    async def insert_raw_rows(self, rows: list[RawMetricRow]) -> int:
        """Append rows, ignoring exact redeliveries. Returns the number inserted."""

    @abstractmethod
    async def fetch_raw_rows(
        self,
        user_id: UUID,
        metric_names: list[str],
        start_date: date,
        end_date: date,
    ) -> list[RawMetricRow]:
        """Return validated rows ordered by (date, priority, confidence desc, created_at)."""

    @abstractmethod
    async def find_by_external_id(
        self, user_id: UUID, external_id: str
    ) -> RawMetricRow | None:
        """Return the row carrying a given external id, if present."""

    @abstractmethod
    async def record_webhook(
        self,
        webhook_id: str,
        payload_type: str,
        terra_user_id: str | None,
        provider: str | None,
        payload: dict[str, Any],
    ) -> bool:
        """Claim a delivery for processing.

        A new id is stored as ``pending``.  A known id is claimed again (status
        back to ``pending``, attempts + 1) unless it was already processed.
        Returns False only for ids whose processing completed.
        """

    @abstractmethod
    async def mark_webhook(
        self, webhook_id: str, status: WebhookStatus, error_message: str | None = None
    ) -> None:
        """Record how processing of a claimed delivery ended."""

    @abstractmethod
    async def list_failed_webhooks(self, max_attempts: int, limit: int) -> list[StoredWebhook]:
        """Return failed deliveries with fewer than ``max_attempts`` attempts, oldest first."""


class AlertStore(ABC):
    """Access to ``activity_feed``, ``lifecycle_alerts`` and notification settings."""

    @abstractmethod
    async def feed_entry_exists(self, source_table: str, source_id: str) -> bool:
        """True if a feed entry already references the source row."""

    @abstractmethod
    async def insert_feed_entry(self, entry: FeedEntry) -> FeedEntry:
        """Persist a feed entry."""

    @abstractmethod
    async def alert_exists(
        self, recipient_id: UUID, user_id: UUID, alert_type: str, alert_date: date
    ) -> bool:
        """True if the daily-cadence alert was already generated."""

    @abstractmethod
    async def insert_alert(self, alert: LifecycleAlert) -> LifecycleAlert:
        """Persist a lifecycle alert."""

    @abstractmethod
    async def get_notification_preferences(
        self, recipient_id: UUID
    ) -> NotificationPreferences | None:
        """Return the recipient's preferences, or None if they never set any."""

    @abstractmethod
    async def list_alert_recipients(self, user_id: UUID) -> list[UUID]:
        """Return the user plus their active trainers."""

    @abstractmethod
    async def list_alerts(
        self, recipient_id: UUID, include_dismissed: bool = False, limit: int = 50
    ) -> list[LifecycleAlert]:
        """Return alerts addressed to a recipient, newest first."""

    @abstractmethod
    async def update_alert(
        self,
        alert_id: UUID,
        recipient_id: UUID,
        is_read: bool | None = None,
        dismissed: bool | None = None,
    ) -> LifecycleAlert | None:
        """Mark an alert read and/or dismissed. Returns None if not found."""


@dataclass
class StoreBundle:
    """The three stores, passed together to request-scoped services."""

    tokens: TokenStore
    metrics: MetricStore
    alerts: AlertStore
