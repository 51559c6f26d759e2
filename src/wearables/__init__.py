"""Vitalink wearable ingestion core.

This package receives aggregator webhooks, requests historical redelivery,
normalizes heterogeneous provider payloads into unified metric rows, resolves
conflicts between sources at read time, and derives feed entries and alerts.

Subpackages:
    sync/ — Historical range requests and deduplication keys

Core modules:
    base              — Provider enums, ProviderToken and the store interfaces
    config_loader     — Load/validate/hot-reload ingest_config.yaml
    signature         — Webhook HMAC verification
    terra_client      — Outbound aggregator REST client
    metric_normalizer — Payload → RawMetricRow field tables
    conflict_resolver — Alias expansion and priority/confidence resolution
    alerts            — Activity feed and lifecycle alert synthesis
    ingest            — Webhook processing pipeline
    realtime          — Subscription registry
    retry             — Cancellable retry-with-backoff tasks
"""

from src.wearables.base import (
    AlertStore,
    DataType,
    MetricStore,
    Provider,
    ProviderToken,
    StoreBundle,
    StoredWebhook,
    TokenStore,
    WebhookStatus,
)
from src.wearables.config_loader import IngestConfig, get_ingest_config

__all__ = [
    "Provider",
    "DataType",
    "ProviderToken",
    "TokenStore",
    "MetricStore",
    "AlertStore",
    "StoreBundle",
    "StoredWebhook",
    "WebhookStatus",
    "IngestConfig",
    "get_ingest_config",
]
